"""
MedGuard Clinical Rules Engine
Prescription safety screening: drug interactions, allergies, dosage and
duplicate therapy
"""

import asyncio
import logging
import re
from typing import List, Optional

from medguard.config import settings
from medguard.exceptions import CollaboratorUnavailable
from medguard.modules.name_matching import (
    NameMatcher, BidirectionalSubstringMatcher, ExactNameMatcher, PatternContainsMatcher
)
from medguard.schemas import (
    AlertType, AllergySeverity, ClinicalAlert, ClinicalCheckResult, DosageWarningRule,
    PrescriptionCheckRequest, PrescriptionSnapshot, Severity
)
from medguard.services.collaborators import PatientRecordGateway, RuleCatalog, bounded_call

logger = logging.getLogger(__name__)

DOSE_PATTERN = re.compile(r"(\d+\.?\d*)")

ALLERGY_SEVERITY_MAP = {
    AllergySeverity.LIFE_THREATENING.value: Severity.CRITICAL,
    AllergySeverity.SEVERE.value: Severity.MAJOR,
    AllergySeverity.MODERATE.value: Severity.MODERATE,
}


def parse_dose(dosage: str) -> Optional[float]:
    """First numeric token of a dosage string ("500mg" -> 500.0), or None"""
    match = DOSE_PATTERN.search(dosage or "")
    if not match:
        return None
    return float(match.group(1))


def map_allergy_severity(allergy_severity: str) -> Severity:
    """life_threatening -> critical, severe -> major, moderate -> moderate, else minor"""
    return ALLERGY_SEVERITY_MAP.get((allergy_severity or "").strip().lower(), Severity.MINOR)


def aggregate_alerts(alerts: List[ClinicalAlert]) -> ClinicalCheckResult:
    """
    Combine alerts from all checks into one result

    Overall severity is the highest-ranked alert severity; only a critical
    overall severity blocks the prescription.
    """
    ordered = sorted(alerts, key=lambda a: a.severity.rank, reverse=True)
    severity = ordered[0].severity if ordered else Severity.NONE
    return ClinicalCheckResult(
        has_alerts=bool(ordered),
        alerts=ordered,
        severity=severity,
        can_proceed=severity != Severity.CRITICAL
    )


# =============================================================================
# Clinical Check Base Class
# =============================================================================

class ClinicalCheck:
    """Base class for prescription safety checks"""

    def __init__(
        self,
        check_id: str,
        check_name: str,
        alert_type: AlertType,
        gateway: PatientRecordGateway,
        catalog: RuleCatalog,
        timeout: float
    ):
        self.check_id = check_id
        self.check_name = check_name
        self.alert_type = alert_type
        self.gateway = gateway
        self.catalog = catalog
        self.timeout = timeout

    async def evaluate(self, request: PrescriptionCheckRequest) -> List[ClinicalAlert]:
        """
        Evaluate check against a proposed prescription

        Args:
            request: Proposed prescription

        Returns:
            List of clinical alerts if the check is triggered
        """
        raise NotImplementedError("Subclasses must implement evaluate()")

    def _create_alert(
        self,
        severity: Severity,
        title: str,
        message: str,
        recommendations: str,
        clinical_impact: Optional[str] = None,
        management_strategy: Optional[str] = None
    ) -> ClinicalAlert:
        """Helper method to create clinical alert"""
        return ClinicalAlert(
            alert_type=self.alert_type,
            severity=severity,
            title=title,
            message=message,
            recommendations=recommendations,
            clinical_impact=clinical_impact,
            management_strategy=management_strategy
        )

    async def _active_prescriptions(self, request: PrescriptionCheckRequest) -> List[PrescriptionSnapshot]:
        prescriptions = await bounded_call(
            self.gateway.get_active_prescriptions(request.patient_id, request.tenant_id),
            self.timeout, "PatientRecordGateway", "get_active_prescriptions"
        )
        return [p for p in prescriptions if p.is_active]


# =============================================================================
# Drug Interaction Check
# =============================================================================

class DrugInteractionCheck(ClinicalCheck):
    """
    Check: New drug against every active medication for a catalog interaction
    The proposed drug is removed from the existing list to avoid a self-pair
    """

    def __init__(self, gateway, catalog, timeout, name_matcher: Optional[NameMatcher] = None):
        super().__init__(
            check_id="CDS_INTERACTION",
            check_name="Drug-Drug Interaction",
            alert_type=AlertType.DRUG_INTERACTION,
            gateway=gateway,
            catalog=catalog,
            timeout=timeout
        )
        self.name_matcher = name_matcher or ExactNameMatcher()

    async def evaluate(self, request: PrescriptionCheckRequest) -> List[ClinicalAlert]:
        alerts = []
        new_drug = request.drug_name

        existing_names = []
        seen = set()
        for prescription in await self._active_prescriptions(request):
            name = prescription.medication_name
            key = name.strip().lower()
            if self.name_matcher.matches(name, new_drug) or key in seen:
                continue
            seen.add(key)
            existing_names.append(name)

        for existing_drug in existing_names:
            rule = await bounded_call(
                self.catalog.find_interaction(new_drug, existing_drug),
                self.timeout, "RuleCatalog", "find_interaction"
            )
            if rule is None:
                continue

            alerts.append(self._create_alert(
                severity=rule.severity,
                title=f"Drug Interaction: {new_drug} <-> {existing_drug}",
                message=rule.description,
                recommendations=rule.management_strategy,
                clinical_impact=rule.clinical_impact,
                management_strategy=rule.management_strategy
            ))

        return alerts


# =============================================================================
# Allergy Check
# =============================================================================

class AllergyCheck(ClinicalCheck):
    """
    Check: Recorded allergies against the new drug
    Either name containing the other counts as a match
    """

    def __init__(self, gateway, catalog, timeout, allergy_matcher: Optional[NameMatcher] = None):
        super().__init__(
            check_id="CDS_ALLERGY",
            check_name="Allergy Verification",
            alert_type=AlertType.ALLERGY,
            gateway=gateway,
            catalog=catalog,
            timeout=timeout
        )
        self.allergy_matcher = allergy_matcher or BidirectionalSubstringMatcher()

    async def evaluate(self, request: PrescriptionCheckRequest) -> List[ClinicalAlert]:
        alerts = []
        drug_name = request.drug_name

        allergies = await bounded_call(
            self.gateway.get_allergies(request.patient_id, request.tenant_id),
            self.timeout, "PatientRecordGateway", "get_allergies"
        )

        for allergy in allergies:
            if not self.allergy_matcher.matches(drug_name, allergy.allergen):
                continue

            alerts.append(self._create_alert(
                severity=map_allergy_severity(allergy.severity),
                title=f"ALLERGY ALERT: {allergy.allergen}",
                message=(
                    f"Patient has documented {allergy.severity} allergy to {allergy.allergen}. "
                    f"Reaction: {allergy.reaction}"
                ),
                recommendations=(
                    f"Do not prescribe {drug_name}. Consider alternative medication. "
                    "Document override reason if absolutely necessary."
                ),
                clinical_impact=f"Previous reaction: {allergy.reaction}. Severity: {allergy.severity}."
            ))

        return alerts


# =============================================================================
# Dosage Check
# =============================================================================

class DosageCheck(ClinicalCheck):
    """
    Check: Numeric dose against condition-specific and general bounds
    Condition bounds: outside -> major, inside -> minor guidance
    General bounds: above maximum -> major
    """

    def __init__(self, gateway, catalog, timeout):
        super().__init__(
            check_id="CDS_DOSAGE",
            check_name="Dosage Validation",
            alert_type=AlertType.DOSAGE,
            gateway=gateway,
            catalog=catalog,
            timeout=timeout
        )

    async def evaluate(self, request: PrescriptionCheckRequest) -> List[ClinicalAlert]:
        alerts = []
        dose = parse_dose(request.dosage)

        if dose is None:
            # Cannot validate without a numeric dose
            logger.debug(f"No numeric dose in '{request.dosage}', skipping dosage check")
            return alerts

        conditions = []
        for condition in request.patient_conditions:
            normalized = condition.strip().lower()
            if normalized and normalized not in conditions:
                conditions.append(normalized)

        for condition in conditions:
            warning = await bounded_call(
                self.catalog.find_dosage_warning(request.drug_name, condition),
                self.timeout, "RuleCatalog", "find_dosage_warning"
            )
            if warning is not None:
                alert = self._condition_alert(request, dose, condition, warning)
                if alert is not None:
                    alerts.append(alert)

        general_warnings = await bounded_call(
            self.catalog.find_general_dosage_warnings(request.drug_name),
            self.timeout, "RuleCatalog", "find_general_dosage_warnings"
        )
        for warning in general_warnings:
            if warning.patient_condition:
                continue
            if warning.max_dose is not None and dose > warning.max_dose:
                alerts.append(self._create_alert(
                    severity=Severity.MAJOR,
                    title=f"Dosage Exceeds Maximum: {request.drug_name}",
                    message=(
                        f"Prescribed dose {request.dosage} exceeds maximum recommended dose of "
                        f"{warning.max_dose:g}{warning.unit}. {warning.warning_message}"
                    ),
                    recommendations=warning.adjustment_recommendation or "Reduce dose to within recommended range.",
                    clinical_impact=warning.warning_message
                ))

        return alerts

    def _condition_alert(
        self,
        request: PrescriptionCheckRequest,
        dose: float,
        condition: str,
        warning: DosageWarningRule
    ) -> Optional[ClinicalAlert]:
        if not warning.has_bounds:
            return None

        out_of_range = None
        if warning.min_dose is not None and dose < warning.min_dose:
            out_of_range = "below minimum"
        elif warning.max_dose is not None and dose > warning.max_dose:
            out_of_range = "above maximum"

        if out_of_range:
            return self._create_alert(
                severity=Severity.MAJOR,
                title=f"Dosage Warning: {request.drug_name} for {condition} patient",
                message=(
                    f"Prescribed dose {request.dosage} is {out_of_range} recommended range for "
                    f"{condition} patients. {warning.warning_message}"
                ),
                recommendations=(
                    warning.adjustment_recommendation
                    or "Review dosage and adjust based on patient condition."
                ),
                clinical_impact=warning.warning_message
            )

        low = f"{warning.min_dose:g}{warning.unit}" if warning.min_dose is not None else "(no min)"
        high = f"{warning.max_dose:g}{warning.unit}" if warning.max_dose is not None else "(no max)"
        return self._create_alert(
            severity=Severity.MINOR,
            title=f"Dosage Guidance: {request.drug_name} for {condition} patient",
            message=f"Recommended range for {condition} patients: {low} to {high}",
            recommendations=(
                warning.adjustment_recommendation
                or "Current dose is within acceptable range. Monitor patient response."
            ),
            clinical_impact=warning.warning_message
        )


# =============================================================================
# Duplicate Therapy Check
# =============================================================================

class DuplicateTherapyCheck(ClinicalCheck):
    """
    Check: Same drug already active, or another drug of the same class
    Exact and class duplicates are reported independently
    """

    def __init__(
        self,
        gateway,
        catalog,
        timeout,
        duplicate_matcher: Optional[NameMatcher] = None,
        class_matcher: Optional[NameMatcher] = None
    ):
        super().__init__(
            check_id="CDS_DUPLICATE",
            check_name="Duplicate Therapy",
            alert_type=AlertType.DUPLICATE_THERAPY,
            gateway=gateway,
            catalog=catalog,
            timeout=timeout
        )
        self.duplicate_matcher = duplicate_matcher or ExactNameMatcher()
        self.class_matcher = class_matcher or PatternContainsMatcher()

    async def evaluate(self, request: PrescriptionCheckRequest) -> List[ClinicalAlert]:
        alerts = []
        drug_name = request.drug_name
        active = await self._active_prescriptions(request)

        duplicates = [p for p in active if self.duplicate_matcher.matches(p.medication_name, drug_name)]
        if duplicates:
            alerts.append(self._create_alert(
                severity=Severity.MODERATE,
                title=f"Duplicate Therapy: {drug_name}",
                message=(
                    f"Patient already has active prescription(s) for {drug_name}. "
                    f"{len(duplicates)} active prescription(s) found."
                ),
                recommendations=(
                    "Verify patient is not already taking this medication. Consider adjusting "
                    "existing prescription instead of adding new one."
                ),
                clinical_impact="Risk of medication overdose and duplication of therapy."
            ))

        try:
            drug_classes = await bounded_call(
                self.catalog.list_drug_classes(),
                self.timeout, "RuleCatalog", "list_drug_classes"
            )
        except CollaboratorUnavailable:
            logger.warning("Drug class table unavailable; reporting exact duplicates only")
            return alerts

        for drug_class in drug_classes:
            if not self._in_class(drug_name, drug_class.patterns):
                continue

            existing_in_class = [
                p for p in active
                if self._in_class(p.medication_name, drug_class.patterns)
                and not self.duplicate_matcher.matches(p.medication_name, drug_name)
            ]
            if existing_in_class:
                existing_name = existing_in_class[0].medication_name
                alerts.append(self._create_alert(
                    severity=Severity.MODERATE,
                    title=f"Duplicate Drug Class: {drug_class.name}",
                    message=(
                        f"Patient already taking {existing_name} ({drug_class.name}). "
                        f"Adding {drug_name} may result in duplicate therapy."
                    ),
                    recommendations=(
                        f"Review need for multiple {drug_class.name} medications. Consider "
                        "discontinuing existing medication if switching, or ensure combination "
                        "is intentional."
                    ),
                    clinical_impact="Potential for additive side effects and increased risk of adverse events."
                ))

        return alerts

    def _in_class(self, name: str, patterns: List[str]) -> bool:
        return any(self.class_matcher.matches(name, pattern) for pattern in patterns)


# =============================================================================
# Clinical Rules Engine
# =============================================================================

class ClinicalRuleEngine:
    """
    Main clinical rules engine
    Runs all enabled checks concurrently and aggregates their alerts
    """

    def __init__(
        self,
        gateway: PatientRecordGateway,
        catalog: RuleCatalog,
        timeout: Optional[float] = None,
        allergy_matcher: Optional[NameMatcher] = None,
        duplicate_matcher: Optional[NameMatcher] = None,
        class_matcher: Optional[NameMatcher] = None
    ):
        """Initialize rules engine with all enabled checks"""
        timeout = timeout or settings.collaborator_timeout_seconds
        self.checks: List[ClinicalCheck] = []

        if settings.rules_drug_interaction:
            self.checks.append(DrugInteractionCheck(gateway, catalog, timeout, duplicate_matcher))

        if settings.rules_allergy:
            self.checks.append(AllergyCheck(gateway, catalog, timeout, allergy_matcher))

        if settings.rules_dosage:
            self.checks.append(DosageCheck(gateway, catalog, timeout))

        if settings.rules_duplicate_therapy:
            self.checks.append(DuplicateTherapyCheck(gateway, catalog, timeout, duplicate_matcher, class_matcher))

        logger.info(f"Initialized clinical rules engine with {len(self.checks)} checks")

    async def evaluate(self, request: PrescriptionCheckRequest) -> ClinicalCheckResult:
        """
        Screen a proposed prescription

        Never raises: a failing check contributes no alerts and the others
        still complete.

        Args:
            request: Proposed prescription

        Returns:
            Aggregated check result
        """
        try:
            results = await asyncio.gather(*(self._run_check(check, request) for check in self.checks))
        except Exception as e:
            logger.error(f"Clinical evaluation failed for patient {request.patient_id}: {e}", exc_info=True)
            return ClinicalCheckResult.empty()

        all_alerts = [alert for alerts in results for alert in alerts]
        result = aggregate_alerts(all_alerts)

        logger.info(
            f"Clinical evaluation for patient {request.patient_id}: "
            f"{len(result.alerts)} alerts, severity={result.severity.value}"
        )
        return result

    async def _run_check(self, check: ClinicalCheck, request: PrescriptionCheckRequest) -> List[ClinicalAlert]:
        try:
            alerts = await check.evaluate(request)
        except Exception as e:
            logger.warning(f"Check {check.check_id} failed, treating as no alerts: {e}", exc_info=True)
            return []

        if alerts:
            logger.info(f"Check {check.check_id} triggered {len(alerts)} alerts")
        return alerts

    def get_checks_by_type(self, alert_type: AlertType) -> List[ClinicalCheck]:
        """Get all checks producing a specific alert type"""
        return [c for c in self.checks if c.alert_type == alert_type]


# =============================================================================
# Public API
# =============================================================================

async def evaluate_prescription(
    request: PrescriptionCheckRequest,
    gateway: PatientRecordGateway,
    catalog: RuleCatalog
) -> ClinicalCheckResult:
    """
    Evaluate all clinical checks for a proposed prescription

    Args:
        request: Proposed prescription
        gateway: Patient record source
        catalog: Clinical reference data

    Returns:
        Aggregated check result
    """
    engine = ClinicalRuleEngine(gateway, catalog)
    return await engine.evaluate(request)
