"""
MedGuard - SQL Rule Catalog
Read-only lookup of interaction rules, dosage warnings and drug classes
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Set

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import sessionmaker

from medguard.models import DosageWarning, DrugClassPattern, DrugInteractionRule
from medguard.schemas import DosageWarningRule, DrugClass, InteractionRule, Severity

logger = logging.getLogger(__name__)


class SqlRuleCatalog:
    """RuleCatalog backed by the reference-data tables"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # =========================================================================
    # Interaction Rules
    # =========================================================================

    async def find_interaction(self, drug_a: str, drug_b: str) -> Optional[InteractionRule]:
        """
        Find the most severe active rule for an unordered drug pair

        A rule may name a drug or a drug class ("Statins"); both names are
        expanded to their classes before matching.
        """
        return await asyncio.to_thread(self._find_interaction, drug_a, drug_b)

    def _find_interaction(self, drug_a: str, drug_b: str) -> Optional[InteractionRule]:
        if not (drug_a or "").strip() or not (drug_b or "").strip():
            return None

        with self.session_factory() as session:
            classes = self._load_classes(session)
            names_a = self._candidate_names(drug_a, classes)
            names_b = self._candidate_names(drug_b, classes)

            name_1 = func.lower(DrugInteractionRule.drug_name_1)
            name_2 = func.lower(DrugInteractionRule.drug_name_2)
            stmt = select(DrugInteractionRule).where(
                DrugInteractionRule.is_active.is_(True),
                or_(
                    and_(name_1.in_(names_a), name_2.in_(names_b)),
                    and_(name_1.in_(names_b), name_2.in_(names_a)),
                )
            )
            rows = session.scalars(stmt).all()

        if not rows:
            return None

        row = max(rows, key=lambda r: Severity(r.severity).rank)
        logger.debug(f"Interaction found: {row.drug_name_1} <-> {row.drug_name_2} ({row.severity})")
        return InteractionRule(
            drug_name_1=row.drug_name_1,
            drug_name_2=row.drug_name_2,
            severity=row.severity,
            interaction_type=row.interaction_type,
            description=row.description,
            clinical_impact=row.clinical_impact,
            management_strategy=row.management_strategy,
            source_reference=row.source_reference
        )

    @staticmethod
    def _candidate_names(drug_name: str, classes: Dict[str, List[str]]) -> Set[str]:
        name = drug_name.strip().lower()
        names = {name}
        for class_name, patterns in classes.items():
            if any(p in name for p in patterns):
                names.add(class_name.lower())
        return names

    # =========================================================================
    # Dosage Warnings
    # =========================================================================

    async def find_dosage_warning(self, drug_name: str, condition: Optional[str] = None) -> Optional[DosageWarningRule]:
        """Active warning for a drug and condition (None condition = general)"""
        return await asyncio.to_thread(self._find_dosage_warning, drug_name, condition)

    def _find_dosage_warning(self, drug_name: str, condition: Optional[str]) -> Optional[DosageWarningRule]:
        stmt = select(DosageWarning).where(
            DosageWarning.is_active.is_(True),
            func.lower(DosageWarning.drug_name) == (drug_name or "").strip().lower()
        )
        if condition:
            stmt = stmt.where(func.lower(DosageWarning.patient_condition) == condition.strip().lower())
        else:
            stmt = stmt.where(DosageWarning.patient_condition.is_(None))

        with self.session_factory() as session:
            row = session.scalars(stmt.order_by(DosageWarning.id)).first()

        return self._to_warning(row) if row is not None else None

    async def find_general_dosage_warnings(self, drug_name: str) -> List[DosageWarningRule]:
        """All active warnings for a drug"""
        return await asyncio.to_thread(self._find_general_dosage_warnings, drug_name)

    def _find_general_dosage_warnings(self, drug_name: str) -> List[DosageWarningRule]:
        stmt = select(DosageWarning).where(
            DosageWarning.is_active.is_(True),
            func.lower(DosageWarning.drug_name) == (drug_name or "").strip().lower()
        ).order_by(DosageWarning.id)

        with self.session_factory() as session:
            rows = session.scalars(stmt).all()

        return [self._to_warning(r) for r in rows]

    @staticmethod
    def _to_warning(row: DosageWarning) -> DosageWarningRule:
        return DosageWarningRule(
            drug_name=row.drug_name,
            min_dose=row.min_dose,
            max_dose=row.max_dose,
            unit=row.unit,
            frequency=row.frequency,
            patient_condition=row.patient_condition,
            warning_message=row.warning_message,
            adjustment_recommendation=row.adjustment_recommendation
        )

    # =========================================================================
    # Drug Classes
    # =========================================================================

    async def list_drug_classes(self) -> List[DrugClass]:
        """Therapeutic classes with their name patterns"""
        return await asyncio.to_thread(self._list_drug_classes)

    def _list_drug_classes(self) -> List[DrugClass]:
        with self.session_factory() as session:
            classes = self._load_classes(session)
        return [DrugClass(name=name, patterns=patterns) for name, patterns in classes.items()]

    @staticmethod
    def _load_classes(session) -> Dict[str, List[str]]:
        stmt = select(DrugClassPattern).where(
            DrugClassPattern.is_active.is_(True)
        ).order_by(DrugClassPattern.class_name, DrugClassPattern.id)

        classes: Dict[str, List[str]] = defaultdict(list)
        for row in session.scalars(stmt):
            classes[row.class_name].append(row.pattern.strip().lower())
        return dict(classes)
