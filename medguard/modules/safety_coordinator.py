"""
MedGuard Safety Decision Coordinator
Single entry point for proposing a prescription: access check, clinical
screening, alert persistence
"""

import logging
from typing import List, Optional

from medguard.modules.access_control import AccessControlGuard
from medguard.modules.clinical_rules import ClinicalRuleEngine
from medguard.schemas import (
    AuditEntry, AuditKind, ClinicalCheckResult, PrescriptionCheckRequest, SafetyDecision
)
from medguard.services.audit_sink import AuditSink

logger = logging.getLogger(__name__)


class SafetyDecisionCoordinator:
    """
    Orchestrates access control and clinical screening

    Order per proposal: access decision (audited), then evaluation, then
    alert persistence. Audit failures propagate as AuditWriteFailure.
    """

    def __init__(self, guard: AccessControlGuard, engine: ClinicalRuleEngine, audit_sink: AuditSink):
        self.guard = guard
        self.engine = engine
        self.audit_sink = audit_sink

    async def propose_prescription(
        self,
        actor_id: str,
        patient_id: str,
        tenant_id: str,
        drug_name: str,
        dosage: str,
        frequency: str,
        conditions: Optional[List[str]] = None,
        prescription_id: Optional[str] = None
    ) -> SafetyDecision:
        """
        Screen a proposed prescription on behalf of actor_id

        An actor without access gets allowed=False and an empty result;
        no clinical data is read for them.

        Returns:
            SafetyDecision with allowed == result.can_proceed when access is granted

        Raises:
            AuditWriteFailure: the access decision or an alert could not be persisted
        """
        decision = await self.guard.check_access(actor_id, patient_id, tenant_id)

        await self.audit_sink.append(AuditEntry(
            tenant_id=tenant_id,
            patient_id=patient_id,
            actor_id=actor_id,
            kind=AuditKind.ACCESS_DECISION,
            payload={
                "granted": decision.granted,
                "method": decision.method.value,
                "reason": decision.reason,
                "operation": "propose_prescription",
            }
        ))

        if not decision.granted:
            return SafetyDecision(allowed=False, result=ClinicalCheckResult.empty())

        request = PrescriptionCheckRequest(
            patient_id=patient_id,
            tenant_id=tenant_id,
            drug_name=drug_name,
            dosage=dosage,
            frequency=frequency,
            prescriber_id=actor_id,
            patient_conditions=conditions or []
        )
        result = await self.engine.evaluate(request)

        if result.alerts:
            await self.audit_sink.record_alerts(
                tenant_id=tenant_id,
                patient_id=patient_id,
                alerts=result.alerts,
                triggered_by=actor_id,
                prescription_id=prescription_id
            )

        if not result.can_proceed:
            logger.warning(
                f"Prescription of {drug_name} for patient {patient_id} blocked: "
                f"{len(result.alerts)} alerts, severity={result.severity.value}"
            )
        return SafetyDecision(allowed=result.can_proceed, result=result)
