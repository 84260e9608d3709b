"""
MedGuard - Audit Sink
Append-only record of access decisions and clinical alerts. A failed
write raises AuditWriteFailure to the caller.
"""

import asyncio
import logging
from typing import List, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from medguard.config import settings
from medguard.exceptions import AuditWriteFailure
from medguard.models import AuditLog, ClinicalAlertRecord
from medguard.schemas import (
    AuditEntry, AuditKind, ClinicalAlert, ClinicalAlertRecordView, Severity, utcnow
)
from medguard.services.access_store import QueryScope, apply_scope

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """Write side of the audit trail"""

    async def append(self, entry: AuditEntry) -> None:
        ...

    async def record_alerts(
        self,
        tenant_id: str,
        patient_id: str,
        alerts: List[ClinicalAlert],
        triggered_by: str,
        prescription_id: Optional[str] = None
    ) -> List[int]:
        ...


def _audit_row(entry: AuditEntry) -> AuditLog:
    return AuditLog(
        timestamp=entry.timestamp,
        tenant_id=entry.tenant_id,
        patient_id=entry.patient_id,
        actor_id=entry.actor_id,
        kind=entry.kind.value,
        payload=entry.payload
    )


class SqlAuditSink:
    """AuditSink writing to the audit_log and clinical_alerts tables"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # =========================================================================
    # Writes
    # =========================================================================

    async def append(self, entry: AuditEntry) -> None:
        """
        Append one audit entry

        Raises:
            AuditWriteFailure: when the entry could not be persisted
        """
        try:
            await asyncio.to_thread(self._commit_rows, [_audit_row(entry)])
        except Exception as e:
            logger.error(f"Audit write failed for {entry.kind.value} in tenant {entry.tenant_id}: {e}")
            raise AuditWriteFailure(f"Could not persist {entry.kind.value} audit entry") from e

    async def record_alerts(
        self,
        tenant_id: str,
        patient_id: str,
        alerts: List[ClinicalAlert],
        triggered_by: str,
        prescription_id: Optional[str] = None
    ) -> List[int]:
        """
        Persist clinical alerts and their audit entries in one transaction

        Either every alert is written or none is.

        Returns:
            Ids of the persisted alert records
        """
        if not alerts:
            return []

        try:
            ids = await asyncio.to_thread(
                self._write_alerts, tenant_id, patient_id, alerts, triggered_by, prescription_id
            )
        except Exception as e:
            logger.error(f"Failed to persist {len(alerts)} clinical alerts for patient {patient_id}: {e}")
            raise AuditWriteFailure(f"Could not persist clinical alerts for patient {patient_id}") from e

        logger.info(f"Persisted {len(ids)} clinical alerts for patient {patient_id}")
        return ids

    @retry(
        stop=stop_after_attempt(settings.audit_write_max_attempts),
        wait=wait_exponential(multiplier=settings.audit_retry_wait_seconds, max=2),
        retry=retry_if_exception_type(SQLAlchemyError),
        reraise=True
    )
    def _commit_rows(self, rows: list) -> None:
        """Insert rows with retry on database errors"""
        with self.session_factory() as session:
            session.add_all(rows)
            session.commit()

    @retry(
        stop=stop_after_attempt(settings.audit_write_max_attempts),
        wait=wait_exponential(multiplier=settings.audit_retry_wait_seconds, max=2),
        retry=retry_if_exception_type(SQLAlchemyError),
        reraise=True
    )
    def _write_alerts(self, tenant_id, patient_id, alerts, triggered_by, prescription_id) -> List[int]:
        with self.session_factory() as session:
            records = [
                ClinicalAlertRecord(
                    tenant_id=tenant_id,
                    patient_id=patient_id,
                    prescription_id=prescription_id,
                    alert_type=alert.alert_type.value,
                    severity=alert.severity.value,
                    title=alert.title,
                    message=alert.message,
                    recommendations=alert.recommendations,
                    triggered_by=triggered_by
                )
                for alert in alerts
            ]
            session.add_all(records)
            session.flush()

            session.add_all([
                _audit_row(AuditEntry(
                    tenant_id=tenant_id,
                    patient_id=patient_id,
                    actor_id=triggered_by,
                    kind=AuditKind.CLINICAL_ALERT,
                    payload={
                        "alert_id": record.id,
                        "alert_type": record.alert_type,
                        "severity": record.severity,
                        "prescription_id": prescription_id,
                    }
                ))
                for record in records
            ])
            session.commit()
            return [record.id for record in records]

    # =========================================================================
    # Acknowledgement
    # =========================================================================

    async def acknowledge_alert(
        self,
        alert_id: int,
        tenant_id: str,
        acknowledged_by: str,
        dismissed_reason: Optional[str] = None
    ) -> Optional[ClinicalAlertRecordView]:
        """
        Acknowledge a persisted alert

        Only the acknowledgement fields change. A critical alert needs a
        dismissal reason. An alert that is already acknowledged is returned
        unchanged; an alert of another tenant is not found (None).
        """
        return await asyncio.to_thread(
            self._acknowledge_alert, alert_id, tenant_id, acknowledged_by, dismissed_reason
        )

    def _acknowledge_alert(self, alert_id, tenant_id, acknowledged_by, dismissed_reason):
        with self.session_factory() as session:
            row = session.scalars(
                select(ClinicalAlertRecord).where(
                    ClinicalAlertRecord.id == alert_id,
                    ClinicalAlertRecord.tenant_id == tenant_id
                )
            ).first()
            if row is None:
                return None
            if row.acknowledged_by is not None:
                return ClinicalAlertRecordView.model_validate(row)
            if row.severity == Severity.CRITICAL.value and not (dismissed_reason or "").strip():
                raise ValueError("A dismissal reason is required to acknowledge a critical alert")

            acknowledged_at = utcnow()
            result = session.execute(
                update(ClinicalAlertRecord).where(
                    ClinicalAlertRecord.id == alert_id,
                    ClinicalAlertRecord.acknowledged_by.is_(None)
                ).values(
                    acknowledged_by=acknowledged_by,
                    acknowledged_at=acknowledged_at,
                    dismissed_reason=dismissed_reason
                )
            )
            if result.rowcount:
                session.add(_audit_row(AuditEntry(
                    tenant_id=tenant_id,
                    patient_id=row.patient_id,
                    actor_id=acknowledged_by,
                    kind=AuditKind.ALERT_ACKNOWLEDGED,
                    payload={"alert_id": alert_id, "dismissed_reason": dismissed_reason},
                    timestamp=acknowledged_at
                )))
            session.commit()
            session.refresh(row)
            return ClinicalAlertRecordView.model_validate(row)

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_entries(
        self,
        scope: QueryScope,
        patient_id: Optional[str] = None,
        kind: Optional[AuditKind] = None
    ) -> List[AuditEntry]:
        return await asyncio.to_thread(self._list_entries, scope, patient_id, kind)

    def _list_entries(self, scope, patient_id, kind):
        stmt = apply_scope(select(AuditLog), AuditLog.tenant_id, scope)
        if patient_id is not None:
            stmt = stmt.where(AuditLog.patient_id == patient_id)
        if kind is not None:
            stmt = stmt.where(AuditLog.kind == kind.value)

        with self.session_factory() as session:
            rows = session.scalars(stmt.order_by(AuditLog.id)).all()
        return [
            AuditEntry(
                tenant_id=r.tenant_id,
                patient_id=r.patient_id,
                actor_id=r.actor_id,
                kind=r.kind,
                payload=r.payload,
                timestamp=r.timestamp
            )
            for r in rows
        ]

    async def list_alerts(
        self, scope: QueryScope, patient_id: Optional[str] = None
    ) -> List[ClinicalAlertRecordView]:
        return await asyncio.to_thread(self._list_alerts, scope, patient_id)

    def _list_alerts(self, scope, patient_id):
        stmt = apply_scope(select(ClinicalAlertRecord), ClinicalAlertRecord.tenant_id, scope)
        if patient_id is not None:
            stmt = stmt.where(ClinicalAlertRecord.patient_id == patient_id)

        with self.session_factory() as session:
            rows = session.scalars(stmt.order_by(ClinicalAlertRecord.id)).all()
        return [ClinicalAlertRecordView.model_validate(r) for r in rows]
