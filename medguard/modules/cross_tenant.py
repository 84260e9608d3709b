"""
MedGuard Cross-Tenant Access
Reads of another tenant's patient data (pharmacy billing, lab history)
through an explicit access context. Every read is audited before the data
is fetched; a read that cannot be audited does not happen.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from medguard.config import settings
from medguard.exceptions import CollaboratorUnavailable, MissingAccessContext
from medguard.schemas import (
    AllergyEntry, AuditEntry, AuditKind, CrossTenantAccessContext, CrossTenantShareView,
    PrescriptionSnapshot, ShareAccessLevel, ShareType, to_naive_utc, utcnow
)
from medguard.services.access_store import SqlAccessStore
from medguard.services.audit_sink import AuditSink
from medguard.services.collaborators import PatientRecordGateway, bounded_call

logger = logging.getLogger(__name__)


class CrossTenantAccessor:
    """Audited reads of a patient shared by its owner tenant"""

    def __init__(
        self,
        store: SqlAccessStore,
        gateway: PatientRecordGateway,
        audit_sink: AuditSink,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.gateway = gateway
        self.audit_sink = audit_sink
        self.timeout = timeout or settings.collaborator_timeout_seconds
        self.clock = clock

    # =========================================================================
    # Sharing
    # =========================================================================

    async def share_patient(
        self,
        patient_id: str,
        owner_tenant_id: str,
        shared_with_tenant_id: str,
        shared_by: str,
        share_type: ShareType,
        access_level: ShareAccessLevel = ShareAccessLevel.READ_ONLY,
        share_reason: Optional[str] = None,
        expires_at: Optional[datetime] = None
    ) -> CrossTenantShareView:
        """Share a patient of owner_tenant_id with another tenant"""
        share_type = ShareType(share_type)
        expires_at = to_naive_utc(expires_at)
        if owner_tenant_id == shared_with_tenant_id:
            raise ValueError("A patient cannot be shared with its own tenant")
        if share_type == ShareType.TEMPORARY and expires_at is None:
            raise ValueError("Temporary shares need an expiry")
        if expires_at is not None and expires_at <= self.clock():
            raise ValueError("expires_at must be in the future")

        share = await bounded_call(
            self.store.create_share(
                patient_id=patient_id,
                owner_tenant_id=owner_tenant_id,
                shared_with_tenant_id=shared_with_tenant_id,
                shared_by=shared_by,
                share_reason=share_reason,
                share_type=share_type.value,
                access_level=ShareAccessLevel(access_level).value,
                expires_at=expires_at,
                is_active=True
            ),
            self.timeout, "AccessStore", "create_share"
        )
        logger.info(f"Patient {patient_id} shared by {owner_tenant_id} with {shared_with_tenant_id}")
        return share

    async def revoke_share(self, share_id: int, owner_tenant_id: str) -> bool:
        """Deactivate a share; only the owner tenant can revoke it"""
        return await bounded_call(
            self.store.deactivate_share(share_id, owner_tenant_id),
            self.timeout, "AccessStore", "deactivate_share"
        )

    # =========================================================================
    # Audited Reads
    # =========================================================================

    async def read_allergies(
        self, context: CrossTenantAccessContext, patient_id: str
    ) -> Optional[List[AllergyEntry]]:
        """Allergies of a shared patient, or None when not permitted or unavailable"""
        if not await self._authorize(context, patient_id, "allergies"):
            return None
        return await self._fetch(
            self.gateway.get_allergies(patient_id, context.owner_tenant_id), "get_allergies"
        )

    async def read_active_prescriptions(
        self, context: CrossTenantAccessContext, patient_id: str
    ) -> Optional[List[PrescriptionSnapshot]]:
        """Active prescriptions of a shared patient, or None when not permitted or unavailable"""
        if not await self._authorize(context, patient_id, "active_prescriptions"):
            return None
        return await self._fetch(
            self.gateway.get_active_prescriptions(patient_id, context.owner_tenant_id),
            "get_active_prescriptions"
        )

    async def _authorize(self, context: CrossTenantAccessContext, patient_id: str, resource: str) -> bool:
        """
        Check the share and write the audit entry

        Raises:
            MissingAccessContext: context absent or of the wrong type
            AuditWriteFailure: the audit entry could not be written
        """
        if not isinstance(context, CrossTenantAccessContext):
            raise MissingAccessContext("Cross-tenant reads require a CrossTenantAccessContext")

        try:
            share = await bounded_call(
                self.store.find_active_share(
                    patient_id, context.owner_tenant_id, context.requesting_tenant_id, self.clock()
                ),
                self.timeout, "AccessStore", "find_active_share"
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Share lookup failed closed for patient {patient_id}: {e}")
            share = None

        payload = {
            "resource": resource,
            "owner_tenant_id": context.owner_tenant_id,
            "justification": context.justification.value,
        }
        if share is None:
            await self.audit_sink.append(AuditEntry(
                tenant_id=context.requesting_tenant_id,
                patient_id=patient_id,
                actor_id=context.actor_id,
                kind=AuditKind.CROSS_TENANT_DENIED,
                payload=payload
            ))
            logger.info(
                f"Cross-tenant read of {resource} denied: {context.requesting_tenant_id} -> "
                f"{context.owner_tenant_id}, patient {patient_id}"
            )
            return False

        payload["share_id"] = share.id
        await self.audit_sink.append(AuditEntry(
            tenant_id=context.requesting_tenant_id,
            patient_id=patient_id,
            actor_id=context.actor_id,
            kind=AuditKind.CROSS_TENANT_READ,
            payload=payload
        ))
        return True

    async def _fetch(self, awaitable, operation: str):
        try:
            return await bounded_call(awaitable, self.timeout, "PatientRecordGateway", operation)
        except CollaboratorUnavailable as e:
            logger.warning(f"Cross-tenant {operation} unavailable: {e}")
            return None
