"""
MedGuard - Access Store
SQL persistence for patient assignments, access requests and cross-tenant
shares. Every read and write names its tenant explicitly; unfiltered reads
exist only behind PlatformAdminQuery.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy import or_, select, update
from sqlalchemy.orm import sessionmaker

from medguard.exceptions import InvalidQueryScope
from medguard.models import CrossTenantShare, PatientAccessRequest, PatientAssignment
from medguard.schemas import (
    AccessRequestStatus, AccessRequestView, CrossTenantShareView, PatientAssignmentView,
    PlatformAdminQuery, TenantScopedQuery
)

logger = logging.getLogger(__name__)

QueryScope = Union[TenantScopedQuery, PlatformAdminQuery]


def apply_scope(stmt, tenant_column, scope: QueryScope):
    """Restrict a select to the scope's tenant; platform-admin scope is unfiltered"""
    if isinstance(scope, TenantScopedQuery):
        return stmt.where(tenant_column == scope.tenant_id)
    if isinstance(scope, PlatformAdminQuery):
        return stmt
    raise InvalidQueryScope(f"Unsupported query scope: {type(scope).__name__}")


class SqlAccessStore:
    """Repository for access-control records"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # =========================================================================
    # Grant Lookups
    # =========================================================================

    async def find_active_assignment(
        self, physician_id: str, patient_id: str, tenant_id: str, now: datetime
    ) -> Optional[PatientAssignmentView]:
        """Active, unexpired assignment for (physician, patient, tenant)"""
        return await asyncio.to_thread(self._find_active_assignment, physician_id, patient_id, tenant_id, now)

    def _find_active_assignment(self, physician_id, patient_id, tenant_id, now):
        stmt = select(PatientAssignment).where(
            PatientAssignment.tenant_id == tenant_id,
            PatientAssignment.patient_id == patient_id,
            PatientAssignment.physician_id == physician_id,
            PatientAssignment.is_active.is_(True),
            or_(PatientAssignment.expiry_date.is_(None), PatientAssignment.expiry_date > now)
        ).order_by(PatientAssignment.id)

        with self.session_factory() as session:
            row = session.scalars(stmt).first()
        return PatientAssignmentView.model_validate(row) if row is not None else None

    async def find_granting_request(
        self, physician_id: str, patient_id: str, tenant_id: str, now: datetime
    ) -> Optional[AccessRequestView]:
        """Approved request whose grant has no expiry or expires after now"""
        return await asyncio.to_thread(self._find_granting_request, physician_id, patient_id, tenant_id, now)

    def _find_granting_request(self, physician_id, patient_id, tenant_id, now):
        stmt = select(PatientAccessRequest).where(
            PatientAccessRequest.tenant_id == tenant_id,
            PatientAccessRequest.patient_id == patient_id,
            PatientAccessRequest.requesting_physician_id == physician_id,
            PatientAccessRequest.status == AccessRequestStatus.APPROVED.value,
            or_(
                PatientAccessRequest.access_granted_until.is_(None),
                PatientAccessRequest.access_granted_until > now
            )
        ).order_by(PatientAccessRequest.id)

        with self.session_factory() as session:
            row = session.scalars(stmt).first()
        return AccessRequestView.model_validate(row) if row is not None else None

    # =========================================================================
    # Assignments
    # =========================================================================

    async def create_assignment(self, **values) -> PatientAssignmentView:
        return await asyncio.to_thread(self._insert, PatientAssignment, PatientAssignmentView, values)

    async def deactivate_assignment(self, assignment_id: int, tenant_id: str) -> bool:
        """Soft delete; False when no active row matched in this tenant"""
        return await asyncio.to_thread(self._deactivate_assignment, assignment_id, tenant_id)

    def _deactivate_assignment(self, assignment_id, tenant_id):
        stmt = update(PatientAssignment).where(
            PatientAssignment.id == assignment_id,
            PatientAssignment.tenant_id == tenant_id,
            PatientAssignment.is_active.is_(True)
        ).values(is_active=False)

        with self.session_factory() as session:
            result = session.execute(stmt)
            session.commit()
        return result.rowcount > 0

    async def list_assignments(
        self, scope: QueryScope, patient_id: Optional[str] = None, active_only: bool = True
    ) -> List[PatientAssignmentView]:
        return await asyncio.to_thread(self._list_assignments, scope, patient_id, active_only)

    def _list_assignments(self, scope, patient_id, active_only):
        stmt = apply_scope(select(PatientAssignment), PatientAssignment.tenant_id, scope)
        if patient_id is not None:
            stmt = stmt.where(PatientAssignment.patient_id == patient_id)
        if active_only:
            stmt = stmt.where(PatientAssignment.is_active.is_(True))

        with self.session_factory() as session:
            rows = session.scalars(stmt.order_by(PatientAssignment.id)).all()
        return [PatientAssignmentView.model_validate(r) for r in rows]

    # =========================================================================
    # Access Requests
    # =========================================================================

    async def create_access_request(self, **values) -> AccessRequestView:
        return await asyncio.to_thread(self._insert, PatientAccessRequest, AccessRequestView, values)

    async def review_request(
        self,
        request_id: int,
        tenant_id: str,
        status: AccessRequestStatus,
        reviewed_by: str,
        reviewed_date: datetime,
        review_notes: Optional[str] = None,
        access_granted_until: Optional[datetime] = None
    ) -> Optional[AccessRequestView]:
        """
        Move a pending request to approved or denied

        The UPDATE is conditional on tenant and pending status, so of two
        concurrent reviewers exactly one wins. Returns None when nothing
        matched (wrong tenant, unknown id, or already reviewed).
        """
        return await asyncio.to_thread(
            self._review_request, request_id, tenant_id, status, reviewed_by,
            reviewed_date, review_notes, access_granted_until
        )

    def _review_request(self, request_id, tenant_id, status, reviewed_by, reviewed_date,
                        review_notes, access_granted_until):
        stmt = update(PatientAccessRequest).where(
            PatientAccessRequest.id == request_id,
            PatientAccessRequest.tenant_id == tenant_id,
            PatientAccessRequest.status == AccessRequestStatus.PENDING.value
        ).values(
            status=status.value,
            reviewed_by=reviewed_by,
            reviewed_date=reviewed_date,
            review_notes=review_notes,
            access_granted_until=access_granted_until
        )

        with self.session_factory() as session:
            result = session.execute(stmt)
            session.commit()
            if result.rowcount == 0:
                return None
            row = session.get(PatientAccessRequest, request_id)
            return AccessRequestView.model_validate(row)

    async def list_pending_requests(self, scope: QueryScope) -> List[AccessRequestView]:
        return await asyncio.to_thread(self._list_pending_requests, scope)

    def _list_pending_requests(self, scope):
        stmt = apply_scope(select(PatientAccessRequest), PatientAccessRequest.tenant_id, scope).where(
            PatientAccessRequest.status == AccessRequestStatus.PENDING.value
        ).order_by(PatientAccessRequest.requested_date, PatientAccessRequest.id)

        with self.session_factory() as session:
            rows = session.scalars(stmt).all()
        return [AccessRequestView.model_validate(r) for r in rows]

    # =========================================================================
    # Cross-Tenant Shares
    # =========================================================================

    async def create_share(self, **values) -> CrossTenantShareView:
        return await asyncio.to_thread(self._insert, CrossTenantShare, CrossTenantShareView, values)

    async def deactivate_share(self, share_id: int, owner_tenant_id: str) -> bool:
        return await asyncio.to_thread(self._deactivate_share, share_id, owner_tenant_id)

    def _deactivate_share(self, share_id, owner_tenant_id):
        stmt = update(CrossTenantShare).where(
            CrossTenantShare.id == share_id,
            CrossTenantShare.owner_tenant_id == owner_tenant_id,
            CrossTenantShare.is_active.is_(True)
        ).values(is_active=False)

        with self.session_factory() as session:
            result = session.execute(stmt)
            session.commit()
        return result.rowcount > 0

    async def find_active_share(
        self, patient_id: str, owner_tenant_id: str, shared_with_tenant_id: str, now: datetime
    ) -> Optional[CrossTenantShareView]:
        return await asyncio.to_thread(
            self._find_active_share, patient_id, owner_tenant_id, shared_with_tenant_id, now
        )

    def _find_active_share(self, patient_id, owner_tenant_id, shared_with_tenant_id, now):
        stmt = select(CrossTenantShare).where(
            CrossTenantShare.patient_id == patient_id,
            CrossTenantShare.owner_tenant_id == owner_tenant_id,
            CrossTenantShare.shared_with_tenant_id == shared_with_tenant_id,
            CrossTenantShare.is_active.is_(True),
            or_(CrossTenantShare.expires_at.is_(None), CrossTenantShare.expires_at > now)
        ).order_by(CrossTenantShare.id)

        with self.session_factory() as session:
            row = session.scalars(stmt).first()
        return CrossTenantShareView.model_validate(row) if row is not None else None

    # =========================================================================
    # Helpers
    # =========================================================================

    def _insert(self, model, view, values):
        with self.session_factory() as session:
            row = model(**values)
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.debug(f"Inserted {row!r}")
            return view.model_validate(row)
