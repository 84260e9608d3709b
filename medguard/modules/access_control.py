"""
MedGuard Patient Access Control
Decides whether a physician may act on a patient within a tenant, and
manages the assignments and access requests that grant it
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from medguard.config import settings
from medguard.exceptions import (
    AccessDenied, CollaboratorUnavailable, InvalidQueryScope,
    UnknownPatientOrTenant
)
from medguard.schemas import (
    AccessDecision, AccessMethod, AccessRequestStatus, AccessRequestView, AccessType,
    AssignmentType, AuditEntry, AuditKind, PatientAssignmentView, PlatformAdminQuery,
    RequestType, TenantScopedQuery, Urgency, to_naive_utc, utcnow
)
from medguard.services.access_store import SqlAccessStore
from medguard.services.collaborators import PatientRecordGateway, bounded_call

logger = logging.getLogger(__name__)

QueryScope = Union[TenantScopedQuery, PlatformAdminQuery]


class AccessControlGuard:
    """
    Tenant- and physician-scoped patient access

    Access is granted by an active, unexpired assignment or by an approved
    access request whose grant has not expired. Both predicates are
    evaluated on every call. Any failure to read the grants denies access.
    """

    def __init__(
        self,
        store: SqlAccessStore,
        gateway: Optional[PatientRecordGateway] = None,
        audit_sink=None,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.gateway = gateway
        self.audit_sink = audit_sink
        self.timeout = timeout or settings.access_store_timeout_seconds
        self.clock = clock

    # =========================================================================
    # Access Decisions
    # =========================================================================

    async def has_access(self, actor_id: str, patient_id: str, tenant_id: str) -> bool:
        """True if actor may act on patient in tenant. Never raises."""
        decision = await self.check_access(actor_id, patient_id, tenant_id)
        return decision.granted

    async def check_access(self, actor_id: str, patient_id: str, tenant_id: str) -> AccessDecision:
        """
        Evaluate access and report how it was decided

        Args:
            actor_id: Physician asking for access
            patient_id: Patient record
            tenant_id: Tenant the request runs under

        Returns:
            AccessDecision; the reason is for logs and audit only
        """
        if not all((value or "").strip() for value in (actor_id, patient_id, tenant_id)):
            return AccessDecision(granted=False, method=AccessMethod.DENIED, reason="missing_identifier")

        now = self.clock()
        try:
            assignment = await bounded_call(
                self.store.find_active_assignment(actor_id, patient_id, tenant_id, now),
                self.timeout, "AccessStore", "find_active_assignment"
            )
            if assignment is not None:
                logger.info(f"Access granted to {actor_id} for patient {patient_id} via assignment {assignment.id}")
                return AccessDecision(granted=True, method=AccessMethod.ASSIGNMENT)

            request = await bounded_call(
                self.store.find_granting_request(actor_id, patient_id, tenant_id, now),
                self.timeout, "AccessStore", "find_granting_request"
            )
            if request is not None:
                logger.info(f"Access granted to {actor_id} for patient {patient_id} via request {request.id}")
                return AccessDecision(granted=True, method=AccessMethod.ACCESS_REQUEST)

        except CollaboratorUnavailable as e:
            logger.warning(f"Access check for {actor_id} on patient {patient_id} failed closed: {e}")
            return AccessDecision(granted=False, method=AccessMethod.DENIED, reason="access_store_unavailable")

        reason = await self._denial_reason(patient_id, tenant_id)
        logger.info(f"Access denied to {actor_id} for patient {patient_id} in tenant {tenant_id}: {reason}")
        return AccessDecision(granted=False, method=AccessMethod.DENIED, reason=reason)

    async def _denial_reason(self, patient_id: str, tenant_id: str) -> str:
        """Distinguish unknown patient from missing grant, for logs only"""
        if self.gateway is None:
            return AccessDenied.__name__
        try:
            exists = await bounded_call(
                self.gateway.patient_exists(patient_id, tenant_id),
                self.timeout, "PatientRecordGateway", "patient_exists"
            )
        except CollaboratorUnavailable:
            return AccessDenied.__name__
        return AccessDenied.__name__ if exists else UnknownPatientOrTenant.__name__

    # =========================================================================
    # Assignments
    # =========================================================================

    async def assign(
        self,
        patient_id: str,
        physician_id: str,
        tenant_id: str,
        assignment_type: AssignmentType,
        assigned_by: str,
        expiry_date: Optional[datetime] = None,
        notes: Optional[str] = None
    ) -> PatientAssignmentView:
        """
        Bind a physician to a patient

        Existing assignments are left in place; several physicians may be
        assigned at once.
        """
        assignment_type = AssignmentType(assignment_type)
        expiry_date = to_naive_utc(expiry_date)
        now = self.clock()
        if expiry_date is not None and expiry_date <= now:
            raise ValueError("expiry_date must be in the future")

        assignment = await bounded_call(
            self.store.create_assignment(
                tenant_id=tenant_id,
                patient_id=patient_id,
                physician_id=physician_id,
                assignment_type=assignment_type.value,
                assigned_by=assigned_by,
                assigned_date=now,
                expiry_date=expiry_date,
                is_active=True,
                notes=notes
            ),
            self.timeout, "AccessStore", "create_assignment"
        )
        logger.info(
            f"Assigned physician {physician_id} to patient {patient_id} "
            f"({assignment_type.value}) by {assigned_by}"
        )
        return assignment

    async def revoke(self, assignment_id: int, tenant_id: str) -> bool:
        """Soft-deactivate an assignment; False when nothing matched"""
        revoked = await bounded_call(
            self.store.deactivate_assignment(assignment_id, tenant_id),
            self.timeout, "AccessStore", "deactivate_assignment"
        )
        if revoked:
            logger.info(f"Revoked assignment {assignment_id} in tenant {tenant_id}")
        else:
            logger.info(f"No active assignment {assignment_id} in tenant {tenant_id} to revoke")
        return revoked

    # =========================================================================
    # Access Requests
    # =========================================================================

    async def request_access(
        self,
        tenant_id: str,
        patient_id: str,
        requesting_physician_id: str,
        reason: str,
        request_type: RequestType = RequestType.ACCESS,
        urgency: Urgency = Urgency.NORMAL,
        target_physician_id: Optional[str] = None,
        access_type: AccessType = AccessType.READ
    ) -> AccessRequestView:
        """Open a pending access request"""
        if not (reason or "").strip():
            raise ValueError("An access request needs a reason")

        request = await bounded_call(
            self.store.create_access_request(
                tenant_id=tenant_id,
                patient_id=patient_id,
                requesting_physician_id=requesting_physician_id,
                target_physician_id=target_physician_id,
                request_type=RequestType(request_type).value,
                reason=reason.strip(),
                urgency=Urgency(urgency).value,
                access_type=AccessType(access_type).value,
                status=AccessRequestStatus.PENDING.value,
                requested_date=self.clock()
            ),
            self.timeout, "AccessStore", "create_access_request"
        )
        logger.info(
            f"Access request {request.id} opened by {requesting_physician_id} "
            f"for patient {patient_id} (urgency={request.urgency.value})"
        )
        return request

    async def approve(
        self,
        request_id: int,
        tenant_id: str,
        reviewed_by: str,
        access_until: Optional[datetime] = None,
        review_notes: Optional[str] = None
    ) -> Optional[AccessRequestView]:
        """
        Approve a pending request

        Args:
            request_id: Request to approve
            tenant_id: Tenant of the reviewer; requests of other tenants are not found
            reviewed_by: Reviewer
            access_until: Grant expiry; None means no expiry, otherwise it must be in the future
            review_notes: Optional notes

        Returns:
            The approved request, or None if it is not pending in this tenant
        """
        access_until = to_naive_utc(access_until)
        now = self.clock()
        if access_until is not None:
            if access_until <= now:
                raise ValueError("access_until must be in the future")
            if access_until > now + timedelta(days=settings.access_request_max_days):
                raise ValueError(f"access_until may be at most {settings.access_request_max_days} days ahead")

        return await self._review(
            request_id, tenant_id, AccessRequestStatus.APPROVED, reviewed_by, now,
            review_notes, access_until
        )

    async def deny(
        self,
        request_id: int,
        tenant_id: str,
        reviewed_by: str,
        review_notes: str
    ) -> Optional[AccessRequestView]:
        """Deny a pending request; review_notes is mandatory"""
        if not (review_notes or "").strip():
            raise ValueError("review_notes are required to deny an access request")

        return await self._review(
            request_id, tenant_id, AccessRequestStatus.DENIED, reviewed_by, self.clock(),
            review_notes.strip(), None
        )

    async def _review(self, request_id, tenant_id, status, reviewed_by, reviewed_date,
                      review_notes, access_until) -> Optional[AccessRequestView]:
        reviewed = await bounded_call(
            self.store.review_request(
                request_id, tenant_id, status, reviewed_by, reviewed_date,
                review_notes, access_until
            ),
            self.timeout, "AccessStore", "review_request"
        )
        if reviewed is None:
            logger.info(
                f"Review to {status.value} ignored: request {request_id} "
                f"is not pending in tenant {tenant_id}"
            )
            return None

        logger.info(f"Access request {request_id} {status.value} by {reviewed_by}")
        return reviewed

    # =========================================================================
    # Listings
    # =========================================================================

    async def list_assignments(
        self, query: QueryScope, patient_id: Optional[str] = None, active_only: bool = True
    ) -> List[PatientAssignmentView]:
        """Assignments visible to the query scope"""
        await self._authorize_scope(query, "list_assignments", patient_id)
        return await bounded_call(
            self.store.list_assignments(query, patient_id=patient_id, active_only=active_only),
            self.timeout, "AccessStore", "list_assignments"
        )

    async def list_pending_requests(self, query: QueryScope) -> List[AccessRequestView]:
        """Pending requests visible to the query scope"""
        await self._authorize_scope(query, "list_pending_requests", None)
        return await bounded_call(
            self.store.list_pending_requests(query),
            self.timeout, "AccessStore", "list_pending_requests"
        )

    async def _authorize_scope(self, query: QueryScope, operation: str, patient_id: Optional[str]) -> None:
        if isinstance(query, TenantScopedQuery):
            return
        if not isinstance(query, PlatformAdminQuery):
            raise InvalidQueryScope(f"{operation} needs a TenantScopedQuery or PlatformAdminQuery")
        if self.audit_sink is None:
            raise InvalidQueryScope("Platform admin queries require an audit sink")

        await self.audit_sink.append(AuditEntry(
            tenant_id=query.audit_tenant_id,
            patient_id=patient_id,
            actor_id=query.admin_id,
            kind=AuditKind.PLATFORM_ADMIN_QUERY,
            payload={"operation": operation, "reason": query.reason}
        ))
        logger.info(f"Platform admin {query.admin_id} ran {operation}: {query.reason}")
