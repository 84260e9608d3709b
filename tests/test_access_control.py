"""
Unit tests for patient access control
"""

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from medguard.exceptions import CollaboratorUnavailable, InvalidQueryScope
from medguard.modules.access_control import AccessControlGuard
from medguard.schemas import (
    AccessMethod, AccessRequestStatus, AssignmentType, AuditKind, PlatformAdminQuery,
    TenantScopedQuery, Urgency
)
from medguard.services.access_store import SqlAccessStore
from medguard.services.audit_sink import SqlAuditSink

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
PATIENT = "patient-1"
DOCTOR = "dr-house"
ADMIN = "admin-1"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class UnreachableStore:
    """Access store whose grant lookups fail or hang"""

    def __init__(self, hang: bool = False):
        self.hang = hang

    async def _lookup(self):
        if self.hang:
            await asyncio.sleep(5)
        raise ConnectionError("database unreachable")

    async def find_active_assignment(self, *args):
        return await self._lookup()

    async def find_granting_request(self, *args):
        return await self._lookup()


class SlowWriteStore(SqlAccessStore):
    """Access store whose deactivation commits only after a delay"""

    def __init__(self, session_factory, delay: float = 0.3):
        super().__init__(session_factory)
        self.delay = delay
        self.committed = threading.Event()

    def _deactivate_assignment(self, assignment_id, tenant_id):
        time.sleep(self.delay)
        revoked = super()._deactivate_assignment(assignment_id, tenant_id)
        self.committed.set()
        return revoked


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 9, 0, 0))


@pytest.fixture
def store(session_factory):
    return SqlAccessStore(session_factory)


@pytest.fixture
def audit_sink(session_factory):
    return SqlAuditSink(session_factory)


@pytest.fixture
def guard(store, gateway, audit_sink, clock):
    return AccessControlGuard(store, gateway=gateway, audit_sink=audit_sink, timeout=1.0, clock=clock)


def assign(guard, **overrides):
    values = dict(
        patient_id=PATIENT,
        physician_id=DOCTOR,
        tenant_id=TENANT,
        assignment_type=AssignmentType.PRIMARY_CARE,
        assigned_by=ADMIN
    )
    values.update(overrides)
    return asyncio.run(guard.assign(**values))


def open_request(guard, tenant_id=TENANT, physician_id=DOCTOR):
    return asyncio.run(guard.request_access(tenant_id, PATIENT, physician_id, "Covering on-call shift"))


class TestHasAccess:
    """Test access decisions"""

    def test_no_grant_no_access(self, guard):
        """Test access is denied without assignment or request"""
        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is False

    def test_assignment_grants_access(self, guard):
        """Test an active assignment grants access"""
        assign(guard)

        decision = asyncio.run(guard.check_access(DOCTOR, PATIENT, TENANT))

        assert decision.granted
        assert decision.method == AccessMethod.ASSIGNMENT

    def test_assignment_is_tenant_scoped(self, guard):
        """Test an assignment in one tenant grants nothing in another"""
        assign(guard)

        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, OTHER_TENANT)) is False

    def test_expired_assignment_denies(self, guard, clock):
        """Test assignment expiry is evaluated at check time"""
        assign(guard, assignment_type=AssignmentType.TEMPORARY, expiry_date=clock.now + timedelta(hours=8))
        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is True

        clock.advance(hours=9)

        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is False

    def test_aware_expiry_date_is_converted_to_utc(self, guard, clock):
        """Test an offset-aware expiry is compared and stored as UTC"""
        plus_five = timezone(timedelta(hours=5))

        # 07:00 UTC is before the clock's 09:00
        with pytest.raises(ValueError):
            assign(guard, expiry_date=datetime(2026, 1, 15, 12, 0, tzinfo=plus_five))

        assignment = assign(guard, expiry_date=datetime(2026, 1, 15, 17, 0, tzinfo=plus_five))

        assert assignment.expiry_date == datetime(2026, 1, 15, 12, 0)
        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is True
        clock.advance(hours=4)
        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is False

    def test_revoke_takes_effect_immediately(self, guard):
        """Test revocation denies access and keeps the row"""
        assignment = assign(guard)
        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is True

        assert asyncio.run(guard.revoke(assignment.id, TENANT)) is True

        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is False
        history = asyncio.run(guard.list_assignments(TenantScopedQuery(tenant_id=TENANT), active_only=False))
        assert [a.id for a in history] == [assignment.id]
        assert history[0].is_active is False

    def test_revoke_twice_or_cross_tenant(self, guard):
        """Test revoke reports False when nothing matched"""
        assignment = assign(guard)

        assert asyncio.run(guard.revoke(assignment.id, OTHER_TENANT)) is False
        assert asyncio.run(guard.revoke(assignment.id, TENANT)) is True
        assert asyncio.run(guard.revoke(assignment.id, TENANT)) is False

    def test_approved_request_grants_until_expiry(self, guard, clock):
        """Test an approved request stops granting once access_until passes"""
        request = open_request(guard)
        asyncio.run(guard.approve(request.id, TENANT, ADMIN, access_until=clock.now + timedelta(days=1)))

        decision = asyncio.run(guard.check_access(DOCTOR, PATIENT, TENANT))
        assert decision.granted
        assert decision.method == AccessMethod.ACCESS_REQUEST

        clock.advance(days=2)

        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is False
        grant = asyncio.run(guard.store.find_granting_request(DOCTOR, PATIENT, TENANT, clock.now))
        assert grant is None

    def test_pending_request_grants_nothing(self, guard):
        """Test only approved requests grant access"""
        open_request(guard)

        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is False

    def test_missing_identifier_denied(self, guard):
        """Test blank identifiers are denied without a lookup"""
        decision = asyncio.run(guard.check_access("", PATIENT, TENANT))

        assert not decision.granted
        assert decision.reason == "missing_identifier"

    def test_denial_reason_distinguishes_unknown_patient(self, guard, gateway):
        """Test the denial reason names an unknown patient"""
        gateway.add_patient(PATIENT, TENANT)

        known = asyncio.run(guard.check_access(DOCTOR, PATIENT, TENANT))
        unknown = asyncio.run(guard.check_access(DOCTOR, "ghost", TENANT))

        assert known.reason == "AccessDenied"
        assert unknown.reason == "UnknownPatientOrTenant"


class TestFailClosed:
    """Test access store failures deny access"""

    def test_store_error_denies(self, gateway):
        """Test a failing store denies access instead of raising"""
        guard = AccessControlGuard(UnreachableStore(), gateway=gateway, timeout=1.0)

        decision = asyncio.run(guard.check_access(DOCTOR, PATIENT, TENANT))

        assert not decision.granted
        assert decision.reason == "access_store_unavailable"

    def test_store_timeout_denies(self, gateway):
        """Test a hung store is abandoned and access denied"""
        guard = AccessControlGuard(UnreachableStore(hang=True), gateway=gateway, timeout=0.05)

        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is False

    def test_timed_out_revoke_outcome_is_unknown(self, session_factory, gateway, clock):
        """Test a revoke abandoned on timeout may still commit, and repeating it is safe"""
        store = SlowWriteStore(session_factory)
        guard = AccessControlGuard(store, gateway=gateway, timeout=0.05, clock=clock)
        assignment = assign(guard)

        with pytest.raises(CollaboratorUnavailable):
            asyncio.run(guard.revoke(assignment.id, TENANT))

        assert store.committed.wait(timeout=5)
        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is False

        store.delay = 0
        assert asyncio.run(guard.revoke(assignment.id, TENANT)) is False


class TestAccessRequests:
    """Test the access request lifecycle"""

    def test_request_opens_pending(self, guard):
        """Test a new request is pending with defaults"""
        request = open_request(guard)

        assert request.status == AccessRequestStatus.PENDING
        assert request.urgency == Urgency.NORMAL
        assert request.reviewed_by is None

    def test_request_requires_reason(self, guard):
        """Test an empty reason is rejected"""
        with pytest.raises(ValueError):
            asyncio.run(guard.request_access(TENANT, PATIENT, DOCTOR, "   "))

    def test_approve_sets_review_fields(self, guard, clock):
        """Test approval records reviewer, date and expiry"""
        request = open_request(guard)
        until = clock.now + timedelta(days=7)

        approved = asyncio.run(guard.approve(request.id, TENANT, ADMIN, access_until=until, review_notes="ok"))

        assert approved.status == AccessRequestStatus.APPROVED
        assert approved.reviewed_by == ADMIN
        assert approved.reviewed_date == clock.now
        assert approved.access_granted_until == until

    def test_approve_validates_expiry(self, guard, clock):
        """Test access_until must be in the future and within the maximum window"""
        request = open_request(guard)

        with pytest.raises(ValueError):
            asyncio.run(guard.approve(request.id, TENANT, ADMIN, access_until=clock.now - timedelta(minutes=1)))
        with pytest.raises(ValueError):
            asyncio.run(guard.approve(request.id, TENANT, ADMIN, access_until=clock.now + timedelta(days=365)))

    def test_approve_accepts_aware_expiry(self, guard, clock):
        """Test an offset-aware access_until is validated and stored as UTC"""
        request = open_request(guard)
        aware_now = clock.now.replace(tzinfo=timezone.utc)

        with pytest.raises(ValueError):
            asyncio.run(guard.approve(request.id, TENANT, ADMIN, access_until=aware_now - timedelta(hours=1)))
        with pytest.raises(ValueError):
            asyncio.run(guard.approve(request.id, TENANT, ADMIN, access_until=aware_now + timedelta(days=365)))

        approved = asyncio.run(guard.approve(
            request.id, TENANT, ADMIN,
            access_until=(aware_now + timedelta(days=1)).astimezone(timezone(timedelta(hours=-5)))
        ))

        assert approved.access_granted_until == clock.now + timedelta(days=1)
        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is True

    def test_deny_requires_notes(self, guard):
        """Test a denial needs review notes"""
        request = open_request(guard)

        with pytest.raises(ValueError):
            asyncio.run(guard.deny(request.id, TENANT, ADMIN, ""))

        denied = asyncio.run(guard.deny(request.id, TENANT, ADMIN, "Not on the care team"))
        assert denied.status == AccessRequestStatus.DENIED
        assert denied.review_notes == "Not on the care team"

    def test_transitions_are_one_way(self, guard):
        """Test a reviewed request cannot be reviewed again"""
        request = open_request(guard)
        asyncio.run(guard.deny(request.id, TENANT, ADMIN, "No"))

        assert asyncio.run(guard.approve(request.id, TENANT, ADMIN)) is None
        assert asyncio.run(guard.deny(request.id, TENANT, ADMIN, "Again")) is None
        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is False

    def test_review_is_tenant_scoped(self, guard):
        """Test a reviewer from another tenant cannot approve"""
        request = open_request(guard)

        assert asyncio.run(guard.approve(request.id, OTHER_TENANT, ADMIN)) is None
        assert asyncio.run(guard.has_access(DOCTOR, PATIENT, TENANT)) is False

    def test_concurrent_reviews_single_winner(self, guard):
        """Test of two concurrent reviews exactly one applies"""
        request = open_request(guard)

        async def review_both():
            return await asyncio.gather(
                guard.approve(request.id, TENANT, ADMIN),
                guard.deny(request.id, TENANT, "admin-2", "Declined")
            )

        results = asyncio.run(review_both())

        assert sum(r is not None for r in results) == 1


class TestQueryScopes:
    """Test tenant-scoped and platform-admin listings"""

    def test_tenant_scope_filters(self, guard):
        """Test a tenant query sees only its own rows"""
        assign(guard)
        assign(guard, tenant_id=OTHER_TENANT)

        rows = asyncio.run(guard.list_assignments(TenantScopedQuery(tenant_id=TENANT)))

        assert [r.tenant_id for r in rows] == [TENANT]

    def test_admin_scope_is_unfiltered_and_audited(self, guard, audit_sink):
        """Test a platform admin query sees every tenant and leaves an audit entry"""
        open_request(guard)
        open_request(guard, tenant_id=OTHER_TENANT)
        query = PlatformAdminQuery(admin_id=ADMIN, reason="Quarterly compliance review")

        rows = asyncio.run(guard.list_pending_requests(query))

        assert {r.tenant_id for r in rows} == {TENANT, OTHER_TENANT}
        entries = asyncio.run(audit_sink.list_entries(query, kind=AuditKind.PLATFORM_ADMIN_QUERY))
        assert len(entries) == 1
        assert entries[0].actor_id == ADMIN
        assert entries[0].payload["reason"] == "Quarterly compliance review"

    def test_missing_scope_rejected(self, guard):
        """Test a listing without a scope object fails"""
        with pytest.raises(InvalidQueryScope):
            asyncio.run(guard.list_assignments(None))
        with pytest.raises(InvalidQueryScope):
            asyncio.run(guard.list_pending_requests(TENANT))

    def test_admin_scope_needs_audit_sink(self, store):
        """Test admin queries are refused when they cannot be audited"""
        guard = AccessControlGuard(store, timeout=1.0)

        with pytest.raises(InvalidQueryScope):
            asyncio.run(guard.list_assignments(PlatformAdminQuery(admin_id=ADMIN, reason="audit")))

    def test_tenant_scope_requires_tenant(self):
        """Test an empty tenant id is not a valid scope"""
        with pytest.raises(ValueError):
            TenantScopedQuery(tenant_id="")
