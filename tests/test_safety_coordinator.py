"""
Integration tests for the safety decision coordinator
"""

import asyncio

import pytest

from medguard.exceptions import AuditWriteFailure
from medguard.models import AuditLog
from medguard.modules.access_control import AccessControlGuard
from medguard.modules.clinical_rules import ClinicalRuleEngine
from medguard.modules.safety_coordinator import SafetyDecisionCoordinator
from medguard.schemas import (
    AlertType, AllergyEntry, AssignmentType, AuditKind, Severity, TenantScopedQuery
)
from medguard.services.access_store import SqlAccessStore
from medguard.services.audit_sink import SqlAuditSink

TENANT = "tenant-a"
PATIENT = "patient-1"
DOCTOR = "dr-house"
STRANGER = "dr-nobody"


class RejectingSink:
    """Audit sink that cannot write"""

    async def append(self, entry):
        raise AuditWriteFailure("audit store offline")

    async def record_alerts(self, *args, **kwargs):
        raise AuditWriteFailure("audit store offline")


@pytest.fixture
def audit_sink(session_factory):
    return SqlAuditSink(session_factory)


@pytest.fixture
def guard(session_factory, gateway):
    return AccessControlGuard(SqlAccessStore(session_factory), gateway=gateway, timeout=1.0)


@pytest.fixture
def coordinator(guard, gateway, catalog, audit_sink):
    engine = ClinicalRuleEngine(gateway, catalog, timeout=1.0)
    return SafetyDecisionCoordinator(guard, engine, audit_sink)


@pytest.fixture
def assigned(guard, gateway):
    gateway.add_patient(PATIENT, TENANT, prescriptions=["Warfarin"])
    asyncio.run(guard.assign(PATIENT, DOCTOR, TENANT, AssignmentType.PRIMARY_CARE, "admin-1"))


def propose(coordinator, actor_id=DOCTOR, drug_name="Aspirin", dosage="81mg", prescription_id=None):
    return asyncio.run(coordinator.propose_prescription(
        actor_id, PATIENT, TENANT, drug_name, dosage, "daily", prescription_id=prescription_id
    ))


class TestProposePrescription:
    """Test the end-to-end proposal flow"""

    def test_denied_actor_gets_no_clinical_data(self, coordinator, gateway, catalog, assigned, audit_sink):
        """Test an actor without access never reaches the rule engine"""
        decision = propose(coordinator, actor_id=STRANGER)

        assert decision.allowed is False
        assert decision.result.alerts == []
        assert "get_active_prescriptions" not in gateway.calls
        assert "get_allergies" not in gateway.calls
        assert catalog.calls == []

        entries = asyncio.run(audit_sink.list_entries(TenantScopedQuery(tenant_id=TENANT)))
        assert [e.kind for e in entries] == [AuditKind.ACCESS_DECISION]
        assert entries[0].payload["granted"] is False

    def test_clean_prescription_allowed(self, coordinator, assigned, audit_sink):
        """Test no alerts means allowed and nothing persisted"""
        decision = propose(coordinator, drug_name="Metformin", dosage="500mg")

        assert decision.allowed is True
        assert decision.result.severity == Severity.NONE
        assert asyncio.run(audit_sink.list_alerts(TenantScopedQuery(tenant_id=TENANT))) == []

    def test_critical_interaction_blocks_and_persists(self, coordinator, catalog, assigned, audit_sink):
        """Test a critical alert blocks and is recorded with its trigger"""
        catalog.add_interaction("Warfarin", "Aspirin", Severity.CRITICAL, "Bleeding risk")

        decision = propose(coordinator, prescription_id="rx-42")

        assert decision.allowed is False
        assert decision.result.severity == Severity.CRITICAL

        alerts = asyncio.run(audit_sink.list_alerts(TenantScopedQuery(tenant_id=TENANT), patient_id=PATIENT))
        assert len(alerts) == 1
        assert alerts[0].triggered_by == DOCTOR
        assert alerts[0].prescription_id == "rx-42"
        assert alerts[0].alert_type == AlertType.DRUG_INTERACTION

        kinds = [e.kind for e in asyncio.run(audit_sink.list_entries(TenantScopedQuery(tenant_id=TENANT)))]
        assert kinds == [AuditKind.ACCESS_DECISION, AuditKind.CLINICAL_ALERT]

    def test_major_alert_allows(self, coordinator, gateway, assigned):
        """Test a major allergy alert does not block"""
        gateway.allergies[(PATIENT, TENANT)] = [AllergyEntry(allergen="Aspirin", severity="severe")]

        decision = propose(coordinator)

        assert decision.allowed is True
        assert decision.result.severity == Severity.MAJOR

    def test_allowed_matches_can_proceed(self, coordinator, gateway, catalog, assigned):
        """Test allowed mirrors the clinical result once access is granted"""
        catalog.add_interaction("Warfarin", "Aspirin", Severity.MODERATE)

        decision = propose(coordinator)

        assert decision.allowed == decision.result.can_proceed


class TestAuditFailures:
    """Test audit failures are never swallowed"""

    def test_access_decision_audit_failure_propagates(self, guard, gateway, catalog, assigned):
        """Test the proposal fails when the access decision cannot be audited"""
        coordinator = SafetyDecisionCoordinator(
            guard, ClinicalRuleEngine(gateway, catalog, timeout=1.0), RejectingSink()
        )

        with pytest.raises(AuditWriteFailure):
            propose(coordinator)
        assert catalog.calls == []

    def test_database_failure_becomes_audit_write_failure(self, coordinator, catalog, assigned, db_engine):
        """Test a missing audit table surfaces after retries as AuditWriteFailure"""
        catalog.add_interaction("Warfarin", "Aspirin", Severity.CRITICAL)
        AuditLog.__table__.drop(db_engine)

        with pytest.raises(AuditWriteFailure):
            propose(coordinator)
