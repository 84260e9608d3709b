"""
Wiring tests for the composed safety core
"""

import asyncio

from medguard.bootstrap import SafetyCore, build_safety_core
from medguard.config import settings
from medguard.database import create_all_tables, init_engine
from medguard.schemas import AssignmentType, Severity
from medguard.seed_data import seed_rule_catalog
from medguard.services.rate_limit_store import InMemoryRateLimitStore
from medguard.services.rule_catalog import SqlRuleCatalog


class TestBuildSafetyCore:
    """Test the composition root"""

    def test_end_to_end_proposal(self, tmp_path, gateway):
        """Test a wired core blocks a seeded critical interaction"""
        core = build_safety_core(gateway, database_url=f"sqlite:///{tmp_path / 'core.db'}")
        try:
            assert isinstance(core, SafetyCore)
            assert isinstance(core.catalog, SqlRuleCatalog)
            create_all_tables(core.engine)
            seed_rule_catalog(core.store.session_factory)

            gateway.add_patient("p-1", "t-1", prescriptions=["Warfarin"])
            asyncio.run(core.guard.assign("p-1", "dr-1", "t-1", AssignmentType.PRIMARY_CARE, "admin"))

            decision = asyncio.run(core.coordinator.propose_prescription(
                "dr-1", "p-1", "t-1", "Aspirin", "81mg", "daily"
            ))

            assert decision.allowed is False
            assert decision.result.severity == Severity.CRITICAL
        finally:
            core.dispose()


class TestCheckRateLimit:
    """Test rate limiting exposed by the core"""

    def test_limit_applies_per_key(self, tmp_path, gateway, monkeypatch):
        """Test calls past the configured limit are rejected"""
        monkeypatch.setattr(settings, "rate_limit_per_minute", 10)
        core = SafetyCore(
            init_engine(f"sqlite:///{tmp_path / 'rl.db'}"), gateway,
            rate_limit_store=InMemoryRateLimitStore(clock=lambda: 1000.0)
        )
        try:
            results = [core.check_rate_limit("api-key-1") for _ in range(11)]

            assert all(r.allowed for r in results[:10])
            assert not results[10].allowed
            assert core.check_rate_limit("api-key-2").allowed
        finally:
            core.dispose()

    def test_disabled_allows_everything(self, tmp_path, gateway):
        """Test a core without a store never rejects"""
        core = SafetyCore(init_engine(f"sqlite:///{tmp_path / 'rl.db'}"), gateway)
        try:
            result = core.check_rate_limit("api-key-1")

            assert result.allowed
            assert result.count == 0
        finally:
            core.dispose()
