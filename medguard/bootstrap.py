"""
MedGuard - Application Wiring
Builds the access-control and clinical-safety core for an in-process caller
"""

import logging
from typing import Optional

from sqlalchemy.engine import Engine

from medguard.config import settings
from medguard.database import create_session_factory, init_engine
from medguard.modules.access_control import AccessControlGuard
from medguard.modules.clinical_rules import ClinicalRuleEngine
from medguard.modules.cross_tenant import CrossTenantAccessor
from medguard.modules.safety_coordinator import SafetyDecisionCoordinator
from medguard.services.access_store import SqlAccessStore
from medguard.services.audit_sink import SqlAuditSink
from medguard.services.collaborators import PatientRecordGateway, RuleCatalog
from medguard.services.rate_limit_store import RateLimitResult, RateLimitStore, build_rate_limit_store
from medguard.services.rule_catalog import SqlRuleCatalog

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging() -> None:
    """Configure root logging from settings"""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format=LOG_FORMAT
    )


class SafetyCore:
    """Wired components exposed to the prescription workflow"""

    def __init__(
        self,
        engine: Engine,
        gateway: PatientRecordGateway,
        catalog: Optional[RuleCatalog] = None,
        rate_limit_store: Optional[RateLimitStore] = None
    ):
        session_factory = create_session_factory(engine)

        self.engine = engine
        self.store = SqlAccessStore(session_factory)
        self.audit_sink = SqlAuditSink(session_factory)
        self.catalog = catalog or SqlRuleCatalog(session_factory)
        self.guard = AccessControlGuard(self.store, gateway=gateway, audit_sink=self.audit_sink)
        self.rule_engine = ClinicalRuleEngine(gateway, self.catalog)
        self.coordinator = SafetyDecisionCoordinator(self.guard, self.rule_engine, self.audit_sink)
        self.cross_tenant = CrossTenantAccessor(self.store, gateway, self.audit_sink)
        self.rate_limit_store = rate_limit_store

    def check_rate_limit(self, key: str) -> RateLimitResult:
        """
        Count one call by key, such as an API key or actor id

        The caller decides where to apply the limit. With rate limiting
        disabled every call is allowed and nothing is counted.
        """
        if self.rate_limit_store is None:
            return RateLimitResult(allowed=True, count=0, reset_at=0.0)
        return self.rate_limit_store.hit(
            key, settings.rate_limit_per_minute, settings.rate_limit_window_seconds
        )

    def dispose(self) -> None:
        self.engine.dispose()
        logger.info("MedGuard core shut down")


def build_safety_core(
    gateway: PatientRecordGateway,
    database_url: Optional[str] = None,
    catalog: Optional[RuleCatalog] = None
) -> SafetyCore:
    """
    Build the core against the configured database

    Args:
        gateway: Patient record source owned by the caller
        database_url: Override of settings.database_url
        catalog: Rule catalog; defaults to the SQL reference tables

    Returns:
        SafetyCore with guard, coordinator and cross-tenant accessor
    """
    logger.info(f"Starting MedGuard core (environment: {settings.environment})")
    rate_limit_store = build_rate_limit_store() if settings.rate_limit_enabled else None
    return SafetyCore(init_engine(database_url), gateway, catalog, rate_limit_store)
