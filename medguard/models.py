"""
MedGuard Database Models
SQLAlchemy 2.0 ORM models for access control, clinical alerts, audit and
rule catalog reference data
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import (
    Boolean, DateTime, Float, Integer, String, Text, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

from medguard.schemas import utcnow


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# =============================================================================
# Access Control Models
# =============================================================================

class PatientAssignment(Base, TimestampMixin):
    """Durable physician-to-patient binding within one tenant"""
    __tablename__ = "patient_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    physician_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    assignment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    assigned_by: Mapped[str] = mapped_column(String(64), nullable=False)
    assigned_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expiry_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Soft delete only; rows are retained for audit
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(
            "assignment_type IN ('primary_care', 'consulting', 'temporary')",
            name="valid_assignment_type"
        ),
        Index("idx_assignment_lookup", "tenant_id", "patient_id", "physician_id", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<PatientAssignment(id={self.id}, patient={self.patient_id}, physician={self.physician_id})>"


class PatientAccessRequest(Base, TimestampMixin):
    """Time-bounded access exception requested by an unassigned physician"""
    __tablename__ = "patient_access_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    requesting_physician_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    target_physician_id: Mapped[Optional[str]] = mapped_column(String(64))

    request_type: Mapped[str] = mapped_column(String(20), default="access", nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    urgency: Mapped[str] = mapped_column(String(20), default="normal", nullable=False)
    access_type: Mapped[str] = mapped_column(String(20), default="read", nullable=False)

    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False, index=True)
    requested_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64))
    reviewed_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    review_notes: Mapped[Optional[str]] = mapped_column(Text)
    access_granted_until: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'approved', 'denied')", name="valid_request_status"),
        Index("idx_request_lookup", "tenant_id", "patient_id", "requesting_physician_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<PatientAccessRequest(id={self.id}, patient={self.patient_id}, status={self.status})>"


class CrossTenantShare(Base, TimestampMixin):
    """Patient shared by its owner tenant with another tenant"""
    __tablename__ = "cross_tenant_shares"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    owner_tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    shared_with_tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    shared_by: Mapped[str] = mapped_column(String(64), nullable=False)

    share_reason: Mapped[Optional[str]] = mapped_column(Text)
    share_type: Mapped[str] = mapped_column(String(20), nullable=False)
    access_level: Mapped[str] = mapped_column(String(20), default="read_only", nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("idx_share_lookup", "patient_id", "owner_tenant_id", "shared_with_tenant_id", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<CrossTenantShare(id={self.id}, patient={self.patient_id}, with={self.shared_with_tenant_id})>"


# =============================================================================
# Clinical Alert and Audit Models
# =============================================================================

class ClinicalAlertRecord(Base, TimestampMixin):
    """Persisted clinical safety alert; immutable apart from acknowledgement"""
    __tablename__ = "clinical_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    prescription_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)

    alert_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    recommendations: Mapped[Optional[str]] = mapped_column(Text)
    triggered_by: Mapped[str] = mapped_column(String(64), nullable=False)

    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(64))
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    dismissed_reason: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(
            "severity IN ('critical', 'major', 'moderate', 'minor')",
            name="valid_alert_severity"
        ),
        CheckConstraint(
            "alert_type IN ('drug_interaction', 'allergy', 'dosage', 'duplicate_therapy', 'contraindication')",
            name="valid_alert_type"
        ),
        Index("idx_alert_patient_severity", "tenant_id", "patient_id", "severity"),
    )

    def __repr__(self) -> str:
        return f"<ClinicalAlertRecord(id={self.id}, type={self.alert_type}, severity={self.severity})>"


class AuditLog(Base):
    """Append-only audit log of access decisions and clinical alerts"""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)

    # Owner is the tenant whose context the check ran under
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    patient_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)

    kind: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("idx_audit_tenant_patient", "tenant_id", "patient_id"),
        Index("idx_audit_actor_kind", "actor_id", "kind"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, kind={self.kind}, tenant={self.tenant_id})>"


# =============================================================================
# Rule Catalog Reference Data
# =============================================================================

class DrugInteractionRule(Base):
    """Drug-drug, drug-food or drug-condition interaction"""
    __tablename__ = "drug_interaction_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    drug_name_1: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    drug_name_2: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    interaction_type: Mapped[str] = mapped_column(String(20), default="drug_drug", nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    clinical_impact: Mapped[str] = mapped_column(Text, nullable=False)
    management_strategy: Mapped[str] = mapped_column(Text, nullable=False)
    source_reference: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "severity IN ('critical', 'major', 'moderate', 'minor')",
            name="valid_interaction_severity"
        ),
    )

    def __repr__(self) -> str:
        return f"<DrugInteractionRule({self.drug_name_1} <-> {self.drug_name_2}, {self.severity})>"


class DosageWarning(Base):
    """Dosing bounds, optionally scoped to a patient condition"""
    __tablename__ = "dosage_warnings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    drug_name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    min_dose: Mapped[Optional[float]] = mapped_column(Float)
    max_dose: Mapped[Optional[float]] = mapped_column(Float)
    unit: Mapped[str] = mapped_column(String(20), nullable=False)
    frequency: Mapped[Optional[str]] = mapped_column(String(50))
    patient_condition: Mapped[Optional[str]] = mapped_column(String(30), index=True)
    warning_message: Mapped[str] = mapped_column(Text, nullable=False)
    adjustment_recommendation: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<DosageWarning({self.drug_name}, condition={self.patient_condition})>"


class DrugClassPattern(Base):
    """One name pattern belonging to a therapeutic class"""
    __tablename__ = "drug_class_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    class_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    pattern: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<DrugClassPattern({self.class_name}: {self.pattern})>"
