"""
MedGuard - Patient Access and Clinical Safety Schemas
Pydantic models shared by the access-control guard, the clinical rule
engine and the safety decision coordinator
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# ============================================================================
# Enumerations - Clinical Safety
# ============================================================================

class Severity(str, Enum):
    """Clinical severity, ranked critical > major > moderate > minor > none"""
    CRITICAL = "critical"
    MAJOR = "major"
    MODERATE = "moderate"
    MINOR = "minor"
    NONE = "none"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.MAJOR: 3,
    Severity.MODERATE: 2,
    Severity.MINOR: 1,
    Severity.NONE: 0,
}


class AlertType(str, Enum):
    """Clinical alert types"""
    DRUG_INTERACTION = "drug_interaction"
    ALLERGY = "allergy"
    DOSAGE = "dosage"
    DUPLICATE_THERAPY = "duplicate_therapy"
    CONTRAINDICATION = "contraindication"


class AllergySeverity(str, Enum):
    """Recorded allergy severity"""
    LIFE_THREATENING = "life_threatening"
    SEVERE = "severe"
    MODERATE = "moderate"
    MILD = "mild"


class InteractionType(str, Enum):
    """Interaction rule types"""
    DRUG_DRUG = "drug_drug"
    DRUG_FOOD = "drug_food"
    DRUG_CONDITION = "drug_condition"


# Prescription statuses that no longer count as active therapy
INACTIVE_PRESCRIPTION_STATUSES = frozenset({"cancelled", "dispensed"})


# ============================================================================
# Enumerations - Access Control
# ============================================================================

class AssignmentType(str, Enum):
    """Physician-to-patient assignment types"""
    PRIMARY_CARE = "primary_care"
    CONSULTING = "consulting"
    TEMPORARY = "temporary"


class AccessRequestStatus(str, Enum):
    """Access request states; pending is the only state with exits"""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class RequestType(str, Enum):
    ACCESS = "access"
    TRANSFER = "transfer"
    CONSULTATION = "consultation"


class Urgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    EMERGENCY = "emergency"


class AccessType(str, Enum):
    READ = "read"
    WRITE = "write"
    FULL = "full"


class AccessMethod(str, Enum):
    """How an access decision was reached"""
    ASSIGNMENT = "assignment"
    ACCESS_REQUEST = "access_request"
    DENIED = "denied"


class ShareType(str, Enum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"
    VISIT_SPECIFIC = "visit_specific"


class ShareAccessLevel(str, Enum):
    READ_ONLY = "read_only"
    READ_WRITE = "read_write"
    FULL_ACCESS = "full_access"


class AccessJustification(str, Enum):
    """Why one tenant reads another tenant's patient data"""
    BILLING = "billing"
    LAB_HISTORY = "lab_history"
    PRESCRIPTION_FULFILLMENT = "prescription_fulfillment"
    CONTINUITY_OF_CARE = "continuity_of_care"


class AuditKind(str, Enum):
    """Audit entry kinds"""
    ACCESS_DECISION = "access_decision"
    CLINICAL_ALERT = "clinical_alert"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    CROSS_TENANT_READ = "cross_tenant_read"
    CROSS_TENANT_DENIED = "cross_tenant_denied"
    PLATFORM_ADMIN_QUERY = "platform_admin_query"


# ============================================================================
# Collaborator Facts (PatientRecordGateway / RuleCatalog)
# ============================================================================

class PrescriptionSnapshot(BaseModel):
    """Existing prescription as seen by the rule engine"""
    medication_name: str
    status: str = "prescribed"

    @property
    def is_active(self) -> bool:
        return self.status.lower() not in INACTIVE_PRESCRIPTION_STATUSES


class AllergyEntry(BaseModel):
    """Recorded patient allergy"""
    allergen: str
    severity: str = Field(..., description="life_threatening, severe, moderate or mild")
    reaction: str = ""


class InteractionRule(BaseModel):
    """Order-independent drug pair with a severity"""
    drug_name_1: str
    drug_name_2: str
    severity: Severity
    interaction_type: InteractionType = InteractionType.DRUG_DRUG
    description: str
    clinical_impact: str
    management_strategy: str
    source_reference: Optional[str] = None


class DosageWarningRule(BaseModel):
    """Dosing bounds for a drug, optionally scoped to a patient condition"""
    drug_name: str
    min_dose: Optional[float] = None
    max_dose: Optional[float] = None
    unit: str = "mg"
    frequency: Optional[str] = None
    patient_condition: Optional[str] = None
    warning_message: str
    adjustment_recommendation: Optional[str] = None

    @property
    def has_bounds(self) -> bool:
        return self.min_dose is not None or self.max_dose is not None


class DrugClass(BaseModel):
    """Therapeutic class recognised by name patterns"""
    name: str
    patterns: List[str] = Field(default_factory=list)


# ============================================================================
# Clinical Check Models
# ============================================================================

class PrescriptionCheckRequest(BaseModel):
    """Proposed prescription to screen"""
    patient_id: str
    tenant_id: str
    drug_name: str
    dosage: str
    frequency: str = ""
    prescriber_id: Optional[str] = None
    patient_conditions: List[str] = Field(
        default_factory=list,
        description="renal, hepatic, pediatric, geriatric, pregnancy, other"
    )


class ClinicalAlert(BaseModel):
    """Clinical safety alert produced by one check"""
    alert_type: AlertType
    severity: Severity
    title: str
    message: str
    recommendations: str = ""
    clinical_impact: Optional[str] = None
    management_strategy: Optional[str] = None

    @field_validator("severity")
    @classmethod
    def validate_severity(cls, v: Severity) -> Severity:
        """An alert always carries a real severity"""
        if v == Severity.NONE:
            raise ValueError("alert severity must be critical, major, moderate or minor")
        return v


class ClinicalCheckResult(BaseModel):
    """Aggregate of all alerts raised for one proposed prescription"""
    has_alerts: bool = False
    alerts: List[ClinicalAlert] = Field(default_factory=list)
    severity: Severity = Severity.NONE
    can_proceed: bool = True

    @classmethod
    def empty(cls) -> "ClinicalCheckResult":
        return cls()


class SafetyDecision(BaseModel):
    """Outcome of a prescription proposal"""
    allowed: bool
    result: ClinicalCheckResult = Field(default_factory=ClinicalCheckResult)


class AccessDecision(BaseModel):
    """Internal access decision; reason is for logs and audit only"""
    granted: bool
    method: AccessMethod
    reason: Optional[str] = None


# ============================================================================
# Audit Models
# ============================================================================

class AuditEntry(BaseModel):
    """Append-only audit entry"""
    tenant_id: str
    patient_id: Optional[str] = None
    actor_id: Optional[str] = None
    kind: AuditKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


# ============================================================================
# Query Scopes
# ============================================================================

class TenantScopedQuery(BaseModel):
    """Query restricted to a single tenant"""
    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1)


class PlatformAdminQuery(BaseModel):
    """Unfiltered query across tenants, always audited"""
    model_config = ConfigDict(frozen=True)

    admin_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    audit_tenant_id: str = Field("platform", min_length=1, description="Tenant the audit entry is owned by")


class CrossTenantAccessContext(BaseModel):
    """Explicit context required for every cross-tenant read"""
    model_config = ConfigDict(frozen=True)

    requesting_tenant_id: str = Field(..., min_length=1)
    owner_tenant_id: str = Field(..., min_length=1)
    actor_id: str = Field(..., min_length=1)
    justification: AccessJustification

    @model_validator(mode="after")
    def validate_distinct_tenants(self) -> "CrossTenantAccessContext":
        if self.requesting_tenant_id == self.owner_tenant_id:
            raise ValueError("cross-tenant context requires two different tenants")
        return self


# ============================================================================
# Persisted Record Views
# ============================================================================

class PatientAssignmentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    patient_id: str
    physician_id: str
    assignment_type: AssignmentType
    assigned_by: str
    assigned_date: datetime
    expiry_date: Optional[datetime] = None
    is_active: bool
    notes: Optional[str] = None


class AccessRequestView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    patient_id: str
    requesting_physician_id: str
    target_physician_id: Optional[str] = None
    request_type: RequestType
    reason: str
    urgency: Urgency
    access_type: AccessType
    status: AccessRequestStatus
    requested_date: datetime
    reviewed_by: Optional[str] = None
    reviewed_date: Optional[datetime] = None
    review_notes: Optional[str] = None
    access_granted_until: Optional[datetime] = None


class CrossTenantShareView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: str
    owner_tenant_id: str
    shared_with_tenant_id: str
    shared_by: str
    share_reason: Optional[str] = None
    share_type: ShareType
    access_level: ShareAccessLevel
    expires_at: Optional[datetime] = None
    is_active: bool


class ClinicalAlertRecordView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    patient_id: str
    prescription_id: Optional[str] = None
    alert_type: AlertType
    severity: Severity
    title: str
    message: str
    recommendations: Optional[str] = None
    triggered_by: str
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    dismissed_reason: Optional[str] = None
