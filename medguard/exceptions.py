"""
MedGuard error taxonomy

AuditWriteFailure, MissingAccessContext and InvalidQueryScope reach
callers. CollaboratorUnavailable reaches callers of mutating operations
only; access checks and clinical evaluation turn it into a denial or
no alerts. InvalidRequestApprovalState names the state in which approve
and deny return None; it is not raised.
"""

from typing import Optional


class MedguardError(Exception):
    """Base class for all MedGuard errors"""


class AccessDenied(MedguardError):
    """Actor holds no assignment or approved request for the patient"""


class UnknownPatientOrTenant(AccessDenied):
    """Patient does not exist in the claimed tenant (logged, never returned)"""


class CollaboratorUnavailable(MedguardError):
    """An external collaborator timed out or failed"""

    def __init__(self, collaborator: str, operation: str, cause: Optional[Exception] = None):
        self.collaborator = collaborator
        self.operation = operation
        self.cause = cause
        detail = f": {cause!r}" if cause is not None else ""
        super().__init__(f"{collaborator}.{operation} unavailable{detail}")


class InvalidRequestApprovalState(MedguardError):
    """Access request is not pending, or belongs to another tenant"""


class AuditWriteFailure(MedguardError):
    """Persisting an audit entry or clinical alert failed"""


class MissingAccessContext(MedguardError):
    """Cross-tenant accessor called without an explicit access context"""


class InvalidQueryScope(MedguardError):
    """Query scope is neither tenant-scoped nor platform-admin"""
