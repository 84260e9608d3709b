"""
MedGuard - External Collaborator Contracts
PatientRecordGateway and RuleCatalog are owned outside this core; only
their contracts are consumed here. Every call goes through bounded_call so
that a slow collaborator surfaces as CollaboratorUnavailable.
"""

import asyncio
import logging
from typing import Awaitable, List, Optional, Protocol, TypeVar, runtime_checkable

from medguard.exceptions import CollaboratorUnavailable
from medguard.schemas import (
    AllergyEntry, DosageWarningRule, DrugClass, InteractionRule, PrescriptionSnapshot
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class PatientRecordGateway(Protocol):
    """Read-only access to a patient's clinical facts"""

    async def get_active_prescriptions(self, patient_id: str, tenant_id: str) -> List[PrescriptionSnapshot]:
        ...

    async def get_allergies(self, patient_id: str, tenant_id: str) -> List[AllergyEntry]:
        ...

    async def patient_exists(self, patient_id: str, tenant_id: str) -> bool:
        ...


@runtime_checkable
class RuleCatalog(Protocol):
    """Read-only clinical reference data"""

    async def find_interaction(self, drug_a: str, drug_b: str) -> Optional[InteractionRule]:
        ...

    async def find_dosage_warning(self, drug_name: str, condition: Optional[str] = None) -> Optional[DosageWarningRule]:
        ...

    async def find_general_dosage_warnings(self, drug_name: str) -> List[DosageWarningRule]:
        ...

    async def list_drug_classes(self) -> List[DrugClass]:
        ...


async def bounded_call(
    awaitable: Awaitable[T],
    timeout: float,
    collaborator: str,
    operation: str
) -> T:
    """
    Await a collaborator call under a timeout

    A timeout abandons the wait, not the work: a store write already
    running in a worker thread may still commit. For mutations,
    CollaboratorUnavailable means the outcome is unknown; re-read before
    acting on it. Repeating revoke, approve or deny is safe, since a
    second attempt finds nothing to change and returns False or None.

    Args:
        awaitable: Pending collaborator call
        timeout: Seconds before the call is abandoned
        collaborator: Collaborator name for logs
        operation: Operation name for logs

    Returns:
        The collaborator's result

    Raises:
        CollaboratorUnavailable: on timeout or any collaborator error
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(f"{collaborator}.{operation} timed out after {timeout}s")
        raise CollaboratorUnavailable(collaborator, operation, e) from e
    except CollaboratorUnavailable:
        raise
    except Exception as e:
        logger.warning(f"{collaborator}.{operation} failed: {e!r}")
        raise CollaboratorUnavailable(collaborator, operation, e) from e
