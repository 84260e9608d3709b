"""
Shared fixtures: file-backed SQLite database and in-memory collaborators
"""

import asyncio
from typing import Dict, List, Optional, Set, Tuple

import pytest

from medguard.database import create_all_tables, create_session_factory, init_engine
from medguard.schemas import (
    AllergyEntry, DosageWarningRule, DrugClass, InteractionRule, PrescriptionSnapshot
)


class FakeGateway:
    """PatientRecordGateway over dicts keyed by (patient_id, tenant_id)"""

    def __init__(self):
        self.prescriptions: Dict[Tuple[str, str], List[PrescriptionSnapshot]] = {}
        self.allergies: Dict[Tuple[str, str], List[AllergyEntry]] = {}
        self.patients: Set[Tuple[str, str]] = set()
        self.failing: Set[str] = set()
        self.slow: Set[str] = set()
        self.calls: List[str] = []

    def add_patient(self, patient_id, tenant_id, prescriptions=(), allergies=()):
        self.patients.add((patient_id, tenant_id))
        self.prescriptions[(patient_id, tenant_id)] = [
            p if isinstance(p, PrescriptionSnapshot) else PrescriptionSnapshot(medication_name=p)
            for p in prescriptions
        ]
        self.allergies[(patient_id, tenant_id)] = list(allergies)

    async def _call(self, operation):
        self.calls.append(operation)
        if operation in self.slow:
            await asyncio.sleep(5)
        if operation in self.failing:
            raise RuntimeError(f"{operation} exploded")

    async def get_active_prescriptions(self, patient_id, tenant_id):
        await self._call("get_active_prescriptions")
        return list(self.prescriptions.get((patient_id, tenant_id), []))

    async def get_allergies(self, patient_id, tenant_id):
        await self._call("get_allergies")
        return list(self.allergies.get((patient_id, tenant_id), []))

    async def patient_exists(self, patient_id, tenant_id):
        await self._call("patient_exists")
        return (patient_id, tenant_id) in self.patients


class FakeCatalog:
    """RuleCatalog over in-memory lists"""

    def __init__(self):
        self.interactions: List[InteractionRule] = []
        self.dosage_warnings: List[DosageWarningRule] = []
        self.drug_classes: List[DrugClass] = []
        self.failing: Set[str] = set()
        self.calls: List[str] = []

    def _call(self, operation):
        self.calls.append(operation)
        if operation in self.failing:
            raise RuntimeError(f"{operation} exploded")

    def add_interaction(self, drug_1, drug_2, severity, description="Interaction"):
        self.interactions.append(InteractionRule(
            drug_name_1=drug_1,
            drug_name_2=drug_2,
            severity=severity,
            description=description,
            clinical_impact="Impact",
            management_strategy="Monitor"
        ))

    async def find_interaction(self, drug_a, drug_b) -> Optional[InteractionRule]:
        self._call("find_interaction")
        pair = {drug_a.lower(), drug_b.lower()}
        for rule in self.interactions:
            if {rule.drug_name_1.lower(), rule.drug_name_2.lower()} == pair:
                return rule
        return None

    async def find_dosage_warning(self, drug_name, condition=None) -> Optional[DosageWarningRule]:
        self._call("find_dosage_warning")
        for warning in self.dosage_warnings:
            if warning.drug_name.lower() == drug_name.lower() and warning.patient_condition == condition:
                return warning
        return None

    async def find_general_dosage_warnings(self, drug_name) -> List[DosageWarningRule]:
        self._call("find_general_dosage_warnings")
        return [w for w in self.dosage_warnings if w.drug_name.lower() == drug_name.lower()]

    async def list_drug_classes(self) -> List[DrugClass]:
        self._call("list_drug_classes")
        return list(self.drug_classes)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def db_engine(tmp_path):
    engine = init_engine(f"sqlite:///{tmp_path / 'medguard.db'}", echo=False)
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)
