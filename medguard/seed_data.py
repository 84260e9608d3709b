"""
MedGuard - Rule Catalog Reference Data
Starter interaction rules, dosage warnings and drug class patterns
"""

import logging
from typing import Dict

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from medguard.models import DosageWarning, DrugClassPattern, DrugInteractionRule

logger = logging.getLogger(__name__)


# =============================================================================
# Drug Classes
# =============================================================================

DRUG_CLASSES = {
    "Statins": ["statin", "atorvastatin", "simvastatin", "rosuvastatin", "pravastatin"],
    "ACE Inhibitors": ["pril", "lisinopril", "enalapril", "ramipril"],
    "ARBs": ["sartan", "losartan", "valsartan", "irbesartan"],
    "Beta Blockers": ["olol", "metoprolol", "atenolol", "propranolol"],
    "Benzodiazepines": ["pam", "lam", "diazepam", "lorazepam", "alprazolam"],
    "PPIs": ["prazole", "omeprazole", "esomeprazole", "pantoprazole"],
    "SSRIs": ["fluoxetine", "sertraline", "escitalopram", "citalopram"],
    "NSAIDs": ["ibuprofen", "naproxen", "diclofenac", "celecoxib"],
}


# =============================================================================
# Interaction Rules
# =============================================================================

INTERACTION_RULES = [
    {
        "drug_name_1": "Warfarin",
        "drug_name_2": "Aspirin",
        "severity": "critical",
        "description": "Concurrent use significantly increases bleeding risk due to antiplatelet and anticoagulant effects",
        "clinical_impact": "Major bleeding events including gastrointestinal hemorrhage, intracranial bleeding. Risk increases 2-3 fold.",
        "management_strategy": "Avoid combination if possible. If necessary, use lowest effective aspirin dose (81mg) and monitor INR closely.",
        "source_reference": "FDA Drug Safety Communication, ACC/AHA Guidelines",
    },
    {
        "drug_name_1": "MAO Inhibitors",
        "drug_name_2": "SSRIs",
        "severity": "critical",
        "description": "Risk of serotonin syndrome, a potentially life-threatening condition",
        "clinical_impact": "Agitation, confusion, rapid heart rate, hyperthermia, seizures",
        "management_strategy": "Contraindicated. Allow 14-day washout after discontinuing the MAO inhibitor before starting an SSRI.",
        "source_reference": "FDA Black Box Warning",
    },
    {
        "drug_name_1": "Methotrexate",
        "drug_name_2": "NSAIDs",
        "severity": "critical",
        "description": "NSAIDs reduce renal clearance of methotrexate, increasing toxicity risk",
        "clinical_impact": "Bone marrow suppression, hepatotoxicity, nephrotoxicity, gastrointestinal ulceration",
        "management_strategy": "Avoid NSAIDs during high-dose methotrexate therapy. If unavoidable, monitor methotrexate levels, CBC, renal and hepatic function.",
        "source_reference": "Clinical Pharmacology Guidelines",
    },
    {
        "drug_name_1": "ACE Inhibitors",
        "drug_name_2": "Potassium Supplements",
        "severity": "critical",
        "description": "Both increase serum potassium levels, risk of hyperkalemia",
        "clinical_impact": "Severe hyperkalemia can cause cardiac arrhythmias and cardiac arrest",
        "management_strategy": "Avoid routine potassium supplementation. Monitor serum potassium closely if combination necessary.",
        "source_reference": "ACC/AHA Heart Failure Guidelines",
    },
    {
        "drug_name_1": "Clarithromycin",
        "drug_name_2": "Statins",
        "severity": "critical",
        "description": "Clarithromycin inhibits CYP3A4, dramatically increasing statin levels",
        "clinical_impact": "Severe rhabdomyolysis, acute renal failure. Risk especially high with simvastatin and lovastatin.",
        "management_strategy": "Temporarily discontinue the statin during the clarithromycin course, or use azithromycin.",
        "source_reference": "FDA Drug Safety Communication",
    },
    {
        "drug_name_1": "Sildenafil",
        "drug_name_2": "Nitrates",
        "severity": "critical",
        "description": "Additive vasodilation causes profound hypotension",
        "clinical_impact": "Severe hypotension, syncope, myocardial infarction",
        "management_strategy": "Contraindicated. Do not use within 24 hours of sildenafil.",
        "source_reference": "FDA Prescribing Information",
    },
    {
        "drug_name_1": "Benzodiazepines",
        "drug_name_2": "Opioids",
        "severity": "critical",
        "description": "Combined CNS and respiratory depression",
        "clinical_impact": "Profound sedation, respiratory depression, coma and death",
        "management_strategy": "Avoid co-prescribing. If required, use lowest doses for the shortest duration and monitor closely.",
        "source_reference": "FDA Boxed Warning",
    },
    {
        "drug_name_1": "Digoxin",
        "drug_name_2": "Amiodarone",
        "severity": "major",
        "description": "Amiodarone increases digoxin levels by reducing its clearance",
        "clinical_impact": "Digoxin toxicity: nausea, visual disturbances, arrhythmias",
        "management_strategy": "Reduce digoxin dose by 50% when starting amiodarone. Monitor digoxin levels.",
        "source_reference": "Clinical Pharmacology Guidelines",
    },
    {
        "drug_name_1": "ACE Inhibitors",
        "drug_name_2": "NSAIDs",
        "severity": "major",
        "description": "NSAIDs blunt the antihypertensive effect and increase renal risk",
        "clinical_impact": "Reduced blood pressure control, acute kidney injury",
        "management_strategy": "Monitor blood pressure and renal function. Prefer acetaminophen for analgesia.",
        "source_reference": "ACC/AHA Hypertension Guidelines",
    },
    {
        "drug_name_1": "Clopidogrel",
        "drug_name_2": "Omeprazole",
        "severity": "major",
        "description": "Omeprazole inhibits CYP2C19 activation of clopidogrel",
        "clinical_impact": "Reduced antiplatelet effect, increased cardiovascular events",
        "management_strategy": "Use pantoprazole instead of omeprazole.",
        "source_reference": "FDA Drug Safety Communication",
    },
    {
        "drug_name_1": "Fluoxetine",
        "drug_name_2": "Tramadol",
        "severity": "moderate",
        "description": "Increased risk of serotonin syndrome and seizures",
        "clinical_impact": "Serotonergic toxicity, lowered seizure threshold",
        "management_strategy": "Use with caution at the lowest tramadol dose. Monitor for serotonergic symptoms.",
        "source_reference": "Clinical Pharmacology Guidelines",
    },
    {
        "drug_name_1": "Grapefruit Juice",
        "drug_name_2": "Simvastatin",
        "severity": "moderate",
        "interaction_type": "drug_food",
        "description": "Grapefruit inhibits intestinal CYP3A4, raising simvastatin levels",
        "clinical_impact": "Increased risk of myopathy",
        "management_strategy": "Advise patient to avoid grapefruit juice.",
        "source_reference": "FDA Consumer Update",
    },
]


# =============================================================================
# Dosage Warnings
# =============================================================================

DOSAGE_WARNINGS = [
    {
        "drug_name": "Gabapentin",
        "min_dose": 100,
        "max_dose": 300,
        "unit": "mg",
        "frequency": "once daily",
        "patient_condition": "renal",
        "warning_message": "Dose adjustment required for renal impairment (CrCl <60 mL/min)",
        "adjustment_recommendation": "CrCl 30-59: 300mg BID; CrCl 15-29: 300mg daily; CrCl <15: 300mg every other day.",
    },
    {
        "drug_name": "Metformin",
        "min_dose": 500,
        "max_dose": 1000,
        "unit": "mg",
        "frequency": "twice daily",
        "patient_condition": "renal",
        "warning_message": "Contraindicated if eGFR <30 mL/min. Use with caution if eGFR 30-45 mL/min",
        "adjustment_recommendation": "eGFR 30-45: do not initiate, may continue at reduced dose. eGFR <30: contraindicated.",
    },
    {
        "drug_name": "Atorvastatin",
        "min_dose": 10,
        "max_dose": 20,
        "unit": "mg",
        "frequency": "daily",
        "patient_condition": "hepatic",
        "warning_message": "Contraindicated in active liver disease or unexplained elevated transaminases",
        "adjustment_recommendation": "Start with lowest dose (10mg). Monitor LFTs at baseline, 12 weeks, and annually.",
    },
    {
        "drug_name": "Warfarin",
        "min_dose": 1,
        "max_dose": 5,
        "unit": "mg",
        "frequency": "daily",
        "patient_condition": "hepatic",
        "warning_message": "Reduced synthesis of clotting factors in liver disease increases bleeding risk",
        "adjustment_recommendation": "Start with lower doses (1-2mg). Monitor INR every 2-3 days initially.",
    },
    {
        "drug_name": "Morphine",
        "min_dose": 2.5,
        "max_dose": 5,
        "unit": "mg",
        "frequency": "every 4 hours PRN",
        "patient_condition": "geriatric",
        "warning_message": "Start low and go slow in elderly. Increased sensitivity and slower metabolism",
        "adjustment_recommendation": "Start with 2.5mg PO Q4h PRN. Titrate slowly. Monitor for respiratory depression.",
    },
    {
        "drug_name": "Insulin",
        "min_dose": None,
        "max_dose": None,
        "unit": "units",
        "frequency": "variable",
        "patient_condition": "pregnancy",
        "warning_message": "Insulin requirements change dramatically during pregnancy",
        "adjustment_recommendation": "1st trimester: may decrease. 2nd/3rd: increase 50-100%. Frequent SMBG required.",
    },
    {
        "drug_name": "Acetaminophen",
        "min_dose": None,
        "max_dose": 4000,
        "unit": "mg",
        "frequency": "daily",
        "patient_condition": None,
        "warning_message": "Maximum 4g/day in adults; hepatotoxicity above this threshold",
        "adjustment_recommendation": "Limit to 3g/day in chronic alcohol use or hepatic impairment.",
    },
    {
        "drug_name": "Digoxin",
        "min_dose": 0.0625,
        "max_dose": 0.25,
        "unit": "mg",
        "frequency": "daily",
        "patient_condition": None,
        "warning_message": "Narrow therapeutic index. Toxicity risk above 0.25mg daily",
        "adjustment_recommendation": "Monitor serum digoxin levels and potassium. Reduce dose in renal impairment.",
    },
]


def seed_rule_catalog(session_factory: sessionmaker) -> Dict[str, int]:
    """
    Load the starter reference data

    Tables that already hold rows are left untouched, so the seed can be
    re-run safely.

    Returns:
        Rows inserted per table
    """
    inserted = {}
    with session_factory() as session:
        if not session.scalar(select(func.count()).select_from(DrugInteractionRule)):
            session.add_all([DrugInteractionRule(**rule) for rule in INTERACTION_RULES])
            inserted[DrugInteractionRule.__tablename__] = len(INTERACTION_RULES)

        if not session.scalar(select(func.count()).select_from(DosageWarning)):
            session.add_all([DosageWarning(**warning) for warning in DOSAGE_WARNINGS])
            inserted[DosageWarning.__tablename__] = len(DOSAGE_WARNINGS)

        if not session.scalar(select(func.count()).select_from(DrugClassPattern)):
            patterns = [
                DrugClassPattern(class_name=class_name, pattern=pattern)
                for class_name, class_patterns in DRUG_CLASSES.items()
                for pattern in class_patterns
            ]
            session.add_all(patterns)
            inserted[DrugClassPattern.__tablename__] = len(patterns)

        session.commit()

    logger.info(f"Rule catalog seeded: {inserted or 'already populated'}")
    return inserted
