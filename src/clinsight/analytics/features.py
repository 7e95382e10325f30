"""
Clinical Feature Extraction

Rule-based features feeding the risk score and decision support:
- severity and high-risk diagnosis codes from the record
- history length and handling flags
- medication / comorbidity rules for a decision support context
"""

from dataclasses import dataclass, field

from clinsight.models.analytics import ClinicalContext, PatientDemographics, RiskLevel
from clinsight.models.records import ClinicalRecord, SeverityLevel
from clinsight.search.ranking import determine_risk_level

# Severity contribution to base risk; unknown severity is neutral
SEVERITY_RISK = {
    SeverityLevel.LOW: 0.2,
    SeverityLevel.MODERATE: 0.4,
    SeverityLevel.HIGH: 0.6,
    SeverityLevel.CRITICAL: 0.8,
}
UNKNOWN_SEVERITY_RISK = 0.5

# ICD-10 category prefixes that raise risk
HIGH_RISK_CONDITIONS = {
    "I50": {"name": "Heart Failure", "weight": 0.20, "intervention": "Cardiology follow-up within 7 days"},
    "J44": {"name": "COPD", "weight": 0.15, "intervention": "Pulmonology follow-up, smoking cessation"},
    "N18": {"name": "Chronic Kidney Disease", "weight": 0.12, "intervention": "Nephrology consult, medication review"},
    "E11": {"name": "Type 2 Diabetes", "weight": 0.10, "intervention": "Diabetes educator, glucose monitoring"},
    "I10": {"name": "Hypertension", "weight": 0.05, "intervention": "Blood pressure monitoring"},
    "F32": {"name": "Depression", "weight": 0.08, "intervention": "Behavioral health referral"},
    "A41": {"name": "Sepsis", "weight": 0.25, "intervention": "Infectious disease follow-up"},
    "J18": {"name": "Pneumonia", "weight": 0.15, "intervention": "Pulmonology follow-up"},
}
MAX_CONDITION_RISK = 0.3

HISTORY_RISK_PER_ENTRY = 0.01
MAX_HISTORY_RISK = 0.1
ADVANCED_AGE = 65
ADVANCED_AGE_RISK = 0.05

POLYPHARMACY_THRESHOLD = 5
OBESITY_BMI = 30.0

# Pairs of medication name fragments that should not be combined
DRUG_INTERACTIONS = {
    ("warfarin", "aspirin"): "Warfarin with aspirin: increased bleeding risk, monitor INR closely",
    ("warfarin", "ibuprofen"): "Warfarin with NSAID: increased bleeding risk",
    ("paxlovid", "atorvastatin"): "Paxlovid increases statin levels: hold statin or reduce dose",
    ("paxlovid", "simvastatin"): "Paxlovid with simvastatin: contraindicated, hold statin",
    ("lisinopril", "spironolactone"): "ACE inhibitor with potassium-sparing diuretic: hyperkalemia risk",
    ("sildenafil", "nitroglycerin"): "PDE5 inhibitor with nitrate: severe hypotension",
}

# Medication fragment -> (comorbidity fragments, warning)
DRUG_CONDITION_CAUTIONS = {
    "metformin": (("n18", "kidney", "renal"), "Metformin caution with renal impairment: monitor renal function"),
    "ibuprofen": (("n18", "kidney", "renal", "i50", "heart failure"), "NSAID caution with renal impairment or heart failure"),
    "lisinopril": (("pregnan",), "ACE inhibitor contraindicated in pregnancy"),
}


@dataclass
class ClinicalFeatures:
    """Risk-relevant features of a record and the patient's history."""
    severity: SeverityLevel | None = None
    high_risk_conditions: list[str] = field(default_factory=list)
    condition_risk: float = 0.0
    history_length: int = 0
    age: int = PatientDemographics().age
    requires_special_handling: bool = False
    interventions: list[str] = field(default_factory=list)

    @classmethod
    def extract(cls, record: ClinicalRecord, patient_history: list[str] | None = None) -> "ClinicalFeatures":
        conditions, interventions = [], []
        condition_risk = 0.0
        for code in record.icd_codes:
            info = HIGH_RISK_CONDITIONS.get(code[:3])
            if info and info["name"] not in conditions:
                conditions.append(info["name"])
                interventions.append(info["intervention"])
                condition_risk += info["weight"]

        return cls(
            severity=record.severity_level,
            high_risk_conditions=conditions,
            condition_risk=min(condition_risk, MAX_CONDITION_RISK),
            history_length=len(patient_history or []),
            age=PatientDemographics.from_record(record).age,
            requires_special_handling=record.requires_special_handling,
            interventions=interventions,
        )

    def calculate_base_risk(self) -> float:
        risk = SEVERITY_RISK.get(self.severity, UNKNOWN_SEVERITY_RISK)
        risk += self.condition_risk
        risk += min(self.history_length * HISTORY_RISK_PER_ENTRY, MAX_HISTORY_RISK)
        if self.age >= ADVANCED_AGE:
            risk += ADVANCED_AGE_RISK
        return max(0.0, min(1.0, risk))

    def risk_factors(self) -> list[str]:
        factors = []
        if self.severity in (SeverityLevel.HIGH, SeverityLevel.CRITICAL):
            factors.append(f"{self.severity.value.title()} severity presentation")
        factors.extend(f"High-risk condition: {name}" for name in self.high_risk_conditions)
        if self.history_length:
            factors.append(f"{self.history_length} prior history entries")
        if self.age >= ADVANCED_AGE:
            factors.append(f"Age {self.age}")
        return factors


def generate_recommendations(risk_score: float, features: ClinicalFeatures) -> list[str]:
    """Care recommendations for a risk score."""
    level = determine_risk_level(risk_score)
    recommendations = {
        RiskLevel.HIGH: [
            "Escalate to attending physician for same-day review",
            "Increase monitoring frequency",
        ],
        RiskLevel.MODERATE: [
            "Schedule follow-up within 7 days",
            "Review care plan with care team",
        ],
        RiskLevel.LOW: ["Routine follow-up per standard care plan"],
        RiskLevel.MINIMAL: ["No additional intervention indicated"],
    }[level]

    recommendations = recommendations + features.interventions
    if features.requires_special_handling:
        recommendations.append("Restricted record: limit disclosure to the treating team")
    return recommendations


def identify_context_risk_factors(context: ClinicalContext) -> list[str]:
    demographics = context.patient_demographics or PatientDemographics()
    factors = []
    if demographics.age >= ADVANCED_AGE:
        factors.append(f"Advanced age ({demographics.age})")
    if demographics.bmi >= OBESITY_BMI:
        factors.append(f"Obesity (BMI {demographics.bmi:.1f})")
    factors.extend(f"Comorbidity: {c}" for c in demographics.comorbidities)
    if len(context.current_medications) >= POLYPHARMACY_THRESHOLD:
        factors.append(f"Polypharmacy ({len(context.current_medications)} active medications)")
    return factors


def check_contraindications(context: ClinicalContext) -> list[str]:
    """Drug-drug and drug-condition conflicts among the context's medications."""
    medications = [m.lower() for m in context.current_medications]
    demographics = context.patient_demographics or PatientDemographics()
    conditions = [c.lower() for c in demographics.comorbidities]

    def taking(fragment: str) -> bool:
        return any(fragment in med for med in medications)

    warnings = [
        message for (a, b), message in DRUG_INTERACTIONS.items()
        if taking(a) and taking(b)
    ]
    for drug, (condition_fragments, message) in DRUG_CONDITION_CAUTIONS.items():
        if taking(drug) and any(f in c for f in condition_fragments for c in conditions):
            warnings.append(message)
    return warnings
