"""
Analytics Models

Request and response models for similarity search, risk assessment,
population health analytics and clinical decision support. These have no
lifecycle of their own: they are built per request and discarded once the
response is serialized.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, ValidationError, field_validator

from clinsight.models.records import ClinicalRecord

AGGREGATION_KEYS = ("record_type", "department", "severity_level", "facility_id")


# =============================================================================
# Enums
# =============================================================================

class RiskLevel(str, Enum):
    """Clinical risk levels."""
    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AnalyticsEventType(str, Enum):
    """Events published to the analytics topic."""
    SEMANTIC_SEARCH_PERFORMED = "SEMANTIC_SEARCH_PERFORMED"
    RISK_ASSESSMENT_COMPLETED = "RISK_ASSESSMENT_COMPLETED"
    POPULATION_ANALYSIS_COMPLETED = "POPULATION_ANALYSIS_COMPLETED"
    CLINICAL_DECISION_SUPPORT_PROVIDED = "CLINICAL_DECISION_SUPPORT_PROVIDED"
    RECORD_INGESTED = "RECORD_INGESTED"
    RECORD_UPDATED = "RECORD_UPDATED"


class HealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"


# =============================================================================
# Patient Context
# =============================================================================

class PatientDemographics(BaseModel):
    """Patient context used to enrich similarity queries."""
    age: int = Field(default=30, ge=0, le=150)
    gender: str = "unknown"
    bmi: float = Field(default=25.0, gt=0)
    comorbidities: list[str] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: ClinicalRecord) -> "PatientDemographics":
        """
        Build demographics from a record's structured data.

        Reads ``structured_data["demographics"]`` when present and falls back
        to the defaults for anything missing or invalid.
        """
        raw = record.structured_data.get("demographics") or {}
        if not isinstance(raw, dict):
            return cls()

        values = {}
        for name, value in raw.items():
            if name not in cls.model_fields or value is None:
                continue
            try:
                cls(**{name: value})
            except ValidationError:
                continue
            values[name] = value
        return cls(**values)

    def describe(self) -> str:
        return f"age:{self.age} gender:{self.gender}"


class ClinicalContext(BaseModel):
    """Context for a decision support request."""
    patient_id: UUID
    provider_id: UUID
    clinical_scenario: str = Field(..., min_length=1)
    patient_demographics: PatientDemographics | None = None
    current_medications: list[str] = Field(default_factory=list)


# =============================================================================
# Similarity Search
# =============================================================================

class SimilarCaseResult(BaseModel):
    """A clinically similar case returned by semantic search."""
    case_id: str
    patient_demographics: str | None = None
    clinical_presentation: str
    diagnosis: str | None = None
    treatment: str | None = None
    outcome: str | None = None
    record_type: str | None = None
    similarity_score: float | None = None
    recorded_risk: float | None = None

    @property
    def risk_indicator(self) -> float:
        """Risk signal contributed by this case to an aggregate score."""
        if self.recorded_risk is not None:
            return self.recorded_risk
        if self.similarity_score is not None:
            return self.similarity_score
        return 0.5


# =============================================================================
# Risk Assessment
# =============================================================================

class ClinicalRiskRequest(BaseModel):
    """Risk assessment request."""
    patient_id: UUID
    clinical_record: ClinicalRecord
    patient_history: list[str] = Field(default_factory=list)


class RiskAssessmentResult(BaseModel):
    """Outcome of a clinical risk assessment."""
    patient_id: UUID
    risk_score: float = Field(..., ge=0.0, le=1.0)
    risk_level: RiskLevel
    base_risk: float
    historical_risk: float
    contributing_factors: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    similar_cases_analyzed: int = 0
    assessed_at: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# Population Health
# =============================================================================

class PopulationCriteria(BaseModel):
    """Population selection and grouping criteria."""
    condition: str | None = Field(
        default=None,
        description="ICD-10 prefix (e.g. 'E11') or free-text term matched against title/narrative",
    )
    time_range: str = Field(default="all", description="'all' or <n><d|w|m|y>, e.g. '30d', '6m'")
    aggregation: str = Field(default="record_type", description=f"One of {', '.join(AGGREGATION_KEYS)}")

    @field_validator("time_range")
    @classmethod
    def _check_time_range(cls, value: str) -> str:
        from clinsight.analytics.population import parse_time_range

        parse_time_range(value)
        return value.strip().lower()

    @field_validator("aggregation")
    @classmethod
    def _check_aggregation(cls, value: str) -> str:
        if value not in AGGREGATION_KEYS:
            raise ValueError(f"aggregation must be one of {AGGREGATION_KEYS}")
        return value


class RecordGroupAnalysis(BaseModel):
    """Aggregate view of one group of records."""
    group: str
    record_count: int = 0
    patient_count: int = 0
    high_risk_count: int = 0
    special_handling_count: int = 0
    severity_distribution: dict[str, int] = Field(default_factory=dict)
    top_icd_codes: list[tuple[str, int]] = Field(default_factory=list)
    earliest_encounter: datetime | None = None
    latest_encounter: datetime | None = None

    @property
    def high_risk_ratio(self) -> float:
        return self.high_risk_count / self.record_count if self.record_count else 0.0


class PopulationHealthInsights(BaseModel):
    """Per-group analyses folded into one population view."""
    aggregation: str = "record_type"
    groups: dict[str, RecordGroupAnalysis] = Field(default_factory=dict)
    records_analyzed: int = 0

    @property
    def insight_count(self) -> int:
        return len(self.groups)

    def add_insight(self, group: str, analysis: RecordGroupAnalysis) -> None:
        """Add a group's analysis, combining with an existing one for the same key."""
        existing = self.groups.get(group)
        self.groups[group] = _combine_groups(existing, analysis) if existing else analysis
        self.records_analyzed += analysis.record_count

    def merge(self, other: "PopulationHealthInsights") -> "PopulationHealthInsights":
        """Fold another partial result into this one."""
        for group, analysis in other.groups.items():
            self.add_insight(group, analysis)
        return self

    @property
    def summary(self) -> str:
        if not self.groups:
            return "No records matched the population criteria"
        high_risk = sum(g.high_risk_count for g in self.groups.values())
        largest = max(self.groups.values(), key=lambda g: (g.record_count, g.group))
        return (
            f"{self.records_analyzed} records in {self.insight_count} {self.aggregation} groups; "
            f"{high_risk} high-risk; largest group {largest.group} ({largest.record_count})"
        )

    def to_response(self) -> dict[str, Any]:
        return {
            "aggregation": self.aggregation,
            "insight_count": self.insight_count,
            "records_analyzed": self.records_analyzed,
            "summary": self.summary,
            "groups": {k: v.model_dump(mode="json") for k, v in sorted(self.groups.items())},
        }


def _combine_groups(a: RecordGroupAnalysis, b: RecordGroupAnalysis) -> RecordGroupAnalysis:
    severity = dict(a.severity_distribution)
    for key, count in b.severity_distribution.items():
        severity[key] = severity.get(key, 0) + count

    codes: dict[str, int] = dict(a.top_icd_codes)
    for code, count in b.top_icd_codes:
        codes[code] = codes.get(code, 0) + count
    top_codes = sorted(codes.items(), key=lambda item: (-item[1], item[0]))[:10]

    encounters = [d for d in (a.earliest_encounter, b.earliest_encounter) if d]
    latest = [d for d in (a.latest_encounter, b.latest_encounter) if d]

    return RecordGroupAnalysis(
        group=a.group,
        record_count=a.record_count + b.record_count,
        # Patients may overlap between partials; this is an upper bound.
        patient_count=a.patient_count + b.patient_count,
        high_risk_count=a.high_risk_count + b.high_risk_count,
        special_handling_count=a.special_handling_count + b.special_handling_count,
        severity_distribution=severity,
        top_icd_codes=top_codes,
        earliest_encounter=min(encounters) if encounters else None,
        latest_encounter=max(latest) if latest else None,
    )


# =============================================================================
# Decision Support
# =============================================================================

class ClinicalDecisionSupport(BaseModel):
    """Evidence-based recommendations for a clinical context."""
    evidence_based_recommendations: list[str] = Field(default_factory=list)
    similar_successful_cases: list[SimilarCaseResult] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    contraindications: list[str] = Field(default_factory=list)
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    guidelines_consulted: int = 0


# =============================================================================
# Events
# =============================================================================

class AnalyticsEvent(BaseModel):
    """Notification published to the analytics topic."""
    event_type: AnalyticsEventType
    timestamp: int = Field(description="Milliseconds since the epoch")
    data: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Operations
# =============================================================================

class MemoryUsage(BaseModel):
    total_memory: int
    used_memory: int
    free_memory: int
    usage_percentage: float


class AnalyticsPerformanceMetrics(BaseModel):
    average_query_time_ms: float
    vector_search_latency_ms: float
    p95_vector_search_latency_ms: float
    event_publish_rate: float
    events_failed: int
    cache_hit_ratio: float
    memory_usage: MemoryUsage
    active_connections: int


class ServiceHealthStatus(BaseModel):
    vector_database_status: HealthStatus
    kafka_status: HealthStatus
    database_status: HealthStatus
    overall_status: HealthStatus
    timestamp: int
