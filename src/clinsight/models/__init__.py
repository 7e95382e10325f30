"""Clinsight domain models."""

from clinsight.models.records import (
    EMBEDDING_DIMENSIONS,
    ClinicalRecord,
    ConfidentialityLevel,
    RecordType,
    SeverityLevel,
)
from clinsight.models.analytics import (
    AnalyticsEvent,
    AnalyticsEventType,
    AnalyticsPerformanceMetrics,
    ClinicalContext,
    ClinicalDecisionSupport,
    ClinicalRiskRequest,
    HealthStatus,
    MemoryUsage,
    PatientDemographics,
    PopulationCriteria,
    PopulationHealthInsights,
    RecordGroupAnalysis,
    RiskAssessmentResult,
    RiskLevel,
    ServiceHealthStatus,
    SimilarCaseResult,
)

__all__ = [
    "EMBEDDING_DIMENSIONS",
    "ClinicalRecord",
    "ConfidentialityLevel",
    "RecordType",
    "SeverityLevel",
    "AnalyticsEvent",
    "AnalyticsEventType",
    "AnalyticsPerformanceMetrics",
    "ClinicalContext",
    "ClinicalDecisionSupport",
    "ClinicalRiskRequest",
    "HealthStatus",
    "MemoryUsage",
    "PatientDemographics",
    "PopulationCriteria",
    "PopulationHealthInsights",
    "RecordGroupAnalysis",
    "RiskAssessmentResult",
    "RiskLevel",
    "ServiceHealthStatus",
    "SimilarCaseResult",
]
