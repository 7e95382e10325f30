"""
Clinical Analytics API Routes

Endpoints for:
- Similar case search
- Risk assessment
- Population health analytics
- Clinical decision support
- Performance metrics, health and Prometheus metrics
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field
import structlog

from clinsight.analytics.service import ClinicalAnalyticsService
from clinsight.api.auth import Role, User, require_roles
from clinsight.api.dependencies import get_analytics_service, get_service_clients
from clinsight.models.analytics import (
    AnalyticsPerformanceMetrics,
    ClinicalContext,
    ClinicalDecisionSupport,
    ClinicalRiskRequest,
    HealthStatus,
    PatientDemographics,
    PopulationCriteria,
    RiskAssessmentResult,
    SimilarCaseResult,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/clinical/analytics", tags=["clinical-analytics"])


# =============================================================================
# Request/Response Models
# =============================================================================

class SimilarCasesRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=10_000)
    patient_demographics: PatientDemographics | None = None
    max_results: int = Field(default=10, ge=1, le=200)
    similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)


class SimilarCasesResponse(BaseModel):
    cases: list[SimilarCaseResult]
    count: int


# =============================================================================
# Analytics Endpoints
# =============================================================================

@router.post("/similar-cases", response_model=SimilarCasesResponse)
async def find_similar_cases(
    body: SimilarCasesRequest,
    user: User = Depends(require_roles(Role.CLINICIAN, Role.RESEARCHER)),
    service: ClinicalAnalyticsService = Depends(get_analytics_service),
):
    """Semantic search for similar diagnosis and treatment-plan cases."""
    cases = await service.find_similar_clinical_cases(
        body.query,
        body.patient_demographics,
        body.max_results,
        body.similarity_threshold,
    )
    logger.info("Similar cases found", user=user.id, count=len(cases))
    return SimilarCasesResponse(cases=cases, count=len(cases))


@router.post("/risk-assessment", response_model=RiskAssessmentResult)
async def assess_risk(
    body: ClinicalRiskRequest,
    user: User = Depends(require_roles(Role.DOCTOR, Role.NURSE_PRACTITIONER)),
    service: ClinicalAnalyticsService = Depends(get_analytics_service),
):
    """Risk score for a clinical record, informed by similar cases."""
    if body.patient_id != body.clinical_record.patient_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="patient_id does not match the clinical record",
        )
    result = await service.assess_clinical_risk(body.clinical_record, body.patient_history)
    logger.info("Risk assessment completed", user=user.id, risk_level=result.risk_level.value)
    return result


@router.post("/population-health")
async def analyze_population_health(
    criteria: PopulationCriteria,
    user: User = Depends(require_roles(Role.RESEARCHER, Role.ADMIN, Role.PUBLIC_HEALTH_OFFICER)),
    service: ClinicalAnalyticsService = Depends(get_analytics_service),
):
    insights = await service.analyze_population_health(criteria)
    return insights.to_response()


@router.post("/decision-support", response_model=ClinicalDecisionSupport)
async def decision_support(
    context: ClinicalContext,
    user: User = Depends(require_roles(Role.DOCTOR, Role.NURSE_PRACTITIONER, Role.CLINICAL_SPECIALIST)),
    service: ClinicalAnalyticsService = Depends(get_analytics_service),
):
    """Evidence-based recommendations from guidelines and similar cases."""
    support = await service.provide_clinical_decision_support(context)
    logger.info(
        "Clinical decision support generated",
        user=user.id,
        recommendations=len(support.evidence_based_recommendations),
        confidence=support.confidence_score,
    )
    return support


# =============================================================================
# Operations Endpoints
# =============================================================================

@router.get("/performance-metrics", response_model=AnalyticsPerformanceMetrics)
async def performance_metrics(
    request: Request,
    user: User = Depends(require_roles(Role.ADMIN, Role.SYSTEM_MONITOR)),
    service: ClinicalAnalyticsService = Depends(get_analytics_service),
):
    clients = get_service_clients(request)
    return service.performance_metrics(clients.active_connections if clients else 0)


@router.get("/health")
async def health(service: ClinicalAnalyticsService = Depends(get_analytics_service)):
    """Component health. 503 when the record store or vector store is down."""
    health_status = await service.health_status()
    code = 503 if health_status.overall_status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(status_code=code, content=health_status.model_dump(mode="json"))


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(service: ClinicalAnalyticsService = Depends(get_analytics_service)):
    """Prometheus text exposition."""
    return PlainTextResponse(service.metrics.to_prometheus(), media_type="text/plain; version=0.0.4")
