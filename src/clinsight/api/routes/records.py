"""
Clinical Record API Routes

Ingestion and maintenance of clinical records and guidelines. Every write
re-indexes the record in the vector store so similarity search sees it.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from clinsight.analytics.service import ClinicalAnalyticsService
from clinsight.api.auth import Role, User, require_roles
from clinsight.api.dependencies import get_analytics_service
from clinsight.models.records import (
    ClinicalRecord,
    ConfidentialityLevel,
    RecordType,
    SeverityLevel,
)

router = APIRouter(prefix="/clinical", tags=["clinical-records"])

WRITE_ROLES = (
    Role.CLINICIAN,
    Role.DOCTOR,
    Role.NURSE_PRACTITIONER,
    Role.CLINICAL_SPECIALIST,
    Role.ADMIN,
)
READ_ROLES = WRITE_ROLES + (Role.RESEARCHER,)


# =============================================================================
# Request/Response Models
# =============================================================================

class RecordCreate(BaseModel):
    patient_id: UUID
    provider_id: UUID
    facility_id: UUID | None = None
    record_type: RecordType
    title: str = Field(..., min_length=1, max_length=500)
    clinical_narrative: str | None = None
    structured_data: dict[str, Any] = Field(default_factory=dict)
    icd_codes: list[str] = Field(default_factory=list)
    cpt_codes: list[str] = Field(default_factory=list)
    encounter_date: datetime
    severity_level: SeverityLevel | None = None
    confidentiality_level: ConfidentialityLevel = ConfidentialityLevel.NORMAL
    department: str | None = Field(default=None, max_length=100)


class NarrativeUpdate(BaseModel):
    clinical_narrative: str = Field(..., min_length=1)
    expected_version: int | None = Field(default=None, ge=0)


class CodesAppend(BaseModel):
    icd_codes: list[str] = Field(default_factory=list)
    cpt_codes: list[str] = Field(default_factory=list)
    expected_version: int | None = Field(default=None, ge=0)


class GuidelineCreate(BaseModel):
    guideline_id: str = Field(..., min_length=1, max_length=200)
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    conditions: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    contraindications: list[str] = Field(default_factory=list)


def record_response(record: ClinicalRecord) -> dict[str, Any]:
    """Serialize a record without its embedding vector."""
    data = record.model_dump(mode="json", exclude={"embedding"})
    data["has_embedding"] = record.embedding is not None
    return data


# =============================================================================
# Record Endpoints
# =============================================================================

@router.post("/records", status_code=status.HTTP_201_CREATED)
async def create_record(
    body: RecordCreate,
    user: User = Depends(require_roles(*WRITE_ROLES)),
    service: ClinicalAnalyticsService = Depends(get_analytics_service),
):
    """Create a clinical record, embed it and index it for search."""
    record = ClinicalRecord(**body.model_dump(), created_by=user.id)
    saved = await service.ingest_record(record)
    return record_response(saved)


@router.get("/records/{record_id}")
async def get_record(
    record_id: UUID,
    user: User = Depends(require_roles(*READ_ROLES)),
    service: ClinicalAnalyticsService = Depends(get_analytics_service),
):
    return record_response(await service.get_record(record_id))


@router.patch("/records/{record_id}/narrative")
async def update_narrative(
    record_id: UUID,
    body: NarrativeUpdate,
    user: User = Depends(require_roles(*WRITE_ROLES)),
    service: ClinicalAnalyticsService = Depends(get_analytics_service),
):
    """
    Replace the narrative.

    Pass ``expected_version`` to fail with 409 if someone else updated the
    record since it was read.
    """
    saved = await service.update_record_narrative(
        record_id, body.clinical_narrative, user.id, body.expected_version
    )
    return record_response(saved)


@router.post("/records/{record_id}/codes")
async def append_codes(
    record_id: UUID,
    body: CodesAppend,
    user: User = Depends(require_roles(*WRITE_ROLES)),
    service: ClinicalAnalyticsService = Depends(get_analytics_service),
):
    record, added = await service.append_record_codes(
        record_id, body.icd_codes, body.cpt_codes, user.id, body.expected_version
    )
    return {"record": record_response(record), "added": added}


# =============================================================================
# Guideline Endpoints
# =============================================================================

@router.post("/guidelines", status_code=status.HTTP_201_CREATED)
async def create_guideline(
    body: GuidelineCreate,
    user: User = Depends(require_roles(Role.ADMIN, Role.CLINICAL_SPECIALIST)),
    service: ClinicalAnalyticsService = Depends(get_analytics_service),
):
    """Index a clinical guideline for decision support."""
    guideline_id = await service.ingest_guideline(
        body.guideline_id,
        body.title,
        body.content,
        body.conditions,
        body.recommendations,
        body.contraindications,
    )
    return {"guideline_id": guideline_id}
