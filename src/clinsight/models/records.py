"""
Clinical Record Model

A clinical record with an embedding for semantic search. Records are
created on ingestion and afterwards only mutated through narrative updates
and code appends; they are never hard-deleted.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinsight.exceptions import EmbeddingDimensionError

EMBEDDING_DIMENSIONS = 1536


class RecordType(str, Enum):
    """Clinical record classification."""
    DIAGNOSIS = "DIAGNOSIS"
    TREATMENT_PLAN = "TREATMENT_PLAN"
    LAB_RESULT = "LAB_RESULT"
    IMAGING_REPORT = "IMAGING_REPORT"
    PROGRESS_NOTE = "PROGRESS_NOTE"
    DISCHARGE_SUMMARY = "DISCHARGE_SUMMARY"
    MEDICATION_ORDER = "MEDICATION_ORDER"
    VITAL_SIGNS = "VITAL_SIGNS"
    PROCEDURE_NOTE = "PROCEDURE_NOTE"
    CONSULTATION = "CONSULTATION"


class SeverityLevel(str, Enum):
    """Clinical severity."""
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ConfidentialityLevel(str, Enum):
    """Access classification."""
    NORMAL = "NORMAL"
    RESTRICTED = "RESTRICTED"
    CONFIDENTIAL = "CONFIDENTIAL"
    TOP_SECRET = "TOP_SECRET"


def _normalize_code(code: str) -> str:
    return code.strip().upper()


def _dedupe_codes(codes: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for code in codes:
        normalized = _normalize_code(code)
        if normalized and normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


class ClinicalRecord(BaseModel):
    """
    Clinical record entity.

    Maps to the ``clinical_records`` table; the embedding lives alongside it
    in the vector store.
    """

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    patient_id: UUID
    provider_id: UUID
    facility_id: UUID | None = None

    record_type: RecordType
    title: str = Field(..., min_length=1, max_length=500)
    clinical_narrative: str | None = None
    structured_data: dict[str, Any] = Field(default_factory=dict)

    # Vector embedding for semantic search (pgvector)
    embedding: list[float] | None = None

    icd_codes: list[str] = Field(default_factory=list)
    cpt_codes: list[str] = Field(default_factory=list)

    encounter_date: datetime
    severity_level: SeverityLevel | None = None
    confidentiality_level: ConfidentialityLevel = ConfidentialityLevel.NORMAL
    department: str | None = Field(default=None, max_length=100)

    # Audit fields
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    created_by: str = Field(..., min_length=1, max_length=100)
    updated_by: str | None = Field(default=None, max_length=100)

    # Optimistic concurrency
    version: int = 0

    @field_validator("embedding")
    @classmethod
    def _check_embedding_length(cls, value: list[float] | None) -> list[float] | None:
        if value is not None and len(value) != EMBEDDING_DIMENSIONS:
            raise EmbeddingDimensionError(EMBEDDING_DIMENSIONS, len(value))
        return value

    @field_validator("icd_codes", "cpt_codes")
    @classmethod
    def _unique_codes(cls, value: list[str]) -> list[str]:
        return _dedupe_codes(value)

    # -------------------------------------------------------------------------
    # Business methods
    # -------------------------------------------------------------------------

    def update_clinical_narrative(self, narrative: str, updated_by: str) -> None:
        """Replace the narrative. The stored embedding is stale afterwards."""
        self.clinical_narrative = narrative
        self.updated_by = updated_by
        self.embedding = None

    def add_icd_code(self, icd_code: str) -> bool:
        """Append a diagnosis code. Returns False if it was already present."""
        return self._add_code(self.icd_codes, icd_code)

    def add_cpt_code(self, cpt_code: str) -> bool:
        """Append a procedure code. Returns False if it was already present."""
        return self._add_code(self.cpt_codes, cpt_code)

    @staticmethod
    def _add_code(codes: list[str], code: str) -> bool:
        normalized = _normalize_code(code)
        if not normalized or normalized in codes:
            return False
        codes.append(normalized)
        return True

    @property
    def is_high_risk(self) -> bool:
        return self.severity_level in (SeverityLevel.HIGH, SeverityLevel.CRITICAL)

    @property
    def requires_special_handling(self) -> bool:
        return self.confidentiality_level in (
            ConfidentialityLevel.RESTRICTED,
            ConfidentialityLevel.CONFIDENTIAL,
        )

    @property
    def search_text(self) -> str:
        """Text the record is embedded from."""
        if self.clinical_narrative:
            return f"{self.title}\n\n{self.clinical_narrative}"
        return self.title
