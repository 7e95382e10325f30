"""Clinical record repository contract."""

from abc import ABC, abstractmethod
from datetime import datetime
from uuid import UUID

import structlog

from clinsight.models.analytics import PopulationCriteria
from clinsight.models.records import ClinicalRecord, RecordType

logger = structlog.get_logger(__name__)


class ClinicalRecordRepository(ABC):
    """
    Persistence for clinical records.

    Records are never deleted. ``save`` inserts a new record, or updates an
    existing one when the caller's ``version`` matches the stored version;
    a successful update returns the record with ``version`` incremented and
    ``updated_at`` refreshed. Callers must continue with the returned copy.
    """

    @abstractmethod
    async def get(self, record_id: UUID) -> ClinicalRecord | None:
        """Get a record by ID."""

    @abstractmethod
    async def save(self, record: ClinicalRecord) -> ClinicalRecord:
        """Insert or version-checked update. Raises OptimisticLockError on conflict."""

    @abstractmethod
    async def find_by_patient_id(self, patient_id: UUID) -> list[ClinicalRecord]:
        """Records of one patient, newest encounter first."""

    @abstractmethod
    async def find_by_record_type(self, record_type: RecordType, limit: int = 100) -> list[ClinicalRecord]:
        """Records of one type, newest encounter first."""

    @abstractmethod
    async def find_by_criteria(self, criteria: PopulationCriteria, now: datetime | None = None) -> list[ClinicalRecord]:
        """Records in the population described by ``criteria``."""

    @abstractmethod
    async def count(self) -> int:
        """Total number of records."""

    async def exists(self, record_id: UUID) -> bool:
        return await self.get(record_id) is not None

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass
