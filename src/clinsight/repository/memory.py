"""In-memory clinical record repository (mock mode and tests)."""

from datetime import datetime
from uuid import UUID
import asyncio

from clinsight.analytics.population import matches_criteria
from clinsight.exceptions import OptimisticLockError
from clinsight.models.analytics import PopulationCriteria
from clinsight.models.records import ClinicalRecord, RecordType
from clinsight.repository.base import ClinicalRecordRepository, logger


class InMemoryClinicalRecordRepository(ClinicalRecordRepository):
    """Dict-backed repository. Stored records are copies, never the caller's objects."""

    def __init__(self):
        self._records: dict[UUID, ClinicalRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, record_id: UUID) -> ClinicalRecord | None:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def save(self, record: ClinicalRecord) -> ClinicalRecord:
        async with self._lock:
            stored = self._records.get(record.id)
            if stored is None:
                saved = record.model_copy(deep=True)
                logger.debug("Record inserted", record_id=str(record.id))
            else:
                if stored.version != record.version:
                    raise OptimisticLockError(record.id, record.version, stored.version)
                saved = record.model_copy(
                    deep=True,
                    update={"version": stored.version + 1, "updated_at": datetime.utcnow()},
                )
                logger.debug("Record updated", record_id=str(record.id), version=saved.version)
            self._records[record.id] = saved
            return saved.model_copy(deep=True)

    async def find_by_patient_id(self, patient_id: UUID) -> list[ClinicalRecord]:
        return _newest_first(r for r in self._records.values() if r.patient_id == patient_id)

    async def find_by_record_type(self, record_type: RecordType, limit: int = 100) -> list[ClinicalRecord]:
        return _newest_first(r for r in self._records.values() if r.record_type == record_type)[:limit]

    async def find_by_criteria(self, criteria: PopulationCriteria, now: datetime | None = None) -> list[ClinicalRecord]:
        now = now or datetime.utcnow()
        return _newest_first(r for r in self._records.values() if matches_criteria(r, criteria, now))

    async def count(self) -> int:
        return len(self._records)


def _newest_first(records) -> list[ClinicalRecord]:
    return [
        r.model_copy(deep=True)
        for r in sorted(records, key=lambda r: (r.encounter_date.timestamp(), str(r.id)), reverse=True)
    ]
