"""
PostgreSQL Clinical Record Repository

asyncpg-backed persistence for clinical records. Codes are text[] columns,
structured data is JSONB and the embedding is a pgvector column, so the
population criteria can be pushed down into SQL.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID
import json

import structlog

from clinsight.analytics.population import parse_time_range
from clinsight.exceptions import OptimisticLockError
from clinsight.models.analytics import PopulationCriteria
from clinsight.models.records import ClinicalRecord, RecordType
from clinsight.repository.base import ClinicalRecordRepository
from clinsight.vector.client import vector_literal

logger = structlog.get_logger(__name__)

_COLUMNS = """
    id, patient_id, provider_id, facility_id, record_type, title, clinical_narrative,
    structured_data, embedding::text AS embedding, icd_codes, cpt_codes, encounter_date,
    severity_level, confidentiality_level, department, created_at, updated_at,
    created_by, updated_by, version
"""


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _parse_embedding(value: str | None) -> list[float] | None:
    if not value:
        return None
    return [float(x) for x in value.strip("[]").split(",")]


class PostgresClinicalRecordRepository(ClinicalRecordRepository):
    """
    Clinical record repository backed by PostgreSQL.

    Usage:
        repo = PostgresClinicalRecordRepository(pool)
        await repo.create_schema()
        saved = await repo.save(record)
    """

    def __init__(self, pool, table: str = "clinical_records", dimensions: int = 1536):
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")
        self.pool = pool
        self.table = table
        self.dimensions = dimensions

    async def create_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id UUID PRIMARY KEY,
                    patient_id UUID NOT NULL,
                    provider_id UUID NOT NULL,
                    facility_id UUID,
                    record_type TEXT NOT NULL,
                    title VARCHAR(500) NOT NULL,
                    clinical_narrative TEXT,
                    structured_data JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                    embedding vector({self.dimensions}),
                    icd_codes TEXT[] NOT NULL DEFAULT '{{}}',
                    cpt_codes TEXT[] NOT NULL DEFAULT '{{}}',
                    encounter_date TIMESTAMPTZ NOT NULL,
                    severity_level TEXT,
                    confidentiality_level TEXT NOT NULL DEFAULT 'NORMAL',
                    department VARCHAR(100),
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    created_by VARCHAR(100) NOT NULL,
                    updated_by VARCHAR(100),
                    version INTEGER NOT NULL DEFAULT 0
                )
            """)
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS {self.table}_patient_idx ON {self.table} (patient_id)"
            )
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS {self.table}_type_date_idx "
                f"ON {self.table} (record_type, encounter_date DESC)"
            )
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS {self.table}_icd_idx ON {self.table} USING gin (icd_codes)"
            )
        logger.info("Clinical records schema ready", table=self.table)

    def _row_to_record(self, row) -> ClinicalRecord:
        data = dict(row)
        if isinstance(data["structured_data"], str):
            data["structured_data"] = json.loads(data["structured_data"])
        data["embedding"] = _parse_embedding(data["embedding"])
        data["icd_codes"] = list(data["icd_codes"] or [])
        data["cpt_codes"] = list(data["cpt_codes"] or [])
        return ClinicalRecord.model_validate(data)

    async def get(self, record_id: UUID) -> ClinicalRecord | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM {self.table} WHERE id = $1", record_id)
        return self._row_to_record(row) if row else None

    async def save(self, record: ClinicalRecord) -> ClinicalRecord:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchval(
                    f"SELECT version FROM {self.table} WHERE id = $1 FOR UPDATE", record.id
                )
                if current is None:
                    saved = record.model_copy(deep=True)
                    await self._insert(conn, saved)
                    logger.debug("Record inserted", record_id=str(record.id))
                    return saved

                if current != record.version:
                    raise OptimisticLockError(record.id, record.version, current)

                saved = record.model_copy(
                    deep=True,
                    update={"version": current + 1, "updated_at": datetime.now(timezone.utc)},
                )
                await self._update(conn, saved)
                logger.debug("Record updated", record_id=str(record.id), version=saved.version)
                return saved

    def _values(self, record: ClinicalRecord) -> list[Any]:
        return [
            record.id,
            record.patient_id,
            record.provider_id,
            record.facility_id,
            record.record_type.value,
            record.title,
            record.clinical_narrative,
            json.dumps(record.structured_data, default=str),
            vector_literal(record.embedding) if record.embedding is not None else None,
            record.icd_codes,
            record.cpt_codes,
            _utc(record.encounter_date),
            record.severity_level.value if record.severity_level else None,
            record.confidentiality_level.value,
            record.department,
            _utc(record.created_at),
            _utc(record.updated_at),
            record.created_by,
            record.updated_by,
            record.version,
        ]

    async def _insert(self, conn, record: ClinicalRecord) -> None:
        await conn.execute(f"""
            INSERT INTO {self.table} (
                id, patient_id, provider_id, facility_id, record_type, title, clinical_narrative,
                structured_data, embedding, icd_codes, cpt_codes, encounter_date,
                severity_level, confidentiality_level, department, created_at, updated_at,
                created_by, updated_by, version
            ) VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::text::vector, $10, $11, $12,
                $13, $14, $15, $16, $17, $18, $19, $20
            )
        """, *self._values(record))

    async def _update(self, conn, record: ClinicalRecord) -> None:
        await conn.execute(f"""
            UPDATE {self.table} SET
                patient_id = $2, provider_id = $3, facility_id = $4, record_type = $5,
                title = $6, clinical_narrative = $7, structured_data = $8::jsonb,
                embedding = $9::text::vector, icd_codes = $10, cpt_codes = $11,
                encounter_date = $12, severity_level = $13, confidentiality_level = $14,
                department = $15, created_at = $16, updated_at = $17, created_by = $18,
                updated_by = $19, version = $20
            WHERE id = $1
        """, *self._values(record))

    async def find_by_patient_id(self, patient_id: UUID) -> list[ClinicalRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM {self.table} WHERE patient_id = $1 "
                f"ORDER BY encounter_date DESC, id DESC",
                patient_id,
            )
        return [self._row_to_record(row) for row in rows]

    async def find_by_record_type(self, record_type: RecordType, limit: int = 100) -> list[ClinicalRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM {self.table} WHERE record_type = $1 "
                f"ORDER BY encounter_date DESC, id DESC LIMIT $2",
                record_type.value, limit,
            )
        return [self._row_to_record(row) for row in rows]

    async def find_by_criteria(self, criteria: PopulationCriteria, now: datetime | None = None) -> list[ClinicalRecord]:
        clauses, params = [], []

        window = parse_time_range(criteria.time_range)
        if window is not None:
            params.append(_utc(now or datetime.now(timezone.utc)) - window)
            clauses.append(f"encounter_date >= ${len(params)}")

        if criteria.condition:
            condition = criteria.condition.strip()
            params.append(_like_escape(condition.upper()) + "%")
            prefix = len(params)
            params.append("%" + _like_escape(condition) + "%")
            text = len(params)
            clauses.append(
                f"(EXISTS (SELECT 1 FROM unnest(icd_codes) AS code WHERE code LIKE ${prefix})"
                f" OR title ILIKE ${text} OR clinical_narrative ILIKE ${text})"
            )

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM {self.table} {where} ORDER BY encounter_date DESC, id DESC",
                *params,
            )
        return [self._row_to_record(row) for row in rows]

    async def count(self) -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(f"SELECT COUNT(*) FROM {self.table}")

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.warning("Record store health check failed", error=str(e))
            return False


def _like_escape(text: str) -> str:
    """Escape LIKE wildcards so the text matches literally."""
    return text.replace("\\", "\\\\").replace("%", r"\%").replace("_", r"\_")
