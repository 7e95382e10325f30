"""
Tests for clinical record repositories.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from clinsight.exceptions import OptimisticLockError
from clinsight.models.analytics import PopulationCriteria
from clinsight.models.records import RecordType
from clinsight.repository import InMemoryClinicalRecordRepository, PostgresClinicalRecordRepository


class TestInMemoryRepository:

    @pytest.fixture
    def repo(self):
        return InMemoryClinicalRecordRepository()

    @pytest.mark.asyncio
    async def test_insert_and_get(self, repo, make_record):
        record = make_record()
        saved = await repo.save(record)
        assert saved.version == 0
        fetched = await repo.get(record.id)
        assert fetched == saved
        assert await repo.exists(record.id)
        assert not await repo.exists(uuid4())

    @pytest.mark.asyncio
    async def test_stored_records_are_isolated_from_callers(self, repo, make_record):
        record = make_record()
        await repo.save(record)
        record.icd_codes.append("J18.9")
        fetched = await repo.get(record.id)
        fetched.icd_codes.append("N18.3")
        assert (await repo.get(record.id)).icd_codes == ["I50.9"]

    @pytest.mark.asyncio
    async def test_update_increments_version(self, repo, make_record):
        saved = await repo.save(make_record())
        saved.update_clinical_narrative("Improving on diuretics", "dr-b")
        updated = await repo.save(saved)
        assert updated.version == 1
        assert updated.updated_by == "dr-b"
        assert updated.updated_at >= saved.updated_at

    @pytest.mark.asyncio
    async def test_stale_update_is_rejected(self, repo, make_record):
        original = await repo.save(make_record())
        first = original.model_copy(deep=True)
        second = original.model_copy(deep=True)

        await repo.save(first)
        with pytest.raises(OptimisticLockError) as exc:
            await repo.save(second)
        assert exc.value.expected_version == 0
        assert exc.value.actual_version == 1

    @pytest.mark.asyncio
    async def test_queries_return_newest_first(self, repo, make_record):
        patient = uuid4()
        now = datetime.utcnow()
        old = await repo.save(make_record(patient_id=patient, encounter_date=now - timedelta(days=20)))
        new = await repo.save(make_record(patient_id=patient, encounter_date=now - timedelta(days=1)))
        await repo.save(make_record(record_type=RecordType.LAB_RESULT))

        assert [r.id for r in await repo.find_by_patient_id(patient)] == [new.id, old.id]
        assert [r.id for r in await repo.find_by_record_type(RecordType.DIAGNOSIS, limit=1)] == [new.id]
        assert await repo.count() == 3

    @pytest.mark.asyncio
    async def test_find_by_criteria(self, repo, make_record):
        now = datetime(2026, 6, 1)
        recent = await repo.save(make_record(encounter_date=now - timedelta(days=5)))
        await repo.save(make_record(encounter_date=now - timedelta(days=90)))
        await repo.save(make_record(encounter_date=now - timedelta(days=2), icd_codes=["E11.9"],
                                    title="Diabetes review", clinical_narrative="Stable"))

        found = await repo.find_by_criteria(PopulationCriteria(condition="I50", time_range="30d"), now=now)
        assert [r.id for r in found] == [recent.id]


class TestPostgresRepository:

    @pytest.fixture
    def conn(self):
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[])
        conn.fetchval = AsyncMock(return_value=None)
        conn.execute = AsyncMock()
        conn.transaction.return_value.__aenter__ = AsyncMock(return_value=None)
        conn.transaction.return_value.__aexit__ = AsyncMock(return_value=False)
        return conn

    @pytest.fixture
    def repo(self, conn):
        pool = MagicMock()
        pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
        pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
        return PostgresClinicalRecordRepository(pool)

    @pytest.mark.asyncio
    async def test_insert_when_absent(self, repo, conn, make_record):
        record = make_record()
        saved = await repo.save(record)
        assert saved.version == 0
        sql = conn.execute.await_args.args[0]
        assert "INSERT INTO clinical_records" in sql

    @pytest.mark.asyncio
    async def test_update_checks_version(self, repo, conn, make_record):
        conn.fetchval.return_value = 0
        saved = await repo.save(make_record())
        assert saved.version == 1
        assert "UPDATE clinical_records" in conn.execute.await_args.args[0]
        assert conn.execute.await_args.args[-1] == 1

    @pytest.mark.asyncio
    async def test_stale_version_raises(self, repo, conn, make_record):
        conn.fetchval.return_value = 4
        with pytest.raises(OptimisticLockError):
            await repo.save(make_record(version=2))
        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_criteria_pushdown(self, repo, conn):
        now = datetime(2026, 6, 1, tzinfo=timezone.utc)
        await repo.find_by_criteria(PopulationCriteria(condition="e11", time_range="30d"), now=now)

        sql, *params = conn.fetch.await_args.args
        assert "encounter_date >= $1" in sql
        assert "code LIKE $2" in sql
        assert "title ILIKE $3" in sql
        assert params == [now - timedelta(days=30), "E11%", "%e11%"]

    @pytest.mark.asyncio
    async def test_criteria_wildcards_match_literally(self, repo, conn):
        await repo.find_by_criteria(PopulationCriteria(condition="e1_%", time_range="all"))

        sql, *params = conn.fetch.await_args.args
        assert "code LIKE $1" in sql
        assert params == ["E1\\_\\%%", "%e1\\_\\%%"]

    @pytest.mark.asyncio
    async def test_row_decoding(self, repo, conn, make_record):
        record = make_record()
        row = record.model_dump()
        row.update(
            structured_data='{"treatment": "diuretics"}',
            embedding="[" + ",".join(["0.5"] * 1536) + "]",
        )
        conn.fetchrow = AsyncMock(return_value=row)

        fetched = await repo.get(record.id)

        assert fetched.structured_data == {"treatment": "diuretics"}
        assert len(fetched.embedding) == 1536
        assert fetched.icd_codes == ["I50.9"]

    def test_rejects_unsafe_table_name(self):
        with pytest.raises(ValueError):
            PostgresClinicalRecordRepository(MagicMock(), table="records;--")
