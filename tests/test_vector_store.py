"""
Tests for the vector clients and the VectorStore.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from clinsight.exceptions import EmbeddingDimensionError
from clinsight.vector.cache import LRUSearchCache
from clinsight.vector.client import InMemoryVectorClient, PgVectorClient, VectorRecord
from clinsight.vector.embeddings import EmbeddingService
from clinsight.vector.filters import parse_filter
from clinsight.vector.store import (
    CLINICAL_GUIDELINE,
    CLINICAL_RECORD,
    Document,
    SearchRequest,
    VectorStore,
    record_metadata,
)


class TestInMemoryVectorClient:

    @pytest.fixture
    def client(self):
        return InMemoryVectorClient(dimensions=3)

    @pytest.mark.asyncio
    async def test_search_orders_and_thresholds(self, client):
        await client.upsert([
            VectorRecord("x", [1.0, 0.0, 0.0], {"kind": "a"}),
            VectorRecord("y", [0.9, 0.1, 0.0], {"kind": "b"}),
            VectorRecord("z", [0.0, 1.0, 0.0], {"kind": "a"}),
        ])

        result = await client.search([1.0, 0.0, 0.0], top_k=10, similarity_threshold=0.5)

        assert [r.id for r in result.records] == ["x", "y"]
        assert result.records[0].score == pytest.approx(1.0)
        assert result.candidates == 3

    @pytest.mark.asyncio
    async def test_filter_applies_before_top_k(self, client):
        await client.upsert([
            VectorRecord("x", [1.0, 0.0, 0.0], {"kind": "a"}),
            VectorRecord("y", [0.9, 0.1, 0.0], {"kind": "b"}),
        ])
        result = await client.search([1.0, 0.0, 0.0], top_k=1, filter=parse_filter("kind == 'b'"))
        assert [r.id for r in result.records] == ["y"]

    @pytest.mark.asyncio
    async def test_ties_break_on_id(self, client):
        await client.upsert([
            VectorRecord("b", [1.0, 0.0, 0.0]),
            VectorRecord("a", [2.0, 0.0, 0.0]),
            VectorRecord("c", [3.0, 0.0, 0.0]),
        ])
        result = await client.search([1.0, 0.0, 0.0], top_k=2)
        assert [r.id for r in result.records] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_zero_vector_scores_zero(self, client):
        await client.upsert([VectorRecord("zero", [0.0, 0.0, 0.0])])
        result = await client.search([1.0, 0.0, 0.0], top_k=1)
        assert result.records[0].score == 0.0

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, client):
        await client.upsert([VectorRecord("x", [1.0, 0.0, 0.0])], namespace="one")
        assert await client.count("one") == 1
        assert await client.count("two") == 0
        assert (await client.search([1.0, 0.0, 0.0], namespace="two")).records == []

    @pytest.mark.asyncio
    async def test_upsert_replaces_and_delete(self, client):
        await client.upsert([VectorRecord("x", [1.0, 0.0, 0.0], {"v": 1})])
        await client.upsert([VectorRecord("x", [0.0, 1.0, 0.0], {"v": 2})])
        assert await client.count() == 1
        assert await client.delete(["x", "missing"]) == 1
        assert await client.count() == 0

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, client):
        with pytest.raises(EmbeddingDimensionError):
            await client.upsert([VectorRecord("x", [1.0, 0.0])])
        with pytest.raises(EmbeddingDimensionError):
            await client.search([1.0])


class TestPgVectorClient:

    @pytest.fixture
    def conn(self):
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[
            {"id": "r1", "metadata": '{"record_type": "DIAGNOSIS"}', "content": "text", "score": 0.91},
        ])
        conn.execute = AsyncMock(return_value="DELETE 2")
        conn.executemany = AsyncMock()
        return conn

    @pytest.fixture
    def pool(self, conn):
        pool = MagicMock()
        pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
        pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
        return pool

    def test_rejects_unsafe_table_name(self, pool):
        with pytest.raises(ValueError):
            PgVectorClient(pool, table="vectors; drop table x")

    @pytest.mark.asyncio
    async def test_search_builds_parameterised_query(self, pool, conn):
        client = PgVectorClient(pool, dimensions=2)
        result = await client.search(
            [0.5, 0.5],
            top_k=5,
            similarity_threshold=0.8,
            filter=parse_filter("record_type in ['DIAGNOSIS']"),
            namespace="clinical",
        )

        sql, *params = conn.fetch.await_args.args
        assert "embedding <=> $1::text::vector" in sql
        assert "jsonb_array_elements($5::jsonb)" in sql
        assert params == ["[0.5,0.5]", "clinical", 0.8, 5, '["DIAGNOSIS"]']
        assert result.records[0].id == "r1"
        assert result.records[0].metadata == {"record_type": "DIAGNOSIS"}
        assert result.records[0].score == pytest.approx(0.91)

    @pytest.mark.asyncio
    async def test_delete_parses_command_tag(self, pool):
        client = PgVectorClient(pool, dimensions=2)
        assert await client.delete(["a", "b"], namespace="clinical") == 2

    @pytest.mark.asyncio
    async def test_upsert(self, pool, conn):
        client = PgVectorClient(pool, dimensions=2)
        assert await client.upsert([VectorRecord("a", [1.0, 0.0], {"k": "v"}, "text")], "ns") == 1
        rows = conn.executemany.await_args.args[1]
        assert rows == [("a", "ns", "[1.0,0.0]", '{"k": "v"}', "text")]


class TestSearchRequest:

    @pytest.mark.parametrize("kwargs", [
        {"query": "  "},
        {"query": "x", "top_k": 0},
        {"query": "x", "similarity_threshold": 1.5},
        {"query": "x", "similarity_threshold": -0.1},
    ])
    def test_validation(self, kwargs):
        with pytest.raises(ValueError):
            SearchRequest(**kwargs)

    def test_builders_return_new_requests(self):
        request = SearchRequest("sepsis")
        narrowed = request.with_top_k(5).with_similarity_threshold(0.5).with_filter_expression("a == 1")
        assert request.top_k == 20
        assert (narrowed.top_k, narrowed.similarity_threshold, narrowed.filter_expression) == (5, 0.5, "a == 1")
        assert narrowed.with_query("other").query == "other"

    def test_fingerprint_covers_every_field(self):
        request = SearchRequest("sepsis")
        assert request.fingerprint() == SearchRequest("sepsis").fingerprint()
        assert request.fingerprint() != request.with_top_k(5).fingerprint()
        assert request.fingerprint() != request.with_filter_expression("a == 1").fingerprint()


class TestVectorStore:

    @pytest.fixture
    def store(self, metrics):
        embeddings = EmbeddingService(dimensions=1536)
        return VectorStore(
            InMemoryVectorClient(1536),
            embeddings,
            cache=LRUSearchCache(metrics=metrics),
            metrics=metrics,
        )

    @pytest.mark.asyncio
    async def test_index_and_search_record(self, store, make_record):
        record = make_record()
        await store.index_record(record)

        docs = await store.similarity_search(SearchRequest(record.search_text, similarity_threshold=0.0))

        assert docs[0].id == str(record.id)
        assert docs[0].score == pytest.approx(1.0)
        assert docs[0].metadata["document_type"] == CLINICAL_RECORD
        assert docs[0].metadata["record_type"] == "DIAGNOSIS"

    @pytest.mark.asyncio
    async def test_filter_expression_restricts_results(self, store, make_record):
        await store.index_guideline("hf-guideline", "Heart failure", "Acute decompensated heart failure management")
        await store.index_record(make_record())

        docs = await store.similarity_search(SearchRequest(
            "acute decompensated heart failure",
            similarity_threshold=0.0,
            filter_expression=f"document_type == '{CLINICAL_GUIDELINE}'",
        ))
        assert [d.id for d in docs] == ["hf-guideline"]

    @pytest.mark.asyncio
    async def test_results_are_cached_until_the_store_changes(self, store, make_record, metrics):
        await store.index_record(make_record())
        request = SearchRequest("heart failure", similarity_threshold=0.0)

        first = await store.similarity_search(request)
        second = await store.similarity_search(request)
        assert [d.id for d in first] == [d.id for d in second]
        assert metrics.vector_search_latency.get_count() == 1

        await store.index_record(make_record(title="Heart failure follow up"))
        third = await store.similarity_search(request)
        assert len(third) == 2
        assert metrics.vector_search_latency.get_count() == 2

    @pytest.mark.asyncio
    async def test_top_k_is_capped(self, make_record):
        store = VectorStore(max_top_k=1)
        await store.index_record(make_record())
        await store.index_record(make_record())
        docs = await store.similarity_search(SearchRequest("heart failure", top_k=50, similarity_threshold=0.0))
        assert len(docs) == 1

    @pytest.mark.asyncio
    async def test_add_documents_embeds_missing_and_delete(self, store):
        ids = await store.add_documents([Document("d1", "renal failure"), Document("d2", "asthma")])
        assert ids == ["d1", "d2"]
        assert await store.count() == 2
        assert await store.delete(["d1"]) == 1
        assert await store.count() == 1
        assert store.generation == 2

    @pytest.mark.asyncio
    async def test_index_guideline_upper_cases_conditions(self, store):
        await store.index_guideline("g1", "Diabetes", "Metformin first line", conditions=["e11"])
        docs = await store.similarity_search(SearchRequest("diabetes metformin", similarity_threshold=0.0))
        assert docs[0].metadata["conditions"] == ["E11"]


def test_record_metadata(make_record):
    record = make_record(structured_data={
        "treatment": "diuretics",
        "outcome": "discharged",
        "risk_score": 0.7,
        "demographics": {"age": 72, "gender": "female"},
    })
    metadata = record_metadata(record)
    assert metadata["case_id"] == str(record.id)
    assert metadata["diagnosis"] == "I50.9"
    assert metadata["severity"] == "HIGH"
    assert metadata["treatment"] == "diuretics"
    assert metadata["risk_score"] == 0.7
    assert metadata["demographics"] == "age:72 gender:female"


def test_record_metadata_flattens_free_form_values(make_record):
    record = make_record(structured_data={
        "treatment": {"drug": "furosemide", "dose_mg": 40},
        "outcome": ["readmitted", 14],
        "risk_score": "high",
        "demographics": {"age": "67 years", "gender": "male"},
    })
    metadata = record_metadata(record)
    assert metadata["treatment"] == '{"dose_mg": 40, "drug": "furosemide"}'
    assert metadata["outcome"] == '["readmitted", 14]'
    assert metadata["risk_score"] is None
    assert metadata["demographics"] == "age:30 gender:male"
