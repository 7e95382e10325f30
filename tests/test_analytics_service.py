"""
Tests for ClinicalAnalyticsService.

Runs against the in-memory repository, vector client and publisher with
hashing embeddings, so similarity is real but deterministic.
"""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio

from clinsight.analytics.service import (
    GUIDELINE_FILTER,
    ClinicalAnalyticsService,
    build_enhanced_query,
)
from clinsight.config import AnalyticsSettings
from clinsight.exceptions import (
    BackpressureError,
    ClinicalAnalyticsError,
    OptimisticLockError,
    RecordNotFoundError,
)
from clinsight.models.analytics import (
    AnalyticsEventType,
    ClinicalContext,
    HealthStatus,
    PatientDemographics,
    PopulationCriteria,
    RiskLevel,
)
from clinsight.models.records import RecordType, SeverityLevel
from clinsight.repository import InMemoryClinicalRecordRepository
from clinsight.search.executor import SearchExecutor
from clinsight.streaming.producer import InMemoryEventPublisher, KafkaEventPublisher
from clinsight.vector.cache import LRUSearchCache
from clinsight.vector.client import InMemoryVectorClient
from clinsight.vector.embeddings import EmbeddingService
from clinsight.vector.store import VectorStore


@pytest.fixture
def publisher(metrics):
    return InMemoryEventPublisher(metrics)


@pytest.fixture
def service(metrics, publisher):
    store = VectorStore(
        InMemoryVectorClient(1536),
        EmbeddingService(dimensions=1536),
        cache=LRUSearchCache(metrics=metrics),
        metrics=metrics,
    )
    return ClinicalAnalyticsService(
        store,
        InMemoryClinicalRecordRepository(),
        publisher=publisher,
        executor=SearchExecutor(metrics=metrics),
        settings=AnalyticsSettings(
            risk_similarity_threshold=0.0,
            decision_support_threshold=0.0,
            guideline_threshold=0.0,
        ),
        metrics=metrics,
    )


def test_build_enhanced_query():
    demographics = PatientDemographics(age=70, gender="female", comorbidities=["CKD"])
    assert build_enhanced_query("dyspnea", demographics) == "dyspnea age:70 gender:female CKD"
    assert build_enhanced_query("dyspnea", None) == "dyspnea"


class TestSimilarCases:

    @pytest.mark.asyncio
    async def test_returns_diagnosis_and_treatment_cases_only(self, service, make_record, publisher):
        diagnosis = await service.ingest_record(make_record())
        await service.ingest_record(make_record(record_type=RecordType.LAB_RESULT))

        cases = await service.find_similar_clinical_cases(
            "acute decompensated heart failure", similarity_threshold=0.0
        )

        assert [c.case_id for c in cases] == [str(diagnosis.id)]
        assert cases[0].diagnosis == "I50.9"
        assert cases[0].record_type == "DIAGNOSIS"
        [searched] = publisher.of_type(AnalyticsEventType.SEMANTIC_SEARCH_PERFORMED)
        assert searched.data["results_count"] == 1
        assert searched.data["query_length"] == len("acute decompensated heart failure")

    @pytest.mark.asyncio
    async def test_respects_max_results_and_threshold(self, service, make_record):
        for _ in range(3):
            await service.ingest_record(make_record())

        assert len(await service.find_similar_clinical_cases("heart failure", None, 2, 0.0)) == 2
        assert await service.find_similar_clinical_cases("unrelated dermatology eczema", None, 10, 0.99) == []

    @pytest.mark.asyncio
    async def test_backpressure_is_wrapped(self, service, metrics):
        service.executor = MagicMock()
        service.executor.run = AsyncMock(side_effect=BackpressureError(64, 64))

        with pytest.raises(ClinicalAnalyticsError) as exc:
            await service.find_similar_clinical_cases("heart failure")

        assert isinstance(exc.value.cause, BackpressureError)
        assert exc.value.operation == "semantic_search"
        assert metrics.operations.get({"operation": "semantic_search", "outcome": "error"}) == 1


class TestRiskAssessment:

    @pytest.mark.asyncio
    async def test_without_similar_cases_uses_neutral_history(self, service, make_record, publisher):
        record = make_record(icd_codes=["I50.9"], severity_level=SeverityLevel.HIGH)

        result = await service.assess_clinical_risk(record)

        # base 0.6 + 0.2 = 0.8; 0.7 * 0.8 + 0.3 * 0.5
        assert result.base_risk == pytest.approx(0.8)
        assert result.historical_risk == pytest.approx(0.5)
        assert result.risk_score == pytest.approx(0.71)
        assert result.risk_level == RiskLevel.MODERATE
        assert result.similar_cases_analyzed == 0
        assert "Cardiology follow-up within 7 days" in result.recommendations
        [completed] = publisher.of_type(AnalyticsEventType.RISK_ASSESSMENT_COMPLETED)
        assert completed.data == {
            "patient_id": str(record.patient_id),
            "risk_score": 0.71,
            "risk_level": "MODERATE",
        }

    @pytest.mark.asyncio
    async def test_similar_case_outcomes_raise_risk(self, service, make_record):
        await service.ingest_record(make_record(structured_data={"risk_score": 1.0}))
        record = await service.ingest_record(make_record())

        result = await service.assess_clinical_risk(record, ["prior admission"])

        # Own record is excluded; the other case carries recorded risk 1.0
        assert result.similar_cases_analyzed == 1
        assert result.historical_risk == pytest.approx(1.0)
        assert result.base_risk == pytest.approx(0.81)
        assert result.risk_score == pytest.approx(0.7 * 0.81 + 0.3)
        assert result.risk_level == RiskLevel.HIGH


class TestPopulationHealth:

    @pytest.mark.asyncio
    async def test_groups_matching_records(self, service, make_record, publisher):
        await service.ingest_record(make_record())
        await service.ingest_record(make_record(record_type=RecordType.TREATMENT_PLAN))
        await service.ingest_record(make_record(icd_codes=["E11.9"], title="Diabetes review",
                                                clinical_narrative="Stable A1c"))

        insights = await service.analyze_population_health(PopulationCriteria(condition="I50"))

        assert insights.records_analyzed == 2
        assert set(insights.groups) == {"DIAGNOSIS", "TREATMENT_PLAN"}
        [completed] = publisher.of_type(AnalyticsEventType.POPULATION_ANALYSIS_COMPLETED)
        assert completed.data["records_analyzed"] == 2
        assert completed.data["criteria"]["condition"] == "I50"

    @pytest.mark.asyncio
    async def test_repository_failure_is_wrapped(self, service, metrics):
        service.repository.find_by_criteria = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(ClinicalAnalyticsError) as exc:
            await service.analyze_population_health(PopulationCriteria())

        assert str(exc.value) == "Failed to analyze population health"
        assert isinstance(exc.value.cause, RuntimeError)
        assert metrics.operations.get({"operation": "population_health", "outcome": "error"}) == 1


class TestDecisionSupport:

    @pytest.fixture
    def context(self):
        return ClinicalContext(
            patient_id=uuid4(),
            provider_id=uuid4(),
            clinical_scenario="acute decompensated heart failure",
            current_medications=["warfarin", "aspirin"],
        )

    @pytest_asyncio.fixture
    async def indexed(self, service, make_record):
        await service.ingest_guideline(
            "hf-2022",
            "Heart failure management",
            "Acute decompensated heart failure: diuresis and guideline directed therapy",
            conditions=["I50"],
            recommendations=["Start loop diuretic", "Daily weights"],
            contraindications=["Avoid warfarin with NSAIDs"],
        )
        return await service.ingest_record(make_record())

    @pytest.mark.asyncio
    async def test_combines_guidelines_cases_and_rules(self, service, context, indexed, publisher):
        support = await service.provide_clinical_decision_support(context)

        assert support.evidence_based_recommendations == ["Start loop diuretic", "Daily weights"]
        assert [c.case_id for c in support.similar_successful_cases] == [str(indexed.id)]
        assert support.contraindications == [
            "Warfarin with aspirin: increased bleeding risk, monitor INR closely",
            "Avoid warfarin with NSAIDs",
        ]
        assert support.guidelines_consulted == 1
        assert 0.0 < support.confidence_score <= 1.0
        [provided] = publisher.of_type(AnalyticsEventType.CLINICAL_DECISION_SUPPORT_PROVIDED)
        assert provided.data["recommendations_count"] == 2

    @pytest.mark.asyncio
    async def test_continues_when_one_search_fails(self, service, context, indexed):
        original = service.vector_store.similarity_search

        async def guideline_index_down(request):
            if request.filter_expression == GUIDELINE_FILTER:
                raise RuntimeError("guideline index down")
            return await original(request)

        service.vector_store.similarity_search = guideline_index_down
        support = await service.provide_clinical_decision_support(context)

        assert support.evidence_based_recommendations == []
        assert support.guidelines_consulted == 0
        assert len(support.similar_successful_cases) == 1

    @pytest.mark.asyncio
    async def test_fails_when_both_searches_fail(self, service, context):
        service.vector_store.similarity_search = AsyncMock(side_effect=RuntimeError("vector store down"))

        with pytest.raises(ClinicalAnalyticsError) as exc:
            await service.provide_clinical_decision_support(context)
        assert exc.value.operation == "decision_support"


class TestRecordLifecycle:

    @pytest.mark.asyncio
    async def test_ingest_embeds_saves_and_indexes(self, service, make_record, publisher):
        saved = await service.ingest_record(make_record())

        assert saved.embedding is not None and len(saved.embedding) == 1536
        assert await service.repository.exists(saved.id)
        assert await service.vector_store.count() == 1
        [ingested] = publisher.of_type(AnalyticsEventType.RECORD_INGESTED)
        assert ingested.data["record_id"] == str(saved.id)

    @pytest.mark.asyncio
    async def test_get_missing_record(self, service):
        with pytest.raises(RecordNotFoundError):
            await service.get_record(uuid4())

    @pytest.mark.asyncio
    async def test_update_narrative_reembeds(self, service, make_record, publisher):
        saved = await service.ingest_record(make_record())

        updated = await service.update_record_narrative(saved.id, "Euvolemic after diuresis", "dr-b", 0)

        assert updated.version == 1
        assert updated.clinical_narrative == "Euvolemic after diuresis"
        assert updated.embedding != saved.embedding
        [event] = publisher.of_type(AnalyticsEventType.RECORD_UPDATED)
        assert event.data == {"record_id": str(saved.id), "change": "narrative", "version": 1}

    @pytest.mark.asyncio
    async def test_stale_expected_version_passes_through(self, service, make_record, metrics):
        saved = await service.ingest_record(make_record())
        await service.update_record_narrative(saved.id, "First edit", "dr-a")

        with pytest.raises(OptimisticLockError):
            await service.update_record_narrative(saved.id, "Second edit", "dr-b", expected_version=0)
        assert metrics.operations.get({"operation": "update_narrative", "outcome": "rejected"}) == 1

    @pytest.mark.asyncio
    async def test_append_codes(self, service, make_record):
        saved = await service.ingest_record(make_record(icd_codes=["I50.9"]))

        record, added = await service.append_record_codes(saved.id, ["i50.9", "n18.3"], ["99223"], "dr-b")

        assert added == {"icd_codes": ["N18.3"], "cpt_codes": ["99223"]}
        assert record.icd_codes == ["I50.9", "N18.3"]
        assert record.version == 1

    @pytest.mark.asyncio
    async def test_append_known_codes_is_a_no_op(self, service, make_record, publisher):
        saved = await service.ingest_record(make_record(icd_codes=["I50.9"]))

        record, added = await service.append_record_codes(saved.id, ["I50.9"])

        assert added == {"icd_codes": [], "cpt_codes": []}
        assert record.version == 0
        assert publisher.of_type(AnalyticsEventType.RECORD_UPDATED) == []


class TestOperations:

    @pytest.mark.asyncio
    async def test_healthy(self, service):
        health = await service.health_status()
        assert health.overall_status == HealthStatus.HEALTHY
        assert health.timestamp > 0

    @pytest.mark.asyncio
    async def test_broker_down_is_degraded(self, service):
        service.publisher = KafkaEventPublisher()
        health = await service.health_status()
        assert health.kafka_status == HealthStatus.UNHEALTHY
        assert health.overall_status == HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_database_down_is_unhealthy(self, service):
        service.repository.health_check = AsyncMock(return_value=False)
        health = await service.health_status()
        assert health.database_status == HealthStatus.UNHEALTHY
        assert health.overall_status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_performance_metrics(self, service, make_record):
        await service.ingest_record(make_record())
        await service.find_similar_clinical_cases("heart failure", similarity_threshold=0.0)

        snapshot = service.performance_metrics(database_connections=3)

        assert snapshot.active_connections == 3
        assert snapshot.memory_usage.total_memory > 0
        assert snapshot.memory_usage.used_memory > 0
        assert snapshot.average_query_time_ms >= 0
        assert 0.0 <= snapshot.cache_hit_ratio <= 1.0


class TestFreeFormStructuredData:

    @pytest.mark.asyncio
    async def test_nested_values_do_not_break_search(self, service, make_record):
        await service.ingest_record(make_record())
        odd = await service.ingest_record(make_record(structured_data={
            "treatment": {"drug": "furosemide", "dose_mg": 40},
            "outcome": ["readmitted"],
            "demographics": {"age": "67 years", "gender": "male"},
        }))

        cases = await service.find_similar_clinical_cases("heart failure", None, 10, 0.0)

        assert len(cases) == 2
        [case] = [c for c in cases if c.case_id == str(odd.id)]
        assert case.treatment == '{"dose_mg": 40, "drug": "furosemide"}'
        assert case.patient_demographics == "age:30 gender:male"

        result = await service.assess_clinical_risk(odd)
        assert result.similar_cases_analyzed == 1


class TestIngestConsistency:

    @pytest.mark.asyncio
    async def test_failed_indexing_stores_nothing(self, service, make_record):
        service.vector_store.client.upsert = AsyncMock(side_effect=RuntimeError("vector store down"))

        with pytest.raises(ClinicalAnalyticsError):
            await service.ingest_record(make_record())

        assert await service.repository.count() == 0

    @pytest.mark.asyncio
    async def test_failed_save_removes_the_vector(self, service, make_record):
        service.repository.save = AsyncMock(side_effect=RuntimeError("database down"))

        with pytest.raises(ClinicalAnalyticsError):
            await service.ingest_record(make_record())

        assert await service.vector_store.count() == 0


class TestPublishFailures:

    @pytest.mark.asyncio
    async def test_operations_complete_when_broker_is_down(self, service, make_record, metrics):
        await service.ingest_record(make_record())
        service.publisher = KafkaEventPublisher(metrics=metrics)

        cases = await service.find_similar_clinical_cases("heart failure", None, 10, 0.0)
        result = await service.assess_clinical_risk(make_record())

        assert len(cases) == 1
        assert result.similar_cases_analyzed == 1
        assert metrics.events_failed.get({"event_type": "SEMANTIC_SEARCH_PERFORMED"}) == 2
        assert metrics.events_failed.get({"event_type": "RISK_ASSESSMENT_COMPLETED"}) == 1
        assert metrics.operations.get({"operation": "risk_assessment", "outcome": "ok"}) == 1


@pytest.mark.asyncio
async def test_risk_level_follows_reported_score(service, make_record, monkeypatch):
    monkeypatch.setattr("clinsight.analytics.service.aggregate_risk", lambda *args: 0.79996)

    result = await service.assess_clinical_risk(make_record())

    assert result.risk_score == 0.8
    assert result.risk_level == RiskLevel.HIGH
