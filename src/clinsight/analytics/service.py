"""
Clinical Analytics Service

Similarity search, risk assessment, population health analytics and
clinical decision support over the clinical record store and the vector
store, plus the record ingestion path that keeps both in sync.

Every operation:
- wraps unexpected failures in ClinicalAnalyticsError (logged once)
- publishes a best-effort analytics event on success
- records its duration and outcome in the metrics collector
"""

from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, TypeVar
from uuid import UUID
import asyncio

import psutil
import structlog

from clinsight.analytics.features import (
    ClinicalFeatures,
    check_contraindications,
    generate_recommendations,
    identify_context_risk_factors,
)
from clinsight.analytics.population import build_population_insights
from clinsight.config import AnalyticsSettings
from clinsight.exceptions import ClinicalAnalyticsError, OptimisticLockError, RecordNotFoundError
from clinsight.models.analytics import (
    AnalyticsEventType,
    AnalyticsPerformanceMetrics,
    ClinicalContext,
    ClinicalDecisionSupport,
    HealthStatus,
    MemoryUsage,
    PatientDemographics,
    PopulationCriteria,
    PopulationHealthInsights,
    RiskAssessmentResult,
    ServiceHealthStatus,
    SimilarCaseResult,
)
from clinsight.models.records import ClinicalRecord
from clinsight.observability.metrics import MetricsCollector, get_metrics_collector
from clinsight.repository.base import ClinicalRecordRepository
from clinsight.search.executor import SearchExecutor
from clinsight.search.ranking import (
    aggregate_risk,
    confidence_score,
    determine_risk_level,
    historical_risk,
    rank_cases,
)
from clinsight.streaming.producer import EventPublisher, InMemoryEventPublisher
from clinsight.vector.store import Document, SearchRequest, VectorStore, metadata_number, metadata_text

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SIMILAR_CASE_FILTER = "record_type in ['DIAGNOSIS', 'TREATMENT_PLAN']"
GUIDELINE_FILTER = "document_type == 'CLINICAL_GUIDELINE'"

_LIFECYCLE_ERRORS = (RecordNotFoundError, OptimisticLockError)


def build_enhanced_query(query: str, demographics: PatientDemographics | None) -> str:
    """Append demographic context and comorbidities to a free-text query."""
    if demographics is None:
        return query
    parts = [query, demographics.describe(), *demographics.comorbidities]
    return " ".join(p for p in parts if p)


def document_to_case(document: Document) -> SimilarCaseResult:
    metadata = document.metadata
    return SimilarCaseResult(
        case_id=str(metadata.get("case_id") or document.id),
        patient_demographics=metadata_text(metadata.get("demographics")),
        clinical_presentation=document.content,
        diagnosis=metadata_text(metadata.get("diagnosis")),
        treatment=metadata_text(metadata.get("treatment")),
        outcome=metadata_text(metadata.get("outcome")),
        record_type=metadata_text(metadata.get("record_type")),
        similarity_score=document.score,
        recorded_risk=metadata_number(metadata.get("risk_score")),
    )


def extract_recommendations(guidelines: Iterable[Document]) -> list[str]:
    """Guideline recommendations in relevance order, without duplicates."""
    seen: set[str] = set()
    recommendations = []
    for doc in guidelines:
        items = doc.metadata.get("recommendations") or [f"Follow guideline: {doc.metadata.get('title', doc.id)}"]
        for item in items:
            if item not in seen:
                seen.add(item)
                recommendations.append(item)
    return recommendations


def guideline_contraindications(guidelines: Iterable[Document], medications: list[str]) -> list[str]:
    """Guideline contraindications that name one of the patient's medications."""
    meds = [m.lower() for m in medications]
    found = []
    for doc in guidelines:
        for item in doc.metadata.get("contraindications") or []:
            if any(med in item.lower() for med in meds) and item not in found:
                found.append(item)
    return found


class ClinicalAnalyticsService:
    """
    Clinical analytics operations.

    Usage:
        service = ClinicalAnalyticsService(vector_store, repository, publisher, executor)
        cases = await service.find_similar_clinical_cases("chest pain", demographics, 10, 0.8)
    """

    def __init__(
        self,
        vector_store: VectorStore,
        repository: ClinicalRecordRepository,
        publisher: EventPublisher | None = None,
        executor: SearchExecutor | None = None,
        settings: AnalyticsSettings | None = None,
        default_top_k: int = 20,
        default_similarity_threshold: float = 0.8,
        metrics: MetricsCollector | None = None,
    ):
        self.vector_store = vector_store
        self.repository = repository
        self.publisher = publisher or InMemoryEventPublisher(metrics)
        self.executor = executor or SearchExecutor(metrics=metrics)
        self.settings = settings or AnalyticsSettings()
        self.default_top_k = default_top_k
        self.default_similarity_threshold = default_similarity_threshold
        self._metrics = metrics

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics or get_metrics_collector()

    async def _run(
        self,
        operation: str,
        description: str,
        fn: Callable[..., Awaitable[T]],
        *args,
        passthrough: tuple[type[BaseException], ...] = (),
    ) -> T:
        """Run an operation body with timing, outcome counting and error wrapping."""
        outcome = "error"
        try:
            with self.metrics.query_duration.time():
                result = await fn(*args)
            outcome = "ok"
            return result
        except ClinicalAnalyticsError:
            raise
        except passthrough:
            outcome = "rejected"
            raise
        except Exception as e:
            logger.error(f"Failed to {description}", operation=operation, error=str(e), exc_info=True)
            raise ClinicalAnalyticsError(f"Failed to {description}", operation, e) from e
        finally:
            self.metrics.operations.inc(labels={"operation": operation, "outcome": outcome})

    async def _publish(self, event_type: AnalyticsEventType, data: dict[str, Any]) -> None:
        await self.publisher.publish(event_type, data)

    # -------------------------------------------------------------------------
    # Similarity search
    # -------------------------------------------------------------------------

    async def find_similar_clinical_cases(
        self,
        query: str,
        demographics: PatientDemographics | None = None,
        max_results: int | None = None,
        similarity_threshold: float | None = None,
        exclude_ids: Iterable[str] = (),
    ) -> list[SimilarCaseResult]:
        """Similar diagnosis and treatment-plan cases for a free-text query."""
        return await self._run(
            "semantic_search",
            "perform semantic search",
            self._find_similar_clinical_cases,
            query,
            demographics,
            self.default_top_k if max_results is None else max_results,
            self.default_similarity_threshold if similarity_threshold is None else similarity_threshold,
            tuple(exclude_ids),
        )

    def _case_request(
        self, query: str, demographics: PatientDemographics | None, max_results: int,
        similarity_threshold: float, exclude_ids: tuple[str, ...],
    ) -> SearchRequest:
        return SearchRequest(
            query=build_enhanced_query(query, demographics),
            # Room for excluded ids
            top_k=max_results + len(exclude_ids),
            similarity_threshold=similarity_threshold,
            filter_expression=SIMILAR_CASE_FILTER,
        )

    async def _find_similar_clinical_cases(
        self,
        query: str,
        demographics: PatientDemographics | None,
        max_results: int,
        similarity_threshold: float,
        exclude_ids: tuple[str, ...],
    ) -> list[SimilarCaseResult]:
        logger.info("Performing semantic search", max_results=max_results, threshold=similarity_threshold)
        request = self._case_request(query, demographics, max_results, similarity_threshold, exclude_ids)
        documents = await self.executor.run(self.vector_store.similarity_search, request)
        cases = rank_cases(
            (document_to_case(d) for d in documents),
            top_k=max_results,
            similarity_threshold=similarity_threshold,
            exclude_ids=exclude_ids,
        )

        await self._publish(AnalyticsEventType.SEMANTIC_SEARCH_PERFORMED, {
            "query_length": len(query),
            "results_count": len(cases),
            "max_results": max_results,
            "similarity_threshold": similarity_threshold,
        })
        return cases

    # -------------------------------------------------------------------------
    # Risk assessment
    # -------------------------------------------------------------------------

    async def assess_clinical_risk(
        self, record: ClinicalRecord, patient_history: list[str] | None = None
    ) -> RiskAssessmentResult:
        """Blend the record's own risk features with outcomes of similar cases."""
        return await self._run(
            "risk_assessment",
            "perform risk assessment",
            self._assess_clinical_risk,
            record,
            list(patient_history or []),
        )

    async def _assess_clinical_risk(self, record: ClinicalRecord, patient_history: list[str]) -> RiskAssessmentResult:
        logger.info("Performing risk assessment", patient_id=str(record.patient_id))
        features = ClinicalFeatures.extract(record, patient_history)

        similar_cases = await self.find_similar_clinical_cases(
            record.clinical_narrative or record.search_text,
            PatientDemographics.from_record(record),
            self.settings.risk_similar_cases,
            self.settings.risk_similarity_threshold,
            exclude_ids=[str(record.id)],
        )

        base = features.calculate_base_risk()
        # Level and recommendations follow the reported score
        score = round(aggregate_risk(base, similar_cases, self.settings.base_risk_weight), 4)
        result = RiskAssessmentResult(
            patient_id=record.patient_id,
            risk_score=score,
            risk_level=determine_risk_level(score),
            base_risk=round(base, 4),
            historical_risk=round(historical_risk(similar_cases), 4),
            contributing_factors=features.risk_factors(),
            recommendations=generate_recommendations(score, features),
            similar_cases_analyzed=len(similar_cases),
        )

        await self._publish(AnalyticsEventType.RISK_ASSESSMENT_COMPLETED, {
            "patient_id": str(record.patient_id),
            "risk_score": result.risk_score,
            "risk_level": result.risk_level.value,
        })
        return result

    # -------------------------------------------------------------------------
    # Population health
    # -------------------------------------------------------------------------

    async def analyze_population_health(self, criteria: PopulationCriteria) -> PopulationHealthInsights:
        return await self._run(
            "population_health",
            "analyze population health",
            self._analyze_population_health,
            criteria,
        )

    async def _analyze_population_health(self, criteria: PopulationCriteria) -> PopulationHealthInsights:
        logger.info("Analyzing population health", criteria=criteria.model_dump())
        records = await self.repository.find_by_criteria(criteria)

        # Grouping is CPU-bound
        insights = await asyncio.to_thread(build_population_insights, records, criteria.aggregation)

        await self._publish(AnalyticsEventType.POPULATION_ANALYSIS_COMPLETED, {
            "criteria": criteria.model_dump(),
            "records_analyzed": len(records),
            "insights": insights.summary,
        })
        return insights

    # -------------------------------------------------------------------------
    # Decision support
    # -------------------------------------------------------------------------

    async def provide_clinical_decision_support(self, context: ClinicalContext) -> ClinicalDecisionSupport:
        return await self._run(
            "decision_support",
            "provide clinical decision support",
            self._provide_clinical_decision_support,
            context,
        )

    async def _provide_clinical_decision_support(self, context: ClinicalContext) -> ClinicalDecisionSupport:
        logger.info(
            "Providing clinical decision support",
            patient_id=str(context.patient_id),
            provider_id=str(context.provider_id),
        )
        guideline_request = SearchRequest(
            query=context.clinical_scenario,
            top_k=self.settings.guideline_top_k,
            similarity_threshold=self.settings.guideline_threshold,
            filter_expression=GUIDELINE_FILTER,
        )
        case_request = self._case_request(
            context.clinical_scenario,
            context.patient_demographics,
            self.settings.decision_support_cases,
            self.settings.decision_support_threshold,
            (),
        )

        guideline_outcome, case_outcome = await self.executor.gather(
            partial(self.vector_store.similarity_search, guideline_request),
            partial(self.vector_store.similarity_search, case_request),
        )
        if not guideline_outcome.ok and not case_outcome.ok:
            raise guideline_outcome.error
        for name, outcome in (("guidelines", guideline_outcome), ("similar_cases", case_outcome)):
            if not outcome.ok:
                logger.warning("Decision support search failed, continuing without it",
                               search=name, error=str(outcome.error))

        guidelines: list[Document] = guideline_outcome.value or []
        cases = rank_cases(
            (document_to_case(d) for d in case_outcome.value or []),
            top_k=self.settings.decision_support_cases,
            similarity_threshold=self.settings.decision_support_threshold,
        )

        contraindications = check_contraindications(context)
        for item in guideline_contraindications(guidelines, context.current_medications):
            if item not in contraindications:
                contraindications.append(item)

        support = ClinicalDecisionSupport(
            evidence_based_recommendations=extract_recommendations(guidelines),
            similar_successful_cases=cases,
            risk_factors=identify_context_risk_factors(context),
            contraindications=contraindications,
            confidence_score=confidence_score(
                [d.score or 0.0 for d in guidelines],
                [c.similarity_score or 0.0 for c in cases],
            ),
            guidelines_consulted=len(guidelines),
        )

        await self._publish(AnalyticsEventType.CLINICAL_DECISION_SUPPORT_PROVIDED, {
            "patient_id": str(context.patient_id),
            "provider_id": str(context.provider_id),
            "recommendations_count": len(support.evidence_based_recommendations),
        })
        return support

    # -------------------------------------------------------------------------
    # Record lifecycle
    # -------------------------------------------------------------------------

    async def ingest_record(self, record: ClinicalRecord) -> ClinicalRecord:
        """Persist a new record and index it for similarity search."""
        return await self._run(
            "ingest_record", "ingest clinical record", self._ingest_record, record,
            passthrough=_LIFECYCLE_ERRORS,
        )

    async def _ingest_record(self, record: ClinicalRecord) -> ClinicalRecord:
        if record.embedding is None:
            embedding = await self.vector_store.embed_document(record.search_text)
            record = record.model_copy(update={"embedding": embedding})
        # Index before saving: a stored record is always searchable, and a
        # failed save is rolled back in the vector store
        existing = await self.repository.get(record.id)
        await self.vector_store.index_record(record)
        try:
            saved = await self.repository.save(record)
        except Exception:
            if existing is None:
                await self.vector_store.delete([str(record.id)])
            else:
                await self.vector_store.index_record(existing)
            raise

        await self._publish(AnalyticsEventType.RECORD_INGESTED, {
            "record_id": str(saved.id),
            "patient_id": str(saved.patient_id),
            "record_type": saved.record_type.value,
        })
        return saved

    async def get_record(self, record_id: UUID) -> ClinicalRecord:
        record = await self.repository.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    async def update_record_narrative(
        self,
        record_id: UUID,
        narrative: str,
        updated_by: str,
        expected_version: int | None = None,
    ) -> ClinicalRecord:
        """Replace a record's narrative, re-embed and re-index it."""
        return await self._run(
            "update_narrative", "update clinical narrative", self._update_record_narrative,
            record_id, narrative, updated_by, expected_version,
            passthrough=_LIFECYCLE_ERRORS,
        )

    async def _update_record_narrative(
        self, record_id: UUID, narrative: str, updated_by: str, expected_version: int | None
    ) -> ClinicalRecord:
        record = await self._load_for_update(record_id, expected_version)
        record.update_clinical_narrative(narrative, updated_by)
        record.embedding = await self.vector_store.embed_document(record.search_text)

        saved = await self.repository.save(record)
        await self.vector_store.index_record(saved)
        await self._publish(AnalyticsEventType.RECORD_UPDATED, {
            "record_id": str(saved.id),
            "change": "narrative",
            "version": saved.version,
        })
        return saved

    async def append_record_codes(
        self,
        record_id: UUID,
        icd_codes: list[str] | None = None,
        cpt_codes: list[str] | None = None,
        updated_by: str | None = None,
        expected_version: int | None = None,
    ) -> tuple[ClinicalRecord, dict[str, list[str]]]:
        """
        Append diagnosis / procedure codes.

        Returns the record and the codes actually added. Appending only codes
        the record already has changes nothing and does not bump the version.
        """
        return await self._run(
            "append_codes", "append record codes", self._append_record_codes,
            record_id, list(icd_codes or []), list(cpt_codes or []), updated_by, expected_version,
            passthrough=_LIFECYCLE_ERRORS,
        )

    async def _append_record_codes(
        self,
        record_id: UUID,
        icd_codes: list[str],
        cpt_codes: list[str],
        updated_by: str | None,
        expected_version: int | None,
    ) -> tuple[ClinicalRecord, dict[str, list[str]]]:
        record = await self._load_for_update(record_id, expected_version)
        added = {
            "icd_codes": [c.strip().upper() for c in icd_codes if record.add_icd_code(c)],
            "cpt_codes": [c.strip().upper() for c in cpt_codes if record.add_cpt_code(c)],
        }
        if not added["icd_codes"] and not added["cpt_codes"]:
            return record, added

        if updated_by:
            record.updated_by = updated_by
        saved = await self.repository.save(record)
        await self.vector_store.index_record(saved)
        await self._publish(AnalyticsEventType.RECORD_UPDATED, {
            "record_id": str(saved.id),
            "change": "codes",
            "version": saved.version,
            "added": added,
        })
        return saved, added

    async def _load_for_update(self, record_id: UUID, expected_version: int | None) -> ClinicalRecord:
        record = await self.get_record(record_id)
        if expected_version is not None and expected_version != record.version:
            raise OptimisticLockError(record_id, expected_version, record.version)
        return record

    async def ingest_guideline(
        self,
        guideline_id: str,
        title: str,
        content: str,
        conditions: list[str] | None = None,
        recommendations: list[str] | None = None,
        contraindications: list[str] | None = None,
    ) -> str:
        return await self._run(
            "ingest_guideline", "ingest clinical guideline", self.vector_store.index_guideline,
            guideline_id, title, content, conditions, recommendations, contraindications,
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def health_status(self) -> ServiceHealthStatus:
        """Component health; the broker being down only degrades the service."""
        database_ok, vector_ok, broker_ok = await asyncio.gather(
            self.repository.health_check(),
            self.vector_store.health_check(),
            self.publisher.health_check(),
        )

        def status(ok: bool) -> HealthStatus:
            return HealthStatus.HEALTHY if ok else HealthStatus.UNHEALTHY

        if not database_ok or not vector_ok:
            overall = HealthStatus.UNHEALTHY
        elif not broker_ok:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        return ServiceHealthStatus(
            vector_database_status=status(vector_ok),
            kafka_status=status(broker_ok),
            database_status=status(database_ok),
            overall_status=overall,
            timestamp=int(datetime.now(timezone.utc).timestamp() * 1000),
        )

    def performance_metrics(self, database_connections: int = 0) -> AnalyticsPerformanceMetrics:
        """
        Snapshot of latency, cache, event and memory figures.

        ``active_connections`` is in-flight searches plus checked-out
        database connections.
        """
        metrics = self.metrics
        memory = psutil.virtual_memory()
        rss = psutil.Process().memory_info().rss

        return AnalyticsPerformanceMetrics(
            average_query_time_ms=round(metrics.query_duration.get_mean() * 1000, 3),
            vector_search_latency_ms=round(metrics.vector_search_latency.get_mean() * 1000, 3),
            p95_vector_search_latency_ms=round(metrics.vector_search_latency.get_percentile(95) * 1000, 3),
            event_publish_rate=round(metrics.event_publish_rate(), 4),
            events_failed=int(metrics.events_failed.total()),
            cache_hit_ratio=round(metrics.cache_hit_ratio(), 4),
            memory_usage=MemoryUsage(
                total_memory=memory.total,
                used_memory=rss,
                free_memory=memory.available,
                usage_percentage=round(rss / memory.total * 100, 2) if memory.total else 0.0,
            ),
            active_connections=self.executor.pending + database_connections,
        )
