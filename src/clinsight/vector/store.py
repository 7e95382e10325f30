"""
Vector Store - High-level API for clinical similarity search

Wraps a VectorClient and an EmbeddingService:
- similarity_search: embed query, apply metadata filter, threshold, top-k
- index_record / index_guideline / add_documents: write path
- result caching keyed by request and store generation
"""

from dataclasses import dataclass, field, replace
from typing import Any
import hashlib
import json

import structlog

from clinsight.models.analytics import PatientDemographics
from clinsight.models.records import ClinicalRecord
from clinsight.observability.metrics import MetricsCollector, get_metrics_collector
from clinsight.vector.cache import SearchCache
from clinsight.vector.client import InMemoryVectorClient, VectorClient, VectorRecord
from clinsight.vector.embeddings import EmbeddingService
from clinsight.vector.filters import parse_filter

logger = structlog.get_logger(__name__)

CLINICAL_RECORD = "CLINICAL_RECORD"
CLINICAL_GUIDELINE = "CLINICAL_GUIDELINE"


@dataclass(frozen=True)
class SearchRequest:
    """
    A similarity search.

    ``filter_expression`` uses the metadata filter language, e.g.
    ``record_type in ['DIAGNOSIS', 'TREATMENT_PLAN']``.
    """
    query: str
    top_k: int = 20
    similarity_threshold: float = 0.8
    filter_expression: str | None = None
    namespace: str | None = None

    def __post_init__(self):
        if not self.query or not self.query.strip():
            raise ValueError("query must not be blank")
        if self.top_k < 1:
            raise ValueError("top_k must be at least 1")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be between 0 and 1")

    def with_query(self, query: str) -> "SearchRequest":
        return replace(self, query=query)

    def with_top_k(self, top_k: int) -> "SearchRequest":
        return replace(self, top_k=top_k)

    def with_similarity_threshold(self, threshold: float) -> "SearchRequest":
        return replace(self, similarity_threshold=threshold)

    def with_filter_expression(self, expression: str | None) -> "SearchRequest":
        return replace(self, filter_expression=expression)

    def fingerprint(self) -> str:
        payload = json.dumps(
            [self.query, self.top_k, self.similarity_threshold, self.filter_expression, self.namespace]
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class Document:
    id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float | None = None
    embedding: list[float] | None = None


class VectorStore:
    """
    Similarity search over clinical records and guidelines.

    Usage:
        store = VectorStore(InMemoryVectorClient(), EmbeddingService())
        await store.index_record(record)
        docs = await store.similarity_search(SearchRequest("chest pain", top_k=10))
    """

    def __init__(
        self,
        client: VectorClient | None = None,
        embedding_service: EmbeddingService | None = None,
        cache: SearchCache | None = None,
        namespace: str = "clinical",
        max_top_k: int = 200,
        cache_ttl_seconds: int | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.embeddings = embedding_service or EmbeddingService()
        self.client = client or InMemoryVectorClient(self.embeddings.dimensions)
        self.cache = cache
        self.namespace = namespace
        self.max_top_k = max_top_k
        self.cache_ttl_seconds = cache_ttl_seconds
        self._metrics = metrics
        self.generation = 0

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics or get_metrics_collector()

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    async def similarity_search(self, request: SearchRequest) -> list[Document]:
        """Documents scoring at least the request threshold, best first."""
        filter = parse_filter(request.filter_expression)
        top_k = min(request.top_k, self.max_top_k)
        namespace = request.namespace or self.namespace

        cache_key = f"docs:{self.generation}:{request.with_top_k(top_k).fingerprint()}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return [Document(**doc) for doc in cached]

        query = await self.embeddings.embed(request.query)

        with self.metrics.vector_search_latency.time():
            result = await self.client.search(
                embedding=query.embedding,
                top_k=top_k,
                similarity_threshold=request.similarity_threshold,
                filter=filter,
                namespace=namespace,
            )

        documents = [
            Document(id=r.id, content=r.text or "", metadata=r.metadata, score=r.score)
            for r in result.records
        ]
        self.metrics.vector_results.inc(len(documents))
        logger.debug(
            "Similarity search",
            results=len(documents),
            top_k=top_k,
            threshold=request.similarity_threshold,
            filter=str(filter) if filter else None,
            latency_ms=round(result.latency_ms, 2),
        )

        if self.cache is not None:
            await self.cache.set(
                cache_key,
                [{"id": d.id, "content": d.content, "metadata": d.metadata, "score": d.score}
                 for d in documents],
                ttl=self.cache_ttl_seconds,
            )
        return documents

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    async def embed_document(self, text: str) -> list[float]:
        """Embed document text. Document embeddings bypass the query cache."""
        [embedding] = await self.embeddings.embed_batch([text])
        return embedding

    async def add_documents(self, documents: list[Document], namespace: str | None = None) -> list[str]:
        missing = [d for d in documents if d.embedding is None]
        if missing:
            embeddings = await self.embeddings.embed_batch([d.content for d in missing])
            for doc, embedding in zip(missing, embeddings):
                doc.embedding = embedding

        records = [
            VectorRecord(id=d.id, embedding=d.embedding, metadata=d.metadata, text=d.content)
            for d in documents
        ]
        await self.client.upsert(records, namespace=namespace or self.namespace)
        self.generation += 1
        return [d.id for d in documents]

    async def index_record(self, record: ClinicalRecord) -> str:
        """Index a clinical record, embedding its text if it has no embedding."""
        embedding = record.embedding or await self.embed_document(record.search_text)
        doc = Document(
            id=str(record.id),
            content=record.search_text,
            metadata=record_metadata(record),
            embedding=embedding,
        )
        await self.add_documents([doc])
        logger.info("Indexed clinical record", record_id=str(record.id), record_type=record.record_type.value)
        return doc.id

    async def index_guideline(
        self,
        guideline_id: str,
        title: str,
        content: str,
        conditions: list[str] | None = None,
        recommendations: list[str] | None = None,
        contraindications: list[str] | None = None,
    ) -> str:
        """Index a clinical guideline for decision support."""
        doc = Document(
            id=guideline_id,
            content=f"{title}\n\n{content}",
            metadata={
                "document_type": CLINICAL_GUIDELINE,
                "title": title,
                "conditions": [c.upper() for c in conditions or []],
                "recommendations": recommendations or [],
                "contraindications": contraindications or [],
            },
        )
        await self.add_documents([doc])
        logger.info("Indexed guideline", guideline_id=guideline_id)
        return guideline_id

    async def delete(self, ids: list[str], namespace: str | None = None) -> int:
        deleted = await self.client.delete(ids, namespace=namespace or self.namespace)
        self.generation += 1
        return deleted

    async def count(self, namespace: str | None = None) -> int:
        return await self.client.count(namespace or self.namespace)

    async def health_check(self) -> bool:
        return await self.client.health_check()

    async def close(self) -> None:
        await self.client.close()


def record_metadata(record: ClinicalRecord) -> dict[str, Any]:
    """Searchable metadata for a clinical record."""
    data = record.structured_data
    narrative = record.clinical_narrative or record.title
    return {
        "document_type": CLINICAL_RECORD,
        "case_id": str(record.id),
        "patient_id": str(record.patient_id),
        "record_type": record.record_type.value,
        "severity": record.severity_level.value if record.severity_level else None,
        "department": record.department,
        "diagnosis": ", ".join(record.icd_codes) or metadata_text(data.get("diagnosis")),
        "icd_codes": list(record.icd_codes),
        "treatment": metadata_text(data.get("treatment")),
        "outcome": metadata_text(data.get("outcome")),
        "demographics": PatientDemographics.from_record(record).describe(),
        "risk_score": metadata_number(data.get("risk_score")),
        "clinical_presentation": narrative[:500],
    }


def metadata_text(value: Any) -> str | None:
    """Flatten a free-form structured_data value to text; nested values become JSON."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str, sort_keys=True)
    return str(value)


def metadata_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)
