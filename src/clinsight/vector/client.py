"""
Vector Database Clients

- InMemoryVectorClient: numpy cosine similarity, for development and tests
- PgVectorClient: PostgreSQL + pgvector (HNSW cosine index)

Both score with cosine similarity in [-1, 1], drop hits below the
similarity threshold and return at most ``top_k`` hits, best first.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
import json
import time

import numpy as np
import structlog

from clinsight.exceptions import EmbeddingDimensionError
from clinsight.vector.filters import Filter

logger = structlog.get_logger(__name__)


@dataclass
class VectorRecord:
    id: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)
    text: str | None = None
    score: float | None = None


@dataclass
class VectorSearchResult:
    records: list[VectorRecord]
    latency_ms: float = 0
    candidates: int = 0


class VectorClient(ABC):
    """Abstract vector database client."""

    dimensions: int

    def _check_dimensions(self, embedding: list[float]) -> None:
        if len(embedding) != self.dimensions:
            raise EmbeddingDimensionError(self.dimensions, len(embedding))

    @abstractmethod
    async def upsert(self, records: list[VectorRecord], namespace: str = "") -> int:
        """Insert or update vectors."""

    @abstractmethod
    async def search(
        self,
        embedding: list[float],
        top_k: int = 10,
        similarity_threshold: float = 0.0,
        filter: Filter | None = None,
        namespace: str = "",
    ) -> VectorSearchResult:
        """Nearest neighbours of ``embedding`` scoring at least the threshold."""

    @abstractmethod
    async def delete(self, ids: list[str], namespace: str = "") -> int:
        """Delete vectors by ID."""

    @abstractmethod
    async def count(self, namespace: str = "") -> int:
        """Number of vectors in the namespace."""

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class InMemoryVectorClient(VectorClient):
    """In-memory vector client for development and testing."""

    def __init__(self, dimensions: int = 1536):
        self.dimensions = dimensions
        self.vectors: dict[str, dict[str, VectorRecord]] = {}

    async def upsert(self, records: list[VectorRecord], namespace: str = "") -> int:
        bucket = self.vectors.setdefault(namespace, {})
        for r in records:
            self._check_dimensions(r.embedding)
            bucket[r.id] = VectorRecord(
                id=r.id,
                embedding=list(r.embedding),
                metadata=dict(r.metadata),
                text=r.text,
            )
        return len(records)

    async def search(
        self,
        embedding: list[float],
        top_k: int = 10,
        similarity_threshold: float = 0.0,
        filter: Filter | None = None,
        namespace: str = "",
    ) -> VectorSearchResult:
        start = time.perf_counter()
        self._check_dimensions(embedding)

        # Filter before scoring
        candidates = [
            r for r in self.vectors.get(namespace, {}).values()
            if filter is None or filter.matches(r.metadata)
        ]
        if not candidates or top_k < 1:
            return VectorSearchResult(records=[], latency_ms=(time.perf_counter() - start) * 1000)

        query = np.asarray(embedding, dtype=np.float64)
        matrix = np.asarray([r.embedding for r in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        scores = np.divide(matrix @ query, norms, out=np.zeros(len(candidates)), where=norms > 0)

        eligible = np.flatnonzero(scores >= similarity_threshold)
        if len(eligible) > top_k:
            # Keep everything tied with the k-th score so ids decide ties
            cutoff = np.partition(scores[eligible], len(eligible) - top_k)[len(eligible) - top_k]
            eligible = eligible[scores[eligible] >= cutoff]

        ranked = sorted(eligible, key=lambda i: (-scores[i], candidates[i].id))[:top_k]
        records = [
            VectorRecord(
                id=candidates[i].id,
                embedding=[],
                metadata=dict(candidates[i].metadata),
                text=candidates[i].text,
                score=float(scores[i]),
            )
            for i in ranked
        ]
        return VectorSearchResult(
            records=records,
            latency_ms=(time.perf_counter() - start) * 1000,
            candidates=len(candidates),
        )

    async def delete(self, ids: list[str], namespace: str = "") -> int:
        bucket = self.vectors.get(namespace)
        if not bucket:
            return 0
        count = 0
        for id in ids:
            if bucket.pop(id, None) is not None:
                count += 1
        return count

    async def count(self, namespace: str = "") -> int:
        return len(self.vectors.get(namespace, {}))


def vector_literal(embedding: list[float]) -> str:
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


class PgVectorClient(VectorClient):
    """
    pgvector-backed client.

    Usage:
        client = PgVectorClient(pool, table="clinical_vectors")
        await client.create_schema()
        result = await client.search(embedding, top_k=20, similarity_threshold=0.8)
    """

    def __init__(self, pool, table: str = "clinical_vectors", dimensions: int = 1536):
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")
        self.pool = pool
        self.table = table
        self.dimensions = dimensions

    async def create_schema(self) -> None:
        """Create the extension, table and HNSW cosine index if missing."""
        async with self.pool.acquire() as conn:
            await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id TEXT NOT NULL,
                    namespace TEXT NOT NULL DEFAULT '',
                    embedding vector({self.dimensions}) NOT NULL,
                    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                    content TEXT,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    PRIMARY KEY (namespace, id)
                )
            """)
            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS {self.table}_embedding_hnsw
                ON {self.table} USING hnsw (embedding vector_cosine_ops)
            """)
            await conn.execute(f"""
                CREATE INDEX IF NOT EXISTS {self.table}_metadata_gin
                ON {self.table} USING gin (metadata)
            """)
        logger.info("Vector schema ready", table=self.table, dimensions=self.dimensions)

    async def upsert(self, records: list[VectorRecord], namespace: str = "") -> int:
        for r in records:
            self._check_dimensions(r.embedding)
        rows = [
            (r.id, namespace, vector_literal(r.embedding), json.dumps(r.metadata, default=str), r.text)
            for r in records
        ]
        async with self.pool.acquire() as conn:
            await conn.executemany(f"""
                INSERT INTO {self.table} (id, namespace, embedding, metadata, content)
                VALUES ($1, $2, $3::text::vector, $4::jsonb, $5)
                ON CONFLICT (namespace, id) DO UPDATE
                SET embedding = EXCLUDED.embedding,
                    metadata = EXCLUDED.metadata,
                    content = EXCLUDED.content,
                    updated_at = now()
            """, rows)
        return len(records)

    async def search(
        self,
        embedding: list[float],
        top_k: int = 10,
        similarity_threshold: float = 0.0,
        filter: Filter | None = None,
        namespace: str = "",
    ) -> VectorSearchResult:
        start = time.perf_counter()
        self._check_dimensions(embedding)

        params: list[Any] = [vector_literal(embedding), namespace, similarity_threshold, top_k]
        where = "namespace = $2 AND 1 - (embedding <=> $1::text::vector) >= $3"
        if filter is not None:
            where += f" AND {filter.to_sql(params)}"

        query = f"""
            SELECT id, metadata, content, 1 - (embedding <=> $1::text::vector) AS score
            FROM {self.table}
            WHERE {where}
            ORDER BY embedding <=> $1::text::vector, id
            LIMIT $4
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        records = [
            VectorRecord(
                id=row["id"],
                embedding=[],
                metadata=_decode_metadata(row["metadata"]),
                text=row["content"],
                score=float(row["score"]),
            )
            for row in rows
        ]
        return VectorSearchResult(records=records, latency_ms=(time.perf_counter() - start) * 1000)

    async def delete(self, ids: list[str], namespace: str = "") -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {self.table} WHERE namespace = $1 AND id = ANY($2::text[])",
                namespace, ids,
            )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(result.split()[-1])

    async def count(self, namespace: str = "") -> int:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                f"SELECT COUNT(*) FROM {self.table} WHERE namespace = $1", namespace
            )

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.warning("Vector store health check failed", error=str(e))
            return False


def _decode_metadata(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        return json.loads(value)
    return dict(value or {})
