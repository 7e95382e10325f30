"""
Clinsight Vector Search

- filters: metadata filter expressions
- embeddings: hashing / OpenAI embedding providers
- cache: in-process LRU and Redis caches
- client: in-memory and pgvector clients
- store: similarity search over records and guidelines
"""

from clinsight.vector.cache import LRUSearchCache, RedisSearchCache, SearchCache
from clinsight.vector.client import (
    InMemoryVectorClient,
    PgVectorClient,
    VectorClient,
    VectorRecord,
    VectorSearchResult,
)
from clinsight.vector.embeddings import EmbeddingProvider, EmbeddingResult, EmbeddingService
from clinsight.vector.filters import Filter, filter_from_dict, parse_filter
from clinsight.vector.store import (
    CLINICAL_GUIDELINE,
    CLINICAL_RECORD,
    Document,
    SearchRequest,
    VectorStore,
)

__all__ = [
    "LRUSearchCache",
    "RedisSearchCache",
    "SearchCache",
    "InMemoryVectorClient",
    "PgVectorClient",
    "VectorClient",
    "VectorRecord",
    "VectorSearchResult",
    "EmbeddingProvider",
    "EmbeddingResult",
    "EmbeddingService",
    "Filter",
    "filter_from_dict",
    "parse_filter",
    "CLINICAL_GUIDELINE",
    "CLINICAL_RECORD",
    "Document",
    "SearchRequest",
    "VectorStore",
]
