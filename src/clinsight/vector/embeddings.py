"""
Embedding Service

Turns clinical text into fixed-length vectors:
- hashing: deterministic feature-hashed bag of tokens, no external calls
- openai: text-embedding-3-small (1536 dims)

Query embeddings can be cached so repeated searches skip the provider.
"""

from dataclasses import dataclass
from enum import Enum
import hashlib
import re

import numpy as np
import structlog

from clinsight.exceptions import EmbeddingDimensionError
from clinsight.vector.cache import SearchCache

logger = structlog.get_logger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:\.[0-9]+)?")


class EmbeddingProvider(str, Enum):
    HASHING = "hashing"
    OPENAI = "openai"


@dataclass
class EmbeddingResult:
    text: str
    embedding: list[float]
    model: str
    dimensions: int
    cached: bool = False


def tokenize(text: str) -> list[str]:
    """Lower-cased alphanumeric tokens; ICD-style codes like ``e11.9`` stay whole."""
    return _TOKEN_RE.findall(text.lower())


def hashing_embedding(text: str, dimensions: int) -> list[float]:
    """
    Feature-hashed embedding.

    Each unigram and adjacent bigram is hashed to a bucket with a hashed
    sign, then the vector is L2-normalised. Texts sharing vocabulary get a
    positive cosine similarity; unrelated texts land near zero.
    """
    vector = np.zeros(dimensions, dtype=np.float64)
    tokens = tokenize(text)
    features = tokens + [f"{a}_{b}" for a, b in zip(tokens, tokens[1:])]
    for feature in features:
        digest = hashlib.sha256(feature.encode("utf-8")).digest()
        bucket = int.from_bytes(digest[:4], "big") % dimensions
        sign = 1.0 if digest[4] & 1 else -1.0
        # Bigrams carry half weight
        vector[bucket] += sign * (0.5 if "_" in feature else 1.0)

    norm = np.linalg.norm(vector)
    if norm > 0:
        vector /= norm
    return vector.tolist()


class EmbeddingService:
    """
    Embedding generation with an optional query cache.

    Usage:
        service = EmbeddingService(EmbeddingProvider.HASHING, dimensions=1536)
        result = await service.embed("chest pain radiating to left arm")
    """

    def __init__(
        self,
        provider: EmbeddingProvider = EmbeddingProvider.HASHING,
        dimensions: int = 1536,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        batch_size: int = 64,
        cache: SearchCache | None = None,
        client=None,
    ):
        self.provider = EmbeddingProvider(provider)
        self.dimensions = dimensions
        self.model = model if self.provider == EmbeddingProvider.OPENAI else "hashing"
        self.api_key = api_key
        self.batch_size = batch_size
        self.cache = cache
        self._client = client

    @classmethod
    def from_settings(cls, settings, cache: SearchCache | None = None) -> "EmbeddingService":
        api_key = settings.embedding.api_key
        return cls(
            provider=settings.embedding.provider,
            dimensions=settings.vector.dimensions,
            model=settings.embedding.model,
            api_key=api_key.get_secret_value() if api_key else None,
            batch_size=settings.embedding.batch_size,
            cache=cache,
        )

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self.api_key)
            logger.info("OpenAI embeddings client initialized", model=self.model)
        return self._client

    def _cache_key(self, text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"emb:{self.model}:{self.dimensions}:{digest}"

    async def embed(self, text: str, use_cache: bool = True) -> EmbeddingResult:
        """Embed a single text."""
        key = self._cache_key(text)
        if use_cache and self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return EmbeddingResult(text[:100], cached, self.model, len(cached), cached=True)

        [embedding] = await self._embed_many([text])

        if use_cache and self.cache is not None:
            await self.cache.set(key, embedding)
        return EmbeddingResult(text[:100], embedding, self.model, len(embedding))

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts, chunked to the provider batch size. Never cached."""
        embeddings: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            embeddings.extend(await self._embed_many(texts[start:start + self.batch_size]))
        return embeddings

    async def _embed_many(self, texts: list[str]) -> list[list[float]]:
        if self.provider == EmbeddingProvider.OPENAI:
            client = self._get_client()
            response = await client.embeddings.create(model=self.model, input=texts)
            embeddings = [item.embedding for item in response.data]
        else:
            embeddings = [hashing_embedding(text, self.dimensions) for text in texts]

        for embedding in embeddings:
            if len(embedding) != self.dimensions:
                raise EmbeddingDimensionError(self.dimensions, len(embedding))
        return embeddings
