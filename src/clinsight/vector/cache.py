"""
Search Cache

Bounded, TTL'd caches for query embeddings and similarity results:
- LRUSearchCache: in-process, OrderedDict based
- RedisSearchCache: shared across API workers (redis.asyncio)

Values must be JSON-serialisable. A cache failure is never fatal: it is
logged and treated as a miss.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable
import asyncio
import copy
import json
import time

import structlog

from clinsight.observability.metrics import MetricsCollector, get_metrics_collector

logger = structlog.get_logger(__name__)


class SearchCache(ABC):
    """Async key/value cache for search artefacts."""

    def __init__(self, name: str = "search", metrics: MetricsCollector | None = None):
        self.name = name
        self._metrics = metrics

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics or get_metrics_collector()

    def _record(self, hit: bool) -> None:
        counter = self.metrics.cache_hits if hit else self.metrics.cache_misses
        counter.inc(labels={"cache": self.name})

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the cached value or None."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store a value."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop every entry."""

    async def close(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True


class LRUSearchCache(SearchCache):
    """
    In-process LRU cache with per-entry expiry.

    The clock is injectable so expiry can be tested without sleeping.
    """

    def __init__(
        self,
        max_size: int = 1024,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
        name: str = "search",
        metrics: MetricsCollector | None = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        super().__init__(name, metrics)
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._record(hit=False)
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                self._record(hit=False)
                return None
            self._entries.move_to_end(key)
            self._record(hit=True)
            return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = self._clock() + (ttl if ttl is not None else self.ttl_seconds)
        async with self._lock:
            self._entries[key] = (expires_at, copy.deepcopy(value))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()


class RedisSearchCache(SearchCache):
    """Redis-backed cache. Keys are namespaced with ``key_prefix``."""

    def __init__(
        self,
        client,
        key_prefix: str = "clinsight:search",
        ttl_seconds: int = 300,
        name: str = "search",
        metrics: MetricsCollector | None = None,
    ):
        super().__init__(name, metrics)
        self.client = client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisSearchCache":
        import redis.asyncio as redis

        return cls(redis.from_url(url), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.client.get(self._key(key))
        except Exception as e:
            logger.warning("Search cache read failed", cache=self.name, error=str(e))
            self._record(hit=False)
            return None
        if raw is None:
            self._record(hit=False)
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry", cache=self.name, key=key)
            self._record(hit=False)
            return None
        self._record(hit=True)
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            await self.client.setex(
                self._key(key),
                ttl if ttl is not None else self.ttl_seconds,
                json.dumps(value, default=str),
            )
        except Exception as e:
            logger.warning("Search cache write failed", cache=self.name, error=str(e))

    async def clear(self) -> None:
        try:
            keys = [key async for key in self.client.scan_iter(match=f"{self.key_prefix}:*")]
            if keys:
                await self.client.delete(*keys)
        except Exception as e:
            logger.warning("Search cache clear failed", cache=self.name, error=str(e))

    async def close(self) -> None:
        await self.client.aclose()

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception:
            return False
