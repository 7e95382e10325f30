"""
Clinsight Service Clients

Manages connections to the backing services:
- PostgreSQL + pgvector (clinical records and vectors)
- Redis (search cache)
- Kafka (analytics events)

In mock mode, or when a connection fails at startup, the in-memory
equivalent is used instead and a warning is logged.
"""

from dataclasses import dataclass, field
from typing import Any

import asyncpg
import redis.asyncio as redis
import structlog

from clinsight.observability.metrics import MetricsCollector
from clinsight.repository import (
    ClinicalRecordRepository,
    InMemoryClinicalRecordRepository,
    PostgresClinicalRecordRepository,
)
from clinsight.streaming.producer import EventPublisher, InMemoryEventPublisher, KafkaEventPublisher
from clinsight.vector.cache import LRUSearchCache, RedisSearchCache, SearchCache
from clinsight.vector.client import InMemoryVectorClient, PgVectorClient, VectorClient

logger = structlog.get_logger(__name__)


@dataclass
class ServiceClients:
    """Container for backend clients and the components built on them."""

    repository: ClinicalRecordRepository
    vector_client: VectorClient
    cache: SearchCache
    publisher: EventPublisher
    postgres: Any = None
    redis: Any = None

    _initialized: bool = field(default=False, repr=False)

    def is_ready(self) -> bool:
        return self._initialized

    @property
    def active_connections(self) -> int:
        """Checked-out Postgres connections (0 without a pool)."""
        if self.postgres is None:
            return 0
        return self.postgres.get_size() - self.postgres.get_idle_size()


async def init_postgres(settings) -> Any:
    """Initialize the PostgreSQL connection pool. Returns None on failure."""
    try:
        pool = await asyncpg.create_pool(
            host=settings.postgres.host,
            port=settings.postgres.port,
            user=settings.postgres.user,
            password=settings.postgres.password.get_secret_value(),
            database=settings.postgres.database,
            min_size=settings.postgres.min_pool_size,
            max_size=settings.postgres.max_pool_size,
        )
        async with pool.acquire() as conn:
            version = await conn.fetchval("SELECT version()")
            logger.info("PostgreSQL connected", version=version[:50])
        return pool
    except Exception as e:
        logger.warning("PostgreSQL connection failed, using in-memory stores", error=str(e))
        return None


async def init_redis(settings) -> Any:
    """Initialize the Redis client. Returns None on failure."""
    client = redis.from_url(settings.redis.connection_url)
    try:
        await client.ping()
        logger.info("Redis connected")
        return client
    except Exception as e:
        logger.warning("Redis connection failed, using in-process cache", error=str(e))
        await client.aclose()
        return None


async def init_publisher(settings, metrics: MetricsCollector | None = None) -> EventPublisher:
    if settings.app.mock_mode or not settings.kafka.enabled:
        return InMemoryEventPublisher(metrics)

    publisher = KafkaEventPublisher.from_settings(settings, metrics)
    try:
        await publisher.start()
    except Exception as e:
        # Publisher stays unstarted: events fail (and are counted), health reports DEGRADED
        logger.warning("Kafka connection failed, analytics events will be dropped", error=str(e))
    return publisher


async def init_service_clients(settings, metrics: MetricsCollector | None = None) -> ServiceClients:
    """
    Initialize all backend clients.

    Called during application startup.
    """
    logger.info("Initializing service clients", mock_mode=settings.app.mock_mode)

    pool = None
    if not settings.app.mock_mode:
        pool = await init_postgres(settings)

    if pool is not None:
        repository = PostgresClinicalRecordRepository(
            pool, settings.postgres.records_table, settings.vector.dimensions
        )
        await repository.create_schema()
    else:
        repository = InMemoryClinicalRecordRepository()

    if pool is not None and settings.vector.backend == "pgvector":
        vector_client = PgVectorClient(pool, settings.postgres.vectors_table, settings.vector.dimensions)
        await vector_client.create_schema()
    else:
        vector_client = InMemoryVectorClient(settings.vector.dimensions)

    redis_client = None
    if not settings.app.mock_mode and settings.redis.enabled:
        redis_client = await init_redis(settings)

    if redis_client is not None:
        cache = RedisSearchCache(
            redis_client,
            key_prefix=settings.redis.key_prefix,
            ttl_seconds=settings.vector.cache_ttl_seconds,
            metrics=metrics,
        )
    else:
        cache = LRUSearchCache(
            max_size=settings.vector.cache_size,
            ttl_seconds=settings.vector.cache_ttl_seconds,
            metrics=metrics,
        )

    publisher = await init_publisher(settings, metrics)

    clients = ServiceClients(
        repository=repository,
        vector_client=vector_client,
        cache=cache,
        publisher=publisher,
        postgres=pool,
        redis=redis_client,
        _initialized=True,
    )
    logger.info(
        "Service clients initialized",
        repository=type(repository).__name__,
        vector_client=type(vector_client).__name__,
        cache=type(cache).__name__,
        publisher=type(publisher).__name__,
    )
    return clients


async def close_service_clients(clients: ServiceClients | None) -> None:
    """Close all connections."""
    if clients is None:
        return

    logger.info("Closing service clients...")
    try:
        await clients.publisher.stop()
    except Exception as e:
        logger.warning("Error stopping event publisher", error=str(e))
    try:
        await clients.cache.close()
    except Exception as e:
        logger.warning("Error closing cache", error=str(e))
    if clients.postgres is not None:
        await clients.postgres.close()
    logger.info("Service clients closed")
