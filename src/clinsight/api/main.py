"""
Clinsight API Main Application

FastAPI application exposing the clinical analytics service.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator
import asyncio

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinsight import __version__
from clinsight.analytics.service import ClinicalAnalyticsService
from clinsight.api.routes import analytics_router, records_router
from clinsight.config import get_settings
from clinsight.db import close_service_clients, init_service_clients
from clinsight.exceptions import (
    BackpressureError,
    ClinicalAnalyticsError,
    OptimisticLockError,
    RecordNotFoundError,
)
from clinsight.models.analytics import HealthStatus
from clinsight.observability.logging import configure_logging
from clinsight.observability.metrics import get_metrics_collector
from clinsight.search.executor import SearchExecutor
from clinsight.vector.embeddings import EmbeddingService
from clinsight.vector.store import VectorStore

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup/shutdown events."""
    settings = get_settings()
    configure_logging(settings)
    metrics = get_metrics_collector()

    logger.info(
        "Starting Clinsight API",
        env=settings.app.env,
        mock_mode=settings.app.mock_mode,
        vector_backend=settings.vector.backend,
        embedding_provider=settings.embedding.provider,
    )

    clients = await init_service_clients(settings, metrics)
    embeddings = EmbeddingService.from_settings(settings, cache=clients.cache)
    vector_store = VectorStore(
        clients.vector_client,
        embeddings,
        cache=clients.cache,
        namespace=settings.vector.namespace,
        max_top_k=settings.vector.max_top_k,
        cache_ttl_seconds=settings.vector.cache_ttl_seconds,
        metrics=metrics,
    )
    app.state.clients = clients
    app.state.analytics_service = ClinicalAnalyticsService(
        vector_store,
        clients.repository,
        publisher=clients.publisher,
        executor=SearchExecutor.from_settings(settings, metrics),
        settings=settings.analytics,
        default_top_k=settings.vector.default_top_k,
        default_similarity_threshold=settings.vector.default_similarity_threshold,
        metrics=metrics,
    )

    yield

    logger.info("Shutting down Clinsight API")
    app.state.analytics_service = None
    await close_service_clients(clients)


app = FastAPI(
    title="Clinsight API",
    description="Clinical analytics: similar cases, risk, population health and decision support",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Clinsight API",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health/live", tags=["Health"])
async def liveness():
    """Kubernetes liveness probe."""
    return {"status": "alive"}


@app.get("/health/ready", tags=["Health"])
async def readiness(request: Request):
    """Kubernetes readiness probe."""
    service = getattr(request.app.state, "analytics_service", None)
    if service is None:
        return JSONResponse(status_code=503, content={"status": "not_ready"})

    health = await service.health_status()
    if health.overall_status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content={"status": "not_ready"})
    return {"status": "ready", "overall_status": health.overall_status.value}


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(RecordNotFoundError)
async def record_not_found_handler(request: Request, exc: RecordNotFoundError):
    return JSONResponse(
        status_code=404,
        content={"error": "not_found", "message": str(exc)},
    )


@app.exception_handler(OptimisticLockError)
async def optimistic_lock_handler(request: Request, exc: OptimisticLockError):
    return JSONResponse(
        status_code=409,
        content={
            "error": "version_conflict",
            "message": str(exc),
            "current_version": exc.actual_version,
        },
    )


@app.exception_handler(ClinicalAnalyticsError)
async def analytics_error_handler(request: Request, exc: ClinicalAnalyticsError):
    """
    Map wrapped analytics failures to HTTP.

    Saturated search capacity is 503, a search timeout is 504, anything else
    a generic 500 without internal detail.
    """
    if isinstance(exc.cause, BackpressureError):
        return JSONResponse(
            status_code=503,
            content={"error": "overloaded", "message": "Search capacity exhausted, retry later"},
            headers={"Retry-After": "1"},
        )
    if isinstance(exc.cause, asyncio.TimeoutError):
        return JSONResponse(
            status_code=504,
            content={"error": "timeout", "message": "Search timed out"},
        )
    return JSONResponse(
        status_code=500,
        content={
            "error": "analytics_error",
            "message": str(exc),
            "operation": exc.operation,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "detail": str(exc) if get_settings().app.debug else None,
        },
    )


# =============================================================================
# Include Routers
# =============================================================================

app.include_router(analytics_router, prefix="/api/v1")
app.include_router(records_router, prefix="/api/v1")


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "clinsight.api.main:app",
        host=settings.app.api_host,
        port=settings.app.api_port,
        reload=settings.app.api_reload,
        workers=settings.app.api_workers,
    )


if __name__ == "__main__":
    run()
