"""
Search Executor

Bounded async fan-in for vector searches. Concurrency is capped by a
semaphore, each call has a deadline, and once ``max_pending`` calls are
waiting or running new calls are rejected with BackpressureError rather
than queued.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar
import asyncio
import time

import structlog

from clinsight.exceptions import BackpressureError
from clinsight.observability.metrics import MetricsCollector, get_metrics_collector

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class FanInOutcome:
    """Result of one branch of a fan-in."""
    value: Any = None
    error: BaseException | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


class SearchExecutor:
    """
    Runs search coroutines under concurrency, deadline and admission bounds.

    Usage:
        executor = SearchExecutor(max_concurrency=8, max_pending=64, timeout_seconds=5.0)
        docs = await executor.run(store.similarity_search, request)
        guidelines, cases = await executor.gather(
            partial(store.similarity_search, guideline_request),
            partial(store.similarity_search, case_request),
        )
    """

    def __init__(
        self,
        max_concurrency: int = 8,
        max_pending: int = 64,
        timeout_seconds: float | None = 5.0,
        metrics: MetricsCollector | None = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if max_pending < max_concurrency:
            raise ValueError("max_pending must be at least max_concurrency")
        self.max_concurrency = max_concurrency
        self.max_pending = max_pending
        self.timeout_seconds = timeout_seconds
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._pending = 0
        self._metrics = metrics

    @classmethod
    def from_settings(cls, settings, metrics: MetricsCollector | None = None) -> "SearchExecutor":
        return cls(
            max_concurrency=settings.vector.search_concurrency,
            max_pending=settings.vector.max_pending_searches,
            timeout_seconds=settings.vector.search_timeout_seconds,
            metrics=metrics,
        )

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics or get_metrics_collector()

    @property
    def pending(self) -> int:
        """Calls admitted and not yet finished (waiting or running)."""
        return self._pending

    async def run(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Run ``fn(*args, **kwargs)`` in a slot.

        Raises BackpressureError without waiting when the executor is full,
        and TimeoutError when the call (including time spent waiting for a
        slot) exceeds the deadline.
        """
        if self._pending >= self.max_pending:
            self.metrics.searches_rejected.inc(labels={"reason": "backpressure"})
            logger.warning("Search rejected", pending=self._pending, limit=self.max_pending)
            raise BackpressureError(self._pending, self.max_pending)

        self._pending += 1
        try:
            if self.timeout_seconds is None:
                return await self._run_in_slot(fn, *args, **kwargs)
            return await asyncio.wait_for(self._run_in_slot(fn, *args, **kwargs), self.timeout_seconds)
        except asyncio.TimeoutError:
            self.metrics.searches_rejected.inc(labels={"reason": "timeout"})
            logger.warning("Search timed out", timeout_seconds=self.timeout_seconds)
            raise
        finally:
            self._pending -= 1

    async def _run_in_slot(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        async with self._semaphore:
            self.metrics.searches_in_flight.inc()
            try:
                return await fn(*args, **kwargs)
            finally:
                self.metrics.searches_in_flight.dec()

    async def gather(self, *calls: Callable[[], Awaitable[Any]]) -> list[FanInOutcome]:
        """
        Run zero-argument calls concurrently and collect every outcome.

        A failing branch yields an outcome carrying its error; the other
        branches still complete. Cancellation of the caller propagates.
        """
        return list(await asyncio.gather(*(self._outcome(call) for call in calls)))

    async def _outcome(self, call: Callable[[], Awaitable[Any]]) -> FanInOutcome:
        start = time.perf_counter()
        try:
            value = await self.run(call)
        except Exception as e:
            return FanInOutcome(error=e, elapsed_ms=(time.perf_counter() - start) * 1000)
        return FanInOutcome(value=value, elapsed_ms=(time.perf_counter() - start) * 1000)
