"""
Analytics Engine

Consumes the analytics topic and keeps running aggregates:
- event counts per type
- risk level distribution of completed assessments
- records analysed by population analyses
- similar cases returned by semantic searches

Run with ``clinsight-engine``.
"""

from collections import Counter
from datetime import datetime, timezone
from typing import Any
import asyncio
import json
import signal

from aiokafka import AIOKafkaConsumer
from pydantic import ValidationError
import structlog

from clinsight.config import get_settings
from clinsight.models.analytics import AnalyticsEvent, AnalyticsEventType
from clinsight.observability.logging import configure_logging

logger = structlog.get_logger(__name__)


class AnalyticsEventAggregator:
    """Folds analytics events into running totals."""

    def __init__(self):
        self.event_counts: Counter[str] = Counter()
        self.risk_levels: Counter[str] = Counter()
        self.records_analyzed = 0
        self.search_results = 0
        self.recommendations = 0
        self.last_event_at: datetime | None = None

    @property
    def total_events(self) -> int:
        return sum(self.event_counts.values())

    def handle(self, event: AnalyticsEvent) -> None:
        self.event_counts[event.event_type.value] += 1
        self.last_event_at = datetime.fromtimestamp(event.timestamp / 1000, tz=timezone.utc)
        data = event.data

        if event.event_type == AnalyticsEventType.RISK_ASSESSMENT_COMPLETED:
            level = data.get("risk_level")
            if level:
                self.risk_levels[str(level)] += 1
        elif event.event_type == AnalyticsEventType.POPULATION_ANALYSIS_COMPLETED:
            self.records_analyzed += int(data.get("records_analyzed") or 0)
        elif event.event_type == AnalyticsEventType.SEMANTIC_SEARCH_PERFORMED:
            self.search_results += int(data.get("results_count") or 0)
        elif event.event_type == AnalyticsEventType.CLINICAL_DECISION_SUPPORT_PROVIDED:
            self.recommendations += int(data.get("recommendations_count") or 0)

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_events": self.total_events,
            "event_counts": dict(self.event_counts),
            "risk_levels": dict(self.risk_levels),
            "records_analyzed": self.records_analyzed,
            "search_results": self.search_results,
            "recommendations": self.recommendations,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
        }


class AnalyticsEventConsumer:
    """
    Kafka consumer for the analytics topic.

    Usage:
        consumer = AnalyticsEventConsumer(aggregator, bootstrap_servers="localhost:9092")
        await consumer.start()
        await consumer.consume()
    """

    def __init__(
        self,
        aggregator: AnalyticsEventAggregator,
        bootstrap_servers: str = "localhost:9092",
        topic: str = "clinical-analytics-events",
        group_id: str = "clinsight-analytics-engine",
        snapshot_every: int = 100,
        consumer: AIOKafkaConsumer | None = None,
    ):
        self.aggregator = aggregator
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.group_id = group_id
        self.snapshot_every = snapshot_every
        self._consumer = consumer
        self._running = False

    async def start(self) -> None:
        """Start the Kafka consumer."""
        if self._consumer is None:
            self._consumer = AIOKafkaConsumer(
                self.topic,
                bootstrap_servers=self.bootstrap_servers,
                group_id=self.group_id,
                enable_auto_commit=True,
                auto_offset_reset="earliest",
            )
        await self._consumer.start()
        self._running = True
        logger.info("Analytics consumer started", topic=self.topic, group=self.group_id)

    async def stop(self) -> None:
        """Stop the Kafka consumer."""
        self._running = False
        if self._consumer:
            await self._consumer.stop()
            logger.info("Analytics consumer stopped", **self.aggregator.snapshot())

    async def handle_message(self, value: bytes | str | dict, metadata: dict) -> bool:
        """
        Decode and aggregate one message. Returns False if it was skipped.

        Undecodable messages and handler errors are logged and skipped.
        """
        try:
            payload = value if isinstance(value, dict) else json.loads(value)
            event = AnalyticsEvent.model_validate(payload)
        except (ValueError, ValidationError) as e:
            logger.warning("Skipping undecodable analytics event", error=str(e), **metadata)
            return False

        try:
            self.aggregator.handle(event)
        except Exception as e:
            logger.error("Analytics event handler failed", event_type=event.event_type.value, error=str(e), **metadata)
            return False

        if self.snapshot_every and self.aggregator.total_events % self.snapshot_every == 0:
            logger.info("Analytics snapshot", **self.aggregator.snapshot())
        return True

    async def consume(self) -> None:
        if not self._consumer:
            raise RuntimeError("Consumer not started")

        async for record in self._consumer:
            if not self._running:
                break
            metadata = {
                "topic": record.topic,
                "partition": record.partition,
                "offset": record.offset,
            }
            await self.handle_message(record.value, metadata)


async def run_engine(settings=None) -> int:
    """Consume analytics events until SIGINT/SIGTERM."""
    settings = settings or get_settings()
    configure_logging(settings)

    if not settings.kafka.enabled:
        logger.error("Analytics engine requires Kafka; set KAFKA_ENABLED=true")
        return 1

    consumer = AnalyticsEventConsumer(
        AnalyticsEventAggregator(),
        bootstrap_servers=settings.kafka.bootstrap_servers,
        topic=settings.kafka.analytics_events_topic,
        group_id=settings.kafka.consumer_group,
    )
    await consumer.start()

    loop = asyncio.get_running_loop()
    task = asyncio.create_task(consumer.consume())
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, task.cancel)

    try:
        await task
    except asyncio.CancelledError:
        logger.info("Analytics engine shutting down")
    finally:
        await consumer.stop()
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(run_engine()))


if __name__ == "__main__":
    main()
