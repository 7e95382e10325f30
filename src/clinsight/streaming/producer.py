"""
Analytics Event Publisher

Best-effort, fire-and-forget notifications on the analytics topic. A
failed publish is logged at warning level and counted; it never fails the
operation that produced the event and is never retried.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any
import json

from aiokafka import AIOKafkaProducer
import structlog

from clinsight.models.analytics import AnalyticsEvent, AnalyticsEventType
from clinsight.observability.metrics import MetricsCollector, get_metrics_collector

logger = structlog.get_logger(__name__)


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class EventPublisher(ABC):
    """Publishes analytics events."""

    def __init__(self, metrics: MetricsCollector | None = None):
        self._metrics = metrics

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics or get_metrics_collector()

    async def publish(self, event_type: AnalyticsEventType, data: dict[str, Any]) -> bool:
        """
        Publish an event. Returns False if it could not be handed off.

        Never raises.
        """
        try:
            event = AnalyticsEvent(event_type=event_type, timestamp=_now_ms(), data=data)
            await self._send(event)
        except Exception as e:
            self.metrics.events_failed.inc(labels={"event_type": str(getattr(event_type, "value", event_type))})
            logger.warning("Failed to publish analytics event", event_type=str(event_type), error=str(e))
            return False
        self.metrics.events_published.inc(labels={"event_type": event.event_type.value})
        return True

    @abstractmethod
    async def _send(self, event: AnalyticsEvent) -> None:
        """Hand the event to the transport."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True


class InMemoryEventPublisher(EventPublisher):
    """Keeps published events in a list (mock mode and tests)."""

    def __init__(self, metrics: MetricsCollector | None = None):
        super().__init__(metrics)
        self.events: list[AnalyticsEvent] = []

    async def _send(self, event: AnalyticsEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: AnalyticsEventType) -> list[AnalyticsEvent]:
        return [e for e in self.events if e.event_type == event_type]


class KafkaEventPublisher(EventPublisher):
    """
    Kafka-backed publisher.

    Usage:
        publisher = KafkaEventPublisher("localhost:9092")
        await publisher.start()
        await publisher.publish(AnalyticsEventType.SEMANTIC_SEARCH_PERFORMED, {...})
        await publisher.stop()
    """

    def __init__(
        self,
        bootstrap_servers: str = "localhost:9092",
        topic: str = "clinical-analytics-events",
        client_id: str = "clinsight-api",
        metrics: MetricsCollector | None = None,
        producer: AIOKafkaProducer | None = None,
    ):
        super().__init__(metrics)
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.client_id = client_id
        self._producer = producer
        self._started = producer is not None

    @classmethod
    def from_settings(cls, settings, metrics: MetricsCollector | None = None) -> "KafkaEventPublisher":
        return cls(
            bootstrap_servers=settings.kafka.bootstrap_servers,
            topic=settings.kafka.analytics_events_topic,
            client_id=settings.kafka.client_id,
            metrics=metrics,
        )

    async def start(self) -> None:
        """Start the Kafka producer."""
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
                key_serializer=lambda k: k.encode("utf-8") if k else None,
            )
        await self._producer.start()
        self._started = True
        logger.info("Kafka producer started", servers=self.bootstrap_servers, topic=self.topic)

    async def stop(self) -> None:
        """Stop the Kafka producer."""
        if self._producer and self._started:
            await self._producer.stop()
            self._started = False
            logger.info("Kafka producer stopped")

    async def _send(self, event: AnalyticsEvent) -> None:
        if not self._started:
            raise RuntimeError("Producer not started")
        # Enqueue only; delivery is not awaited
        delivery = await self._producer.send(
            self.topic,
            value=event.model_dump(mode="json"),
            key=event.event_type.value,
        )
        delivery.add_done_callback(self._on_delivery(event.event_type))

    def _on_delivery(self, event_type: AnalyticsEventType):
        def callback(future) -> None:
            if future.cancelled():
                return
            error = future.exception()
            if error is not None:
                self.metrics.events_failed.inc(labels={"event_type": event_type.value})
                logger.warning("Analytics event delivery failed", event_type=event_type.value, error=str(error))
        return callback

    async def health_check(self) -> bool:
        return self._started
