"""Analytics event streaming."""

from clinsight.streaming.producer import EventPublisher, InMemoryEventPublisher, KafkaEventPublisher

__all__ = ["EventPublisher", "InMemoryEventPublisher", "KafkaEventPublisher"]
