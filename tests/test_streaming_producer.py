import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from clinsight.models.analytics import AnalyticsEventType
from clinsight.streaming.producer import InMemoryEventPublisher, KafkaEventPublisher


@pytest.mark.asyncio
async def test_in_memory_publisher_records_events(metrics):
    publisher = InMemoryEventPublisher(metrics)
    ok = await publisher.publish(AnalyticsEventType.SEMANTIC_SEARCH_PERFORMED, {"results_count": 3})

    assert ok is True
    [event] = publisher.of_type(AnalyticsEventType.SEMANTIC_SEARCH_PERFORMED)
    assert event.data == {"results_count": 3}
    assert event.timestamp > 0
    assert metrics.events_published.get({"event_type": "SEMANTIC_SEARCH_PERFORMED"}) == 1


@pytest.mark.asyncio
async def test_kafka_publisher_sends_json_event():
    delivery = asyncio.get_running_loop().create_future()
    producer = MagicMock()
    producer.send = AsyncMock(return_value=delivery)
    publisher = KafkaEventPublisher(topic="analytics", producer=producer)

    ok = await publisher.publish(AnalyticsEventType.RISK_ASSESSMENT_COMPLETED, {"risk_level": "HIGH"})

    assert ok is True
    args, kwargs = producer.send.await_args
    assert args == ("analytics",)
    assert kwargs["key"] == "RISK_ASSESSMENT_COMPLETED"
    assert kwargs["value"]["event_type"] == "RISK_ASSESSMENT_COMPLETED"
    assert kwargs["value"]["data"] == {"risk_level": "HIGH"}


@pytest.mark.asyncio
async def test_kafka_publisher_unstarted_fails_without_raising(metrics):
    publisher = KafkaEventPublisher(metrics=metrics)

    ok = await publisher.publish(AnalyticsEventType.RECORD_INGESTED, {})

    assert ok is False
    assert metrics.events_failed.get({"event_type": "RECORD_INGESTED"}) == 1
    assert not await publisher.health_check()


@pytest.mark.asyncio
async def test_kafka_publisher_counts_delivery_failures(metrics):
    delivery = asyncio.get_running_loop().create_future()
    producer = MagicMock()
    producer.send = AsyncMock(return_value=delivery)
    publisher = KafkaEventPublisher(producer=producer, metrics=metrics)

    assert await publisher.publish(AnalyticsEventType.RECORD_UPDATED, {})
    delivery.set_exception(RuntimeError("broker unavailable"))
    await asyncio.sleep(0)

    assert metrics.events_failed.get({"event_type": "RECORD_UPDATED"}) == 1


@pytest.mark.asyncio
async def test_kafka_publisher_stop():
    producer = MagicMock()
    producer.stop = AsyncMock()
    publisher = KafkaEventPublisher(producer=producer)

    assert await publisher.health_check()
    await publisher.stop()

    producer.stop.assert_awaited_once()
    assert not await publisher.health_check()
