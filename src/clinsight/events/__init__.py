"""Analytics event consumption."""

from clinsight.events.consumer import AnalyticsEventAggregator, AnalyticsEventConsumer, run_engine

__all__ = ["AnalyticsEventAggregator", "AnalyticsEventConsumer", "run_engine"]
