"""
Metrics Collection

In-process counters, gauges and histograms for the search and analytics
paths, exportable as Prometheus text or JSON.
"""

from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from collections import defaultdict
from typing import Any, Dict, Iterator, List, Optional
import json
import threading
import time

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


# =============================================================================
# Metric Types
# =============================================================================

class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class MetricValue(BaseModel):
    """A metric data point."""
    name: str
    type: MetricType
    value: float
    labels: Dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class _LabeledMetric:
    """Shared label handling."""

    metric_type: MetricType

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._lock = threading.Lock()

    @staticmethod
    def _labels_key(labels: Dict[str, str] = None) -> str:
        if not labels:
            return ""
        return json.dumps(labels, sort_keys=True)

    @staticmethod
    def _labels_from_key(key: str) -> Dict[str, str]:
        return json.loads(key) if key else {}


# =============================================================================
# Counter / Gauge
# =============================================================================

class Counter(_LabeledMetric):
    """
    A monotonically increasing counter.

    Usage:
        searches = Counter("clinsight_searches_total", "Similarity searches")
        searches.inc(labels={"outcome": "ok"})
    """

    metric_type = MetricType.COUNTER

    def __init__(self, name: str, description: str = ""):
        super().__init__(name, description)
        self._values: Dict[str, float] = defaultdict(float)

    def inc(self, value: float = 1.0, labels: Dict[str, str] = None):
        if value < 0:
            raise ValueError("Counters can only increase")
        key = self._labels_key(labels)
        with self._lock:
            self._values[key] += value

    def get(self, labels: Dict[str, str] = None) -> float:
        return self._values.get(self._labels_key(labels), 0.0)

    def total(self) -> float:
        """Sum across all label sets."""
        with self._lock:
            return sum(self._values.values())

    def collect(self) -> List[MetricValue]:
        with self._lock:
            items = list(self._values.items())
        return [
            MetricValue(name=self.name, type=self.metric_type, value=value,
                        labels=self._labels_from_key(key))
            for key, value in items
        ]


class Gauge(Counter):
    """A metric that can go up and down."""

    metric_type = MetricType.GAUGE

    def inc(self, value: float = 1.0, labels: Dict[str, str] = None):
        key = self._labels_key(labels)
        with self._lock:
            self._values[key] += value

    def dec(self, value: float = 1.0, labels: Dict[str, str] = None):
        self.inc(-value, labels)

    def set(self, value: float, labels: Dict[str, str] = None):
        key = self._labels_key(labels)
        with self._lock:
            self._values[key] = value


# =============================================================================
# Histogram
# =============================================================================

class Histogram(_LabeledMetric):
    """
    Tracks a value distribution in cumulative buckets.

    Usage:
        latency = Histogram("clinsight_vector_search_seconds", "Search latency")
        with latency.time():
            ...
    """

    metric_type = MetricType.HISTOGRAM
    DEFAULT_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]

    def __init__(self, name: str, description: str = "", buckets: List[float] = None):
        super().__init__(name, description)
        self.buckets = sorted(buckets or self.DEFAULT_BUCKETS)
        self._data: Dict[str, Dict[str, Any]] = defaultdict(lambda: {
            "buckets": {b: 0 for b in self.buckets},
            "sum": 0.0,
            "count": 0,
        })

    def observe(self, value: float, labels: Dict[str, str] = None):
        key = self._labels_key(labels)
        with self._lock:
            data = self._data[key]
            data["sum"] += value
            data["count"] += 1
            for bucket in self.buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    @contextmanager
    def time(self, labels: Dict[str, str] = None) -> Iterator[None]:
        """Observe the wall-clock duration of the block, in seconds."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, labels)

    def get_count(self, labels: Dict[str, str] = None) -> int:
        data = self._data.get(self._labels_key(labels))
        return data["count"] if data else 0

    def get_mean(self, labels: Dict[str, str] = None) -> float:
        data = self._data.get(self._labels_key(labels))
        if not data or data["count"] == 0:
            return 0.0
        return data["sum"] / data["count"]

    def get_percentile(self, percentile: float, labels: Dict[str, str] = None) -> float:
        """Upper bound of the bucket holding the given percentile."""
        data = self._data.get(self._labels_key(labels))
        if not data or data["count"] == 0:
            return 0.0

        target = data["count"] * (percentile / 100.0)
        for bucket in self.buckets:
            if data["buckets"][bucket] >= target:
                return bucket
        return self.buckets[-1]

    def collect(self) -> List[MetricValue]:
        values = []
        with self._lock:
            items = [(k, dict(v, buckets=dict(v["buckets"]))) for k, v in self._data.items()]
        for key, data in items:
            labels = self._labels_from_key(key)
            for bucket in self.buckets:
                values.append(MetricValue(
                    name=f"{self.name}_bucket",
                    type=MetricType.HISTOGRAM,
                    value=data["buckets"][bucket],
                    labels={**labels, "le": str(bucket)},
                ))
            values.append(MetricValue(name=f"{self.name}_bucket", type=MetricType.HISTOGRAM,
                                      value=data["count"], labels={**labels, "le": "+Inf"}))
            values.append(MetricValue(name=f"{self.name}_sum", type=MetricType.HISTOGRAM,
                                      value=data["sum"], labels=labels))
            values.append(MetricValue(name=f"{self.name}_count", type=MetricType.HISTOGRAM,
                                      value=data["count"], labels=labels))
        return values


# =============================================================================
# Metrics Collector
# =============================================================================

class MetricsCollector:
    """
    Central metrics registry for the service.

    Built-in metrics cover the analytics operations, the vector search path,
    the search cache and event publication.
    """

    def __init__(self):
        self._metrics: Dict[str, _LabeledMetric] = {}
        self.started_at = time.monotonic()
        self._init_builtin_metrics()

    def _init_builtin_metrics(self):
        # Analytics operations
        self.operations = self.counter(
            "clinsight_operations_total", "Analytics operations by name and outcome"
        )
        self.query_duration = self.histogram(
            "clinsight_query_duration_seconds", "End-to-end analytics operation duration"
        )

        # Vector search
        self.vector_search_latency = self.histogram(
            "clinsight_vector_search_seconds", "Vector store query latency"
        )
        self.vector_results = self.counter(
            "clinsight_vector_results_total", "Documents returned by vector search"
        )
        self.searches_in_flight = self.gauge(
            "clinsight_searches_in_flight", "Searches currently holding an executor slot"
        )
        self.searches_rejected = self.counter(
            "clinsight_searches_rejected_total", "Searches rejected by backpressure or timeout"
        )

        # Cache
        self.cache_hits = self.counter("clinsight_cache_hits_total", "Search cache hits")
        self.cache_misses = self.counter("clinsight_cache_misses_total", "Search cache misses")

        # Events
        self.events_published = self.counter(
            "clinsight_events_published_total", "Analytics events handed to the broker"
        )
        self.events_failed = self.counter(
            "clinsight_events_failed_total", "Analytics events that failed to publish"
        )

    def counter(self, name: str, description: str = "") -> Counter:
        if name not in self._metrics:
            self._metrics[name] = Counter(name, description)
        return self._metrics[name]

    def gauge(self, name: str, description: str = "") -> Gauge:
        if name not in self._metrics:
            self._metrics[name] = Gauge(name, description)
        return self._metrics[name]

    def histogram(self, name: str, description: str = "", buckets: List[float] = None) -> Histogram:
        if name not in self._metrics:
            self._metrics[name] = Histogram(name, description, buckets)
        return self._metrics[name]

    def collect_all(self) -> List[MetricValue]:
        values = []
        for metric in self._metrics.values():
            values.extend(metric.collect())
        return values

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started_at

    def cache_hit_ratio(self) -> float:
        hits = self.cache_hits.total()
        lookups = hits + self.cache_misses.total()
        return hits / lookups if lookups else 0.0

    def event_publish_rate(self) -> float:
        """Events published per second since start."""
        uptime = self.uptime_seconds
        return self.events_published.total() / uptime if uptime > 0 else 0.0

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        for name, metric in self._metrics.items():
            lines.append(f"# HELP {name} {metric.description}")
            lines.append(f"# TYPE {name} {metric.metric_type.value}")
            for value in metric.collect():
                if value.labels:
                    labels_str = ",".join(f'{k}="{v}"' for k, v in value.labels.items())
                    lines.append(f"{value.name}{{{labels_str}}} {value.value}")
                else:
                    lines.append(f"{value.name} {value.value}")
        return "\n".join(lines) + "\n"

    def to_json(self) -> dict:
        result = {}
        for value in self.collect_all():
            key = value.name
            if value.labels:
                key += "_" + "_".join(f"{k}_{v}" for k, v in value.labels.items())
            result[key] = {
                "value": value.value,
                "type": value.type.value,
                "labels": value.labels,
            }
        return result


# Global metrics collector
_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector


def reset_metrics_collector() -> MetricsCollector:
    """Replace the global collector with a fresh one."""
    global _collector
    _collector = MetricsCollector()
    return _collector
