"""
Clinsight Observability Module

- Structured logging (structlog)
- In-process metrics with Prometheus export
"""

from clinsight.observability.logging import configure_logging, make_redaction_processor
from clinsight.observability.metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsCollector,
    get_metrics_collector,
    reset_metrics_collector,
)

__all__ = [
    "configure_logging",
    "make_redaction_processor",
    "Counter",
    "Gauge",
    "Histogram",
    "MetricsCollector",
    "get_metrics_collector",
    "reset_metrics_collector",
]
