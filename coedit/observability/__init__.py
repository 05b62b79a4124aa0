"""
Observability module: Metrics and structured logging.
"""

from coedit.observability.metrics import (
    MetricsCollector,
    EngineMetrics,
    Counter,
    Gauge,
    Histogram,
)
from coedit.observability.logging import (
    JsonFormatter,
    StructuredLogger,
    LogLevel,
    setup_logging,
)

__all__ = [
    "MetricsCollector",
    "EngineMetrics",
    "Counter",
    "Gauge",
    "Histogram",
    "JsonFormatter",
    "StructuredLogger",
    "LogLevel",
    "setup_logging",
]
