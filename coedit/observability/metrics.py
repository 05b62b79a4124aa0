"""
Metrics Collector: Prometheus-Compatible Observability

Provides:
- Thread-safe counters, gauges and latency histograms with label dimensions
- An injectable registry with Prometheus text export
- EngineMetrics: the named instruments the concurrency engine records

Minimal observer overhead; no background threads.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Sequence


def _escape(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


@dataclass(frozen=True)
class MetricLabels:
    """Immutable label set for metric dimensions."""
    labels: tuple[tuple[str, str], ...]

    @classmethod
    def from_dict(cls, d: dict[str, str]) -> MetricLabels:
        return cls(labels=tuple(sorted(d.items())))

    def to_dict(self) -> dict[str, str]:
        return dict(self.labels)


class _Metric:
    """Shared naming and label handling."""

    __slots__ = ("_name", "_help", "_label_names", "_lock")

    def __init__(self, name: str, label_names: Sequence[str], help_text: str) -> None:
        self._name = name
        self._help = help_text
        self._label_names = tuple(label_names)
        self._lock = threading.Lock()

    def _make_key(self, labels: dict[str, Any]) -> MetricLabels:
        filtered = {k: str(labels.get(k, "")) for k in self._label_names}
        return MetricLabels.from_dict(filtered)

    @property
    def name(self) -> str:
        return self._name

    @property
    def help_text(self) -> str:
        return self._help


class Counter(_Metric):
    """
    Monotonically increasing counter metric.

    Usage:
        saves = Counter("coedit_saves_total", ["table", "outcome"])
        saves.inc(table="orders", outcome="success")
    """

    __slots__ = ("_values",)

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
    ) -> None:
        super().__init__(name, label_names, help_text)
        self._values: dict[MetricLabels, float] = defaultdict(float)

    def inc(self, value: float = 1.0, **labels: Any) -> None:
        """Increment counter."""
        if value < 0:
            raise ValueError("Counter increments must be non-negative")
        key = self._make_key(labels)
        with self._lock:
            self._values[key] += value

    def get(self, **labels: Any) -> float:
        """Get current value."""
        key = self._make_key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def total(self) -> float:
        """Sum across all label combinations."""
        with self._lock:
            return sum(self._values.values())

    def collect(self) -> Iterator[tuple[dict[str, str], float]]:
        """Iterate all label combinations."""
        with self._lock:
            items = list(self._values.items())
        for key, value in items:
            yield (key.to_dict(), value)


class Gauge(_Metric):
    """
    Gauge metric that can go up and down.

    Usage:
        sessions = Gauge("coedit_active_sessions", ["table"])
        sessions.set(3, table="orders")
    """

    __slots__ = ("_values",)

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
    ) -> None:
        super().__init__(name, label_names, help_text)
        self._values: dict[MetricLabels, float] = {}

    def set(self, value: float, **labels: Any) -> None:
        """Set gauge value."""
        key = self._make_key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, value: float = 1.0, **labels: Any) -> None:
        """Increment gauge."""
        key = self._make_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def dec(self, value: float = 1.0, **labels: Any) -> None:
        """Decrement gauge."""
        self.inc(-value, **labels)

    def get(self, **labels: Any) -> float:
        """Get current value."""
        key = self._make_key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def collect(self) -> Iterator[tuple[dict[str, str], float]]:
        with self._lock:
            items = list(self._values.items())
        for key, value in items:
            yield (key.to_dict(), value)


class Histogram(_Metric):
    """
    Histogram with configurable buckets.

    Usage:
        latency = Histogram("coedit_save_seconds", buckets=[0.01, 0.05, 0.1, 0.5])

        with latency.time(table="orders"):
            await manager.safe_save(...)
    """

    __slots__ = ("_buckets", "_bucket_counts", "_sums", "_counts")

    DEFAULT_BUCKETS = (
        0.001, 0.005, 0.01, 0.025, 0.05, 0.075,
        0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0, float("inf"),
    )

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> None:
        super().__init__(name, label_names, help_text)
        self._buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))

        # Ensure +Inf bucket
        if self._buckets[-1] != float("inf"):
            self._buckets = self._buckets + (float("inf"),)

        self._bucket_counts: dict[MetricLabels, list[int]] = {}
        self._sums: dict[MetricLabels, float] = defaultdict(float)
        self._counts: dict[MetricLabels, int] = defaultdict(int)

    def observe(self, value: float, **labels: Any) -> None:
        """Record observation."""
        key = self._make_key(labels)

        with self._lock:
            if key not in self._bucket_counts:
                self._bucket_counts[key] = [0] * len(self._buckets)

            # Cumulative buckets
            for i, bound in enumerate(self._buckets):
                if value <= bound:
                    self._bucket_counts[key][i] += 1

            self._sums[key] += value
            self._counts[key] += 1

    def time(self, **labels: Any) -> HistogramTimer:
        """Context manager for timing operations."""
        return HistogramTimer(self, labels)

    def count(self, **labels: Any) -> int:
        key = self._make_key(labels)
        with self._lock:
            return self._counts.get(key, 0)

    def get_percentile(self, percentile: float, **labels: Any) -> Optional[float]:
        """
        Estimate percentile from histogram buckets.

        Note: Approximation based on bucket boundaries.
        """
        key = self._make_key(labels)

        with self._lock:
            total = self._counts.get(key, 0)
            if key not in self._bucket_counts or total == 0:
                return None

            target_count = total * (percentile / 100.0)
            for i, count in enumerate(self._bucket_counts[key]):
                if count >= target_count:
                    return self._buckets[i]

        return None

    def collect(self) -> Iterator[dict[str, Any]]:
        """Collect all histogram data."""
        with self._lock:
            snapshot = [
                {
                    "labels": key.to_dict(),
                    "buckets": list(zip(self._buckets, counts)),
                    "sum": self._sums.get(key, 0.0),
                    "count": self._counts.get(key, 0),
                }
                for key, counts in self._bucket_counts.items()
            ]
        yield from snapshot


class HistogramTimer:
    """Context manager for histogram timing."""

    __slots__ = ("_histogram", "_labels", "_start")

    def __init__(self, histogram: Histogram, labels: dict[str, Any]) -> None:
        self._histogram = histogram
        self._labels = labels
        self._start = 0.0

    def __enter__(self) -> HistogramTimer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        elapsed = time.perf_counter() - self._start
        self._histogram.observe(elapsed, **self._labels)


class MetricsCollector:
    """
    Central registry for all metrics.

    Instances are injected; there is no process-wide singleton.

    Usage:
        collector = MetricsCollector()
        requests = collector.counter("requests_total")
        output = collector.export_prometheus()
    """

    __slots__ = ("_counters", "_gauges", "_histograms", "_lock")

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def counter(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
    ) -> Counter:
        """Get or create counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name, label_names, help_text)
            return self._counters[name]

    def gauge(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
    ) -> Gauge:
        """Get or create gauge."""
        with self._lock:
            if name not in self._gauges:
                self._gauges[name] = Gauge(name, label_names, help_text)
            return self._gauges[name]

    def histogram(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> Histogram:
        """Get or create histogram."""
        with self._lock:
            if name not in self._histograms:
                self._histograms[name] = Histogram(name, label_names, help_text, buckets)
            return self._histograms[name]

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        with self._lock:
            counters = list(self._counters.items())
            gauges = list(self._gauges.items())
            histograms = list(self._histograms.items())

        lines: list[str] = []

        for name, counter in counters:
            if counter.help_text:
                lines.append(f"# HELP {name} {counter.help_text}")
            lines.append(f"# TYPE {name} counter")
            for labels, value in counter.collect():
                lines.append(f"{name}{self._format_labels(labels)} {value}")

        for name, gauge in gauges:
            if gauge.help_text:
                lines.append(f"# HELP {name} {gauge.help_text}")
            lines.append(f"# TYPE {name} gauge")
            for labels, value in gauge.collect():
                lines.append(f"{name}{self._format_labels(labels)} {value}")

        for name, histogram in histograms:
            if histogram.help_text:
                lines.append(f"# HELP {name} {histogram.help_text}")
            lines.append(f"# TYPE {name} histogram")
            for data in histogram.collect():
                labels = data["labels"]
                for bound, count in data["buckets"]:
                    bound_str = "+Inf" if bound == float("inf") else str(bound)
                    bucket_labels = {**labels, "le": bound_str}
                    lines.append(f"{name}_bucket{self._format_labels(bucket_labels)} {count}")
                label_str = self._format_labels(labels)
                lines.append(f'{name}_sum{label_str} {data["sum"]}')
                lines.append(f'{name}_count{label_str} {data["count"]}')

        return "\n".join(lines)

    def _format_labels(self, labels: dict[str, str]) -> str:
        """Format labels as Prometheus label string."""
        if not labels:
            return ""
        pairs = [f'{k}="{_escape(v)}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(pairs) + "}"


class EngineMetrics:
    """
    Named instruments recorded by the manager, tracker and notifier.

    All components sharing one EngineMetrics report into one registry.
    """

    __slots__ = (
        "collector",
        "saves",
        "conflicts",
        "save_latency",
        "active_sessions",
        "sessions_reaped",
        "events_published",
        "events_delivered",
        "events_dropped",
        "callback_failures",
        "store_retries",
    )

    def __init__(self, collector: Optional[MetricsCollector] = None) -> None:
        self.collector = collector or MetricsCollector()
        c = self.collector
        self.saves = c.counter(
            "coedit_saves_total", ["table", "outcome"],
            "Save attempts by outcome (success, conflict, not_found, transient, timeout)",
        )
        self.conflicts = c.counter(
            "coedit_conflicts_total", ["table", "kind"],
            "Detected conflicts by kind",
        )
        self.save_latency = c.histogram(
            "coedit_save_seconds", ["table", "strategy"],
            "End-to-end safe_save latency",
        )
        self.active_sessions = c.gauge(
            "coedit_active_sessions", ["table"],
            "Sessions currently tracked",
        )
        self.sessions_reaped = c.counter(
            "coedit_sessions_reaped_total", ["table"],
            "Sessions evicted by TTL",
        )
        self.events_published = c.counter(
            "coedit_events_published_total", ["event"],
            "Change events published",
        )
        self.events_delivered = c.counter(
            "coedit_events_delivered_total", ["event"],
            "Callback invocations",
        )
        self.events_dropped = c.counter(
            "coedit_events_dropped_total", ["reason"],
            "Events suppressed by ordering or inactive subscriptions",
        )
        self.callback_failures = c.counter(
            "coedit_callback_failures_total", ["event"],
            "Subscriber callbacks that raised",
        )
        self.store_retries = c.counter(
            "coedit_store_retries_total", ["operation"],
            "Extra read attempts after transient store errors",
        )
