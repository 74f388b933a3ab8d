"""
Metrics collection for database observability.

Provides Prometheus-style metrics for monitoring transaction traffic.

Metrics Types:
- Counter: Monotonically increasing value (e.g., commits)
- Gauge: Point-in-time value (e.g., active transactions)
- Histogram: Distribution of values (e.g., statement latency)

Usage:
    metrics = MetricsCollector()
    metrics.counter("verso_commits_total").inc()
    with metrics.timer("verso_statement_duration_seconds"):
        run_statement()
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Dict, List, Optional, Tuple
import bisect
import threading
import time


LabelKey = Tuple[Tuple[str, str], ...]


class MetricType(Enum):
    """Types of metrics."""

    COUNTER = auto()
    GAUGE = auto()
    HISTOGRAM = auto()


@dataclass
class MetricValue:
    """A single exported sample."""

    __slots__ = ("value", "labels", "timestamp")

    value: float
    labels: Dict[str, str]
    timestamp: float


class _LabelledMetric:
    """Shared label handling for all metric kinds."""

    __slots__ = ("_name", "_description", "_lock")

    metric_type: MetricType

    def __init__(self, name: str, description: str = "") -> None:
        self._name = name
        self._description = description
        self._lock = threading.Lock()

    @staticmethod
    def _key(labels: Optional[Dict[str, str]]) -> LabelKey:
        if not labels:
            return ()
        return tuple(sorted((k, str(v)) for k, v in labels.items()))

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description


class Counter(_LabelledMetric):
    """A monotonically increasing counter."""

    __slots__ = ("_values",)

    metric_type = MetricType.COUNTER

    def __init__(self, name: str, description: str = "") -> None:
        super().__init__(name, description)
        self._values: Dict[LabelKey, float] = {}

    def inc(self, value: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        """Increment the counter."""
        if value < 0:
            raise ValueError("Counter can only increase")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        """Get current counter value."""
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()

    def collect(self) -> List[MetricValue]:
        now = time.time()
        with self._lock:
            return [MetricValue(v, dict(k), now) for k, v in self._values.items()]


class Gauge(Counter):
    """A point-in-time value that can go up or down."""

    __slots__ = ()

    metric_type = MetricType.GAUGE

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Set the gauge value."""
        with self._lock:
            self._values[self._key(labels)] = value

    def inc(self, value: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def dec(self, value: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        self.inc(-value, labels)


class Histogram(_LabelledMetric):
    """
    A distribution of values with cumulative buckets.

    Exported as <name>_bucket{le=...}, <name>_sum and <name>_count.
    """

    __slots__ = ("_buckets", "_series")

    metric_type = MetricType.HISTOGRAM

    # Default buckets for latency in seconds
    DEFAULT_BUCKETS = (0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0)

    def __init__(
        self,
        name: str,
        description: str = "",
        buckets: Optional[Tuple[float, ...]] = None,
    ) -> None:
        super().__init__(name, description)
        self._buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))
        # label_key -> [bucket counts..., sum, count]
        self._series: Dict[LabelKey, List[float]] = {}

    def observe(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Record an observation."""
        key = self._key(labels)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = [0.0] * (len(self._buckets) + 2)
                self._series[key] = series
            idx = bisect.bisect_left(self._buckets, value)
            if idx < len(self._buckets):
                series[idx] += 1
            series[-2] += value
            series[-1] += 1

    def count(self, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            series = self._series.get(self._key(labels))
            return int(series[-1]) if series else 0

    def total(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            series = self._series.get(self._key(labels))
            return series[-2] if series else 0.0

    def reset(self) -> None:
        with self._lock:
            self._series.clear()

    def collect(self) -> List[MetricValue]:
        now = time.time()
        samples = []
        with self._lock:
            for key, series in self._series.items():
                labels = dict(key)
                cumulative = 0.0
                for bound, hits in zip(self._buckets, series):
                    cumulative += hits
                    samples.append(MetricValue(cumulative, {**labels, "le": str(bound)}, now))
                samples.append(MetricValue(series[-1], {**labels, "le": "+Inf"}, now))
        return samples

    def collect_summary(self) -> List[Tuple[Dict[str, str], float, float]]:
        """Return (labels, sum, count) per label set."""
        with self._lock:
            return [(dict(k), s[-2], s[-1]) for k, s in self._series.items()]


class Timer:
    """Context manager for timing operations."""

    __slots__ = ("_histogram", "_labels", "_start", "elapsed")

    def __init__(
        self,
        histogram: Histogram,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        self._histogram = histogram
        self._labels = labels
        self._start = 0.0
        self.elapsed = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        self.elapsed = time.perf_counter() - self._start
        self._histogram.observe(self.elapsed, self._labels)


class MetricsCollector:
    """
    Registry of named metrics.

    Metrics are created on first use and shared afterwards.
    """

    __slots__ = ("_metrics", "_lock")

    def __init__(self) -> None:
        self._metrics: Dict[str, _LabelledMetric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, cls, name: str, *args) -> _LabelledMetric:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = cls(name, *args)
                self._metrics[name] = metric
            elif type(metric) is not cls:
                raise ValueError(
                    f"Metric '{name}' already registered as {metric.metric_type.name}"
                )
            return metric

    def counter(self, name: str, description: str = "") -> Counter:
        return self._get_or_create(Counter, name, description)

    def gauge(self, name: str, description: str = "") -> Gauge:
        return self._get_or_create(Gauge, name, description)

    def histogram(
        self,
        name: str,
        description: str = "",
        buckets: Optional[Tuple[float, ...]] = None,
    ) -> Histogram:
        return self._get_or_create(Histogram, name, description, buckets)

    def timer(self, name: str, labels: Optional[Dict[str, str]] = None) -> Timer:
        """Get a timer for the named histogram."""
        return Timer(self.histogram(name), labels)

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        with self._lock:
            metrics = list(self._metrics.values())

        lines = []
        for metric in metrics:
            if metric.description:
                lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.metric_type.name.lower()}")

            if isinstance(metric, Histogram):
                for sample in metric.collect():
                    lines.append(f"{metric.name}_bucket{_format_labels(sample.labels)} {sample.value}")
                for labels, total, count in metric.collect_summary():
                    lines.append(f"{metric.name}_sum{_format_labels(labels)} {total}")
                    lines.append(f"{metric.name}_count{_format_labels(labels)} {count}")
            else:
                for sample in metric.collect():
                    lines.append(f"{metric.name}{_format_labels(sample.labels)} {sample.value}")

        return "\n".join(lines)

    def reset_all(self) -> None:
        with self._lock:
            for metric in self._metrics.values():
                metric.reset()

    def __len__(self) -> int:
        return len(self._metrics)

    def __repr__(self) -> str:
        return f"MetricsCollector({len(self._metrics)} metrics)"


def _format_labels(labels: Dict[str, str]) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in labels.items()) + "}"


class DatabaseMetrics:
    """Pre-defined metrics for the transactional engine."""

    def __init__(self, collector: MetricsCollector) -> None:
        self._collector = collector

        # Counters
        self.transactions_total = collector.counter(
            "verso_transactions_total",
            "Finished transactions by outcome",
        )
        self.statements_total = collector.counter(
            "verso_statements_total",
            "Statements executed by kind",
        )
        self.rows_read = collector.counter(
            "verso_rows_read_total",
            "Rows returned by queries",
        )
        self.rows_written = collector.counter(
            "verso_rows_written_total",
            "Rows inserted, updated or deleted",
        )
        self.lock_waits = collector.counter(
            "verso_lock_waits_total",
            "Row write lock acquisitions that had to wait",
        )
        self.lock_timeouts = collector.counter(
            "verso_lock_timeouts_total",
            "Row write lock waits that timed out",
        )
        self.deadlocks = collector.counter(
            "verso_deadlocks_total",
            "Row write lock waits refused to break a deadlock",
        )
        self.versions_vacuumed = collector.counter(
            "verso_versions_vacuumed_total",
            "Row versions removed by vacuum",
        )

        # Gauges
        self.active_transactions = collector.gauge(
            "verso_active_transactions",
            "Transactions currently active",
        )

        # Histograms
        self.statement_duration = collector.histogram(
            "verso_statement_duration_seconds",
            "Statement execution time in seconds",
        )
        self.transaction_duration = collector.histogram(
            "verso_transaction_duration_seconds",
            "Transaction lifetime in seconds",
        )

    def record_statement(self, kind: str, duration: float, rows: int = 0) -> None:
        """Record a completed statement."""
        self.statements_total.inc(labels={"kind": kind})
        self.statement_duration.observe(duration, labels={"kind": kind})
        if rows > 0:
            if kind == "select":
                self.rows_read.inc(rows)
            elif kind in ("insert", "update", "delete"):
                self.rows_written.inc(rows)

    def record_begin(self) -> None:
        self.active_transactions.inc()

    def record_transaction(self, status: str, duration: float) -> None:
        """Record a finished transaction."""
        self.active_transactions.dec()
        self.transactions_total.inc(labels={"status": status})
        self.transaction_duration.observe(duration, labels={"status": status})

    def record_lock_wait(self, outcome: str) -> None:
        """Record a lock wait: 'acquired', 'timeout' or 'deadlock'."""
        if outcome == "timeout":
            self.lock_timeouts.inc()
        elif outcome == "deadlock":
            self.deadlocks.inc()
        else:
            self.lock_waits.inc()
