"""Metrics collection for observability.

In-process counters, gauges and histograms for the remediation loop:
- Error ingestion (captured, duplicates, evictions, dropped messages)
- Oracle traffic (requests, fallbacks, cache hits, rate limits)
- Validation verdicts and applied/rolled-back fixes
- Oracle latency and iteration duration

Exported as a dictionary for the final report or in Prometheus text format.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import StrEnum
from threading import Lock
from typing import Any

LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    return tuple(sorted(labels.items())) if labels else ()


class MetricType(StrEnum):
    """Types of metrics."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class MetricValue:
    """A single labeled metric value."""

    name: str
    type: MetricType
    value: float
    labels: dict[str, str] = field(default_factory=dict)


class _ScalarMetric:
    """Shared storage for counters and gauges."""

    type = MetricType.GAUGE

    def __init__(self, name: str, help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self._values: dict[LabelKey, float] = defaultdict(float)
        self._lock = Lock()

    def _add(self, value: float, labels: dict[str, str] | None) -> None:
        with self._lock:
            self._values[_label_key(labels)] += value

    def get(self, labels: dict[str, str] | None = None) -> float:
        """Current value for the given labels."""
        with self._lock:
            return self._values.get(_label_key(labels), 0)

    def total(self) -> float:
        """Sum across all label sets."""
        with self._lock:
            return sum(self._values.values())

    def get_all(self) -> list[MetricValue]:
        """All values with their labels."""
        with self._lock:
            return [
                MetricValue(name=self.name, type=self.type, value=v, labels=dict(k))
                for k, v in self._values.items()
            ]


class Counter(_ScalarMetric):
    """A monotonically increasing counter.

    Example:
        counter = Counter("fixes_applied_total", "Fixes written to disk")
        counter.inc()
        counter.inc(labels={"strategy": "optional-chaining"})
    """

    type = MetricType.COUNTER

    def inc(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        """Increment the counter."""
        if value < 0:
            raise ValueError("Counter can only increase")
        self._add(value, labels)


class Gauge(_ScalarMetric):
    """A metric that can go up or down."""

    def set(self, value: float, labels: dict[str, str] | None = None) -> None:
        """Set the gauge value."""
        with self._lock:
            self._values[_label_key(labels)] = value

    def inc(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        """Increment the gauge."""
        self._add(value, labels)

    def dec(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        """Decrement the gauge."""
        self._add(-value, labels)


class Histogram:
    """Tracks value distributions.

    Example:
        histogram = Histogram("oracle_latency_seconds", "Oracle round trip")
        histogram.observe(0.8)
    """

    def __init__(self, name: str, help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self._observations: dict[LabelKey, list[float]] = defaultdict(list)
        self._lock = Lock()

    def observe(self, value: float, labels: dict[str, str] | None = None) -> None:
        """Record an observation."""
        with self._lock:
            self._observations[_label_key(labels)].append(value)

    def get_stats(self, labels: dict[str, str] | None = None) -> dict[str, float]:
        """Count, sum, min, max and mean for the given labels."""
        with self._lock:
            values = list(self._observations.get(_label_key(labels), []))

        if not values:
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "mean": 0}

        return {
            "count": len(values),
            "sum": sum(values),
            "min": min(values),
            "max": max(values),
            "mean": sum(values) / len(values),
        }


class MetricsRegistry:
    """Registry for all loop metrics.

    Example:
        registry = MetricsRegistry.get_instance()
        registry.errors_captured.inc()
        metrics = registry.get_all_metrics()
    """

    _instance: MetricsRegistry | None = None
    _lock = Lock()

    def __init__(self) -> None:
        """Initialize the metrics registry."""
        # Ingestion
        self.errors_captured = Counter(
            "autofix_errors_captured_total", "Distinct error records created"
        )
        self.errors_duplicate = Counter(
            "autofix_errors_duplicate_total", "Observations merged into an existing record"
        )
        self.errors_evicted = Counter(
            "autofix_errors_evicted_total", "Records dropped because the queue was full"
        )
        self.messages_dropped = Counter(
            "autofix_messages_dropped_total", "Malformed ingestion messages"
        )

        # Oracle
        self.oracle_requests = Counter("autofix_oracle_requests_total", "Oracle calls made")
        self.oracle_fallbacks = Counter(
            "autofix_oracle_fallbacks_total", "Generations served by templates"
        )
        self.oracle_cache_hits = Counter(
            "autofix_oracle_cache_hits_total", "Generations served from cache"
        )
        self.rate_limits_hit = Counter(
            "autofix_rate_limits_hit_total", "Generations refused by the hourly limit"
        )

        # Validation and application
        self.validations = Counter("autofix_validations_total", "Candidates validated")
        self.candidates_skipped = Counter(
            "autofix_candidates_skipped_total", "Candidates below the confidence threshold"
        )
        self.fixes_applied = Counter("autofix_fixes_applied_total", "Fixes written to disk")
        self.fixes_rolled_back = Counter(
            "autofix_fixes_rolled_back_total", "Fixes restored from backup"
        )

        # Gauges
        self.queue_depth = Gauge("autofix_queue_depth", "Active error records")
        self.active_workers = Gauge("autofix_active_workers", "Errors being processed")

        # Durations
        self.oracle_latency = Histogram(
            "autofix_oracle_latency_seconds", "Oracle round trip in seconds"
        )
        self.iteration_duration = Histogram(
            "autofix_iteration_duration_seconds", "Loop iteration duration in seconds"
        )

        self._start_time = time.time()

    @classmethod
    def get_instance(cls) -> MetricsRegistry:
        """Get the process-wide registry."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the process-wide registry (used by tests)."""
        with cls._lock:
            cls._instance = None

    def get_uptime_seconds(self) -> float:
        """Seconds since the registry was created."""
        return time.time() - self._start_time

    def _scalars(self) -> list[_ScalarMetric]:
        return [v for v in vars(self).values() if isinstance(v, _ScalarMetric)]

    def get_all_metrics(self) -> dict[str, Any]:
        """All metrics as a plain dictionary."""
        return {
            "uptime_seconds": self.get_uptime_seconds(),
            "errors": {
                "captured": self.errors_captured.total(),
                "duplicates": self.errors_duplicate.total(),
                "evicted": self.errors_evicted.total(),
                "dropped_messages": self.messages_dropped.total(),
            },
            "oracle": {
                "requests": self.oracle_requests.total(),
                "fallbacks": self.oracle_fallbacks.total(),
                "cache_hits": self.oracle_cache_hits.total(),
                "rate_limited": self.rate_limits_hit.total(),
                "latency": self.oracle_latency.get_stats(),
            },
            "fixes": {
                "validated": self.validations.total(),
                "skipped": self.candidates_skipped.total(),
                "applied": self.fixes_applied.total(),
                "rolled_back": self.fixes_rolled_back.total(),
            },
            "iterations": self.iteration_duration.get_stats(),
        }

    def to_prometheus_format(self) -> str:
        """Export counters and gauges in Prometheus text format."""
        lines: list[str] = []

        for metric in self._scalars():
            if metric.help_text:
                lines.append(f"# HELP {metric.name} {metric.help_text}")
            lines.append(f"# TYPE {metric.name} {metric.type}")
            for value in metric.get_all():
                if value.labels:
                    label_str = ",".join(f'{k}="{v}"' for k, v in value.labels.items())
                    lines.append(f"{metric.name}{{{label_str}}} {value.value}")
                else:
                    lines.append(f"{metric.name} {value.value}")

        lines.append("# TYPE autofix_uptime_seconds gauge")
        lines.append(f"autofix_uptime_seconds {self.get_uptime_seconds()}")
        return "\n".join(lines)


def get_metrics() -> MetricsRegistry:
    """Get the process-wide metrics registry."""
    return MetricsRegistry.get_instance()


class Timer:
    """Context manager for timing operations.

    Example:
        with Timer(metrics.iteration_duration):
            await run_iteration()
    """

    def __init__(self, histogram: Histogram, labels: dict[str, str] | None = None) -> None:
        self._histogram = histogram
        self._labels = labels
        self._start: float | None = None
        self.elapsed = 0.0

    def __enter__(self) -> Timer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        if self._start is not None:
            self.elapsed = time.perf_counter() - self._start
            self._histogram.observe(self.elapsed, labels=self._labels)
