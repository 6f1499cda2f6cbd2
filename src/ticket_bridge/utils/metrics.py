"""Metrics collection for observability.

This module provides in-process bridge metrics:
- Inbound, relayed, queued and failed message counters
- Ticket lifecycle counters
- Adapter failure and reconnect counters, labelled by side
- Queue depth gauge and relay latency histogram

Metrics can be exported as a dictionary or in Prometheus text format.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from threading import Lock
from typing import Any

import structlog

log = structlog.get_logger()

PREFIX = "ticket_bridge"

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
    """A single metric value with metadata."""

    name: str
    type: MetricType
    value: float
    labels: dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    help_text: str = ""


class _ScalarMetric:
    """Shared storage for counters and gauges: one float per label set."""

    type: MetricType

    def __init__(self, name: str, help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self._values: dict[LabelKey, float] = defaultdict(float)
        self._lock = Lock()

    def _add(self, value: float, labels: dict[str, str] | None) -> None:
        with self._lock:
            self._values[_label_key(labels)] += value

    def get(self, labels: dict[str, str] | None = None) -> float:
        """Get the current value for a label set (0 if never touched)."""
        with self._lock:
            return self._values.get(_label_key(labels), 0)

    def total(self) -> float:
        """Sum across every label set."""
        with self._lock:
            return sum(self._values.values())

    def get_all(self) -> list[MetricValue]:
        """Get all values with their labels."""
        with self._lock:
            return [
                MetricValue(
                    name=self.name,
                    type=self.type,
                    value=value,
                    labels=dict(label_key),
                    help_text=self.help_text,
                )
                for label_key, value in self._values.items()
            ]


class Counter(_ScalarMetric):
    """A monotonically increasing counter.

    Example:
        counter = Counter("messages_relayed", "Messages delivered to the other side")
        counter.inc()
        counter.inc(labels={"side": "origin"})
    """

    type = MetricType.COUNTER

    def inc(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        """Increment the counter.

        Raises:
            ValueError: If value is negative.
        """
        if value < 0:
            raise ValueError("Counter can only increase")
        self._add(value, labels)


class Gauge(_ScalarMetric):
    """A metric that can go up or down."""

    type = MetricType.GAUGE

    def set(self, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._values[_label_key(labels)] = value

    def inc(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        self._add(value, labels)

    def dec(self, value: float = 1, labels: dict[str, str] | None = None) -> None:
        self._add(-value, labels)


class Histogram:
    """A histogram metric for tracking value distributions.

    Example:
        histogram = Histogram("relay_duration_seconds", "Relay latency")
        histogram.observe(0.2, labels={"side": "destination"})
    """

    DEFAULT_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float("inf"))

    def __init__(
        self,
        name: str,
        help_text: str = "",
        buckets: tuple[float, ...] | None = None,
    ) -> None:
        self.name = name
        self.help_text = help_text
        self._buckets = buckets or self.DEFAULT_BUCKETS
        self._observations: dict[LabelKey, list[float]] = defaultdict(list)
        self._lock = Lock()

    def observe(self, value: float, labels: dict[str, str] | None = None) -> None:
        """Record an observation."""
        with self._lock:
            self._observations[_label_key(labels)].append(value)

    def get_stats(self, labels: dict[str, str] | None = None) -> dict[str, float]:
        """Get count, sum, min, max and mean for a label set."""
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

    def get_buckets(self, labels: dict[str, str] | None = None) -> dict[float, int]:
        """Get non-cumulative bucket counts for a label set."""
        with self._lock:
            values = list(self._observations.get(_label_key(labels), []))

        bucket_counts: dict[float, int] = dict.fromkeys(self._buckets, 0)
        for value in values:
            for bucket in self._buckets:
                if value <= bucket:
                    bucket_counts[bucket] += 1
                    break

        return bucket_counts


class MetricsRegistry:
    """Registry for all bridge metrics.

    This is a singleton that holds all metrics and provides
    methods for exporting them.

    Example:
        registry = MetricsRegistry.get_instance()
        registry.messages_relayed.inc(labels={"side": "destination"})
        metrics = registry.get_all_metrics()
    """

    _instance: MetricsRegistry | None = None
    _lock = Lock()

    def __init__(self) -> None:
        # Messages
        self.messages_received = Counter(
            f"{PREFIX}_messages_received_total",
            "Inbound events accepted from either platform",
        )
        self.messages_relayed = Counter(
            f"{PREFIX}_messages_relayed_total",
            "Messages delivered to the target platform",
        )
        self.messages_queued = Counter(
            f"{PREFIX}_messages_queued_total",
            "Messages queued because the target platform was unavailable",
        )
        self.messages_failed = Counter(
            f"{PREFIX}_messages_failed_total",
            "Messages given up on: ticket ended or the platform refused them",
        )
        self.messages_duplicate = Counter(
            f"{PREFIX}_messages_duplicate_total",
            "Redelivered inbound events ignored",
        )
        self.degraded_notices = Counter(
            f"{PREFIX}_degraded_notices_total",
            "Degraded-service notices sent to end users",
        )

        # Tickets
        self.tickets_created = Counter(
            f"{PREFIX}_tickets_created_total",
            "Tickets opened",
        )
        self.ticket_transitions = Counter(
            f"{PREFIX}_ticket_transitions_total",
            "Applied ticket status transitions",
        )

        # Adapters
        self.adapter_failures = Counter(
            f"{PREFIX}_adapter_failures_total",
            "Adapter call failures by side and classification",
        )
        self.adapter_reconnects = Counter(
            f"{PREFIX}_adapter_reconnects_total",
            "Successful adapter reconnects",
        )

        # Queue and latency
        self.queue_depth = Gauge(
            f"{PREFIX}_queue_depth",
            "Messages waiting for delivery",
        )
        self.relay_duration = Histogram(
            f"{PREFIX}_relay_duration_seconds",
            "Time spent sending one message to the target platform",
        )

        self._start_time = time.time()

    @classmethod
    def get_instance(cls) -> MetricsRegistry:
        """Get the singleton metrics registry instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next lookup starts from zero."""
        with cls._lock:
            cls._instance = None

    def get_uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def _counters(self) -> list[Counter]:
        return [
            self.messages_received,
            self.messages_relayed,
            self.messages_queued,
            self.messages_failed,
            self.messages_duplicate,
            self.degraded_notices,
            self.tickets_created,
            self.ticket_transitions,
            self.adapter_failures,
            self.adapter_reconnects,
        ]

    def get_all_metrics(self) -> dict[str, Any]:
        """Get all metrics as a dictionary."""
        return {
            "uptime_seconds": self.get_uptime_seconds(),
            "messages": {
                "received": self.messages_received.total(),
                "relayed": self.messages_relayed.total(),
                "queued": self.messages_queued.total(),
                "failed": self.messages_failed.total(),
                "duplicates": self.messages_duplicate.total(),
                "degraded_notices": self.degraded_notices.total(),
            },
            "tickets": {
                "created": self.tickets_created.total(),
                "transitions": self.ticket_transitions.total(),
            },
            "adapters": {
                "failures": self.adapter_failures.total(),
                "reconnects": self.adapter_reconnects.total(),
            },
            "queue": {
                "depth": self.queue_depth.get(),
                "relay_duration": self.relay_duration.get_stats(),
            },
        }

    def to_prometheus_format(self) -> str:
        """Export metrics in Prometheus text format."""
        lines: list[str] = []

        for metric in [*self._counters(), self.queue_depth]:
            if metric.help_text:
                lines.append(f"# HELP {metric.name} {metric.help_text}")
            lines.append(f"# TYPE {metric.name} {metric.type.value}")
            for value in metric.get_all():
                if value.labels:
                    label_str = ",".join(f'{k}="{v}"' for k, v in value.labels.items())
                    lines.append(f"{metric.name}{{{label_str}}} {value.value}")
                else:
                    lines.append(f"{metric.name} {value.value}")

        lines.append(f"# HELP {PREFIX}_uptime_seconds Bridge uptime in seconds")
        lines.append(f"# TYPE {PREFIX}_uptime_seconds gauge")
        lines.append(f"{PREFIX}_uptime_seconds {self.get_uptime_seconds()}")

        return "\n".join(lines)


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry."""
    return MetricsRegistry.get_instance()


def write_metrics_file(path: Path) -> None:
    """Write the Prometheus text export for a textfile collector to scrape."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(get_metrics().to_prometheus_format() + "\n")
        log.debug("metrics_file_written", path=str(path))
    except OSError as e:
        log.error("metrics_file_write_error", path=str(path), error=str(e))


class Timer:
    """Context manager for timing operations.

    Example:
        with Timer(metrics.relay_duration, labels={"side": "origin"}):
            await adapter.send_message(chat_id, text)
    """

    def __init__(
        self,
        histogram: Histogram,
        labels: dict[str, str] | None = None,
    ) -> None:
        self._histogram = histogram
        self._labels = labels
        self._start: float | None = None

    def __enter__(self) -> Timer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        if self._start is not None:
            duration = time.perf_counter() - self._start
            self._histogram.observe(duration, labels=self._labels)
