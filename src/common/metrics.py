"""Prometheus-compatible metrics for relay and classifier observability.

This module provides in-memory metrics collection for monitoring:
- Relay traffic (messages relayed, protocol errors, active sessions/rooms)
- Classifier requests (throughput, errors, timeouts, latency)
- Worker lifecycle (spawns, crashes, pending requests)

Metrics are exposed via the /metrics endpoint in Prometheus exposition format
and via /metrics/summary as JSON. A single collector is created by the server
and injected into the components that record into it.

Thread-safety: NOT thread-safe. Record only from the event loop.
"""

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class HistogramBucket:
    """Histogram bucket for latency distributions."""

    le: float  # Upper bound (less-than-or-equal)
    count: int = 0  # Number of observations <= le


@dataclass
class Histogram:
    """Histogram metric for tracking distributions.

    Bucket counts are cumulative, as in the Prometheus exposition format.
    Boundaries cover 10ms to 30s (the classifier request deadline).
    """

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)

    buckets: list[HistogramBucket] = field(
        default_factory=lambda: [
            HistogramBucket(le=0.010),
            HistogramBucket(le=0.050),
            HistogramBucket(le=0.100),
            HistogramBucket(le=0.250),
            HistogramBucket(le=0.500),
            HistogramBucket(le=1.000),
            HistogramBucket(le=2.500),
            HistogramBucket(le=5.000),
            HistogramBucket(le=10.000),
            HistogramBucket(le=30.000),
            HistogramBucket(le=float("inf")),
        ]
    )

    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        """Record an observation (in seconds)."""
        self.sum += value
        self.count += 1

        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    def quantile(self, q: float) -> float | None:
        """Approximate quantile (e.g., 0.95 for p95) by bucket interpolation.

        Args:
            q: Quantile to calculate (0.0 to 1.0)

        Returns:
            Approximate quantile value, or None if no data
        """
        if self.count == 0:
            return None

        target_rank = q * self.count

        prev_count = 0
        prev_le = 0.0
        for bucket in self.buckets:
            if bucket.count >= target_rank:
                if bucket.le == float("inf"):
                    return prev_le
                in_bucket = bucket.count - prev_count
                if in_bucket == 0:
                    return bucket.le
                fraction = (target_rank - prev_count) / in_bucket
                return prev_le + fraction * (bucket.le - prev_le)
            prev_count = bucket.count
            prev_le = bucket.le

        return self.buckets[-2].le


@dataclass
class Counter:
    """Counter metric (monotonically increasing)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        """Increment counter."""
        self.value += amount


@dataclass
class Gauge:
    """Gauge metric (can go up or down)."""

    name: str
    help: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def set(self, value: float) -> None:
        """Set gauge value."""
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        """Increment gauge."""
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        """Decrement gauge."""
        self.value -= amount


class MetricsCollector:
    """Metrics collector with Prometheus-compatible output."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._gauges: dict[str, Gauge] = {}
        self._histograms: dict[str, Histogram] = {}

        self._init_relay_metrics()
        self._init_classifier_metrics()

        logger.info("MetricsCollector initialized")

    def _add_counter(self, name: str, help_text: str) -> None:
        self._counters[name] = Counter(name=name, help=help_text)

    def _add_gauge(self, name: str, help_text: str) -> None:
        self._gauges[name] = Gauge(name=name, help=help_text)

    def _init_relay_metrics(self) -> None:
        self._add_counter("relay_messages_total", "Inbound relay messages processed")
        self._add_counter("relay_errors_total", "Inbound relay messages rejected")
        self._add_gauge("sessions_active", "Connected relay sessions")
        self._add_gauge("rooms_active", "Rooms with at least one member")

    def _init_classifier_metrics(self) -> None:
        self._add_counter("classify_requests_total", "Classification requests issued")
        self._add_counter("classify_errors_total", "Classification requests that failed")
        self._add_counter("classify_timeouts_total", "Classification requests that timed out")
        self._add_counter("worker_spawns_total", "Classifier worker processes spawned")
        self._add_counter("worker_crashes_total", "Classifier worker unexpected exits")
        self._add_gauge("classify_pending", "Classification requests awaiting a response")
        self._histograms["classify_latency_seconds"] = Histogram(
            name="classify_latency_seconds",
            help="Classification latency in seconds (request issued to response)",
        )

    # === Relay ===

    def record_relay_message(self) -> None:
        """Record an inbound relay message that was routed."""
        self._counters["relay_messages_total"].inc()

    def record_relay_error(self) -> None:
        """Record an inbound relay message that was rejected."""
        self._counters["relay_errors_total"].inc()

    def record_session_start(self) -> None:
        """Record a new relay session."""
        self._gauges["sessions_active"].inc()

    def record_session_end(self) -> None:
        """Record a relay session ending."""
        self._gauges["sessions_active"].dec()

    def set_rooms_active(self, count: int) -> None:
        """Set the number of non-empty rooms."""
        self._gauges["rooms_active"].set(count)

    # === Classifier ===

    def record_classify_start(self) -> None:
        """Record a classification request being issued."""
        self._counters["classify_requests_total"].inc()
        self._gauges["classify_pending"].inc()

    def record_classify_complete(
        self, latency_seconds: float, error: bool = False, timeout: bool = False
    ) -> None:
        """Record a classification request finishing.

        Args:
            latency_seconds: Time from request to completion
            error: Whether the request failed
            timeout: Whether the failure was a deadline expiry
        """
        self._gauges["classify_pending"].dec()
        if error or timeout:
            self._counters["classify_errors_total"].inc()
        if timeout:
            self._counters["classify_timeouts_total"].inc()
        if not error and not timeout:
            self._histograms["classify_latency_seconds"].observe(latency_seconds)

    def record_worker_spawn(self) -> None:
        """Record a worker process spawn."""
        self._counters["worker_spawns_total"].inc()

    def record_worker_crash(self) -> None:
        """Record an unexpected worker exit."""
        self._counters["worker_crashes_total"].inc()

    # === Export ===

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus exposition format.

        Returns:
            Metrics in Prometheus text format for scraping
        """
        lines: list[str] = []

        for counter in self._counters.values():
            lines.append(f"# HELP {counter.name} {counter.help}")
            lines.append(f"# TYPE {counter.name} counter")
            lines.append(f"{counter.name}{self._format_labels(counter.labels)} {counter.value}")

        for gauge in self._gauges.values():
            lines.append(f"# HELP {gauge.name} {gauge.help}")
            lines.append(f"# TYPE {gauge.name} gauge")
            lines.append(f"{gauge.name}{self._format_labels(gauge.labels)} {gauge.value}")

        for histogram in self._histograms.values():
            lines.append(f"# HELP {histogram.name} {histogram.help}")
            lines.append(f"# TYPE {histogram.name} histogram")

            labels_str = self._format_labels(histogram.labels)
            for bucket in histogram.buckets:
                le = "+Inf" if bucket.le == float("inf") else str(bucket.le)
                bucket_labels_str = self._format_labels({**histogram.labels, "le": le})
                lines.append(f"{histogram.name}_bucket{bucket_labels_str} {bucket.count}")

            lines.append(f"{histogram.name}_sum{labels_str} {histogram.sum}")
            lines.append(f"{histogram.name}_count{labels_str} {histogram.count}")

        return "\n".join(lines) + "\n"

    def _format_labels(self, labels: dict[str, str]) -> str:
        """Format labels for Prometheus output (e.g. '{le="0.1"}')."""
        if not labels:
            return ""

        label_pairs = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(label_pairs) + "}"

    # === Summary statistics ===

    def get_summary(self) -> dict[str, float | None]:
        """Get summary statistics for a monitoring dashboard.

        Returns:
            Dictionary with key metrics and latency percentiles
        """
        latency = self._histograms["classify_latency_seconds"]
        p50 = latency.quantile(0.50)
        p95 = latency.quantile(0.95)

        return {
            "relay_messages_total": self._counters["relay_messages_total"].value,
            "relay_errors_total": self._counters["relay_errors_total"].value,
            "sessions_active": self._gauges["sessions_active"].value,
            "rooms_active": self._gauges["rooms_active"].value,
            "classify_requests_total": self._counters["classify_requests_total"].value,
            "classify_errors_total": self._counters["classify_errors_total"].value,
            "classify_timeouts_total": self._counters["classify_timeouts_total"].value,
            "classify_pending": self._gauges["classify_pending"].value,
            "classify_latency_p50_ms": p50 * 1000 if p50 is not None else None,
            "classify_latency_p95_ms": p95 * 1000 if p95 is not None else None,
            "worker_spawns_total": self._counters["worker_spawns_total"].value,
            "worker_crashes_total": self._counters["worker_crashes_total"].value,
        }
