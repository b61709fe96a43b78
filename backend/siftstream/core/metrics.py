"""
Metrics collection for SIFT Stream.

In-process counters, gauges and histograms for requests, sessions and
SSE streams, exported in Prometheus text format at ``/metrics``.
"""

import math
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Tuple

from siftstream.core.logging import get_logger

logger = get_logger(__name__)

LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Dict[str, Any]) -> LabelKey:
    return tuple(sorted((name, str(value)) for name, value in labels.items()))


@dataclass
class MetricValue:
    """A single metric value with labels."""

    value: float
    labels: Dict[str, str] = field(default_factory=dict)


class _LabeledMetric:
    """Shared label handling for counters and gauges."""

    def __init__(self, name: str, description: str, label_names: Optional[List[str]] = None):
        self.name = name
        self.description = description
        self.label_names = label_names or []
        self._values: Dict[LabelKey, float] = defaultdict(float)
        self._lock = Lock()

    def _add(self, amount: float, labels: Dict[str, Any]) -> None:
        key = _label_key(labels)
        with self._lock:
            self._values[key] += amount

    def get(self, **labels) -> float:
        with self._lock:
            return self._values.get(_label_key(labels), 0)

    def get_all(self) -> List[MetricValue]:
        with self._lock:
            return [MetricValue(value=value, labels=dict(key)) for key, value in self._values.items()]


class Counter(_LabeledMetric):
    """Monotonically increasing count of events such as requests or frames."""

    def inc(self, value: float = 1, **labels) -> None:
        if value < 0:
            raise ValueError("Counters can only increase")
        self._add(value, labels)


class Gauge(_LabeledMetric):
    """A current value, such as the number of open streams."""

    def set(self, value: float, **labels) -> None:
        key = _label_key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, value: float = 1, **labels) -> None:
        self._add(value, labels)

    def dec(self, value: float = 1, **labels) -> None:
        self._add(-value, labels)


@dataclass
class _HistogramSeries:
    buckets: List[int]
    count: int = 0
    total: float = 0.0
    minimum: float = math.inf
    maximum: float = -math.inf


class Histogram:
    """
    Distribution of observed values in cumulative buckets.

    Used for time to first chunk and stream durations. Observations are
    folded into their buckets as they arrive; raw values are not kept.
    """

    DEFAULT_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, float("inf"))

    def __init__(
        self,
        name: str,
        description: str,
        label_names: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
    ):
        self.name = name
        self.description = description
        self.label_names = label_names or []
        self.buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))
        self._series: Dict[LabelKey, _HistogramSeries] = {}
        self._lock = Lock()

    def observe(self, value: float, **labels) -> None:
        key = _label_key(labels)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = self._series[key] = _HistogramSeries(buckets=[0] * len(self.buckets))
            series.count += 1
            series.total += value
            series.minimum = min(series.minimum, value)
            series.maximum = max(series.maximum, value)
            for index, bound in enumerate(self.buckets):
                if value <= bound:
                    series.buckets[index] += 1

    @contextmanager
    def time(self, **labels) -> Iterator[None]:
        """Observe the wall time spent in the block."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, **labels)

    def get_stats(self, **labels) -> Dict[str, float]:
        with self._lock:
            series = self._series.get(_label_key(labels))
            if series is None or series.count == 0:
                return {"count": 0, "sum": 0, "avg": 0, "min": 0, "max": 0}
            return {
                "count": series.count,
                "sum": series.total,
                "avg": series.total / series.count,
                "min": series.minimum,
                "max": series.maximum,
            }

    def get_bucket_counts(self, **labels) -> Dict[float, int]:
        """Cumulative count per upper bound, Prometheus-style."""
        with self._lock:
            series = self._series.get(_label_key(labels))
            counts = series.buckets if series is not None else [0] * len(self.buckets)
            return dict(zip(self.buckets, counts))

    def label_sets(self) -> List[Dict[str, str]]:
        with self._lock:
            return [dict(key) for key in self._series]


# ============ Application Metrics ============


class ApplicationMetrics:
    """
    Central metrics registry for the application.

    Provides pre-defined metrics for HTTP requests and SSE streams.
    """

    def __init__(self):
        # Request metrics
        self.requests_total = Counter(
            "sift_requests_total",
            "Total number of requests",
            ["method", "endpoint", "status"],
        )

        self.request_duration = Histogram(
            "sift_request_duration_seconds",
            "Request duration in seconds",
            ["method", "endpoint"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float("inf")),
        )

        # Session metrics
        self.sessions_initiated = Counter(
            "sift_sessions_initiated_total",
            "Analysis sessions created",
            ["model", "report_type"],
        )

        self.handles_rejected = Counter(
            "sift_stream_handles_rejected_total",
            "Stream subscriptions refused",
            ["reason"],  # unknown, consumed, expired
        )

        # Stream metrics
        self.streams_started = Counter(
            "sift_streams_started_total",
            "Relay invocations started",
            ["model", "kind"],  # kind: analysis or chat
        )

        self.streams_finished = Counter(
            "sift_streams_finished_total",
            "Relay invocations finished",
            ["model", "outcome"],
        )

        self.frames_emitted = Counter(
            "sift_frames_emitted_total",
            "SSE frames written",
            ["event"],
        )

        self.active_streams = Gauge(
            "sift_active_streams",
            "Number of active SSE streams",
        )

        self.first_chunk_latency = Histogram(
            "sift_first_chunk_seconds",
            "Time from stream start to the first provider chunk",
            ["model"],
        )

        self.stream_duration = Histogram(
            "sift_stream_duration_seconds",
            "Total relay duration in seconds",
            ["model", "outcome"],
        )

        # Error metrics
        self.errors_total = Counter(
            "sift_errors_total",
            "Total errors",
            ["error_type", "component"],
        )

    # ============ Convenience Methods ============

    def record_request(self, method: str, endpoint: str, status: int, duration: float) -> None:
        """Record an HTTP request."""
        self.requests_total.inc(method=method, endpoint=endpoint, status=str(status))
        self.request_duration.observe(duration, method=method, endpoint=endpoint)

    def record_session_initiated(self, model: str, report_type: str) -> None:
        self.sessions_initiated.inc(model=model, report_type=report_type)

    def record_handle_rejected(self, reason: str) -> None:
        self.handles_rejected.inc(reason=reason)

    def record_stream_started(self, model: str, kind: str) -> None:
        """Record the start of a relay invocation."""
        self.streams_started.inc(model=model, kind=kind)
        self.active_streams.inc()

    def record_frame(self, event: str) -> None:
        self.frames_emitted.inc(event=event)

    def record_first_chunk(self, model: str, latency: float) -> None:
        self.first_chunk_latency.observe(latency, model=model)

    def record_stream_finished(self, model: str, outcome: str, duration: float) -> None:
        """Record the end of a relay invocation."""
        self.streams_finished.inc(model=model, outcome=outcome)
        self.stream_duration.observe(duration, model=model, outcome=outcome)
        self.active_streams.dec()

    def record_error(self, error_type: str, component: str = "unknown") -> None:
        """Record an error."""
        self.errors_total.inc(error_type=error_type, component=component)

    # ============ Export Methods ============

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus format."""
        lines = []

        def label_part(labels: Dict[str, str], extra: Optional[Dict[str, str]] = None) -> str:
            merged = {**labels, **(extra or {})}
            if not merged:
                return ""
            return "{" + ",".join(f'{k}="{v}"' for k, v in merged.items()) + "}"

        def format_metric(metric, metric_type: str):
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric_type}")
            for mv in metric.get_all():
                lines.append(f"{metric.name}{label_part(mv.labels)} {mv.value}")

        def format_histogram(metric: Histogram):
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} histogram")
            for labels in metric.label_sets():
                for bucket, count in metric.get_bucket_counts(**labels).items():
                    le = "+Inf" if bucket == float("inf") else str(bucket)
                    lines.append(f"{metric.name}_bucket{label_part(labels, {'le': le})} {count}")
                stats = metric.get_stats(**labels)
                lines.append(f"{metric.name}_sum{label_part(labels)} {stats['sum']}")
                lines.append(f"{metric.name}_count{label_part(labels)} {stats['count']}")

        # Attribute order is declaration order
        for attr in vars(self).values():
            if isinstance(attr, Counter):
                format_metric(attr, "counter")
            elif isinstance(attr, Gauge):
                format_metric(attr, "gauge")
            elif isinstance(attr, Histogram):
                format_histogram(attr)

        return "\n".join(lines) + "\n"

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        return {
            "requests": {
                "total": sum(mv.value for mv in self.requests_total.get_all()),
            },
            "sessions": {
                "initiated": sum(mv.value for mv in self.sessions_initiated.get_all()),
                "handles_rejected": sum(mv.value for mv in self.handles_rejected.get_all()),
            },
            "streams": {
                "started": sum(mv.value for mv in self.streams_started.get_all()),
                "finished": sum(mv.value for mv in self.streams_finished.get_all()),
                "active": self.active_streams.get(),
                "frames": sum(mv.value for mv in self.frames_emitted.get_all()),
            },
            "errors": {
                "total": sum(mv.value for mv in self.errors_total.get_all()),
            },
        }


# Global metrics instance
metrics = ApplicationMetrics()


def get_metrics() -> ApplicationMetrics:
    """Get the global metrics instance."""
    return metrics


# ============ Middleware for Request Metrics ============


class MetricsMiddleware:
    """Middleware to automatically record request metrics."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.perf_counter() - start
            path = scope.get("path", "/")
            # Stream handles are unique per session; collapse them into one series
            if path.startswith("/api/sift/stream/"):
                path = "/api/sift/stream/{handle}"
            elif path.startswith("/api/sift/sessions/"):
                path = "/api/sift/sessions/{session_id}"

            metrics.record_request(
                method=scope.get("method", "UNKNOWN"),
                endpoint=path,
                status=status_code,
                duration=duration,
            )
