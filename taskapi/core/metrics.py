from typing import Protocol

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Seconds
LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class MetricsRecorder(Protocol):
    def increment(self, name: str, amount: float = 1, **labels: str) -> None: ...

    def observe(self, name: str, value: float, **labels: str) -> None: ...


class NullMetrics:
    """Recorder used when metrics are disabled."""

    def increment(self, name: str, amount: float = 1, **labels: str) -> None:
        pass

    def observe(self, name: str, value: float, **labels: str) -> None:
        pass


class PrometheusMetrics:
    """
    Prometheus-backed recorder.

    Owns its own CollectorRegistry so several apps (or tests) in one process
    never collide on metric names. Build one per process and pass it to
    whatever needs to record.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self._counters: dict[str, Counter] = {
            "tasks_created_total": Counter(
                "tasks_created_total",
                "Total tasks created",
                ["service"],
                registry=self.registry,
            ),
            "tasks_deleted_total": Counter(
                "tasks_deleted_total",
                "Total tasks deleted",
                ["service"],
                registry=self.registry,
            ),
            "http_requests_total": Counter(
                "http_requests_total",
                "Total HTTP requests",
                ["method", "status"],
                registry=self.registry,
            ),
            "listing_cache_events_total": Counter(
                "listing_cache_events_total",
                "Task listing cache hits, misses, errors and invalidations",
                ["event"],
                registry=self.registry,
            ),
        }
        self._histograms: dict[str, Histogram] = {
            "request_latency_seconds": Histogram(
                "request_latency_seconds",
                "Request latency in seconds",
                ["method", "status", "service"],
                buckets=LATENCY_BUCKETS,
                registry=self.registry,
            ),
        }

    def increment(self, name: str, amount: float = 1, **labels: str) -> None:
        counter = self._counters[name]
        (counter.labels(**labels) if labels else counter).inc(amount)

    def observe(self, name: str, value: float, **labels: str) -> None:
        histogram = self._histograms[name]
        (histogram.labels(**labels) if labels else histogram).observe(value)

    def render(self) -> bytes:
        return generate_latest(self.registry)
