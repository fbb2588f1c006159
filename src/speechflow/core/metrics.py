"""
Prometheus metrics for speechflow.

Every collector lives in a private ``CollectorRegistry`` owned by a
``SpeechMetrics`` instance, so several contexts (or test cases) in one
process never collide on metric names.

Metrics Exposed:
    speechflow_operations_total            - Operations by kind and status
    speechflow_operation_duration_seconds  - Operation latency by kind
    speechflow_cache_hits_total            - Response cache hits
    speechflow_cache_misses_total          - Response cache misses
    speechflow_admission_rejections_total  - Operations refused by the coordinator
    speechflow_live_operations             - Operations currently admitted
    speechflow_retries_total               - Retry attempts by kind
    speechflow_storage_bytes               - Tracked persistent store usage
    speechflow_cost_cents_total            - Estimated cost tracked by the ledger

Usage:
    metrics = SpeechMetrics()
    metrics.record_operation("synthesize", "success", 0.42)
    metrics.record_cache("hit")
    content, content_type = metrics.render()
"""
from __future__ import annotations

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class SpeechMetrics:
    """
    Metric collection for one SpeechContext.

    Example:
        >>> m = SpeechMetrics()
        >>> m.record_operation("transcribe", "error", 1.5)
        >>> m.value("speechflow_operations_total", kind="transcribe", status="error")
        1.0
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self._registry = registry or CollectorRegistry()

        self._operations_total = Counter(
            "speechflow_operations_total",
            "Total speech operations",
            ["kind", "status"],
            registry=self._registry,
        )
        self._operation_duration = Histogram(
            "speechflow_operation_duration_seconds",
            "Speech operation duration in seconds",
            ["kind"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )
        self._cache_hits = Counter(
            "speechflow_cache_hits_total",
            "Response cache hits",
            registry=self._registry,
        )
        self._cache_misses = Counter(
            "speechflow_cache_misses_total",
            "Response cache misses",
            registry=self._registry,
        )
        self._admission_rejections = Counter(
            "speechflow_admission_rejections_total",
            "Operations rejected at the concurrency ceiling",
            ["kind"],
            registry=self._registry,
        )
        self._live_operations = Gauge(
            "speechflow_live_operations",
            "Operations currently admitted",
            registry=self._registry,
        )
        self._retries = Counter(
            "speechflow_retries_total",
            "Retry attempts after a transient failure",
            registry=self._registry,
        )
        self._storage_bytes = Gauge(
            "speechflow_storage_bytes",
            "Bytes tracked by the persistent store",
            registry=self._registry,
        )
        self._cost_cents = Counter(
            "speechflow_cost_cents_total",
            "Estimated cost in US cents",
            ["kind"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_operation(self, kind: str, status: str, duration: float) -> None:
        """
        Record a finished operation.

        Args:
            kind: "transcribe" or "synthesize"
            status: "success", "cached", "error", "cancelled", ...
            duration: Wall-clock seconds from admission to completion
        """
        self._operations_total.labels(kind=kind, status=status).inc()
        self._operation_duration.labels(kind=kind).observe(duration)

    def record_cache(self, result: str) -> None:
        if result == "hit":
            self._cache_hits.inc()
        else:
            self._cache_misses.inc()

    def record_rejection(self, kind: str) -> None:
        self._admission_rejections.labels(kind=kind).inc()

    def set_live_operations(self, count: int) -> None:
        self._live_operations.set(count)

    def inc_retries(self) -> None:
        self._retries.inc()

    def set_storage_bytes(self, used: int) -> None:
        self._storage_bytes.set(used)

    def record_cost(self, kind: str, cents: int) -> None:
        if cents > 0:
            self._cost_cents.labels(kind=kind).inc(cents)

    def value(self, name: str, **labels: str) -> Optional[float]:
        """Current sample value for ``name`` with ``labels``, or None."""
        return self._registry.get_sample_value(name, labels or None)

    def render(self) -> tuple[bytes, str]:
        """
        Metrics in the Prometheus exposition format.

        Returns:
            Tuple of (content_bytes, content_type)
        """
        return generate_latest(self._registry), CONTENT_TYPE_LATEST
