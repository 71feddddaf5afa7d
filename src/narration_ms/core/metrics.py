"""
Narration metrics.

MetricsCollector keeps the counters reported by the status surface and
mirrors them into a Prometheus registry owned by the collector (so several
managers, e.g. in tests, never collide on metric names).

Status values:
    total_requests            every speak() call
    successful_requests       playback actually started
    average_response_time_ms  incremental mean over successful requests
    last_response_time_ms     most recent successful request
    queued_requests           live backlog size

Prometheus metrics:
    narration_requests_total              - Counter of speak() calls
    narration_playback_started_total      - Counter of started playbacks
    narration_failures_total              - Counter of failures by kind
    narration_response_time_seconds       - Histogram of request-to-playback latency
    narration_queue_depth                 - Gauge of backlog size
    narration_active_audio                - Gauge of active playback resources
    narration_circuit_open                - Gauge, 1 while the breaker is open

Usage:
    metrics = MetricsCollector()
    metrics.record_request()
    metrics.record_success(response_time_ms=420.0)
    content, content_type = metrics.get_metrics_response()
"""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


def incremental_mean(mean: float, sample: float, n: int) -> float:
    """
    Running mean after adding the n-th sample.

        mean' = mean + (sample - mean) / n
    """
    if n <= 0:
        raise ValueError("n must be positive")
    return mean + (sample - mean) / n


class MetricsCollector:
    """Aggregated request counts and latency, plus the Prometheus mirror."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self._registry = registry or CollectorRegistry()
        self._setup_metrics()
        self.reset()

    def _setup_metrics(self) -> None:
        self._requests_total = Counter(
            "narration_requests_total",
            "Total speak() calls",
            registry=self._registry,
        )
        self._started_total = Counter(
            "narration_playback_started_total",
            "Requests whose playback started",
            registry=self._registry,
        )
        self._failures_total = Counter(
            "narration_failures_total",
            "Failed or dropped requests by error kind",
            ["kind"],
            registry=self._registry,
        )
        self._response_time = Histogram(
            "narration_response_time_seconds",
            "Request to playback start latency in seconds",
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )
        self._queue_depth = Gauge(
            "narration_queue_depth",
            "Current backlog size",
            registry=self._registry,
        )
        self._active_audio = Gauge(
            "narration_active_audio",
            "Currently playing resources",
            registry=self._registry,
        )
        self._circuit_open = Gauge(
            "narration_circuit_open",
            "Whether the circuit breaker is open (1) or closed (0)",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def reset(self) -> None:
        """Zero the status counters. Prometheus counters stay monotonic."""
        self.total_requests = 0
        self.successful_requests = 0
        self.average_response_time_ms = 0.0
        self.last_response_time_ms: Optional[float] = None
        self.last_request_at: Optional[float] = None
        self.queued_requests = 0
        self._queue_depth.set(0)

    def record_request(self) -> None:
        self.total_requests += 1
        self.last_request_at = time.time()
        self._requests_total.inc()

    def record_success(self, response_time_ms: float) -> None:
        self.successful_requests += 1
        self.average_response_time_ms = incremental_mean(
            self.average_response_time_ms, response_time_ms, self.successful_requests
        )
        self.last_response_time_ms = response_time_ms
        self._started_total.inc()
        self._response_time.observe(response_time_ms / 1000.0)

    def record_failure(self, kind: str) -> None:
        self._failures_total.labels(kind=kind).inc()

    def record_enqueued(self) -> None:
        self.queued_requests += 1
        self._queue_depth.set(self.queued_requests)

    def record_dequeued(self) -> None:
        self.queued_requests = max(0, self.queued_requests - 1)
        self._queue_depth.set(self.queued_requests)

    def set_active_audio(self, count: int) -> None:
        self._active_audio.set(count)

    def set_circuit_open(self, is_open: bool) -> None:
        self._circuit_open.set(1 if is_open else 0)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "average_response_time_ms": round(self.average_response_time_ms, 2),
            "last_response_time_ms": (
                round(self.last_response_time_ms, 2) if self.last_response_time_ms is not None else None
            ),
            "last_request_at": self.last_request_at,
            "queued_requests": self.queued_requests,
        }

    def get_metrics_response(self) -> tuple[bytes, str]:
        """
        Get metrics in Prometheus format.

        Returns:
            Tuple of (content_bytes, content_type)
        """
        return generate_latest(self._registry), CONTENT_TYPE_LATEST
