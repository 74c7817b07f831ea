"""
Pipeline Metrics: Prometheus + Internal Percentiles
=====================================================

Counters and histograms for the tutoring pipeline, plus a rolling
percentile window for quick dashboard summaries.

Each ``PipelineMetrics`` owns its own ``CollectorRegistry`` so that
several orchestrators (and test fixtures) can coexist in one process
without duplicate-timeseries errors.

Metric Naming Convention:
  - tutorflow_{component}_{metric}_{unit}
  - e.g., tutorflow_upstream_latency_seconds
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ── Percentile Tracker ─────────────────────────────────────────────

class PercentileTracker:
    """Thread-safe rolling window percentile calculator."""

    __slots__ = ("_lock", "_values")

    def __init__(self, window_size: int = 1000):
        self._values: deque[float] = deque(maxlen=window_size)
        self._lock = threading.Lock()

    def record(self, value: float) -> None:
        with self._lock:
            self._values.append(value)

    def percentile(self, p: float) -> float:
        """Get percentile value (0-100)."""
        with self._lock:
            if not self._values:
                return 0.0
            ordered = sorted(self._values)
        idx = int(len(ordered) * p / 100)
        return ordered[min(idx, len(ordered) - 1)]

    @property
    def count(self) -> int:
        return len(self._values)

    def mean(self) -> float:
        with self._lock:
            if not self._values:
                return 0.0
            return sum(self._values) / len(self._values)

    def summary(self) -> dict[str, float]:
        return {
            "p50": round(self.percentile(50), 2),
            "p95": round(self.percentile(95), 2),
            "p99": round(self.percentile(99), 2),
            "mean": round(self.mean(), 2),
            "count": self.count,
        }

# ── Pipeline Metrics ───────────────────────────────────────────────

# Keyed by CircuitState value.
_CIRCUIT_GAUGE_VALUE = {"closed": 0, "half_open": 1, "open": 2}

class PipelineMetrics:
    """
    Centralized metrics for one orchestrator instance.

    Besides Prometheus series, keeps plain counters for the provider
    health rule (success rate over upstream calls).
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._lock = threading.Lock()

        self._upstream_latency = PercentileTracker()
        self._pipeline_latency = PercentileTracker()
        self._upstream_success = 0
        self._upstream_failure = 0
        self._tokens_total = 0

        # ── Pipeline ──
        self.requests = Counter(
            "tutorflow_pipeline_requests_total",
            "Pipeline requests by outcome",
            labelnames=["outcome"],
            registry=self.registry,
        )
        self.pipeline_latency = Histogram(
            "tutorflow_pipeline_latency_seconds",
            "End-to-end pipeline latency",
            buckets=(0.005, 0.05, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self.registry,
        )
        self.safe_defaults = Counter(
            "tutorflow_pipeline_safe_defaults_total",
            "Results replaced by the safe default",
            labelnames=["reason"],
            registry=self.registry,
        )

        # ── Upstream ──
        self.upstream_calls = Counter(
            "tutorflow_upstream_calls_total",
            "Upstream calls by final status",
            labelnames=["status"],
            registry=self.registry,
        )
        self.upstream_latency = Histogram(
            "tutorflow_upstream_latency_seconds",
            "Upstream call latency including retries",
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self.registry,
        )
        self.upstream_tokens = Counter(
            "tutorflow_upstream_tokens_total",
            "Tokens reported by the provider",
            labelnames=["direction"],
            registry=self.registry,
        )
        self.upstream_retries = Counter(
            "tutorflow_upstream_retries_total",
            "Retry attempts scheduled",
            registry=self.registry,
        )

        # ── Admission ──
        self.rate_limited = Counter(
            "tutorflow_rate_limit_denials_total",
            "Requests denied by the token bucket",
            labelnames=["tier"],
            registry=self.registry,
        )
        self.circuit_rejections = Counter(
            "tutorflow_circuit_rejections_total",
            "Requests rejected by an open circuit",
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "tutorflow_circuit_state",
            "Circuit breaker state (0=closed, 1=half-open, 2=open)",
            labelnames=["endpoint"],
            registry=self.registry,
        )

        # ── Cache ──
        self.cache_lookups = Counter(
            "tutorflow_cache_lookups_total",
            "Response cache lookups",
            labelnames=["result"],
            registry=self.registry,
        )
        self.cache_writes = Counter(
            "tutorflow_cache_writes_total",
            "Response cache writes by quality tier",
            labelnames=["tier"],
            registry=self.registry,
        )

    # ── Recording Methods ──────────────────────────────────────────

    def record_request(self, *, outcome: str, latency_s: float) -> None:
        self.requests.labels(outcome=outcome).inc()
        self.pipeline_latency.observe(latency_s)
        self._pipeline_latency.record(latency_s * 1000)

    def record_upstream(
        self,
        *,
        status: str,
        latency_s: float,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
    ) -> None:
        """Record one upstream call; ``status`` is 'success' or an error code."""
        self.upstream_calls.labels(status=status).inc()
        self.upstream_latency.observe(latency_s)
        self._upstream_latency.record(latency_s * 1000)
        if prompt_tokens:
            self.upstream_tokens.labels(direction="prompt").inc(prompt_tokens)
        if completion_tokens:
            self.upstream_tokens.labels(direction="completion").inc(completion_tokens)
        with self._lock:
            if status == "success":
                self._upstream_success += 1
            else:
                self._upstream_failure += 1
            self._tokens_total += prompt_tokens + completion_tokens

    def record_retry(self) -> None:
        self.upstream_retries.inc()

    def record_rate_limited(self, tier: str) -> None:
        self.rate_limited.labels(tier=tier).inc()

    def record_circuit_rejection(self) -> None:
        self.circuit_rejections.inc()

    def record_circuit_state(self, endpoint: str, state: str) -> None:
        self.circuit_state.labels(endpoint=endpoint).set(_CIRCUIT_GAUGE_VALUE[str(state)])

    def record_cache_lookup(self, *, hit: bool) -> None:
        self.cache_lookups.labels(result="hit" if hit else "miss").inc()

    def record_cache_write(self, tier: str) -> None:
        self.cache_writes.labels(tier=tier).inc()

    def record_safe_default(self, reason: str) -> None:
        self.safe_defaults.labels(reason=reason).inc()

    # ── Access ─────────────────────────────────────────────────────

    @property
    def upstream_success_rate(self) -> float | None:
        """Share of successful upstream calls, or None before the first call."""
        with self._lock:
            total = self._upstream_success + self._upstream_failure
            if total == 0:
                return None
            return self._upstream_success / total

    def get_summary(self) -> dict[str, Any]:
        with self._lock:
            calls = {
                "success": self._upstream_success,
                "failure": self._upstream_failure,
                "tokens": self._tokens_total,
            }
        rate = self.upstream_success_rate
        return {
            "upstream": {
                **calls,
                "success_rate": round(rate, 4) if rate is not None else None,
                "latency_ms": self._upstream_latency.summary(),
            },
            "pipeline": {"latency_ms": self._pipeline_latency.summary()},
        }

    def export_prometheus(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry)

# ── Singleton ──────────────────────────────────────────────────────

_metrics: PipelineMetrics | None = None

def get_metrics() -> PipelineMetrics:
    """Process-wide collector used by the HTTP app."""
    global _metrics
    if _metrics is None:
        _metrics = PipelineMetrics()
    return _metrics
