"""
Health Checker: Readiness and Liveness Probes
==============================================

Aggregates registered async checks into one status for load balancers and
the ``/health/ready`` endpoint.

Checks:
  - Upstream provider (circuit state + call success rate)
  - Response cache occupancy
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from tutorflow.infra.telemetry.logger import get_logger

if TYPE_CHECKING:
    from tutorflow.api.middleware.orchestrator import TutorOrchestrator

logger = get_logger(__name__)

class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

@dataclass
class HealthCheck:
    """Result of a single health check."""

    name: str
    status: HealthStatus
    latency_ms: float = 0.0
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

@dataclass
class SystemHealth:
    """Aggregate system health."""

    status: HealthStatus
    checks: list[HealthCheck]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "checks": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "latency_ms": round(c.latency_ms, 2),
                    "message": c.message,
                    "details": c.details,
                }
                for c in self.checks
            ],
        }

CheckFn = Callable[[], Awaitable[HealthCheck]]

class HealthChecker:
    """
    Aggregated health checker.

    Usage:
        checker = HealthChecker()
        checker.register("upstream", make_upstream_check(orchestrator))

        health = await checker.check()
        # SystemHealth: worst status across all checks
    """

    def __init__(
        self,
        *,
        cache_ttl_s: float = 5.0,
        check_timeout_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._checks: dict[str, CheckFn] = {}
        self._cache_ttl_s = cache_ttl_s
        self._check_timeout_s = check_timeout_s
        self._clock = clock
        self._cached: SystemHealth | None = None
        self._cached_at = 0.0
        self._lock = threading.Lock()

    def register(self, name: str, check_fn: CheckFn) -> None:
        """Register a health check function."""
        self._checks[name] = check_fn
        with self._lock:
            self._cached = None

    async def check(self, *, use_cache: bool = True) -> SystemHealth:
        """Run all health checks concurrently; results are cached briefly."""
        with self._lock:
            if (use_cache and self._cached
                    and self._clock() - self._cached_at < self._cache_ttl_s):
                return self._cached

        results = list(await asyncio.gather(
            *(self._run_check(name, fn) for name, fn in self._checks.items())
        ))

        statuses = [c.status for c in results]
        if HealthStatus.UNHEALTHY in statuses:
            overall = HealthStatus.UNHEALTHY
        elif HealthStatus.DEGRADED in statuses:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY

        health = SystemHealth(status=overall, checks=results)
        if overall is not HealthStatus.HEALTHY:
            logger.warning(
                "health_degraded",
                status=overall.value,
                failing=",".join(c.name for c in results if c.status is not HealthStatus.HEALTHY),
            )

        with self._lock:
            self._cached = health
            self._cached_at = self._clock()

        return health

    async def liveness(self) -> bool:
        """The process is up and the event loop is serving requests."""
        return True

    async def readiness(self) -> bool:
        """Ready unless some dependency is unhealthy."""
        health = await self.check()
        return health.status != HealthStatus.UNHEALTHY

    async def _run_check(self, name: str, fn: CheckFn) -> HealthCheck:
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(fn(), timeout=self._check_timeout_s)
            result.latency_ms = (time.monotonic() - start) * 1000
            return result
        except TimeoutError:
            return HealthCheck(
                name=name,
                status=HealthStatus.UNHEALTHY,
                latency_ms=(time.monotonic() - start) * 1000,
                message="Health check timed out",
            )
        except (RuntimeError, OSError, ValueError) as exc:
            return HealthCheck(
                name=name,
                status=HealthStatus.UNHEALTHY,
                latency_ms=(time.monotonic() - start) * 1000,
                message=str(exc),
            )

# ── Built-in Health Checks ────────────────────────────────────────

def make_upstream_check(orchestrator: TutorOrchestrator) -> CheckFn:
    """Provider health: open breaker or <50% success is unhealthy, <80% degraded."""

    async def check_upstream() -> HealthCheck:
        report = orchestrator.health()
        status: HealthStatus = report["status"]
        message = ""
        if status is HealthStatus.UNHEALTHY:
            message = "Provider circuit open or success rate below 50%"
        elif status is HealthStatus.DEGRADED:
            message = "Provider success rate below 80%"
        return HealthCheck(
            name="upstream",
            status=status,
            message=message,
            details={k: v for k, v in report.items() if k != "status"},
        )

    return check_upstream

def make_cache_check(orchestrator: TutorOrchestrator, *, degraded_fill: float = 0.95) -> CheckFn:
    """Cache near capacity means heavy eviction; report it as degraded."""

    async def check_cache() -> HealthCheck:
        stats = orchestrator.cache.get_stats()
        fill = stats["size"] / stats["capacity"]
        return HealthCheck(
            name="cache",
            status=HealthStatus.DEGRADED if fill >= degraded_fill else HealthStatus.HEALTHY,
            details={"size": stats["size"], "hit_rate": stats["hit_rate"]},
        )

    return check_cache
