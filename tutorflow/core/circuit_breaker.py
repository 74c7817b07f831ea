"""
Circuit Breaker
===============

Per-endpoint failure isolation:

    CLOSED ──(threshold consecutive failures)──▶ OPEN
    OPEN ──(cooldown elapsed, first caller)──▶ HALF_OPEN
    HALF_OPEN ──(trial succeeds)──▶ CLOSED
    HALF_OPEN ──(trial fails)──▶ OPEN

While OPEN nothing reaches the network. HALF_OPEN admits exactly one
trial call; concurrent arrivals are rejected until the trial reports an
outcome. A trial that never reports back is abandoned after one cooldown
so the breaker cannot wedge in HALF_OPEN.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from tutorflow.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    cooldown_s: float = 30.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.cooldown_s < 0:
            raise ValueError("cooldown_s must be >= 0")

class CircuitBreaker:
    """Thread-safe breaker guarding a single upstream endpoint."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._resume_after = 0.0
        self._trial_started_at: float | None = None

        self._trips = 0
        self._rejections = 0

    @property
    def state(self) -> CircuitState:
        """Current state. Reading it never triggers a transition."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def can_proceed(self) -> bool:
        """Gate a call. In OPEN, the first caller after the cooldown becomes the trial."""
        with self._lock:
            now = self._clock()

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if now >= self._resume_after:
                    self._state = CircuitState.HALF_OPEN
                    self._trial_started_at = now
                    logger.info("circuit_half_open", endpoint=self.name)
                    return True
                self._rejections += 1
                return False

            # HALF_OPEN: a trial is in flight.
            if (
                self._trial_started_at is not None
                and now - self._trial_started_at >= self.config.cooldown_s
            ):
                self._trial_started_at = now
                logger.warning("circuit_trial_abandoned", endpoint=self.name)
                return True
            self._rejections += 1
            return False

    def record_success(self) -> None:
        with self._lock:
            previous = self._state
            self._failures = 0
            self._state = CircuitState.CLOSED
            self._trial_started_at = None
        if previous != CircuitState.CLOSED:
            logger.info("circuit_closed", endpoint=self.name, previous=previous.value)

    def record_failure(self) -> None:
        opened = False
        with self._lock:
            self._failures += 1
            if (
                self._state == CircuitState.HALF_OPEN
                or self._failures >= self.config.failure_threshold
            ):
                if self._state != CircuitState.OPEN:
                    self._trips += 1
                    opened = True
                self._state = CircuitState.OPEN
                self._resume_after = self._clock() + self.config.cooldown_s
                self._trial_started_at = None
            failures = self._failures
        if opened:
            logger.warning(
                "circuit_opened",
                endpoint=self.name,
                failures=failures,
                cooldown_s=self.config.cooldown_s,
            )

    def retry_after(self) -> float:
        """Seconds until an OPEN breaker admits its trial (0 when not OPEN)."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return 0.0
            return max(0.0, self._resume_after - self._clock())

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._resume_after = 0.0
            self._trial_started_at = None

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "endpoint": self.name,
                "state": self._state.value,
                "failures": self._failures,
                "trips": self._trips,
                "rejections": self._rejections,
                "failure_threshold": self.config.failure_threshold,
                "cooldown_s": self.config.cooldown_s,
            }

class CircuitBreakerRegistry:
    """One breaker per upstream endpoint, created on first use."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, endpoint: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(endpoint)
            if breaker is None:
                breaker = CircuitBreaker(endpoint, self._config, clock=self._clock)
                self._breakers[endpoint] = breaker
            return breaker

    def get_stats(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.get_stats() for b in breakers}
