"""
Retry Policy
============

Bounded exponential backoff with jitter for transient upstream failures.

Only errors flagged ``retryable`` are retried (timeouts, network errors,
5xx responses). Rate limiting, open circuits and validation failures are
surfaced immediately.

The policy is an explicit loop with an attempt counter that returns a
``RetryOutcome`` instead of raising. Delays are plain ``asyncio.sleep``
calls and are not interruptible: a caller that goes away does not stop
the remaining attempts of an in-flight request.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from tutorflow.core.exceptions import TutorFlowError
from tutorflow.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, BaseException, float], None]

# ── Outcome ────────────────────────────────────────────────────────


@dataclass(slots=True)
class RetryOutcome(Generic[T]):
    """Result of a retried operation: a value, or the last error seen."""

    value: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_delay_s: float = 0.0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the last error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


# ── Policy ─────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Configuration and execution loop for retries."""

    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0
    jitter_s: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_s < 0 or self.max_delay_s < 0 or self.jitter_s < 0:
            raise ValueError("retry delays must be non-negative")

    def compute_delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Delay after the 0-based ``attempt`` failed: base * 2^attempt + jitter."""
        delay = min(self.base_delay_s * (2 ** attempt), self.max_delay_s)
        return delay + self.jitter_s * rand()

    @staticmethod
    def is_retryable(exc: BaseException) -> bool:
        return isinstance(exc, TutorFlowError) and exc.retryable

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str = "operation",
        on_retry: RetryCallback | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> RetryOutcome[T]:
        """Run ``operation`` until it succeeds, fails permanently, or attempts run out."""
        outcome: RetryOutcome[T] = RetryOutcome()

        for attempt in range(self.max_attempts):
            outcome.attempts = attempt + 1
            try:
                outcome.value = await operation()
                outcome.error = None
                return outcome
            except TutorFlowError as exc:
                outcome.error = exc
                outcome.errors.append(exc.error_code)
                if not self.is_retryable(exc):
                    logger.warning(
                        "retry_non_retryable",
                        operation=name,
                        attempt=attempt + 1,
                        error_code=exc.error_code,
                    )
                    return outcome

            if attempt + 1 >= self.max_attempts:
                break

            delay = self.compute_delay(attempt)
            logger.warning(
                "retry_scheduled",
                operation=name,
                attempt=attempt + 1,
                max_attempts=self.max_attempts,
                delay_s=round(delay, 3),
                error_code=outcome.errors[-1],
            )
            if on_retry:
                on_retry(attempt + 1, outcome.error, delay)
            outcome.total_delay_s += delay
            await sleep(delay)

        logger.warning(
            "retry_exhausted",
            operation=name,
            attempts=outcome.attempts,
            errors=",".join(outcome.errors),
        )
        return outcome
