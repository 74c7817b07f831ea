"""
Token-Bucket Rate Limiter
=========================

Admission control per (caller, tier). Each bucket refills lazily from
elapsed monotonic time and spends one token per admitted call.

Denial is immediate: ``allow()`` never waits for a token.

Invariants:
  - tokens never go negative and never exceed the tier capacity
  - concurrent callers on the same key cannot double-spend a token
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from tutorflow.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

# ── Tiers ──────────────────────────────────────────────────────────

class RateLimitTier(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

@dataclass(frozen=True, slots=True)
class TierLimits:
    """Bucket shape for one tier."""

    capacity: int
    refill_per_second: float

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("capacity must be >= 1")
        if self.refill_per_second < 0:
            raise ValueError("refill_per_second must be >= 0")

    @classmethod
    def per_minute(cls, capacity: int, requests_per_minute: float) -> TierLimits:
        return cls(capacity=capacity, refill_per_second=requests_per_minute / 60.0)

DEFAULT_TIER_LIMITS: dict[RateLimitTier, TierLimits] = {
    RateLimitTier.LOW: TierLimits.per_minute(3, 15),
    RateLimitTier.NORMAL: TierLimits.per_minute(5, 30),
    RateLimitTier.HIGH: TierLimits.per_minute(10, 60),
}

# ── Bucket ─────────────────────────────────────────────────────────

@dataclass(slots=True)
class TokenBucket:
    capacity: int
    tokens: float
    refill_rate: float
    last_refill: float

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_rate)
        # A clock that steps backwards must not mint tokens later.
        self.last_refill = max(self.last_refill, now)

    def try_consume(self, now: float) -> bool:
        self.refill(now)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

# ── Limiter ────────────────────────────────────────────────────────

class TokenBucketRateLimiter:
    """
    Process-wide limiter holding one bucket per (key, tier).

    Usage:
        limiter = TokenBucketRateLimiter()
        if not limiter.allow("user-42", "normal"):
            raise RateLimitedError("user-42", "normal")
    """

    def __init__(
        self,
        tiers: Mapping[RateLimitTier, TierLimits] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_buckets: int = 10_000,
    ):
        self._tiers = dict(DEFAULT_TIER_LIMITS)
        if tiers:
            self._tiers.update({RateLimitTier(t): limits for t, limits in tiers.items()})
        self._clock = clock
        self._max_buckets = max_buckets
        self._buckets: OrderedDict[tuple[str, RateLimitTier], TokenBucket] = OrderedDict()
        self._lock = threading.Lock()

        self._allowed = 0
        self._denied = 0

    @staticmethod
    def _tier(tier: RateLimitTier | str) -> RateLimitTier:
        try:
            return RateLimitTier(tier)
        except ValueError:
            raise ValueError(f"Unknown rate-limit tier: {tier!r}") from None

    def _bucket(self, key: str, tier: RateLimitTier, now: float) -> TokenBucket:
        # Caller holds self._lock.
        bucket_key = (key, tier)
        bucket = self._buckets.get(bucket_key)
        if bucket is None:
            limits = self._tiers[tier]
            bucket = TokenBucket(
                capacity=limits.capacity,
                tokens=float(limits.capacity),
                refill_rate=limits.refill_per_second,
                last_refill=now,
            )
            self._buckets[bucket_key] = bucket
            if len(self._buckets) > self._max_buckets:
                self._buckets.popitem(last=False)
        else:
            self._buckets.move_to_end(bucket_key)
        return bucket

    def allow(self, key: str, tier: RateLimitTier | str = RateLimitTier.NORMAL) -> bool:
        """Spend one token for ``key`` in ``tier``; False when the bucket is empty."""
        resolved = self._tier(tier)
        with self._lock:
            now = self._clock()
            admitted = self._bucket(key, resolved, now).try_consume(now)
            if admitted:
                self._allowed += 1
            else:
                self._denied += 1

        if not admitted:
            logger.info("rate_limit_denied", caller=key, tier=resolved.value)
        return admitted

    def remaining(self, key: str, tier: RateLimitTier | str = RateLimitTier.NORMAL) -> float:
        """Tokens currently available, after a lazy refill."""
        resolved = self._tier(tier)
        with self._lock:
            now = self._clock()
            bucket = self._bucket(key, resolved, now)
            bucket.refill(now)
            return bucket.tokens

    def reset(self, key: str | None = None) -> None:
        """Drop buckets for ``key`` (all tiers), or every bucket."""
        with self._lock:
            if key is None:
                self._buckets.clear()
                return
            for bucket_key in [k for k in self._buckets if k[0] == key]:
                del self._buckets[bucket_key]

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "buckets": len(self._buckets),
                "allowed": self._allowed,
                "denied": self._denied,
                "tiers": {
                    tier.value: {
                        "capacity": limits.capacity,
                        "refill_per_second": round(limits.refill_per_second, 4),
                    }
                    for tier, limits in self._tiers.items()
                },
            }
