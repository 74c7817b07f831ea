"""
Response Cache
==============

In-process TTL + LRU store for finished pipeline results.

- Keyed by ``fingerprint()``: sha256 over the normalized request fields
- Expired entries are evicted lazily on access, and purged first when the
  store is full; only then is the least-recently-used entry dropped
- ``set`` with a non-positive TTL never stores (the quality gate uses TTL 0
  to mean "do not cache")
- Every operation holds one ``threading.Lock`` for a short, non-suspending
  critical section
"""

from __future__ import annotations

import hashlib
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from tutorflow.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

V = TypeVar("V")

_FIELD_SEPARATOR = "\x1f"

def normalize(text: str | None) -> str:
    """Lower-case, trim and collapse internal whitespace."""
    return " ".join((text or "").lower().split())

def fingerprint(
    task: str,
    audience: str | None = None,
    tone: str | None = None,
    response_type: str | None = None,
) -> str:
    """Deterministic cache key for a tutoring request."""
    joined = _FIELD_SEPARATOR.join(
        normalize(part) for part in (task, audience, tone, response_type)
    )
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()

@dataclass(slots=True)
class _Entry(Generic[V]):
    value: V
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

class ResponseCache(Generic[V]):
    """
    Bounded TTL cache with LRU eviction.

    Usage:
        cache = ResponseCache(capacity=500)
        key = fingerprint(task, audience, tone, response_type)
        if (hit := cache.get(key)) is not None:
            return hit
        cache.set(key, result, ttl_s=1800)
    """

    def __init__(self, capacity: int = 500, *, clock: Callable[[], float] = time.monotonic):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._entries: OrderedDict[str, _Entry[V]] = OrderedDict()
        self._capacity = capacity
        self._clock = clock
        self._lock = threading.Lock()

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, key: str) -> V | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                logger.debug("cache_expired", key=key[:12])
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: str, value: V, ttl_s: float) -> bool:
        """Store ``value`` for ``ttl_s`` seconds. Returns False when nothing was stored."""
        now = self._clock()
        with self._lock:
            if ttl_s <= 0:
                self._entries.pop(key, None)
                return False

            if key not in self._entries and len(self._entries) >= self._capacity:
                self._purge_expired(now)
                if len(self._entries) >= self._capacity:
                    evicted, _ = self._entries.popitem(last=False)
                    self._evictions += 1
                    logger.debug("cache_evicted", key=evicted[:12])

            self._entries[key] = _Entry(value=value, expires_at=now + ttl_s)
            self._entries.move_to_end(key)
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for k in expired:
            del self._entries[k]
        if expired:
            self._expirations += len(expired)
            logger.debug("cache_purged", count=len(expired))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[arg-type]
            return entry is not None and not entry.is_expired(now)

    @property
    def hit_rate(self) -> float:
        with self._lock:
            total = self._hits + self._misses
            return self._hits / total if total > 0 else 0.0

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "capacity": self._capacity,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "hit_rate": round(self._hits / total, 4) if total else 0.0,
            }
