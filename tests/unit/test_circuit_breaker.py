"""Circuit breaker state machine tests."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from tutorflow.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)


class TestCircuitBreaker:

    def setup_method(self):
        self.now = 1000.0
        self.breaker = CircuitBreaker(
            "https://llm.test/v1/chat/completions",
            CircuitBreakerConfig(failure_threshold=3, cooldown_s=30.0),
            clock=lambda: self.now,
        )

    def _trip(self):
        for _ in range(3):
            self.breaker.record_failure()

    def test_starts_closed(self):
        assert self.breaker.state == CircuitState.CLOSED
        assert self.breaker.can_proceed() is True
        assert self.breaker.retry_after() == 0.0

    def test_opens_after_threshold_consecutive_failures(self):
        self.breaker.record_failure()
        self.breaker.record_failure()
        assert self.breaker.state == CircuitState.CLOSED
        self.breaker.record_failure()
        assert self.breaker.state == CircuitState.OPEN
        assert self.breaker.can_proceed() is False

    def test_success_resets_failure_count(self):
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.breaker.record_success()
        assert self.breaker.failure_count == 0
        self.breaker.record_failure()
        assert self.breaker.state == CircuitState.CLOSED

    def test_retry_after_counts_down(self):
        self._trip()
        assert self.breaker.retry_after() == pytest.approx(30.0)
        self.now += 12.0
        assert self.breaker.retry_after() == pytest.approx(18.0)

    def test_reading_state_never_transitions(self):
        self._trip()
        self.now += 60.0
        assert self.breaker.state == CircuitState.OPEN

    def test_half_open_admits_exactly_one_trial(self):
        self._trip()
        self.now += 30.0
        assert self.breaker.can_proceed() is True
        assert self.breaker.state == CircuitState.HALF_OPEN
        assert self.breaker.can_proceed() is False

    def test_successful_trial_closes(self):
        self._trip()
        self.now += 30.0
        self.breaker.can_proceed()
        self.breaker.record_success()
        assert self.breaker.state == CircuitState.CLOSED
        assert self.breaker.can_proceed() is True

    def test_failed_trial_reopens_with_fresh_cooldown(self):
        self._trip()
        self.now += 30.0
        self.breaker.can_proceed()
        self.breaker.record_failure()
        assert self.breaker.state == CircuitState.OPEN
        assert self.breaker.retry_after() == pytest.approx(30.0)
        assert self.breaker.can_proceed() is False

    def test_abandoned_trial_is_replaced_after_cooldown(self):
        self._trip()
        self.now += 30.0
        assert self.breaker.can_proceed() is True
        self.now += 29.0
        assert self.breaker.can_proceed() is False
        self.now += 1.0
        assert self.breaker.can_proceed() is True
        assert self.breaker.state == CircuitState.HALF_OPEN

    def test_reset(self):
        self._trip()
        self.breaker.reset()
        assert self.breaker.state == CircuitState.CLOSED
        assert self.breaker.failure_count == 0

    def test_stats_track_trips_and_rejections(self):
        self._trip()
        self.breaker.can_proceed()
        self.breaker.can_proceed()
        stats = self.breaker.get_stats()
        assert stats["state"] == "open"
        assert stats["trips"] == 1
        assert stats["rejections"] == 2


class TestCircuitBreakerConfig:

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)

    def test_cooldown_must_be_non_negative(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(cooldown_s=-1.0)


class TestCircuitBreakerRegistry:

    def setup_method(self):
        self.registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1))

    def test_same_endpoint_same_breaker(self):
        assert self.registry.get("a") is self.registry.get("a")

    def test_endpoints_are_isolated(self):
        self.registry.get("a").record_failure()
        assert self.registry.get("a").state == CircuitState.OPEN
        assert self.registry.get("b").state == CircuitState.CLOSED

    def test_stats_keyed_by_endpoint(self):
        self.registry.get("a")
        self.registry.get("b")
        assert set(self.registry.get_stats()) == {"a", "b"}


class TestConcurrentTrial:

    def test_exactly_one_trial_after_cooldown(self):
        now = [1000.0]
        breaker = CircuitBreaker(
            "https://llm.test",
            CircuitBreakerConfig(failure_threshold=1, cooldown_s=30.0),
            clock=lambda: now[0],
        )
        breaker.record_failure()
        now[0] += 30.0

        workers = 16
        barrier = threading.Barrier(workers)

        def attempt(_) -> bool:
            barrier.wait()
            return breaker.can_proceed()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            decisions = list(pool.map(attempt, range(workers)))

        assert decisions.count(True) == 1
        assert breaker.state == CircuitState.HALF_OPEN
