"""Retry policy tests: explicit attempt loop, injected sleep."""

import pytest

from tutorflow.core.exceptions import InvalidInputError, UpstreamError, UpstreamTimeoutError
from tutorflow.core.retry import RetryPolicy


class Script:
    """Async operation that raises the scripted errors, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestRetryPolicy:

    def setup_method(self):
        self.policy = RetryPolicy(max_attempts=3, base_delay_s=0.5, max_delay_s=8.0, jitter_s=0.0)
        self.sleeps: list[float] = []

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        op = Script()
        outcome = await self.policy.execute(op, sleep=self._sleep)
        assert outcome.ok
        assert outcome.unwrap() == "ok"
        assert outcome.attempts == 1
        assert self.sleeps == []

    @pytest.mark.asyncio
    async def test_retries_transient_errors_with_backoff(self):
        op = Script(UpstreamError("503"), UpstreamTimeoutError(30.0))
        outcome = await self.policy.execute(op, sleep=self._sleep)
        assert outcome.ok
        assert outcome.attempts == 3
        assert self.sleeps == [0.5, 1.0]
        assert outcome.total_delay_s == pytest.approx(1.5)
        assert outcome.errors == ["UPSTREAM_ERROR", "UPSTREAM_TIMEOUT"]

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_immediately(self):
        op = Script(UpstreamError("400", upstream_status=400, retryable=False))
        outcome = await self.policy.execute(op, sleep=self._sleep)
        assert not outcome.ok
        assert outcome.attempts == 1
        assert op.calls == 1
        with pytest.raises(UpstreamError):
            outcome.unwrap()

    @pytest.mark.asyncio
    async def test_validation_errors_are_not_retried(self):
        op = Script(InvalidInputError("bad"))
        outcome = await self.policy.execute(op, sleep=self._sleep)
        assert outcome.attempts == 1
        assert isinstance(outcome.error, InvalidInputError)

    @pytest.mark.asyncio
    async def test_exhausts_attempts(self):
        op = Script(*(UpstreamError("503") for _ in range(5)))
        outcome = await self.policy.execute(op, sleep=self._sleep)
        assert not outcome.ok
        assert outcome.attempts == 3
        assert op.calls == 3
        assert len(self.sleeps) == 2

    @pytest.mark.asyncio
    async def test_on_retry_callback(self):
        seen = []
        op = Script(UpstreamError("503"))
        await self.policy.execute(
            op, on_retry=lambda attempt, exc, delay: seen.append((attempt, delay)), sleep=self._sleep
        )
        assert seen == [(1, 0.5)]

    @pytest.mark.asyncio
    async def test_unexpected_exceptions_propagate(self):
        async def boom():
            raise KeyError("not a TutorFlowError")

        with pytest.raises(KeyError):
            await self.policy.execute(boom, sleep=self._sleep)

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay_s=1.0, max_delay_s=4.0, jitter_s=0.0)
        assert [policy.compute_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 4.0, 4.0]

    def test_jitter_is_added(self):
        policy = RetryPolicy(base_delay_s=1.0, max_delay_s=4.0, jitter_s=0.25)
        assert policy.compute_delay(0, rand=lambda: 1.0) == pytest.approx(1.25)
        assert policy.compute_delay(0, rand=lambda: 0.0) == pytest.approx(1.0)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    @pytest.mark.parametrize(
        ("exc", "expected"),
        [
            (UpstreamError("5xx"), True),
            (UpstreamTimeoutError(30.0), True),
            (UpstreamError("4xx", upstream_status=400, retryable=False), False),
            (InvalidInputError("bad"), False),
            (KeyError("plain"), False),
        ],
    )
    def test_is_retryable(self, exc, expected):
        assert RetryPolicy.is_retryable(exc) is expected
