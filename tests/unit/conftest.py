"""Shared fixtures: a controllable clock, a scripted provider, and wired components."""

import copy
import json

import httpx
import pytest

from tutorflow.api.middleware.cache import ResponseCache
from tutorflow.api.middleware.intent import IntentDetector
from tutorflow.api.middleware.orchestrator import TutorOrchestrator
from tutorflow.api.middleware.prompts import PromptBuilder
from tutorflow.api.middleware.quality import QualityAssessor
from tutorflow.core.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from tutorflow.core.rate_limiter import RateLimitTier, TierLimits, TokenBucketRateLimiter
from tutorflow.core.retry import RetryPolicy
from tutorflow.infra.telemetry.metrics import PipelineMetrics
from tutorflow.infra.upstream import UpstreamClient

BASE_URL = "https://llm.test"
API_KEY = "sk-test"

VALID_ANSWER = {
    "title": "Recursion",
    "tldr": "A function that solves a problem by calling itself on a smaller input.",
    "sections": [
        {
            "heading": "Base case",
            "body": "Every recursive function needs a condition that stops the recursion.",
            "code": [
                {
                    "language": "python",
                    "content": "def fact(n):\n    return 1 if n <= 1 else n * fact(n - 1)",
                    "caption": "Factorial",
                }
            ],
        },
        {
            "heading": "Recursive step",
            "body": "Reduce the problem, then call the function again on the smaller piece.",
        },
    ],
    "references": [],
}


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def chat_completion(content: str, *, model: str = "deepseek-chat") -> dict:
    return {
        "id": "cmpl-test",
        "object": "chat.completion",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 42, "completion_tokens": 128, "total_tokens": 170},
    }


class FakeProvider:
    """
    MockTransport handler replaying scripted replies; the last one repeats.

    A reply may be a str (assistant text), a dict (returned as the JSON
    body), an int (HTTP status), an httpx.Response, or an exception to raise.
    """

    def __init__(self, *replies):
        self.replies = list(replies) or [json.dumps(VALID_ANSWER)]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        if isinstance(reply, int):
            return httpx.Response(reply, json={"error": {"message": "provider failure"}})
        if isinstance(reply, dict):
            return httpx.Response(200, json=reply)
        return httpx.Response(200, json=chat_completion(reply))

    @property
    def call_count(self) -> int:
        return len(self.requests)

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def answer_payload():
    return copy.deepcopy(VALID_ANSWER)


@pytest.fixture
def answer_json():
    return json.dumps(VALID_ANSWER)


@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture
def make_upstream(clock):
    """Build an UpstreamClient over a FakeProvider with no real backoff."""

    def _make(
        provider,
        *,
        failure_threshold: int = 5,
        cooldown_s: float = 30.0,
        max_attempts: int = 3,
        capacity: int = 1000,
        refill_per_second: float = 0.0,
        metrics: PipelineMetrics | None = None,
    ) -> UpstreamClient:
        limits = TierLimits(capacity=capacity, refill_per_second=refill_per_second)
        return UpstreamClient(
            BASE_URL,
            API_KEY,
            rate_limiter=TokenBucketRateLimiter(
                {tier: limits for tier in RateLimitTier}, clock=clock
            ),
            breakers=CircuitBreakerRegistry(
                CircuitBreakerConfig(failure_threshold=failure_threshold, cooldown_s=cooldown_s),
                clock=clock,
            ),
            retry_policy=RetryPolicy(
                max_attempts=max_attempts, base_delay_s=0.0, max_delay_s=0.0, jitter_s=0.0
            ),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(provider)),
            metrics=metrics if metrics is not None else PipelineMetrics(),
        )

    return _make


@pytest.fixture
def make_orchestrator(make_upstream, clock):
    """Build a TutorOrchestrator whose cache runs on the fake clock."""

    def _make(
        provider,
        *,
        max_history: int = 10,
        max_task_length: int = 4000,
        strict_free_chat: bool = False,
        **upstream_kwargs,
    ) -> TutorOrchestrator:
        upstream = make_upstream(provider, **upstream_kwargs)
        return TutorOrchestrator(
            upstream,
            intent_detector=IntentDetector(strict_free_chat=strict_free_chat),
            prompt_builder=PromptBuilder(max_history=max_history),
            cache=ResponseCache(capacity=100, clock=clock),
            assessor=QualityAssessor(),
            metrics=upstream.metrics,
            max_task_length=max_task_length,
            max_history=max_history,
        )

    return _make
