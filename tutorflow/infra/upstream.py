"""
Upstream Client
===============

The only component that performs network I/O. One call flows through:

    rate limiter ─▶ circuit breaker ─▶ retry policy ─▶ HTTP POST ─▶ breaker outcome

Speaks the OpenAI-compatible chat-completions protocol over httpx
(DeepSeek by default). Returns the raw assistant text, or raises one of
RateLimitedError, CircuitOpenError, UpstreamError or UpstreamTimeoutError.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from tutorflow.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from tutorflow.core.exceptions import (
    CircuitOpenError,
    RateLimitedError,
    UpstreamError,
    UpstreamTimeoutError,
)
from tutorflow.core.rate_limiter import RateLimitTier, TokenBucketRateLimiter
from tutorflow.core.retry import RetryPolicy
from tutorflow.infra.telemetry.logger import get_logger
from tutorflow.infra.telemetry.metrics import PipelineMetrics

logger = get_logger(__name__)

# ── Data Contracts ───────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: str       # system | user | assistant
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

@dataclass(frozen=True, slots=True)
class SamplingParameters:
    temperature: float = 0.7
    top_p: float = 1.0
    max_tokens: int = 4000

    def __post_init__(self) -> None:
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError("temperature must be within [0, 2]")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError("top_p must be within (0, 1]")
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")

@dataclass(frozen=True, slots=True)
class UpstreamResponse:
    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0
    attempts: int = 1
    finish_reason: str | None = None

def _token_count(value: Any) -> int:
    """Usage counters are informational; anything unparseable counts as 0."""
    if isinstance(value, bool):
        return 0
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError, OverflowError):
        return 0

# ── Client ───────────────────────────────────────────────────────────────────

class UpstreamClient:
    """
    Resilient chat-completions client.

    Usage:
        client = UpstreamClient(
            base_url="https://api.deepseek.com",
            api_key="sk-...",
            rate_limiter=TokenBucketRateLimiter(),
            breakers=CircuitBreakerRegistry(),
            retry_policy=RetryPolicy(),
        )
        response = await client.complete("deepseek-chat", messages, SamplingParameters())
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        rate_limiter: TokenBucketRateLimiter | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        chat_path: str = "/v1/chat/completions",
        timeout_s: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        metrics: PipelineMetrics | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.chat_path = "/" + chat_path.lstrip("/")
        self.timeout_s = timeout_s
        self.rate_limiter = rate_limiter or TokenBucketRateLimiter()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics

        self._api_key = api_key
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_s)

    @property
    def endpoint(self) -> str:
        """Breaker key: one breaker per upstream endpoint."""
        return f"{self.base_url}{self.chat_path}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # ── Main Entry Point ─────────────────────────────────────────────

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        parameters: SamplingParameters,
        *,
        caller_key: str = "anonymous",
        tier: RateLimitTier | str = RateLimitTier.NORMAL,
        json_mode: bool = True,
    ) -> UpstreamResponse:
        """Run one admitted, breaker-guarded, retried completion call."""
        if not self.rate_limiter.allow(caller_key, tier):
            if self.metrics:
                self.metrics.record_rate_limited(str(tier))
            raise RateLimitedError(caller_key, str(tier))

        breaker = self.breakers.get(self.endpoint)
        if not breaker.can_proceed():
            if self.metrics:
                self.metrics.record_circuit_rejection()
            logger.warning("upstream_circuit_rejected", endpoint=self.endpoint)
            raise CircuitOpenError(self.endpoint, breaker.retry_after())

        body = self._build_body(model, messages, parameters, json_mode)
        t0 = time.perf_counter()

        try:
            outcome = await self.retry_policy.execute(
                lambda: self._post(body),
                name="upstream_completion",
                on_retry=self._on_retry,
            )
        except Exception as exc:
            # The breaker admitted this call, so it must see an outcome.
            breaker.record_failure()
            self._record(breaker, "INTERNAL_ERROR", time.perf_counter() - t0, None)
            logger.error("upstream_unexpected_error", exc=exc, endpoint=self.endpoint)
            raise UpstreamError(
                f"Unexpected error handling provider response: {exc}",
                retryable=False,
                original_error=exc,
            ) from exc
        latency_s = time.perf_counter() - t0

        if outcome.ok:
            breaker.record_success()
            response = outcome.unwrap()
            response = UpstreamResponse(
                text=response.text,
                model=response.model,
                prompt_tokens=response.prompt_tokens,
                completion_tokens=response.completion_tokens,
                latency_ms=round(latency_s * 1000, 2),
                attempts=outcome.attempts,
                finish_reason=response.finish_reason,
            )
            self._record(breaker, "success", latency_s, response)
            logger.info(
                "upstream_completed",
                model=response.model,
                attempts=outcome.attempts,
                latency_ms=response.latency_ms,
                completion_tokens=response.completion_tokens,
            )
            return response

        breaker.record_failure()
        error = outcome.error
        code = getattr(error, "error_code", type(error).__name__)
        self._record(breaker, code, latency_s, None)
        logger.warning(
            "upstream_failed",
            endpoint=self.endpoint,
            attempts=outcome.attempts,
            error_code=code,
        )
        return outcome.unwrap()

    # ── Internals ────────────────────────────────────────────────────

    def _on_retry(self, attempt: int, exc: BaseException, delay: float) -> None:
        if self.metrics:
            self.metrics.record_retry()

    def _record(
        self, breaker: CircuitBreaker, status: str, latency_s: float, response: UpstreamResponse | None
    ) -> None:
        if not self.metrics:
            return
        self.metrics.record_upstream(
            status=status,
            latency_s=latency_s,
            prompt_tokens=response.prompt_tokens if response else 0,
            completion_tokens=response.completion_tokens if response else 0,
        )
        self.metrics.record_circuit_state(self.endpoint, breaker.state)

    @staticmethod
    def _build_body(
        model: str,
        messages: Sequence[ChatMessage],
        parameters: SamplingParameters,
        json_mode: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "temperature": parameters.temperature,
            "top_p": parameters.top_p,
            "max_tokens": parameters.max_tokens,
            "stream": False,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _post(self, body: dict[str, Any]) -> UpstreamResponse:
        """One network attempt, with httpx failures mapped onto the error taxonomy."""
        try:
            response = await self._http.post(
                self.endpoint,
                json=body,
                headers=self._headers(),
                timeout=self.timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(self.timeout_s, original_error=exc) from exc
        except httpx.TransportError as exc:
            raise UpstreamError(
                f"Network error calling provider: {exc}",
                retryable=True,
                original_error=exc,
            ) from exc

        status = response.status_code
        if status >= 500:
            raise UpstreamError(
                f"Provider returned HTTP {status}", upstream_status=status, retryable=True
            )
        if status >= 400:
            raise UpstreamError(
                f"Provider rejected request with HTTP {status}: {response.text[:200]}",
                upstream_status=status,
                retryable=False,
            )

        try:
            data = response.json()
            choice = data["choices"][0]
            text = choice["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamError(
                "Provider response did not match the chat-completions envelope",
                upstream_status=status,
                retryable=False,
                original_error=exc,
            ) from exc

        if not isinstance(text, str):
            raise UpstreamError(
                "Provider returned non-text message content",
                upstream_status=status,
                retryable=False,
            )

        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        model = data.get("model")
        finish_reason = choice.get("finish_reason")
        return UpstreamResponse(
            text=text,
            model=model if isinstance(model, str) and model else body["model"],
            prompt_tokens=_token_count(usage.get("prompt_tokens")),
            completion_tokens=_token_count(usage.get("completion_tokens")),
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
        )
