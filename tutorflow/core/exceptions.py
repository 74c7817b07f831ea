"""Custom exception classes for TutorFlow.

Includes:
- Base exception carrying an HTTP status and a stable error code
- Fail-fast errors (invalid input, rate limiting, open circuit)
- Transient upstream errors consumed by the retry policy
- Post-response errors that the pipeline absorbs into the safe default
"""

from datetime import UTC, datetime
from typing import Any


class TutorFlowError(Exception):
    """Base exception for all TutorFlow errors."""

    retryable: bool = False

    def __init__(
        self, detail: str, status_code: int = 500, error_code: str = "INTERNAL_ERROR"
    ):
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": self.error_code,
            "detail": self.detail,
            "status_code": self.status_code,
            "timestamp": self.timestamp,
        }


class InvalidInputError(TutorFlowError):
    """Raised when a request fails input validation."""

    def __init__(self, detail: str, field: str | None = None):
        super().__init__(detail=detail, status_code=422, error_code="INVALID_INPUT")
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        if self.field:
            base["field"] = self.field
        return base


class RateLimitedError(TutorFlowError):
    """Raised when the caller's token bucket is empty."""

    def __init__(self, key: str, tier: str):
        super().__init__(
            detail=f"Rate limit exceeded for tier '{tier}'",
            status_code=429,
            error_code="RATE_LIMITED",
        )
        self.key = key
        self.tier = tier


class CircuitOpenError(TutorFlowError):
    """Raised when the upstream circuit is open. No network call was made."""

    def __init__(self, endpoint: str, retry_after_s: float = 0.0):
        super().__init__(
            detail=f"Circuit open for {endpoint}",
            status_code=503,
            error_code="CIRCUIT_OPEN",
        )
        self.endpoint = endpoint
        self.retry_after_s = retry_after_s

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["retry_after_s"] = round(self.retry_after_s, 3)
        return base


# =============================================================================
# UPSTREAM EXCEPTIONS (with retry support)
# =============================================================================


class UpstreamError(TutorFlowError):
    """Provider call failed. Transient when caused by the network or a 5xx."""

    def __init__(
        self,
        detail: str,
        upstream_status: int | None = None,
        retryable: bool = True,
        original_error: Exception | None = None,
        status_code: int = 502,
        error_code: str = "UPSTREAM_ERROR",
    ):
        super().__init__(detail=detail, status_code=status_code, error_code=error_code)
        self.upstream_status = upstream_status
        self.retryable = retryable
        self.original_error = original_error

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["retryable"] = self.retryable
        if self.upstream_status is not None:
            base["upstream_status"] = self.upstream_status
        return base


class UpstreamTimeoutError(UpstreamError):
    """Provider call exceeded the configured timeout."""

    def __init__(
        self,
        timeout_s: float,
        original_error: Exception | None = None,
    ):
        super().__init__(
            detail=f"Upstream call timed out after {timeout_s:g}s",
            retryable=True,
            original_error=original_error,
            status_code=504,
            error_code="UPSTREAM_TIMEOUT",
        )
        self.timeout_s = timeout_s


# =============================================================================
# POST-RESPONSE EXCEPTIONS (absorbed by the pipeline)
# =============================================================================


class MalformedOutputError(TutorFlowError):
    """Model text contained no parseable JSON object."""

    def __init__(self, raw_text: str, detail: str = "No JSON object found in model output"):
        super().__init__(detail=detail, status_code=500, error_code="MALFORMED_OUTPUT")
        self.raw_text = raw_text


class SchemaInvalidError(TutorFlowError):
    """A candidate object failed response-structure validation."""

    def __init__(self, detail: str, errors: list[str] | None = None):
        super().__init__(detail=detail, status_code=500, error_code="SCHEMA_INVALID")
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["errors"] = self.errors
        return base


class PipelineInternalError(TutorFlowError):
    """A pipeline stage broke its own contract. Surfaced as a typed 500."""

    def __init__(self, detail: str, stage: str | None = None):
        super().__init__(detail=detail, status_code=500, error_code="INTERNAL_ERROR")
        self.stage = stage

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        if self.stage:
            base["stage"] = self.stage
        return base
