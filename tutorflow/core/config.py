"""Application configuration.

All tunables live on ``Settings`` and are read from the environment (or a
``.env`` file) by pydantic-settings. Component constructors never read the
environment themselves; the builder helpers below translate settings into
the plain config objects each component accepts.
"""

import math
from functools import lru_cache
from typing import TYPE_CHECKING

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from tutorflow.api.middleware.quality import QualityWeights
    from tutorflow.core.circuit_breaker import CircuitBreakerConfig
    from tutorflow.core.rate_limiter import RateLimitTier, TierLimits
    from tutorflow.core.retry import RetryPolicy


class Settings(BaseSettings):
    """TutorFlow settings. Field names double as environment variable names."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "TutorFlow"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    API_PREFIX: str = "/api/v1"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool | None = None
    LOG_DIR: str | None = None

    # Upstream provider
    UPSTREAM_BASE_URL: str = "https://api.deepseek.com"
    UPSTREAM_API_KEY: SecretStr = SecretStr("")
    UPSTREAM_CHAT_PATH: str = "/v1/chat/completions"
    UPSTREAM_MODEL: str = "deepseek-chat"
    UPSTREAM_TIMEOUT_S: float = Field(default=30.0, gt=0)

    # Rate limiting (capacity = burst size)
    RATE_LIMIT_LOW_CAPACITY: int = Field(default=3, ge=1)
    RATE_LIMIT_LOW_PER_MINUTE: float = Field(default=15.0, ge=0)
    RATE_LIMIT_NORMAL_CAPACITY: int = Field(default=5, ge=1)
    RATE_LIMIT_NORMAL_PER_MINUTE: float = Field(default=30.0, ge=0)
    RATE_LIMIT_HIGH_CAPACITY: int = Field(default=10, ge=1)
    RATE_LIMIT_HIGH_PER_MINUTE: float = Field(default=60.0, ge=0)

    # Circuit breaker
    BREAKER_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    BREAKER_COOLDOWN_S: float = Field(default=30.0, ge=0)

    # Retry
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BASE_DELAY_S: float = Field(default=0.5, ge=0)
    RETRY_MAX_DELAY_S: float = Field(default=8.0, ge=0)
    RETRY_JITTER_S: float = Field(default=0.25, ge=0)

    # Cache
    CACHE_CAPACITY: int = Field(default=500, ge=1)
    CACHE_TTL_LONG_S: float = Field(default=3600.0, ge=0)
    CACHE_TTL_MEDIUM_S: float = Field(default=1800.0, ge=0)
    CACHE_TTL_SHORT_S: float = Field(default=300.0, ge=0)

    # Quality gate
    QUALITY_WEIGHT_TITLE: float = Field(default=0.25, ge=0)
    QUALITY_WEIGHT_SUMMARY: float = Field(default=0.25, ge=0)
    QUALITY_WEIGHT_HEADERS: float = Field(default=0.25, ge=0)
    QUALITY_WEIGHT_FENCES: float = Field(default=0.25, ge=0)
    QUALITY_MIN_HEADERS: int = Field(default=3, ge=0)
    QUALITY_THRESHOLD_VERY_HIGH: float = Field(default=0.9, ge=0, le=1)
    QUALITY_THRESHOLD_HIGH: float = Field(default=0.75, ge=0, le=1)
    QUALITY_THRESHOLD_MODERATE: float = Field(default=0.5, ge=0, le=1)

    # Pipeline
    MAX_TASK_LENGTH: int = Field(default=4000, ge=1)
    MAX_HISTORY_MESSAGES: int = Field(default=10, ge=0)
    STRICT_FREE_CHAT: bool = False
    MODEL_PARAMETER_OVERRIDES: dict[str, dict[str, float]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_quality_config(self) -> "Settings":
        total = (
            self.QUALITY_WEIGHT_TITLE
            + self.QUALITY_WEIGHT_SUMMARY
            + self.QUALITY_WEIGHT_HEADERS
            + self.QUALITY_WEIGHT_FENCES
        )
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"QUALITY_WEIGHT_* must sum to 1.0 (got {total:.4f})")
        if not (
            self.QUALITY_THRESHOLD_VERY_HIGH
            >= self.QUALITY_THRESHOLD_HIGH
            >= self.QUALITY_THRESHOLD_MODERATE
        ):
            raise ValueError("QUALITY_THRESHOLD_* must be non-increasing")
        return self

    # ── Builders ──────────────────────────────────────────────────

    def rate_limit_tiers(self) -> "dict[RateLimitTier, TierLimits]":
        from tutorflow.core.rate_limiter import RateLimitTier, TierLimits

        return {
            RateLimitTier.LOW: TierLimits.per_minute(
                self.RATE_LIMIT_LOW_CAPACITY, self.RATE_LIMIT_LOW_PER_MINUTE
            ),
            RateLimitTier.NORMAL: TierLimits.per_minute(
                self.RATE_LIMIT_NORMAL_CAPACITY, self.RATE_LIMIT_NORMAL_PER_MINUTE
            ),
            RateLimitTier.HIGH: TierLimits.per_minute(
                self.RATE_LIMIT_HIGH_CAPACITY, self.RATE_LIMIT_HIGH_PER_MINUTE
            ),
        }

    def breaker_config(self) -> "CircuitBreakerConfig":
        from tutorflow.core.circuit_breaker import CircuitBreakerConfig

        return CircuitBreakerConfig(
            failure_threshold=self.BREAKER_FAILURE_THRESHOLD,
            cooldown_s=self.BREAKER_COOLDOWN_S,
        )

    def retry_policy(self) -> "RetryPolicy":
        from tutorflow.core.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.RETRY_MAX_ATTEMPTS,
            base_delay_s=self.RETRY_BASE_DELAY_S,
            max_delay_s=self.RETRY_MAX_DELAY_S,
            jitter_s=self.RETRY_JITTER_S,
        )

    def quality_weights(self) -> "QualityWeights":
        from tutorflow.api.middleware.quality import QualityWeights

        return QualityWeights(
            title=self.QUALITY_WEIGHT_TITLE,
            summary=self.QUALITY_WEIGHT_SUMMARY,
            headers=self.QUALITY_WEIGHT_HEADERS,
            fences=self.QUALITY_WEIGHT_FENCES,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
