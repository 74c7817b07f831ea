"""Unit tests for core configuration."""

import pytest
from pydantic import ValidationError

from tutorflow.core.config import Settings, get_settings
from tutorflow.core.rate_limiter import RateLimitTier


def test_settings_defaults():
    """Test settings are initialized with the documented defaults."""
    settings = Settings()
    assert settings.APP_NAME == "TutorFlow"
    assert settings.API_PREFIX == "/api/v1"
    assert settings.UPSTREAM_MODEL == "deepseek-chat"
    assert settings.MAX_HISTORY_MESSAGES == 10


def test_get_settings_is_cached():
    assert get_settings() is get_settings()


def test_environment_overrides(monkeypatch):
    """Field names double as environment variable names."""
    monkeypatch.setenv("BREAKER_FAILURE_THRESHOLD", "7")
    monkeypatch.setenv("UPSTREAM_TIMEOUT_S", "12.5")
    monkeypatch.setenv("MODEL_PARAMETER_OVERRIDES", '{"explanation": {"temperature": 0.1}}')
    settings = Settings()
    assert settings.breaker_config().failure_threshold == 7
    assert settings.UPSTREAM_TIMEOUT_S == 12.5
    assert settings.MODEL_PARAMETER_OVERRIDES == {"explanation": {"temperature": 0.1}}


def test_api_key_is_secret(monkeypatch):
    monkeypatch.setenv("UPSTREAM_API_KEY", "sk-very-secret")
    settings = Settings()
    assert "sk-very-secret" not in repr(settings)
    assert settings.UPSTREAM_API_KEY.get_secret_value() == "sk-very-secret"


def test_quality_weights_must_sum_to_one():
    with pytest.raises(ValidationError):
        Settings(QUALITY_WEIGHT_TITLE=0.9)


def test_quality_thresholds_must_be_ordered():
    with pytest.raises(ValidationError):
        Settings(QUALITY_THRESHOLD_HIGH=0.95)


def test_non_positive_values_rejected():
    with pytest.raises(ValidationError):
        Settings(CACHE_CAPACITY=0)


def test_rate_limit_tiers_builder():
    tiers = Settings(RATE_LIMIT_HIGH_CAPACITY=20, RATE_LIMIT_HIGH_PER_MINUTE=120).rate_limit_tiers()
    assert set(tiers) == set(RateLimitTier)
    assert tiers[RateLimitTier.HIGH].capacity == 20
    assert tiers[RateLimitTier.HIGH].refill_per_second == pytest.approx(2.0)


def test_retry_policy_builder():
    policy = Settings(RETRY_MAX_ATTEMPTS=4, RETRY_JITTER_S=0.0).retry_policy()
    assert policy.max_attempts == 4
    assert policy.jitter_s == 0.0


def test_quality_weights_builder():
    weights = Settings(
        QUALITY_WEIGHT_TITLE=0.4,
        QUALITY_WEIGHT_SUMMARY=0.2,
        QUALITY_WEIGHT_HEADERS=0.2,
        QUALITY_WEIGHT_FENCES=0.2,
    ).quality_weights()
    assert weights.title == 0.4
