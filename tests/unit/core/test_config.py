"""
Unit tests for Settings validation and defaults.
"""

import pytest
from pydantic import ValidationError

from crave_pipeline.core.config import OperationRateLimit, Settings


@pytest.fixture
def clean_env(monkeypatch):
    """Remove variables that would override defaults."""
    for name in (
        "RATE_LIMIT_GOOGLE_PLACES_RPM",
        "RESOLUTION_FUZZY_THRESHOLD",
        "WORKER_CONCURRENCY",
        "LLM_PROVIDER",
        "RATE_LIMIT_OPERATION_OVERRIDES",
    ):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    """Tests for documented defaults."""

    def test_core_defaults(self, clean_env):
        config = Settings(_env_file=None)

        assert config.RATE_LIMIT_GOOGLE_PLACES_RPM == 50
        assert config.RATE_LIMIT_REDDIT_API_RPM == 100
        assert config.DEDUP_MAX_TIME_DIFFERENCE_SECONDS == 3600
        assert config.DEDUP_MAX_BATCH_SIZE == 10000
        assert config.DEDUP_CACHE_SIZE == 50000
        assert config.LLM_TIMEOUT_SECONDS == 30
        assert config.LLM_MAX_RETRIES == 3
        assert config.LLM_THINKING_ENABLED is False
        assert config.WORKER_CONCURRENCY == 5


class TestValidation:
    """Tests for fail-fast validation at startup."""

    def test_rejects_non_positive_rpm(self, clean_env, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_GOOGLE_PLACES_RPM", "0")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_rejects_threshold_out_of_range(self, clean_env, monkeypatch):
        monkeypatch.setenv("RESOLUTION_FUZZY_THRESHOLD", "1.5")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_rejects_unknown_provider(self, clean_env, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "llama")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_operation_overrides_parse_from_json(self, clean_env, monkeypatch):
        """Per-operation overrides are a JSON mapping of scope -> limits."""
        monkeypatch.setenv(
            "RATE_LIMIT_OPERATION_OVERRIDES",
            '{"google-places:textsearch": {"requests_per_minute": 10}}',
        )

        config = Settings(_env_file=None)

        override = config.RATE_LIMIT_OPERATION_OVERRIDES["google-places:textsearch"]
        assert isinstance(override, OperationRateLimit)
        assert override.requests_per_minute == 10
