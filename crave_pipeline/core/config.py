"""
Configuration management for the Crave ingestion pipeline.

Uses pydantic-settings to load configuration from environment variables
with sensible defaults for development. Structural constraints are checked
once at startup; values that are only required by a specific component
(e.g. the LLM API key) are checked when that component is constructed.
"""

from typing import Dict, Literal, Optional

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OperationRateLimit(BaseModel):
    """Per-operation override for a service rate limit."""

    requests_per_minute: int
    requests_per_hour: Optional[int] = None
    requests_per_day: Optional[int] = None
    requests_per_second: Optional[int] = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    LOG_LEVEL: str = "INFO"

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379/0"

    # ==========================================================================
    # Rate Limiting Configuration
    # One-minute windows per external service; hour/day caps only apply when set
    # ==========================================================================

    RATE_LIMIT_BACKEND: Literal["memory", "redis"] = "memory"
    RATE_LIMIT_KEY_PREFIX: str = "crave_ratelimit"

    RATE_LIMIT_GOOGLE_PLACES_RPM: int = 50
    RATE_LIMIT_GOOGLE_PLACES_RPS: Optional[int] = None
    RATE_LIMIT_GOOGLE_PLACES_PER_DAY: Optional[int] = None

    RATE_LIMIT_REDDIT_API_RPM: int = 100
    RATE_LIMIT_REDDIT_API_RPS: Optional[int] = None
    RATE_LIMIT_REDDIT_API_PER_DAY: Optional[int] = None

    RATE_LIMIT_LLM_API_RPM: int = 60
    RATE_LIMIT_LLM_API_RPS: Optional[int] = None
    RATE_LIMIT_LLM_API_PER_DAY: Optional[int] = None

    # JSON mapping of "service:operation" -> override, e.g.
    # {"google-places:details": {"requests_per_minute": 20}}
    RATE_LIMIT_OPERATION_OVERRIDES: Dict[str, OperationRateLimit] = {}

    # ==========================================================================
    # Duplicate Detection Configuration
    # ==========================================================================

    DEDUP_MAX_TIME_DIFFERENCE_SECONDS: int = 3600  # Clock-skew tolerance
    DEDUP_MAX_BATCH_SIZE: int = 10000
    DEDUP_CACHE_SIZE: int = 50000
    DEDUP_MISSING_ID_STRATEGY: Literal["skip", "error", "fallback"] = "skip"
    DEDUP_ENABLE_SOURCE_OVERLAP_ANALYSIS: bool = True
    DEDUP_ENABLE_PERFORMANCE_TRACKING: bool = True

    # ==========================================================================
    # LLM Extraction Configuration
    # ==========================================================================

    LLM_PROVIDER: Literal["gemini", "openai"] = "gemini"
    LLM_API_KEY: str = ""  # Required - set via environment variable
    LLM_MODEL: str = "gemini-2.5-flash"
    LLM_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    LLM_TIMEOUT_SECONDS: float = 30.0
    LLM_MAX_OUTPUT_TOKENS: int = 65536
    LLM_TEMPERATURE: float = 0.1
    LLM_TOP_P: float = 0.95
    LLM_TOP_K: int = 40
    LLM_THINKING_ENABLED: bool = False
    LLM_THINKING_BUDGET: int = 0
    LLM_SYSTEM_PROMPT_PATH: Optional[str] = None

    # Retry policy for retryable LLM failures (rate limit, network, 5xx)
    LLM_MAX_RETRIES: int = 3
    LLM_RETRY_BASE_DELAY: float = 1.0  # Seconds
    LLM_RETRY_BACKOFF_FACTOR: float = 2.0
    LLM_RETRY_MAX_DELAY: float = 60.0
    LLM_RETRY_JITTER: float = 0.1

    # ==========================================================================
    # Entity Resolution Configuration
    # ==========================================================================

    RESOLUTION_FUZZY_THRESHOLD: float = 0.75  # Minimum bigram Dice similarity
    RESOLUTION_MAX_EDIT_DISTANCE: int = 3  # Maximum Levenshtein distance
    RESOLUTION_AMBIGUITY_MARGIN: float = 0.02
    RESOLUTION_MAX_ALIAS_LENGTH: int = 255

    # Subreddit -> coverage/location key used to scope restaurant names
    COVERAGE_SCOPES: Dict[str, str] = {
        "austinfood": "austin",
        "foodnyc": "nyc",
    }

    # ==========================================================================
    # Worker / Job Queue Configuration
    # ==========================================================================

    WORKER_CONCURRENCY: int = 5
    WORKER_MAX_FINISHED_JOBS: int = 1000  # Finished job statuses kept for lookup
    JOB_TIMEOUT_SECONDS: float = 300.0

    # Celery Configuration
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"
    CELERY_TASK_MAX_RETRIES: int = 3

    @field_validator(
        "RATE_LIMIT_GOOGLE_PLACES_RPM",
        "RATE_LIMIT_REDDIT_API_RPM",
        "RATE_LIMIT_LLM_API_RPM",
        "DEDUP_MAX_BATCH_SIZE",
        "DEDUP_CACHE_SIZE",
        "WORKER_CONCURRENCY",
        "WORKER_MAX_FINISHED_JOBS",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("DEDUP_MAX_TIME_DIFFERENCE_SECONDS", "LLM_MAX_RETRIES")
    @classmethod
    def must_be_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @field_validator("RESOLUTION_FUZZY_THRESHOLD")
    @classmethod
    def threshold_in_range(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("RESOLUTION_FUZZY_THRESHOLD must be in (0.0, 1.0]")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
