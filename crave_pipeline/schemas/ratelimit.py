"""
Pydantic schemas for rate limit coordination.

RateLimitConfig is frozen: once the coordinator is built from settings, the
limits for a scope cannot change without constructing a new coordinator.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ExternalApiService(str, Enum):
    """Third-party services whose call rate is coordinated."""

    GOOGLE_PLACES = "google-places"
    REDDIT_API = "reddit-api"
    LLM_API = "llm-api"


class RateLimitConfig(BaseModel):
    """Request limits for one (service) or (service, operation) scope.

    Only requests_per_minute is always enforced. Second, hour and day caps
    are enforced as additional windows when set.
    """

    model_config = ConfigDict(frozen=True)

    requests_per_minute: int = Field(..., gt=0)
    requests_per_second: int | None = Field(None, gt=0)
    requests_per_hour: int | None = Field(None, gt=0)
    requests_per_day: int | None = Field(None, gt=0)


class RateLimitResponse(BaseModel):
    """Result of a permission request."""

    allowed: bool
    current_usage: int
    limit: int
    reset_time: datetime
    retry_after: int | None = Field(
        None, description="Seconds to wait before retrying (set when denied)"
    )


class RateLimitStatus(BaseModel):
    """Snapshot of a scope's current minute window."""

    service: str
    operation: str | None = None
    configured: bool = True
    current_requests: int
    limit: int
    reset_time: datetime
    is_at_limit: bool
    retry_after: int | None = None
