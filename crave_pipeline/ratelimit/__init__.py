"""
Rate limit coordination for external API calls.

Example:
    from crave_pipeline.ratelimit import get_rate_limit_coordinator

    coordinator = get_rate_limit_coordinator()
    response = await coordinator.request_permission("llm-api")
"""

from crave_pipeline.ratelimit.coordinator import (
    RateLimitCoordinator,
    build_rate_limit_configs,
    create_rate_limit_store,
    get_rate_limit_coordinator,
    reset_rate_limit_coordinator,
)
from crave_pipeline.ratelimit.store import (
    InMemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
    WindowSpec,
)

__all__ = [
    "RateLimitCoordinator",
    "build_rate_limit_configs",
    "create_rate_limit_store",
    "get_rate_limit_coordinator",
    "reset_rate_limit_coordinator",
    "InMemoryRateLimitStore",
    "RateLimitStore",
    "RedisRateLimitStore",
    "WindowSpec",
]
