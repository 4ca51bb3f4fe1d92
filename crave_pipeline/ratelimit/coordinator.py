"""
Rate limit coordinator for outbound third-party API calls.

Every call to an external service (Google Places, Reddit, the LLM provider)
asks the coordinator for permission first. Limits are counted in windows
aligned to the epoch (a minute, plus a second, an hour and a day when
configured), per scope, where a scope is either
``service`` or ``service:operation``. Operation-level configuration takes
precedence over the service-level one.

A scope with no configuration is treated as unlimited and logged as a
configuration warning, so a missing entry never blocks the pipeline.
"""

import logging
import math
import time
from collections.abc import Callable
from datetime import UTC, datetime

from crave_pipeline.core.config import Settings, settings
from crave_pipeline.observability import (
    rate_limit_decisions_total,
    rate_limit_hits_reported_total,
)
from crave_pipeline.ratelimit.store import (
    InMemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
    WindowSpec,
)
from crave_pipeline.schemas.ratelimit import (
    ExternalApiService,
    RateLimitConfig,
    RateLimitResponse,
    RateLimitStatus,
)

logger = logging.getLogger(__name__)

SECOND = 1
MINUTE = 60
HOUR = 60 * 60
DAY = 24 * 60 * 60


def _service_name(service: ExternalApiService | str) -> str:
    return service.value if isinstance(service, ExternalApiService) else str(service)


def build_rate_limit_configs(config: Settings) -> dict[str, RateLimitConfig]:
    """Build the per-scope limits from settings.

    Args:
        config: Loaded application settings

    Returns:
        Mapping of scope key ("service" or "service:operation") to its limits
    """
    configs = {
        ExternalApiService.GOOGLE_PLACES.value: RateLimitConfig(
            requests_per_minute=config.RATE_LIMIT_GOOGLE_PLACES_RPM,
            requests_per_second=config.RATE_LIMIT_GOOGLE_PLACES_RPS,
            requests_per_day=config.RATE_LIMIT_GOOGLE_PLACES_PER_DAY,
        ),
        ExternalApiService.REDDIT_API.value: RateLimitConfig(
            requests_per_minute=config.RATE_LIMIT_REDDIT_API_RPM,
            requests_per_second=config.RATE_LIMIT_REDDIT_API_RPS,
            requests_per_day=config.RATE_LIMIT_REDDIT_API_PER_DAY,
        ),
        ExternalApiService.LLM_API.value: RateLimitConfig(
            requests_per_minute=config.RATE_LIMIT_LLM_API_RPM,
            requests_per_second=config.RATE_LIMIT_LLM_API_RPS,
            requests_per_day=config.RATE_LIMIT_LLM_API_PER_DAY,
        ),
    }
    for scope, override in config.RATE_LIMIT_OPERATION_OVERRIDES.items():
        configs[scope] = RateLimitConfig(**override.model_dump())
    return configs


class RateLimitCoordinator:
    """Coordinates request rates to external services.

    Example:
        coordinator = RateLimitCoordinator(configs={"google-places": RateLimitConfig(requests_per_minute=50)})
        response = await coordinator.request_permission("google-places")
        if not response.allowed:
            await asyncio.sleep(response.retry_after)
    """

    def __init__(
        self,
        configs: dict[str, RateLimitConfig] | None = None,
        store: RateLimitStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the coordinator.

        Args:
            configs: Scope key -> limits. Defaults to limits built from settings.
            store: Counter store. Defaults to an in-memory store.
            clock: Wall-clock source in epoch seconds (injectable for tests)
        """
        self._configs = dict(configs) if configs is not None else build_rate_limit_configs(settings)
        self._store = store or InMemoryRateLimitStore()
        self._clock = clock

        logger.info(
            "RateLimitCoordinator initialized",
            extra={
                "scopes": sorted(self._configs),
                "store": type(self._store).__name__,
            },
        )

    def _resolve_scope(
        self, service: str, operation: str | None
    ) -> tuple[str, RateLimitConfig | None]:
        if operation:
            scope = f"{service}:{operation}"
            if scope in self._configs:
                return scope, self._configs[scope]
        return service, self._configs.get(service)

    @staticmethod
    def _windows(config: RateLimitConfig) -> list[WindowSpec]:
        windows = [WindowSpec("minute", MINUTE, config.requests_per_minute)]
        if config.requests_per_second:
            windows.append(WindowSpec("second", SECOND, config.requests_per_second))
        if config.requests_per_hour:
            windows.append(WindowSpec("hour", HOUR, config.requests_per_hour))
        if config.requests_per_day:
            windows.append(WindowSpec("day", DAY, config.requests_per_day))
        return windows

    @staticmethod
    def _reset_time(window: WindowSpec, now: float) -> float:
        return window.start(now) + window.seconds

    @staticmethod
    def _retry_after(reset_time: float, now: float) -> int:
        return max(1, math.ceil(reset_time - now))

    async def request_permission(
        self,
        service: ExternalApiService | str,
        operation: str | None = None,
        priority: str | None = None,
    ) -> RateLimitResponse:
        """Ask whether a call to service may be made now.

        Args:
            service: External service identifier
            operation: Optional operation name for per-operation limits
            priority: Caller-supplied priority, recorded in logs only

        Returns:
            RateLimitResponse; when denied, retry_after is at least 1 second
        """
        service_name = _service_name(service)
        now = self._clock()
        scope, config = self._resolve_scope(service_name, operation)

        if config is None:
            logger.warning(
                "No rate limit configuration for scope, allowing request",
                extra={"service": service_name, "operation": operation},
            )
            rate_limit_decisions_total.labels(service=service_name, decision="unconfigured").inc()
            return RateLimitResponse(
                allowed=True,
                current_usage=0,
                limit=0,
                reset_time=datetime.fromtimestamp(now + MINUTE, tz=UTC),
            )

        windows = self._windows(config)
        minute = windows[0]
        result = await self._store.try_acquire(scope, windows, now)

        if not result.allowed:
            blocking = result.blocking_window or minute
            reset = self._reset_time(blocking, now)
            retry_after = self._retry_after(reset, now)
            logger.warning(
                "Rate limit reached",
                extra={
                    "service": service_name,
                    "operation": operation,
                    "scope": scope,
                    "window": blocking.name,
                    "current_usage": result.counts.get(blocking.name, blocking.limit),
                    "limit": blocking.limit,
                    "retry_after": retry_after,
                    "priority": priority,
                },
            )
            rate_limit_decisions_total.labels(service=service_name, decision="denied").inc()
            return RateLimitResponse(
                allowed=False,
                current_usage=result.counts.get(blocking.name, blocking.limit),
                limit=blocking.limit,
                reset_time=datetime.fromtimestamp(reset, tz=UTC),
                retry_after=retry_after,
            )

        usage = result.counts.get(minute.name, 0)
        logger.debug(
            "Rate limit check passed",
            extra={
                "service": service_name,
                "scope": scope,
                "current_usage": usage,
                "limit": minute.limit,
            },
        )
        rate_limit_decisions_total.labels(service=service_name, decision="allowed").inc()
        return RateLimitResponse(
            allowed=True,
            current_usage=usage,
            limit=minute.limit,
            reset_time=datetime.fromtimestamp(self._reset_time(minute, now), tz=UTC),
        )

    async def report_rate_limit_hit(
        self,
        service: ExternalApiService | str,
        retry_after_seconds: float | None,
        operation: str | None = None,
    ) -> None:
        """Record an upstream 429 so local callers back off.

        The current minute window of the scope is forced to its limit, so
        every further request in this window is denied locally.
        """
        service_name = _service_name(service)
        now = self._clock()
        scope, config = self._resolve_scope(service_name, operation)
        rate_limit_hits_reported_total.labels(service=service_name).inc()

        if config is None:
            logger.warning(
                "Rate limit hit reported for unconfigured scope",
                extra={
                    "service": service_name,
                    "operation": operation,
                    "retry_after": retry_after_seconds,
                },
            )
            return

        minute = self._windows(config)[0]
        await self._store.set_count(scope, minute, now, minute.limit)

        logger.warning(
            "Upstream rate limit hit reported",
            extra={
                "service": service_name,
                "operation": operation,
                "scope": scope,
                "retry_after": retry_after_seconds,
                "window_reset": self._reset_time(minute, now),
            },
        )

    async def get_status(
        self,
        service: ExternalApiService | str,
        operation: str | None = None,
    ) -> RateLimitStatus:
        """Return the current minute-window usage for a scope."""
        service_name = _service_name(service)
        now = self._clock()
        scope, config = self._resolve_scope(service_name, operation)

        if config is None:
            return RateLimitStatus(
                service=service_name,
                operation=operation,
                configured=False,
                current_requests=0,
                limit=0,
                reset_time=datetime.fromtimestamp(now + MINUTE, tz=UTC),
                is_at_limit=False,
            )

        minute = self._windows(config)[0]
        count = await self._store.get_count(scope, minute, now)
        reset = self._reset_time(minute, now)
        at_limit = count >= minute.limit

        return RateLimitStatus(
            service=service_name,
            operation=operation,
            current_requests=count,
            limit=minute.limit,
            reset_time=datetime.fromtimestamp(reset, tz=UTC),
            is_at_limit=at_limit,
            retry_after=self._retry_after(reset, now) if at_limit else None,
        )

    async def get_all_statuses(self) -> dict[str, RateLimitStatus]:
        """Return the status of every configured scope, keyed by scope."""
        statuses: dict[str, RateLimitStatus] = {}
        for scope in sorted(self._configs):
            service, _, operation = scope.partition(":")
            statuses[scope] = await self.get_status(service, operation or None)
        return statuses

    async def reset_service(self, service: ExternalApiService | str) -> None:
        """Clear all counters for a service and its operations (tests/ops only)."""
        service_name = _service_name(service)
        await self._store.reset(service_name)
        logger.info("Rate limit counters reset", extra={"service": service_name})

    async def close(self) -> None:
        await self._store.close()


def create_rate_limit_store(config: Settings) -> RateLimitStore:
    """Create the counter store selected by RATE_LIMIT_BACKEND."""
    if config.RATE_LIMIT_BACKEND == "redis":
        return RedisRateLimitStore(
            redis_url=config.REDIS_URL,
            key_prefix=config.RATE_LIMIT_KEY_PREFIX,
        )
    return InMemoryRateLimitStore()


# Global instance
_coordinator: RateLimitCoordinator | None = None


def get_rate_limit_coordinator() -> RateLimitCoordinator:
    """Get global coordinator instance.

    Creates a new instance on first call, then returns the same
    instance on subsequent calls (singleton pattern).
    """
    global _coordinator
    if _coordinator is None:
        _coordinator = RateLimitCoordinator(
            configs=build_rate_limit_configs(settings),
            store=create_rate_limit_store(settings),
        )
    return _coordinator


def reset_rate_limit_coordinator() -> None:
    """Reset the global coordinator instance.

    Primarily useful for testing to ensure a fresh instance.
    This does NOT close the store - call close() first if needed.
    """
    global _coordinator
    _coordinator = None
