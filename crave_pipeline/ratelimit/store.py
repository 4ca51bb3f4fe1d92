"""
Counter stores backing the rate limit coordinator.

The coordinator owns the algorithm (scope resolution, window alignment,
retry-after computation); a store only keeps per-window counters and makes
"check every window, then increment every window" atomic for one scope.

Two implementations are provided:
- InMemoryRateLimitStore: single process, one lock per scope
- RedisRateLimitStore: shared across processes, INCR + EXPIRE per window key

Window keys are aligned to the epoch: window_start = now - (now % seconds).
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import redis.asyncio as redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowSpec:
    """One counting window to check for a scope."""

    name: str
    seconds: int
    limit: int

    def start(self, now: float) -> int:
        current = int(now)
        return current - (current % self.seconds)


@dataclass
class AcquireResult:
    """Outcome of an atomic check-and-increment across windows."""

    allowed: bool
    counts: dict[str, int] = field(default_factory=dict)
    blocking_window: WindowSpec | None = None


class RateLimitStore(ABC):
    """Abstract counter store for rate limiting."""

    @abstractmethod
    async def try_acquire(
        self, scope: str, windows: list[WindowSpec], now: float
    ) -> AcquireResult:
        """Increment every window for scope unless any window is at its limit.

        Implementations must guarantee that concurrent callers for the same
        scope never together push a window past its limit.
        """
        ...

    @abstractmethod
    async def get_count(self, scope: str, window: WindowSpec, now: float) -> int:
        """Return the current count of window for scope."""
        ...

    @abstractmethod
    async def set_count(
        self, scope: str, window: WindowSpec, now: float, count: int
    ) -> None:
        """Force the current count of window for scope."""
        ...

    @abstractmethod
    async def reset(self, scope_prefix: str) -> None:
        """Drop all counters for scopes equal to or nested under scope_prefix."""
        ...

    async def close(self) -> None:
        """Release backing resources."""
        return None


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local counter store.

    Counters live in ``{scope: {(window_seconds, window_start): count}}``.
    The body of every operation runs without awaiting, guarded by a per-scope
    threading lock, so it is safe for both asyncio tasks and threads.
    """

    def __init__(self):
        self._counters: dict[str, dict[tuple[int, int], int]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, scope: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(scope)
            if lock is None:
                lock = threading.Lock()
                self._locks[scope] = lock
            return lock

    def _purge_stale(self, counters: dict[tuple[int, int], int], now: float) -> None:
        # Only the window containing now is ever read again
        stale = [key for key in counters if key[1] + key[0] <= now]
        for key in stale:
            del counters[key]

    async def try_acquire(
        self, scope: str, windows: list[WindowSpec], now: float
    ) -> AcquireResult:
        with self._lock_for(scope):
            counters = self._counters.setdefault(scope, {})
            counts: dict[str, int] = {}

            for window in windows:
                count = counters.get((window.seconds, window.start(now)), 0)
                counts[window.name] = count
                if count >= window.limit:
                    return AcquireResult(
                        allowed=False, counts=counts, blocking_window=window
                    )

            for window in windows:
                key = (window.seconds, window.start(now))
                counters[key] = counters.get(key, 0) + 1
                counts[window.name] = counters[key]

            self._purge_stale(counters, now)
            return AcquireResult(allowed=True, counts=counts)

    async def get_count(self, scope: str, window: WindowSpec, now: float) -> int:
        with self._lock_for(scope):
            return self._counters.get(scope, {}).get((window.seconds, window.start(now)), 0)

    async def set_count(
        self, scope: str, window: WindowSpec, now: float, count: int
    ) -> None:
        with self._lock_for(scope):
            counters = self._counters.setdefault(scope, {})
            counters[(window.seconds, window.start(now))] = count

    async def reset(self, scope_prefix: str) -> None:
        with self._locks_guard:
            scopes = [
                s for s in self._counters
                if s == scope_prefix or s.startswith(f"{scope_prefix}:")
            ]
        for scope in scopes:
            with self._lock_for(scope):
                self._counters.pop(scope, None)

    def window_count(self) -> int:
        """Total number of tracked windows (used to observe purging)."""
        return sum(len(c) for c in self._counters.values())


class RedisRateLimitStore(RateLimitStore):
    """Shared counter store using Redis.

    Each window is a key ``{prefix}:{scope}:{seconds}:{window_start}``.
    A request INCRs every window key; the first increment sets a TTL of
    twice the window. If any window exceeds its limit the increments are
    rolled back with DECR and the request is denied, so admitted requests
    never exceed the limit even across processes.

    Gracefully degrades if Redis is unavailable (logs warning and allows).
    """

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        redis_url: str | None = None,
        key_prefix: str = "crave_ratelimit",
    ):
        if redis_client is None and redis_url is None:
            raise ValueError("redis_client or redis_url is required")
        self._redis = redis_client
        self._redis_url = redis_url
        self._prefix = key_prefix

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url)
        return self._redis

    def _key(self, scope: str, window: WindowSpec, now: float) -> str:
        return f"{self._prefix}:{scope}:{window.seconds}:{window.start(now)}"

    async def try_acquire(
        self, scope: str, windows: list[WindowSpec], now: float
    ) -> AcquireResult:
        r = await self._get_redis()
        counts: dict[str, int] = {}
        incremented: list[str] = []

        try:
            for window in windows:
                key = self._key(scope, window, now)
                count = await r.incr(key)
                incremented.append(key)
                if count == 1:
                    await r.expire(key, window.seconds * 2)
                counts[window.name] = int(count)

                if count > window.limit:
                    for done in incremented:
                        await r.decr(done)
                    counts[window.name] = window.limit
                    return AcquireResult(
                        allowed=False, counts=counts, blocking_window=window
                    )

            return AcquireResult(allowed=True, counts=counts)

        except redis.RedisError as e:
            logger.warning(
                "Rate limit store unavailable, allowing request",
                extra={"scope": scope, "error": str(e)},
            )
            return AcquireResult(allowed=True, counts=counts)

    async def get_count(self, scope: str, window: WindowSpec, now: float) -> int:
        r = await self._get_redis()
        try:
            value = await r.get(self._key(scope, window, now))
        except redis.RedisError as e:
            logger.warning(
                "Rate limit store unavailable, reporting zero usage",
                extra={"scope": scope, "error": str(e)},
            )
            return 0
        return int(value) if value is not None else 0

    async def set_count(
        self, scope: str, window: WindowSpec, now: float, count: int
    ) -> None:
        r = await self._get_redis()
        try:
            await r.set(self._key(scope, window, now), count, ex=window.seconds * 2)
        except redis.RedisError as e:
            logger.warning(
                "Rate limit store unavailable, count not recorded",
                extra={"scope": scope, "count": count, "error": str(e)},
            )

    async def reset(self, scope_prefix: str) -> None:
        r = await self._get_redis()
        # Matches both "{service}:{seconds}:..." and "{service}:{operation}:..."
        async for key in r.scan_iter(match=f"{self._prefix}:{scope_prefix}:*"):
            await r.delete(key)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.debug("Rate limit store Redis connection closed")
