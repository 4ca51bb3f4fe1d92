"""
Retry logic for LLM extraction calls.

Provides exponential backoff with jitter for retryable pipeline errors
(rate limits, network failures, 5xx API errors). Authentication,
configuration and response-parsing errors are never retried.

Example:
    from crave_pipeline.extraction.retry import RetryPolicy, retry_async

    policy = RetryPolicy(max_retries=3, base_delay=1.0)
    completion = await retry_async(lambda: transport.generate(prompt, schema), policy)
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from crave_pipeline.core.config import settings
from crave_pipeline.core.errors import PipelineError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Retry policy configuration for extraction calls.

    The delay for retry N (0-indexed) is:
        base = min(base_delay * (backoff_factor ** N), max_delay)
        delay = base +/- (base * jitter)
    and never less than the error's retry_after hint, when one is given.

    Attributes:
        max_retries: Maximum number of retries after the first attempt
        base_delay: Delay in seconds before the first retry
        backoff_factor: Exponential multiplier
        max_delay: Cap on the computed delay
        jitter: Fraction of the delay used as random variation
    """

    def __init__(
        self,
        max_retries: int | None = None,
        base_delay: float | None = None,
        backoff_factor: float | None = None,
        max_delay: float | None = None,
        jitter: float | None = None,
    ):
        """Initialize the retry policy; unset values come from settings.

        Raises:
            ValueError: If parameters are invalid (negative delays, etc.)
        """
        max_retries = settings.LLM_MAX_RETRIES if max_retries is None else max_retries
        base_delay = settings.LLM_RETRY_BASE_DELAY if base_delay is None else base_delay
        backoff_factor = settings.LLM_RETRY_BACKOFF_FACTOR if backoff_factor is None else backoff_factor
        max_delay = settings.LLM_RETRY_MAX_DELAY if max_delay is None else max_delay
        jitter = settings.LLM_RETRY_JITTER if jitter is None else jitter

        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if max_delay < 0:
            raise ValueError("max_delay must be non-negative")
        if backoff_factor < 1:
            raise ValueError("backoff_factor must be at least 1.0")
        if not 0.0 <= jitter <= 1.0:
            raise ValueError("jitter must be between 0.0 and 1.0")

        self.max_retries = max_retries
        self.base_delay = base_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.jitter = jitter

    def get_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Calculate the delay before retry number attempt (0-indexed).

        Example:
            policy = RetryPolicy(base_delay=1.0, backoff_factor=2.0, jitter=0.0)
            policy.get_delay(0)  # 1.0
            policy.get_delay(2)  # 4.0
            policy.get_delay(0, retry_after=7)  # 7.0
        """
        delay = min(self.base_delay * (self.backoff_factor**attempt), self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-jitter_range, jitter_range))

        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    def __repr__(self) -> str:
        return (
            f"RetryPolicy("
            f"max_retries={self.max_retries}, "
            f"base_delay={self.base_delay}, "
            f"backoff_factor={self.backoff_factor}, "
            f"max_delay={self.max_delay}, "
            f"jitter={self.jitter})"
        )


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    operation_name: str = "operation",
    on_retry: Callable[[PipelineError, int], Awaitable[None]] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run operation, retrying retryable PipelineErrors with backoff.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry policy; defaults to one built from settings
        operation_name: Name used in log records
        on_retry: Awaited before each retry with the error and retry number
        sleep: Sleep function (injectable for tests)

    Returns:
        The operation's result

    Raises:
        PipelineError: The first non-retryable error, or the last retryable
            error once retries are exhausted; ``attempts`` is set on it.
    """
    retry_policy = policy or RetryPolicy()
    total_attempts = retry_policy.max_retries + 1

    for attempt in range(total_attempts):
        try:
            return await operation()
        except PipelineError as e:
            e.attempts = attempt + 1
            if not e.retryable:
                raise

            if attempt >= retry_policy.max_retries:
                logger.error(
                    "All %d attempts exhausted for %s",
                    total_attempts,
                    operation_name,
                    extra={
                        "operation": operation_name,
                        "total_attempts": total_attempts,
                        "error_kind": e.kind.value,
                        "final_error": str(e),
                    },
                )
                raise

            delay = retry_policy.get_delay(attempt, e.retry_after)
            logger.warning(
                "Attempt %d/%d failed for %s: %s. Retrying in %.2fs...",
                attempt + 1,
                total_attempts,
                operation_name,
                e.message,
                delay,
                extra={
                    "operation": operation_name,
                    "attempt": attempt + 1,
                    "total_attempts": total_attempts,
                    "delay_seconds": delay,
                    "error_kind": e.kind.value,
                    "status_code": e.status_code,
                },
            )
            if on_retry is not None:
                await on_retry(e, attempt + 1)
            await sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"retry loop for {operation_name} exited without result")
