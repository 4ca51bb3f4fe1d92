"""
Application context variables for async-safe state management.

Carries the job correlation id through asyncio tasks and Celery workers so
every log line emitted while processing a job can be tied back to it.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Generator, Optional

current_correlation_id: ContextVar[Optional[str]] = ContextVar(
    "current_correlation_id", default=None
)

__all__ = [
    "current_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
    "clear_correlation_id",
    "correlation_scope",
]


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID from context."""
    return current_correlation_id.get()


def set_correlation_id(correlation_id: str) -> None:
    """
    Set current correlation ID in context.

    Args:
        correlation_id: Identifier supplied by the job producer

    Note:
        This ignores the token return value. For code that needs to restore
        the previous value, use correlation_scope().
    """
    current_correlation_id.set(correlation_id)


def clear_correlation_id() -> None:
    """Clear current correlation ID from context."""
    current_correlation_id.set(None)


@contextmanager
def correlation_scope(correlation_id: Optional[str]) -> Generator[None, None, None]:
    """
    Bind a correlation ID for the duration of a block.

    Example:
        with correlation_scope(job.correlation_id):
            await orchestrator.process_job(job)
    """
    token = current_correlation_id.set(correlation_id)
    try:
        yield
    finally:
        current_correlation_id.reset(token)
