"""Core application modules."""

from crave_pipeline.core.context import (
    current_correlation_id,
    get_correlation_id,
    set_correlation_id,
    clear_correlation_id,
    correlation_scope,
)

__all__ = [
    "current_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
    "clear_correlation_id",
    "correlation_scope",
]
