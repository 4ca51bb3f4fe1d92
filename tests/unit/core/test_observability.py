"""
Unit tests for correlation context and the structured JSON formatter.
"""

import io
import json
import logging

from crave_pipeline.core.context import (
    clear_correlation_id,
    correlation_scope,
    get_correlation_id,
    set_correlation_id,
)
from crave_pipeline.core.errors import RateLimitError
from crave_pipeline.observability import StructuredJsonFormatter


def _record(message: str = "Job completed", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="crave_pipeline.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestCorrelationContext:
    """Tests for the correlation id context variable."""

    def test_set_and_clear(self):
        set_correlation_id("req-1")
        assert get_correlation_id() == "req-1"
        clear_correlation_id()
        assert get_correlation_id() is None

    def test_scope_restores_previous_value(self):
        set_correlation_id("outer")
        try:
            with correlation_scope("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"
        finally:
            clear_correlation_id()


class TestStructuredJsonFormatter:
    """Tests for JSON log output."""

    def test_includes_extra_fields_and_level(self):
        formatter = StructuredJsonFormatter()

        output = json.loads(formatter.format(_record(post_id="t3_abc", mentions=4)))

        assert output["message"] == "Job completed"
        assert output["level"] == "INFO"
        assert output["logger"] == "crave_pipeline.test"
        assert output["post_id"] == "t3_abc"
        assert output["mentions"] == 4

    def test_includes_bound_correlation_id(self):
        formatter = StructuredJsonFormatter()

        with correlation_scope("req-123"):
            output = json.loads(formatter.format(_record()))

        assert output["correlation_id"] == "req-123"

    def test_omits_correlation_id_when_unbound(self):
        formatter = StructuredJsonFormatter()

        output = json.loads(formatter.format(_record()))

        assert "correlation_id" not in output

    def test_pipeline_error_logged_through_logger(self):
        """A structured error nested under "error" survives record creation."""
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(StructuredJsonFormatter())
        logger = logging.getLogger("crave_pipeline.test.errors")
        logger.addHandler(handler)
        logger.propagate = False
        error = RateLimitError("quota exhausted", retry_after=12)

        try:
            logger.error("Job failed", extra={"post_id": "abc123", "error": error.to_dict()})
        finally:
            logger.removeHandler(handler)
            logger.propagate = True

        output = json.loads(stream.getvalue())
        assert output["message"] == "Job failed"
        assert output["error"]["kind"] == "rate_limit"
        assert output["error"]["message"] == "quota exhausted"
        assert output["error"]["retry_after"] == 12
