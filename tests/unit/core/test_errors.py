"""
Unit tests for the pipeline error taxonomy.

Callers branch on ``error.kind`` and ``error.retryable``; these tests pin
the retry classification of every kind.
"""

import pytest

from crave_pipeline.core.errors import (
    ApiError,
    AuthenticationError,
    ConfigurationError,
    ErrorKind,
    JobTimeoutError,
    NetworkError,
    PipelineError,
    RateLimitError,
    ResolutionAmbiguityError,
    ResponseParsingError,
    ValidationError,
)


class TestErrorKinds:
    """Tests for kind tagging on the subclasses."""

    @pytest.mark.parametrize(
        "error_cls,kind",
        [
            (ConfigurationError, ErrorKind.CONFIGURATION),
            (AuthenticationError, ErrorKind.AUTHENTICATION),
            (RateLimitError, ErrorKind.RATE_LIMIT),
            (NetworkError, ErrorKind.NETWORK),
            (ApiError, ErrorKind.API),
            (ResponseParsingError, ErrorKind.RESPONSE_PARSING),
            (ValidationError, ErrorKind.VALIDATION),
            (ResolutionAmbiguityError, ErrorKind.RESOLUTION_AMBIGUITY),
            (JobTimeoutError, ErrorKind.TIMEOUT),
        ],
    )
    def test_subclass_sets_kind(self, error_cls, kind):
        """Each subclass fixes its kind and is a PipelineError."""
        error = error_cls("boom")
        assert error.kind is kind
        assert isinstance(error, PipelineError)

    def test_explicit_kind_overrides_class_default(self):
        """A kind passed to the base class wins."""
        error = PipelineError("boom", kind=ErrorKind.NETWORK)
        assert error.kind is ErrorKind.NETWORK


class TestRetryable:
    """Tests for the derived retryable flag."""

    @pytest.mark.parametrize("error_cls", [RateLimitError, NetworkError, JobTimeoutError])
    def test_transient_kinds_are_retryable(self, error_cls):
        assert error_cls("transient").retryable is True

    @pytest.mark.parametrize(
        "error_cls",
        [ConfigurationError, AuthenticationError, ResponseParsingError, ValidationError],
    )
    def test_permanent_kinds_are_not_retryable(self, error_cls):
        assert error_cls("permanent").retryable is False

    def test_api_error_retryable_only_for_server_errors(self):
        """5xx responses may succeed on retry; 4xx never will."""
        assert ApiError("bad gateway", status_code=502).retryable is True
        assert ApiError("bad request", status_code=400).retryable is False
        assert ApiError("unknown").retryable is False


class TestSerialization:
    """Tests for to_dict and __str__."""

    def test_to_dict_includes_structured_fields(self):
        error = RateLimitError(
            "Too many requests",
            retry_after=12,
            status_code=429,
            context={"provider": "gemini"},
        )

        data = error.to_dict()

        assert data == {
            "kind": "rate_limit",
            "message": "Too many requests",
            "retryable": True,
            "retry_after": 12,
            "status_code": 429,
            "context": {"provider": "gemini"},
        }

    def test_to_dict_omits_unset_fields(self):
        data = ValidationError("missing id").to_dict()
        assert set(data) == {"kind", "message", "retryable"}

    def test_str_joins_details(self):
        error = NetworkError("connect failed", cause=ConnectionError("refused"))
        assert str(error) == "connect failed | cause=ConnectionError"

    def test_raw_payload_kept_for_diagnostics(self):
        error = ResponseParsingError("bad json", raw_payload="{not json")
        assert error.raw_payload == "{not json"
        assert error.attempts == 1
