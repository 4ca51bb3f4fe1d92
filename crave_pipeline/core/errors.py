"""
Error taxonomy for the ingestion pipeline.

Every failure the pipeline raises is a PipelineError tagged with an
ErrorKind. Callers branch on ``error.kind`` and ``error.retryable`` rather
than on the concrete class; the subclasses below exist only so that a raise
site reads naturally and so ``except RateLimitError`` remains possible.

Error Categories:
- Retryable: rate_limit, network, api (5xx only), timeout
- Fatal for the job: configuration, authentication, response_parsing
- Isolated per item: validation, resolution_ambiguity

Example:
    try:
        output = await client.process_content(llm_input)
    except PipelineError as e:
        if e.kind is ErrorKind.AUTHENTICATION:
            ...
        elif e.retryable:
            ...
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classification of pipeline failures."""

    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    API = "api"
    RESPONSE_PARSING = "response_parsing"
    VALIDATION = "validation"
    RESOLUTION_AMBIGUITY = "resolution_ambiguity"
    TIMEOUT = "timeout"


_ALWAYS_RETRYABLE = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.TIMEOUT})


class PipelineError(Exception):
    """Base exception for all pipeline failures.

    Attributes:
        kind: ErrorKind tag used for dispatch
        message: Human-readable error description
        retry_after: Backoff hint in seconds (rate limits)
        status_code: HTTP status of the failed upstream call, if any
        raw_payload: Raw response text kept for diagnostics
        context: Extra structured fields (item id, scope, attempt, ...)
        cause: The underlying exception, if any
        attempts: Number of attempts made before this error surfaced
    """

    kind: ErrorKind = ErrorKind.API

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        retry_after: float | None = None,
        status_code: int | None = None,
        raw_payload: str | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.message = message
        self.retry_after = retry_after
        self.status_code = status_code
        self.raw_payload = raw_payload
        self.context = context or {}
        self.cause = cause
        self.attempts = 1

    @property
    def retryable(self) -> bool:
        """Whether a caller may retry the failed operation."""
        if self.kind in _ALWAYS_RETRYABLE:
            return True
        if self.kind is ErrorKind.API:
            return self.status_code is not None and self.status_code >= 500
        return False

    def to_dict(self) -> dict[str, Any]:
        """Structured representation for logs and job results."""
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        if self.status_code is not None:
            data["status_code"] = self.status_code
        if self.context:
            data["context"] = self.context
        return data

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code is not None:
            parts.append(f"status_code={self.status_code}")
        if self.retry_after is not None:
            parts.append(f"retry_after={self.retry_after}")
        if self.cause is not None:
            parts.append(f"cause={type(self.cause).__name__}")
        return " | ".join(parts)


class ConfigurationError(PipelineError):
    """Missing or invalid configuration; fatal at construction time."""

    kind = ErrorKind.CONFIGURATION


class AuthenticationError(PipelineError):
    """Upstream rejected our credentials (HTTP 401/403)."""

    kind = ErrorKind.AUTHENTICATION


class RateLimitError(PipelineError):
    """Local or upstream rate limit hit; carries a retry_after hint."""

    kind = ErrorKind.RATE_LIMIT


class NetworkError(PipelineError):
    """Connection-level failure (DNS, refused, timeout)."""

    kind = ErrorKind.NETWORK


class ApiError(PipelineError):
    """Non-2xx upstream response not covered by a more specific kind."""

    kind = ErrorKind.API


class ResponseParsingError(PipelineError):
    """Upstream response received but unusable, even after repair."""

    kind = ErrorKind.RESPONSE_PARSING


class ValidationError(PipelineError):
    """Invalid input batch or item."""

    kind = ErrorKind.VALIDATION


class ResolutionAmbiguityError(PipelineError):
    """A name matched more than one canonical entity equally well."""

    kind = ErrorKind.RESOLUTION_AMBIGUITY


class JobTimeoutError(PipelineError):
    """Job exceeded its configured processing timeout."""

    kind = ErrorKind.TIMEOUT
