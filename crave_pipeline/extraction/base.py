"""
Base interface for LLM transports.

A transport sends one prompt with a response schema to a provider and
returns the raw text of the first candidate. It is responsible for mapping
provider and HTTP failures onto the pipeline error taxonomy:

- 401/403 -> AuthenticationError
- 429 -> RateLimitError carrying the Retry-After hint
- connection failures and timeouts -> NetworkError
- any other non-2xx -> ApiError with status code and raw body
- no candidate text -> ResponseParsingError

Parsing, retries and rate-limit coordination live in ExtractionClient.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from crave_pipeline.core.errors import (
    ApiError,
    AuthenticationError,
    PipelineError,
    RateLimitError,
)


@dataclass
class LLMCompletion:
    """Raw completion returned by a transport."""

    text: str
    model: str
    total_tokens: int | None = None
    finish_reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class LLMTransport(ABC):
    """Abstract base class for LLM provider transports.

    Attributes:
        provider_name: Human-readable name of the provider (e.g., "gemini")
    """

    provider_name: str = "base"

    @abstractmethod
    async def generate(self, prompt: str, response_schema: dict[str, Any]) -> LLMCompletion:
        """Send a prompt and return the first candidate's text.

        Args:
            prompt: Full prompt (system instruction plus content payload)
            response_schema: JSON schema the response must conform to

        Returns:
            LLMCompletion with non-empty text

        Raises:
            PipelineError: Classified per the module docstring
        """
        ...

    @abstractmethod
    async def health_check(self) -> dict:
        """Check provider connectivity and availability."""
        ...

    async def close(self) -> None:
        """Release client resources."""
        return None


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_http_error(
    status_code: int,
    body: str,
    provider: str,
    retry_after: float | None = None,
) -> PipelineError:
    """Map a non-2xx provider response to a pipeline error."""
    context = {"provider": provider}
    if status_code in (401, 403):
        return AuthenticationError(
            f"{provider} rejected credentials",
            status_code=status_code,
            raw_payload=body,
            context=context,
        )
    if status_code == 429:
        return RateLimitError(
            f"{provider} rate limit exceeded",
            status_code=status_code,
            retry_after=retry_after,
            raw_payload=body,
            context=context,
        )
    return ApiError(
        f"{provider} API error",
        status_code=status_code,
        raw_payload=body,
        context=context,
    )
