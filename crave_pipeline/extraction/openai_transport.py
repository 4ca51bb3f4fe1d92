"""
OpenAI-compatible transport using the Chat Completions API.

Uses strict structured outputs (response_format json_schema) so the model
is constrained to the mention contract.
"""

import logging
from typing import Any

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
)

from crave_pipeline.core.errors import ConfigurationError, NetworkError, ResponseParsingError
from crave_pipeline.extraction.base import (
    LLMCompletion,
    LLMTransport,
    classify_http_error,
    parse_retry_after,
)
from crave_pipeline.extraction.schemas import strict_json_schema

logger = logging.getLogger(__name__)


class OpenAITransport(LLMTransport):
    """Transport for OpenAI and OpenAI-compatible endpoints."""

    provider_name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        timeout: float = 30.0,
        max_output_tokens: int = 16384,
        temperature: float = 0.1,
        client: AsyncOpenAI | None = None,
    ):
        missing = [name for name, value in (("LLM_API_KEY", api_key), ("LLM_MODEL", model)) if not value]
        if missing:
            raise ConfigurationError(
                f"Missing required LLM configuration: {', '.join(missing)}",
                context={"missing_fields": missing, "provider": self.provider_name},
            )

        self._model = model
        self._max_output_tokens = max_output_tokens
        self._temperature = temperature
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            max_retries=0,
        )

        logger.info(
            "OpenAITransport initialized",
            extra={"model": model, "timeout": timeout},
        )

    @property
    def model(self) -> str:
        return self._model

    def _supports_temperature(self) -> bool:
        # Reasoning models reject a custom temperature
        model_lower = self._model.lower()
        return not any(model_lower.startswith(p) for p in ("gpt-5", "o1", "o3", "o4"))

    async def generate(self, prompt: str, response_schema: dict[str, Any]) -> LLMCompletion:
        request_kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
            "max_completion_tokens": self._max_output_tokens,
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "mentions",
                    "strict": True,
                    "schema": strict_json_schema(response_schema),
                },
            },
        }
        if self._supports_temperature():
            request_kwargs["temperature"] = self._temperature

        try:
            response = await self._client.chat.completions.create(**request_kwargs)
        except APITimeoutError as e:
            raise NetworkError(
                "OpenAI request timed out",
                context={"provider": self.provider_name, "model": self._model},
                cause=e,
            ) from e
        except APIConnectionError as e:
            raise NetworkError(
                "Failed to connect to OpenAI",
                context={"provider": self.provider_name, "model": self._model},
                cause=e,
            ) from e
        except APIStatusError as e:
            raise classify_http_error(
                e.status_code,
                e.response.text if e.response is not None else str(e),
                self.provider_name,
                retry_after=parse_retry_after(
                    e.response.headers.get("retry-after") if e.response is not None else None
                ),
            ) from e

        choice = response.choices[0] if response.choices else None
        text = choice.message.content if choice is not None else None
        if not text:
            raise ResponseParsingError(
                "OpenAI response has no message content",
                raw_payload=response.model_dump_json() if hasattr(response, "model_dump_json") else None,
                context={"finish_reason": choice.finish_reason if choice is not None else None},
            )

        return LLMCompletion(
            text=text,
            model=self._model,
            total_tokens=response.usage.total_tokens if response.usage else None,
            finish_reason=choice.finish_reason,
        )

    async def health_check(self) -> dict:
        """Check OpenAI API connectivity."""
        try:
            models = await self._client.models.list()
            model_ids = [m.id for m in models.data]
            return {
                "status": "healthy",
                "provider": self.provider_name,
                "model": self._model,
                "model_available": self._model in model_ids,
            }
        except Exception as e:
            return {
                "status": "unhealthy",
                "provider": self.provider_name,
                "model": self._model,
                "error": str(e),
            }

    async def close(self) -> None:
        await self._client.close()
