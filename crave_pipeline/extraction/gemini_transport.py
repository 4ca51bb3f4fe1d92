"""
Gemini generateContent transport over httpx.

Requests strict structured output (responseMimeType application/json plus
a responseSchema) and disables thinking tokens unless explicitly enabled.
"""

import logging
from typing import Any

import httpx

from crave_pipeline.core.errors import ConfigurationError, NetworkError, ResponseParsingError
from crave_pipeline.extraction.base import (
    LLMCompletion,
    LLMTransport,
    classify_http_error,
    parse_retry_after,
)

logger = logging.getLogger(__name__)


class GeminiTransport(LLMTransport):
    """Transport for the Gemini generateContent REST API.

    Example:
        transport = GeminiTransport(api_key="...", model="gemini-2.5-flash")
        completion = await transport.generate(prompt, RESPONSE_SCHEMA)
    """

    provider_name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 30.0,
        max_output_tokens: int = 65536,
        temperature: float = 0.1,
        top_p: float | None = None,
        top_k: int | None = None,
        thinking_enabled: bool = False,
        thinking_budget: int = 0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the Gemini transport.

        Raises:
            ConfigurationError: If api_key or model is missing
        """
        missing = [name for name, value in (("LLM_API_KEY", api_key), ("LLM_MODEL", model)) if not value]
        if missing:
            raise ConfigurationError(
                f"Missing required LLM configuration: {', '.join(missing)}",
                context={"missing_fields": missing, "provider": self.provider_name},
            )

        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_output_tokens = max_output_tokens
        self._temperature = temperature
        self._top_p = top_p
        self._top_k = top_k
        self._thinking_enabled = thinking_enabled
        self._thinking_budget = thinking_budget
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

        logger.info(
            "GeminiTransport initialized",
            extra={
                "model": model,
                "timeout": timeout,
                "thinking_enabled": thinking_enabled,
            },
        )

    @property
    def model(self) -> str:
        return self._model

    def _endpoint(self) -> str:
        return f"{self._base_url}/models/{self._model}:generateContent"

    def build_generation_config(self, response_schema: dict[str, Any]) -> dict[str, Any]:
        config: dict[str, Any] = {
            "temperature": self._temperature,
            "maxOutputTokens": self._max_output_tokens,
            "candidateCount": 1,
            "responseMimeType": "application/json",
            "responseSchema": response_schema,
        }
        if self._top_p is not None:
            config["topP"] = self._top_p
        if self._top_k is not None:
            config["topK"] = self._top_k
        config["thinkingConfig"] = {
            "thinkingBudget": self._thinking_budget if self._thinking_enabled else 0
        }
        return config

    def build_request(self, prompt: str, response_schema: dict[str, Any]) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": self.build_generation_config(response_schema),
        }

    async def generate(self, prompt: str, response_schema: dict[str, Any]) -> LLMCompletion:
        try:
            response = await self._client.post(
                self._endpoint(),
                params={"key": self._api_key},
                json=self.build_request(prompt, response_schema),
                timeout=self._timeout,
            )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise NetworkError(
                f"Gemini request failed: {type(e).__name__}",
                context={"provider": self.provider_name, "model": self._model},
                cause=e,
            ) from e

        if response.status_code >= 400:
            raise classify_http_error(
                response.status_code,
                response.text,
                self.provider_name,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ResponseParsingError(
                "Gemini response body is not JSON",
                raw_payload=response.text,
                cause=e,
            ) from e

        if not isinstance(data, dict):
            raise ResponseParsingError(
                "Gemini response body is not a JSON object",
                raw_payload=response.text,
                context={"body_type": type(data).__name__},
            )

        candidates = data.get("candidates") or []
        first = candidates[0] if isinstance(candidates, list) and candidates else {}
        if not isinstance(first, dict):
            first = {}
        parts = (first.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text:
            raise ResponseParsingError(
                "Gemini response has no candidate text",
                raw_payload=response.text,
                context={"finish_reason": first.get("finishReason")},
            )

        usage = data.get("usageMetadata") or {}
        return LLMCompletion(
            text=text,
            model=self._model,
            total_tokens=usage.get("totalTokenCount"),
            finish_reason=first.get("finishReason"),
            metadata={"prompt_tokens": usage.get("promptTokenCount")},
        )

    async def health_check(self) -> dict:
        """Check Gemini API connectivity by fetching the model resource."""
        try:
            response = await self._client.get(
                f"{self._base_url}/models/{self._model}",
                params={"key": self._api_key},
                timeout=self._timeout,
            )
            return {
                "status": "healthy" if response.status_code == 200 else "unhealthy",
                "provider": self.provider_name,
                "model": self._model,
                "status_code": response.status_code,
            }
        except httpx.HTTPError as e:
            return {
                "status": "unhealthy",
                "provider": self.provider_name,
                "model": self._model,
                "error": str(e),
            }

    async def close(self) -> None:
        await self._client.aclose()
