"""
Factory for creating LLM transports from settings.
"""

import logging

from crave_pipeline.core.config import Settings, settings
from crave_pipeline.core.errors import ConfigurationError
from crave_pipeline.extraction.base import LLMTransport
from crave_pipeline.extraction.gemini_transport import GeminiTransport
from crave_pipeline.extraction.openai_transport import OpenAITransport

logger = logging.getLogger(__name__)


def create_transport(config: Settings | None = None) -> LLMTransport:
    """Create the transport selected by LLM_PROVIDER.

    Args:
        config: Settings to read; defaults to the global settings

    Returns:
        Configured transport

    Raises:
        ConfigurationError: If the provider is unknown or required fields
            (API key, model) are missing
    """
    config = config or settings
    provider = config.LLM_PROVIDER

    if provider == "gemini":
        return GeminiTransport(
            api_key=config.LLM_API_KEY,
            model=config.LLM_MODEL,
            base_url=config.LLM_BASE_URL,
            timeout=config.LLM_TIMEOUT_SECONDS,
            max_output_tokens=config.LLM_MAX_OUTPUT_TOKENS,
            temperature=config.LLM_TEMPERATURE,
            top_p=config.LLM_TOP_P,
            top_k=config.LLM_TOP_K,
            thinking_enabled=config.LLM_THINKING_ENABLED,
            thinking_budget=config.LLM_THINKING_BUDGET,
        )

    if provider == "openai":
        base_url = config.LLM_BASE_URL
        # The Gemini default base URL is not an OpenAI-compatible endpoint
        if "generativelanguage.googleapis.com" in base_url:
            base_url = None
        return OpenAITransport(
            api_key=config.LLM_API_KEY,
            model=config.LLM_MODEL,
            base_url=base_url,
            timeout=config.LLM_TIMEOUT_SECONDS,
            max_output_tokens=config.LLM_MAX_OUTPUT_TOKENS,
            temperature=config.LLM_TEMPERATURE,
        )

    raise ConfigurationError(
        f"Unknown LLM provider: {provider}",
        context={"provider": provider},
    )
