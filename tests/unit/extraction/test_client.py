"""
Unit tests for ExtractionClient.

Tests cover:
- Successful extraction and metrics
- Local rate limit denials never reaching the network
- Upstream 429s reported to the coordinator and retried
- Non-retryable errors surfaced immediately
- Transport factory configuration errors
"""

import json
from unittest.mock import AsyncMock

import pytest

from crave_pipeline.core.config import Settings
from crave_pipeline.core.errors import (
    AuthenticationError,
    ConfigurationError,
    RateLimitError,
    ResponseParsingError,
)
from crave_pipeline.extraction.base import LLMCompletion, LLMTransport
from crave_pipeline.extraction.client import ExtractionClient
from crave_pipeline.extraction.factory import create_transport
from crave_pipeline.extraction.gemini_transport import GeminiTransport
from crave_pipeline.extraction.openai_transport import OpenAITransport
from crave_pipeline.extraction.retry import RetryPolicy
from crave_pipeline.extraction.schemas import LLMComment, LLMInputStructure, LLMPost
from crave_pipeline.ratelimit.coordinator import RateLimitCoordinator
from crave_pipeline.schemas.ratelimit import RateLimitConfig

MENTION = {
    "temp_id": "x1",
    "restaurant_normalized_name": "franklin bbq",
    "dish_or_category_normalized_name": "brisket",
    "general_praise": False,
    "source_type": "comment",
    "source_id": "c1",
    "source_content": "Franklin brisket",
    "source_upvotes": 3,
    "source_url": "https://www.reddit.com/r/austinfood/comments/abc/_/c1/",
    "source_created_at": "2023-11-14T22:13:20+00:00",
}


class FakeTransport(LLMTransport):
    """Transport returning scripted results in order."""

    provider_name = "fake"

    def __init__(self, *results):
        self.results = list(results)
        self.prompts: list[str] = []
        self.closed = False

    async def generate(self, prompt, response_schema):
        self.prompts.append(prompt)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return LLMCompletion(text=result, model="fake-model", total_tokens=10)

    async def health_check(self):
        return {"status": "healthy", "provider": self.provider_name}

    async def close(self):
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def llm_input() -> LLMInputStructure:
    return LLMInputStructure(
        posts=[
            LLMPost(
                id="abc",
                title="Best brisket?",
                comments=[LLMComment(id="c1", content="Franklin brisket")],
            )
        ]
    )


@pytest.fixture
def coordinator() -> RateLimitCoordinator:
    return RateLimitCoordinator(
        configs={"llm-api": RateLimitConfig(requests_per_minute=100)},
        clock=lambda: 1_700_000_040,
    )


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_retries=2, base_delay=1.0, backoff_factor=2.0, jitter=0.0)


def make_client(transport, coordinator, policy, sleep=None) -> ExtractionClient:
    return ExtractionClient(
        transport=transport,
        coordinator=coordinator,
        retry_policy=policy,
        system_prompt="Extract mentions.",
        sleep=sleep or AsyncMock(),
    )


# =============================================================================
# Tests
# =============================================================================


class TestProcessContent:
    """Tests for process_content."""

    @pytest.mark.asyncio
    async def test_returns_parsed_mentions(self, llm_input, coordinator, policy):
        transport = FakeTransport(json.dumps({"mentions": [MENTION]}))
        client = make_client(transport, coordinator, policy)

        output = await client.process_content(llm_input)

        assert [m.temp_id for m in output.mentions] == ["x1"]
        prompt = transport.prompts[0]
        assert prompt.startswith("Extract mentions.\n\nContent to process:\n")
        assert '"Franklin brisket"' in prompt

    @pytest.mark.asyncio
    async def test_empty_input_skips_the_call(self, coordinator, policy):
        transport = FakeTransport()
        client = make_client(transport, coordinator, policy)

        output = await client.process_content(LLMInputStructure(posts=[]))

        assert output.mentions == []
        assert transport.prompts == []

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, llm_input, coordinator, policy):
        transport = FakeTransport(json.dumps({"mentions": [MENTION]}))
        client = make_client(transport, coordinator, policy)

        await client.process_content(llm_input)
        metrics = client.get_performance_metrics()

        assert metrics["request_count"] == 1
        assert metrics["error_count"] == 0
        assert metrics["total_tokens_used"] == 10
        assert metrics["success_rate"] == 100.0

        client.reset_performance_metrics()
        assert client.get_performance_metrics()["request_count"] == 0


class TestRateLimiting:
    """Interaction with the rate limit coordinator."""

    @pytest.mark.asyncio
    async def test_local_denial_does_not_call_transport(self, llm_input, policy):
        coordinator = RateLimitCoordinator(
            configs={"llm-api": RateLimitConfig(requests_per_minute=1)},
            clock=lambda: 1_700_000_040,
        )
        await coordinator.request_permission("llm-api", "generate_content")
        transport = FakeTransport()
        client = make_client(transport, coordinator, policy)

        with pytest.raises(RateLimitError) as exc_info:
            await client.process_content(llm_input)

        assert transport.prompts == []
        assert exc_info.value.context["source"] == "coordinator"
        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio
    async def test_upstream_429_reported_then_retried(self, llm_input, policy):
        coordinator = AsyncMock(spec=RateLimitCoordinator)
        coordinator.request_permission.return_value = AsyncMock(allowed=True)
        transport = FakeTransport(
            RateLimitError("quota", status_code=429, retry_after=5),
            json.dumps({"mentions": [MENTION]}),
        )
        sleep = AsyncMock()
        client = make_client(transport, coordinator, policy, sleep=sleep)

        output = await client.process_content(llm_input)

        assert output.mention_count == 1
        coordinator.report_rate_limit_hit.assert_awaited_once()
        args = coordinator.report_rate_limit_hit.await_args.args
        assert args[1] == 5
        sleep.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_authentication_error_not_retried(self, llm_input, coordinator, policy):
        transport = FakeTransport(AuthenticationError("bad key", status_code=401))
        client = make_client(transport, coordinator, policy)

        with pytest.raises(AuthenticationError):
            await client.process_content(llm_input)

        assert len(transport.prompts) == 1
        assert client.get_performance_metrics()["error_count"] == 1

    @pytest.mark.asyncio
    async def test_parse_failure_not_retried(self, llm_input, coordinator, policy):
        transport = FakeTransport('{"no_mentions": true}')
        client = make_client(transport, coordinator, policy)

        with pytest.raises(ResponseParsingError):
            await client.process_content(llm_input)

        assert len(transport.prompts) == 1


class TestLifecycle:
    """Tests for health_check and close."""

    @pytest.mark.asyncio
    async def test_health_check_includes_rate_limit(self, coordinator, policy):
        client = make_client(FakeTransport(), coordinator, policy)

        status = await client.health_check()

        assert status["status"] == "healthy"
        assert status["rate_limit"]["limit"] == 100
        assert "metrics" in status

    @pytest.mark.asyncio
    async def test_close(self, coordinator, policy):
        transport = FakeTransport()
        client = make_client(transport, coordinator, policy)

        await client.close()

        assert transport.closed is True


class TestCreateTransport:
    """Tests for the transport factory."""

    def test_gemini(self):
        config = Settings(_env_file=None, LLM_PROVIDER="gemini", LLM_API_KEY="key")
        assert isinstance(create_transport(config), GeminiTransport)

    def test_openai(self):
        config = Settings(
            _env_file=None, LLM_PROVIDER="openai", LLM_API_KEY="sk", LLM_MODEL="gpt-4o"
        )
        assert isinstance(create_transport(config), OpenAITransport)

    def test_missing_key_fails_fast(self):
        config = Settings(_env_file=None, LLM_PROVIDER="gemini", LLM_API_KEY="")
        with pytest.raises(ConfigurationError):
            create_transport(config)

    def test_client_without_key_fails_at_construction(self, monkeypatch):
        from crave_pipeline.core import config as config_module

        monkeypatch.setattr(config_module.settings, "LLM_API_KEY", "")
        monkeypatch.setattr(config_module.settings, "LLM_PROVIDER", "gemini")

        with pytest.raises(ConfigurationError):
            ExtractionClient(coordinator=AsyncMock())
