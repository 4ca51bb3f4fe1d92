"""
Extraction client: turns posts and comments into structured mentions.

One call to process_content:
1. builds the prompt (system instruction + JSON content payload)
2. asks the rate limit coordinator for permission; a denial never reaches
   the network and is retried like any other rate limit
3. sends the request through the configured transport
4. reports upstream 429s back to the coordinator
5. retries retryable failures with exponential backoff
6. repairs and parses the response into validated mentions

Missing configuration (API key, model) fails when the client is built.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass

from crave_pipeline.core.config import settings
from crave_pipeline.core.errors import PipelineError, RateLimitError
from crave_pipeline.extraction.base import LLMCompletion, LLMTransport
from crave_pipeline.extraction.factory import create_transport
from crave_pipeline.extraction.prompts import build_processing_prompt, get_system_prompt
from crave_pipeline.extraction.response_parser import parse_mentions
from crave_pipeline.extraction.retry import RetryPolicy, retry_async
from crave_pipeline.extraction.schemas import (
    RESPONSE_SCHEMA,
    LLMInputStructure,
    LLMOutputStructure,
)
from crave_pipeline.observability import (
    extraction_requests_total,
    pipeline_errors_total,
    stage_duration_seconds,
)
from crave_pipeline.ratelimit.coordinator import (
    RateLimitCoordinator,
    get_rate_limit_coordinator,
)
from crave_pipeline.schemas.ratelimit import ExternalApiService

logger = logging.getLogger(__name__)

RATE_LIMIT_OPERATION = "generate_content"


@dataclass
class ExtractionPerformanceMetrics:
    """In-process counters for extraction calls."""

    request_count: int = 0
    total_response_time: float = 0.0
    average_response_time: float = 0.0
    total_tokens_used: int = 0
    error_count: int = 0
    success_rate: float = 100.0
    repaired_responses: int = 0
    dropped_mentions: int = 0
    last_reset: float = 0.0


class ExtractionClient:
    """Client for LLM-based mention extraction.

    Example:
        client = ExtractionClient()
        output = await client.process_content(LLMInputStructure(posts=[...]))
        for mention in output.mentions:
            print(mention.restaurant_normalized_name)
    """

    def __init__(
        self,
        transport: LLMTransport | None = None,
        coordinator: RateLimitCoordinator | None = None,
        retry_policy: RetryPolicy | None = None,
        system_prompt: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the extraction client.

        Args:
            transport: Provider transport; built from settings when omitted
            coordinator: Rate limit coordinator; the global one when omitted
            retry_policy: Backoff policy; built from settings when omitted
            system_prompt: Overrides the configured system prompt
            sleep: Sleep function used between retries

        Raises:
            ConfigurationError: If the transport cannot be configured
        """
        self._transport = transport or create_transport()
        self._coordinator = coordinator or get_rate_limit_coordinator()
        self._retry_policy = retry_policy or RetryPolicy()
        self._system_prompt = system_prompt or get_system_prompt(settings.LLM_SYSTEM_PROMPT_PATH)
        self._sleep = sleep
        self._metrics = ExtractionPerformanceMetrics(last_reset=time.time())

    @property
    def provider_name(self) -> str:
        return self._transport.provider_name

    async def _attempt(self, prompt: str) -> LLMCompletion:
        permission = await self._coordinator.request_permission(
            ExternalApiService.LLM_API, RATE_LIMIT_OPERATION
        )
        if not permission.allowed:
            raise RateLimitError(
                "Local rate limit reached for llm-api",
                retry_after=permission.retry_after,
                context={
                    "source": "coordinator",
                    "current_usage": permission.current_usage,
                    "limit": permission.limit,
                },
            )

        try:
            return await self._transport.generate(prompt, RESPONSE_SCHEMA)
        except RateLimitError as e:
            await self._coordinator.report_rate_limit_hit(
                ExternalApiService.LLM_API, e.retry_after, RATE_LIMIT_OPERATION
            )
            raise

    async def _count_retry(self, error: PipelineError, retry_number: int) -> None:
        pipeline_errors_total.labels(kind=error.kind.value, stage="extraction").inc()

    async def process_content(self, llm_input: LLMInputStructure) -> LLMOutputStructure:
        """Extract mentions from posts and their comments.

        Args:
            llm_input: Posts (with comments) to analyze

        Returns:
            LLMOutputStructure with validated mentions

        Raises:
            AuthenticationError: Provider rejected credentials (not retried)
            RateLimitError: Still rate limited after all retries
            NetworkError: Still unreachable after all retries
            ApiError: Non-2xx response (5xx retried first)
            ResponseParsingError: Response unusable even after repair
        """
        if not llm_input.posts:
            return LLMOutputStructure()

        prompt = build_processing_prompt(self._system_prompt, llm_input)
        comment_count = sum(len(p.comments) for p in llm_input.posts)
        start = time.perf_counter()

        logger.info(
            "Starting LLM extraction",
            extra={
                "provider": self.provider_name,
                "posts": len(llm_input.posts),
                "comments": comment_count,
                "prompt_length": len(prompt),
            },
        )

        try:
            completion = await retry_async(
                lambda: self._attempt(prompt),
                self._retry_policy,
                operation_name="llm_process_content",
                on_retry=self._count_retry,
                sleep=self._sleep,
            )
            parsed = parse_mentions(completion.text)
        except PipelineError as e:
            elapsed = time.perf_counter() - start
            self._record(elapsed, success=False)
            pipeline_errors_total.labels(kind=e.kind.value, stage="extraction").inc()
            extraction_requests_total.labels(provider=self.provider_name, outcome="error").inc()
            logger.error(
                "LLM extraction failed",
                extra={
                    "provider": self.provider_name,
                    "error_kind": e.kind.value,
                    "error": e.message,
                    "status_code": e.status_code,
                    "attempts": e.attempts,
                    "elapsed_seconds": round(elapsed, 3),
                },
            )
            raise

        elapsed = time.perf_counter() - start
        self._record(elapsed, success=True, tokens=completion.total_tokens)
        if parsed.repaired:
            self._metrics.repaired_responses += 1
        self._metrics.dropped_mentions += parsed.dropped_mentions
        extraction_requests_total.labels(provider=self.provider_name, outcome="success").inc()
        stage_duration_seconds.labels(stage="extraction").observe(elapsed)

        logger.info(
            "LLM extraction completed",
            extra={
                "provider": self.provider_name,
                "model": completion.model,
                "mentions": parsed.output.mention_count,
                "repaired": parsed.repaired,
                "dropped_mentions": parsed.dropped_mentions,
                "tokens": completion.total_tokens,
                "finish_reason": completion.finish_reason,
                "elapsed_seconds": round(elapsed, 3),
            },
        )
        return parsed.output

    def _record(self, elapsed: float, success: bool, tokens: int | None = None) -> None:
        m = self._metrics
        m.request_count += 1
        m.total_response_time += elapsed
        m.average_response_time = m.total_response_time / m.request_count
        if tokens:
            m.total_tokens_used += tokens
        if not success:
            m.error_count += 1
        m.success_rate = (m.request_count - m.error_count) / m.request_count * 100

    def get_performance_metrics(self) -> dict:
        """Return a snapshot of request counters."""
        return asdict(self._metrics)

    def reset_performance_metrics(self) -> None:
        self._metrics = ExtractionPerformanceMetrics(last_reset=time.time())

    async def health_check(self) -> dict:
        """Provider connectivity plus in-process metrics."""
        status = await self._transport.health_check()
        status["metrics"] = self.get_performance_metrics()
        status["rate_limit"] = (
            await self._coordinator.get_status(ExternalApiService.LLM_API, RATE_LIMIT_OPERATION)
        ).model_dump(mode="json")
        return status

    async def close(self) -> None:
        await self._transport.close()
