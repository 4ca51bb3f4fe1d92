"""
Celery task wrapper for processing jobs.

Business logic lives in PipelineOrchestrator; this module handles the
Celery side: task lifecycle, retries, and running the async pipeline
from a synchronous worker.
"""

import asyncio
import logging

from celery import shared_task

from crave_pipeline.core.config import settings
from crave_pipeline.core.errors import PipelineError
from crave_pipeline.extraction.client import ExtractionClient
from crave_pipeline.pipeline.factory import build_orchestrator, get_pipeline_components
from crave_pipeline.ratelimit.coordinator import (
    RateLimitCoordinator,
    build_rate_limit_configs,
    create_rate_limit_store,
    get_rate_limit_coordinator,
)
from crave_pipeline.schemas.jobs import JobResult, ProcessingJob, ProcessingOptions

logger = logging.getLogger(__name__)


async def _run_job(job: ProcessingJob) -> JobResult:
    """Run one job in the current event loop.

    Each task runs in its own asyncio.run() loop, so loop-bound clients
    (the LLM HTTP pool, and the Redis pool when rate limits are shared
    through Redis) are created per run and closed afterwards.
    """
    components = get_pipeline_components()
    if settings.RATE_LIMIT_BACKEND == "redis":
        coordinator = RateLimitCoordinator(
            configs=build_rate_limit_configs(settings),
            store=create_rate_limit_store(settings),
        )
    else:
        coordinator = get_rate_limit_coordinator()

    client = ExtractionClient(coordinator=coordinator)
    try:
        orchestrator = build_orchestrator(components, extraction_client=client)
        return await orchestrator.process_job(job)
    finally:
        await client.close()
        if coordinator is not get_rate_limit_coordinator():
            await coordinator.close()


@shared_task(
    bind=True,
    name="crave_pipeline.tasks.processing.process_post",
    max_retries=settings.CELERY_TASK_MAX_RETRIES,
    default_retry_delay=30,
    acks_late=True,
)
def process_post(
    self,
    post_id: str,
    subreddit: str,
    options: dict | None = None,
    correlation_id: str | None = None,
    requested_by: str | None = None,
) -> dict:
    """
    Process one post and its comments end-to-end.

    Args:
        post_id: Reddit post id (with or without the t3_ prefix)
        subreddit: Subreddit the post belongs to
        options: Fetch options (comment_limit, sort)
        correlation_id: Producer-supplied id carried through every log line;
            the task id is used when omitted
        requested_by: Who requested the job

    Returns:
        dict: The serialized JobResult
    """
    job = ProcessingJob(
        post_id=post_id,
        subreddit=subreddit,
        correlation_id=correlation_id or self.request.id,
        requested_by=requested_by,
        options=ProcessingOptions.model_validate(options or {}),
    )

    logger.info(
        "Processing task started",
        extra={
            "task_id": self.request.id,
            "post_id": post_id,
            "subreddit": subreddit,
            "retries": self.request.retries,
        },
    )

    try:
        result = asyncio.run(_run_job(job))
    except PipelineError as e:
        if e.retryable and self.request.retries < self.max_retries:
            countdown = int(e.retry_after) if e.retry_after else self.default_retry_delay
            logger.warning(
                "Processing task will be retried",
                extra={
                    "task_id": self.request.id,
                    "post_id": post_id,
                    "countdown": countdown,
                    "error": e.to_dict(),
                },
            )
            raise self.retry(exc=e, countdown=countdown) from e
        raise

    return result.model_dump(mode="json")
