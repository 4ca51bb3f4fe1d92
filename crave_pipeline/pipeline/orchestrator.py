"""
Pipeline orchestrator.

Runs one job end-to-end: fetch the post and its comments, filter
duplicates, extract mentions with the LLM, resolve them to canonical
entities, and notify the quality score collaborator. Each job is
internally sequential; parallelism comes from running many jobs at once
(see worker_pool).

The job-level timeout cancels whatever stage is in flight, including an
extraction call. Resolution writes that already landed are kept; they are
idempotent upserts, so a retried job converges instead of duplicating.
Duplicate tracking for a job that fails during extraction or resolution
is released, so the retry sees its items as new.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from uuid import UUID

from crave_pipeline.collection.duplicates import DuplicateDetector
from crave_pipeline.core.config import settings
from crave_pipeline.core.context import correlation_scope
from crave_pipeline.core.errors import JobTimeoutError, PipelineError
from crave_pipeline.extraction.client import ExtractionClient
from crave_pipeline.observability import (
    jobs_total,
    pipeline_errors_total,
    stage_duration_seconds,
)
from crave_pipeline.pipeline.interfaces import ContentSource, QualityScoreTrigger
from crave_pipeline.pipeline.llm_input import build_llm_input
from crave_pipeline.resolution.resolver import EntityResolver
from crave_pipeline.schemas.entities import ResolutionResult
from crave_pipeline.schemas.jobs import JobResult, ProcessingJob

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

# Progress reported after each stage
_PROGRESS = {
    "fetch": 10,
    "deduplication": 25,
    "extraction": 70,
    "resolution": 90,
    "quality_update": 100,
}


class PipelineOrchestrator:
    """Composes the pipeline stages for a single job.

    Collaborators are injected so the same orchestrator runs inside the
    asyncio worker pool, a Celery worker, or a test with fakes.
    """

    def __init__(
        self,
        content_source: ContentSource,
        detector: DuplicateDetector,
        extraction_client: ExtractionClient,
        resolver: EntityResolver,
        quality_trigger: QualityScoreTrigger | None = None,
        job_timeout: float | None = None,
        coverage_scopes: dict[str, str] | None = None,
    ):
        self._content_source = content_source
        self._detector = detector
        self._extraction_client = extraction_client
        self._resolver = resolver
        self._quality_trigger = quality_trigger
        self._job_timeout = job_timeout if job_timeout is not None else settings.JOB_TIMEOUT_SECONDS
        scopes = coverage_scopes if coverage_scopes is not None else settings.COVERAGE_SCOPES
        self._coverage_scopes = {k.lower(): v for k, v in scopes.items()}

    def scope_for(self, subreddit: str) -> str:
        """Coverage scope for a subreddit; unmapped subreddits scope to themselves."""
        key = subreddit.lower()
        return self._coverage_scopes.get(key, key)

    async def process_job(
        self, job: ProcessingJob, progress: ProgressCallback | None = None
    ) -> JobResult:
        """Process one job under its correlation id and the job timeout.

        Raises:
            JobTimeoutError: If the job exceeded the configured timeout
            PipelineError: Fatal stage errors (configuration, authentication,
                exhausted retries, unparseable responses)
        """
        with correlation_scope(job.correlation_id):
            start = time.perf_counter()
            logger.info(
                "Job started",
                extra={
                    "post_id": job.post_id,
                    "subreddit": job.subreddit,
                    "requested_by": job.requested_by,
                },
            )
            try:
                result = await asyncio.wait_for(
                    self._run(job, progress), timeout=self._job_timeout
                )
            except TimeoutError as e:
                jobs_total.labels(status="failed").inc()
                pipeline_errors_total.labels(kind="timeout", stage="job").inc()
                logger.error(
                    "Job timed out",
                    extra={"post_id": job.post_id, "timeout_seconds": self._job_timeout},
                )
                raise JobTimeoutError(
                    f"Job for post {job.post_id} exceeded {self._job_timeout}s",
                    context={"post_id": job.post_id, "subreddit": job.subreddit},
                    cause=e,
                ) from e
            except PipelineError as e:
                jobs_total.labels(status="failed").inc()
                logger.error(
                    "Job failed",
                    extra={"post_id": job.post_id, "error": e.to_dict()},
                )
                raise

            result.duration_ms = max(1, int((time.perf_counter() - start) * 1000))
            jobs_total.labels(status="completed").inc()
            logger.info(
                "Job completed",
                extra={
                    "post_id": job.post_id,
                    "duration_ms": result.duration_ms,
                    "items_fetched": result.items_fetched,
                    "duplicates_filtered": result.duplicates_filtered,
                    "mentions_extracted": result.mentions_extracted,
                    "mentions_resolved": result.mentions_resolved,
                    "mentions_failed": result.mentions_failed,
                },
            )
            return result

    @contextmanager
    def _stage(
        self, name: str, result: JobResult, observe: bool = True
    ) -> Iterator[None]:
        start = time.perf_counter()
        yield
        elapsed = time.perf_counter() - start
        result.stage_timings_ms[name] = max(1, int(elapsed * 1000))
        if observe:
            stage_duration_seconds.labels(stage=name).observe(elapsed)

    async def _run(
        self, job: ProcessingJob, progress: ProgressCallback | None
    ) -> JobResult:
        def report(stage: str) -> None:
            if progress is not None:
                progress(_PROGRESS[stage])

        result = JobResult(
            post_id=job.post_id,
            subreddit=job.subreddit,
            correlation_id=job.correlation_id,
            scope=self.scope_for(job.subreddit),
        )

        with self._stage("fetch", result):
            items = await self._content_source.fetch_post_with_comments(
                job.post_id, job.subreddit, job.options
            )
        result.items_fetched = len(items)
        report("fetch")

        with self._stage("deduplication", result):
            filtered = self._detector.detect_and_filter_duplicates(items)
        analysis = filtered.analysis
        result.duplicates_filtered = analysis.duplicates_found
        result.skipped_items = analysis.skipped_items
        result.warnings.extend(analysis.skipped)
        result.items_processed = len(filtered.filtered_items)
        report("deduplication")

        if not filtered.filtered_items:
            logger.info(
                "Nothing new to process",
                extra={
                    "post_id": job.post_id,
                    "items_fetched": result.items_fetched,
                    "duplicates_filtered": result.duplicates_filtered,
                },
            )
            report("quality_update")
            return result

        try:
            llm_input = build_llm_input(filtered.filtered_items)
            with self._stage("extraction", result, observe=False):
                output = await self._extraction_client.process_content(llm_input)
            result.llm_called = bool(llm_input.posts)
            result.mentions_extracted = len(output.mentions)
            report("extraction")

            with self._stage("resolution", result, observe=False):
                resolution = await self._resolver.resolve_mentions(
                    output.mentions, scope=result.scope
                )
        except BaseException:
            # Items were never fully processed; a retry must see them as new.
            self._detector.release(filtered)
            raise
        result.mentions_resolved = len(resolution.resolved)
        result.mentions_failed = len(resolution.failures)
        result.failures = resolution.failures
        result.connections_updated = len(resolution.connections)
        result.resolution_metrics = resolution.metrics
        report("resolution")

        if resolution.resolved:
            with self._stage("quality_update", result):
                await self._notify_quality_trigger(job, resolution, result)
        report("quality_update")

        return result

    async def _notify_quality_trigger(
        self, job: ProcessingJob, resolution: ResolutionResult, result: JobResult
    ) -> None:
        if self._quality_trigger is None:
            return

        entity_ids: set[UUID] = set()
        for resolved in resolution.resolved:
            entity_ids.add(resolved.restaurant.entity_id)
            if resolved.dish is not None:
                entity_ids.add(resolved.dish.entity_id)

        try:
            await self._quality_trigger.on_entities_updated(
                entity_ids, resolution.connections, job.correlation_id
            )
        except Exception as e:
            # Scores are recomputed on the next update; the job's writes stand.
            kind = e.kind.value if isinstance(e, PipelineError) else "unexpected"
            pipeline_errors_total.labels(kind=kind, stage="quality_update").inc()
            logger.warning(
                "Quality score update failed",
                extra={
                    "post_id": job.post_id,
                    "entity_count": len(entity_ids),
                    "error": str(e),
                },
                exc_info=True,
            )
            result.warnings.append(
                {"stage": "quality_update", "kind": kind, "reason": str(e)}
            )
