"""
Bounded asyncio worker pool for processing jobs.

A fixed number of workers consume jobs from an in-process queue. Each
worker runs one job at a time through the orchestrator, so at most
`concurrency` jobs are in flight. Job status is tracked for the queue
consumer: waiting, delayed, active, completed, failed, or paused while the
pool is paused. Statuses of the most recent finished jobs are kept up to
`max_finished_jobs`; older ones are forgotten.
"""

import asyncio
import logging
import uuid
from collections import deque
from datetime import UTC, datetime, timedelta

from crave_pipeline.core.config import settings
from crave_pipeline.core.errors import PipelineError
from crave_pipeline.observability import active_jobs, pipeline_errors_total
from crave_pipeline.pipeline.orchestrator import PipelineOrchestrator
from crave_pipeline.schemas.jobs import JobState, JobStatus, ProcessingJob

logger = logging.getLogger(__name__)

# Recent job durations used for completion estimates
DURATION_WINDOW = 20


class WorkerPool:
    """Runs jobs through the orchestrator with bounded concurrency.

    Example:
        pool = WorkerPool(orchestrator, concurrency=5)
        await pool.start()
        job_id = await pool.submit(job)
        status = await pool.wait_for(job_id)
        await pool.stop()
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        concurrency: int | None = None,
        max_finished_jobs: int | None = None,
    ):
        concurrency = concurrency if concurrency is not None else settings.WORKER_CONCURRENCY
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_finished_jobs is None:
            max_finished_jobs = settings.WORKER_MAX_FINISHED_JOBS
        if max_finished_jobs < 1:
            raise ValueError("max_finished_jobs must be at least 1")
        self.max_finished_jobs = max_finished_jobs
        self._orchestrator = orchestrator
        self.concurrency = concurrency
        self._queue: asyncio.Queue[tuple[str, ProcessingJob]] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._delayed: dict[str, asyncio.Task] = {}
        self._statuses: dict[str, JobStatus] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._waiting: list[str] = []
        self._running = asyncio.Event()
        self._running.set()
        self._completed_durations: deque[float] = deque(maxlen=DURATION_WINDOW)
        self._finished: deque[str] = deque()

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    async def start(self) -> None:
        """Spawn the workers. Calling start twice is a no-op."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"pipeline-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Worker pool started", extra={"concurrency": self.concurrency})

    async def stop(self, drain: bool = True) -> None:
        """Stop the workers.

        Args:
            drain: Wait for queued jobs to finish before stopping. Delayed
                jobs that have not been enqueued yet are cancelled either way.
        """
        for task in self._delayed.values():
            task.cancel()
        self._delayed.clear()

        if drain and self._workers:
            self._running.set()
            await self._queue.join()

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Worker pool stopped", extra={"drained": drain})

    def pause(self) -> None:
        """Stop handing out new jobs; jobs already running continue."""
        self._running.clear()
        logger.info("Worker pool paused")

    def resume(self) -> None:
        self._running.set()
        logger.info("Worker pool resumed")

    async def submit(self, job: ProcessingJob, delay: float | None = None) -> str:
        """Queue a job, optionally after a delay in seconds. Returns the job id."""
        job_id = uuid.uuid4().hex
        self._done[job_id] = asyncio.Event()

        if delay and delay > 0:
            self._statuses[job_id] = JobStatus(job_id=job_id, status=JobState.DELAYED)
            self._delayed[job_id] = asyncio.create_task(self._enqueue_later(job_id, job, delay))
        else:
            self._enqueue(job_id, job)

        logger.info(
            "Job submitted",
            extra={
                "job_id": job_id,
                "post_id": job.post_id,
                "correlation_id": job.correlation_id,
                "delay_seconds": delay,
            },
        )
        return job_id

    def _enqueue(self, job_id: str, job: ProcessingJob) -> None:
        self._statuses[job_id] = JobStatus(job_id=job_id, status=JobState.WAITING)
        self._waiting.append(job_id)
        self._queue.put_nowait((job_id, job))

    async def _enqueue_later(self, job_id: str, job: ProcessingJob, delay: float) -> None:
        await asyncio.sleep(delay)
        self._delayed.pop(job_id, None)
        self._enqueue(job_id, job)

    def get_status(self, job_id: str) -> JobStatus | None:
        """Current status of a job, or None for an unknown id."""
        status = self._statuses.get(job_id)
        if status is None:
            return None
        status = status.model_copy()

        if job_id in self._waiting:
            position = self._waiting.index(job_id) + 1
            status.position = position
            status.estimated_completion = self._estimate_completion(position)
            if self.is_paused:
                status.status = JobState.PAUSED
        return status

    def _estimate_completion(self, position: int) -> datetime | None:
        if not self._completed_durations:
            return None
        average = sum(self._completed_durations) / len(self._completed_durations)
        rounds = (position - 1) // self.concurrency + 1
        return datetime.now(UTC) + timedelta(seconds=average * rounds)

    async def wait_for(self, job_id: str, timeout: float | None = None) -> JobStatus:
        """Block until a job completes or fails.

        Raises:
            KeyError: Unknown job id, or a finished job already forgotten
            TimeoutError: The job did not finish within timeout
        """
        event = self._done[job_id]
        await asyncio.wait_for(event.wait(), timeout=timeout)
        return self._statuses[job_id].model_copy()

    async def _worker(self, index: int) -> None:
        while True:
            job_id, job = await self._queue.get()
            try:
                await self._running.wait()
                self._waiting.remove(job_id)
                await self._execute(job_id, job)
            finally:
                self._queue.task_done()

    async def _execute(self, job_id: str, job: ProcessingJob) -> None:
        status = self._statuses[job_id]
        status.status = JobState.ACTIVE
        status.progress = 0
        loop = asyncio.get_running_loop()
        started = loop.time()
        active_jobs.inc()

        def on_progress(value: int) -> None:
            status.progress = value

        try:
            result = await self._orchestrator.process_job(job, progress=on_progress)
        except asyncio.CancelledError:
            status.status = JobState.FAILED
            status.failed_reason = "Job cancelled"
            raise
        except PipelineError as e:
            status.status = JobState.FAILED
            status.failed_reason = e.message
            logger.warning(
                "Job failed",
                extra={"job_id": job_id, "post_id": job.post_id, "error": e.to_dict()},
            )
        except Exception as e:
            status.status = JobState.FAILED
            status.failed_reason = f"Unexpected error: {e}"
            pipeline_errors_total.labels(kind="unexpected", stage="job").inc()
            logger.exception(
                "Job failed with unexpected error",
                extra={"job_id": job_id, "post_id": job.post_id},
            )
        else:
            status.status = JobState.COMPLETED
            status.result = result
            status.progress = 100
            self._completed_durations.append(loop.time() - started)
        finally:
            active_jobs.dec()
            self._done[job_id].set()
            self._record_finished(job_id)

    def _record_finished(self, job_id: str) -> None:
        self._finished.append(job_id)
        while len(self._finished) > self.max_finished_jobs:
            oldest = self._finished.popleft()
            self._statuses.pop(oldest, None)
            self._done.pop(oldest, None)
