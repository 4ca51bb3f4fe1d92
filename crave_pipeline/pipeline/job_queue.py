"""
Job queue abstraction layer.

Producers submit processing jobs through JobQueueService instead of
talking to Celery directly, so they can be tested without a broker and the
queue backend can be swapped.
"""

import logging
from abc import ABC, abstractmethod

from crave_pipeline.schemas.jobs import JobResult, JobState, JobStatus, ProcessingJob

logger = logging.getLogger(__name__)

PROCESS_POST_TASK = "crave_pipeline.tasks.processing.process_post"

# Celery task states as seen by job queue consumers
CELERY_STATE_MAP = {
    "PENDING": JobState.WAITING,
    "RECEIVED": JobState.WAITING,
    "STARTED": JobState.ACTIVE,
    "SUCCESS": JobState.COMPLETED,
    "FAILURE": JobState.FAILED,
    "REVOKED": JobState.FAILED,
    "RETRY": JobState.DELAYED,
}


def job_kwargs(job: ProcessingJob) -> dict:
    """Task keyword arguments for a job."""
    return {
        "post_id": job.post_id,
        "subreddit": job.subreddit,
        "options": job.options.model_dump(exclude_none=True),
        "correlation_id": job.correlation_id,
        "requested_by": job.requested_by,
    }


class JobQueueService(ABC):
    """Interface for submitting and tracking processing jobs."""

    @abstractmethod
    def submit_job(self, job: ProcessingJob, delay: float | None = None) -> str:
        """
        Submit a job for asynchronous processing.

        Args:
            job: The post to process
            delay: Seconds to wait before the job becomes eligible

        Returns:
            The job id
        """
        ...

    @abstractmethod
    def cancel_job(self, job_id: str, terminate: bool = True) -> bool:
        """Cancel a queued or running job. Returns True if requested."""
        ...

    @abstractmethod
    def get_job_status(self, job_id: str) -> JobStatus:
        """Current status of a job."""
        ...


class CeleryJobQueue(JobQueueService):
    """Celery implementation of JobQueueService."""

    def __init__(self, app=None):
        self._app = app

    @property
    def app(self):
        """Lazy load Celery app to avoid import cycles."""
        if self._app is None:
            from crave_pipeline.celery_app import celery_app

            self._app = celery_app
        return self._app

    def submit_job(self, job: ProcessingJob, delay: float | None = None) -> str:
        task = self.app.send_task(
            PROCESS_POST_TASK,
            kwargs=job_kwargs(job),
            countdown=delay,
        )
        logger.info(
            "Job submitted",
            extra={
                "job_id": task.id,
                "post_id": job.post_id,
                "correlation_id": job.correlation_id,
            },
        )
        return task.id

    def cancel_job(self, job_id: str, terminate: bool = True) -> bool:
        try:
            self.app.control.revoke(job_id, terminate=terminate)
        except Exception as e:
            logger.warning(
                f"Failed to revoke job {job_id}: {e}",
                extra={"job_id": job_id, "error": str(e)},
            )
            return False
        logger.info("Job revoked", extra={"job_id": job_id, "terminate": terminate})
        return True

    def get_job_status(self, job_id: str) -> JobStatus:
        result = self.app.AsyncResult(job_id)
        state = CELERY_STATE_MAP.get(result.state, JobState.WAITING)
        status = JobStatus(job_id=job_id, status=state)

        if state is JobState.COMPLETED and isinstance(result.result, dict):
            status.result = JobResult.model_validate(result.result)
            status.progress = 100
        elif state is JobState.FAILED:
            status.failed_reason = str(result.result) if result.result else "Job revoked"
        return status


class InMemoryJobQueue(JobQueueService):
    """
    In-memory implementation for testing.

    Records submitted jobs without executing them; tests drive state
    transitions through set_state().
    """

    def __init__(self):
        self.jobs: dict[str, ProcessingJob] = {}
        self._statuses: dict[str, JobStatus] = {}
        self._next_id = 1

    def submit_job(self, job: ProcessingJob, delay: float | None = None) -> str:
        job_id = f"test-job-{self._next_id}"
        self._next_id += 1
        self.jobs[job_id] = job
        state = JobState.DELAYED if delay else JobState.WAITING
        self._statuses[job_id] = JobStatus(job_id=job_id, status=state)
        return job_id

    def cancel_job(self, job_id: str, terminate: bool = True) -> bool:
        status = self._statuses.get(job_id)
        if status is None:
            return False
        status.status = JobState.FAILED
        status.failed_reason = "Job revoked"
        return True

    def get_job_status(self, job_id: str) -> JobStatus:
        status = self._statuses.get(job_id)
        if status is None:
            return JobStatus(job_id=job_id, status=JobState.WAITING)
        return status.model_copy()

    def set_state(self, job_id: str, state: JobState, failed_reason: str | None = None) -> None:
        status = self._statuses[job_id]
        status.status = state
        status.failed_reason = failed_reason

    def clear(self) -> None:
        self.jobs.clear()
        self._statuses.clear()
        self._next_id = 1


_job_queue: JobQueueService | None = None


def get_job_queue() -> JobQueueService:
    """Get the job queue service instance (Celery by default)."""
    global _job_queue
    if _job_queue is None:
        _job_queue = CeleryJobQueue()
    return _job_queue


def set_job_queue(queue: JobQueueService) -> None:
    """
    Set the job queue service instance.

    Useful for testing:
        set_job_queue(InMemoryJobQueue())
    """
    global _job_queue
    _job_queue = queue


def reset_job_queue() -> None:
    global _job_queue
    _job_queue = None
