"""
Unit tests for the job queue abstraction.

Tests cover:
- InMemoryJobQueue for producer tests
- CeleryJobQueue against a mocked Celery app
- get/set/reset singleton helpers
"""

from unittest.mock import MagicMock

import pytest

from crave_pipeline.pipeline.job_queue import (
    PROCESS_POST_TASK,
    CeleryJobQueue,
    InMemoryJobQueue,
    get_job_queue,
    reset_job_queue,
    set_job_queue,
)
from crave_pipeline.schemas.jobs import JobState, ProcessingJob, ProcessingOptions


@pytest.fixture
def job() -> ProcessingJob:
    return ProcessingJob(
        post_id="abc123",
        subreddit="austinfood",
        correlation_id="corr-1",
        requested_by="scheduler",
        options=ProcessingOptions(comment_limit=200),
    )


@pytest.fixture(autouse=True)
def reset_singleton():
    reset_job_queue()
    yield
    reset_job_queue()


# =============================================================================
# InMemory
# =============================================================================


class TestInMemoryJobQueue:
    """Tests for the in-memory implementation."""

    def test_submit_records_job(self, job):
        queue = InMemoryJobQueue()

        job_id = queue.submit_job(job)

        assert job_id == "test-job-1"
        assert queue.jobs[job_id] is job
        assert queue.get_job_status(job_id).status == JobState.WAITING

    def test_delayed_submit(self, job):
        queue = InMemoryJobQueue()
        job_id = queue.submit_job(job, delay=30)
        assert queue.get_job_status(job_id).status == JobState.DELAYED

    def test_cancel(self, job):
        queue = InMemoryJobQueue()
        job_id = queue.submit_job(job)

        assert queue.cancel_job(job_id) is True
        assert queue.cancel_job("missing") is False
        status = queue.get_job_status(job_id)
        assert status.status == JobState.FAILED
        assert status.failed_reason == "Job revoked"

    def test_set_state_and_clear(self, job):
        queue = InMemoryJobQueue()
        job_id = queue.submit_job(job)

        queue.set_state(job_id, JobState.ACTIVE)
        assert queue.get_job_status(job_id).status == JobState.ACTIVE

        queue.clear()
        assert queue.jobs == {}
        assert queue.submit_job(job) == "test-job-1"


# =============================================================================
# Celery
# =============================================================================


class TestCeleryJobQueue:
    """Tests for the Celery implementation."""

    def test_submit_sends_task(self, job):
        app = MagicMock()
        app.send_task.return_value.id = "celery-id"
        queue = CeleryJobQueue(app=app)

        job_id = queue.submit_job(job, delay=10)

        assert job_id == "celery-id"
        app.send_task.assert_called_once_with(
            PROCESS_POST_TASK,
            kwargs={
                "post_id": "abc123",
                "subreddit": "austinfood",
                "options": {"comment_limit": 200},
                "correlation_id": "corr-1",
                "requested_by": "scheduler",
            },
            countdown=10,
        )

    def test_cancel_revokes(self):
        app = MagicMock()
        queue = CeleryJobQueue(app=app)

        assert queue.cancel_job("celery-id") is True
        app.control.revoke.assert_called_once_with("celery-id", terminate=True)

    def test_cancel_failure_returns_false(self):
        app = MagicMock()
        app.control.revoke.side_effect = ConnectionError("broker down")
        assert CeleryJobQueue(app=app).cancel_job("celery-id") is False

    def test_completed_status_parses_result(self):
        app = MagicMock()
        app.AsyncResult.return_value.state = "SUCCESS"
        app.AsyncResult.return_value.result = {
            "post_id": "abc123",
            "subreddit": "austinfood",
            "correlation_id": "corr-1",
            "scope": "austin",
            "mentions_resolved": 4,
        }

        status = CeleryJobQueue(app=app).get_job_status("celery-id")

        assert status.status == JobState.COMPLETED
        assert status.progress == 100
        assert status.result.mentions_resolved == 4

    @pytest.mark.parametrize(
        "state,expected",
        [
            ("PENDING", JobState.WAITING),
            ("STARTED", JobState.ACTIVE),
            ("RETRY", JobState.DELAYED),
        ],
    )
    def test_state_mapping(self, state, expected):
        app = MagicMock()
        app.AsyncResult.return_value.state = state
        assert CeleryJobQueue(app=app).get_job_status("x").status == expected

    def test_failed_status_has_reason(self):
        app = MagicMock()
        app.AsyncResult.return_value.state = "FAILURE"
        app.AsyncResult.return_value.result = ValueError("bad input")

        status = CeleryJobQueue(app=app).get_job_status("x")

        assert status.status == JobState.FAILED
        assert status.failed_reason == "bad input"


class TestSingleton:
    """Tests for get/set/reset helpers."""

    def test_default_is_celery(self):
        assert isinstance(get_job_queue(), CeleryJobQueue)

    def test_set_job_queue(self):
        queue = InMemoryJobQueue()
        set_job_queue(queue)
        assert get_job_queue() is queue
