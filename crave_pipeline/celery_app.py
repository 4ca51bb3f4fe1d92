"""
Celery application configuration for background job processing.

Processing jobs (one post plus its comments) are consumed from the
"processing" queue; see crave_pipeline.tasks.processing.
"""

import logging
import os

from celery import Celery
from celery.signals import after_setup_logger, after_setup_task_logger
from kombu import Exchange, Queue

from crave_pipeline.core.config import settings
from crave_pipeline.core.context import clear_correlation_id, set_correlation_id
from crave_pipeline.observability import StructuredJsonFormatter

celery_app = Celery(
    "crave_pipeline",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,

    result_expires=86400,
    result_extended=True,

    # Jobs are long (LLM calls); one at a time per worker process
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=100,
    worker_concurrency=settings.WORKER_CONCURRENCY,

    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,

    task_routes={
        "crave_pipeline.tasks.processing.*": {"queue": "processing"},
    },
)

celery_app.conf.task_queues = (
    Queue(
        "processing",
        Exchange("processing"),
        routing_key="processing",
        queue_arguments={"x-max-priority": 10},
    ),
)
celery_app.conf.task_default_queue = "processing"

celery_app.autodiscover_tasks(["crave_pipeline.tasks.processing"])


# =============================================================================
# Celery Logging Configuration
# =============================================================================

def _setup_celery_json_logging(logger: logging.Logger, **kwargs) -> None:
    """Replace Celery's default handlers with the structured JSON formatter."""
    is_testing = os.getenv("TESTING", "false").lower() == "true"

    if is_testing:
        return

    logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(logging.INFO)
    handler.setFormatter(StructuredJsonFormatter())
    logger.addHandler(handler)


@after_setup_logger.connect
def setup_celery_logger(logger: logging.Logger, **kwargs) -> None:
    """Configure the main Celery logger."""
    _setup_celery_json_logging(logger, **kwargs)


@after_setup_task_logger.connect
def setup_celery_task_logger(logger: logging.Logger, **kwargs) -> None:
    """Configure the Celery task logger."""
    _setup_celery_json_logging(logger, **kwargs)


class CorrelatedTask(celery_app.Task):
    """
    Base task class that binds the job correlation id.

    Every log line emitted while the task runs carries the correlation id
    passed by the job producer.
    """

    abstract = True

    def before_start(self, task_id, args, kwargs):
        correlation_id = kwargs.get("correlation_id")
        if correlation_id:
            set_correlation_id(correlation_id)

    def after_return(self, status, retval, task_id, args, kwargs, einfo):
        clear_correlation_id()

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger = logging.getLogger(__name__)
        logger.error(
            f"Task {self.name} failed",
            extra={
                "task_id": task_id,
                "post_id": kwargs.get("post_id"),
                "error": str(exc),
            },
            exc_info=True,
        )


celery_app.Task = CorrelatedTask
