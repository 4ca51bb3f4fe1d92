"""
Job processing pipeline: orchestrator, worker pool and job queue.

Example:
    from crave_pipeline.pipeline import WorkerPool, build_orchestrator, configure_pipeline

    configure_pipeline(content_source=reddit_source)
    pool = WorkerPool(build_orchestrator())
    await pool.start()
    job_id = await pool.submit(job)
"""

from crave_pipeline.pipeline.factory import (
    PipelineComponents,
    build_orchestrator,
    configure_pipeline,
    get_pipeline_components,
    reset_pipeline,
)
from crave_pipeline.pipeline.interfaces import ContentSource, QualityScoreTrigger
from crave_pipeline.pipeline.job_queue import (
    CeleryJobQueue,
    InMemoryJobQueue,
    JobQueueService,
    get_job_queue,
    reset_job_queue,
    set_job_queue,
)
from crave_pipeline.pipeline.llm_input import build_llm_input
from crave_pipeline.pipeline.orchestrator import PipelineOrchestrator
from crave_pipeline.pipeline.worker_pool import WorkerPool

__all__ = [
    "PipelineComponents",
    "build_orchestrator",
    "configure_pipeline",
    "get_pipeline_components",
    "reset_pipeline",
    "ContentSource",
    "QualityScoreTrigger",
    "CeleryJobQueue",
    "InMemoryJobQueue",
    "JobQueueService",
    "get_job_queue",
    "reset_job_queue",
    "set_job_queue",
    "build_llm_input",
    "PipelineOrchestrator",
    "WorkerPool",
]
