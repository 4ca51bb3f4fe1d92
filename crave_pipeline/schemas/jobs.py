"""
Pydantic schemas for processing jobs delivered by the job queue.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from crave_pipeline.schemas.entities import ResolutionFailure, ResolutionMetrics


class ProcessingOptions(BaseModel):
    """Per-job fetch options."""

    comment_limit: int | None = Field(None, ge=1, le=1000)
    sort: Literal["new", "old", "top", "controversial"] | None = None


class ProcessingJob(BaseModel):
    """One post (plus its comments) to run through the pipeline."""

    post_id: str = Field(..., min_length=1)
    subreddit: str = Field(..., min_length=1)
    correlation_id: str = Field(..., min_length=1)
    requested_by: str | None = None
    options: ProcessingOptions = Field(default_factory=ProcessingOptions)


class JobState(str, Enum):
    """Lifecycle states reported to job queue consumers."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    PAUSED = "paused"


class JobResult(BaseModel):
    """Outcome and counts of a processed job.

    The counts let operators tell "nothing to do" (all duplicates) apart
    from "something went wrong" (skipped items, resolution failures).
    """

    post_id: str
    subreddit: str
    correlation_id: str
    items_fetched: int = 0
    duplicates_filtered: int = 0
    skipped_items: int = 0
    items_processed: int = 0
    mentions_extracted: int = 0
    mentions_resolved: int = 0
    mentions_failed: int = 0
    connections_updated: int = 0
    llm_called: bool = False
    scope: str | None = None
    duration_ms: int = 1
    stage_timings_ms: dict[str, int] = Field(default_factory=dict)
    resolution_metrics: ResolutionMetrics | None = None
    failures: list[ResolutionFailure] = Field(default_factory=list)
    warnings: list[dict[str, Any]] = Field(default_factory=list)


class JobStatus(BaseModel):
    """Status of a job as seen by the queue consumer."""

    job_id: str
    status: JobState
    progress: int | None = Field(None, ge=0, le=100)
    result: JobResult | None = None
    failed_reason: str | None = None
    position: int | None = None
    estimated_completion: datetime | None = None
