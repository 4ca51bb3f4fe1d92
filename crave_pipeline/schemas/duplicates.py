"""
Pydantic schemas for cross-source duplicate detection.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from crave_pipeline.schemas.content import DataSourceType


class ContentIdentifier(BaseModel):
    """Normalized identity of a post or comment.

    normalized_key is ``type:id`` with any source-type prefix (t1_, t3_, ...)
    stripped from the id.
    """

    id: str
    type: Literal["post", "comment"]
    normalized_key: str


class DuplicateSourceInfo(BaseModel):
    """Where and when a content identity was observed."""

    source_type: DataSourceType
    first_seen: datetime
    batch_id: str | None = None
    source_metadata: dict[str, Any] = Field(default_factory=dict)


class DuplicateTrackingEntry(BaseModel):
    """Cache entry for one tracked identity."""

    identifier: ContentIdentifier
    source_info: DuplicateSourceInfo
    normalized_timestamp: float
    last_accessed: int = Field(..., description="Monotonic access sequence number")


class DuplicateDetectionResult(BaseModel):
    """Outcome of checking one item against the tracking cache."""

    identifier: ContentIdentifier
    is_duplicate: bool
    original_source: DuplicateSourceInfo | None = None
    current_source: DuplicateSourceInfo
    time_diff_seconds: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class OverlapPattern(BaseModel):
    sources: list[DataSourceType]
    count: int
    percentage: float


class TimeDiffBucket(BaseModel):
    range_hours: str
    count: int


class TemporalOverlapAnalysis(BaseModel):
    avg_time_diff_hours: float = 0.0
    max_time_diff_hours: float = 0.0
    time_diff_distribution: list[TimeDiffBucket] = Field(default_factory=list)


class SourceOverlapAnalysis(BaseModel):
    """Which sources produced the duplicates in a batch."""

    source_breakdown: dict[DataSourceType, int] = Field(default_factory=dict)
    overlap_matrix: dict[str, int] = Field(
        default_factory=dict, description="'sourceA→sourceB' -> duplicate count"
    )
    common_overlap_patterns: list[OverlapPattern] = Field(default_factory=list)
    temporal_overlap_analysis: TemporalOverlapAnalysis = Field(
        default_factory=TemporalOverlapAnalysis
    )


class DuplicateDetectionPerformance(BaseModel):
    start_time: datetime
    end_time: datetime
    duration_ms: int
    throughput_per_second: float
    cache_size: int


class BatchDuplicateAnalysis(BaseModel):
    """Analysis of one detect-and-filter call."""

    detection_results: list[DuplicateDetectionResult]
    total_items: int
    duplicates_found: int
    unique_items: int
    skipped_items: int = 0
    duplicate_rate: float = Field(..., description="Percentage of items flagged duplicate")
    skipped: list[dict[str, Any]] = Field(default_factory=list)
    source_overlap_analysis: SourceOverlapAnalysis | None = None
    performance_metrics: DuplicateDetectionPerformance


class DuplicateDetectionConfig(BaseModel):
    """Per-call configuration for duplicate detection."""

    max_time_difference_seconds: int = 3600
    max_batch_size: int = 10000
    cache_size: int = 50000
    missing_id_strategy: Literal["skip", "error", "fallback"] = "skip"
    enable_source_overlap_analysis: bool = True
    enable_performance_tracking: bool = True

    @field_validator("max_batch_size", "cache_size")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


class DuplicateDetectionStats(BaseModel):
    """Running totals across detect-and-filter sessions."""

    total_items_processed: int = 0
    total_duplicates_detected: int = 0
    total_items_skipped: int = 0
    overall_duplicate_rate: float = 0.0
    sessions_completed: int = 0
    avg_session_size: float = 0.0
    cache_size: int = 0
    last_session_metrics: BatchDuplicateAnalysis | None = None
