"""
Cross-source duplicate detection for merged community content.

The same post or comment can arrive from an archive dump, the chronological
API feed, a keyword search and an on-demand fetch. Each item is given a
normalized identity (``post:abc123`` / ``comment:xyz``) and checked against
an in-process tracking cache. A cache hit whose timestamps are within the
configured tolerance is a duplicate of the originally tracked source.

The cache is bounded: once it grows past ``cache_size`` entries, the oldest
10% by last access are evicted. Evicting a live entry only risks
re-processing a genuine duplicate later, never filtering a unique item.

The cache is process-local and does not survive restarts.
"""

import itertools
import logging
import math
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from crave_pipeline.core.config import settings
from crave_pipeline.core.errors import ValidationError
from crave_pipeline.observability import (
    duplicate_cache_size,
    duplicate_items_total,
    pipeline_errors_total,
)
from crave_pipeline.schemas.content import DataSourceType, MergedContentItem
from crave_pipeline.schemas.duplicates import (
    BatchDuplicateAnalysis,
    ContentIdentifier,
    DuplicateDetectionConfig,
    DuplicateDetectionPerformance,
    DuplicateDetectionResult,
    DuplicateDetectionStats,
    DuplicateSourceInfo,
    DuplicateTrackingEntry,
    OverlapPattern,
    SourceOverlapAnalysis,
    TemporalOverlapAnalysis,
    TimeDiffBucket,
)

logger = logging.getLogger(__name__)

SOURCE_PREFIX_PATTERN = re.compile(r"^t[0-9]_")

EVICTION_FRACTION = 0.1

TIME_DIFF_BUCKETS = (
    ("0-1h", 0, 1),
    ("1-6h", 1, 6),
    ("6-24h", 6, 24),
    ("1-7d", 24, 168),
    (">7d", 168, math.inf),
)


def default_detection_config() -> DuplicateDetectionConfig:
    """Build the detection config from settings."""
    return DuplicateDetectionConfig(
        max_time_difference_seconds=settings.DEDUP_MAX_TIME_DIFFERENCE_SECONDS,
        max_batch_size=settings.DEDUP_MAX_BATCH_SIZE,
        cache_size=settings.DEDUP_CACHE_SIZE,
        missing_id_strategy=settings.DEDUP_MISSING_ID_STRATEGY,
        enable_source_overlap_analysis=settings.DEDUP_ENABLE_SOURCE_OVERLAP_ANALYSIS,
        enable_performance_tracking=settings.DEDUP_ENABLE_PERFORMANCE_TRACKING,
    )


@dataclass
class DuplicateFilterResult:
    """Items that survived filtering, plus the batch analysis.

    ``tracked`` maps each cache key this batch wrote to the entry it
    replaced (None if the key was new), so ``release`` can undo the batch.
    """

    filtered_items: list[MergedContentItem]
    analysis: BatchDuplicateAnalysis
    tracked: dict[str, tuple[DuplicateTrackingEntry | None, DuplicateTrackingEntry]] = field(
        default_factory=dict
    )


class DuplicateDetector:
    """Detects duplicate content items across data sources.

    Thread-safe: the tracking cache and stats are guarded by a single
    re-entrant lock, so one detector can be shared by every worker.

    Example:
        detector = DuplicateDetector()
        result = detector.detect_and_filter_duplicates(items)
        for item in result.filtered_items:
            ...
    """

    def __init__(self, config: DuplicateDetectionConfig | None = None):
        self._config = config or default_detection_config()
        self._cache: dict[str, DuplicateTrackingEntry] = {}
        self._lock = threading.RLock()
        self._access_sequence = itertools.count(1)
        self._stats = DuplicateDetectionStats()

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @staticmethod
    def _raw_id(item: MergedContentItem) -> str:
        return (item.data.id or "").strip()

    def generate_identifier(
        self, item: MergedContentItem, strategy: str = "error"
    ) -> ContentIdentifier | None:
        """Build the normalized identity of an item.

        Args:
            item: Content item to identify
            strategy: Missing-id strategy; "fallback" tries the source
                metadata original_id before giving up

        Returns:
            ContentIdentifier, or None when the id is missing and
            strategy is "fallback" with no original_id either

        Raises:
            ValidationError: If the id is missing and strategy is not "fallback"
        """
        raw_id = self._raw_id(item)
        if not raw_id and strategy == "fallback":
            raw_id = (item.source_metadata.original_id or "").strip()
            if not raw_id:
                return None

        if not raw_id:
            raise ValidationError(
                "Content item has no id",
                context={
                    "item_type": item.type,
                    "source_type": item.source_metadata.source_type.value,
                    "original_id": item.source_metadata.original_id,
                },
            )

        content_id = SOURCE_PREFIX_PATTERN.sub("", raw_id)
        content_type = "post" if item.type == "submission" else "comment"
        return ContentIdentifier(
            id=content_id,
            type=content_type,
            normalized_key=f"{content_type}:{content_id}",
        )

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    @staticmethod
    def _source_info(item: MergedContentItem) -> DuplicateSourceInfo:
        metadata = item.source_metadata
        return DuplicateSourceInfo(
            source_type=metadata.source_type,
            first_seen=datetime.now(UTC),
            batch_id=metadata.processing_batch,
            source_metadata=metadata.model_dump(mode="json", exclude_none=True),
        )

    def _check(
        self,
        item: MergedContentItem,
        identifier: ContentIdentifier,
        max_time_difference: int,
        cache_size: int,
    ) -> DuplicateDetectionResult:
        """Check and track one item. Caller must hold the lock."""
        current_source = self._source_info(item)
        existing = self._cache.get(identifier.normalized_key)

        if existing is not None:
            time_diff = abs(item.normalized_timestamp - existing.normalized_timestamp)
            existing.last_accessed = next(self._access_sequence)

            if time_diff <= max_time_difference:
                return DuplicateDetectionResult(
                    identifier=identifier,
                    is_duplicate=True,
                    original_source=existing.source_info,
                    current_source=current_source,
                    time_diff_seconds=time_diff,
                )

            # Same id, different real-world moment: keep it, note the proximity
            self._track(identifier, current_source, item.normalized_timestamp, cache_size)
            return DuplicateDetectionResult(
                identifier=identifier,
                is_duplicate=False,
                original_source=existing.source_info,
                current_source=current_source,
                time_diff_seconds=time_diff,
                metadata={"outside_tolerance": True},
            )

        self._track(identifier, current_source, item.normalized_timestamp, cache_size)
        return DuplicateDetectionResult(
            identifier=identifier,
            is_duplicate=False,
            current_source=current_source,
        )

    def _track(
        self,
        identifier: ContentIdentifier,
        source_info: DuplicateSourceInfo,
        normalized_timestamp: float,
        cache_size: int,
    ) -> None:
        self._cache[identifier.normalized_key] = DuplicateTrackingEntry(
            identifier=identifier,
            source_info=source_info,
            normalized_timestamp=normalized_timestamp,
            last_accessed=next(self._access_sequence),
        )
        if len(self._cache) > cache_size:
            self._evict_oldest()

    def _evict_oldest(self) -> None:
        entries = sorted(self._cache.items(), key=lambda kv: kv[1].last_accessed)
        to_remove = math.ceil(len(entries) * EVICTION_FRACTION)
        for key, _ in entries[:to_remove]:
            del self._cache[key]

        logger.info(
            "Evicted oldest duplicate tracking entries",
            extra={"evicted": to_remove, "cache_size": len(self._cache)},
        )

    def check_single_item(self, item: MergedContentItem) -> DuplicateDetectionResult:
        """Check one item against the cache and track it if new.

        Raises:
            ValidationError: If the item has no id
        """
        identifier = self.generate_identifier(item)
        with self._lock:
            result = self._check(
                item,
                identifier,
                self._config.max_time_difference_seconds,
                self._config.cache_size,
            )
            duplicate_cache_size.set(len(self._cache))
        return result

    # -------------------------------------------------------------------------
    # Batch processing
    # -------------------------------------------------------------------------

    def _validate_batch(
        self, items: Any, config: DuplicateDetectionConfig
    ) -> None:
        if not isinstance(items, (list, tuple)):
            raise ValidationError(
                "Batch must be a sequence of MergedContentItem",
                context={"received_type": type(items).__name__},
            )
        if len(items) > config.max_batch_size:
            raise ValidationError(
                f"Batch size {len(items)} exceeds maximum {config.max_batch_size}",
                context={"batch_size": len(items), "max_batch_size": config.max_batch_size},
            )
        if config.max_time_difference_seconds < 0:
            raise ValidationError(
                "max_time_difference_seconds must be non-negative",
                context={"max_time_difference_seconds": config.max_time_difference_seconds},
            )

    def detect_and_filter_duplicates(
        self,
        items: list[MergedContentItem],
        config: DuplicateDetectionConfig | None = None,
    ) -> DuplicateFilterResult:
        """Filter duplicates from a batch and analyze the overlap.

        The batch is validated as a whole before any item is processed.
        Items without an id are handled per ``missing_id_strategy``:
        skip (log and exclude), error (raise), or fallback (use the source
        metadata id, or pass the item through untracked).

        Args:
            items: Merged content items, in processing order
            config: Overrides the detector's configuration for this call

        Returns:
            DuplicateFilterResult with unique items and the batch analysis

        Raises:
            ValidationError: If the batch or configuration is invalid, or an
                item has no id under the "error" strategy
        """
        config = config or self._config
        self._validate_batch(items, config)

        start_time = datetime.now(UTC)
        start = time.perf_counter()

        filtered: list[MergedContentItem] = []
        results: list[DuplicateDetectionResult] = []
        skipped: list[dict[str, Any]] = []
        tracked: dict[str, tuple[DuplicateTrackingEntry | None, DuplicateTrackingEntry]] = {}

        with self._lock:
            for index, item in enumerate(items):
                try:
                    identifier = self.generate_identifier(item, config.missing_id_strategy)
                except ValidationError as e:
                    if config.missing_id_strategy == "error":
                        raise
                    pipeline_errors_total.labels(kind=e.kind.value, stage="deduplication").inc()
                    logger.warning(
                        "Skipping content item without id",
                        extra={"index": index, **e.context},
                    )
                    skipped.append({"index": index, "reason": e.message, **e.context})
                    continue

                if identifier is None:
                    logger.warning(
                        "Passing content item through without duplicate tracking",
                        extra={
                            "index": index,
                            "item_type": item.type,
                            "source_type": item.source_metadata.source_type.value,
                        },
                    )
                    filtered.append(item)
                    continue

                key = identifier.normalized_key
                previous = self._cache.get(key)
                result = self._check(
                    item,
                    identifier,
                    config.max_time_difference_seconds,
                    config.cache_size,
                )
                results.append(result)
                if not result.is_duplicate:
                    filtered.append(item)
                    entry = self._cache.get(key)
                    if entry is not None:
                        # Keep the pre-batch entry if the key repeats in this batch
                        original = tracked[key][0] if key in tracked else previous
                        tracked[key] = (original, entry)

            duplicates_found = sum(1 for r in results if r.is_duplicate)
            duration_ms = max(1, int((time.perf_counter() - start) * 1000))
            total = len(items)

            analysis = BatchDuplicateAnalysis(
                detection_results=results,
                total_items=total,
                duplicates_found=duplicates_found,
                unique_items=len(filtered),
                skipped_items=len(skipped),
                duplicate_rate=(duplicates_found / total * 100) if total else 0.0,
                skipped=skipped,
                source_overlap_analysis=(
                    self._source_overlap_analysis(results)
                    if config.enable_source_overlap_analysis
                    else None
                ),
                performance_metrics=DuplicateDetectionPerformance(
                    start_time=start_time,
                    end_time=datetime.now(UTC),
                    duration_ms=duration_ms,
                    throughput_per_second=total / (duration_ms / 1000),
                    cache_size=len(self._cache),
                ),
            )
            self._update_stats(analysis)
            duplicate_cache_size.set(len(self._cache))

        duplicate_items_total.labels(outcome="duplicate").inc(duplicates_found)
        duplicate_items_total.labels(outcome="unique").inc(len(filtered))
        duplicate_items_total.labels(outcome="skipped").inc(len(skipped))

        logger.info(
            "Duplicate detection completed",
            extra={
                "total_items": total,
                "duplicates_found": duplicates_found,
                "unique_items": len(filtered),
                "skipped_items": len(skipped),
                "duplicate_rate": round(analysis.duplicate_rate, 2),
                "duration_ms": duration_ms,
            },
        )
        return DuplicateFilterResult(filtered_items=filtered, analysis=analysis, tracked=tracked)

    def release(self, result: DuplicateFilterResult) -> int:
        """Undo the tracking done by one ``detect_and_filter_duplicates`` call.

        Used when the items that passed filtering were never fully processed,
        so a retry of the same batch sees them as new again. Keys that were
        re-tracked by a later batch are left alone.

        Returns:
            Number of cache entries restored or removed
        """
        released = 0
        with self._lock:
            for key, (previous, entry) in result.tracked.items():
                if self._cache.get(key) is not entry:
                    continue
                if previous is None:
                    del self._cache[key]
                else:
                    self._cache[key] = previous
                released += 1
            duplicate_cache_size.set(len(self._cache))

        if released:
            logger.info(
                "Released duplicate tracking for unprocessed batch",
                extra={"released_entries": released, "cache_size": self.cache_size},
            )
        return released

    @staticmethod
    def _source_overlap_analysis(
        results: list[DuplicateDetectionResult],
    ) -> SourceOverlapAnalysis:
        breakdown = {source: 0 for source in DataSourceType}
        overlap_matrix: dict[str, int] = {}
        time_diffs_hours: list[float] = []

        for result in results:
            breakdown[result.current_source.source_type] += 1
            if result.is_duplicate and result.original_source is not None:
                key = (
                    f"{result.original_source.source_type.value}"
                    f"→{result.current_source.source_type.value}"
                )
                overlap_matrix[key] = overlap_matrix.get(key, 0) + 1
                time_diffs_hours.append((result.time_diff_seconds or 0.0) / 3600)

        patterns = sorted(overlap_matrix.items(), key=lambda kv: kv[1], reverse=True)[:5]
        common_patterns = [
            OverlapPattern(
                sources=[DataSourceType(s) for s in key.split("→")],
                count=count,
                percentage=count / len(results) * 100,
            )
            for key, count in patterns
        ]

        distribution = [
            TimeDiffBucket(
                range_hours=label,
                count=sum(1 for t in time_diffs_hours if low <= t < high),
            )
            for label, low, high in TIME_DIFF_BUCKETS
        ]

        return SourceOverlapAnalysis(
            source_breakdown=breakdown,
            overlap_matrix=overlap_matrix,
            common_overlap_patterns=common_patterns,
            temporal_overlap_analysis=TemporalOverlapAnalysis(
                avg_time_diff_hours=(
                    sum(time_diffs_hours) / len(time_diffs_hours) if time_diffs_hours else 0.0
                ),
                max_time_diff_hours=max(time_diffs_hours, default=0.0),
                time_diff_distribution=distribution,
            ),
        )

    def _update_stats(self, analysis: BatchDuplicateAnalysis) -> None:
        stats = self._stats
        stats.total_items_processed += analysis.total_items
        stats.total_duplicates_detected += analysis.duplicates_found
        stats.total_items_skipped += analysis.skipped_items
        stats.sessions_completed += 1
        stats.overall_duplicate_rate = (
            stats.total_duplicates_detected / stats.total_items_processed * 100
            if stats.total_items_processed
            else 0.0
        )
        stats.avg_session_size = stats.total_items_processed / stats.sessions_completed
        stats.last_session_metrics = analysis

    # -------------------------------------------------------------------------
    # Stats and maintenance
    # -------------------------------------------------------------------------

    def get_stats(self) -> DuplicateDetectionStats:
        """Return a snapshot of running totals."""
        with self._lock:
            snapshot = self._stats.model_copy()
            snapshot.cache_size = len(self._cache)
            return snapshot

    def clear_cache(self) -> None:
        """Drop every tracked identity and reset stats."""
        with self._lock:
            cleared = len(self._cache)
            self._cache.clear()
            self._stats = DuplicateDetectionStats()
            duplicate_cache_size.set(0)
        logger.info("Duplicate tracking cache cleared", extra={"cleared_entries": cleared})

    def is_tracked(self, item: MergedContentItem) -> bool:
        """Whether an item's identity is currently in the cache."""
        identifier = self.generate_identifier(item)
        with self._lock:
            return identifier.normalized_key in self._cache

    @property
    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)
