"""
Unit tests for DuplicateDetector.

Tests cover:
- Identity normalization across t3_/t1_ prefixes
- Duplicate detection within and outside the time tolerance
- Missing-id strategies (skip, error, fallback)
- Whole-batch validation
- Approximate-LRU eviction
- Releasing tracking for batches that were never processed
- Source overlap analysis and running stats
"""

import pytest

from crave_pipeline.collection.duplicates import DuplicateDetector
from crave_pipeline.core.errors import ValidationError
from crave_pipeline.schemas.content import DataSourceType
from crave_pipeline.schemas.duplicates import DuplicateDetectionConfig

T0 = 1_700_000_000


@pytest.fixture
def detector() -> DuplicateDetector:
    return DuplicateDetector(DuplicateDetectionConfig(max_time_difference_seconds=3600))


# =============================================================================
# Identity
# =============================================================================


class TestGenerateIdentifier:
    """Tests for normalized identities."""

    def test_strips_reddit_prefix(self, detector, submission_factory):
        identifier = detector.generate_identifier(submission_factory(post_id="t3_abc123"))

        assert identifier.id == "abc123"
        assert identifier.type == "post"
        assert identifier.normalized_key == "post:abc123"

    def test_prefixed_and_bare_ids_collide(self, detector, submission_factory):
        prefixed = detector.generate_identifier(submission_factory(post_id="t3_abc123"))
        bare = detector.generate_identifier(submission_factory(post_id="abc123"))
        assert prefixed.normalized_key == bare.normalized_key

    def test_comment_key(self, detector, comment_factory):
        identifier = detector.generate_identifier(comment_factory(comment_id="t1_xyz"))
        assert identifier.normalized_key == "comment:xyz"

    def test_missing_id_raises(self, detector, submission_factory):
        with pytest.raises(ValidationError):
            detector.generate_identifier(submission_factory(post_id=""))

    def test_fallback_uses_original_id(self, detector, comment_factory):
        item = comment_factory(comment_id="", original_id="t1_fromsource")
        identifier = detector.generate_identifier(item, strategy="fallback")
        assert identifier.normalized_key == "comment:fromsource"


# =============================================================================
# Detection
# =============================================================================


class TestDetection:
    """Tests for duplicate detection and filtering."""

    def test_refetch_within_tolerance_is_duplicate(self, detector, submission_factory):
        """The same post from a second source 600s later is a duplicate."""
        first = submission_factory(
            post_id="t3_abc123", source_type=DataSourceType.PUSHSHIFT_ARCHIVE
        )
        second = submission_factory(
            post_id="t3_abc123",
            source_type=DataSourceType.REDDIT_API_CHRONOLOGICAL,
            normalized_timestamp=T0 + 600,
        )

        result = detector.detect_and_filter_duplicates([first, second])

        assert result.filtered_items == [first]
        flagged = result.analysis.detection_results[1]
        assert flagged.is_duplicate is True
        assert flagged.time_diff_seconds == 600
        assert flagged.original_source.source_type == DataSourceType.PUSHSHIFT_ARCHIVE
        assert result.analysis.duplicates_found == 1
        assert result.analysis.duplicate_rate == 50.0

    def test_first_processed_wins_regardless_of_timestamp_order(
        self, detector, submission_factory
    ):
        later = submission_factory(normalized_timestamp=T0 + 600)
        earlier = submission_factory(normalized_timestamp=T0)

        result = detector.detect_and_filter_duplicates([later, earlier])

        assert result.filtered_items == [later]
        assert result.analysis.detection_results[1].is_duplicate is True

    def test_outside_tolerance_is_not_filtered(self, detector, submission_factory):
        first = submission_factory(normalized_timestamp=T0)
        second = submission_factory(normalized_timestamp=T0 + 3601)

        result = detector.detect_and_filter_duplicates([first, second])

        assert result.filtered_items == [first, second]
        outcome = result.analysis.detection_results[1]
        assert outcome.is_duplicate is False
        assert outcome.time_diff_seconds == 3601
        assert outcome.metadata == {"outside_tolerance": True}

    def test_duplicates_across_batches(self, detector, submission_factory):
        detector.detect_and_filter_duplicates([submission_factory()])

        result = detector.detect_and_filter_duplicates([submission_factory()])

        assert result.filtered_items == []
        assert result.analysis.duplicates_found == 1

    def test_post_and_comment_with_same_id_are_distinct(
        self, detector, submission_factory, comment_factory
    ):
        result = detector.detect_and_filter_duplicates(
            [submission_factory(post_id="same"), comment_factory(comment_id="same")]
        )
        assert len(result.filtered_items) == 2

    def test_check_single_item(self, detector, comment_factory):
        assert detector.check_single_item(comment_factory()).is_duplicate is False
        assert detector.check_single_item(comment_factory()).is_duplicate is True


# =============================================================================
# Missing Ids
# =============================================================================


class TestMissingIdStrategies:
    """Tests for items without an id."""

    def test_skip_records_and_continues(self, detector, submission_factory):
        good = submission_factory(post_id="good")
        bad = submission_factory(post_id="")

        result = detector.detect_and_filter_duplicates([bad, good])

        assert result.filtered_items == [good]
        assert result.analysis.skipped_items == 1
        assert result.analysis.skipped[0]["index"] == 0
        assert result.analysis.total_items == 2

    def test_error_strategy_raises(self, submission_factory):
        detector = DuplicateDetector(DuplicateDetectionConfig(missing_id_strategy="error"))

        with pytest.raises(ValidationError):
            detector.detect_and_filter_duplicates([submission_factory(post_id="")])

    def test_fallback_passes_untracked_item_through(self, comment_factory):
        detector = DuplicateDetector(DuplicateDetectionConfig(missing_id_strategy="fallback"))
        orphan = comment_factory(comment_id="", original_id=None)

        result = detector.detect_and_filter_duplicates([orphan, orphan])

        assert result.filtered_items == [orphan, orphan]
        assert detector.cache_size == 0


# =============================================================================
# Batch Validation
# =============================================================================


class TestBatchValidation:
    """The batch is rejected as a whole before any item is tracked."""

    def test_rejects_non_sequence(self, detector):
        with pytest.raises(ValidationError):
            detector.detect_and_filter_duplicates("not a list")

    def test_rejects_oversized_batch(self, submission_factory):
        detector = DuplicateDetector(DuplicateDetectionConfig(max_batch_size=2))
        items = [submission_factory(post_id=f"p{i}") for i in range(3)]

        with pytest.raises(ValidationError):
            detector.detect_and_filter_duplicates(items)
        assert detector.cache_size == 0

    def test_rejects_negative_tolerance(self, detector, submission_factory):
        config = DuplicateDetectionConfig(max_time_difference_seconds=-1)

        with pytest.raises(ValidationError):
            detector.detect_and_filter_duplicates([submission_factory()], config)

    def test_empty_batch(self, detector):
        result = detector.detect_and_filter_duplicates([])

        assert result.filtered_items == []
        assert result.analysis.duplicate_rate == 0.0
        assert result.analysis.performance_metrics.duration_ms >= 1


# =============================================================================
# Eviction
# =============================================================================


class TestEviction:
    """Tests for the bounded cache."""

    def test_recently_accessed_entries_survive_eviction(self, submission_factory):
        """Entries touched after loading outlive untouched older entries."""
        detector = DuplicateDetector(DuplicateDetectionConfig(cache_size=100))
        items = [submission_factory(post_id=f"p{i}") for i in range(100)]
        detector.detect_and_filter_duplicates(items)

        # Touch the ten oldest entries
        for item in items[:10]:
            assert detector.check_single_item(item).is_duplicate is True

        detector.check_single_item(submission_factory(post_id="overflow"))

        assert all(detector.is_tracked(item) for item in items[:10])
        assert not detector.is_tracked(items[10])
        assert detector.cache_size == 101 - 11

    def test_clear_cache(self, detector, submission_factory):
        detector.detect_and_filter_duplicates([submission_factory()])

        detector.clear_cache()

        assert detector.cache_size == 0
        assert detector.get_stats().sessions_completed == 0


# =============================================================================
# Release
# =============================================================================


class TestRelease:
    """Tests for undoing a batch whose items were never processed."""

    def test_released_batch_is_new_again(self, detector, submission_factory, comment_factory):
        items = [submission_factory(), comment_factory()]
        first = detector.detect_and_filter_duplicates(items)

        assert detector.release(first) == 2
        assert detector.cache_size == 0

        retry = detector.detect_and_filter_duplicates(items)
        assert retry.filtered_items == items
        assert retry.analysis.duplicates_found == 0

    def test_release_restores_previous_entry(self, detector, submission_factory):
        """An out-of-tolerance re-track is rolled back to the original entry."""
        detector.detect_and_filter_duplicates([submission_factory(normalized_timestamp=T0)])
        later = detector.detect_and_filter_duplicates(
            [submission_factory(normalized_timestamp=T0 + 7200)]
        )

        detector.release(later)

        again = detector.detect_and_filter_duplicates(
            [submission_factory(normalized_timestamp=T0 + 60)]
        )
        assert again.analysis.duplicates_found == 1

    def test_duplicates_are_not_released(self, detector, submission_factory):
        detector.detect_and_filter_duplicates([submission_factory()])
        refetch = detector.detect_and_filter_duplicates([submission_factory()])

        assert refetch.tracked == {}
        assert detector.release(refetch) == 0
        assert detector.cache_size == 1

    def test_entries_retracked_later_are_kept(self, detector, submission_factory):
        first = detector.detect_and_filter_duplicates([submission_factory(normalized_timestamp=T0)])
        detector.detect_and_filter_duplicates([submission_factory(normalized_timestamp=T0 + 7200)])

        assert detector.release(first) == 0
        assert detector.cache_size == 1


# =============================================================================
# Analysis and Stats
# =============================================================================


class TestAnalysis:
    """Tests for overlap analysis and running stats."""

    def test_overlap_matrix_and_patterns(self, detector, submission_factory, comment_factory):
        items = [
            submission_factory(source_type=DataSourceType.PUSHSHIFT_ARCHIVE),
            submission_factory(
                source_type=DataSourceType.REDDIT_API_KEYWORD_SEARCH,
                normalized_timestamp=T0 + 1800,
            ),
            comment_factory(source_type=DataSourceType.PUSHSHIFT_ARCHIVE),
        ]

        analysis = detector.detect_and_filter_duplicates(items).analysis.source_overlap_analysis

        key = "pushshift_archive→reddit_api_keyword_search"
        assert analysis.overlap_matrix == {key: 1}
        assert analysis.source_breakdown[DataSourceType.PUSHSHIFT_ARCHIVE] == 2
        pattern = analysis.common_overlap_patterns[0]
        assert pattern.sources == [
            DataSourceType.PUSHSHIFT_ARCHIVE,
            DataSourceType.REDDIT_API_KEYWORD_SEARCH,
        ]
        temporal = analysis.temporal_overlap_analysis
        assert temporal.avg_time_diff_hours == 0.5
        assert temporal.time_diff_distribution[0].range_hours == "0-1h"
        assert temporal.time_diff_distribution[0].count == 1

    def test_overlap_analysis_can_be_disabled(self, submission_factory):
        detector = DuplicateDetector(
            DuplicateDetectionConfig(enable_source_overlap_analysis=False)
        )
        analysis = detector.detect_and_filter_duplicates([submission_factory()]).analysis
        assert analysis.source_overlap_analysis is None

    def test_stats_accumulate(self, detector, submission_factory):
        detector.detect_and_filter_duplicates([submission_factory(), submission_factory()])
        detector.detect_and_filter_duplicates([submission_factory(post_id="")])

        stats = detector.get_stats()

        assert stats.sessions_completed == 2
        assert stats.total_items_processed == 3
        assert stats.total_duplicates_detected == 1
        assert stats.total_items_skipped == 1
        assert stats.cache_size == 1
        assert stats.avg_session_size == 1.5
