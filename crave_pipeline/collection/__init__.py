"""Content collection: cross-source duplicate detection."""

from crave_pipeline.collection.duplicates import (
    DuplicateDetector,
    DuplicateFilterResult,
    default_detection_config,
)

__all__ = [
    "DuplicateDetector",
    "DuplicateFilterResult",
    "default_detection_config",
]
