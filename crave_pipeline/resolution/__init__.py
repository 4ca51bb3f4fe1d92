"""Entity resolution: binding mention names to canonical entities."""

from crave_pipeline.resolution.repository import EntityRepository, InMemoryEntityRepository
from crave_pipeline.resolution.resolver import EntityResolver
from crave_pipeline.resolution.string_similarity import (
    dice_coefficient,
    edit_distance,
    normalize_for_comparison,
)

__all__ = [
    "EntityRepository",
    "InMemoryEntityRepository",
    "EntityResolver",
    "dice_coefficient",
    "edit_distance",
    "normalize_for_comparison",
]
