"""
Pydantic schemas for canonical entities and entity resolution results.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from crave_pipeline.extraction.schemas import LLMMention


class EntityType(str, Enum):
    """Kinds of canonical entity in the graph."""

    RESTAURANT = "restaurant"
    DISH_OR_CATEGORY = "dish_or_category"
    DISH_ATTRIBUTE = "dish_attribute"
    RESTAURANT_ATTRIBUTE = "restaurant_attribute"


class MatchTier(str, Enum):
    """Which resolution tier bound a name to an entity."""

    EXACT = "exact"
    ALIAS = "alias"
    FUZZY = "fuzzy"
    CREATED = "created"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CanonicalEntity(BaseModel):
    """Persisted, deduplicated entity.

    Unique on (entity_type, normalized_name, scope). Only restaurants carry
    a scope (a coverage/location key).
    """

    id: UUID = Field(default_factory=uuid4)
    entity_type: EntityType
    name: str
    normalized_name: str
    scope: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class EntityDraft(BaseModel):
    """Entity to upsert by natural key."""

    entity_type: EntityType
    name: str
    normalized_name: str
    scope: str | None = None


class Alias(BaseModel):
    """Surface text mapped to a canonical entity within a scope."""

    canonical_entity_id: UUID
    entity_type: EntityType
    alias_text: str = Field(..., max_length=255)
    scope: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class ConnectionUpsert(BaseModel):
    """One mention's contribution to a restaurant-dish connection."""

    restaurant_id: UUID
    dish_id: UUID
    source_id: str
    upvotes: int = 0
    is_menu_item: bool | None = None
    category_ids: list[UUID] = Field(default_factory=list)
    dish_attribute_ids: list[UUID] = Field(default_factory=list)


class Connection(BaseModel):
    """Association between a canonical restaurant and a canonical dish.

    source_ids makes the counts idempotent: replaying the same mention
    (e.g. on job retry) does not inflate mention_count or total_upvotes.
    """

    restaurant_id: UUID
    dish_id: UUID
    mention_count: int = 0
    total_upvotes: int = 0
    is_menu_item: bool | None = None
    source_ids: set[str] = Field(default_factory=set)
    category_ids: set[UUID] = Field(default_factory=set)
    dish_attribute_ids: set[UUID] = Field(default_factory=set)
    last_mentioned_at: datetime = Field(default_factory=_utcnow)


class EntityResolution(BaseModel):
    """Binding of one referenced name to a canonical entity."""

    entity_type: EntityType
    original_text: str
    normalized_name: str
    entity_id: UUID
    tier: MatchTier
    confidence: float
    matched_name: str | None = None


class ResolvedMention(BaseModel):
    """A mention with every reference bound to a canonical entity."""

    mention: LLMMention
    restaurant: EntityResolution
    dish: EntityResolution | None = None
    dish_categories: list[EntityResolution] = Field(default_factory=list)
    dish_attributes: list[EntityResolution] = Field(default_factory=list)
    restaurant_attributes: list[EntityResolution] = Field(default_factory=list)


class ResolutionFailure(BaseModel):
    """A mention excluded from persistence, and why."""

    temp_id: str
    source_id: str
    kind: str
    reason: str
    names: list[str] = Field(default_factory=list)


class ResolutionMetrics(BaseModel):
    exact_matches: int = 0
    alias_matches: int = 0
    fuzzy_matches: int = 0
    new_entities_created: int = 0
    ambiguous_names: int = 0
    average_confidence: float = 0.0
    processing_time_ms: int = 1
    repository_round_trips: int = 0


class ResolutionResult(BaseModel):
    """Outcome of resolving one batch of mentions."""

    resolved: list[ResolvedMention] = Field(default_factory=list)
    failures: list[ResolutionFailure] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    metrics: ResolutionMetrics = Field(default_factory=ResolutionMetrics)
