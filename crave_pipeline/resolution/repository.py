"""
Persistence interface consumed by the entity resolver.

Every operation is batched: the resolver issues a small constant number of
calls per batch regardless of how many mentions it holds. Creation is
expressed as upsert-by-natural-key so that two workers resolving the same
new name converge on one row.

InMemoryEntityRepository is the single-process implementation used by the
worker pool and tests; a database-backed implementation provides the same
guarantees with uniqueness constraints and ON CONFLICT upserts.
"""

import logging
import threading
from datetime import UTC, datetime
from typing import Protocol
from uuid import UUID

from crave_pipeline.schemas.entities import (
    Alias,
    CanonicalEntity,
    Connection,
    ConnectionUpsert,
    EntityDraft,
    EntityType,
)

logger = logging.getLogger(__name__)

EntityKey = tuple[EntityType, str, str | None]
AliasKey = tuple[EntityType, str, str | None]


class EntityRepository(Protocol):
    """Batched persistence operations for canonical entities."""

    async def find_entities_by_names(
        self, entity_type: EntityType, normalized_names: set[str], scope: str | None
    ) -> dict[str, CanonicalEntity]:
        """Exact lookup; returns normalized_name -> entity for the hits."""
        ...

    async def find_aliases(
        self, entity_type: EntityType, alias_texts: set[str], scope: str | None
    ) -> dict[str, CanonicalEntity]:
        """Alias lookup; returns alias_text -> canonical entity for the hits."""
        ...

    async def list_entities(
        self, entity_type: EntityType, scope: str | None
    ) -> list[CanonicalEntity]:
        """All entities of a type within a scope (fuzzy candidates)."""
        ...

    async def upsert_entities(self, drafts: list[EntityDraft]) -> dict[str, CanonicalEntity]:
        """Insert missing entities; returns normalized_name -> stored entity."""
        ...

    async def upsert_aliases(self, aliases: list[Alias]) -> list[Alias]:
        """Insert aliases, skipping existing (alias_text, scope) pairs.

        Returns the aliases actually created.
        """
        ...

    async def upsert_connections(self, upserts: list[ConnectionUpsert]) -> list[Connection]:
        """Create or update restaurant-dish connections."""
        ...


class InMemoryEntityRepository:
    """Thread-safe in-memory EntityRepository.

    Entities are unique on (entity_type, normalized_name, scope) and aliases
    on (entity_type, alias_text, scope). A second alias for the same text
    and scope is rejected, even when it points at a different entity.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entities: dict[EntityKey, CanonicalEntity] = {}
        self._entities_by_id: dict[UUID, CanonicalEntity] = {}
        self._aliases: dict[AliasKey, Alias] = {}
        self._connections: dict[tuple[UUID, UUID], Connection] = {}
        self.calls: list[str] = []

    async def find_entities_by_names(
        self, entity_type: EntityType, normalized_names: set[str], scope: str | None
    ) -> dict[str, CanonicalEntity]:
        with self._lock:
            self.calls.append("find_entities_by_names")
            found = {}
            for name in normalized_names:
                entity = self._entities.get((entity_type, name, scope))
                if entity is not None:
                    found[name] = entity
            return found

    async def find_aliases(
        self, entity_type: EntityType, alias_texts: set[str], scope: str | None
    ) -> dict[str, CanonicalEntity]:
        with self._lock:
            self.calls.append("find_aliases")
            found = {}
            for text in alias_texts:
                alias = self._aliases.get((entity_type, text, scope))
                if alias is not None:
                    found[text] = self._entities_by_id[alias.canonical_entity_id]
            return found

    async def list_entities(
        self, entity_type: EntityType, scope: str | None
    ) -> list[CanonicalEntity]:
        with self._lock:
            self.calls.append("list_entities")
            return [
                e for (etype, _, escope), e in self._entities.items()
                if etype == entity_type and escope == scope
            ]

    async def upsert_entities(self, drafts: list[EntityDraft]) -> dict[str, CanonicalEntity]:
        with self._lock:
            self.calls.append("upsert_entities")
            stored = {}
            for draft in drafts:
                key = (draft.entity_type, draft.normalized_name, draft.scope)
                entity = self._entities.get(key)
                if entity is None:
                    entity = CanonicalEntity(
                        entity_type=draft.entity_type,
                        name=draft.name,
                        normalized_name=draft.normalized_name,
                        scope=draft.scope,
                    )
                    self._entities[key] = entity
                    self._entities_by_id[entity.id] = entity
                stored[draft.normalized_name] = entity
            return stored

    async def upsert_aliases(self, aliases: list[Alias]) -> list[Alias]:
        with self._lock:
            self.calls.append("upsert_aliases")
            created = []
            for alias in aliases:
                key = (alias.entity_type, alias.alias_text, alias.scope)
                existing = self._aliases.get(key)
                if existing is not None:
                    if existing.canonical_entity_id != alias.canonical_entity_id:
                        logger.warning(
                            "Rejected alias already mapped to another entity",
                            extra={
                                "alias_text": alias.alias_text,
                                "scope": alias.scope,
                                "existing_entity_id": str(existing.canonical_entity_id),
                                "rejected_entity_id": str(alias.canonical_entity_id),
                            },
                        )
                    continue
                self._aliases[key] = alias
                created.append(alias)
            return created

    async def upsert_connections(self, upserts: list[ConnectionUpsert]) -> list[Connection]:
        with self._lock:
            self.calls.append("upsert_connections")
            touched: dict[tuple[UUID, UUID], Connection] = {}
            for upsert in upserts:
                key = (upsert.restaurant_id, upsert.dish_id)
                connection = self._connections.get(key)
                if connection is None:
                    connection = Connection(restaurant_id=upsert.restaurant_id, dish_id=upsert.dish_id)
                    self._connections[key] = connection

                if upsert.source_id not in connection.source_ids:
                    connection.source_ids.add(upsert.source_id)
                    connection.mention_count += 1
                    connection.total_upvotes += upsert.upvotes
                    connection.last_mentioned_at = datetime.now(UTC)
                if upsert.is_menu_item is not None:
                    connection.is_menu_item = upsert.is_menu_item
                connection.category_ids.update(upsert.category_ids)
                connection.dish_attribute_ids.update(upsert.dish_attribute_ids)
                touched[key] = connection
            return [c.model_copy(deep=True) for c in touched.values()]

    # Inspection helpers

    def entity_count(self, entity_type: EntityType | None = None) -> int:
        with self._lock:
            return sum(
                1 for (etype, _, _) in self._entities
                if entity_type is None or etype == entity_type
            )

    def get_aliases(self, entity_id: UUID) -> list[Alias]:
        with self._lock:
            return [a for a in self._aliases.values() if a.canonical_entity_id == entity_id]

    def get_connection(self, restaurant_id: UUID, dish_id: UUID) -> Connection | None:
        with self._lock:
            connection = self._connections.get((restaurant_id, dish_id))
            return connection.model_copy(deep=True) if connection else None
