"""
Three-tier entity resolution for extracted mentions.

Every restaurant, dish/category and attribute name referenced by a batch of
mentions is bound to a canonical entity:

- Tier 1, exact: normalized name lookup within (type, scope)
- Tier 2, alias: alias table lookup within (type, scope)
- Tier 3, fuzzy/create: compare against the existing entities of the type
  (and the names being created in this batch). A match with bigram Dice
  >= threshold and edit distance <= limit resolves to that entity and
  records the name as a new alias; otherwise a new entity is created.

Names are collected across the whole batch first, so the repository sees a
constant number of calls per entity type, independent of mention count.

A name whose best fuzzy matches tie between different entities is
ambiguous: each mention referencing it is excluded and recorded as a
failure, and the rest of the batch continues.
"""

import logging
import time
from dataclasses import dataclass, field

from crave_pipeline.core.config import settings
from crave_pipeline.core.errors import ResolutionAmbiguityError
from crave_pipeline.extraction.schemas import LLMMention
from crave_pipeline.observability import (
    pipeline_errors_total,
    resolution_outcomes_total,
    stage_duration_seconds,
)
from crave_pipeline.resolution.repository import EntityRepository
from crave_pipeline.resolution.string_similarity import (
    FuzzyScore,
    normalize_for_comparison,
    score_candidates,
)
from crave_pipeline.schemas.entities import (
    Alias,
    CanonicalEntity,
    ConnectionUpsert,
    EntityDraft,
    EntityResolution,
    EntityType,
    MatchTier,
    ResolutionFailure,
    ResolutionMetrics,
    ResolutionResult,
    ResolvedMention,
)

logger = logging.getLogger(__name__)

ALIAS_MATCH_CONFIDENCE = 0.95

NameKey = tuple[EntityType, str]


@dataclass
class _BatchState:
    """Bindings accumulated while resolving one batch."""

    bindings: dict[NameKey, EntityResolution] = field(default_factory=dict)
    ambiguous: dict[NameKey, ResolutionAmbiguityError] = field(default_factory=dict)
    metrics: ResolutionMetrics = field(default_factory=ResolutionMetrics)


class EntityResolver:
    """Resolves mention references to canonical entity ids.

    Example:
        resolver = EntityResolver(repository)
        result = await resolver.resolve_mentions(output.mentions, scope="austin")
        for resolved in result.resolved:
            print(resolved.restaurant.entity_id)
    """

    def __init__(
        self,
        repository: EntityRepository,
        fuzzy_threshold: float | None = None,
        max_edit_distance: int | None = None,
        ambiguity_margin: float | None = None,
        max_alias_length: int | None = None,
    ):
        self._repository = repository
        self._fuzzy_threshold = (
            settings.RESOLUTION_FUZZY_THRESHOLD if fuzzy_threshold is None else fuzzy_threshold
        )
        self._max_edit_distance = (
            settings.RESOLUTION_MAX_EDIT_DISTANCE if max_edit_distance is None else max_edit_distance
        )
        self._ambiguity_margin = (
            settings.RESOLUTION_AMBIGUITY_MARGIN if ambiguity_margin is None else ambiguity_margin
        )
        self._max_alias_length = (
            settings.RESOLUTION_MAX_ALIAS_LENGTH if max_alias_length is None else max_alias_length
        )

    # -------------------------------------------------------------------------
    # Name collection
    # -------------------------------------------------------------------------

    @staticmethod
    def _mention_names(mention: LLMMention) -> list[tuple[EntityType, str, str]]:
        """(type, normalized, display) for every name a mention references."""
        refs: list[tuple[EntityType, str, str]] = []

        def add(entity_type: EntityType, text: str | None, display: str | None = None) -> None:
            normalized = normalize_for_comparison(text or "")
            if normalized:
                refs.append((entity_type, normalized, (display or text or "").strip()))

        add(EntityType.RESTAURANT, mention.restaurant_normalized_name, mention.restaurant_original_text)
        add(
            EntityType.DISH_OR_CATEGORY,
            mention.dish_or_category_normalized_name,
            mention.dish_or_category_original_text,
        )
        for category in mention.dish_categories or []:
            add(EntityType.DISH_OR_CATEGORY, category)
        for attribute in mention.dish_attributes or []:
            add(EntityType.DISH_ATTRIBUTE, attribute)
        for attribute in mention.restaurant_attributes or []:
            add(EntityType.RESTAURANT_ATTRIBUTE, attribute)
        return refs

    def _collect_names(self, mentions: list[LLMMention]) -> dict[EntityType, dict[str, str]]:
        names: dict[EntityType, dict[str, str]] = {t: {} for t in EntityType}
        for mention in mentions:
            for entity_type, normalized, display in self._mention_names(mention):
                names[entity_type].setdefault(normalized, display or normalized)
        return names

    # -------------------------------------------------------------------------
    # Tiers
    # -------------------------------------------------------------------------

    def _bind(
        self,
        state: _BatchState,
        entity_type: EntityType,
        normalized: str,
        display: str,
        entity: CanonicalEntity,
        tier: MatchTier,
        confidence: float,
    ) -> None:
        state.bindings[(entity_type, normalized)] = EntityResolution(
            entity_type=entity_type,
            original_text=display,
            normalized_name=normalized,
            entity_id=entity.id,
            tier=tier,
            confidence=confidence,
            matched_name=entity.normalized_name,
        )
        resolution_outcomes_total.labels(entity_type=entity_type.value, tier=tier.value).inc()

    def _pick_fuzzy_match(self, name: str, pool: list[str]) -> tuple[FuzzyScore | None, list[FuzzyScore]]:
        """Best accepted candidate, plus rivals too close to call."""
        accepted = [
            s for s in score_candidates(name, pool)
            if s.accepted(self._fuzzy_threshold, self._max_edit_distance)
        ]
        if not accepted:
            return None, []
        best = accepted[0]
        rivals = [s for s in accepted[1:] if best.dice - s.dice <= self._ambiguity_margin]
        return best, rivals

    async def _resolve_type(
        self,
        entity_type: EntityType,
        names: dict[str, str],
        scope: str | None,
        state: _BatchState,
    ) -> None:
        repo = self._repository
        metrics = state.metrics
        pending = set(names)

        # Tier 1
        exact = await repo.find_entities_by_names(entity_type, set(pending), scope)
        metrics.repository_round_trips += 1
        for normalized, entity in exact.items():
            self._bind(state, entity_type, normalized, names[normalized], entity, MatchTier.EXACT, 1.0)
            metrics.exact_matches += 1
        pending -= set(exact)
        if not pending:
            return

        # Tier 2
        aliased = await repo.find_aliases(entity_type, set(pending), scope)
        metrics.repository_round_trips += 1
        for normalized, entity in aliased.items():
            self._bind(
                state, entity_type, normalized, names[normalized], entity,
                MatchTier.ALIAS, ALIAS_MATCH_CONFIDENCE,
            )
            metrics.alias_matches += 1
        pending -= set(aliased)
        if not pending:
            return

        # Tier 3
        existing = {e.normalized_name: e for e in await repo.list_entities(entity_type, scope)}
        metrics.repository_round_trips += 1

        drafts: dict[str, EntityDraft] = {}
        fuzzy: dict[str, FuzzyScore] = {}

        for normalized in sorted(pending):
            pool = list(existing) + list(drafts)
            best, rivals = self._pick_fuzzy_match(normalized, pool)

            if best is None:
                drafts[normalized] = EntityDraft(
                    entity_type=entity_type,
                    name=names[normalized],
                    normalized_name=normalized,
                    scope=scope,
                )
            elif rivals:
                candidates = [best.candidate] + [r.candidate for r in rivals]
                state.ambiguous[(entity_type, normalized)] = ResolutionAmbiguityError(
                    f"'{normalized}' matches {len(candidates)} {entity_type.value} entities equally well",
                    context={
                        "entity_type": entity_type.value,
                        "name": normalized,
                        "scope": scope,
                        "candidates": candidates,
                        "score": round(best.dice, 4),
                    },
                )
                metrics.ambiguous_names += 1
                resolution_outcomes_total.labels(entity_type=entity_type.value, tier="ambiguous").inc()
            else:
                fuzzy[normalized] = best

        created: dict[str, CanonicalEntity] = {}
        if drafts:
            created = await repo.upsert_entities(list(drafts.values()))
            metrics.repository_round_trips += 1
            for normalized in drafts:
                self._bind(
                    state, entity_type, normalized, names[normalized], created[normalized],
                    MatchTier.CREATED, 1.0,
                )
            metrics.new_entities_created += len(drafts)

        aliases: list[Alias] = []
        seen_alias_texts: set[str] = set()
        for normalized, score in fuzzy.items():
            target = existing.get(score.candidate) or created[score.candidate]
            self._bind(
                state, entity_type, normalized, names[normalized], target,
                MatchTier.FUZZY, score.dice,
            )
            metrics.fuzzy_matches += 1

            alias_text = normalized
            if len(alias_text) > self._max_alias_length or alias_text in seen_alias_texts:
                continue
            seen_alias_texts.add(alias_text)
            aliases.append(
                Alias(
                    canonical_entity_id=target.id,
                    entity_type=entity_type,
                    alias_text=alias_text,
                    scope=scope,
                )
            )

        if aliases:
            await repo.upsert_aliases(aliases)
            metrics.repository_round_trips += 1

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def resolve_mentions(
        self, mentions: list[LLMMention], scope: str | None = None
    ) -> ResolutionResult:
        """Bind every mention in a batch to canonical entities.

        Args:
            mentions: Mentions from one extraction call
            scope: Coverage/location key used to scope restaurant names

        Returns:
            ResolutionResult with resolved mentions, per-mention failures,
            the connections written, and batch metrics
        """
        start = time.perf_counter()
        state = _BatchState()
        result = ResolutionResult()

        if not mentions:
            return result

        names = self._collect_names(mentions)
        for entity_type in EntityType:
            if names[entity_type]:
                type_scope = scope if entity_type is EntityType.RESTAURANT else None
                await self._resolve_type(entity_type, names[entity_type], type_scope, state)

        upserts: list[ConnectionUpsert] = []
        for mention in mentions:
            resolved = self._bind_mention(mention, state, result)
            if resolved is None:
                continue
            result.resolved.append(resolved)
            if resolved.dish is not None:
                upserts.append(
                    ConnectionUpsert(
                        restaurant_id=resolved.restaurant.entity_id,
                        dish_id=resolved.dish.entity_id,
                        source_id=mention.source_id,
                        upvotes=mention.source_upvotes,
                        is_menu_item=mention.is_menu_item,
                        category_ids=[c.entity_id for c in resolved.dish_categories],
                        dish_attribute_ids=[a.entity_id for a in resolved.dish_attributes],
                    )
                )

        if upserts:
            result.connections = await self._repository.upsert_connections(upserts)
            state.metrics.repository_round_trips += 1

        bindings = list(state.bindings.values())
        metrics = state.metrics
        metrics.average_confidence = (
            sum(b.confidence for b in bindings) / len(bindings) if bindings else 0.0
        )
        elapsed = time.perf_counter() - start
        metrics.processing_time_ms = max(1, int(elapsed * 1000))
        result.metrics = metrics
        stage_duration_seconds.labels(stage="resolution").observe(elapsed)

        logger.info(
            "Entity resolution completed",
            extra={
                "mentions": len(mentions),
                "resolved": len(result.resolved),
                "failed": len(result.failures),
                "scope": scope,
                **metrics.model_dump(),
            },
        )
        return result

    def _bind_mention(
        self, mention: LLMMention, state: _BatchState, result: ResolutionResult
    ) -> ResolvedMention | None:
        refs = self._mention_names(mention)
        ambiguous = [state.ambiguous[(t, n)] for t, n, _ in refs if (t, n) in state.ambiguous]
        if ambiguous:
            for error in ambiguous:
                pipeline_errors_total.labels(kind=error.kind.value, stage="resolution").inc()
            logger.warning(
                "Excluding mention with ambiguous entity reference",
                extra={
                    "temp_id": mention.temp_id,
                    "source_id": mention.source_id,
                    "names": [e.context.get("name") for e in ambiguous],
                },
            )
            result.failures.append(
                ResolutionFailure(
                    temp_id=mention.temp_id,
                    source_id=mention.source_id,
                    kind=ambiguous[0].kind.value,
                    reason="; ".join(e.message for e in ambiguous),
                    names=[e.context.get("name", "") for e in ambiguous],
                )
            )
            return None

        def lookup(entity_type: EntityType, text: str | None) -> EntityResolution | None:
            normalized = normalize_for_comparison(text or "")
            return state.bindings.get((entity_type, normalized)) if normalized else None

        restaurant = lookup(EntityType.RESTAURANT, mention.restaurant_normalized_name)
        if restaurant is None:
            pipeline_errors_total.labels(kind="validation", stage="resolution").inc()
            result.failures.append(
                ResolutionFailure(
                    temp_id=mention.temp_id,
                    source_id=mention.source_id,
                    kind="validation",
                    reason="Mention has no usable restaurant name",
                )
            )
            return None

        def lookup_all(entity_type: EntityType, texts: list[str] | None) -> list[EntityResolution]:
            found = [lookup(entity_type, t) for t in texts or []]
            unique = {r.entity_id: r for r in found if r is not None}
            return list(unique.values())

        return ResolvedMention(
            mention=mention,
            restaurant=restaurant,
            dish=lookup(EntityType.DISH_OR_CATEGORY, mention.dish_or_category_normalized_name),
            dish_categories=lookup_all(EntityType.DISH_OR_CATEGORY, mention.dish_categories),
            dish_attributes=lookup_all(EntityType.DISH_ATTRIBUTE, mention.dish_attributes),
            restaurant_attributes=lookup_all(
                EntityType.RESTAURANT_ATTRIBUTE, mention.restaurant_attributes
            ),
        )
