"""Entity resolution for extracted restaurant/dish mentions.

The resolver maps each extracted mention onto the graph in four steps:

1. **Within-batch deduplication**: every restaurant, dish, category and
   attribute string is normalized and grouped by ``(type, normalized name)``
   so each distinct name touches storage once per batch.
2. **Three-tier match**: exact canonical name, then alias set, then fuzzy
   match (rapidfuzz similarity, gated by Levenshtein distance) against
   entities of the same type.
3. **Confidence gating**: above ``high_confidence`` the name merges into the
   candidate as a new alias; in the medium band a token-superset heuristic
   with no competing candidate merges, anything else creates a new entity
   flagged for review; below ``medium_confidence`` a new entity is created.
4. **Connection and mention writes**: the connection is upserted by
   ``(restaurant_id, dish_id, sorted dish_attributes)`` and the mention is
   appended keyed by ``(source_type, source_id, connection_id)``.

Restaurant-only mentions (no dish) never create a connection. Their
categories and dish attributes boost existing connections that carry them;
categories are also recorded as restaurant-level category signals.

Entity creation is an atomic insert-if-absent; a writer that loses the race
re-reads and reuses the winner's row, so concurrent batches naming the same
new restaurant converge on one entity.
"""

import uuid
from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field
from rapidfuzz import fuzz, process
from rapidfuzz.distance import Levenshtein

from foodgraph.clock import IngestionClock, current_time
from foodgraph.config import ResolutionConfig
from foodgraph.connection import BoostRecord, Connection, connection_key
from foodgraph.entity import Entity, EntityType
from foodgraph.errors import ConflictRetryExhausted, ResolutionError, VersionConflict
from foodgraph.logging import PprintLogger, setup_logging
from foodgraph.mention import ExtractedMention, Mention, mention_id_for
from foodgraph.normalize import name_tokens, normalize_name
from foodgraph.storage.interfaces import (
    ConnectionStorageInterface,
    EntityStorageInterface,
    MentionStorageInterface,
)
from foodgraph.storage.versioned import update_versioned

NameKey = tuple[EntityType, str]


class ResolutionTier(str, Enum):
    """How a surface name was mapped onto an entity."""

    EXACT = "exact"
    ALIAS = "alias"
    FUZZY = "fuzzy"
    HEURISTIC = "heuristic"
    NEW = "new"


class NameMatch(BaseModel, frozen=True):
    """Resolution of one normalized name within a batch."""

    entity_type: EntityType
    name: str = Field(description="Normalized surface name.")
    entity_id: str
    tier: ResolutionTier
    confidence: float = Field(ge=0.0, le=1.0)
    review_candidate_id: str | None = Field(
        default=None,
        description="Medium-band candidate that was not merged; set when flagged for review.",
    )


class ResolutionResult(BaseModel, frozen=True):
    """Outcome of resolving one extracted mention.

    Attributes:
        source_key: ``"<source_type>:<source_id>"`` of the mention.
        restaurant_id: Resolved restaurant, None on failure.
        dish_id: Resolved dish, None for restaurant-only mentions.
        connection_id: Upserted connection, None for restaurant-only mentions.
        mention_id: Mention row id (new or pre-existing).
        mention_created: False when the mention was already stored.
        boosted_connection_ids: Connections boosted by a dish-less category or attribute mention.
        entity_ids: Every entity the mention touched, for score recomputation.
        matches: Per-name resolution details.
        error: Failure message; the mention was skipped.
        retryable: True when the failure was a transient conflict.
    """

    source_key: str
    restaurant_id: str | None = None
    dish_id: str | None = None
    connection_id: str | None = None
    mention_id: str | None = None
    mention_created: bool = False
    boosted_connection_ids: tuple[str, ...] = ()
    entity_ids: tuple[str, ...] = ()
    matches: tuple[NameMatch, ...] = ()
    error: str | None = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def needs_review(self) -> bool:
        return any(m.review_candidate_id is not None for m in self.matches)

    def triples(self) -> list[tuple[str, str, str]]:
        """``(entity_id, connection_id, mention_id)`` for each entity the mention supports."""
        if self.connection_id is None or self.mention_id is None:
            return []
        return [(entity_id, self.connection_id, self.mention_id) for entity_id in self.entity_ids]


class ResolutionStats(BaseModel, frozen=True):
    """Tier counts and average confidence over a set of results."""

    mentions: int = 0
    failed: int = 0
    exact_matches: int = 0
    alias_matches: int = 0
    fuzzy_matches: int = 0
    heuristic_matches: int = 0
    new_entities: int = 0
    flagged_for_review: int = 0
    average_confidence: float = 0.0

    @classmethod
    def from_results(cls, results: Sequence[ResolutionResult]) -> "ResolutionStats":
        # A name shared by several mentions is counted once.
        unique: dict[NameKey, NameMatch] = {}
        for result in results:
            for match in result.matches:
                unique.setdefault((match.entity_type, match.name), match)
        tiers = Counter(m.tier for m in unique.values())
        confidences = [m.confidence for m in unique.values()]
        return cls(
            mentions=len(results),
            failed=sum(1 for r in results if not r.ok),
            exact_matches=tiers[ResolutionTier.EXACT],
            alias_matches=tiers[ResolutionTier.ALIAS],
            fuzzy_matches=tiers[ResolutionTier.FUZZY],
            heuristic_matches=tiers[ResolutionTier.HEURISTIC],
            new_entities=tiers[ResolutionTier.NEW],
            flagged_for_review=sum(1 for m in unique.values() if m.review_candidate_id),
            average_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
        )


class _Candidate(BaseModel, frozen=True):
    entity: Entity
    matched_name: str
    similarity: float


class EntityResolver(BaseModel):
    """Resolve batches of extracted mentions onto entities, connections and mentions.

    Example:
        ```python
        resolver = EntityResolver(
            entity_storage=entities,
            connection_storage=connections,
            mention_storage=mentions,
        )
        results = await resolver.resolve(batch)
        for result in results:
            for entity_id, connection_id, mention_id in result.triples():
                ...
        ```
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    entity_storage: EntityStorageInterface
    connection_storage: ConnectionStorageInterface
    mention_storage: MentionStorageInterface
    config: ResolutionConfig = Field(default_factory=ResolutionConfig)
    clock: IngestionClock | None = None

    async def resolve(
        self, batch: Sequence[ExtractedMention], batch_id: str | None = None
    ) -> list[ResolutionResult]:
        """Resolve a batch, returning one result per input mention in order.

        Malformed mentions and mentions whose names could not be created
        are reported in their result and skipped; the rest of the batch
        still lands.
        """
        logger = setup_logging(__name__).bind(batch=batch_id or "-")
        now = current_time(self.clock)

        valid: dict[int, ExtractedMention] = {}
        results: dict[int, ResolutionResult] = {}
        for index, mention in enumerate(batch):
            try:
                self.validate_mention(mention)
            except ResolutionError as exc:
                logger.warning(f"Skipping mention {exc.source_key}: {exc}")
                results[index] = ResolutionResult(source_key=mention.source_key, error=str(exc))
            else:
                valid[index] = mention

        names: dict[NameKey, None] = {}
        for mention in valid.values():
            for key in self._name_keys(mention):
                names.setdefault(key, None)

        resolved: dict[NameKey, NameMatch] = {}
        failed: dict[NameKey, ConflictRetryExhausted] = {}
        for entity_type, name in names:
            try:
                resolved[(entity_type, name)] = await self.resolve_name(entity_type, name, now, logger)
            except ConflictRetryExhausted as exc:
                logger.error(f"Entity creation did not converge for {entity_type.value}:{name}")
                failed[(entity_type, name)] = exc

        for index, mention in valid.items():
            try:
                results[index] = await self._apply_mention(mention, resolved, failed, now)
            except ConflictRetryExhausted as exc:
                logger.error(f"Giving up on {mention.source_key} for now: {exc}")
                results[index] = ResolutionResult(
                    source_key=mention.source_key, error=str(exc), retryable=True
                )

        ordered = [results[i] for i in range(len(batch))]
        logger.debug(ResolutionStats.from_results(ordered))
        return ordered

    @staticmethod
    def validate_mention(mention: ExtractedMention) -> None:
        """Raise ResolutionError if the mention cannot be placed in the graph."""
        if mention.restaurant is None or not normalize_name(mention.restaurant):
            raise ResolutionError("mention has no restaurant name", mention.source_key)
        if not mention.source_id.strip():
            raise ResolutionError("mention has no source id", mention.source_key)

    @staticmethod
    def _name_keys(mention: ExtractedMention) -> list[NameKey]:
        keys: list[NameKey] = [(EntityType.RESTAURANT, normalize_name(mention.restaurant or ""))]
        if mention.dish and normalize_name(mention.dish):
            keys.append((EntityType.DISH_OR_CATEGORY, normalize_name(mention.dish)))
        typed = (
            (EntityType.DISH_OR_CATEGORY, mention.categories),
            (EntityType.DISH_ATTRIBUTE, mention.dish_attributes),
            (EntityType.RESTAURANT_ATTRIBUTE, mention.restaurant_attributes),
        )
        for entity_type, surfaces in typed:
            for surface in surfaces:
                if normalize_name(surface):
                    keys.append((entity_type, normalize_name(surface)))
        return keys

    async def resolve_name(
        self,
        entity_type: EntityType,
        name: str,
        now: datetime | None = None,
        logger: PprintLogger | None = None,
    ) -> NameMatch:
        """Map one normalized name onto an entity, creating it if needed.

        Raises:
            ConflictRetryExhausted: If the entity could neither be created nor re-read.
        """
        logger = logger or setup_logging(__name__)
        now = now or current_time(self.clock)
        name = normalize_name(name)

        existing = await self.entity_storage.find_by_name(name, entity_type)
        if existing is not None:
            return NameMatch(
                entity_type=entity_type, name=name, entity_id=existing.entity_id,
                tier=ResolutionTier.EXACT, confidence=1.0,
            )

        existing = await self.entity_storage.find_by_alias(name, entity_type)
        if existing is not None:
            return NameMatch(
                entity_type=entity_type, name=name, entity_id=existing.entity_id,
                tier=ResolutionTier.ALIAS, confidence=0.95,
            )

        review_candidate_id = None
        if self.config.enable_fuzzy:
            candidates = self._fuzzy_candidates(name, await self.entity_storage.list_by_type(entity_type))
            if candidates:
                best = candidates[0]
                if best.similarity > self.config.high_confidence:
                    await self._attach_alias(best.entity.entity_id, name, now)
                    logger.debug(f"Fuzzy merge {name!r} -> {best.entity.key} ({best.similarity:.2f})")
                    return NameMatch(
                        entity_type=entity_type, name=name, entity_id=best.entity.entity_id,
                        tier=ResolutionTier.FUZZY, confidence=best.similarity,
                    )
                if best.similarity >= self.config.medium_confidence:
                    competing = [
                        c for c in candidates[1:] if c.similarity >= self.config.medium_confidence
                    ]
                    if not competing and _token_superset(name, best.matched_name):
                        await self._attach_alias(best.entity.entity_id, name, now)
                        logger.debug(f"Heuristic merge {name!r} -> {best.entity.key}")
                        return NameMatch(
                            entity_type=entity_type, name=name, entity_id=best.entity.entity_id,
                            tier=ResolutionTier.HEURISTIC, confidence=best.similarity,
                        )
                    review_candidate_id = best.entity.entity_id
                    logger.info(
                        f"Flagging {entity_type.value}:{name} for review against "
                        f"{best.entity.key} ({best.similarity:.2f})"
                    )

        entity, created = await self._create_entity(entity_type, name, now)
        return NameMatch(
            entity_type=entity_type,
            name=name,
            entity_id=entity.entity_id,
            tier=ResolutionTier.NEW if created else ResolutionTier.EXACT,
            confidence=1.0,
            review_candidate_id=review_candidate_id,
        )

    def _fuzzy_candidates(self, name: str, entities: Sequence[Entity]) -> list[_Candidate]:
        """Entities within the edit-distance bound, best similarity first.

        Ties are broken by entity_id so the choice is deterministic.
        """
        choices = {
            (entity.entity_id, alias): alias
            for entity in entities
            for alias in entity.all_names()
        }
        if not choices:
            return []
        by_id = {entity.entity_id: entity for entity in entities}
        within_distance = process.extract(
            name,
            choices,
            scorer=Levenshtein.distance,
            score_cutoff=self.config.max_edit_distance,
            limit=None,
        )
        best: dict[str, _Candidate] = {}
        for alias, _distance, (entity_id, _) in within_distance:
            similarity = fuzz.ratio(name, alias) / 100.0
            if entity_id not in best or similarity > best[entity_id].similarity:
                best[entity_id] = _Candidate(
                    entity=by_id[entity_id], matched_name=alias, similarity=similarity
                )
        return sorted(best.values(), key=lambda c: (-c.similarity, c.entity.entity_id))

    async def _create_entity(
        self, entity_type: EntityType, name: str, now: datetime
    ) -> tuple[Entity, bool]:
        """Insert-if-absent with retry; reuses a concurrently created entity."""
        attempts = self.config.max_create_attempts
        for _ in range(attempts):
            candidate = Entity(
                entity_id=str(uuid.uuid4()),
                name=name,
                entity_type=entity_type,
                aliases=(name,),
                created_at=now,
                updated_at=now,
            )
            try:
                return await self.entity_storage.insert_if_absent(candidate)
            except VersionConflict:
                continue
        raise ConflictRetryExhausted(f"{entity_type.value}:{name}", attempts)

    async def _attach_alias(self, entity_id: str, alias: str, now: datetime) -> Entity:
        def add_alias(entity: Entity) -> Entity:
            updated = entity.with_aliases(alias)
            if updated is entity:
                return entity
            return updated.model_copy(update={"updated_at": now})

        return await update_versioned(
            self.entity_storage, entity_id, add_alias, self.config.max_update_attempts
        )

    async def _apply_mention(
        self,
        mention: ExtractedMention,
        resolved: dict[NameKey, NameMatch],
        failed: dict[NameKey, ConflictRetryExhausted],
        now: datetime,
    ) -> ResolutionResult:
        keys = self._name_keys(mention)
        for key in keys:
            if key in failed:
                raise failed[key]
        matches = tuple(dict.fromkeys(resolved[key] for key in keys))

        def ids(entity_type: EntityType, surfaces: Sequence[str]) -> list[str]:
            return list(dict.fromkeys(
                resolved[(entity_type, normalize_name(s))].entity_id
                for s in surfaces
                if normalize_name(s)
            ))

        restaurant_id = resolved[(EntityType.RESTAURANT, normalize_name(mention.restaurant or ""))].entity_id
        dish_id = None
        if mention.dish and normalize_name(mention.dish):
            dish_id = resolved[(EntityType.DISH_OR_CATEGORY, normalize_name(mention.dish))].entity_id
        category_ids = ids(EntityType.DISH_OR_CATEGORY, mention.categories)
        dish_attribute_ids = ids(EntityType.DISH_ATTRIBUTE, mention.dish_attributes)
        restaurant_attribute_ids = ids(EntityType.RESTAURANT_ATTRIBUTE, mention.restaurant_attributes)
        entity_ids = tuple(m.entity_id for m in matches)

        await self._record_restaurant_evidence(
            mention,
            restaurant_id,
            restaurant_attribute_ids,
            category_ids if dish_id is None else [],
            now,
        )

        if dish_id is None:
            boosted = await self._boost_connections(mention, restaurant_id, category_ids, dish_attribute_ids)
            return ResolutionResult(
                source_key=mention.source_key,
                restaurant_id=restaurant_id,
                boosted_connection_ids=boosted,
                entity_ids=entity_ids,
                matches=matches,
            )

        connection = await self._upsert_connection(
            restaurant_id, dish_id, category_ids, dish_attribute_ids, mention.is_menu_item, now
        )
        stored, created = await self.mention_storage.add_if_absent(
            Mention(
                mention_id=mention_id_for(mention.source_type, mention.source_id, connection.connection_id),
                connection_id=connection.connection_id,
                source_type=mention.source_type,
                source_id=mention.source_id,
                source=mention.source,
                source_url=mention.source_url,
                excerpt=mention.excerpt,
                author=mention.author,
                upvotes=mention.upvotes,
                posted_at=mention.posted_at,
                processed_at=now,
            )
        )
        return ResolutionResult(
            source_key=mention.source_key,
            restaurant_id=restaurant_id,
            dish_id=dish_id,
            connection_id=connection.connection_id,
            mention_id=stored.mention_id,
            mention_created=created,
            entity_ids=entity_ids,
            matches=matches,
        )

    async def _upsert_connection(
        self,
        restaurant_id: str,
        dish_id: str,
        category_ids: Sequence[str],
        dish_attribute_ids: Sequence[str],
        is_menu_item: bool,
        now: datetime,
    ) -> Connection:
        attempts = self.config.max_create_attempts
        for _ in range(attempts):
            candidate = Connection(
                connection_id=str(uuid.uuid4()),
                restaurant_id=restaurant_id,
                dish_id=dish_id,
                categories=tuple(sorted(set(category_ids))),
                dish_attributes=tuple(sorted(set(dish_attribute_ids))),
                is_menu_item=is_menu_item,
                created_at=now,
                updated_at=now,
            )
            try:
                stored, created = await self.connection_storage.insert_if_absent(candidate)
            except VersionConflict:
                continue
            if created:
                return stored

            def merge_tags(connection: Connection) -> Connection:
                updated = connection.with_tags(category_ids, is_menu_item)
                if updated is connection:
                    return connection
                return updated.model_copy(update={"updated_at": now})

            return await update_versioned(
                self.connection_storage, stored.connection_id, merge_tags, self.config.max_update_attempts
            )
        raise ConflictRetryExhausted(
            "connection:%s/%s/%s" % connection_key(restaurant_id, dish_id, dish_attribute_ids), attempts
        )

    async def _record_restaurant_evidence(
        self,
        mention: ExtractedMention,
        restaurant_id: str,
        restaurant_attribute_ids: Sequence[str],
        category_ids: Sequence[str],
        now: datetime,
    ) -> Entity:
        """Fold attribute refs, general praise and category signals into restaurant metadata.

        Praise and category signals are keyed by source so replays are no-ops.
        ``signal_sources`` keeps the newest ``signal_source_limit`` keys in
        arrival order.
        """
        limit = self.config.signal_source_limit

        def apply(restaurant: Entity) -> Entity:
            metadata = dict(restaurant.metadata)
            attributes = list(metadata.get("restaurant_attributes", []))
            sources = dict.fromkeys(metadata.get("signal_sources", []))
            signals = {k: dict(v) for k, v in metadata.get("category_signals", {}).items()}
            changed = False

            for attribute_id in restaurant_attribute_ids:
                if attribute_id not in attributes:
                    attributes.append(attribute_id)
                    changed = True

            praise_key = f"{mention.source_key}:praise"
            if mention.general_praise and praise_key not in sources:
                sources[praise_key] = None
                metadata["general_praise_upvotes"] = metadata.get("general_praise_upvotes", 0) + mention.upvotes
                changed = True

            for category_id in category_ids:
                signal_key = f"{mention.source_key}:category:{category_id}"
                if signal_key in sources:
                    continue
                sources[signal_key] = None
                signal = signals.setdefault(
                    category_id, {"mention_count": 0, "total_upvotes": 0, "last_mentioned_at": None}
                )
                signal["mention_count"] += 1
                signal["total_upvotes"] += mention.upvotes
                posted = mention.posted_at.isoformat()
                if signal["last_mentioned_at"] is None or posted > signal["last_mentioned_at"]:
                    signal["last_mentioned_at"] = posted
                changed = True

            if not changed:
                return restaurant
            metadata["restaurant_attributes"] = attributes
            metadata["signal_sources"] = list(sources)[-limit:]
            metadata["category_signals"] = signals
            return restaurant.model_copy(update={"metadata": metadata, "updated_at": now})

        return await update_versioned(
            self.entity_storage, restaurant_id, apply, self.config.max_update_attempts
        )

    async def _boost_connections(
        self,
        mention: ExtractedMention,
        restaurant_id: str,
        category_ids: Sequence[str],
        dish_attribute_ids: Sequence[str] = (),
    ) -> tuple[str, ...]:
        """Attach a BoostRecord to existing connections the mention describes.

        A connection matches when it carries any of the mention's categories
        (as a category or as its dish) or any of its dish attributes. Each
        connection is boosted at most once per source. Never creates
        connections or entities. Returns every matching connection id,
        boosted now or on an earlier replay.
        """
        if not category_ids and not dish_attribute_ids:
            return ()
        boosted: list[str] = []
        for connection in await self.connection_storage.list_by_restaurant(restaurant_id):
            matching = [c for c in category_ids if c in connection.categories or c == connection.dish_id]
            matching += [a for a in dish_attribute_ids if a in connection.dish_attributes]
            if not matching:
                continue
            record = BoostRecord(
                source_key=mention.source_key,
                matched_id=matching[0],
                source=mention.source,
                author=mention.author,
                upvotes=mention.upvotes,
                posted_at=mention.posted_at,
            )

            def add_boost(current: Connection, record: BoostRecord = record) -> Connection:
                if any(b.source_key == record.source_key for b in current.boosts):
                    return current
                return current.model_copy(update={"boosts": current.boosts + (record,)})

            await update_versioned(
                self.connection_storage, connection.connection_id, add_boost, self.config.max_update_attempts
            )
            boosted.append(connection.connection_id)
        return tuple(boosted)


def _token_superset(a: str, b: str) -> bool:
    tokens_a, tokens_b = name_tokens(a), name_tokens(b)
    if not tokens_a or not tokens_b:
        return False
    return tokens_a >= tokens_b or tokens_b >= tokens_a
