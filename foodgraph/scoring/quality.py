"""Quality score computation for connections and entities.

Connection (dish) score:
    ``dish_evidence_weight * evidence_strength + dish_restaurant_weight * restaurant_score``
    where ``restaurant_score`` is the restaurant's score from *before* the
    current pass, so no fixed-point iteration is needed.

Restaurant score:
    ``restaurant_top_weight * mean(top N connection scores)
    + restaurant_breadth_weight * mean(all connection scores)
    + min(praise_cap, praise_scale * log1p(general praise upvotes))``

Other entities take the mean score of the connections (or, for restaurant
attributes, the restaurants) that reference them. Every score is clamped to
``[score_floor, score_ceiling]``.

Recomputation is deferred: ingestion marks entity ids on a
:class:`DirtyEntityQueue` and :meth:`QualityScoreComputer.flush` recomputes
each of them once per cycle.
"""

import math
from datetime import datetime
from typing import Iterable, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from foodgraph.clock import IngestionClock, age_in_days, current_time
from foodgraph.config import ResolutionConfig, ScoringConfig
from foodgraph.connection import Connection, ConnectionMetrics
from foodgraph.entity import Entity, EntityType
from foodgraph.errors import ConflictRetryExhausted
from foodgraph.logging import setup_logging
from foodgraph.storage.interfaces import ConnectionStorageInterface, EntityStorageInterface
from foodgraph.storage.versioned import update_versioned


class DirtyEntityQueue:
    """Deduplicated, insertion-ordered set of entity ids awaiting recomputation."""

    def __init__(self) -> None:
        self._pending: dict[str, None] = {}

    def mark(self, *entity_ids: str) -> None:
        for entity_id in entity_ids:
            self._pending.setdefault(entity_id, None)

    def drain(self) -> list[str]:
        """Remove and return every pending id in the order first marked."""
        pending = list(self._pending)
        self._pending.clear()
        return pending

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._pending


def clamp_score(value: float, config: ScoringConfig) -> float:
    return float(min(config.score_ceiling, max(config.score_floor, value)))


def evidence_strength(metrics: ConnectionMetrics, now: datetime, config: ScoringConfig) -> float:
    """Score in [0, 100] from mention count, decayed upvotes, diversity and recency.

    ``decayed_upvotes`` was decayed as of ``metrics.computed_at``; it is decayed
    further to ``now``. Each component is non-decreasing in added evidence.
    """
    elapsed = age_in_days(metrics.computed_at, now) if metrics.computed_at else 0.0
    decayed_upvotes = metrics.decayed_upvotes * math.exp(-elapsed / config.decay_days)
    components = np.minimum(
        100.0,
        np.log1p([
            metrics.mention_count,
            decayed_upvotes,
            metrics.source_diversity,
            metrics.recent_mention_count,
        ])
        * np.array([
            config.mention_scale,
            config.upvote_scale,
            config.diversity_scale,
            config.recent_scale,
        ]),
    )
    weights = np.array([
        config.mention_weight,
        config.upvote_weight,
        config.diversity_weight,
        config.recent_weight,
    ])
    return float(components @ weights / weights.sum())


def dish_quality(strength: float, restaurant_score: float, config: ScoringConfig) -> float:
    return clamp_score(
        config.dish_evidence_weight * strength + config.dish_restaurant_weight * restaurant_score,
        config,
    )


def praise_bonus(praise_upvotes: float, config: ScoringConfig) -> float:
    """Bounded bonus for upvotes on general praise of the restaurant."""
    return min(config.praise_cap, config.praise_scale * math.log1p(max(0.0, praise_upvotes)))


def restaurant_quality(
    connection_scores: Sequence[float], config: ScoringConfig, praise_upvotes: float = 0
) -> float:
    """Top-dish term plus breadth term plus the general-praise bonus.

    The dish terms are 0 for a restaurant without connections.
    """
    bonus = praise_bonus(praise_upvotes, config)
    if not connection_scores:
        return clamp_score(bonus, config)
    scores = np.sort(np.asarray(connection_scores, dtype=float))[::-1]
    top = scores[: config.restaurant_top_dishes]
    return clamp_score(
        config.restaurant_top_weight * float(top.mean())
        + config.restaurant_breadth_weight * float(scores.mean())
        + bonus,
        config,
    )


class QualityScoreUpdateResult(BaseModel):
    """Summary of one recomputation pass.

    Attributes:
        entities_updated: Entities whose stored score changed.
        connections_updated: Connections whose stored score changed.
        changed_ids: Entity and connection ids whose score changed, for cache invalidation.
        errors: Per-entity failures; those ids were re-marked dirty.
    """

    model_config = {"frozen": True}

    entities_updated: int = 0
    connections_updated: int = 0
    changed_ids: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()


class _Pass:
    """Mutable bookkeeping for one recomputation pass."""

    def __init__(self, restaurant_snapshot: dict[str, float]):
        self.restaurant_snapshot = restaurant_snapshot
        self.connection_scores: dict[str, float] = {}
        self.changed: dict[str, None] = {}
        self.entities_updated = 0
        self.connections_updated = 0


# Restaurants first, restaurant attributes last (they read restaurant scores).
_TYPE_ORDER = {
    EntityType.RESTAURANT: 0,
    EntityType.DISH_OR_CATEGORY: 1,
    EntityType.DISH_ATTRIBUTE: 1,
    EntityType.RESTAURANT_ATTRIBUTE: 2,
}


class QualityScoreComputer(BaseModel):
    """Recompute and store quality scores for entities and their connections."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    entity_storage: EntityStorageInterface
    connection_storage: ConnectionStorageInterface
    config: ScoringConfig = Field(default_factory=ScoringConfig)
    max_update_attempts: int = Field(default=ResolutionConfig().max_update_attempts, ge=1)
    clock: IngestionClock | None = None

    async def recompute(self, entity_id: str) -> float:
        """Recompute one entity (and the connections it scores through) and return its score.

        Raises:
            KeyError: If the entity does not exist.
        """
        entity = await self.entity_storage.get(entity_id)
        if entity is None:
            raise KeyError(entity_id)
        state = _Pass(await self._restaurant_snapshot())
        return await self._recompute_entity(entity, state, current_time(self.clock))

    async def flush(self, queue: DirtyEntityQueue) -> QualityScoreUpdateResult:
        """Recompute every queued entity once, restaurants first."""
        logger = setup_logging(__name__)
        now = current_time(self.clock)
        entity_ids = queue.drain()
        if not entity_ids:
            return QualityScoreUpdateResult()

        state = _Pass(await self._restaurant_snapshot())
        entities = [e for e in await self.entity_storage.get_batch(entity_ids) if e is not None]
        entities.sort(key=lambda e: _TYPE_ORDER[e.entity_type])

        errors: list[str] = []
        for entity in entities:
            try:
                await self._recompute_entity(entity, state, now)
            except ConflictRetryExhausted as exc:
                logger.error(f"Score update for {entity.key} did not land: {exc}")
                errors.append(f"{entity.entity_id}: {exc}")
                queue.mark(entity.entity_id)

        result = QualityScoreUpdateResult(
            entities_updated=state.entities_updated,
            connections_updated=state.connections_updated,
            changed_ids=tuple(state.changed),
            errors=tuple(errors),
        )
        logger.info(
            f"Recomputed {len(entities)} entities: {result.entities_updated} entity and "
            f"{result.connections_updated} connection scores changed"
        )
        return result

    async def _restaurant_snapshot(self) -> dict[str, float]:
        restaurants = await self.entity_storage.list_by_type(EntityType.RESTAURANT)
        return {r.entity_id: r.quality_score for r in restaurants}

    async def _recompute_entity(self, entity: Entity, state: _Pass, now: datetime) -> float:
        if entity.entity_type == EntityType.RESTAURANT:
            connections = await self.connection_storage.list_by_restaurant(entity.entity_id)
            scores = [await self._score_connection(c, state, now) for c in connections]
            score = restaurant_quality(
                scores, self.config, entity.metadata.get("general_praise_upvotes", 0)
            )
        elif entity.entity_type == EntityType.RESTAURANT_ATTRIBUTE:
            restaurants = [
                r
                for r in await self.entity_storage.list_by_type(EntityType.RESTAURANT)
                if entity.entity_id in r.restaurant_attribute_ids
            ]
            score = _mean(r.quality_score for r in restaurants)
        else:
            connections = await self._connections_referencing(entity)
            score = _mean([await self._score_connection(c, state, now) for c in connections])
        return await self._store_entity_score(entity.entity_id, clamp_score(score, self.config), state, now)

    async def _connections_referencing(self, entity: Entity) -> list[Connection]:
        if entity.entity_type == EntityType.DISH_ATTRIBUTE:
            return [
                c for c in await self.connection_storage.list_all()
                if entity.entity_id in c.dish_attributes
            ]
        as_dish = await self.connection_storage.list_by_dish(entity.entity_id)
        seen = {c.connection_id for c in as_dish}
        as_category = [
            c for c in await self.connection_storage.list_all()
            if entity.entity_id in c.categories and c.connection_id not in seen
        ]
        return as_dish + as_category

    async def _score_connection(self, connection: Connection, state: _Pass, now: datetime) -> float:
        """Score a connection at most once per pass, using the snapshot restaurant score."""
        if connection.connection_id in state.connection_scores:
            return state.connection_scores[connection.connection_id]
        restaurant_score = state.restaurant_snapshot.get(connection.restaurant_id, 0.0)

        def rescore(current: Connection) -> Connection:
            strength = evidence_strength(current.metrics, now, self.config)
            score = round(dish_quality(strength, restaurant_score, self.config), 6)
            if score == current.quality_score:
                return current
            return current.model_copy(update={"quality_score": score, "updated_at": now})

        before = connection.quality_score
        stored = await update_versioned(
            self.connection_storage, connection.connection_id, rescore, self.max_update_attempts
        )
        if stored.quality_score != before:
            state.connections_updated += 1
            state.changed.setdefault(stored.connection_id, None)
            state.changed.setdefault(stored.restaurant_id, None)
            state.changed.setdefault(stored.dish_id, None)
        state.connection_scores[stored.connection_id] = stored.quality_score
        return stored.quality_score

    async def _store_entity_score(self, entity_id: str, score: float, state: _Pass, now: datetime) -> float:
        score = round(score, 6)

        def set_score(current: Entity) -> Entity:
            if current.quality_score == score:
                return current
            return current.model_copy(update={"quality_score": score, "updated_at": now})

        before = await self.entity_storage.get(entity_id)
        stored = await update_versioned(self.entity_storage, entity_id, set_score, self.max_update_attempts)
        if before is None or before.quality_score != stored.quality_score:
            state.entities_updated += 1
            state.changed.setdefault(entity_id, None)
        return stored.quality_score


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return float(np.mean(values)) if values else 0.0
