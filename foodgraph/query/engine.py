"""Query Template Engine.

Each pre-classified query shape maps to one fixed template:

- **dish-specific / venue-specific**: one ranked list of connections.
- **category / attribute / broad**: the same dish list plus a restaurant
  list ranked by ``category_performance_score``: the weighted mean quality
  of the restaurant's matching connections, raised by a non-negative boost
  from restaurant-level category signals.

Every template filters candidates by geographic bounds and "open now"
*before* ranking. Dish ties break on mention_count descending, then
connection_id ascending. Restaurant ties break on global quality
descending, then restaurant_id ascending.

Queries naming an entity that does not exist produce an empty result.
"""

import asyncio
import math
from datetime import datetime
from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field

from foodgraph.clock import IngestionClock, age_in_days, current_time
from foodgraph.config import ScoringConfig
from foodgraph.connection import Connection
from foodgraph.entity import Entity, EntityType
from foodgraph.errors import QueryError
from foodgraph.logging import setup_logging
from foodgraph.pipeline.interfaces import (
    GeoPoint,
    OperatingStatus,
    OperationalMetadata,
    OperationalMetadataLookupInterface,
)
from foodgraph.query.models import (
    ClassifiedQuery,
    DishResult,
    Evidence,
    QueryType,
    RankedResult,
    RestaurantResult,
)
from foodgraph.scoring.quality import clamp_score
from foodgraph.storage.interfaces import (
    ConnectionStorageInterface,
    EntityStorageInterface,
    MentionStorageInterface,
)

logger = setup_logging(__name__)


class ResolvedEntities(BaseModel, frozen=True):
    """Entity ids a query's names resolved to.

    Each attribute name becomes one group holding its dish-attribute and/or
    restaurant-attribute id; a connection satisfies a group through either.
    """

    restaurant_ids: frozenset[str] = frozenset()
    dish_ids: frozenset[str] = frozenset()
    attribute_groups: tuple[frozenset[str], ...] = ()

    def all_ids(self) -> set[str]:
        ids = set(self.restaurant_ids | self.dish_ids)
        for group in self.attribute_groups:
            ids.update(group)
        return ids


class _QueryContext:
    """Per-execution lookups, so each restaurant is fetched and checked once."""

    def __init__(self, now: datetime):
        self.now = now
        self.restaurants: dict[str, Entity] = {}
        self.metadata: dict[str, OperationalMetadata | None] = {}


class QueryTemplateEngine(BaseModel):
    """Execute classified queries against the stores. Read-only.

    Example:
        ```python
        engine = QueryTemplateEngine(
            entity_storage=entities,
            connection_storage=connections,
            mention_storage=mentions,
            metadata_lookup=EntityMetadataLookup(entities),
        )
        result = await engine.execute(ClassifiedQuery(
            query_type=QueryType.DISH_SPECIFIC,
            entities=QueryEntities(dish_or_categories=("ramen",)),
        ))
        ```
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    entity_storage: EntityStorageInterface
    connection_storage: ConnectionStorageInterface
    mention_storage: MentionStorageInterface
    metadata_lookup: OperationalMetadataLookupInterface | None = None
    config: ScoringConfig = Field(default_factory=ScoringConfig)
    lookup_timeout: float = Field(default=2.0, gt=0, description="Seconds per metadata lookup.")
    clock: IngestionClock | None = None

    async def execute(self, query: ClassifiedQuery) -> RankedResult:
        """Run the template for ``query.query_type``.

        Unresolvable entity references yield ``RankedResult.empty`` rather
        than an exception.
        """
        try:
            return await self.run(query)
        except QueryError as exc:
            logger.info(f"Query {query.query_type.value} returned nothing: {exc}")
            return RankedResult.empty(query.query_type)

    async def run(self, query: ClassifiedQuery) -> RankedResult:
        """Like :meth:`execute`, but raises QueryError on unknown entities."""
        resolved = await self.resolve_entities(query)
        context = _QueryContext(current_time(self.clock))

        candidates = await self._candidates(query.query_type, resolved)
        await self._load_restaurants(context, {c.restaurant_id for c in candidates})
        matching = [c for c in candidates if self._matches(query.query_type, c, resolved, context)]
        allowed = await self._apply_filters(query, {c.restaurant_id for c in matching}, context)
        matching = [c for c in matching if c.restaurant_id in allowed]

        ranked = sorted(
            matching,
            key=lambda c: (-c.quality_score, -c.metrics.mention_count, c.connection_id),
        )[: query.limit]
        dish_results = [await self._dish_result(c, context) for c in ranked]

        restaurant_results = None
        if query.query_type.returns_restaurants:
            restaurant_results = await self._rank_restaurants(query, resolved, matching, allowed, context)

        logger.debug(
            f"{query.query_type.value}: {len(candidates)} candidates, "
            f"{len(matching)} after filters, {len(dish_results)} returned"
        )
        return RankedResult(
            query_type=query.query_type,
            dish_results=tuple(dish_results),
            restaurant_results=None if restaurant_results is None else tuple(restaurant_results),
        )

    async def resolve_entities(self, query: ClassifiedQuery) -> ResolvedEntities:
        """Map query names to entity ids by exact name, then alias.

        Raises:
            QueryError: If any name matches no entity, or the query lacks the
                entities its template needs.
        """
        restaurant_ids = {
            (await self._lookup(name, EntityType.RESTAURANT)).entity_id
            for name in query.entities.restaurants
        }
        dish_ids = {
            (await self._lookup(name, EntityType.DISH_OR_CATEGORY)).entity_id
            for name in query.entities.dish_or_categories
        }
        attribute_groups = []
        for name in query.entities.attributes:
            group = {
                entity.entity_id
                for entity_type in (EntityType.DISH_ATTRIBUTE, EntityType.RESTAURANT_ATTRIBUTE)
                if (entity := await self._find(name, entity_type)) is not None
            }
            if not group:
                raise QueryError(f"unknown attribute {name!r}", name)
            attribute_groups.append(frozenset(group))

        query_type = query.query_type
        if query_type == QueryType.DISH_SPECIFIC and not dish_ids:
            raise QueryError("dish-specific query names no dish")
        if query_type == QueryType.CATEGORY_SPECIFIC and not dish_ids:
            raise QueryError("category-specific query names no category")
        if query_type == QueryType.VENUE_SPECIFIC and not restaurant_ids:
            raise QueryError("venue-specific query names no restaurant")
        if query_type == QueryType.ATTRIBUTE_SPECIFIC and not attribute_groups:
            raise QueryError("attribute-specific query names no attribute")

        return ResolvedEntities(
            restaurant_ids=frozenset(restaurant_ids),
            dish_ids=frozenset(dish_ids),
            attribute_groups=tuple(attribute_groups),
        )

    async def _find(self, name: str, entity_type: EntityType) -> Entity | None:
        found = await self.entity_storage.find_by_name(name, entity_type)
        if found is None:
            found = await self.entity_storage.find_by_alias(name, entity_type)
        return found

    async def _lookup(self, name: str, entity_type: EntityType) -> Entity:
        found = await self._find(name, entity_type)
        if found is None:
            raise QueryError(f"unknown {entity_type.value} {name!r}", name)
        return found

    async def _candidates(self, query_type: QueryType, resolved: ResolvedEntities) -> list[Connection]:
        """Cheapest superset of the matching connections for a template."""
        if query_type == QueryType.DISH_SPECIFIC:
            found: dict[str, Connection] = {}
            for dish_id in sorted(resolved.dish_ids):
                for connection in await self.connection_storage.list_by_dish(dish_id):
                    found[connection.connection_id] = connection
            return list(found.values())
        if query_type == QueryType.VENUE_SPECIFIC:
            found = {}
            for restaurant_id in sorted(resolved.restaurant_ids):
                for connection in await self.connection_storage.list_by_restaurant(restaurant_id):
                    found[connection.connection_id] = connection
            return list(found.values())
        return await self.connection_storage.list_all()

    @staticmethod
    def _matches(
        query_type: QueryType,
        connection: Connection,
        resolved: ResolvedEntities,
        context: _QueryContext,
    ) -> bool:
        if resolved.restaurant_ids and connection.restaurant_id not in resolved.restaurant_ids:
            return False
        if resolved.dish_ids:
            if query_type == QueryType.DISH_SPECIFIC:
                if connection.dish_id not in resolved.dish_ids:
                    return False
            elif connection.dish_id not in resolved.dish_ids and not resolved.dish_ids.intersection(
                connection.categories
            ):
                return False
        if resolved.attribute_groups:
            restaurant = context.restaurants.get(connection.restaurant_id)
            available = set(connection.dish_attributes)
            if restaurant is not None:
                available.update(restaurant.restaurant_attribute_ids)
            if not all(group & available for group in resolved.attribute_groups):
                return False
        return True

    async def _load_restaurants(self, context: _QueryContext, restaurant_ids: set[str]) -> None:
        missing = sorted(rid for rid in restaurant_ids if rid not in context.restaurants)
        if not missing:
            return
        for restaurant in await self.entity_storage.get_batch(missing):
            if restaurant is not None:
                context.restaurants[restaurant.entity_id] = restaurant

    async def _apply_filters(
        self, query: ClassifiedQuery, restaurant_ids: set[str], context: _QueryContext
    ) -> set[str]:
        """Restaurant ids that pass geographic and open-now filters."""
        bounds = query.filters.geographic_bounds
        allowed: set[str] = set()
        for restaurant_id in sorted(restaurant_ids):
            if bounds is not None:
                location = await self._location(restaurant_id, context)
                if location is None or not bounds.contains(location):
                    continue
            if query.filters.open_now and await self._status(restaurant_id, context) == OperatingStatus.CLOSED:
                continue
            allowed.add(restaurant_id)
        return allowed

    async def _metadata(self, restaurant_id: str, context: _QueryContext) -> OperationalMetadata | None:
        """Operational metadata, or None if there is no lookup or it failed."""
        if restaurant_id in context.metadata:
            return context.metadata[restaurant_id]
        metadata = None
        if self.metadata_lookup is not None:
            try:
                metadata = await asyncio.wait_for(
                    self.metadata_lookup.lookup(restaurant_id), self.lookup_timeout
                )
            except Exception as exc:
                logger.warning(f"Metadata lookup failed for {restaurant_id}: {exc!r}")
        context.metadata[restaurant_id] = metadata
        return metadata

    async def _location(self, restaurant_id: str, context: _QueryContext) -> GeoPoint | None:
        restaurant = context.restaurants.get(restaurant_id)
        if restaurant is not None and restaurant.metadata.get("location"):
            return GeoPoint(**restaurant.metadata["location"])
        metadata = await self._metadata(restaurant_id, context)
        return None if metadata is None else metadata.location

    async def _status(self, restaurant_id: str, context: _QueryContext) -> OperatingStatus:
        metadata = await self._metadata(restaurant_id, context)
        return OperatingStatus.UNKNOWN if metadata is None else metadata.status

    async def _dish_result(self, connection: Connection, context: _QueryContext) -> DishResult:
        restaurant = context.restaurants.get(connection.restaurant_id)
        dish = await self.entity_storage.get(connection.dish_id)
        evidence = None
        if connection.metrics.top_mentions:
            top = connection.metrics.top_mentions[0]
            mention = await self.mention_storage.get(top.mention_id)
            if mention is not None:
                evidence = Evidence(
                    mention_id=mention.mention_id,
                    excerpt=mention.excerpt,
                    source_url=mention.source_url,
                    author=mention.author,
                    upvotes=mention.upvotes,
                    age_days=round(age_in_days(mention.posted_at, context.now), 2),
                )
        return DishResult(
            connection_id=connection.connection_id,
            restaurant_id=connection.restaurant_id,
            restaurant_name=restaurant.name if restaurant else "",
            dish_id=connection.dish_id,
            dish_name=dish.name if dish else "",
            quality_score=connection.quality_score,
            mention_count=connection.metrics.mention_count,
            total_upvotes=connection.metrics.total_upvotes,
            activity_level=connection.activity_level,
            is_menu_item=connection.is_menu_item,
            top_evidence=evidence,
            status=await self._status(connection.restaurant_id, context),
        )

    def _weight(self, mention_count: float, decayed_upvotes: float) -> float:
        floor = self.config.category_weight_floor
        return math.sqrt(max(floor, math.log1p(mention_count)) * max(floor, math.log1p(decayed_upvotes)))

    def _signal_strength(self, restaurant: Entity, category_ids: frozenset[str], now: datetime) -> float:
        """Summed evidence weight of the restaurant-level signals for these categories."""
        strength = 0.0
        signals = restaurant.metadata.get("category_signals", {})
        for category_id in sorted(category_ids):
            signal = signals.get(category_id)
            if not signal or not signal.get("mention_count"):
                continue
            last = signal.get("last_mentioned_at")
            age = age_in_days(datetime.fromisoformat(last), now) if last else 0.0
            decayed = signal.get("total_upvotes", 0) * math.exp(-age / self.config.decay_days)
            strength += self._weight(signal["mention_count"], decayed)
        return strength

    def _category_performance(
        self, restaurant: Entity, connections: Sequence[Connection], category_ids: frozenset[str], now: datetime
    ) -> float:
        """Weighted mean quality of the matching connections plus the signal boost.

        A restaurant known for the category only through restaurant-level
        mentions starts from its global quality score. The boost is never
        negative, so a signal can only raise the score.
        """
        if connections:
            weights = [self._weight(c.metrics.mention_count, c.metrics.decayed_upvotes) for c in connections]
            base = sum(c.quality_score * w for c, w in zip(connections, weights)) / sum(weights)
        else:
            base = restaurant.quality_score
        boost = self.config.category_signal_weight * self._signal_strength(restaurant, category_ids, now)
        return clamp_score(base + boost, self.config)

    async def _rank_restaurants(
        self,
        query: ClassifiedQuery,
        resolved: ResolvedEntities,
        matching: Sequence[Connection],
        allowed: set[str],
        context: _QueryContext,
    ) -> list[RestaurantResult]:
        by_restaurant: dict[str, list[Connection]] = {}
        for connection in matching:
            by_restaurant.setdefault(connection.restaurant_id, []).append(connection)

        # Restaurants known for the category only through restaurant-level mentions.
        if resolved.dish_ids and query.query_type != QueryType.ATTRIBUTE_SPECIFIC:
            signal_only = [
                r.entity_id
                for r in await self.entity_storage.list_by_type(EntityType.RESTAURANT)
                if r.entity_id not in by_restaurant
                and resolved.dish_ids.intersection(r.metadata.get("category_signals", {}))
                and (not resolved.restaurant_ids or r.entity_id in resolved.restaurant_ids)
            ]
            await self._load_restaurants(context, set(signal_only))
            for restaurant_id in await self._apply_filters(query, set(signal_only), context):
                by_restaurant[restaurant_id] = []
            allowed = allowed | set(by_restaurant)

        results = []
        for restaurant_id, connections in by_restaurant.items():
            restaurant = context.restaurants.get(restaurant_id)
            if restaurant is None or restaurant_id not in allowed:
                continue
            performance = self._category_performance(restaurant, connections, resolved.dish_ids, context.now)
            results.append(
                RestaurantResult(
                    restaurant_id=restaurant_id,
                    restaurant_name=restaurant.name,
                    category_performance_score=round(performance, 6),
                    quality_score=restaurant.quality_score,
                    matched_connection_ids=tuple(sorted(c.connection_id for c in connections)),
                )
            )
        results.sort(key=lambda r: (-r.category_performance_score, -r.quality_score, r.restaurant_id))
        results = results[: query.limit]
        return [
            r.model_copy(update={"status": await self._status(r.restaurant_id, context)})
            for r in results
        ]
