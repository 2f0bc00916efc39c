"""Tests for the Query Template Engine.

This module verifies:
- Geographic and open-now filters apply before ranking
- Dish ranking ties break on mention_count, then connection_id
- Unknown entity references produce an empty result, not an error
- Category/attribute/broad templates return a second, restaurant list
- Restaurant-level category signals put a restaurant in the list
- Metadata lookup failures degrade to an unknown status
"""

import asyncio
import math

import pytest

from foodgraph.connection import ConnectionMetrics, TopMention
from foodgraph.entity import EntityType
from foodgraph.errors import QueryError
from foodgraph.mention import Mention, SourceType
from foodgraph.pipeline.interfaces import (
    GeoPoint,
    OperatingStatus,
    OperationalMetadata,
    OperationalMetadataLookupInterface,
)
from foodgraph.query import (
    ClassifiedQuery,
    GeoBounds,
    QueryEntities,
    QueryFilters,
    QueryTemplateEngine,
    QueryType,
)
from foodgraph.scoring import DirtyEntityQueue

from tests.conftest import NOW, days_ago, make_connection, make_entity, make_extracted

AUSTIN = GeoBounds(north=30.5, south=30.0, east=-97.5, west=-98.0)
OPEN_HOURS = {"thu": [["11:00", "22:00"]]}
DINNER_ONLY = {"thu": [["17:00", "22:00"]]}


class BrokenLookup(OperationalMetadataLookupInterface):
    async def lookup(self, restaurant_id: str) -> OperationalMetadata:
        raise RuntimeError("venue service down")


class SlowLookup(OperationalMetadataLookupInterface):
    async def lookup(self, restaurant_id: str) -> OperationalMetadata:
        await asyncio.sleep(1.0)
        return OperationalMetadata(restaurant_id=restaurant_id, status=OperatingStatus.CLOSED)


class FixedLookup(OperationalMetadataLookupInterface):
    """Serves locations the restaurant entities do not carry."""

    def __init__(self, locations: dict[str, GeoPoint]):
        self.locations = locations

    async def lookup(self, restaurant_id: str) -> OperationalMetadata:
        return OperationalMetadata(restaurant_id=restaurant_id, location=self.locations.get(restaurant_id))


def dish_query(*dishes: str, **kwargs) -> ClassifiedQuery:
    filters = QueryFilters(
        geographic_bounds=kwargs.pop("bounds", None), open_now=kwargs.pop("open_now", False)
    )
    return ClassifiedQuery(
        query_type=QueryType.DISH_SPECIFIC,
        entities=QueryEntities(dish_or_categories=dishes),
        filters=filters,
        **kwargs,
    )


async def add_restaurant(entity_storage, entity_id, *, location=None, hours=None, quality=0.0, **metadata):
    if location is not None:
        metadata["location"] = {"lat": location[0], "lng": location[1]}
    if hours is not None:
        metadata["hours"] = hours
    entity, _ = await entity_storage.insert_if_absent(
        make_entity(entity_id, entity_id=entity_id, quality_score=quality, metadata=metadata)
    )
    return entity


async def add_dish(entity_storage, entity_id, entity_type=EntityType.DISH_OR_CATEGORY):
    entity, _ = await entity_storage.insert_if_absent(make_entity(entity_id, entity_type, entity_id=entity_id))
    return entity


def engine_with(entity_storage, connection_storage, mention_storage, clock, lookup, **kwargs):
    return QueryTemplateEngine(
        entity_storage=entity_storage,
        connection_storage=connection_storage,
        mention_storage=mention_storage,
        metadata_lookup=lookup,
        clock=clock,
        **kwargs,
    )


class TestDishTemplate:
    """Dish-specific queries."""

    async def test_geographic_filter_applies_before_ranking(
        self, engine, entity_storage, connection_storage
    ) -> None:
        """Out-of-bounds and location-less restaurants are excluded even when they rank higher."""
        await add_dish(entity_storage, "ramen")
        await add_restaurant(entity_storage, "r-downtown", location=(30.27, -97.74))
        await add_restaurant(entity_storage, "r-north", location=(30.40, -97.70))
        await add_restaurant(entity_storage, "r-dallas", location=(32.78, -96.80))
        await add_restaurant(entity_storage, "r-nowhere")
        for rid, score in (("r-downtown", 60), ("r-north", 40), ("r-dallas", 99), ("r-nowhere", 98)):
            await connection_storage.insert_if_absent(
                make_connection(rid, "ramen", connection_id=f"c-{rid}", quality_score=score)
            )

        result = await engine.execute(dish_query("ramen", bounds=AUSTIN, limit=2))

        assert [d.restaurant_id for d in result.dish_results] == ["r-downtown", "r-north"]
        assert result.restaurant_results is None

    async def test_ties_break_on_mention_count_then_id(self, engine, entity_storage, connection_storage) -> None:
        await add_dish(entity_storage, "ramen")
        for rid, cid, mentions in (("r1", "c-b", 3), ("r2", "c-c", 5), ("r3", "c-a", 5)):
            await add_restaurant(entity_storage, rid)
            await connection_storage.insert_if_absent(
                make_connection(rid, "ramen", connection_id=cid, quality_score=50.0, mention_count=mentions)
            )

        result = await engine.execute(dish_query("ramen"))

        assert [d.connection_id for d in result.dish_results] == ["c-a", "c-c", "c-b"]

    async def test_open_now_excludes_only_closed(self, engine, entity_storage, connection_storage) -> None:
        await add_dish(entity_storage, "tacos")
        await add_restaurant(entity_storage, "r-open", hours=OPEN_HOURS, quality=10)
        await add_restaurant(entity_storage, "r-closed", hours=DINNER_ONLY)
        await add_restaurant(entity_storage, "r-unknown")
        for rid, score in (("r-open", 30), ("r-closed", 90), ("r-unknown", 20)):
            await connection_storage.insert_if_absent(
                make_connection(rid, "tacos", connection_id=f"c-{rid}", quality_score=score)
            )

        everything = await engine.execute(dish_query("tacos"))
        open_now = await engine.execute(dish_query("tacos", open_now=True))

        assert [(d.restaurant_id, d.status) for d in everything.dish_results] == [
            ("r-closed", OperatingStatus.CLOSED),
            ("r-open", OperatingStatus.OPEN),
            ("r-unknown", OperatingStatus.UNKNOWN),
        ]
        assert [d.restaurant_id for d in open_now.dish_results] == ["r-open", "r-unknown"]

    async def test_limit(self, engine, entity_storage, connection_storage) -> None:
        await add_dish(entity_storage, "ramen")
        for i in range(5):
            await add_restaurant(entity_storage, f"r{i}")
            await connection_storage.insert_if_absent(
                make_connection(f"r{i}", "ramen", connection_id=f"c{i}", quality_score=float(i))
            )

        result = await engine.execute(dish_query("ramen", limit=2))

        assert [d.connection_id for d in result.dish_results] == ["c4", "c3"]

    async def test_dish_alias_resolves(self, engine, entity_storage, connection_storage) -> None:
        await entity_storage.insert_if_absent(
            make_entity("pho", EntityType.DISH_OR_CATEGORY, entity_id="pho", aliases=("pho", "phở"))
        )
        await add_restaurant(entity_storage, "r1")
        await connection_storage.insert_if_absent(make_connection("r1", "pho", connection_id="c1"))

        result = await engine.execute(dish_query("Phở"))

        assert [d.dish_name for d in result.dish_results] == ["pho"]

    async def test_top_evidence_is_attached(
        self, engine, entity_storage, connection_storage, mention_storage
    ) -> None:
        await add_dish(entity_storage, "ramen")
        await add_restaurant(entity_storage, "r1")
        await mention_storage.add_if_absent(
            Mention(
                mention_id="m1",
                connection_id="c1",
                source_type=SourceType.COMMENT,
                source_id="x",
                excerpt="the tonkotsu is unreal",
                author="noodlefan",
                upvotes=42,
                posted_at=days_ago(3),
                processed_at=NOW,
            )
        )
        connection = make_connection("r1", "ramen", connection_id="c1").model_copy(
            update={
                "metrics": ConnectionMetrics(
                    mention_count=1,
                    total_upvotes=42,
                    top_mentions=(TopMention(mention_id="m1", score=40.0, upvotes=42, age_days=3.0),),
                    computed_at=NOW,
                )
            }
        )
        await connection_storage.insert_if_absent(connection)

        [dish] = (await engine.execute(dish_query("ramen"))).dish_results

        assert dish.top_evidence is not None
        assert dish.top_evidence.excerpt == "the tonkotsu is unreal"
        assert dish.top_evidence.author == "noodlefan"
        assert dish.top_evidence.age_days == pytest.approx(3.0)


class TestUnknownEntities:
    """Queries naming entities that do not exist."""

    async def test_unknown_dish_is_empty(self, engine) -> None:
        result = await engine.execute(dish_query("unicorn steak"))

        assert result.dish_results == ()
        assert result.restaurant_results is None

    async def test_unknown_category_keeps_both_lists(self, engine) -> None:
        query = ClassifiedQuery(
            query_type=QueryType.CATEGORY_SPECIFIC,
            entities=QueryEntities(dish_or_categories=("moon food",)),
        )

        result = await engine.execute(query)

        assert result.dish_results == ()
        assert result.restaurant_results == ()

    async def test_run_raises(self, engine) -> None:
        with pytest.raises(QueryError) as exc_info:
            await engine.run(dish_query("unicorn steak"))

        assert exc_info.value.reference == "unicorn steak"

    async def test_template_without_required_entities(self, engine) -> None:
        with pytest.raises(QueryError):
            await engine.run(ClassifiedQuery(query_type=QueryType.VENUE_SPECIFIC))


class TestVenueTemplate:
    """Venue-specific queries."""

    async def test_lists_one_restaurants_dishes(self, engine, entity_storage, connection_storage) -> None:
        await add_restaurant(entity_storage, "uchi")
        await add_restaurant(entity_storage, "other")
        await connection_storage.insert_if_absent(make_connection("uchi", "d1", connection_id="c1", quality_score=20))
        await connection_storage.insert_if_absent(make_connection("uchi", "d2", connection_id="c2", quality_score=70))
        await connection_storage.insert_if_absent(make_connection("other", "d1", connection_id="c3", quality_score=99))

        result = await engine.execute(
            ClassifiedQuery(query_type=QueryType.VENUE_SPECIFIC, entities=QueryEntities(restaurants=("Uchi",)))
        )

        assert [d.connection_id for d in result.dish_results] == ["c2", "c1"]
        assert result.restaurant_results is None


class TestCategoryTemplate:
    """Category-specific queries return dishes and restaurants."""

    async def seed(self, entity_storage, connection_storage) -> None:
        await add_dish(entity_storage, "bbq")
        await add_dish(entity_storage, "brisket")
        await add_dish(entity_storage, "coffee")
        await add_restaurant(entity_storage, "r1", quality=75)
        await add_restaurant(entity_storage, "r2", quality=65)
        await add_restaurant(
            entity_storage,
            "r3",
            quality=70,
            category_signals={
                "bbq": {"mention_count": 2, "total_upvotes": 10, "last_mentioned_at": days_ago(5).isoformat()}
            },
        )
        await connection_storage.insert_if_absent(
            make_connection("r1", "brisket", connection_id="c1", quality_score=80, categories=("bbq",),
                            mention_count=4, decayed_upvotes=20.0)
        )
        await connection_storage.insert_if_absent(
            make_connection("r2", "bbq", connection_id="c2", quality_score=60)
        )
        await connection_storage.insert_if_absent(
            make_connection("r2", "coffee", connection_id="c3", quality_score=95)
        )

    async def test_dual_lists(self, engine, entity_storage, connection_storage) -> None:
        await self.seed(entity_storage, connection_storage)

        result = await engine.execute(
            ClassifiedQuery(query_type=QueryType.CATEGORY_SPECIFIC, entities=QueryEntities(dish_or_categories=("BBQ",)))
        )

        assert [d.connection_id for d in result.dish_results] == ["c1", "c2"]
        assert [r.restaurant_id for r in result.restaurant_results] == ["r1", "r3", "r2"]
        by_id = {r.restaurant_id: r for r in result.restaurant_results}
        assert by_id["r1"].category_performance_score == pytest.approx(80.0)
        assert by_id["r2"].matched_connection_ids == ("c2",)
        assert by_id["r3"].matched_connection_ids == ()
        signal_weight = math.sqrt(math.log1p(2) * math.log1p(10 * math.exp(-5 / 60)))
        assert by_id["r3"].category_performance_score == pytest.approx(70.0 + 5.0 * signal_weight, abs=1e-5)

    async def test_performance_is_weighted_by_evidence(self, engine, entity_storage, connection_storage) -> None:
        await self.seed(entity_storage, connection_storage)
        await add_dish(entity_storage, "ribs")
        await connection_storage.insert_if_absent(
            make_connection("r1", "ribs", connection_id="c4", quality_score=40, categories=("bbq",),
                            mention_count=1, decayed_upvotes=1.0)
        )

        result = await engine.execute(
            ClassifiedQuery(query_type=QueryType.CATEGORY_SPECIFIC, entities=QueryEntities(dish_or_categories=("bbq",)))
        )

        heavy = math.sqrt(math.log1p(4) * math.log1p(20.0))
        light = math.log1p(1)
        expected = (80 * heavy + 40 * light) / (heavy + light)
        r1 = next(r for r in result.restaurant_results if r.restaurant_id == "r1")
        assert r1.category_performance_score == pytest.approx(expected, abs=1e-5)
        assert r1.category_performance_score > 60.0

    async def test_signal_never_lowers_performance(self, engine, entity_storage, connection_storage) -> None:
        """A restaurant-level "great ramen here" raises the ramen score even when global quality is low."""
        await add_dish(entity_storage, "ramen")
        await add_restaurant(entity_storage, "plain", quality=10)
        await add_restaurant(
            entity_storage,
            "praised",
            quality=10,
            category_signals={
                "ramen": {"mention_count": 1, "total_upvotes": 8, "last_mentioned_at": days_ago(1).isoformat()}
            },
        )
        for restaurant_id in ("plain", "praised"):
            await connection_storage.insert_if_absent(
                make_connection(restaurant_id, "ramen", connection_id=f"c-{restaurant_id}", quality_score=90)
            )

        result = await engine.execute(
            ClassifiedQuery(
                query_type=QueryType.CATEGORY_SPECIFIC, entities=QueryEntities(dish_or_categories=("ramen",))
            )
        )

        by_id = {r.restaurant_id: r for r in result.restaurant_results}
        assert by_id["plain"].category_performance_score == pytest.approx(90.0)
        assert by_id["praised"].category_performance_score > 90.0
        assert [r.restaurant_id for r in result.restaurant_results] == ["praised", "plain"]

    async def test_boost_is_clamped(self, engine, entity_storage, connection_storage) -> None:
        await add_dish(entity_storage, "ramen")
        await add_restaurant(
            entity_storage,
            "r1",
            category_signals={
                "ramen": {"mention_count": 50, "total_upvotes": 5000, "last_mentioned_at": days_ago(0).isoformat()}
            },
        )
        await connection_storage.insert_if_absent(
            make_connection("r1", "ramen", connection_id="c1", quality_score=98)
        )

        result = await engine.execute(
            ClassifiedQuery(
                query_type=QueryType.CATEGORY_SPECIFIC, entities=QueryEntities(dish_or_categories=("ramen",))
            )
        )

        assert result.restaurant_results[0].category_performance_score == pytest.approx(100.0)

    async def test_filters_apply_to_restaurant_list(self, engine, entity_storage, connection_storage) -> None:
        """A signal-only restaurant outside the bounds is not listed."""
        await self.seed(entity_storage, connection_storage)

        result = await engine.execute(
            ClassifiedQuery(
                query_type=QueryType.CATEGORY_SPECIFIC,
                entities=QueryEntities(dish_or_categories=("bbq",)),
                filters=QueryFilters(geographic_bounds=AUSTIN),
            )
        )

        assert result.dish_results == ()
        assert result.restaurant_results == ()


class TestAttributeTemplate:
    """Attribute-specific queries."""

    async def test_dish_and_restaurant_attributes(self, engine, entity_storage, connection_storage) -> None:
        await add_dish(entity_storage, "spicy", EntityType.DISH_ATTRIBUTE)
        await add_dish(entity_storage, "patio", EntityType.RESTAURANT_ATTRIBUTE)
        await add_restaurant(entity_storage, "r1", restaurant_attributes=["patio"])
        await add_restaurant(entity_storage, "r2")
        await connection_storage.insert_if_absent(make_connection("r1", "d1", connection_id="c1", quality_score=10))
        await connection_storage.insert_if_absent(
            make_connection("r2", "d2", connection_id="c2", quality_score=20, dish_attributes=("spicy",))
        )
        await connection_storage.insert_if_absent(make_connection("r2", "d3", connection_id="c3", quality_score=30))

        spicy = await engine.execute(
            ClassifiedQuery(query_type=QueryType.ATTRIBUTE_SPECIFIC, entities=QueryEntities(attributes=("spicy",)))
        )
        patio = await engine.execute(
            ClassifiedQuery(query_type=QueryType.ATTRIBUTE_SPECIFIC, entities=QueryEntities(attributes=("patio",)))
        )

        assert [d.connection_id for d in spicy.dish_results] == ["c2"]
        assert [r.restaurant_id for r in spicy.restaurant_results] == ["r2"]
        assert [d.connection_id for d in patio.dish_results] == ["c1"]
        assert [r.restaurant_id for r in patio.restaurant_results] == ["r1"]


class TestBroadTemplate:
    """Broad queries rank everything that passes the filters."""

    async def test_broad(self, engine, entity_storage, connection_storage) -> None:
        await add_restaurant(entity_storage, "r1", location=(30.27, -97.74))
        await add_restaurant(entity_storage, "r2", location=(32.78, -96.80))
        await connection_storage.insert_if_absent(make_connection("r1", "d1", connection_id="c1", quality_score=10))
        await connection_storage.insert_if_absent(make_connection("r2", "d1", connection_id="c2", quality_score=90))

        result = await engine.execute(
            ClassifiedQuery(query_type=QueryType.BROAD, filters=QueryFilters(geographic_bounds=AUSTIN))
        )

        assert [d.connection_id for d in result.dish_results] == ["c1"]
        assert [r.restaurant_id for r in result.restaurant_results] == ["r1"]


class TestMetadataDegradation:
    """Lookup failures never fail the query."""

    async def test_failing_lookup_means_unknown(
        self, entity_storage, connection_storage, mention_storage, clock
    ) -> None:
        engine = engine_with(entity_storage, connection_storage, mention_storage, clock, BrokenLookup())
        await add_dish(entity_storage, "ramen")
        await add_restaurant(entity_storage, "r1", location=(30.27, -97.74))
        await connection_storage.insert_if_absent(make_connection("r1", "ramen", connection_id="c1"))

        result = await engine.execute(dish_query("ramen", bounds=AUSTIN, open_now=True))

        assert [(d.connection_id, d.status) for d in result.dish_results] == [("c1", OperatingStatus.UNKNOWN)]

    async def test_slow_lookup_times_out(self, entity_storage, connection_storage, mention_storage, clock) -> None:
        engine = engine_with(
            entity_storage, connection_storage, mention_storage, clock, SlowLookup(), lookup_timeout=0.01
        )
        await add_dish(entity_storage, "ramen")
        await add_restaurant(entity_storage, "r1")
        await connection_storage.insert_if_absent(make_connection("r1", "ramen", connection_id="c1"))

        result = await engine.execute(dish_query("ramen", open_now=True))

        assert [d.status for d in result.dish_results] == [OperatingStatus.UNKNOWN]

    async def test_location_from_lookup(self, entity_storage, connection_storage, mention_storage, clock) -> None:
        lookup = FixedLookup({"r1": GeoPoint(lat=30.2, lng=-97.8), "r2": GeoPoint(lat=40.7, lng=-74.0)})
        engine = engine_with(entity_storage, connection_storage, mention_storage, clock, lookup)
        await add_dish(entity_storage, "ramen")
        for rid in ("r1", "r2"):
            await add_restaurant(entity_storage, rid)
            await connection_storage.insert_if_absent(make_connection(rid, "ramen", connection_id=f"c-{rid}"))

        result = await engine.execute(dish_query("ramen", bounds=AUSTIN))

        assert [d.restaurant_id for d in result.dish_results] == ["r1"]


class TestModels:
    """Query model helpers."""

    def test_bounds_across_antimeridian(self) -> None:
        bounds = GeoBounds(north=10, south=-10, east=-170, west=170)

        assert bounds.contains(GeoPoint(lat=0, lng=175))
        assert bounds.contains(GeoPoint(lat=0, lng=-175))
        assert not bounds.contains(GeoPoint(lat=0, lng=0))

    def test_bounds_validation(self) -> None:
        with pytest.raises(ValueError):
            GeoBounds(north=0, south=10, east=0, west=0)

    def test_digest_ignores_caller(self) -> None:
        assert dish_query("ramen", caller_id="a").digest() == dish_query("ramen", caller_id="b").digest()
        assert dish_query("ramen").digest() != dish_query("pho").digest()


class TestEndToEnd:
    """Mentions flow through resolution and scoring into query results."""

    async def test_best_supported_dish_ranks_first(
        self, engine, resolver, aggregator, quality, entity_storage
    ) -> None:
        batch = [
            make_extracted("Franklin BBQ", "brisket", upvotes=120, age_days=2, excerpt="best brisket in texas"),
            make_extracted("Franklin BBQ", "brisket", upvotes=40, age_days=5, author="other"),
            make_extracted("la barbecue", "brisket", upvotes=3, age_days=100),
        ]
        results = await resolver.resolve(batch)
        queue = DirtyEntityQueue()
        for result in results:
            await aggregator.rebuild(result.connection_id)
            queue.mark(*result.entity_ids)
        await quality.flush(queue)

        ranked = await engine.execute(dish_query("brisket"))

        assert [d.restaurant_name for d in ranked.dish_results] == ["franklin bbq", "la barbecue"]
        top = ranked.dish_results[0]
        assert top.mention_count == 2
        assert top.top_evidence is not None
        assert top.top_evidence.excerpt == "best brisket in texas"
