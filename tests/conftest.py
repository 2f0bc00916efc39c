"""Test fixtures and factories.

This module provides:
- A fixed ``IngestionClock`` so decay, recency and activity are deterministic
- Pytest fixtures wiring the in-memory stores into the resolver, metric
  aggregator, quality computer, query engine and ingestion orchestrator
- Factory functions for extracted mentions, entities and connections
- ``FakeTime``, a settable monotonic clock for cache TTL tests
"""

import itertools
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from foodgraph.clock import IngestionClock
from foodgraph.config import CacheConfig, IngestConfig, ScoringConfig
from foodgraph.connection import Connection, ConnectionMetrics
from foodgraph.entity import Entity, EntityType
from foodgraph.ingest import IngestionOrchestrator
from foodgraph.mention import ExtractedMention, SourceType
from foodgraph.normalize import normalize_name
from foodgraph.pipeline.metadata import EntityMetadataLookup
from foodgraph.query.cache import CacheLayer
from foodgraph.query.engine import QueryTemplateEngine
from foodgraph.resolution import EntityResolver
from foodgraph.scoring import MetricAggregator, QualityScoreComputer
from foodgraph.storage.memory import (
    InMemoryConnectionStorage,
    InMemoryEntityStorage,
    InMemoryMentionStorage,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
"""Thursday noon UTC; every fixture clock is pinned here."""

_source_ids = itertools.count(1)


class FakeTime:
    """Settable replacement for ``time.monotonic``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


def make_extracted(
    restaurant: str | None,
    dish: str | None = None,
    *,
    source_id: str | None = None,
    source_type: SourceType = SourceType.COMMENT,
    upvotes: int = 0,
    age_days: float = 0.0,
    **kwargs: Any,
) -> ExtractedMention:
    """Build an ExtractedMention; ``source_id`` is unique unless given."""
    return ExtractedMention(
        restaurant=restaurant,
        dish=dish,
        source_type=source_type,
        source_id=source_id or f"t{next(_source_ids)}",
        upvotes=upvotes,
        posted_at=days_ago(age_days),
        source=kwargs.pop("source", "austinfood"),
        author=kwargs.pop("author", "someone"),
        excerpt=kwargs.pop("excerpt", f"{dish or restaurant} is great"),
        **kwargs,
    )


def make_entity(name: str, entity_type: EntityType = EntityType.RESTAURANT, **kwargs: Any) -> Entity:
    """Build an Entity whose canonical name is also its first alias."""
    return Entity(
        entity_id=kwargs.pop("entity_id", str(uuid.uuid4())),
        name=name,
        entity_type=entity_type,
        aliases=kwargs.pop("aliases", (normalize_name(name),)),
        created_at=NOW,
        updated_at=NOW,
        **kwargs,
    )


def make_connection(
    restaurant_id: str,
    dish_id: str,
    *,
    quality_score: float = 0.0,
    mention_count: int = 1,
    decayed_upvotes: float = 10.0,
    **kwargs: Any,
) -> Connection:
    """Build a Connection with simple pre-aggregated metrics."""
    return Connection(
        connection_id=kwargs.pop("connection_id", str(uuid.uuid4())),
        restaurant_id=restaurant_id,
        dish_id=dish_id,
        quality_score=quality_score,
        metrics=ConnectionMetrics(
            mention_count=mention_count,
            total_upvotes=int(decayed_upvotes),
            source_diversity=1,
            recent_mention_count=mention_count,
            decayed_upvotes=decayed_upvotes,
            computed_at=NOW,
        ),
        created_at=NOW,
        updated_at=NOW,
        **kwargs,
    )


# --- Fixtures ---


@pytest.fixture
def clock() -> IngestionClock:
    """A clock pinned to NOW."""
    return IngestionClock(now=NOW)


@pytest.fixture
def entity_storage() -> InMemoryEntityStorage:
    """Provide a fresh in-memory entity storage instance."""
    return InMemoryEntityStorage()


@pytest.fixture
def connection_storage() -> InMemoryConnectionStorage:
    """Provide a fresh in-memory connection storage instance."""
    return InMemoryConnectionStorage()


@pytest.fixture
def mention_storage() -> InMemoryMentionStorage:
    """Provide a fresh in-memory mention storage instance."""
    return InMemoryMentionStorage()


@pytest.fixture
def scoring_config() -> ScoringConfig:
    return ScoringConfig()


@pytest.fixture
def resolver(entity_storage, connection_storage, mention_storage, clock) -> EntityResolver:
    return EntityResolver(
        entity_storage=entity_storage,
        connection_storage=connection_storage,
        mention_storage=mention_storage,
        clock=clock,
    )


@pytest.fixture
def aggregator(connection_storage, mention_storage, clock) -> MetricAggregator:
    return MetricAggregator(
        connection_storage=connection_storage,
        mention_storage=mention_storage,
        clock=clock,
    )


@pytest.fixture
def quality(entity_storage, connection_storage, clock) -> QualityScoreComputer:
    return QualityScoreComputer(
        entity_storage=entity_storage,
        connection_storage=connection_storage,
        clock=clock,
    )


@pytest.fixture
def engine(entity_storage, connection_storage, mention_storage, clock) -> QueryTemplateEngine:
    """Query engine reading location/hours from restaurant metadata."""
    return QueryTemplateEngine(
        entity_storage=entity_storage,
        connection_storage=connection_storage,
        mention_storage=mention_storage,
        metadata_lookup=EntityMetadataLookup(entity_storage, clock=clock),
        clock=clock,
    )


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def cache(fake_time) -> CacheLayer:
    return CacheLayer(CacheConfig(), time_fn=fake_time)


@pytest.fixture
def orchestrator(resolver, aggregator, quality, cache) -> IngestionOrchestrator:
    """Orchestrator with small batches so tests exercise the worker pool."""
    return IngestionOrchestrator(
        resolver=resolver,
        aggregator=aggregator,
        quality=quality,
        cache=cache,
        config=IngestConfig(batch_size=2, max_workers=2, upstream_backoff_seconds=0.0),
    )
