"""Restaurant-to-dish connections and their aggregated evidence metrics."""

from datetime import datetime
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, Field


class ActivityLevel(str, Enum):
    """Coarse recency classification of a connection's evidence."""

    TRENDING = "trending"
    ACTIVE = "active"
    NORMAL = "normal"


class TopMention(BaseModel, frozen=True):
    """One entry of the ranked evidence slice kept on a connection."""

    mention_id: str
    score: float = Field(description="upvotes * exp(-age_days / decay_days) at computation time.")
    upvotes: int
    age_days: float


class BoostRecord(BaseModel, frozen=True):
    """Evidence applied to an existing connection without a mention row.

    Written when a dish-less mention names a category or dish attribute the
    connection carries. ``matched_id`` is that category or attribute id.
    ``source_key`` makes re-application a no-op.
    """

    source_key: str
    matched_id: str
    source: str | None = None
    author: str | None = None
    upvotes: int = Field(default=0, ge=0)
    posted_at: datetime


class ConnectionMetrics(BaseModel, frozen=True):
    """Aggregated evidence for one connection."""

    mention_count: int = 0
    total_upvotes: int = 0
    source_diversity: int = 0
    recent_mention_count: int = 0
    decayed_upvotes: float = Field(default=0.0, description="Recency-weighted upvote sum.")
    top_mentions: tuple[TopMention, ...] = ()
    computed_at: datetime | None = None


def connection_key(
    restaurant_id: str, dish_id: str, dish_attributes: Iterable[str] = ()
) -> tuple[str, str, tuple[str, ...]]:
    """Uniqueness key of a connection: restaurant, dish and sorted attribute ids."""
    return (restaurant_id, dish_id, tuple(sorted(set(dish_attributes))))


class Connection(BaseModel):
    """A restaurant -> dish edge.

    ``dish_attributes`` is part of the identity, so the same dish at the
    same restaurant with a different attribute set is a different connection.
    ``categories`` only grows.
    """

    model_config = {"frozen": True}

    connection_id: str
    restaurant_id: str
    dish_id: str
    categories: tuple[str, ...] = ()
    dish_attributes: tuple[str, ...] = ()
    is_menu_item: bool = False
    metrics: ConnectionMetrics = Field(default_factory=ConnectionMetrics)
    boosts: tuple[BoostRecord, ...] = ()
    activity_level: ActivityLevel = ActivityLevel.NORMAL
    quality_score: float = Field(default=0.0, ge=0.0, description="Stored dish quality score.")
    last_mentioned_at: datetime | None = None
    version: int = 0
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> tuple[str, str, tuple[str, ...]]:
        return connection_key(self.restaurant_id, self.dish_id, self.dish_attributes)

    def referenced_entity_ids(self) -> set[str]:
        """Every entity id this connection touches."""
        return {self.restaurant_id, self.dish_id, *self.categories, *self.dish_attributes}

    def with_tags(self, categories: Iterable[str] = (), is_menu_item: bool = False) -> "Connection":
        """Union in new categories; ``is_menu_item`` is sticky once set."""
        merged = tuple(sorted(set(self.categories) | set(categories)))
        menu = self.is_menu_item or is_menu_item
        if merged == self.categories and menu == self.is_menu_item:
            return self
        return self.model_copy(update={"categories": merged, "is_menu_item": menu})
