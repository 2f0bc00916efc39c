"""Query input and ranked result models."""

import hashlib
import json
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from foodgraph.connection import ActivityLevel
from foodgraph.pipeline.interfaces import GeoPoint, OperatingStatus


class QueryType(str, Enum):
    """Shape of a pre-classified query; each maps to one retrieval template."""

    DISH_SPECIFIC = "dish_specific"
    CATEGORY_SPECIFIC = "category_specific"
    VENUE_SPECIFIC = "venue_specific"
    ATTRIBUTE_SPECIFIC = "attribute_specific"
    BROAD = "broad"

    @property
    def returns_restaurants(self) -> bool:
        """Category, attribute and broad queries also rank restaurants."""
        return self in (QueryType.CATEGORY_SPECIFIC, QueryType.ATTRIBUTE_SPECIFIC, QueryType.BROAD)


class GeoBounds(BaseModel, frozen=True):
    """Lat/lng rectangle. ``west > east`` means the box crosses the antimeridian."""

    north: float = Field(ge=-90.0, le=90.0)
    south: float = Field(ge=-90.0, le=90.0)
    east: float = Field(ge=-180.0, le=180.0)
    west: float = Field(ge=-180.0, le=180.0)

    @model_validator(mode="after")
    def north_not_below_south(self) -> "GeoBounds":
        if self.north < self.south:
            raise ValueError("north must be >= south")
        return self

    def contains(self, point: GeoPoint) -> bool:
        if not self.south <= point.lat <= self.north:
            return False
        if self.west <= self.east:
            return self.west <= point.lng <= self.east
        return point.lng >= self.west or point.lng <= self.east


class QueryFilters(BaseModel, frozen=True):
    geographic_bounds: GeoBounds | None = None
    open_now: bool = False


class QueryEntities(BaseModel, frozen=True):
    """Entity names the classifier pulled out of the query text."""

    restaurants: tuple[str, ...] = ()
    dish_or_categories: tuple[str, ...] = ()
    attributes: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not (self.restaurants or self.dish_or_categories or self.attributes)


class ClassifiedQuery(BaseModel, frozen=True):
    """A structured query as produced by the text-understanding collaborator."""

    query_type: QueryType
    entities: QueryEntities = Field(default_factory=QueryEntities)
    filters: QueryFilters = Field(default_factory=QueryFilters)
    limit: int = Field(default=20, ge=1, le=200)
    caller_id: str | None = Field(
        default=None,
        description="Identifies the caller for the per-caller recent-result cache. Not part of the query key.",
    )

    def digest(self) -> str:
        """Stable SHA-256 of everything except ``caller_id``."""
        payload = self.model_dump(mode="json", exclude={"caller_id"})
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class Evidence(BaseModel, frozen=True):
    """The top quote backing a dish result, with attribution."""

    mention_id: str
    excerpt: str
    source_url: str | None = None
    author: str | None = None
    upvotes: int = 0
    age_days: float = 0.0


class DishResult(BaseModel, frozen=True):
    connection_id: str
    restaurant_id: str
    restaurant_name: str
    dish_id: str
    dish_name: str
    quality_score: float
    mention_count: int
    total_upvotes: int
    activity_level: ActivityLevel
    is_menu_item: bool = False
    top_evidence: Evidence | None = None
    status: OperatingStatus = OperatingStatus.UNKNOWN


class RestaurantResult(BaseModel, frozen=True):
    restaurant_id: str
    restaurant_name: str
    category_performance_score: float = Field(
        description="Weighted mean quality of the restaurant's connections matching the query."
    )
    quality_score: float = Field(description="Global restaurant quality score.")
    matched_connection_ids: tuple[str, ...] = ()
    status: OperatingStatus = OperatingStatus.UNKNOWN


class RankedResult(BaseModel, frozen=True):
    """Output of the Query Template Engine.

    ``restaurant_results`` is None for single-list templates.
    """

    query_type: QueryType
    dish_results: tuple[DishResult, ...] = ()
    restaurant_results: tuple[RestaurantResult, ...] | None = None

    @classmethod
    def empty(cls, query_type: QueryType) -> "RankedResult":
        return cls(
            query_type=query_type,
            restaurant_results=() if query_type.returns_restaurants else None,
        )

    def referenced_ids(self) -> set[str]:
        """Entity and connection ids appearing in the result, for cache tagging."""
        ids: set[str] = set()
        for dish in self.dish_results:
            ids.update((dish.connection_id, dish.restaurant_id, dish.dish_id))
        for restaurant in self.restaurant_results or ():
            ids.add(restaurant.restaurant_id)
            ids.update(restaurant.matched_connection_ids)
        return ids
