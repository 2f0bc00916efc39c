"""Query templates, ranked results and the result cache."""

from foodgraph.query.cache import (
    CachedMetadataLookup,
    CachedQueryEngine,
    CacheLayer,
    CacheStats,
    CacheTier,
    InMemoryTTLCache,
)
from foodgraph.query.engine import QueryTemplateEngine, ResolvedEntities
from foodgraph.query.models import (
    ClassifiedQuery,
    DishResult,
    Evidence,
    GeoBounds,
    QueryEntities,
    QueryFilters,
    QueryType,
    RankedResult,
    RestaurantResult,
)

__all__ = [
    "CacheLayer",
    "CacheStats",
    "CacheTier",
    "CachedMetadataLookup",
    "CachedQueryEngine",
    "ClassifiedQuery",
    "DishResult",
    "Evidence",
    "GeoBounds",
    "InMemoryTTLCache",
    "QueryEntities",
    "QueryFilters",
    "QueryTemplateEngine",
    "QueryType",
    "RankedResult",
    "ResolvedEntities",
    "RestaurantResult",
]
