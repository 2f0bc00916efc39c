"""Entity resolution and ranking engine for a restaurant/dish knowledge graph."""

from foodgraph.connection import ActivityLevel, Connection, ConnectionMetrics, TopMention
from foodgraph.entity import Entity, EntityType
from foodgraph.errors import (
    ConflictRetryExhausted,
    FoodGraphError,
    QueryError,
    ResolutionError,
    UpstreamTimeout,
)
from foodgraph.mention import ExtractedMention, Mention, SourceType

__all__ = [
    "ActivityLevel",
    "ConflictRetryExhausted",
    "Connection",
    "ConnectionMetrics",
    "Entity",
    "EntityType",
    "ExtractedMention",
    "FoodGraphError",
    "Mention",
    "QueryError",
    "ResolutionError",
    "SourceType",
    "TopMention",
    "UpstreamTimeout",
]
