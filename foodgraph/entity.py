"""Entity model for the restaurant/dish graph."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from foodgraph.normalize import normalize_name


class EntityType(str, Enum):
    """Kind of node in the graph. ``(name, entity_type)`` is unique."""

    RESTAURANT = "restaurant"
    """A venue. Owns location/hours metadata and restaurant attribute refs."""

    DISH_OR_CATEGORY = "dish_or_category"
    """A specific dish ("brisket") or a broader category ("bbq")."""

    DISH_ATTRIBUTE = "dish_attribute"
    """A property of a dish at a venue ("spicy", "vegan")."""

    RESTAURANT_ATTRIBUTE = "restaurant_attribute"
    """A property of the venue itself ("patio", "late night")."""


def merge_aliases(existing: tuple[str, ...], *candidates: str) -> tuple[str, ...]:
    """Append normalized candidates to ``existing``, skipping case-insensitive duplicates.

    Aliases only grow and keep their first-seen order.
    """
    seen = {alias.lower() for alias in existing}
    merged = list(existing)
    for candidate in candidates:
        alias = normalize_name(candidate)
        if alias and alias not in seen:
            seen.add(alias)
            merged.append(alias)
    return tuple(merged)


class Entity(BaseModel):
    """A canonical restaurant, dish/category or attribute node.

    Entities are immutable snapshots; writers derive a new snapshot with
    ``model_copy(update=...)`` and store it with an optimistic version check.
    """

    model_config = {"frozen": True}

    entity_id: str = Field(description="Stable identifier (UUID).")
    name: str = Field(description="Canonical lowercase name; unique together with entity_type.")
    entity_type: EntityType
    aliases: tuple[str, ...] = Field(
        default=(),
        description="Normalized surface forms that resolve to this entity. Only ever grows.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Type-specific data: location/hours/attribute refs for restaurants.",
    )
    quality_score: float = Field(default=0.0, ge=0.0, description="Cached global quality score.")
    version: int = Field(default=0, ge=0, description="Optimistic concurrency version.")
    created_at: datetime
    updated_at: datetime

    @field_validator("name")
    @classmethod
    def name_must_be_normalized(cls, value: str) -> str:
        normalized = normalize_name(value)
        if not normalized:
            raise ValueError("entity name must not be empty")
        return normalized

    @property
    def key(self) -> str:
        """Human-readable deduplication key, used in logs and errors."""
        return f"{self.entity_type.value}:{self.name}"

    @property
    def restaurant_attribute_ids(self) -> tuple[str, ...]:
        return tuple(self.metadata.get("restaurant_attributes", ()))

    def all_names(self) -> tuple[str, ...]:
        """Canonical name followed by every alias, without duplicates."""
        return merge_aliases((self.name,), *self.aliases)

    def with_aliases(self, *surfaces: str) -> "Entity":
        """Return a copy whose alias set includes ``surfaces``; self if nothing is new."""
        merged = merge_aliases(self.aliases, *surfaces)
        if merged == self.aliases:
            return self
        return self.model_copy(update={"aliases": merged})
