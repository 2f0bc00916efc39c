"""Storage interface definitions for the food graph.

Each store is keyed by a natural uniqueness constraint and exposes an
atomic conditional insert for it:

- entities: ``(name, entity_type)``
- connections: ``(restaurant_id, dish_id, sorted dish_attributes)``
- mentions: ``(source_type, source_id, connection_id)``

Entities and connections are versioned rows. ``update`` is a
write-if-unchanged against the version the caller read, so concurrent
read-modify-write cycles never lose updates.
"""

from abc import ABC, abstractmethod
from typing import Sequence

from foodgraph.connection import Connection
from foodgraph.entity import Entity, EntityType
from foodgraph.mention import Mention


class EntityStorageInterface(ABC):
    """Abstract interface for entity storage operations."""

    @abstractmethod
    async def insert_if_absent(self, entity: Entity) -> tuple[Entity, bool]:
        """Insert ``entity`` unless one with the same (name, type) exists.

        Returns:
            ``(stored, created)``: the newly stored entity and True, or the
            existing entity and False. Never creates a second row for a key.
        """

    @abstractmethod
    async def update(self, entity: Entity, expected_version: int) -> Entity:
        """Replace the entity if its stored version equals ``expected_version``.

        Returns the stored entity with its version incremented.

        Raises:
            VersionConflict: If the stored version differs or the entity is missing.
        """

    @abstractmethod
    async def get(self, entity_id: str) -> Entity | None:
        """Retrieve an entity by ID, or None if not found."""

    @abstractmethod
    async def get_batch(self, entity_ids: Sequence[str]) -> list[Entity | None]:
        """Retrieve multiple entities by ID.

        Returns a list in the same order as input IDs, with None for missing entities.
        """

    @abstractmethod
    async def find_by_name(self, name: str, entity_type: EntityType) -> Entity | None:
        """Exact match on the normalized canonical name."""

    @abstractmethod
    async def find_by_alias(self, alias: str, entity_type: EntityType) -> Entity | None:
        """Exact match on a normalized alias."""

    @abstractmethod
    async def list_by_type(self, entity_type: EntityType) -> list[Entity]:
        """All entities of one type, ordered by entity_id."""

    @abstractmethod
    async def count(self, entity_type: EntityType | None = None) -> int:
        """Number of stored entities, optionally of one type."""


class ConnectionStorageInterface(ABC):
    """Abstract interface for connection storage operations."""

    @abstractmethod
    async def insert_if_absent(self, connection: Connection) -> tuple[Connection, bool]:
        """Insert unless a connection with the same key exists.

        Returns ``(stored, created)`` like EntityStorageInterface.insert_if_absent.
        """

    @abstractmethod
    async def update(self, connection: Connection, expected_version: int) -> Connection:
        """Versioned replace; raises VersionConflict on a stale version."""

    @abstractmethod
    async def get(self, connection_id: str) -> Connection | None:
        """Retrieve a connection by ID, or None if not found."""

    @abstractmethod
    async def get_batch(self, connection_ids: Sequence[str]) -> list[Connection | None]:
        """Retrieve multiple connections, None for missing ones."""

    @abstractmethod
    async def find_by_key(
        self, restaurant_id: str, dish_id: str, dish_attributes: Sequence[str] = ()
    ) -> Connection | None:
        """Look up a connection by its uniqueness key."""

    @abstractmethod
    async def list_by_restaurant(self, restaurant_id: str) -> list[Connection]:
        """Connections owned by a restaurant, ordered by connection_id."""

    @abstractmethod
    async def list_by_dish(self, dish_id: str) -> list[Connection]:
        """Connections whose dish is ``dish_id``, ordered by connection_id."""

    @abstractmethod
    async def list_all(self) -> list[Connection]:
        """Every connection, ordered by connection_id."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored connections."""


class MentionStorageInterface(ABC):
    """Abstract interface for the append-only mention log."""

    @abstractmethod
    async def add_if_absent(self, mention: Mention) -> tuple[Mention, bool]:
        """Append unless (source_type, source_id, connection_id) already exists.

        Returns ``(stored, created)``; a duplicate returns the original row.
        """

    @abstractmethod
    async def get(self, mention_id: str) -> Mention | None:
        """Retrieve a mention by ID, or None if not found."""

    @abstractmethod
    async def list_by_connection(self, connection_id: str) -> list[Mention]:
        """Mentions of one connection, ordered by mention_id."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored mentions."""
