"""In-memory storage implementations for testing and development.

This module provides dictionary-based implementations of the storage interfaces
that keep all data in memory. These implementations are suitable for:

- **Unit testing**: Fast, isolated tests without external dependencies
- **Development**: Quick iteration without database setup
- **Single-process ingestion**: Batches running as asyncio tasks on one loop

Each conditional insert and versioned update runs without awaiting between
its read and its write, so it is atomic with respect to other tasks on the
same event loop. That is the same guarantee the SQLite backend gets from
its unique constraints. Nothing is persisted; use
:mod:`foodgraph.storage.sqlite` for durable storage.
"""

from typing import Sequence

from foodgraph.connection import Connection, connection_key
from foodgraph.entity import Entity, EntityType
from foodgraph.errors import VersionConflict
from foodgraph.mention import Mention
from foodgraph.normalize import normalize_name
from foodgraph.storage.interfaces import (
    ConnectionStorageInterface,
    EntityStorageInterface,
    MentionStorageInterface,
)


class InMemoryEntityStorage(EntityStorageInterface):
    """In-memory entity storage keyed by entity_id with name and alias indexes.

    Example:
        ```python
        storage = InMemoryEntityStorage()
        stored, created = await storage.insert_if_absent(entity)
        same = await storage.find_by_name("franklin bbq", EntityType.RESTAURANT)
        ```
    """

    def __init__(self) -> None:
        self._entities: dict[str, Entity] = {}
        self._by_name: dict[tuple[EntityType, str], str] = {}
        self._by_alias: dict[tuple[EntityType, str], str] = {}

    def _index_aliases(self, entity: Entity) -> None:
        for alias in entity.aliases:
            self._by_alias.setdefault((entity.entity_type, alias), entity.entity_id)

    async def insert_if_absent(self, entity: Entity) -> tuple[Entity, bool]:
        key = (entity.entity_type, entity.name)
        existing_id = self._by_name.get(key)
        if existing_id is not None:
            return self._entities[existing_id], False
        self._entities[entity.entity_id] = entity
        self._by_name[key] = entity.entity_id
        self._index_aliases(entity)
        return entity, True

    async def update(self, entity: Entity, expected_version: int) -> Entity:
        current = self._entities.get(entity.entity_id)
        if current is None or current.version != expected_version:
            raise VersionConflict(
                entity.entity_id, expected_version, None if current is None else current.version
            )
        stored = entity.model_copy(update={"version": expected_version + 1})
        self._entities[entity.entity_id] = stored
        self._index_aliases(stored)
        return stored

    async def get(self, entity_id: str) -> Entity | None:
        return self._entities.get(entity_id)

    async def get_batch(self, entity_ids: Sequence[str]) -> list[Entity | None]:
        return [self._entities.get(eid) for eid in entity_ids]

    async def find_by_name(self, name: str, entity_type: EntityType) -> Entity | None:
        entity_id = self._by_name.get((entity_type, normalize_name(name)))
        return None if entity_id is None else self._entities[entity_id]

    async def find_by_alias(self, alias: str, entity_type: EntityType) -> Entity | None:
        entity_id = self._by_alias.get((entity_type, normalize_name(alias)))
        return None if entity_id is None else self._entities[entity_id]

    async def list_by_type(self, entity_type: EntityType) -> list[Entity]:
        return sorted(
            (e for e in self._entities.values() if e.entity_type == entity_type),
            key=lambda e: e.entity_id,
        )

    async def count(self, entity_type: EntityType | None = None) -> int:
        if entity_type is None:
            return len(self._entities)
        return sum(1 for e in self._entities.values() if e.entity_type == entity_type)


class InMemoryConnectionStorage(ConnectionStorageInterface):
    """In-memory connection storage with a uniqueness-key index."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._by_key: dict[tuple[str, str, tuple[str, ...]], str] = {}

    async def insert_if_absent(self, connection: Connection) -> tuple[Connection, bool]:
        existing_id = self._by_key.get(connection.key)
        if existing_id is not None:
            return self._connections[existing_id], False
        self._connections[connection.connection_id] = connection
        self._by_key[connection.key] = connection.connection_id
        return connection, True

    async def update(self, connection: Connection, expected_version: int) -> Connection:
        current = self._connections.get(connection.connection_id)
        if current is None or current.version != expected_version:
            raise VersionConflict(
                connection.connection_id,
                expected_version,
                None if current is None else current.version,
            )
        stored = connection.model_copy(update={"version": expected_version + 1})
        self._connections[connection.connection_id] = stored
        return stored

    async def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    async def get_batch(self, connection_ids: Sequence[str]) -> list[Connection | None]:
        return [self._connections.get(cid) for cid in connection_ids]

    async def find_by_key(
        self, restaurant_id: str, dish_id: str, dish_attributes: Sequence[str] = ()
    ) -> Connection | None:
        connection_id = self._by_key.get(connection_key(restaurant_id, dish_id, dish_attributes))
        return None if connection_id is None else self._connections[connection_id]

    async def list_by_restaurant(self, restaurant_id: str) -> list[Connection]:
        return sorted(
            (c for c in self._connections.values() if c.restaurant_id == restaurant_id),
            key=lambda c: c.connection_id,
        )

    async def list_by_dish(self, dish_id: str) -> list[Connection]:
        return sorted(
            (c for c in self._connections.values() if c.dish_id == dish_id),
            key=lambda c: c.connection_id,
        )

    async def list_all(self) -> list[Connection]:
        return sorted(self._connections.values(), key=lambda c: c.connection_id)

    async def count(self) -> int:
        return len(self._connections)


class InMemoryMentionStorage(MentionStorageInterface):
    """Append-only in-memory mention log."""

    def __init__(self) -> None:
        self._mentions: dict[str, Mention] = {}
        self._by_key: dict[tuple[str, str, str], str] = {}

    async def add_if_absent(self, mention: Mention) -> tuple[Mention, bool]:
        existing_id = self._by_key.get(mention.dedup_key)
        if existing_id is not None:
            return self._mentions[existing_id], False
        self._mentions[mention.mention_id] = mention
        self._by_key[mention.dedup_key] = mention.mention_id
        return mention, True

    async def get(self, mention_id: str) -> Mention | None:
        return self._mentions.get(mention_id)

    async def list_by_connection(self, connection_id: str) -> list[Mention]:
        return sorted(
            (m for m in self._mentions.values() if m.connection_id == connection_id),
            key=lambda m: m.mention_id,
        )

    async def count(self) -> int:
        return len(self._mentions)
