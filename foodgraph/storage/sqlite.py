"""
SQLite implementation of the storage interfaces.

Three tables mirror the three stores. Uniqueness constraints on the natural
keys make ``insert_if_absent`` atomic across workers and processes: a losing
writer gets an IntegrityError, rolls back, and re-reads the winner's row.
Versioned updates are a single conditional UPDATE on ``(id, version)``.

Records are stored as their pydantic JSON in ``payload`` next to the indexed
key columns.

SQLAlchemy sessions block, so every session runs on a worker thread via
``asyncio.to_thread``. The three stores of one :class:`SQLiteStorage` share a
lock: SQLite has a single writer, and ``:memory:`` databases share a single
connection.
"""

import asyncio
import threading
from typing import Any, Callable, Sequence, TypeVar

from sqlalchemy import UniqueConstraint, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

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

T = TypeVar("T")


class EntityRow(SQLModel, table=True):
    __tablename__ = "entities"
    __table_args__ = (UniqueConstraint("name", "entity_type", name="uq_entity_name_type"),)

    entity_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    entity_type: str = Field(index=True)
    version: int = Field(default=0)
    payload: str = Field()


class ConnectionRow(SQLModel, table=True):
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "dish_id", "attributes_key", name="uq_connection_key"),
    )

    connection_id: str = Field(primary_key=True)
    restaurant_id: str = Field(index=True)
    dish_id: str = Field(index=True)
    attributes_key: str = Field(default="")
    version: int = Field(default=0)
    payload: str = Field()


class MentionRow(SQLModel, table=True):
    __tablename__ = "mentions"
    __table_args__ = (
        UniqueConstraint("source_type", "source_id", "connection_id", name="uq_mention_source"),
    )

    mention_id: str = Field(primary_key=True)
    connection_id: str = Field(index=True)
    source_type: str = Field()
    source_id: str = Field()
    payload: str = Field()


def _attributes_key(dish_attributes: Sequence[str]) -> str:
    return ",".join(connection_key("", "", dish_attributes)[2])


class _SQLiteStore:
    def __init__(self, engine, lock: "threading.Lock | None" = None):
        self._engine = engine
        self._lock = lock or threading.Lock()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking session function on a worker thread."""

        def locked() -> T:
            with self._lock:
                return fn(*args)

        return await asyncio.to_thread(locked)

    def _insert(self, row: SQLModel) -> bool:
        """Commit one row; False when a uniqueness constraint rejected it."""
        with Session(self._engine) as session:
            session.add(row)
            try:
                session.commit()
                return True
            except IntegrityError:
                session.rollback()
                return False

    def _execute_update(self, stmt) -> int:
        with Session(self._engine) as session:
            updated = session.execute(stmt).rowcount
            session.commit()
        return updated

    def _payloads(self, stmt) -> list[str]:
        with Session(self._engine) as session:
            return [row.payload for row in session.exec(stmt).all()]

    def _payload(self, model: type[SQLModel], key: str) -> str | None:
        with Session(self._engine) as session:
            row = session.get(model, key)
            return None if row is None else row.payload

    def _count(self, stmt) -> int:
        with Session(self._engine) as session:
            return len(session.exec(stmt).all())


class SQLiteEntityStorage(_SQLiteStore, EntityStorageInterface):
    async def insert_if_absent(self, entity: Entity) -> tuple[Entity, bool]:
        row = EntityRow(
            entity_id=entity.entity_id,
            name=entity.name,
            entity_type=entity.entity_type.value,
            version=entity.version,
            payload=entity.model_dump_json(),
        )
        if await self._run(self._insert, row):
            return entity, True
        existing = await self.find_by_name(entity.name, entity.entity_type)
        if existing is None:
            # Collided on something other than (name, type); let the caller retry.
            raise VersionConflict(entity.entity_id, entity.version)
        return existing, False

    async def update(self, entity: Entity, expected_version: int) -> Entity:
        stored = entity.model_copy(update={"version": expected_version + 1})
        stmt = (
            update(EntityRow)
            .where(EntityRow.entity_id == entity.entity_id, EntityRow.version == expected_version)
            .values(version=stored.version, payload=stored.model_dump_json())
        )
        if await self._run(self._execute_update, stmt) != 1:
            current = await self.get(entity.entity_id)
            raise VersionConflict(
                entity.entity_id, expected_version, None if current is None else current.version
            )
        return stored

    async def get(self, entity_id: str) -> Entity | None:
        payload = await self._run(self._payload, EntityRow, entity_id)
        return None if payload is None else Entity.model_validate_json(payload)

    async def get_batch(self, entity_ids: Sequence[str]) -> list[Entity | None]:
        payloads = await self._run(
            self._payloads, select(EntityRow).where(EntityRow.entity_id.in_(list(entity_ids)))
        )
        by_id = {e.entity_id: e for e in map(Entity.model_validate_json, payloads)}
        return [by_id.get(eid) for eid in entity_ids]

    async def find_by_name(self, name: str, entity_type: EntityType) -> Entity | None:
        stmt = select(EntityRow).where(
            EntityRow.name == normalize_name(name), EntityRow.entity_type == entity_type.value
        )
        payloads = await self._run(self._payloads, stmt)
        return Entity.model_validate_json(payloads[0]) if payloads else None

    async def find_by_alias(self, alias: str, entity_type: EntityType) -> Entity | None:
        wanted = normalize_name(alias)
        for entity in await self.list_by_type(entity_type):
            if wanted in entity.aliases:
                return entity
        return None

    async def list_by_type(self, entity_type: EntityType) -> list[Entity]:
        stmt = (
            select(EntityRow)
            .where(EntityRow.entity_type == entity_type.value)
            .order_by(EntityRow.entity_id)
        )
        return [Entity.model_validate_json(p) for p in await self._run(self._payloads, stmt)]

    async def count(self, entity_type: EntityType | None = None) -> int:
        stmt = select(EntityRow.entity_id)
        if entity_type is not None:
            stmt = stmt.where(EntityRow.entity_type == entity_type.value)
        return await self._run(self._count, stmt)


class SQLiteConnectionStorage(_SQLiteStore, ConnectionStorageInterface):
    async def insert_if_absent(self, connection: Connection) -> tuple[Connection, bool]:
        row = ConnectionRow(
            connection_id=connection.connection_id,
            restaurant_id=connection.restaurant_id,
            dish_id=connection.dish_id,
            attributes_key=_attributes_key(connection.dish_attributes),
            version=connection.version,
            payload=connection.model_dump_json(),
        )
        if await self._run(self._insert, row):
            return connection, True
        existing = await self.find_by_key(
            connection.restaurant_id, connection.dish_id, connection.dish_attributes
        )
        if existing is None:
            raise VersionConflict(connection.connection_id, connection.version)
        return existing, False

    async def update(self, connection: Connection, expected_version: int) -> Connection:
        stored = connection.model_copy(update={"version": expected_version + 1})
        stmt = (
            update(ConnectionRow)
            .where(
                ConnectionRow.connection_id == connection.connection_id,
                ConnectionRow.version == expected_version,
            )
            .values(version=stored.version, payload=stored.model_dump_json())
        )
        if await self._run(self._execute_update, stmt) != 1:
            current = await self.get(connection.connection_id)
            raise VersionConflict(
                connection.connection_id,
                expected_version,
                None if current is None else current.version,
            )
        return stored

    async def _fetch(self, stmt) -> list[Connection]:
        return [Connection.model_validate_json(p) for p in await self._run(self._payloads, stmt)]

    async def get(self, connection_id: str) -> Connection | None:
        payload = await self._run(self._payload, ConnectionRow, connection_id)
        return None if payload is None else Connection.model_validate_json(payload)

    async def get_batch(self, connection_ids: Sequence[str]) -> list[Connection | None]:
        found = await self._fetch(
            select(ConnectionRow).where(ConnectionRow.connection_id.in_(list(connection_ids)))
        )
        by_id = {c.connection_id: c for c in found}
        return [by_id.get(cid) for cid in connection_ids]

    async def find_by_key(
        self, restaurant_id: str, dish_id: str, dish_attributes: Sequence[str] = ()
    ) -> Connection | None:
        found = await self._fetch(
            select(ConnectionRow).where(
                ConnectionRow.restaurant_id == restaurant_id,
                ConnectionRow.dish_id == dish_id,
                ConnectionRow.attributes_key == _attributes_key(dish_attributes),
            )
        )
        return found[0] if found else None

    async def list_by_restaurant(self, restaurant_id: str) -> list[Connection]:
        return await self._fetch(
            select(ConnectionRow)
            .where(ConnectionRow.restaurant_id == restaurant_id)
            .order_by(ConnectionRow.connection_id)
        )

    async def list_by_dish(self, dish_id: str) -> list[Connection]:
        return await self._fetch(
            select(ConnectionRow)
            .where(ConnectionRow.dish_id == dish_id)
            .order_by(ConnectionRow.connection_id)
        )

    async def list_all(self) -> list[Connection]:
        return await self._fetch(select(ConnectionRow).order_by(ConnectionRow.connection_id))

    async def count(self) -> int:
        return await self._run(self._count, select(ConnectionRow.connection_id))


class SQLiteMentionStorage(_SQLiteStore, MentionStorageInterface):
    async def add_if_absent(self, mention: Mention) -> tuple[Mention, bool]:
        row = MentionRow(
            mention_id=mention.mention_id,
            connection_id=mention.connection_id,
            source_type=mention.source_type.value,
            source_id=mention.source_id,
            payload=mention.model_dump_json(),
        )
        if await self._run(self._insert, row):
            return mention, True
        stmt = select(MentionRow).where(
            MentionRow.source_type == mention.source_type.value,
            MentionRow.source_id == mention.source_id,
            MentionRow.connection_id == mention.connection_id,
        )
        payloads = await self._run(self._payloads, stmt)
        if not payloads:
            raise VersionConflict(mention.mention_id, 0)
        return Mention.model_validate_json(payloads[0]), False

    async def get(self, mention_id: str) -> Mention | None:
        payload = await self._run(self._payload, MentionRow, mention_id)
        return None if payload is None else Mention.model_validate_json(payload)

    async def list_by_connection(self, connection_id: str) -> list[Mention]:
        stmt = (
            select(MentionRow)
            .where(MentionRow.connection_id == connection_id)
            .order_by(MentionRow.mention_id)
        )
        return [Mention.model_validate_json(p) for p in await self._run(self._payloads, stmt)]

    async def count(self) -> int:
        return await self._run(self._count, select(MentionRow.mention_id))


class SQLiteStorage:
    """
    SQLite-backed entity, connection and mention stores sharing one engine.

    Example:
        ```python
        storage = SQLiteStorage("foodgraph.db")
        resolver = EntityResolver(
            entity_storage=storage.entities,
            connection_storage=storage.connections,
            mention_storage=storage.mentions,
        )
        ```
    """

    def __init__(self, db_path: str, echo: bool = False):
        connect_args = {"check_same_thread": False}
        if db_path == ":memory:":
            # One shared connection, otherwise every session sees an empty database.
            self.engine = create_engine(
                "sqlite://", connect_args=connect_args, poolclass=StaticPool, echo=echo
            )
        else:
            self.engine = create_engine(f"sqlite:///{db_path}", connect_args=connect_args, echo=echo)
        SQLModel.metadata.create_all(self.engine)
        lock = threading.Lock()
        self.entities = SQLiteEntityStorage(self.engine, lock)
        self.connections = SQLiteConnectionStorage(self.engine, lock)
        self.mentions = SQLiteMentionStorage(self.engine, lock)

    def close(self) -> None:
        self.engine.dispose()
