"""Optimistic read-modify-write over versioned entity and connection rows."""

from typing import Callable, TypeVar

from foodgraph.connection import Connection
from foodgraph.entity import Entity
from foodgraph.errors import ConflictRetryExhausted, VersionConflict
from foodgraph.storage.interfaces import ConnectionStorageInterface, EntityStorageInterface

RecordT = TypeVar("RecordT", Entity, Connection)


async def update_versioned(
    storage: EntityStorageInterface | ConnectionStorageInterface,
    record_id: str,
    mutate: Callable[[RecordT], RecordT],
    max_attempts: int,
) -> RecordT:
    """Re-read, mutate and write-if-unchanged until the write lands.

    ``mutate`` receives the freshly read record and returns either a new
    snapshot or the same object when there is nothing to change, in which
    case no write happens.

    Raises:
        KeyError: If the record does not exist.
        ConflictRetryExhausted: If every attempt lost to a concurrent writer.
    """
    for _ in range(max_attempts):
        current = await storage.get(record_id)
        if current is None:
            raise KeyError(record_id)
        changed = mutate(current)
        if changed is current:
            return current
        try:
            return await storage.update(changed, current.version)
        except VersionConflict:
            continue
    raise ConflictRetryExhausted(record_id, max_attempts)
