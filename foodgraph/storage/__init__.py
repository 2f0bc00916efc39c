"""Storage interfaces and implementations for entities, connections and mentions."""

from foodgraph.storage.interfaces import (
    ConnectionStorageInterface,
    EntityStorageInterface,
    MentionStorageInterface,
)
from foodgraph.storage.memory import (
    InMemoryConnectionStorage,
    InMemoryEntityStorage,
    InMemoryMentionStorage,
)

__all__ = [
    "ConnectionStorageInterface",
    "EntityStorageInterface",
    "InMemoryConnectionStorage",
    "InMemoryEntityStorage",
    "InMemoryMentionStorage",
    "MentionStorageInterface",
]
