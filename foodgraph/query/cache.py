"""Multi-tier read-through cache in front of the Query Template Engine.

Key namespaces and their tiers:

- ``query:<digest>``: exact-query results (short TTL, 1 hour by default)
- ``user:<caller>:recent:<digest>``: per-caller recent results (24 hours)
- ``static:<kind>:<id>``: entity/operational metadata (7 days)

Each tier is an LRU with a per-entry TTL and a set of tags, the entity and
connection ids an entry was computed from. Score changes drop the result
entries tagged with a changed id; the static tier only changes on explicit
metadata invalidation, so score churn never evicts long-lived entries.

Typical usage:
    ```python
    cache = CacheLayer(CacheConfig())
    engine = CachedQueryEngine(QueryTemplateEngine(...), cache)

    first = await engine.execute(query)   # runs the template
    again = await engine.execute(query)   # served from query:<digest>

    await cache.invalidate_entities(changed_ids)
    ```
"""

import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Callable, Iterable

from pydantic import BaseModel

from foodgraph.clock import IngestionClock, current_time
from foodgraph.config import CacheConfig
from foodgraph.errors import QueryError
from foodgraph.logging import setup_logging
from foodgraph.pipeline.interfaces import OperationalMetadata, OperationalMetadataLookupInterface
from foodgraph.pipeline.metadata import refresh_status
from foodgraph.query.engine import QueryTemplateEngine
from foodgraph.query.models import ClassifiedQuery, RankedResult

logger = setup_logging(__name__)


class CacheTier(str, Enum):
    QUERY = "query"
    RECENT = "recent"
    STATIC = "static"


def tier_for_key(key: str) -> CacheTier:
    """Route a key to its tier by namespace.

    Raises:
        ValueError: If the key is outside the three namespaces.
    """
    if key.startswith("query:"):
        return CacheTier.QUERY
    if key.startswith("user:") and ":recent:" in key:
        return CacheTier.RECENT
    if key.startswith("static:"):
        return CacheTier.STATIC
    raise ValueError(f"cache key {key!r} is not in a known namespace")


def query_key(query: ClassifiedQuery) -> str:
    return f"query:{query.digest()}"


def recent_key(caller_id: str, query: ClassifiedQuery) -> str:
    return f"user:{caller_id}:recent:{query.digest()}"


def static_key(kind: str, entity_id: str) -> str:
    return f"static:{kind}:{entity_id}"


class CacheStats(BaseModel):
    model_config = {"frozen": True}

    hits: int = 0
    misses: int = 0
    size: int = 0
    evictions: int = 0
    expirations: int = 0


class _Entry:
    __slots__ = ("value", "expires_at", "tags")

    def __init__(self, value: Any, expires_at: float, tags: frozenset[str]):
        self.value = value
        self.expires_at = expires_at
        self.tags = tags


class CacheInterface(ABC):
    """Abstract key/value cache with TTLs, tags and glob invalidation."""

    @abstractmethod
    async def get(self, key: str) -> tuple[Any, bool]:
        """Return ``(value, True)`` on a live hit, ``(None, False)`` otherwise."""

    @abstractmethod
    async def put(
        self, key: str, value: Any, ttl: float | None = None, tags: Iterable[str] = ()
    ) -> None:
        """Store ``value`` for ``ttl`` seconds (the cache default when None)."""

    @abstractmethod
    async def invalidate(self, pattern: str) -> int:
        """Drop keys matching a glob pattern; returns the number dropped."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop everything."""


class InMemoryTTLCache(CacheInterface):
    """In-memory LRU cache with per-entry TTL and tags.

    Uses an OrderedDict to track access order; the least recently used entry
    is evicted when the cache is full. Expired entries are dropped lazily on
    read.
    """

    def __init__(
        self,
        default_ttl: float,
        max_entries: int = 10000,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._time = time_fn
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    async def get(self, key: str) -> tuple[Any, bool]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None, False
        if entry.expires_at <= self._time():
            del self._entries[key]
            self._expirations += 1
            self._misses += 1
            return None, False
        self._entries.move_to_end(key)
        self._hits += 1
        return entry.value, True

    async def put(
        self, key: str, value: Any, ttl: float | None = None, tags: Iterable[str] = ()
    ) -> None:
        expires_at = self._time() + (self.default_ttl if ttl is None else ttl)
        self._entries[key] = _Entry(value, expires_at, frozenset(tags))
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1

    async def invalidate(self, pattern: str) -> int:
        doomed = [key for key in self._entries if fnmatchcase(key, pattern)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Drop entries tagged with any of ``tags``."""
        wanted = frozenset(tags)
        if not wanted:
            return 0
        doomed = [key for key, entry in self._entries.items() if entry.tags & wanted]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def get_stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            size=len(self._entries),
            evictions=self._evictions,
            expirations=self._expirations,
        )


class CacheLayer(CacheInterface):
    """The three tiers behind one Get/Put/Invalidate surface."""

    def __init__(self, config: CacheConfig | None = None, time_fn: Callable[[], float] = time.monotonic):
        self.config = config or CacheConfig()
        self.tiers: dict[CacheTier, InMemoryTTLCache] = {
            CacheTier.QUERY: InMemoryTTLCache(
                self.config.query_ttl_seconds, self.config.max_entries_per_tier, time_fn
            ),
            CacheTier.RECENT: InMemoryTTLCache(
                self.config.recent_ttl_seconds, self.config.max_entries_per_tier, time_fn
            ),
            CacheTier.STATIC: InMemoryTTLCache(
                self.config.static_ttl_seconds, self.config.max_entries_per_tier, time_fn
            ),
        }

    async def get(self, key: str) -> tuple[Any, bool]:
        return await self.tiers[tier_for_key(key)].get(key)

    async def put(
        self, key: str, value: Any, ttl: float | None = None, tags: Iterable[str] = ()
    ) -> None:
        await self.tiers[tier_for_key(key)].put(key, value, ttl, tags)

    async def invalidate(self, pattern: str) -> int:
        dropped = 0
        for tier in self.tiers.values():
            dropped += await tier.invalidate(pattern)
        return dropped

    async def invalidate_entities(self, entity_ids: Iterable[str]) -> int:
        """Drop query-result entries that reference any changed id. Static entries stay."""
        ids = list(entity_ids)
        dropped = await self.tiers[CacheTier.QUERY].invalidate_tags(ids)
        dropped += await self.tiers[CacheTier.RECENT].invalidate_tags(ids)
        if dropped:
            logger.debug(f"Invalidated {dropped} cached results for {len(ids)} changed ids")
        return dropped

    async def invalidate_metadata(self, entity_id: str) -> int:
        """Drop static entries for one entity after its metadata changed."""
        return await self.tiers[CacheTier.STATIC].invalidate(f"static:*:{entity_id}")

    async def clear(self) -> None:
        for tier in self.tiers.values():
            await tier.clear()

    def get_stats(self) -> dict[str, CacheStats]:
        return {tier.value: cache.get_stats() for tier, cache in self.tiers.items()}


class CachedQueryEngine:
    """Read-through cache wrapper for a QueryTemplateEngine.

    Checks the exact-query tier, then the caller's recent tier, then runs
    the engine. Results are stored only after the engine returns, so a
    cancelled query caches nothing.
    """

    def __init__(self, engine: QueryTemplateEngine, cache: CacheLayer):
        self.engine = engine
        self.cache = cache

    async def execute(self, query: ClassifiedQuery) -> RankedResult:
        exact = query_key(query)
        value, hit = await self.cache.get(exact)
        if hit:
            return value
        if query.caller_id:
            value, hit = await self.cache.get(recent_key(query.caller_id, query))
            if hit:
                return value

        result = await self.engine.execute(query)

        tags = await self._tags(query, result)
        await self.cache.put(exact, result, tags=tags)
        if query.caller_id:
            await self.cache.put(recent_key(query.caller_id, query), result, tags=tags)
        return result

    async def _tags(self, query: ClassifiedQuery, result: RankedResult) -> set[str]:
        """Ids the entry depends on: everything in the result plus the query's own entities."""
        tags = result.referenced_ids()
        try:
            resolved = await self.engine.resolve_entities(query)
        except QueryError:
            return tags
        return tags | resolved.all_ids()


class CachedMetadataLookup(OperationalMetadataLookupInterface):
    """Keep operational metadata in the static tier.

    Failed lookups are not cached. The open/closed status of a hit is
    re-evaluated from its hours table, since it goes stale long before the
    entry expires.
    """

    def __init__(
        self,
        base_lookup: OperationalMetadataLookupInterface,
        cache: CacheLayer,
        clock: IngestionClock | None = None,
    ):
        self.base_lookup = base_lookup
        self.cache = cache
        self.clock = clock

    async def lookup(self, restaurant_id: str) -> OperationalMetadata:
        key = static_key("metadata", restaurant_id)
        value, hit = await self.cache.get(key)
        if hit:
            return refresh_status(value, current_time(self.clock))
        metadata = await self.base_lookup.lookup(restaurant_id)
        await self.cache.put(key, metadata, tags=(restaurant_id,))
        return metadata
