"""Operational metadata lookups.

Two implementations of
:class:`~foodgraph.pipeline.interfaces.OperationalMetadataLookupInterface`:

- :class:`EntityMetadataLookup` derives status from the ``location``,
  ``hours`` and ``timezone`` keys an enrichment job wrote into the
  restaurant entity's metadata.
- :class:`HttpOperationalMetadataLookup` asks a venue-data service over HTTP.
"""

import logging
from datetime import datetime, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from foodgraph.clock import IngestionClock, current_time
from foodgraph.pipeline.interfaces import (
    GeoPoint,
    OperatingStatus,
    OperationalMetadata,
    OperationalMetadataLookupInterface,
)
from foodgraph.storage.interfaces import EntityStorageInterface

logger = logging.getLogger(__name__)

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def status_from_hours(hours: dict[str, Any] | None, local_now: datetime) -> OperatingStatus:
    """Evaluate weekly opening hours at ``local_now``.

    ``hours`` maps three-letter weekdays to ``[["HH:MM", "HH:MM"], ...]``.
    An interval whose end is not after its start runs past midnight. A
    weekday absent from a non-empty table means closed that day.
    """
    if not hours:
        return OperatingStatus.UNKNOWN
    day = WEEKDAYS[local_now.weekday()]
    previous_day = WEEKDAYS[(local_now.weekday() - 1) % 7]
    now_minutes = local_now.hour * 60 + local_now.minute
    try:
        for start, end in hours.get(day, []):
            start_m, end_m = _minutes(start), _minutes(end)
            if start_m < end_m and start_m <= now_minutes < end_m:
                return OperatingStatus.OPEN
            if end_m <= start_m and now_minutes >= start_m:
                return OperatingStatus.OPEN
        for start, end in hours.get(previous_day, []):
            start_m, end_m = _minutes(start), _minutes(end)
            if end_m <= start_m and now_minutes < end_m:
                return OperatingStatus.OPEN
    except (TypeError, ValueError):
        logger.warning("Unreadable hours table: %r", hours)
        return OperatingStatus.UNKNOWN
    return OperatingStatus.CLOSED


def _zone(name: str | None) -> tzinfo:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", name)
        return timezone.utc


def refresh_status(metadata: OperationalMetadata, now: datetime) -> OperationalMetadata:
    """Re-evaluate ``status`` from the hours table, for metadata read from a cache."""
    if not metadata.hours:
        return metadata
    status = status_from_hours(metadata.hours, now.astimezone(_zone(metadata.timezone)))
    if status == metadata.status:
        return metadata
    return metadata.model_copy(update={"status": status})


class EntityMetadataLookup(OperationalMetadataLookupInterface):
    """Read location/hours from restaurant entity metadata."""

    def __init__(self, entity_storage: EntityStorageInterface, clock: IngestionClock | None = None):
        self.entity_storage = entity_storage
        self.clock = clock

    async def lookup(self, restaurant_id: str) -> OperationalMetadata:
        entity = await self.entity_storage.get(restaurant_id)
        if entity is None:
            return OperationalMetadata(restaurant_id=restaurant_id)
        location = entity.metadata.get("location")
        hours = entity.metadata.get("hours")
        tz_name = entity.metadata.get("timezone")
        return OperationalMetadata(
            restaurant_id=restaurant_id,
            location=GeoPoint(**location) if location else None,
            hours=hours,
            timezone=tz_name,
            status=status_from_hours(hours, current_time(self.clock).astimezone(_zone(tz_name))),
        )


class HttpOperationalMetadataLookup(OperationalMetadataLookupInterface):
    """Fetch ``GET {base_url}/restaurants/{id}/metadata`` from a venue-data service.

    The response body is an OperationalMetadata JSON object. Transport
    errors and non-2xx responses propagate; timeouts surface as
    ``httpx.TimeoutException``.

    One ``httpx.AsyncClient`` is held for the lookup's lifetime so
    connections are pooled across calls. Close it with :meth:`aclose` or
    use the lookup as an async context manager.

    Example:
        ```python
        async with HttpOperationalMetadataLookup("https://venues.internal", timeout=2.0) as lookup:
            metadata = await lookup.lookup(restaurant_id)
        ```
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=transport,
        )

    async def __aenter__(self) -> "HttpOperationalMetadataLookup":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def lookup(self, restaurant_id: str) -> OperationalMetadata:
        response = await self.client.get(f"/restaurants/{restaurant_id}/metadata")
        response.raise_for_status()
        data = response.json()
        data.setdefault("restaurant_id", restaurant_id)
        return OperationalMetadata.model_validate(data)
