"""Tests for collaborator calls and operational metadata.

This module verifies:
- call_with_timeout retries timeouts with exponential backoff and gives up
  with UpstreamTimeout; other errors propagate at once
- Opening-hours evaluation, including intervals past midnight
- Metadata read from restaurant entities and from an HTTP venue service
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from foodgraph.errors import UpstreamTimeout
from foodgraph.pipeline.interfaces import GeoPoint, OperatingStatus, OperationalMetadata
from foodgraph.pipeline.metadata import (
    EntityMetadataLookup,
    HttpOperationalMetadataLookup,
    refresh_status,
    status_from_hours,
)
from foodgraph.pipeline.upstream import call_with_timeout

from tests.conftest import make_entity

LUNCH_AND_DINNER = {"thu": [["11:00", "14:00"], ["17:00", "22:00"]], "fri": [["11:00", "23:00"]]}
LATE_NIGHT = {"wed": [["18:00", "02:00"]], "thu": [["18:00", "02:00"]]}


def thursday(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, 15, hour, minute, tzinfo=timezone.utc)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestCallWithTimeout:
    """Tests for deadline and retry handling."""

    async def test_returns_result(self) -> None:
        async def call():
            return 42

        assert await call_with_timeout("answer", call, timeout=1.0) == 42

    async def test_retries_then_gives_up(self) -> None:
        sleep = SleepRecorder()
        calls = []

        async def slow():
            calls.append(1)
            await asyncio.sleep(1.0)

        with pytest.raises(UpstreamTimeout) as exc_info:
            await call_with_timeout("extract", slow, timeout=0.01, max_attempts=3, backoff=0.5, sleep=sleep)

        assert len(calls) == 3
        assert sleep.delays == [0.5, 1.0]
        assert exc_info.value.attempts == 3
        assert exc_info.value.operation == "extract"

    async def test_recovers_on_later_attempt(self) -> None:
        sleep = SleepRecorder()
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(1.0)
            return "ok"

        assert await call_with_timeout("extract", flaky, timeout=0.01, sleep=sleep) == "ok"
        assert len(calls) == 2
        assert sleep.delays == [0.5]

    async def test_httpx_timeouts_count_as_timeouts(self) -> None:
        sleep = SleepRecorder()

        async def call():
            raise httpx.ReadTimeout("read timed out")

        with pytest.raises(UpstreamTimeout):
            await call_with_timeout("lookup", call, timeout=1.0, max_attempts=2, backoff=0.0, sleep=sleep)

        assert sleep.delays == [0.0]

    async def test_jitter_is_bounded(self) -> None:
        sleep = SleepRecorder()

        async def call():
            raise httpx.ConnectTimeout("connect timed out")

        with pytest.raises(UpstreamTimeout):
            await call_with_timeout(
                "lookup", call, timeout=1.0, max_attempts=3, backoff=1.0, jitter=0.25, sleep=sleep
            )

        assert len(sleep.delays) == 2
        assert 1.0 <= sleep.delays[0] <= 1.25
        assert 2.0 <= sleep.delays[1] <= 2.25

    async def test_last_timeout_is_the_cause(self) -> None:
        async def call():
            raise httpx.ReadTimeout("read timed out")

        with pytest.raises(UpstreamTimeout) as exc_info:
            await call_with_timeout("lookup", call, timeout=1.0, max_attempts=1, sleep=SleepRecorder())

        assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)

    async def test_other_errors_propagate_immediately(self) -> None:
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError("bad payload")

        with pytest.raises(ValueError):
            await call_with_timeout("extract", broken, timeout=1.0, sleep=SleepRecorder())

        assert len(calls) == 1


class TestStatusFromHours:
    """Tests for weekly hours evaluation."""

    @pytest.mark.parametrize(
        "hour, minute, expected",
        [
            (12, 0, OperatingStatus.OPEN),
            (14, 0, OperatingStatus.CLOSED),
            (15, 30, OperatingStatus.CLOSED),
            (17, 0, OperatingStatus.OPEN),
            (21, 59, OperatingStatus.OPEN),
            (22, 0, OperatingStatus.CLOSED),
            (10, 59, OperatingStatus.CLOSED),
        ],
    )
    def test_split_shifts(self, hour, minute, expected) -> None:
        assert status_from_hours(LUNCH_AND_DINNER, thursday(hour, minute)) == expected

    def test_overnight_interval(self) -> None:
        assert status_from_hours(LATE_NIGHT, thursday(1, 30)) == OperatingStatus.OPEN
        assert status_from_hours(LATE_NIGHT, thursday(2, 0)) == OperatingStatus.CLOSED
        assert status_from_hours(LATE_NIGHT, thursday(12, 0)) == OperatingStatus.CLOSED
        assert status_from_hours(LATE_NIGHT, thursday(23, 0)) == OperatingStatus.OPEN

    def test_overnight_from_missing_previous_day(self) -> None:
        """Friday's early hours are open only because Thursday's interval runs past midnight."""
        friday_1am = thursday(1) + timedelta(days=1)

        assert status_from_hours({"thu": [["18:00", "02:00"]]}, friday_1am) == OperatingStatus.OPEN
        assert status_from_hours({"wed": [["18:00", "02:00"]]}, friday_1am) == OperatingStatus.CLOSED

    def test_missing_day_is_closed(self) -> None:
        assert status_from_hours({"mon": [["09:00", "17:00"]]}, thursday(12)) == OperatingStatus.CLOSED

    @pytest.mark.parametrize("hours", [None, {}])
    def test_no_hours_is_unknown(self, hours) -> None:
        assert status_from_hours(hours, thursday(12)) == OperatingStatus.UNKNOWN

    @pytest.mark.parametrize("hours", [{"thu": [["noon", "late"]]}, {"thu": [["11:00"]]}, {"thu": "always"}])
    def test_unreadable_hours_are_unknown(self, hours) -> None:
        assert status_from_hours(hours, thursday(12)) == OperatingStatus.UNKNOWN


class TestRefreshStatus:
    """Tests for re-evaluating cached metadata."""

    def test_status_follows_the_clock(self) -> None:
        metadata = OperationalMetadata(
            restaurant_id="r1", hours=LUNCH_AND_DINNER, status=OperatingStatus.OPEN
        )

        refreshed = refresh_status(metadata, thursday(15))

        assert refreshed.status == OperatingStatus.CLOSED
        assert metadata.status == OperatingStatus.OPEN

    def test_without_hours_is_unchanged(self) -> None:
        metadata = OperationalMetadata(restaurant_id="r1", status=OperatingStatus.CLOSED)

        assert refresh_status(metadata, thursday(12)) is metadata


class TestEntityMetadataLookup:
    """Tests for metadata derived from restaurant entities."""

    async def test_reads_location_and_hours(self, entity_storage, clock) -> None:
        await entity_storage.insert_if_absent(
            make_entity(
                "uchi",
                entity_id="r1",
                metadata={"location": {"lat": 30.25, "lng": -97.76}, "hours": LUNCH_AND_DINNER},
            )
        )

        metadata = await EntityMetadataLookup(entity_storage, clock=clock).lookup("r1")

        assert metadata.location == GeoPoint(lat=30.25, lng=-97.76)
        assert metadata.status == OperatingStatus.OPEN

    async def test_hours_are_local_to_the_restaurant(self, entity_storage, clock) -> None:
        """Noon UTC is 06:00 in Austin, before opening."""
        await entity_storage.insert_if_absent(
            make_entity("uchi", entity_id="r1", metadata={"hours": LUNCH_AND_DINNER, "timezone": "America/Chicago"})
        )

        metadata = await EntityMetadataLookup(entity_storage, clock=clock).lookup("r1")

        assert metadata.status == OperatingStatus.CLOSED
        assert metadata.timezone == "America/Chicago"

    async def test_unknown_restaurant(self, entity_storage, clock) -> None:
        metadata = await EntityMetadataLookup(entity_storage, clock=clock).lookup("ghost")

        assert metadata.location is None
        assert metadata.status == OperatingStatus.UNKNOWN


class TestHttpOperationalMetadataLookup:
    """Tests for the HTTP venue-data client."""

    async def test_fetches_metadata(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(
                200, json={"location": {"lat": 30.27, "lng": -97.74}, "status": "open", "timezone": "UTC"}
            )

        lookup = HttpOperationalMetadataLookup("https://venues.test/", transport=httpx.MockTransport(handler))

        metadata = await lookup.lookup("r1")

        assert seen == ["https://venues.test/restaurants/r1/metadata"]
        assert metadata.restaurant_id == "r1"
        assert metadata.status == OperatingStatus.OPEN
        assert metadata.location == GeoPoint(lat=30.27, lng=-97.74)

    async def test_one_client_serves_every_lookup(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "closed"})

        async with HttpOperationalMetadataLookup(
            "https://venues.test", transport=httpx.MockTransport(handler)
        ) as lookup:
            client = lookup.client
            first = await lookup.lookup("r1")
            second = await lookup.lookup("r2")

            assert lookup.client is client
            assert not client.is_closed

        assert client.is_closed
        assert (first.restaurant_id, second.restaurant_id) == ("r1", "r2")
        assert second.status == OperatingStatus.CLOSED

    async def test_server_error_raises(self) -> None:
        lookup = HttpOperationalMetadataLookup(
            "https://venues.test", transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )

        with pytest.raises(httpx.HTTPStatusError):
            await lookup.lookup("r1")

    async def test_timeouts_retry_through_call_with_timeout(self) -> None:
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request.url.path)
            raise httpx.ConnectTimeout("connect timed out", request=request)

        lookup = HttpOperationalMetadataLookup("https://venues.test", transport=httpx.MockTransport(handler))

        with pytest.raises(UpstreamTimeout):
            await call_with_timeout(
                "metadata lookup", lambda: lookup.lookup("r1"), timeout=1.0, max_attempts=2, sleep=SleepRecorder()
            )

        assert attempts == ["/restaurants/r1/metadata", "/restaurants/r1/metadata"]

