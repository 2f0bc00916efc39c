from __future__ import annotations

from datetime import datetime, timezone
from pydantic import BaseModel, field_validator

SECONDS_PER_DAY = 86400.0


class IngestionClock(BaseModel, frozen=True):
    now: datetime

    @field_validator('now')
    @classmethod
    def now_must_be_timezone_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError('IngestionClock value must be timezone-aware')
        return value


def current_time(clock: IngestionClock | None = None) -> datetime:
    """Return the pinned time of ``clock`` or the current UTC time."""
    if clock is not None:
        return clock.now
    return datetime.now(timezone.utc)


def age_in_days(timestamp: datetime, now: datetime) -> float:
    """Age of ``timestamp`` relative to ``now`` in fractional days, never negative."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return max(0.0, (now - timestamp).total_seconds() / SECONDS_PER_DAY)
