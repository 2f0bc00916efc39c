"""Interfaces for the external collaborators of the engine.

The engine itself never reads raw discussion text or talks to venue data
providers. It calls:

- a **mention extractor**, the text-understanding service that turns
  collected posts/comments into :class:`~foodgraph.mention.ExtractedMention`
  records, and
- an **operational metadata lookup**, which returns location, hours and
  open status for a restaurant entity.

Both are slow and may fail; callers wrap them with
:func:`foodgraph.pipeline.upstream.call_with_timeout` or degrade to
``status: unknown``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Sequence

from pydantic import BaseModel, Field

from foodgraph.mention import ExtractedMention, SourceType


class SourcePost(BaseModel, frozen=True):
    """A collected post or comment awaiting extraction."""

    source_type: SourceType
    source_id: str
    source: str | None = Field(default=None, description="Community the text came from.")
    source_url: str | None = None
    author: str | None = None
    text: str
    upvotes: int = Field(default=0, ge=0)
    posted_at: datetime


class GeoPoint(BaseModel, frozen=True):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)


class OperatingStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    UNKNOWN = "unknown"


class OperationalMetadata(BaseModel, frozen=True):
    """Location, hours and current open status of one restaurant."""

    restaurant_id: str
    location: GeoPoint | None = None
    hours: dict[str, Any] | None = None
    timezone: str | None = Field(default=None, description="IANA zone the hours are expressed in.")
    status: OperatingStatus = OperatingStatus.UNKNOWN


class MentionExtractorInterface(ABC):
    """Turn raw posts into structured mentions.

    Implementations typically call an LLM or NER service. The output is
    treated as untrusted: it may repeat mentions or omit restaurant names,
    and the resolver validates every record.
    """

    @abstractmethod
    async def extract(self, posts: Sequence[SourcePost]) -> list[ExtractedMention]:
        """Extract mentions from a group of posts.

        Args:
            posts: Posts/comments collected upstream.

        Returns:
            Zero or more mentions per post, each carrying the post's source
            identifiers, upvotes and timestamp.
        """


class OperationalMetadataLookupInterface(ABC):
    """Look up operational metadata for a restaurant entity."""

    @abstractmethod
    async def lookup(self, restaurant_id: str) -> OperationalMetadata:
        """Return metadata for ``restaurant_id``.

        May raise on transport failures; the query engine treats any failure
        as ``OperatingStatus.UNKNOWN`` and never fails the query.
        """
