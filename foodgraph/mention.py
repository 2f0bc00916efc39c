"""Mention evidence records and the extraction input contract."""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

# Namespace for deterministic mention ids derived from the dedup key.
MENTION_NAMESPACE = uuid.UUID("6f1c8e52-4c3a-4d0e-9a57-0b7f6c2d9e11")


class SourceType(str, Enum):
    POST = "post"
    COMMENT = "comment"


def mention_id_for(source_type: SourceType, source_id: str, connection_id: str) -> str:
    """Deterministic id for ``(source_type, source_id, connection_id)``."""
    return str(uuid.uuid5(MENTION_NAMESPACE, f"{source_type.value}:{source_id}:{connection_id}"))


class Mention(BaseModel, frozen=True):
    """One piece of community evidence supporting a connection. Immutable."""

    mention_id: str
    connection_id: str
    source_type: SourceType
    source_id: str
    source: str | None = Field(default=None, description="Community (e.g. subreddit) the text came from.")
    source_url: str | None = None
    excerpt: str = ""
    author: str | None = None
    upvotes: int = Field(default=0, ge=0)
    posted_at: datetime
    processed_at: datetime

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.source_type.value, self.source_id, self.connection_id)


class ExtractedMention(BaseModel, frozen=True):
    """A structured mention produced by the text-understanding collaborator.

    The stream is untrusted and may repeat itself: ``restaurant`` may be
    missing (the resolver rejects such mentions) and names arrive in any
    casing or spacing.
    """

    restaurant: str | None = None
    dish: str | None = None
    categories: tuple[str, ...] = ()
    dish_attributes: tuple[str, ...] = ()
    restaurant_attributes: tuple[str, ...] = ()
    is_menu_item: bool = False
    general_praise: bool = False
    source_type: SourceType
    source_id: str
    source: str | None = None
    source_url: str | None = None
    excerpt: str = ""
    author: str | None = None
    upvotes: int = Field(default=0, ge=0)
    posted_at: datetime

    @property
    def source_key(self) -> str:
        return f"{self.source_type.value}:{self.source_id}"
