"""Pydantic schemas for bookmarks and their change events."""
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


def require_non_blank(value: str) -> str:
    """
    Strip surrounding whitespace and reject empty values.

    Both url and title are required at creation; a field containing only
    whitespace counts as missing.
    """
    stripped = value.strip()
    if not stripped:
        raise ValueError("Value must not be empty.")
    return stripped


class Bookmark(BaseModel):
    """A bookmark row as stored by the remote store."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    user_id: str
    url: str
    title: str
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Treat naive timestamps (e.g. from SQLite) as UTC so rows stay comparable."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class BookmarkCreate(BaseModel):
    """Schema for creating a new bookmark."""

    url: str
    title: str

    @field_validator("url", "title")
    @classmethod
    def check_not_blank(cls, v: str) -> str:
        """Reject blank url/title."""
        return require_non_blank(v)


class ChangeEventType(str, Enum):
    """Kind of row change carried by the push feed."""

    INSERT = "INSERT"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """
    Push feed message published on the owner's changes channel.

    INSERT events carry the full row in `record`; DELETE events only carry
    `bookmark_id`, matching what a row-level change feed can provide after
    the row is gone.
    """

    event_type: ChangeEventType
    owner: str
    record: Bookmark | None = None
    bookmark_id: str | None = None

    @model_validator(mode="after")
    def check_payload(self) -> "ChangeEvent":
        """Each event type needs its own payload field."""
        if self.event_type is ChangeEventType.INSERT and self.record is None:
            raise ValueError("INSERT events require a record.")
        if self.event_type is ChangeEventType.DELETE and self.bookmark_id is None:
            raise ValueError("DELETE events require a bookmark_id.")
        return self

    @classmethod
    def inserted(cls, bookmark: Bookmark) -> "ChangeEvent":
        """Build the event announcing a new row."""
        return cls(
            event_type=ChangeEventType.INSERT, owner=bookmark.user_id, record=bookmark,
        )

    @classmethod
    def deleted(cls, owner: str, bookmark_id: str) -> "ChangeEvent":
        """Build the event announcing a removed row."""
        return cls(
            event_type=ChangeEventType.DELETE, owner=owner, bookmark_id=bookmark_id,
        )
