"""Declarative base and shared column mixins."""
from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""


class TimestampMixin:
    """Adds the insertion timestamp used as the bookmark sort key."""

    # Assigned client-side so the value is available right after insert
    # without a refresh round trip, and keeps microsecond resolution on
    # backends whose now() is per-second.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        index=True,
    )
