"""Bookmark model."""
import uuid

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


def new_bookmark_id() -> str:
    """Opaque bookmark identifier."""
    return str(uuid.uuid4())


class Bookmark(Base, TimestampMixin):
    """A URL saved by one user. Rows are only ever read or written by their owner."""

    __tablename__ = "bookmarks"
    __table_args__ = (
        Index("ix_bookmarks_user_id_created_at", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_bookmark_id)
    user_id: Mapped[str] = mapped_column(
        String(255),
        comment="OAuth subject of the owner - every query is scoped to it",
    )
    url: Mapped[str] = mapped_column(Text)
    title: Mapped[str] = mapped_column(Text)
