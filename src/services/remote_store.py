"""
Remote store for bookmark rows and their per-owner change feed.

The synchronizer only talks to the `RemoteStore` protocol. `SqlRemoteStore`
implements it on top of a SQLAlchemy table with a Redis pub/sub channel per
owner as the push feed: every successful insert or delete publishes a
`ChangeEvent` to `{changes_channel_prefix}:{owner}`.
"""
import logging
from collections.abc import Callable
from typing import Protocol

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.redis import RedisClient
from models.bookmark import Bookmark as BookmarkModel
from schemas.bookmark import Bookmark, ChangeEvent, ChangeEventType
from services.subscription import NullSubscription, Subscription

logger = logging.getLogger(__name__)

InsertHandler = Callable[[Bookmark], None]
DeleteHandler = Callable[[str, str], None]  # (bookmark_id, owner)


class RemoteStoreError(Exception):
    """Raised when a remote store operation fails (transport, auth, validation)."""

    def __init__(self, operation: str, message: str | None = None) -> None:
        self.operation = operation
        super().__init__(message or f"Remote store {operation} failed")


class BookmarkNotFoundError(RemoteStoreError):
    """Raised when deleting a bookmark that does not exist for the owner."""

    def __init__(self, bookmark_id: str) -> None:
        self.bookmark_id = bookmark_id
        super().__init__("delete", f"Bookmark {bookmark_id} not found")


class RemoteStore(Protocol):
    """Owner-scoped access to the bookmark table and its push feed."""

    async def query(self, owner: str) -> list[Bookmark]:
        """All bookmarks of `owner`, newest first."""
        ...

    async def insert(self, owner: str, url: str, title: str) -> Bookmark:
        """Insert a bookmark and return the stored row."""
        ...

    async def delete(self, owner: str, bookmark_id: str) -> None:
        """Delete one of `owner`'s bookmarks."""
        ...

    async def subscribe(
        self, owner: str, on_insert: InsertHandler, on_delete: DeleteHandler,
    ) -> Subscription:
        """Deliver change events for `owner`'s rows until the subscription is closed."""
        ...


def dispatch_change_event(
    event: ChangeEvent, on_insert: InsertHandler, on_delete: DeleteHandler,
) -> None:
    """Route a change event to the matching handler."""
    if event.event_type is ChangeEventType.INSERT:
        on_insert(event.record)
    else:
        on_delete(event.bookmark_id, event.owner)


class SqlRemoteStore:
    """RemoteStore backed by a SQLAlchemy table and a Redis change feed."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: RedisClient | None = None,
        channel_prefix: str = "bookmarks-changes",
    ) -> None:
        self._session_factory = session_factory
        self._redis = redis_client
        self._channel_prefix = channel_prefix

    def channel_for(self, owner: str) -> str:
        """Push feed channel for `owner`."""
        return f"{self._channel_prefix}:{owner}"

    async def query(self, owner: str) -> list[Bookmark]:
        """Fetch all of `owner`'s bookmarks ordered by created_at descending."""
        statement = (
            select(BookmarkModel)
            .where(BookmarkModel.user_id == owner)
            .order_by(BookmarkModel.created_at.desc(), BookmarkModel.id)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise RemoteStoreError("query", str(e)) from e
        return [Bookmark.model_validate(row) for row in rows]

    async def insert(self, owner: str, url: str, title: str) -> Bookmark:
        """Insert a bookmark for `owner` and announce it on the change feed."""
        row = BookmarkModel(user_id=owner, url=url, title=title)
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.flush()
                bookmark = Bookmark.model_validate(row)
                await session.commit()
        except SQLAlchemyError as e:
            raise RemoteStoreError("insert", str(e)) from e
        await self._publish(ChangeEvent.inserted(bookmark))
        return bookmark

    async def delete(self, owner: str, bookmark_id: str) -> None:
        """Delete one of `owner`'s bookmarks and announce it on the change feed."""
        statement = delete(BookmarkModel).where(
            BookmarkModel.id == bookmark_id,
            BookmarkModel.user_id == owner,
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                await session.commit()
        except SQLAlchemyError as e:
            raise RemoteStoreError("delete", str(e)) from e
        if result.rowcount == 0:
            raise BookmarkNotFoundError(bookmark_id)
        await self._publish(ChangeEvent.deleted(owner, bookmark_id))

    async def subscribe(
        self, owner: str, on_insert: InsertHandler, on_delete: DeleteHandler,
    ) -> Subscription:
        """
        Listen to `owner`'s change feed.

        Returns a NullSubscription when Redis is unavailable; the caller then
        only sees changes through its own refreshes.
        """
        if self._redis is None:
            return NullSubscription()

        async def handle(data: bytes | str) -> None:
            try:
                event = ChangeEvent.model_validate_json(data)
            except ValidationError as e:
                logger.warning("Ignoring malformed change event: %s", e)
                return
            dispatch_change_event(event, on_insert, on_delete)

        subscription = await self._redis.subscribe(self.channel_for(owner), handle)
        if subscription is None:
            logger.warning("change_feed_unavailable", extra={"owner": owner})
            return NullSubscription()
        logger.info("change_feed_subscribed", extra={"owner": owner})
        return subscription

    async def _publish(self, event: ChangeEvent) -> None:
        if self._redis is None:
            return
        await self._redis.publish(self.channel_for(event.owner), event.model_dump_json())
