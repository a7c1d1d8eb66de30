"""Tests for the SQL-backed remote store and its Redis change feed."""
from unittest.mock import MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from core.config import Settings
from core.redis import RedisClient
from fakes import wait_until
from schemas.bookmark import ChangeEvent
from schemas.session_user import SessionUser
from services.cross_tab import RedisCrossTabNotifier
from services.remote_store import (
    BookmarkNotFoundError,
    RemoteStoreError,
    SqlRemoteStore,
)
from services.subscription import NullSubscription
from services.synchronizer import BookmarkSynchronizer, create_synchronizer


class TestSqlRemoteStoreQueries:
    """Tests for query/insert/delete against SQLite."""

    async def test__query__empty_for_new_owner(self, sql_store: SqlRemoteStore) -> None:
        """No rows for an owner who never saved anything."""
        assert await sql_store.query("alice") == []

    async def test__insert__returns_stored_row(self, sql_store: SqlRemoteStore) -> None:
        """Insert assigns id and created_at and keeps the owner."""
        bookmark = await sql_store.insert("alice", "https://example.com", "Example")

        assert bookmark.id
        assert bookmark.user_id == "alice"
        assert bookmark.url == "https://example.com"
        assert bookmark.title == "Example"
        assert bookmark.created_at.tzinfo is not None

    async def test__query__newest_first_and_scoped_to_owner(
        self, sql_store: SqlRemoteStore,
    ) -> None:
        """Only the owner's rows come back, newest first."""
        first = await sql_store.insert("alice", "https://a.com", "A")
        second = await sql_store.insert("alice", "https://b.com", "B")
        await sql_store.insert("bob", "https://c.com", "C")

        rows = await sql_store.query("alice")

        assert [row.id for row in rows] == [second.id, first.id]
        assert rows[0] == second

    async def test__delete__removes_row(self, sql_store: SqlRemoteStore) -> None:
        """A deleted row no longer appears in queries."""
        bookmark = await sql_store.insert("alice", "https://a.com", "A")

        await sql_store.delete("alice", bookmark.id)

        assert await sql_store.query("alice") == []

    async def test__delete__other_owners_row_is_not_found(
        self, sql_store: SqlRemoteStore,
    ) -> None:
        """Deletes are scoped to the owner; someone else's row stays."""
        bookmark = await sql_store.insert("bob", "https://a.com", "A")

        with pytest.raises(BookmarkNotFoundError):
            await sql_store.delete("alice", bookmark.id)

        assert len(await sql_store.query("bob")) == 1

    async def test__delete__unknown_id_is_not_found(self, sql_store: SqlRemoteStore) -> None:
        """Deleting a missing row raises BookmarkNotFoundError."""
        with pytest.raises(BookmarkNotFoundError) as exc_info:
            await sql_store.delete("alice", "missing")

        assert exc_info.value.bookmark_id == "missing"
        assert exc_info.value.operation == "delete"

    async def test__database_errors__wrapped_in_remote_store_error(self) -> None:
        """SQLAlchemy failures surface as RemoteStoreError with the operation name."""
        # No tables created - every statement fails
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        store = SqlRemoteStore(async_sessionmaker(engine, class_=AsyncSession))

        try:
            for operation, call in [
                ("query", lambda: store.query("alice")),
                ("insert", lambda: store.insert("alice", "https://a.com", "A")),
                ("delete", lambda: store.delete("alice", "x")),
            ]:
                with pytest.raises(RemoteStoreError) as exc_info:
                    await call()
                assert exc_info.value.operation == operation
        finally:
            await engine.dispose()

    async def test__without_redis__writes_work_and_feed_is_null(
        self, session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """With no Redis the store still reads and writes; subscribe degrades."""
        store = SqlRemoteStore(session_factory)

        bookmark = await store.insert("alice", "https://a.com", "A")
        await store.delete("alice", bookmark.id)
        subscription = await store.subscribe("alice", MagicMock(), MagicMock())

        assert isinstance(subscription, NullSubscription)
        await subscription.close()


class TestSqlRemoteStoreChangeFeed:
    """Tests for push events published on insert/delete."""

    async def test__insert__delivers_insert_event(self, sql_store: SqlRemoteStore) -> None:
        """Subscribers receive the inserted row."""
        received = []
        subscription = await sql_store.subscribe("alice", received.append, MagicMock())

        bookmark = await sql_store.insert("alice", "https://a.com", "A")
        await wait_until(lambda: len(received) == 1)
        await subscription.close()

        assert received == [bookmark]

    async def test__delete__delivers_delete_event(self, sql_store: SqlRemoteStore) -> None:
        """Subscribers receive (bookmark_id, owner) for deletes."""
        deleted = []
        bookmark = await sql_store.insert("alice", "https://a.com", "A")
        subscription = await sql_store.subscribe(
            "alice", MagicMock(), lambda bookmark_id, owner: deleted.append((bookmark_id, owner)),
        )

        await sql_store.delete("alice", bookmark.id)
        await wait_until(lambda: len(deleted) == 1)
        await subscription.close()

        assert deleted == [(bookmark.id, "alice")]

    async def test__feed__filtered_by_owner(self, sql_store: SqlRemoteStore) -> None:
        """Events for other owners are not delivered."""
        alice_events = []
        subscription = await sql_store.subscribe("alice", alice_events.append, MagicMock())

        await sql_store.insert("bob", "https://b.com", "B")
        mine = await sql_store.insert("alice", "https://a.com", "A")
        await wait_until(lambda: len(alice_events) == 1)
        await subscription.close()

        assert alice_events == [mine]

    async def test__feed__malformed_message_is_skipped(
        self, sql_store: SqlRemoteStore, redis_client: RedisClient,
    ) -> None:
        """Garbage on the channel is ignored and later events still arrive."""
        received = []
        subscription = await sql_store.subscribe("alice", received.append, MagicMock())

        await redis_client.publish(sql_store.channel_for("alice"), "not json")
        await redis_client.publish(
            sql_store.channel_for("alice"), '{"event_type": "INSERT", "owner": "alice"}',
        )
        bookmark = await sql_store.insert("alice", "https://a.com", "A")
        await wait_until(lambda: len(received) == 1)
        await subscription.close()

        assert received == [bookmark]

    async def test__feed__payload_is_a_change_event(
        self, sql_store: SqlRemoteStore, redis_client: RedisClient,
    ) -> None:
        """The wire format is ChangeEvent JSON on {prefix}:{owner}."""
        raw = []

        async def capture(data: bytes | str) -> None:
            raw.append(data)

        subscription = await redis_client.subscribe("bookmarks-changes:alice", capture)
        bookmark = await sql_store.insert("alice", "https://a.com", "A")
        await wait_until(lambda: len(raw) == 1)
        await subscription.close()

        event = ChangeEvent.model_validate_json(raw[0])
        assert event == ChangeEvent.inserted(bookmark)


class TestSynchronizerOverSqlAndRedis:
    """End-to-end: two tabs on the real store, feed and cross-tab channel."""

    async def test__two_tabs__converge_after_create_and_delete(
        self, sql_store: SqlRemoteStore, redis_client: RedisClient,
    ) -> None:
        """A create and a delete in one tab are reflected in the other."""
        user = SessionUser(id="alice")
        notifier = RedisCrossTabNotifier(redis_client)

        async with (
            BookmarkSynchronizer(user, sql_store, notifier) as tab_one,
            BookmarkSynchronizer(user, sql_store, notifier) as tab_two,
        ):
            bookmark = await tab_one.create("https://x.com", "X")
            await wait_until(lambda: [b.id for b in tab_two.bookmarks] == [bookmark.id])

            assert await tab_two.delete(bookmark.id) is True
            await wait_until(lambda: tab_one.bookmarks == ())

        assert await sql_store.query("alice") == []

    async def test__create_synchronizer__uses_configured_channels(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: RedisClient,
    ) -> None:
        """The factory wires the configured feed prefix and sync topic."""
        settings = Settings(
            _env_file=None,
            database_url="sqlite+aiosqlite://",
            changes_channel_prefix="feed",
            sync_channel="tabs",
        )
        raw_feed, raw_tabs = [], []

        async def capture_feed(data: bytes | str) -> None:
            raw_feed.append(data)

        async def capture_tabs(data: bytes | str) -> None:
            raw_tabs.append(data)

        feed = await redis_client.subscribe("feed:alice", capture_feed)
        tabs = await redis_client.subscribe("tabs", capture_tabs)
        sync = create_synchronizer(
            SessionUser(id="alice"),
            settings,
            redis_client=redis_client,
            session_factory=session_factory,
        )

        async with sync:
            await sync.create("https://x.com", "X")
            await wait_until(lambda: len(raw_feed) == 1 and len(raw_tabs) == 1)

        await feed.close()
        await tabs.close()
        assert [b.url for b in await SqlRemoteStore(session_factory).query("alice")] == ["https://x.com"]
