"""
Per-user bookmark list kept consistent across three change sources.

The list is replaced wholesale by refreshes (initial load, cross-tab
signal, reconciliation after a failed delete) and patched in between by
small idempotent deltas (push feed events, optimistic deletes, confirmed
creates). Refreshes are numbered: a result older than the newest applied
refresh is dropped, and deltas that arrive while a refresh is in flight are
replayed on top of its result so they are not lost to a stale read.
"""
import logging
from collections.abc import Callable
from types import TracebackType

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.auth import NotAuthenticatedError, SessionProvider
from core.config import Settings
from core.redis import RedisClient, get_redis_client
from db.session import get_session_factory
from schemas.bookmark import Bookmark
from schemas.session_user import SessionUser
from services.cross_tab import CrossTabNotifier, RedisCrossTabNotifier
from services.remote_store import (
    BookmarkNotFoundError,
    RemoteStore,
    RemoteStoreError,
    SqlRemoteStore,
)
from services.subscription import NullSubscription, Subscription

logger = logging.getLogger(__name__)

ErrorReporter = Callable[[str, Exception], None]
ChangeListener = Callable[[tuple[Bookmark, ...]], None]

DEFAULT_SYNC_TOPIC = "bookmarks-sync"

_INSERT = "insert"
_DELETE = "delete"


def log_error(message: str, error: Exception) -> None:
    """Default operator-facing error reporter."""
    logger.error("%s: %s", message, error)


def _sorted_newest_first(bookmarks: list[Bookmark]) -> list[Bookmark]:
    # Stable sort: among equal timestamps the most recently added stays first.
    return sorted(bookmarks, key=lambda b: b.created_at, reverse=True)


class BookmarkSynchronizer:
    """
    Owns the ordered bookmark list of one signed-in user.

    Usage:
        async with BookmarkSynchronizer(user, store, notifier) as sync:
            await sync.create("https://example.com", "Example")

    Remote store failures never escape: they are passed to `on_error` and the
    list is left as it was (create) or reconciled with a full refresh (delete).
    """

    def __init__(
        self,
        user: SessionUser,
        store: RemoteStore,
        notifier: CrossTabNotifier | None = None,
        *,
        sync_topic: str = DEFAULT_SYNC_TOPIC,
        on_error: ErrorReporter = log_error,
    ) -> None:
        self._user = user
        self._store = store
        self._notifier = notifier
        self._sync_topic = sync_topic
        self._on_error = on_error

        self._bookmarks: list[Bookmark] = []
        self._loading = True
        self._creating = False
        self._started = False
        self._closed = False
        self._listeners: list[ChangeListener] = []

        self._feed_subscription: Subscription | None = None
        self._tab_subscription: Subscription | None = None

        self._refresh_seq = 0
        self._applied_refresh_seq = 0
        # seq -> absolute delta position at which that refresh started reading
        self._inflight_refreshes: dict[int, int] = {}
        self._deltas: list[tuple[str, Bookmark | str]] = []
        self._delta_base = 0
        self._pending_deletes: set[str] = set()

    @classmethod
    def for_current_user(
        cls,
        session_provider: SessionProvider,
        store: RemoteStore,
        notifier: CrossTabNotifier | None = None,
        *,
        sync_topic: str = DEFAULT_SYNC_TOPIC,
        on_error: ErrorReporter = log_error,
    ) -> "BookmarkSynchronizer":
        """Build a synchronizer for the provider's signed-in user."""
        user = session_provider.current_user()
        if user is None:
            raise NotAuthenticatedError("No signed-in user")
        return cls(user, store, notifier, sync_topic=sync_topic, on_error=on_error)

    @property
    def owner(self) -> str:
        return self._user.id

    @property
    def user(self) -> SessionUser:
        return self._user

    @property
    def bookmarks(self) -> tuple[Bookmark, ...]:
        """Snapshot of the current list, newest first."""
        return tuple(self._bookmarks)

    @property
    def is_loading(self) -> bool:
        """True until the first fetch attempt has completed."""
        return self._loading

    @property
    def is_creating(self) -> bool:
        return self._creating

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def pending_delta_count(self) -> int:
        """Deltas kept for replay onto in-flight refreshes."""
        return len(self._deltas)

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Call `listener` with the new snapshot after every change; returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Subscribe to the push feed and the cross-tab channel, then load.

        Subscribing first means no change can slip between the initial read
        and the start of the feed; events arriving during the read are
        replayed onto its result.
        """
        if self._started or self._closed:
            return
        self._started = True

        try:
            self._feed_subscription = await self._store.subscribe(
                self.owner, self.apply_insert, self.apply_delete,
            )
        except RemoteStoreError as e:
            logger.warning("change_feed_subscribe_failed", extra={"owner": self.owner, "error": str(e)})
            self._feed_subscription = NullSubscription()

        if self._notifier is not None:
            self._tab_subscription = await self._notifier.on_receive(
                self._sync_topic, self._on_cross_tab_signal,
            )

        await self.refresh()

    async def close(self) -> None:
        """Release both subscriptions; later results of in-flight calls are discarded."""
        if self._closed:
            return
        self._closed = True
        for subscription in (self._feed_subscription, self._tab_subscription):
            if subscription is not None:
                await subscription.close()
        self._feed_subscription = None
        self._tab_subscription = None
        self._listeners.clear()
        logger.info("bookmark_sync_closed", extra={"owner": self.owner})

    async def __aenter__(self) -> "BookmarkSynchronizer":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Full refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        """
        Re-read the owner's bookmarks and replace the local list.

        Returns True when the result was applied. On failure the previous
        list is kept and the loading flag is cleared all the same.
        """
        if self._closed:
            return False

        self._refresh_seq += 1
        seq = self._refresh_seq
        self._inflight_refreshes[seq] = self._delta_base + len(self._deltas)
        try:
            rows = await self._store.query(self.owner)
        except RemoteStoreError as e:
            logger.warning("bookmark_fetch_failed", extra={"owner": self.owner, "error": str(e)})
            if not self._closed:
                self._on_error("Failed to load bookmarks", e)
                if self._loading:
                    self._loading = False
                    self._notify()
            return False
        finally:
            replayed = self._finish_refresh(seq)

        if self._closed:
            return False
        if seq < self._applied_refresh_seq:
            logger.debug("Dropping stale refresh %s (applied %s)", seq, self._applied_refresh_seq)
            return False

        bookmarks = [b for b in rows if b.id not in self._pending_deletes]
        for kind, payload in replayed:
            if kind == _INSERT:
                bookmarks = self._with_inserted(bookmarks, payload)
            else:
                bookmarks = [b for b in bookmarks if b.id != payload]

        self._bookmarks = self._unique(bookmarks)
        self._applied_refresh_seq = seq
        self._loading = False
        self._notify()
        return True

    async def _on_cross_tab_signal(self) -> None:
        await self.refresh()

    # ------------------------------------------------------------------
    # Push feed deltas
    # ------------------------------------------------------------------

    def apply_insert(self, bookmark: Bookmark) -> bool:
        """Add a pushed row unless it is already present. Returns True if the list changed."""
        if self._closed or not self._owns(bookmark.user_id, bookmark.id):
            return False
        self._record_delta(_INSERT, bookmark)
        if any(b.id == bookmark.id for b in self._bookmarks):
            return False
        self._bookmarks = self._with_inserted(self._bookmarks, bookmark)
        self._notify()
        return True

    def apply_delete(self, bookmark_id: str, owner: str) -> bool:
        """Remove a row reported deleted. Unknown ids are ignored. Returns True if the list changed."""
        if self._closed or not self._owns(owner, bookmark_id):
            return False
        self._record_delta(_DELETE, bookmark_id)
        return self._remove_local(bookmark_id)

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    async def create(self, url: str, title: str) -> Bookmark | None:
        """
        Insert a bookmark for the owner.

        Blank fields, a closed synchronizer or another create still in flight
        make this a no-op returning None. The row appears locally only once the
        store has confirmed it; a refresh and a cross-tab signal follow.
        """
        url, title = url.strip(), title.strip()
        if not url or not title:
            return None
        if self._closed:
            return None
        if self._creating:
            logger.debug("Ignoring create while another is pending")
            return None

        self._creating = True
        try:
            bookmark = await self._store.insert(self.owner, url, title)
        except RemoteStoreError as e:
            logger.warning("bookmark_create_failed", extra={"owner": self.owner, "error": str(e)})
            if not self._closed:
                self._on_error("Failed to add bookmark", e)
            return None
        finally:
            self._creating = False

        if self._closed:
            return bookmark
        self.apply_insert(bookmark)
        await self._broadcast_change()
        await self.refresh()
        return bookmark

    async def delete(self, bookmark_id: str) -> bool:
        """
        Remove a bookmark locally at once, then from the store.

        Returns True when the store confirmed the delete (or no longer had the
        row). If the store call fails the error is reported and a full refresh
        reconciles the list with what the store actually holds.
        """
        if self._closed or not any(b.id == bookmark_id for b in self._bookmarks):
            return False

        self._pending_deletes.add(bookmark_id)
        self._record_delta(_DELETE, bookmark_id)
        self._remove_local(bookmark_id)

        try:
            await self._store.delete(self.owner, bookmark_id)
        except BookmarkNotFoundError:
            logger.debug("Bookmark %s already gone from store", bookmark_id)
        except RemoteStoreError as e:
            self._pending_deletes.discard(bookmark_id)
            logger.warning(
                "bookmark_delete_failed",
                extra={"owner": self.owner, "bookmark_id": bookmark_id, "error": str(e)},
            )
            if self._closed:
                return False
            self._on_error("Failed to delete bookmark", e)
            await self.refresh()
            return False

        # Refreshes that read before the delete committed must still drop the row.
        self._record_delta(_DELETE, bookmark_id)
        self._pending_deletes.discard(bookmark_id)
        if self._closed:
            return True
        # A push insert may have re-added the row while the delete was in flight.
        self._remove_local(bookmark_id)
        await self._broadcast_change()
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _owns(self, owner: str, bookmark_id: str) -> bool:
        if owner == self.owner:
            return True
        logger.warning(
            "push_event_owner_mismatch",
            extra={"owner": self.owner, "event_owner": owner, "bookmark_id": bookmark_id},
        )
        return False

    def _record_delta(self, kind: str, payload: Bookmark | str) -> None:
        if self._inflight_refreshes:
            self._deltas.append((kind, payload))

    def _finish_refresh(self, seq: int) -> list[tuple[str, Bookmark | str]]:
        """Return the deltas recorded since `seq` started and drop those no refresh still needs."""
        start = self._inflight_refreshes.pop(seq)
        replayed = self._deltas[start - self._delta_base:]
        oldest = min(self._inflight_refreshes.values(), default=self._delta_base + len(self._deltas))
        del self._deltas[:oldest - self._delta_base]
        self._delta_base = oldest
        return replayed

    def _remove_local(self, bookmark_id: str) -> bool:
        remaining = [b for b in self._bookmarks if b.id != bookmark_id]
        if len(remaining) == len(self._bookmarks):
            return False
        self._bookmarks = remaining
        self._notify()
        return True

    @staticmethod
    def _with_inserted(bookmarks: list[Bookmark], bookmark: Bookmark) -> list[Bookmark]:
        if any(b.id == bookmark.id for b in bookmarks):
            return bookmarks
        return _sorted_newest_first([bookmark, *bookmarks])

    @staticmethod
    def _unique(bookmarks: list[Bookmark]) -> list[Bookmark]:
        seen: set[str] = set()
        unique = []
        for bookmark in bookmarks:
            if bookmark.id not in seen:
                seen.add(bookmark.id)
                unique.append(bookmark)
        return unique

    async def _broadcast_change(self) -> None:
        if self._notifier is None:
            return
        if not await self._notifier.send(self._sync_topic):
            logger.debug("Cross-tab channel unavailable, change not broadcast")

    def _notify(self) -> None:
        snapshot = self.bookmarks
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("bookmark_listener_failed", extra={"owner": self.owner})


def create_synchronizer(
    user: SessionUser,
    settings: Settings,
    *,
    redis_client: RedisClient | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    on_error: ErrorReporter = log_error,
) -> BookmarkSynchronizer:
    """
    Wire a synchronizer to the configured store, change feed and cross-tab channel.

    Falls back to the global Redis client and the application session factory
    when none are given. Call start() (or use `async with`) on the result.
    """
    redis_client = redis_client or get_redis_client()
    store = SqlRemoteStore(
        session_factory or get_session_factory(),
        redis_client=redis_client,
        channel_prefix=settings.changes_channel_prefix,
    )
    return BookmarkSynchronizer(
        user,
        store,
        RedisCrossTabNotifier(redis_client),
        sync_topic=settings.sync_channel,
        on_error=on_error,
    )
