"""Redis pub/sub client with connection pooling and graceful fallback."""
import asyncio
import logging
from collections.abc import Awaitable, Callable

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[bytes | str], Awaitable[None]]

# Seconds a listener blocks waiting for a message before polling again
LISTEN_POLL_TIMEOUT = 1.0


class RedisSubscription:
    """
    A single channel subscription backed by its own PubSub connection.

    The listener task forwards every published message to the handler until
    close() is called. Closing releases the PubSub connection; it is safe to
    call more than once.
    """

    def __init__(self, channel: str, pubsub: PubSub, handler: MessageHandler) -> None:
        self.channel = channel
        self._pubsub = pubsub
        self._handler = handler
        self._task: asyncio.Task[None] | None = None

    @property
    def is_active(self) -> bool:
        """Check if the listener is still running."""
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the listener task."""
        self._task = asyncio.create_task(
            self._listen(), name=f"redis-subscription:{self.channel}",
        )

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=LISTEN_POLL_TIMEOUT,
                )
            except RedisError as e:
                logger.warning("Redis subscription on %s lost: %s", self.channel, e)
                return
            if message is None or message.get("type") != "message":
                continue
            try:
                await self._handler(message["data"])
            except Exception:
                logger.exception(
                    "redis_message_handler_failed", extra={"channel": self.channel},
                )

    async def close(self) -> None:
        """Stop the listener and release the PubSub connection."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._pubsub is None:
            return
        pubsub, self._pubsub = self._pubsub, None
        try:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
        except RedisError as e:
            logger.warning("Redis UNSUBSCRIBE failed: %s", e)


class RedisClient:
    """Async Redis client with connection pooling and graceful fallback."""

    def __init__(self, url: str, enabled: bool = True) -> None:
        self._url = url
        self._enabled = enabled
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None

    @classmethod
    def from_redis(cls, client: Redis) -> "RedisClient":
        """Wrap an already-constructed Redis client (e.g. one shared with other code)."""
        instance = cls(url="", enabled=True)
        instance._client = client
        return instance

    async def connect(self) -> None:
        """Initialize connection pool and verify connectivity."""
        if not self._enabled:
            logger.info("Redis disabled by configuration")
            return
        try:
            self._pool = ConnectionPool.from_url(self._url, max_connections=10)
            self._client = Redis(connection_pool=self._pool)
            # Verify connection
            await self._client.ping()
            logger.info("Redis connected successfully")
        except RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            self._client = None
            self._pool = None

    async def close(self) -> None:
        """Close connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None
            self._pool = None
            logger.info("Redis connection closed")

    @property
    def is_connected(self) -> bool:
        """Check if client is connected."""
        return self._client is not None

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        if not self._client:
            return False
        try:
            return await self._client.ping()
        except RedisError:
            return False

    async def publish(self, channel: str, message: str | bytes) -> bool:
        """
        Publish a message, returns False if Redis unavailable.

        Uses a pooled connection that is handed back as soon as the command
        completes, so publishers never hold a channel open.
        """
        if not self._client:
            return False
        try:
            await self._client.publish(channel, message)
            return True
        except RedisError as e:
            logger.warning("Redis PUBLISH failed: %s", e)
            return False

    async def subscribe(
        self, channel: str, handler: MessageHandler,
    ) -> RedisSubscription | None:
        """
        Subscribe to a channel, returns None if Redis unavailable.

        The subscription is registered with the server before this returns,
        so messages published afterwards are delivered to the handler.
        """
        if not self._client:
            return None
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as e:
            logger.warning("Redis SUBSCRIBE failed: %s", e)
            await pubsub.aclose()
            return None
        subscription = RedisSubscription(channel, pubsub, handler)
        subscription.start()
        return subscription


# Global Redis client state using a container to avoid global statement
class _RedisState:
    """Container for global Redis client state."""

    client: RedisClient | None = None


_state = _RedisState()


def get_redis_client() -> RedisClient | None:
    """Get the global Redis client instance."""
    return _state.client


def set_redis_client(client: RedisClient | None) -> None:
    """Set the global Redis client instance."""
    _state.client = client
