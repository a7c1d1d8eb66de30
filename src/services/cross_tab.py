"""
Best-effort "bookmarks changed" signal between open instances of the app.

A signal has no payload and is never authoritative: receivers react by
re-reading their own owner's bookmarks. When the broadcast primitive is
missing every operation quietly degrades to a no-op.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from core.redis import RedisClient
from services.subscription import NullSubscription, Subscription

logger = logging.getLogger(__name__)

SignalHandler = Callable[[], Awaitable[None]]

CHANGED_MESSAGE = "changed"


class CrossTabNotifier(Protocol):
    """Fan-out of a payload-free signal to every listener of a topic."""

    @property
    def is_available(self) -> bool: ...

    async def send(self, topic: str) -> bool:
        """Broadcast once; returns False when the signal could not be handed off."""
        ...

    async def on_receive(self, topic: str, handler: SignalHandler) -> Subscription:
        """Call `handler` for every signal on `topic` until the subscription is closed."""
        ...


class RedisCrossTabNotifier:
    """Cross-tab signal over a Redis pub/sub channel."""

    def __init__(self, redis_client: RedisClient | None) -> None:
        self._redis = redis_client

    @property
    def is_available(self) -> bool:
        return self._redis is not None and self._redis.is_connected

    async def send(self, topic: str) -> bool:
        if not self.is_available:
            return False
        return await self._redis.publish(topic, CHANGED_MESSAGE)

    async def on_receive(self, topic: str, handler: SignalHandler) -> Subscription:
        if not self.is_available:
            return NullSubscription()

        async def handle(_: bytes | str) -> None:
            await handler()

        subscription = await self._redis.subscribe(topic, handle)
        if subscription is None:
            return NullSubscription()
        return subscription


class _LocalSubscription:
    def __init__(self, notifier: "LocalCrossTabNotifier", topic: str, handler: SignalHandler) -> None:
        self._notifier = notifier
        self._topic = topic
        self._handler = handler

    async def close(self) -> None:
        self._notifier._remove(self._topic, self._handler)


class LocalCrossTabNotifier:
    """
    In-process cross-tab signal for several synchronizers sharing one event loop.

    Handlers run as separate tasks so a sender never waits on its receivers.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[SignalHandler]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def is_available(self) -> bool:
        return True

    async def send(self, topic: str) -> bool:
        for handler in list(self._handlers.get(topic, [])):
            task = asyncio.create_task(self._deliver(topic, handler))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return True

    async def on_receive(self, topic: str, handler: SignalHandler) -> Subscription:
        self._handlers.setdefault(topic, []).append(handler)
        return _LocalSubscription(self, topic, handler)

    def listener_count(self, topic: str) -> int:
        """Number of handlers currently registered for `topic`."""
        return len(self._handlers.get(topic, []))

    async def _deliver(self, topic: str, handler: SignalHandler) -> None:
        try:
            await handler()
        except Exception:
            logger.exception("cross_tab_handler_failed", extra={"topic": topic})

    def _remove(self, topic: str, handler: SignalHandler) -> None:
        handlers = self._handlers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[topic]
