"""Subscription handles shared by the push feed and the cross-tab notifier."""
from typing import Protocol


class Subscription(Protocol):
    """Handle returned by subscribe/on_receive; closing it releases the listener."""

    async def close(self) -> None: ...


class NullSubscription:
    """Subscription returned when the underlying channel is unavailable."""

    async def close(self) -> None:
        """Nothing to release."""
