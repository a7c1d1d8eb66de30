"""FastAPI dependencies for injection."""
from fastapi import Depends

from core.auth import get_current_user, get_session_provider
from core.config import Settings, get_settings
from core.redis import get_redis_client
from db.session import get_async_session, get_session_factory
from services.remote_store import RemoteStore, SqlRemoteStore


def get_remote_store(settings: Settings = Depends(get_settings)) -> RemoteStore:
    """
    Dependency returning the owner-scoped bookmark store.

    Uses the global Redis client for the change feed; when Redis is down the
    store still serves reads and writes, only the push events are skipped.
    """
    return SqlRemoteStore(
        get_session_factory(),
        redis_client=get_redis_client(),
        channel_prefix=settings.changes_channel_prefix,
    )


__all__ = [
    "get_async_session",
    "get_current_user",
    "get_remote_store",
    "get_session_provider",
    "get_settings",
]
