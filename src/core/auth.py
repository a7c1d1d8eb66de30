"""
Session resolution.

Authentication itself happens upstream: the OAuth broker signs the user in
and the proxy in front of the app forwards the resolved identity in
headers. This module only turns that identity into a SessionUser, or the
configured development user when dev_mode is on.
"""
import logging
from typing import Protocol

from fastapi import Depends, HTTPException, Request

from core.config import Settings, get_settings
from schemas.session_user import SessionUser

logger = logging.getLogger(__name__)

USER_HEADER = "X-Forwarded-User"
EMAIL_HEADER = "X-Forwarded-Email"


class NotAuthenticatedError(Exception):
    """Raised when an operation requires a signed-in user and there is none."""


class SessionProvider(Protocol):
    """Resolves the signed-in user, if any."""

    def current_user(self) -> SessionUser | None: ...


class StaticSessionProvider:
    """Session provider for an identity that was already resolved elsewhere."""

    def __init__(self, user: SessionUser | None) -> None:
        self._user = user

    def current_user(self) -> SessionUser | None:
        return self._user


class RequestSessionProvider:
    """Reads the identity forwarded by the auth proxy for a single request."""

    def __init__(self, request: Request, settings: Settings) -> None:
        self._request = request
        self._settings = settings

    def current_user(self) -> SessionUser | None:
        if self._settings.dev_mode:
            return SessionUser(
                id=self._settings.dev_user_id, email=self._settings.dev_user_email,
            )
        user_id = self._request.headers.get(USER_HEADER, "").strip()
        if not user_id:
            return None
        email = self._request.headers.get(EMAIL_HEADER, "").strip() or None
        return SessionUser(id=user_id, email=email)


def get_session_provider(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> SessionProvider:
    """FastAPI dependency returning the request's session provider."""
    return RequestSessionProvider(request, settings)


async def get_current_user(
    provider: SessionProvider = Depends(get_session_provider),
) -> SessionUser:
    """Dependency that requires a signed-in user (401 otherwise)."""
    user = provider.current_user()
    if user is None:
        logger.info("unauthenticated_request")
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user
