"""Login/logout redirects to the OAuth broker and the current-user endpoint."""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from api.dependencies import get_current_user, get_settings
from core.config import Settings
from schemas.session_user import SessionUser

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

DEFAULT_HOST = "localhost:3000"
DEFAULT_PROTOCOL = "http"


class SessionUserResponse(BaseModel):
    """The signed-in user."""

    id: str
    email: str | None


def request_origin(request: Request) -> str:
    """Public origin of the request, honouring the reverse proxy's forwarded headers."""
    host = (
        request.headers.get("x-forwarded-host")
        or request.headers.get("host")
        or DEFAULT_HOST
    )
    protocol = request.headers.get("x-forwarded-proto") or DEFAULT_PROTOCOL
    return f"{protocol}://{host}"


@router.get("/me", response_model=SessionUserResponse)
async def read_current_user(
    current_user: SessionUser = Depends(get_current_user),
) -> SessionUserResponse:
    """Return the signed-in user."""
    return SessionUserResponse(id=current_user.id, email=current_user.email)


@router.post("/login")
async def login(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Send the browser to the OAuth broker, which returns to /auth/callback."""
    authorize_url = settings.oauth_authorize_url
    if not authorize_url:
        logger.error("Error logging in: OAuth broker URL is not configured")
        return RedirectResponse("/error", status_code=303)

    query = urlencode({
        "provider": settings.oauth_provider,
        "redirect_to": f"{request_origin(request)}/auth/callback",
    })
    return RedirectResponse(f"{authorize_url}?{query}", status_code=303)


@router.post("/logout")
async def logout(settings: Settings = Depends(get_settings)) -> RedirectResponse:
    """Drop the session cookie and go back to the landing page."""
    response = RedirectResponse("/", status_code=303)
    response.delete_cookie(settings.session_cookie_name)
    return response
