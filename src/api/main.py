"""FastAPI application entry point."""
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.routers import auth, bookmarks, health
from core.config import get_settings
from core.redis import RedisClient, get_redis_client, set_redis_client
from services.remote_store import RemoteStoreError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Connect Redis for the change feed on startup, close it on shutdown."""
    settings = get_settings()
    redis_client = get_redis_client()
    owns_client = redis_client is None
    if owns_client:
        redis_client = RedisClient(settings.redis_url, enabled=settings.redis_enabled)
        await redis_client.connect()
        set_redis_client(redis_client)
    yield
    if owns_client:
        await redis_client.close()
        set_redis_client(None)


app = FastAPI(
    title="Bookmarks API",
    description="Personal bookmarks with live change notification.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(RemoteStoreError)
async def remote_store_error_handler(_: Request, exc: RemoteStoreError) -> JSONResponse:
    """Storage failures become 503 so clients can retry later."""
    logger.error("remote_store_error", extra={"operation": exc.operation, "error": str(exc)})
    return JSONResponse(status_code=503, content={"detail": "Bookmark storage unavailable"})


app.include_router(health.router)
app.include_router(auth.router)
app.include_router(bookmarks.router)
