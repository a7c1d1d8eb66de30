"""Bookmark endpoints, always scoped to the signed-in user."""
from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_current_user, get_remote_store
from schemas.bookmark import Bookmark, BookmarkCreate
from schemas.session_user import SessionUser
from services.remote_store import BookmarkNotFoundError, RemoteStore

router = APIRouter(prefix="/bookmarks", tags=["bookmarks"])


@router.get("/", response_model=list[Bookmark])
async def list_bookmarks(
    current_user: SessionUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_remote_store),
) -> list[Bookmark]:
    """List the current user's bookmarks, newest first."""
    return await store.query(current_user.id)


@router.post("/", response_model=Bookmark, status_code=201)
async def create_bookmark(
    data: BookmarkCreate,
    current_user: SessionUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_remote_store),
) -> Bookmark:
    """Create a new bookmark."""
    return await store.insert(current_user.id, data.url, data.title)


@router.delete("/{bookmark_id}", status_code=204)
async def delete_bookmark(
    bookmark_id: str,
    current_user: SessionUser = Depends(get_current_user),
    store: RemoteStore = Depends(get_remote_store),
) -> None:
    """Delete a bookmark."""
    try:
        await store.delete(current_user.id, bookmark_id)
    except BookmarkNotFoundError as e:
        raise HTTPException(status_code=404, detail="Bookmark not found") from e
