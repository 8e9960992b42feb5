from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from db.sqlite_client import SQLiteClient, TransientStoreError
from .auth import require_owner, store_unavailable

router = APIRouter(tags=["account"])


class PreferencesUpdate(BaseModel):
    default_persona: Optional[str] = Field(default=None, min_length=1, max_length=64)
    theme: Optional[str] = Field(default=None, min_length=1, max_length=32)
    voice_enabled: Optional[bool] = None


def _client(request: Request) -> SQLiteClient:
    return request.app.state.sqlite_client


@router.get("/me")
async def get_me(request: Request, owner: str = Depends(require_owner)) -> Dict[str, Any]:
    try:
        user = await _client(request).get_user(owner)
    except TransientStoreError as exc:
        raise store_unavailable(exc) from exc
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "user_not_found", "reason": owner},
        )
    return user


@router.get("/preferences")
async def get_preferences(
    request: Request, owner: str = Depends(require_owner)
) -> Optional[Dict[str, Any]]:
    """Stored preferences, or null before the first update."""
    try:
        return await _client(request).get_preferences(owner)
    except TransientStoreError as exc:
        raise store_unavailable(exc) from exc


@router.put("/preferences")
async def update_preferences(
    body: PreferencesUpdate,
    request: Request,
    owner: str = Depends(require_owner),
) -> Dict[str, Any]:
    try:
        return await _client(request).update_preferences(
            owner, **body.model_dump(exclude_unset=True)
        )
    except TransientStoreError as exc:
        raise store_unavailable(exc) from exc
