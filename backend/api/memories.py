"""
Memory sync API

Devices push batches of local memory mutations and pull everything changed
since a timestamp watermark. Deletes are tombstones and travel through the
same pull stream.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from db.memory_sync import MemoryNotFoundError, MemorySyncService, PushMemoryItem
from db.sqlite_client import TransientStoreError, parse_iso_datetime
from .auth import require_owner, store_unavailable

router = APIRouter(prefix="/memories", tags=["memories"])

MAX_PAGE_SIZE = 500
_OPTIONAL_PUSH_FIELDS = (
    "tags",
    "pinned",
    "access_count",
    "source_session_id",
    "source_channel",
    "origin_device_id",
    "deleted_at",
)


class PushMemoryInput(BaseModel):
    external_id: str = Field(min_length=1)
    category: str
    content: str
    tags: Optional[str] = None
    pinned: Optional[bool] = None
    access_count: Optional[int] = Field(default=None, ge=0)
    source_session_id: Optional[str] = None
    source_channel: Optional[str] = None
    origin_device_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    def to_item(self) -> PushMemoryItem:
        # Fields the client left out stay UNSET; explicit nulls are passed on.
        supplied = {
            name: getattr(self, name)
            for name in _OPTIONAL_PUSH_FIELDS
            if name in self.model_fields_set
        }
        return PushMemoryItem(
            external_id=self.external_id,
            category=self.category,
            content=self.content,
            created_at=self.created_at,
            updated_at=self.updated_at,
            **supplied,
        )


class PushMemoriesRequest(BaseModel):
    items: List[PushMemoryInput]


class MemoryUpdate(BaseModel):
    pinned: Optional[bool] = None


def get_memory_sync(request: Request) -> MemorySyncService:
    return request.app.state.memory_sync


def _invalid(reason: str) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"error": "invalid_request", "reason": reason},
    )


@router.post("/push")
async def push_memories(
    body: PushMemoriesRequest,
    request: Request,
    owner: str = Depends(require_owner),
    sync: MemorySyncService = Depends(get_memory_sync),
) -> Dict[str, int]:
    """Merge a batch of device mutations; returns pushed/updated/duplicates/failed counts."""
    max_batch = request.app.state.settings.push_max_batch
    if len(body.items) > max_batch:
        raise HTTPException(
            status_code=413,
            detail={
                "error": "batch_too_large",
                "reason": f"at most {max_batch} items per push",
            },
        )
    try:
        items = [entry.to_item() for entry in body.items]
    except ValueError as exc:
        raise _invalid(str(exc)) from exc
    return await sync.push_batch(owner, items)


@router.get("/sync")
async def pull_memories(
    since: str = Query(..., description="ISO-8601 watermark, inclusive"),
    device_id: str = Query(..., min_length=1),
    page_size: Optional[int] = Query(None, ge=1, le=MAX_PAGE_SIZE),
    owner: str = Depends(require_owner),
    sync: MemorySyncService = Depends(get_memory_sync),
) -> Dict[str, Any]:
    """
    Delta pull. Pass the returned `cursor` as `since` on the next call
    until `has_more` is false. Boundary rows may be delivered twice.
    """
    since_value = parse_iso_datetime(since)
    if since_value is None:
        raise _invalid(f"since is not an ISO-8601 timestamp: {since!r}")
    try:
        return await sync.pull(owner, since_value, device_id, page_size=page_size)
    except TransientStoreError as exc:
        raise store_unavailable(exc) from exc
    except ValueError as exc:
        raise _invalid(str(exc)) from exc


@router.get("/sync/devices")
async def list_sync_devices(
    owner: str = Depends(require_owner),
    sync: MemorySyncService = Depends(get_memory_sync),
) -> List[Dict[str, Any]]:
    """Per-device pull bookkeeping, most recent first."""
    try:
        return await sync.client.list_sync_cursors(owner)
    except TransientStoreError as exc:
        raise store_unavailable(exc) from exc


@router.get("")
async def list_memories(
    category: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=0),
    owner: str = Depends(require_owner),
    sync: MemorySyncService = Depends(get_memory_sync),
) -> List[Dict[str, Any]]:
    """Live memories, oldest update first."""
    try:
        return await sync.list_live(owner, category=category, limit=limit)
    except TransientStoreError as exc:
        raise store_unavailable(exc) from exc


@router.get("/by-id/{external_id}")
async def get_memory(
    external_id: str,
    owner: str = Depends(require_owner),
    sync: MemorySyncService = Depends(get_memory_sync),
) -> Dict[str, Any]:
    """Most recently updated memory with this device id, tombstones included."""
    try:
        memory = await sync.client.get_memory_by_external_id(owner, external_id)
    except TransientStoreError as exc:
        raise store_unavailable(exc) from exc
    if memory is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "memory_not_found", "reason": external_id},
        )
    return memory


@router.patch("/{external_id}")
async def update_memory(
    external_id: str,
    body: MemoryUpdate,
    owner: str = Depends(require_owner),
    sync: MemorySyncService = Depends(get_memory_sync),
) -> Dict[str, Any]:
    changes = {
        name: getattr(body, name)
        for name in ("pinned",)
        if name in body.model_fields_set
    }
    try:
        return await sync.update_memory(owner, external_id, **changes)
    except MemoryNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "memory_not_found", "reason": str(exc)},
        ) from exc
    except TransientStoreError as exc:
        raise store_unavailable(exc) from exc


@router.delete("/{external_id}")
async def delete_memory(
    external_id: str,
    owner: str = Depends(require_owner),
    sync: MemorySyncService = Depends(get_memory_sync),
) -> Dict[str, bool]:
    """Tombstone a memory. Deleting an absent or already deleted memory returns false."""
    try:
        deleted = await sync.soft_delete(owner, external_id)
    except TransientStoreError as exc:
        raise store_unavailable(exc) from exc
    return {"deleted": deleted}
