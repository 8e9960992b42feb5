"""
Cross-device memory synchronization.

Devices push batches of memory mutations and pull deltas by timestamp
watermark. Reconciliation rules:

- Dedup: one row per (user, content fingerprint), live or tombstoned.
- Last-write-wins on `updated_at`; ties keep the stored body.
- `access_count` only grows: every merge keeps the larger value.
- Deletes are tombstones (`deleted_at`) so they reach other devices
  through the same delta stream.

Insert races are settled by the unique index, overwrites by compare-and-set
updates; a lost race re-reads the row and evaluates the item again.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import case, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .fingerprint import content_fingerprint
from .sqlite_client import (
    Memory,
    SQLiteClient,
    SyncCursor,
    TransientStoreError,
    format_iso_datetime,
    memory_to_dict,
    to_storage_datetime,
    utc_now_naive,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_ATTEMPTS = 5

PUSHED = "pushed"
UPDATED = "updated"
DUPLICATE = "duplicates"


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()
"""Marks an optional field the caller did not send (distinct from an explicit null)."""

# Explicit null on these keeps the stored value; the columns are not nullable.
_DEFAULTED_FIELDS = {"tags": "[]", "pinned": False}
# Explicit null on these clears the stored value.
_CLEARABLE_FIELDS = ("source_session_id", "source_channel", "origin_device_id", "deleted_at")


class UnauthorizedError(PermissionError):
    """The operation was attempted without a resolved owner."""


class MemoryNotFoundError(LookupError):
    """No memory with the given device-assigned id exists for the owner."""


@dataclass
class PushMemoryItem:
    """One memory mutation pushed by a device.

    Optional fields default to `UNSET`; `None` is an explicit null.
    """

    external_id: str
    category: str
    content: str
    created_at: datetime
    updated_at: datetime
    tags: Any = UNSET
    pinned: Any = UNSET
    access_count: Any = UNSET
    source_session_id: Any = UNSET
    source_channel: Any = UNSET
    origin_device_id: Any = UNSET
    deleted_at: Any = UNSET

    def __post_init__(self) -> None:
        if not isinstance(self.created_at, datetime) or not isinstance(
            self.updated_at, datetime
        ):
            raise ValueError("created_at and updated_at must be datetimes")
        self.created_at = to_storage_datetime(self.created_at)
        self.updated_at = to_storage_datetime(self.updated_at)
        if self.deleted_at is not UNSET and self.deleted_at is not None:
            if not isinstance(self.deleted_at, datetime):
                raise ValueError("deleted_at must be a datetime or null")
            self.deleted_at = to_storage_datetime(self.deleted_at)
        if self.access_count is not UNSET and self.access_count is not None:
            if int(self.access_count) < 0:
                raise ValueError("access_count must be non-negative")
            self.access_count = int(self.access_count)

    def has_value(self, name: str) -> bool:
        return getattr(self, name) is not UNSET

    @property
    def incoming_access_count(self) -> int:
        if self.access_count is UNSET or self.access_count is None:
            return 0
        return self.access_count

    def insert_values(self, owner: str, fingerprint: str) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "external_id": self.external_id,
            "user_id": owner,
            "category": self.category,
            "content": self.content,
            "content_hash": fingerprint,
            "access_count": self.incoming_access_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        for name, default in _DEFAULTED_FIELDS.items():
            value = getattr(self, name)
            values[name] = default if value is UNSET or value is None else value
        for name in _CLEARABLE_FIELDS:
            value = getattr(self, name)
            values[name] = None if value is UNSET else value
        return values

    def overwrite_values(self, fingerprint: str) -> Dict[str, Any]:
        """Column values for a winning (strictly newer) write."""
        incoming_access = self.incoming_access_count
        values: Dict[str, Any] = {
            "external_id": self.external_id,
            "category": self.category,
            "content": self.content,
            "content_hash": fingerprint,
            "updated_at": self.updated_at,
            "access_count": case(
                (Memory.access_count < incoming_access, incoming_access),
                else_=Memory.access_count,
            ),
        }
        for name in _DEFAULTED_FIELDS:
            value = getattr(self, name)
            if value is not UNSET and value is not None:
                values[name] = value
        for name in _CLEARABLE_FIELDS:
            if self.has_value(name):
                values[name] = getattr(self, name)
        return values


def _require_owner(owner: Optional[str]) -> str:
    value = (owner or "").strip() if isinstance(owner, str) else ""
    if not value:
        raise UnauthorizedError("operation requires an authenticated owner")
    return value


def _is_unique_violation(exc: IntegrityError) -> bool:
    return "unique" in str(getattr(exc, "orig", None) or exc).lower()


class MemorySyncService:
    """Merge, tombstone and delta-pull operations over a `SQLiteClient`."""

    def __init__(
        self,
        client: SQLiteClient,
        *,
        write_lanes: Any = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.client = client
        self.write_lanes = write_lanes
        self.page_size = page_size
        self.max_attempts = max(1, max_attempts)

    async def _run_in_lane(
        self, owner: str, operation: str, task: Callable[[], Awaitable[Any]]
    ) -> Any:
        if self.write_lanes is None:
            return await task()
        return await self.write_lanes.run_write(
            lane=owner, operation=operation, task=task
        )

    # -------------------------------------------------------------------------
    # Merge engine
    # -------------------------------------------------------------------------

    async def push_batch(
        self, owner: str, items: Sequence[PushMemoryItem]
    ) -> Dict[str, int]:
        """
        Reconcile a batch of device mutations against the owner's store.

        Items are applied independently, each in its own transaction. A store
        failure on one item is logged and counted in `failed` without
        aborting the rest of the batch.

        Returns:
            Counts {"pushed", "updated", "duplicates", "failed"}
        """
        owner = _require_owner(owner)
        counts = {PUSHED: 0, UPDATED: 0, DUPLICATE: 0, "failed": 0}
        for item in items:
            try:
                outcome = await self._run_in_lane(
                    owner,
                    "push_memory",
                    functools.partial(self._push_one, owner, item),
                )
            except (TransientStoreError, SQLAlchemyError) as exc:
                counts["failed"] += 1
                logger.warning(
                    "push of memory %r for user %s failed: %s",
                    item.external_id,
                    owner,
                    exc,
                )
                continue
            counts[outcome] += 1

        logger.info(
            "push batch for user %s: %d items, pushed=%d updated=%d duplicates=%d failed=%d",
            owner,
            len(items),
            counts[PUSHED],
            counts[UPDATED],
            counts[DUPLICATE],
            counts["failed"],
        )
        return counts

    async def _push_one(self, owner: str, item: PushMemoryItem) -> str:
        fingerprint = content_fingerprint(item.content)
        for attempt in range(1, self.max_attempts + 1):
            try:
                outcome = await self._apply_item(owner, item, fingerprint)
            except IntegrityError as exc:
                if not _is_unique_violation(exc):
                    raise
                logger.debug(
                    "memory %r lost an insert race (attempt %d), merging instead",
                    item.external_id,
                    attempt,
                )
                continue
            if outcome is not None:
                return outcome
            logger.debug(
                "memory %r changed under a newer write (attempt %d), re-reading",
                item.external_id,
                attempt,
            )
        raise TransientStoreError(
            f"memory {item.external_id!r} still contended after {self.max_attempts} attempts"
        )

    async def _apply_item(
        self, owner: str, item: PushMemoryItem, fingerprint: str
    ) -> Optional[str]:
        """Run one read-check-write pass. Returns None when a CAS update missed."""
        async with self.client.session() as session:
            existing = await self._find_existing(session, owner, fingerprint)
            if existing is None:
                session.add(Memory(**item.insert_values(owner, fingerprint)))
                await session.flush()
                return PUSHED

            existing_id = existing.id
            existing_updated_at = existing.updated_at
            existing_access = int(existing.access_count or 0)

            if item.updated_at > existing_updated_at:
                result = await session.execute(
                    update(Memory)
                    .where(Memory.id == existing_id)
                    .where(Memory.updated_at < item.updated_at)
                    .values(**item.overwrite_values(fingerprint))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None
                return UPDATED

            incoming_access = item.incoming_access_count
            if incoming_access > existing_access:
                await session.execute(
                    update(Memory)
                    .where(Memory.id == existing_id)
                    .where(Memory.access_count < incoming_access)
                    .values(access_count=incoming_access)
                    .execution_options(synchronize_session=False)
                )
            return DUPLICATE

    @staticmethod
    async def _find_existing(
        session: AsyncSession, owner: str, fingerprint: str
    ) -> Optional[Memory]:
        """The fingerprint alone decides whether two pushes are the same memory."""
        result = await session.execute(
            select(Memory)
            .where(Memory.user_id == owner)
            .where(Memory.content_hash == fingerprint)
        )
        return result.scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Tombstones
    # -------------------------------------------------------------------------

    async def soft_delete(self, owner: str, external_id: str) -> bool:
        """
        Tombstone the most recently updated live memory carrying
        `external_id`; returns False when there is none.
        """
        owner = _require_owner(owner)

        async def _task() -> bool:
            async with self.client.session() as session:
                memory_id = (
                    await session.execute(
                        select(Memory.id)
                        .where(Memory.user_id == owner)
                        .where(Memory.external_id == external_id)
                        .where(Memory.deleted_at.is_(None))
                        .order_by(Memory.updated_at.desc(), Memory.id.desc())
                        .limit(1)
                    )
                ).scalar_one_or_none()
                if memory_id is None:
                    return False
                now_value = utc_now_naive()
                result = await session.execute(
                    update(Memory)
                    .where(Memory.id == memory_id)
                    .where(Memory.deleted_at.is_(None))
                    .values(deleted_at=now_value, updated_at=now_value)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount > 0

        deleted = await self._run_in_lane(owner, "soft_delete", _task)
        if deleted:
            logger.info("tombstoned memory %r for user %s", external_id, owner)
        return deleted

    async def update_memory(
        self, owner: str, external_id: str, *, pinned: Any = UNSET
    ) -> Dict[str, Any]:
        """
        Apply the supplied fields to a memory (tombstones included) and
        refresh `updated_at`.

        Raises:
            MemoryNotFoundError: no memory carries `external_id` for the owner
        """
        owner = _require_owner(owner)

        async def _task() -> Dict[str, Any]:
            async with self.client.session() as session:
                row = (
                    await session.execute(
                        select(Memory)
                        .where(Memory.user_id == owner)
                        .where(Memory.external_id == external_id)
                        .order_by(Memory.updated_at.desc(), Memory.id.desc())
                        .limit(1)
                    )
                ).scalar_one_or_none()
                if row is None:
                    raise MemoryNotFoundError(f"Memory not found: {external_id}")

                row.updated_at = utc_now_naive()
                if pinned is not UNSET and pinned is not None:
                    row.pinned = bool(pinned)
                session.add(row)
                await session.flush()
                return memory_to_dict(row)

        return await self._run_in_lane(owner, "update_memory", _task)

    # -------------------------------------------------------------------------
    # Delta sync
    # -------------------------------------------------------------------------

    async def pull(
        self,
        owner: str,
        since: datetime,
        device_id: str,
        page_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Return memories (tombstones included) with `updated_at >= since`.

        The comparison is inclusive, so the row at the returned cursor comes
        back on the next pull; consumers must tolerate re-delivery.

        Returns:
            {"memories": [...], "cursor": iso timestamp, "has_more": bool}
        """
        owner = _require_owner(owner)
        limit = self.page_size if page_size is None else int(page_size)
        if limit < 1:
            raise ValueError("page_size must be at least 1")
        if not isinstance(since, datetime):
            raise ValueError("since must be a datetime")
        device = (device_id or "").strip()
        if not device:
            raise ValueError("device_id must not be empty")
        since_value = to_storage_datetime(since)

        async def _task() -> Dict[str, Any]:
            async with self.client.session() as session:
                rows: List[Memory] = list(
                    (
                        await session.execute(
                            select(Memory)
                            .where(Memory.user_id == owner)
                            .where(Memory.updated_at >= since_value)
                            .order_by(Memory.updated_at.asc(), Memory.id.asc())
                            .limit(limit + 1)
                        )
                    ).scalars().all()
                )
                has_more = len(rows) > limit
                page = rows[:limit]
                cursor = page[-1].updated_at if page else since_value
                await self._touch_sync_cursor(session, owner, device)
                return {
                    "memories": [memory_to_dict(row) for row in page],
                    "cursor": format_iso_datetime(cursor),
                    "has_more": has_more,
                }

        return await self._run_in_lane(owner, "pull", _task)

    @staticmethod
    async def _touch_sync_cursor(
        session: AsyncSession, owner: str, device_id: str
    ) -> None:
        now_value = utc_now_naive()
        statement = sqlite_insert(SyncCursor).values(
            user_id=owner,
            device_id=device_id,
            last_synced_at=now_value,
            created_at=now_value,
        )
        await session.execute(
            statement.on_conflict_do_update(
                index_elements=[SyncCursor.user_id, SyncCursor.device_id],
                set_={"last_synced_at": now_value},
            )
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def list_live(
        self,
        owner: str,
        *,
        category: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        owner = _require_owner(owner)
        return await self.client.list_memories(owner, category=category, limit=limit)
