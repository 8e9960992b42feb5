"""
Runtime state for the memory sync backend.

Writes are coordinated in two layers:
- Owner lane: serial writes for the same user, so pushes and deletes
  arriving from several devices at once reach the store one at a time.
- Global lane: bounded write concurrency across all users, since SQLite
  admits a single writer.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _normalize_lane(lane: Optional[str]) -> str:
    value = (lane or "").strip()
    return value if value else "default"


class WriteLaneCoordinator:
    """Serialize writes per owner lane under a bounded global semaphore."""

    def __init__(self, global_concurrency: Optional[int] = None) -> None:
        self._global_concurrency = (
            max(1, int(global_concurrency))
            if global_concurrency is not None
            else _env_int("RUNTIME_WRITE_GLOBAL_CONCURRENCY", 1, minimum=1)
        )
        self._wait_warn_ms = _env_int("RUNTIME_WRITE_WAIT_WARN_MS", 2000, minimum=1)
        self._global_sem = asyncio.Semaphore(self._global_concurrency)
        self._lane_locks: Dict[str, asyncio.Lock] = {}
        self._lane_waiting: Dict[str, int] = {}
        self._global_waiting = 0
        self._global_active = 0
        self._completed = 0
        self._guard = asyncio.Lock()

    async def _enter_lane(self, lane: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._lane_locks.get(lane)
            if lock is None:
                lock = asyncio.Lock()
                self._lane_locks[lane] = lock
            self._lane_waiting[lane] = self._lane_waiting.get(lane, 0) + 1
            return lock

    async def _release_lane(
        self, lane: str, lock: asyncio.Lock, still_waiting: bool
    ) -> None:
        # Drop idle lanes so one lock per owner is not kept forever.
        async with self._guard:
            if still_waiting:
                remaining = self._lane_waiting.get(lane, 1) - 1
                if remaining > 0:
                    self._lane_waiting[lane] = remaining
                else:
                    self._lane_waiting.pop(lane, None)
            if (
                self._lane_waiting.get(lane, 0) == 0
                and not lock.locked()
                and self._lane_locks.get(lane) is lock
            ):
                del self._lane_locks[lane]

    async def run_write(
        self,
        *,
        lane: Optional[str],
        operation: str,
        task: Callable[[], Awaitable[Any]],
    ) -> Any:
        lane_key = _normalize_lane(lane)
        lane_wait_start = time.monotonic()
        lane_lock = await self._enter_lane(lane_key)
        counted_waiting = True

        try:
            async with lane_lock:
                waited_lane_ms = int((time.monotonic() - lane_wait_start) * 1000)
                async with self._guard:
                    counted_waiting = False
                    remaining = max(0, self._lane_waiting.get(lane_key, 1) - 1)
                    if remaining:
                        self._lane_waiting[lane_key] = remaining
                    else:
                        self._lane_waiting.pop(lane_key, None)
                    self._global_waiting += 1

                global_wait_start = time.monotonic()
                await self._global_sem.acquire()
                waited_global_ms = int((time.monotonic() - global_wait_start) * 1000)
                async with self._guard:
                    self._global_waiting = max(0, self._global_waiting - 1)
                    self._global_active += 1

                if waited_lane_ms + waited_global_ms >= self._wait_warn_ms:
                    logger.warning(
                        "write lane wait for %s took %sms (lane=%sms, global=%sms)",
                        operation,
                        waited_lane_ms + waited_global_ms,
                        waited_lane_ms,
                        waited_global_ms,
                    )
                try:
                    return await task()
                finally:
                    async with self._guard:
                        self._global_active = max(0, self._global_active - 1)
                        self._completed += 1
                    self._global_sem.release()
        finally:
            await self._release_lane(lane_key, lane_lock, counted_waiting)

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            busy_lanes = {
                lane: waiting
                for lane, waiting in self._lane_waiting.items()
                if waiting > 0
            }
            return {
                "global_concurrency": self._global_concurrency,
                "global_active": self._global_active,
                "global_waiting": self._global_waiting,
                "lane_waiting_count": sum(busy_lanes.values()),
                "lane_waiting_lanes": len(busy_lanes),
                "max_lane_waiting": max(busy_lanes.values(), default=0),
                "completed": self._completed,
                "wait_warn_ms": self._wait_warn_ms,
            }


class RuntimeState:
    def __init__(self) -> None:
        self.write_lanes = WriteLaneCoordinator()
