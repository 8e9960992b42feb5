"""
SQLite Client for the memory sync backend

This module implements the relational storage behind cross-device sync:
- Users resolved from a verified identity (find-or-create)
- Per-user memory records, unique by (user, content fingerprint)
- Per-device sync cursors kept for pull bookkeeping
- User preferences
"""

import os
import uuid
import sqlite3
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from contextlib import asynccontextmanager

from sqlalchemy import (
    Column,
    Integer,
    Index,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    event,
    select,
    delete,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from .migration_runner import apply_pending_migrations

Base = declarative_base()

_SQLITE_ADAPTERS_REGISTERED = False
_TRANSIENT_MESSAGE_MARKERS = (
    "locked",
    "busy",
    "timeout",
    "timed out",
    "disk i/o",
    "unable to open",
)


def _register_sqlite_adapters() -> None:
    """
    Register explicit sqlite adapters for Python datetime objects.

    Python 3.12+ deprecates sqlite3's implicit default datetime adapter.
    """
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:
    """Naive UTC datetime, the storage representation of every timestamp."""
    return _utc_now().replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


def to_storage_datetime(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware or naive (assumed UTC) datetime to naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string (a trailing Z is accepted) into naive UTC."""
    if not value or not isinstance(value, str):
        return None
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        return to_storage_datetime(datetime.fromisoformat(candidate))
    except ValueError:
        return None


def format_iso_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


class TransientStoreError(RuntimeError):
    """Storage timed out or lost its connection; the caller may retry."""


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, (PoolTimeoutError, DisconnectionError)):
        return True
    if isinstance(exc, OperationalError):
        if getattr(exc, "connection_invalidated", False):
            return True
        message = str(getattr(exc, "orig", None) or exc).lower()
        return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)
    return False


# =============================================================================
# ORM Models
# =============================================================================


class User(Base):
    """An account, keyed by the subject of a verified identity token."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    identity_provider_id = Column(Text, nullable=False, unique=True)
    email = Column(Text, nullable=True)
    name = Column(Text, nullable=True)
    avatar_url = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now_naive)
    updated_at = Column(DateTime, default=utc_now_naive)


class Memory(Base):
    """A memory captured on some device, merged into the user's store.

    `content_hash` is the dedup key: at most one row (live or tombstoned)
    exists per (user_id, content_hash). `updated_at` is the last-write-wins
    clock, `deleted_at` marks a tombstone that is kept so deletions reach
    other devices through delta pulls.
    """

    __tablename__ = "memories"
    __table_args__ = (
        UniqueConstraint("user_id", "content_hash", name="uq_memories_user_content_hash"),
        Index("idx_memories_user_updated_at", "user_id", "updated_at"),
        Index("idx_memories_user_external_id", "user_id", "external_id"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    external_id = Column(Text, nullable=False)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    category = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)
    tags = Column(Text, nullable=False, default="[]", server_default=text("'[]'"))
    pinned = Column(Boolean, nullable=False, default=False, server_default=text("0"))
    access_count = Column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    source_session_id = Column(Text, nullable=True)
    source_channel = Column(Text, nullable=True)
    origin_device_id = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive)
    deleted_at = Column(DateTime, nullable=True)


class SyncCursor(Base):
    """Last delta pull per (user, device). Written on every pull, never read by it."""

    __tablename__ = "sync_cursors"
    __table_args__ = (
        UniqueConstraint("user_id", "device_id", name="uq_sync_cursors_user_device"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    device_id = Column(Text, nullable=False)
    last_synced_at = Column(DateTime, nullable=False, default=utc_now_naive)
    created_at = Column(DateTime, default=utc_now_naive)


class UserPreference(Base):
    __tablename__ = "user_preferences"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    default_persona = Column(Text, nullable=False, default="orin")
    theme = Column(Text, nullable=False, default="system")
    voice_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utc_now_naive)
    updated_at = Column(DateTime, default=utc_now_naive)


class SchemaMigration(Base):
    """Applied schema migration records."""

    __tablename__ = "schema_migrations"

    version = Column(String(32), primary_key=True)
    applied_at = Column(DateTime, default=utc_now_naive, nullable=False)
    checksum = Column(String(128), nullable=False)


PREFERENCE_FIELDS = ("default_persona", "theme", "voice_enabled")


def memory_to_dict(row: Memory) -> Dict[str, Any]:
    return {
        "id": row.id,
        "external_id": row.external_id,
        "category": row.category,
        "content": row.content,
        "content_hash": row.content_hash,
        "tags": row.tags,
        "pinned": bool(row.pinned),
        "access_count": int(row.access_count or 0),
        "source_session_id": row.source_session_id,
        "source_channel": row.source_channel,
        "origin_device_id": row.origin_device_id,
        "created_at": format_iso_datetime(row.created_at),
        "updated_at": format_iso_datetime(row.updated_at),
        "deleted_at": format_iso_datetime(row.deleted_at),
    }


def _user_to_dict(row: User) -> Dict[str, Any]:
    return {
        "id": row.id,
        "email": row.email,
        "name": row.name,
        "avatar_url": row.avatar_url,
        "created_at": format_iso_datetime(row.created_at),
    }


def _preferences_to_dict(row: UserPreference) -> Dict[str, Any]:
    return {
        "id": row.id,
        "default_persona": row.default_persona,
        "theme": row.theme,
        "voice_enabled": bool(row.voice_enabled),
        "updated_at": format_iso_datetime(row.updated_at),
    }


# =============================================================================
# SQLite Client
# =============================================================================


class SQLiteClient:
    """
    Async SQLite client for account and memory storage.

    The sync algorithms (merge, tombstones, delta pulls) live in
    `db.memory_sync` and run inside sessions handed out by `session()`.
    """

    def __init__(self, database_url: str, busy_timeout_sec: Optional[float] = None):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///memory_sync.db"
            busy_timeout_sec: How long a connection waits on a locked database
                         before the operation fails as transient.
        """
        if busy_timeout_sec is None:
            try:
                busy_timeout_sec = float(os.getenv("DATABASE_BUSY_TIMEOUT_SEC", "5"))
            except ValueError:
                busy_timeout_sec = 5.0
        self.database_url = database_url
        self.engine = create_async_engine(
            database_url,
            echo=False,
            connect_args={"timeout": max(0.0, busy_timeout_sec)},
        )
        event.listen(self.engine.sync_engine, "connect", self._enable_foreign_keys)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    @staticmethod
    def _enable_foreign_keys(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async def init_db(self) -> List[str]:
        """Create tables if they don't exist, then apply pending SQL migrations."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return await apply_pending_migrations(self.database_url)

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session that commits on success and rolls back on error.

        Lock waits, pool timeouts and dropped connections are re-raised as
        `TransientStoreError`. Integrity errors pass through unchanged.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if _is_transient(exc):
                    raise TransientStoreError(str(exc)) from exc
                raise

    async def ping(self) -> bool:
        async with self.session() as session:
            await session.execute(text("SELECT 1"))
        return True

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def resolve_user(
        self,
        identity_provider_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Find the user for a verified identity subject, creating it on first login."""
        subject = (identity_provider_id or "").strip()
        if not subject:
            raise ValueError("identity_provider_id must not be empty")

        existing = await self._get_user_by_subject(subject)
        if existing is not None:
            return existing
        try:
            async with self.session() as session:
                user = User(
                    identity_provider_id=subject,
                    email=email,
                    name=name,
                    avatar_url=avatar_url,
                )
                session.add(user)
                await session.flush()
                return _user_to_dict(user)
        except IntegrityError:
            # A concurrent first login created the row.
            existing = await self._get_user_by_subject(subject)
            if existing is None:
                raise
            return existing

    async def _get_user_by_subject(self, subject: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(
                select(User).where(User.identity_provider_id == subject)
            )
            user = result.scalar_one_or_none()
            return _user_to_dict(user) if user is not None else None

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            user = await session.get(User, user_id)
            return _user_to_dict(user) if user is not None else None

    async def delete_user(self, user_id: str) -> bool:
        """Delete a user; memories, sync cursors and preferences cascade."""
        async with self.session() as session:
            result = await session.execute(delete(User).where(User.id == user_id))
            return result.rowcount > 0

    # -------------------------------------------------------------------------
    # Memories (read side)
    # -------------------------------------------------------------------------

    async def get_memory(self, owner: str, memory_id: str) -> Optional[Dict[str, Any]]:
        """Get a memory by internal id, tombstoned rows included."""
        async with self.session() as session:
            result = await session.execute(
                select(Memory).where(Memory.user_id == owner).where(Memory.id == memory_id)
            )
            row = result.scalar_one_or_none()
            return memory_to_dict(row) if row is not None else None

    async def get_memory_by_external_id(
        self, owner: str, external_id: str
    ) -> Optional[Dict[str, Any]]:
        """Get the most recently updated memory carrying a device-assigned id."""
        async with self.session() as session:
            result = await session.execute(
                select(Memory)
                .where(Memory.user_id == owner)
                .where(Memory.external_id == external_id)
                .order_by(Memory.updated_at.desc(), Memory.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return memory_to_dict(row) if row is not None else None

    async def list_memories(
        self,
        owner: str,
        *,
        category: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """List live (not tombstoned) memories, oldest update first."""
        query = (
            select(Memory)
            .where(Memory.user_id == owner)
            .where(Memory.deleted_at.is_(None))
        )
        if category:
            query = query.where(Memory.category == category)
        query = query.order_by(Memory.updated_at.asc(), Memory.id.asc())
        if limit is not None and limit > 0:
            query = query.limit(limit)

        async with self.session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [memory_to_dict(row) for row in rows]

    async def list_sync_cursors(self, owner: str) -> List[Dict[str, Any]]:
        async with self.session() as session:
            rows = (
                await session.execute(
                    select(SyncCursor)
                    .where(SyncCursor.user_id == owner)
                    .order_by(SyncCursor.last_synced_at.desc())
                )
            ).scalars().all()
            return [
                {
                    "device_id": row.device_id,
                    "last_synced_at": format_iso_datetime(row.last_synced_at),
                    "created_at": format_iso_datetime(row.created_at),
                }
                for row in rows
            ]

    # -------------------------------------------------------------------------
    # Preferences
    # -------------------------------------------------------------------------

    async def get_preferences(self, owner: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(
                select(UserPreference).where(UserPreference.user_id == owner)
            )
            row = result.scalar_one_or_none()
            return _preferences_to_dict(row) if row is not None else None

    async def update_preferences(self, owner: str, **fields: Any) -> Dict[str, Any]:
        """Upsert preferences; only the supplied, non-null fields are written."""
        unknown = set(fields) - set(PREFERENCE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown preference fields: {', '.join(sorted(unknown))}")
        values = {key: value for key, value in fields.items() if value is not None}

        async with self.session() as session:
            now_value = utc_now_naive()
            statement = sqlite_insert(UserPreference).values(
                id=_new_id(),
                user_id=owner,
                created_at=now_value,
                updated_at=now_value,
                **values,
            )
            await session.execute(
                statement.on_conflict_do_update(
                    index_elements=[UserPreference.user_id],
                    set_={**values, "updated_at": now_value},
                )
            )
            row = (
                await session.execute(
                    select(UserPreference).where(UserPreference.user_id == owner)
                )
            ).scalar_one()
            return _preferences_to_dict(row)
