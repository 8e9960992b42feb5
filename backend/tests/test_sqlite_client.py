import asyncio
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from db.memory_sync import MemorySyncService, PushMemoryItem
from db.sqlite_client import (
    SQLiteClient,
    TransientStoreError,
    format_iso_datetime,
    parse_iso_datetime,
)


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def test_iso_datetime_helpers_normalize_to_utc() -> None:
    parsed = parse_iso_datetime("2026-01-01T12:00:00+02:00")

    assert parsed == datetime(2026, 1, 1, 10, 0)
    assert parse_iso_datetime("2026-01-01T10:00:00Z") == parsed
    assert parse_iso_datetime("yesterday") is None
    assert parse_iso_datetime("") is None
    assert format_iso_datetime(parsed) == "2026-01-01T10:00:00Z"
    assert format_iso_datetime(None) is None


@pytest.mark.asyncio
async def test_resolve_user_creates_once_per_subject(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "users.db"))
    await client.init_db()

    first = await client.resolve_user("idp|alice", email="alice@example.com")
    again = await client.resolve_user("idp|alice", email="changed@example.com")
    concurrent = await asyncio.gather(
        *[client.resolve_user("idp|bob") for _ in range(4)]
    )

    assert again["id"] == first["id"]
    assert again["email"] == "alice@example.com"
    assert len({user["id"] for user in concurrent}) == 1
    assert (await client.get_user(first["id"]))["email"] == "alice@example.com"
    with pytest.raises(ValueError):
        await client.resolve_user("   ")

    await client.close()


@pytest.mark.asyncio
async def test_delete_user_cascades_to_owned_rows(tmp_path: Path) -> None:
    db_path = tmp_path / "cascade.db"
    client = SQLiteClient(_sqlite_url(db_path))
    await client.init_db()
    owner = (await client.resolve_user("idp|alice"))["id"]
    sync = MemorySyncService(client)
    stamp = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)
    await sync.push_batch(
        owner,
        [
            PushMemoryItem(
                external_id="m1",
                category="fact",
                content="lives in Lisbon",
                created_at=stamp,
                updated_at=stamp,
            )
        ],
    )
    await sync.pull(owner, stamp, "phone")
    await client.update_preferences(owner, theme="dark")

    assert await client.delete_user(owner) is True
    assert await client.delete_user(owner) is False
    await client.close()

    with sqlite3.connect(db_path) as conn:
        for table in ("memories", "sync_cursors", "user_preferences"):
            count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            assert count == 0, table


@pytest.mark.asyncio
async def test_preferences_upsert_keeps_unsupplied_fields(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "prefs.db"))
    await client.init_db()
    owner = (await client.resolve_user("idp|alice"))["id"]

    assert await client.get_preferences(owner) is None

    created = await client.update_preferences(owner, theme="dark")
    updated = await client.update_preferences(owner, voice_enabled=False, theme=None)

    assert created["theme"] == "dark"
    assert created["default_persona"] == "orin"
    assert created["voice_enabled"] is True
    assert updated["id"] == created["id"]
    assert updated["theme"] == "dark"
    assert updated["voice_enabled"] is False
    with pytest.raises(ValueError, match="Unknown preference fields"):
        await client.update_preferences(owner, font_size=12)

    await client.close()


@pytest.mark.asyncio
async def test_session_maps_lock_errors_to_transient(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "transient.db"))
    await client.init_db()

    with pytest.raises(TransientStoreError):
        async with client.session():
            raise OperationalError(
                "UPDATE memories", {}, sqlite3.OperationalError("database is locked")
            )

    with pytest.raises(OperationalError) as excinfo:
        async with client.session():
            raise OperationalError(
                "SELECT 1", {}, sqlite3.OperationalError("no such table: nope")
            )
    assert not isinstance(excinfo.value, TransientStoreError)

    assert await client.ping() is True
    await client.close()


@pytest.mark.asyncio
async def test_list_memories_filters_category_and_limit(tmp_path: Path) -> None:
    client = SQLiteClient(_sqlite_url(tmp_path / "list.db"))
    await client.init_db()
    owner = (await client.resolve_user("idp|alice"))["id"]
    sync = MemorySyncService(client)
    base = datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)
    await sync.push_batch(
        owner,
        [
            PushMemoryItem(
                external_id=f"m{n}",
                category="fact" if n % 2 else "preference",
                content=f"memory {n}",
                created_at=base,
                updated_at=base.replace(minute=n),
            )
            for n in range(1, 6)
        ],
    )

    facts = await client.list_memories(owner, category="fact")
    limited = await client.list_memories(owner, limit=2)
    unlimited = await client.list_memories(owner, limit=0)

    assert [m["external_id"] for m in facts] == ["m1", "m3", "m5"]
    assert [m["external_id"] for m in limited] == ["m1", "m2"]
    assert len(unlimited) == 5

    await client.close()
