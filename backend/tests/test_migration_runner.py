import asyncio
import sqlite3
from pathlib import Path

import pytest
from filelock import FileLock

from db.migration_runner import MigrationRunner, sqlite_file_from_url
from db.sqlite_client import SQLiteClient


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _write_test_migration(migrations_dir: Path, body: str = "") -> Path:
    migrations_dir.mkdir(parents=True, exist_ok=True)
    migration_file = migrations_dir / "0001_test.sql"
    migration_file.write_text(
        body or "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY);",
        encoding="utf-8",
    )
    return migration_file


@pytest.mark.asyncio
async def test_migration_runner_applies_and_tracks_versions(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    migrations_dir = tmp_path / "migrations"
    _write_test_migration(migrations_dir)

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    first_applied = await runner.apply_pending()
    second_applied = await runner.apply_pending()

    assert first_applied == ["0001"]
    assert second_applied == []

    with sqlite3.connect(db_path) as conn:
        count = conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0]
        assert count == 1
        version = conn.execute("SELECT version FROM schema_migrations").fetchone()[0]
        assert version == "0001"


@pytest.mark.asyncio
async def test_migration_runner_detects_checksum_mismatch(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    migrations_dir = tmp_path / "migrations"
    migration_file = _write_test_migration(migrations_dir)

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    await runner.apply_pending()

    migration_file.write_text(
        "CREATE TABLE IF NOT EXISTS test_table (id INTEGER PRIMARY KEY, x TEXT);",
        encoding="utf-8",
    )

    with pytest.raises(RuntimeError, match="Checksum mismatch"):
        await runner.apply_pending()


@pytest.mark.asyncio
async def test_migration_checksum_ignores_line_endings(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    migrations_dir = tmp_path / "migrations"
    migration_file = _write_test_migration(
        migrations_dir, "CREATE TABLE IF NOT EXISTS t1 (id INTEGER);\nSELECT 1;\n"
    )

    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    await runner.apply_pending()

    migration_file.write_bytes(
        b"CREATE TABLE IF NOT EXISTS t1 (id INTEGER);\r\nSELECT 1;\r\n"
    )

    assert await runner.apply_pending() == []


@pytest.mark.asyncio
async def test_sqlite_client_init_db_applies_project_migrations(tmp_path: Path) -> None:
    db_path = tmp_path / "fresh.db"

    client = SQLiteClient(_sqlite_url(db_path))
    first = await client.init_db()
    second = await client.init_db()
    await client.close()

    assert first == ["0001"]
    assert second == []

    with sqlite3.connect(db_path) as conn:
        index_names = {
            row[0]
            for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='index'"
            ).fetchall()
        }
        assert "idx_memories_user_live_updated_at" in index_names
        assert "idx_memories_user_updated_at" in index_names
        assert "idx_sync_cursors_user_last_synced_at" in index_names

        conn.row_factory = sqlite3.Row
        columns = {
            col["name"]: col
            for col in conn.execute("PRAGMA table_info(memories)").fetchall()
        }
        assert columns["access_count"]["dflt_value"] == "0"
        assert columns["tags"]["dflt_value"] == "'[]'"


@pytest.mark.asyncio
async def test_migration_runner_handles_database_url_query_params(
    tmp_path: Path,
) -> None:
    db_path = tmp_path / "memory-with-query.db"
    migrations_dir = tmp_path / "migrations"
    _write_test_migration(migrations_dir)

    database_url = f"{_sqlite_url(db_path)}?cache=shared"
    runner = MigrationRunner(database_url, migrations_dir=migrations_dir)
    applied = await runner.apply_pending()

    assert applied == ["0001"]
    assert db_path.exists()


@pytest.mark.asyncio
async def test_migration_runner_serializes_concurrent_apply(tmp_path: Path) -> None:
    db_path = tmp_path / "concurrent.db"
    migrations_dir = tmp_path / "migrations"
    _write_test_migration(migrations_dir)

    runner_a = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    runner_b = MigrationRunner(_sqlite_url(db_path), migrations_dir=migrations_dir)
    results = await asyncio.gather(runner_a.apply_pending(), runner_b.apply_pending())

    flattened = [version for batch in results for version in batch]
    assert flattened.count("0001") == 1

    with sqlite3.connect(db_path) as conn:
        count = conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0]
        assert count == 1


@pytest.mark.asyncio
async def test_migration_runner_times_out_when_lock_is_held(tmp_path: Path) -> None:
    db_path = tmp_path / "timeout.db"
    migrations_dir = tmp_path / "migrations"
    _write_test_migration(migrations_dir)

    lock_path = tmp_path / "migration.lock"
    with FileLock(str(lock_path), timeout=1):
        runner = MigrationRunner(
            _sqlite_url(db_path),
            migrations_dir=migrations_dir,
            lock_file_path=lock_path,
            lock_timeout_seconds=0.01,
        )
        with pytest.raises(RuntimeError, match="Timed out waiting for migration lock"):
            await runner.apply_pending()


def test_migration_runner_normalizes_relative_env_lock_path(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    db_path = tmp_path / "dbdir" / "memory.db"

    monkeypatch.setenv("DB_MIGRATION_LOCK_FILE", "locks/migrate.lock")
    runner = MigrationRunner(_sqlite_url(db_path), migrations_dir=tmp_path / "migrations")

    expected = (db_path.parent / "locks/migrate.lock").resolve()
    assert runner.lock_file_path == expected


@pytest.mark.asyncio
async def test_migration_runner_skips_in_memory_database(tmp_path: Path) -> None:
    migrations_dir = tmp_path / "migrations"
    _write_test_migration(migrations_dir)

    runner = MigrationRunner(
        "sqlite+aiosqlite:///:memory:", migrations_dir=migrations_dir
    )
    applied = await runner.apply_pending()
    assert applied == []


def test_sqlite_file_from_url_rejects_other_backends() -> None:
    with pytest.raises(ValueError, match="Unsupported DATABASE_URL"):
        sqlite_file_from_url("postgresql+asyncpg://localhost/memories")
