"""
SQL migration runner for the memory sync store.

Migrations live in backend/db/migrations as `NNNN_description.sql`. Each
applied file is recorded in `schema_migrations` with a checksum; an edited
migration that was already applied is refused. A file lock next to the
database keeps concurrent workers from migrating at the same time.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import unquote

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>\d{4,})_.*\.sql$")


@dataclass(frozen=True)
class MigrationFile:
    version: str
    path: Path
    checksum: str


def sqlite_file_from_url(database_url: str) -> Optional[Path]:
    """Return the database file of a sqlite URL, or None for in-memory databases."""
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = unquote(database_url[len(prefix) :].split("?", 1)[0])
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        "Unsupported DATABASE_URL for migration runner. "
        "Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


def _checksum(content: bytes) -> str:
    # CRLF and LF checkouts of the same file must hash identically.
    try:
        payload = (
            content.decode("utf-8").replace("\r\n", "\n").replace("\r", "\n").encode("utf-8")
        )
    except UnicodeDecodeError:
        payload = content
    return hashlib.sha256(payload).hexdigest()


class MigrationRunner:
    """Discover and apply SQL migrations with version tracking."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Path] = None,
        lock_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.database_file = sqlite_file_from_url(database_url)
        self.migrations_dir = (
            Path(migrations_dir)
            if migrations_dir is not None
            else Path(__file__).resolve().parent / "migrations"
        )
        if lock_file_path is None and os.getenv("DB_MIGRATION_LOCK_FILE"):
            lock_file_path = Path(os.environ["DB_MIGRATION_LOCK_FILE"]).expanduser()
            # Relative lock paths sit next to the database, not the cwd.
            if not lock_file_path.is_absolute() and self.database_file is not None:
                lock_file_path = (self.database_file.parent / lock_file_path).resolve()
        if lock_file_path is None and self.database_file is not None:
            lock_file_path = Path(f"{self.database_file}.migrate.lock")
        self.lock_file_path = lock_file_path

        if lock_timeout_seconds is None:
            try:
                lock_timeout_seconds = float(
                    os.getenv("DB_MIGRATION_LOCK_TIMEOUT_SEC", "10")
                )
            except ValueError:
                lock_timeout_seconds = 10.0
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return the applied versions."""
        return await asyncio.to_thread(self._apply_pending_sync)

    def _apply_pending_sync(self) -> List[str]:
        migrations = self.discover()
        # In-memory databases are built from the ORM metadata on every boot.
        if not migrations or self.database_file is None:
            return []
        if self.lock_file_path is None:
            return self._apply(migrations)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds):
                return self._apply(migrations)
        except Timeout as exc:
            raise RuntimeError(
                "Timed out waiting for migration lock: "
                f"{self.lock_file_path} ({self.lock_timeout_seconds}s)"
            ) from exc

    def discover(self) -> List[MigrationFile]:
        if not self.migrations_dir.exists():
            return []
        found: List[MigrationFile] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_FILE_PATTERN.match(path.name)
            if match:
                found.append(
                    MigrationFile(
                        version=match.group("version"),
                        path=path,
                        checksum=_checksum(path.read_bytes()),
                    )
                )
        return found

    def _apply(self, migrations: List[MigrationFile]) -> List[str]:
        assert self.database_file is not None
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        applied: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, checksum TEXT NOT NULL)"
            )
            recorded: Dict[str, str] = {
                str(version): str(checksum)
                for version, checksum in conn.execute(
                    "SELECT version, checksum FROM schema_migrations"
                )
            }
            for migration in migrations:
                previous = recorded.get(migration.version)
                if previous is not None:
                    if previous != migration.checksum:
                        raise RuntimeError(
                            "Checksum mismatch for migration "
                            f"{migration.version}: recorded={previous} "
                            f"current={migration.checksum}"
                        )
                    continue

                conn.executescript(migration.path.read_text(encoding="utf-8"))
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) "
                    "VALUES (?, ?, ?)",
                    (
                        migration.version,
                        datetime.now(timezone.utc).isoformat(),
                        migration.checksum,
                    ),
                )
                conn.commit()
                applied.append(migration.version)
                logger.info("applied migration %s", migration.path.name)
        return applied


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    """Convenience wrapper used by SQLite client startup."""
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
