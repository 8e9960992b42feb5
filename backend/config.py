"""
Environment configuration for the memory sync backend.

Values come from the process environment, optionally seeded from a `.env`
file found from the current working directory upwards.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

_REQUIRED_IN_PRODUCTION = ("DATABASE_URL", "AUTH_BASE_URL")
_DEFAULT_AUTH_BASE_URL = "https://identity.omni.dev"


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return default


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    app_env: str
    port: int
    database_url: Optional[str]
    auth_base_url: str
    auth_timeout_sec: float
    cors_origins: Tuple[str, ...]
    sync_page_size: int
    sync_max_attempts: int
    push_max_batch: int
    log_level: str

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        app_env = (os.getenv("APP_ENV") or "development").strip().lower()
        origins = _env_list("CORS_ORIGINS")
        if not origins and app_env != "production":
            origins = ["*"]
        return cls(
            app_env=app_env,
            port=_env_int("PORT", 4000, minimum=1),
            database_url=(os.getenv("DATABASE_URL") or "").strip() or None,
            auth_base_url=(
                (os.getenv("AUTH_BASE_URL") or "").strip().rstrip("/")
                or _DEFAULT_AUTH_BASE_URL
            ),
            auth_timeout_sec=_env_float("AUTH_TIMEOUT_SEC", 5.0, minimum=0.5),
            cors_origins=tuple(origins),
            sync_page_size=_env_int("MEMORY_SYNC_PAGE_SIZE", 100, minimum=1),
            sync_max_attempts=_env_int("MEMORY_SYNC_MAX_ATTEMPTS", 5, minimum=1),
            push_max_batch=_env_int("MEMORY_PUSH_MAX_BATCH", 500, minimum=1),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        )


def validate_env() -> None:
    """Raise when variables required for a production deployment are missing."""
    missing = [name for name in _REQUIRED_IN_PRODUCTION if not os.getenv(name)]
    if missing:
        raise RuntimeError(
            f"Missing required environment variables: {', '.join(missing)}"
        )
