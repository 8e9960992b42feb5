import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import account_router, memories_router
from api.auth import HttpIdentityVerifier, IdentityVerifier
from config import Settings, validate_env
from db import get_sqlite_client, close_sqlite_client
from db.memory_sync import MemorySyncService
from db.sqlite_client import SQLiteClient
from runtime_state import RuntimeState

logger = logging.getLogger(__name__)

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    *,
    settings: Optional[Settings] = None,
    sqlite_client: Optional[SQLiteClient] = None,
    identity_verifier: Optional[IdentityVerifier] = None,
) -> FastAPI:
    """
    Build the API with explicitly constructed collaborators.

    Anything not passed in is built from the environment: the store from
    DATABASE_URL and the identity verifier from AUTH_BASE_URL.
    """
    settings = settings or Settings.from_env()
    _configure_logging(settings.log_level)
    if settings.is_production:
        validate_env()

    owns_client = sqlite_client is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Memory sync API starting (env=%s)", settings.app_env)
        client = app.state.sqlite_client
        try:
            applied = await client.init_db()
        except Exception as exc:
            logger.error("Failed to initialize SQLite: %s", exc)
            raise RuntimeError("Failed to initialize SQLite during startup") from exc
        if applied:
            logger.info("Applied migrations: %s", ", ".join(applied))

        yield

        logger.info("Closing database connections...")
        if owns_client:
            await close_sqlite_client()

    app = FastAPI(
        title="Memory Sync API",
        description="Cross-device memory synchronization backend",
        version="1.0.0",
        lifespan=lifespan,
    )

    client = sqlite_client if sqlite_client is not None else get_sqlite_client()
    runtime = RuntimeState()
    app.state.settings = settings
    app.state.sqlite_client = client
    app.state.runtime = runtime
    app.state.identity_verifier = identity_verifier or HttpIdentityVerifier(
        settings.auth_base_url, timeout_sec=settings.auth_timeout_sec
    )
    app.state.memory_sync = MemorySyncService(
        client,
        write_lanes=runtime.write_lanes,
        page_size=settings.sync_page_size,
        max_attempts=settings.sync_max_attempts,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in _SECURITY_HEADERS.items():
            response.headers[name] = value
        return response

    app.include_router(memories_router)
    app.include_router(account_router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": _utc_iso_now(),
            "runtime": {"write_lanes": await runtime.write_lanes.status()},
        }

    @app.get("/ready")
    async def ready():
        try:
            await client.ping()
        except Exception as exc:
            return JSONResponse(
                status_code=503,
                content={"status": "unavailable", "reason": str(exc), "timestamp": _utc_iso_now()},
            )
        return {"status": "ready", "timestamp": _utc_iso_now()}

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = Settings.from_env()
    uvicorn.run(create_app(settings=_settings), host="0.0.0.0", port=_settings.port)
