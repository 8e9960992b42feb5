"""
Caller identity resolution.

Bearer tokens are checked by an external identity service. The verifier is
built by the application factory and kept on `app.state`, so tests and
deployments can swap it without touching module globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx
from fastapi import Header, HTTPException, Request, status

from db.sqlite_client import SQLiteClient, TransientStoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityClaims:
    sub: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None


class IdentityVerifier(Protocol):
    async def verify(self, token: str) -> Optional[IdentityClaims]:
        ...


class HttpIdentityVerifier:
    """Resolve tokens through the identity service's userinfo endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self._transport = transport

    async def verify(self, token: str) -> Optional[IdentityClaims]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_sec, transport=self._transport
            ) as client:
                response = await client.get(
                    f"{self.base_url}/userinfo",
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as exc:
            logger.warning("identity service unreachable: %s", exc)
            return None
        if response.status_code != 200:
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        return claims_from_payload(payload)


def claims_from_payload(payload: Any) -> Optional[IdentityClaims]:
    if not isinstance(payload, dict):
        return None
    subject = str(payload.get("sub") or "").strip()
    if not subject:
        return None

    def _optional(key: str) -> Optional[str]:
        value = payload.get(key)
        return str(value) if value else None

    return IdentityClaims(
        sub=subject,
        email=_optional("email"),
        name=_optional("name"),
        picture=_optional("picture"),
    )


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


def _unauthorized(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "unauthorized", "reason": reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


def store_unavailable(exc: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error": "store_unavailable", "reason": str(exc)},
    )


async def resolve_caller(request: Request, authorization: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the caller's user row, or None for anonymous requests."""
    token = extract_bearer_token(authorization)
    if token is None:
        return None
    verifier: IdentityVerifier = request.app.state.identity_verifier
    claims = await verifier.verify(token)
    if claims is None:
        return None
    client: SQLiteClient = request.app.state.sqlite_client
    return await client.resolve_user(
        claims.sub,
        email=claims.email,
        name=claims.name,
        avatar_url=claims.picture,
    )


async def require_owner(
    request: Request,
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> str:
    """FastAPI dependency yielding the owner id; anonymous callers get 401."""
    if extract_bearer_token(authorization) is None:
        raise _unauthorized("missing_bearer_token")
    try:
        user = await resolve_caller(request, authorization)
    except TransientStoreError as exc:
        raise store_unavailable(exc) from exc
    if user is None:
        raise _unauthorized("invalid_token")
    return user["id"]
