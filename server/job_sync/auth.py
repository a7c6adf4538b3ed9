"""Credential helpers and gateway API key authentication."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from typing import Any, Callable, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import config

logger = logging.getLogger(__name__)

# Supplies the current bearer token, or None when signed out
CredentialSource = Callable[[], Optional[str]]


def static_credential(token: str | None) -> CredentialSource:
    """A credential source that always returns the same token."""
    return lambda: token


def token_claims(token: str) -> dict[str, Any] | None:
    """Decode the (unverified) JWT payload. Signature checks are server-side."""
    parts = token.split(".")
    if len(parts) < 2:
        return None
    segment = parts[1]
    segment += "=" * (-len(segment) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, ValueError) as exc:
        logger.error("Failed to decode token payload: %s", exc)
        return None
    return payload if isinstance(payload, dict) else None


def subject_from_token(token: str) -> str | None:
    """The ``sub`` claim: the identity the server uses for the per-user room."""
    claims = token_claims(token)
    if not claims:
        return None
    return claims.get("sub") or None


def username_from_token(token: str) -> str | None:
    claims = token_claims(token)
    if not claims:
        return None
    return claims.get("preferred_username") or claims.get("name") or None


def is_token_expired(token: str, now: float | None = None) -> bool | None:
    """True if expired, False if valid, None if the token has no usable ``exp``."""
    claims = token_claims(token)
    if not claims or not isinstance(claims.get("exp"), (int, float)):
        return None
    return (now if now is not None else time.time()) >= claims["exp"]


def usable_token(source: CredentialSource) -> str | None:
    """The current token from ``source`` unless it is missing or expired."""
    token = source()
    if not token:
        return None
    if is_token_expired(token) is True:
        return None
    return token


# ── Gateway API key ──────────────────────────────────────────────────────

_bearer = HTTPBearer(auto_error=False)


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> None:
    """Validate the gateway key when one is configured.

    For WebSocket upgrades, the key can also be passed as a query param: ?token=<key>
    """
    if not config.gateway_key:
        return

    if credentials and credentials.credentials == config.gateway_key:
        return

    token = request.query_params.get("token")
    if token == config.gateway_key:
        return

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing gateway key",
        headers={"WWW-Authenticate": "Bearer"},
    )
