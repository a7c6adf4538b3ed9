"""FastAPI dependencies for resolving the running sync session."""

from __future__ import annotations

from fastapi import HTTPException, Request

from .session import SyncSession


async def get_session(request: Request) -> SyncSession:
    """Resolve the application's sync session."""
    session = getattr(request.app.state, "session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="Sync session not running")
    return session
