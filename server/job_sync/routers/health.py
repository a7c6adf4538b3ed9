"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from .. import __version__
from ..deps import get_session
from ..session import SyncSession

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health_check(session: SyncSession = Depends(get_session)) -> dict:
    """Report channel connectivity and cache state."""
    status = session.status()
    return {
        "status": "ok" if session.connection.is_connected() else "degraded",
        "version": __version__,
        **status,
    }
