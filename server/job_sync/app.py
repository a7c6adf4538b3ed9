"""FastAPI gateway exposing the synchronized job view to local consumers."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import config
from .errors import AuthenticationError
from .session import SyncSession
from .ws.relay import relay

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


def create_app(session_factory: Callable[[], SyncSession] = SyncSession) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown."""
        logger.info("Job sync gateway starting on %s:%d", config.host, config.port)
        logger.info("Push channel: %s, Job API: %s", config.socket_url, config.api_url)

        session = session_factory()
        app.state.session = session
        relay.attach(session)
        try:
            await session.start()
        except AuthenticationError as exc:
            logger.error("Sync session rejected credential: %s (will start degraded)", exc)
        except Exception as exc:
            logger.warning("Sync session start failed: %s (will start degraded)", exc)

        yield

        relay.detach()
        await session.stop()
        app.state.session = None
        logger.info("Job sync gateway stopped")

    app = FastAPI(
        title="Job Sync Gateway",
        description="Real-time job state synchronized from the push channel",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    from .routers.health import router as health_router
    from .routers.jobs import router as jobs_router

    app.include_router(health_router)
    app.include_router(jobs_router)

    @app.websocket("/api/ws")
    async def websocket_endpoint(ws: WebSocket, token: str | None = None):
        """Live cache updates: ws://host/api/ws?token=<gateway-key>"""
        if config.gateway_key and token != config.gateway_key:
            await ws.close(code=4001, reason="Unauthorized")
            return

        await relay.connect(ws)
        session = app.state.session
        if session is not None:
            await ws.send_json({"type": "snapshot", "data": {
                "connection": session.connection.state.value,
                "jobs": [j.to_wire() for j in session.all_jobs()],
            }})
        try:
            while True:
                # Nothing is expected from clients; reading detects disconnects
                await ws.receive_text()
        except WebSocketDisconnect:
            relay.disconnect(ws)
        except Exception:
            relay.disconnect(ws)

    return app


app = create_app()
