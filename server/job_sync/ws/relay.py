"""Relays cache updates and connectivity changes to local WebSocket consumers."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

from ..models.jobs import Job

logger = logging.getLogger(__name__)


def _to_wire(value: Any) -> Any:
    if isinstance(value, Job):
        return value.to_wire()
    if isinstance(value, (tuple, list)):
        return [_to_wire(v) for v in value]
    return value


class LocalRelay:
    """Manages local WebSocket connections and broadcasts events to them."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._pending: set[asyncio.Task] = set()
        self._detachers: list = []

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._connections.append(ws)
        logger.info("WebSocket client connected (%d total)", len(self._connections))

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self._connections:
            self._connections.remove(ws)
        logger.info("WebSocket client disconnected (%d total)", len(self._connections))

    async def broadcast(self, event_type: str, data: Any) -> None:
        """Broadcast an event to every connected client."""
        if not self._connections:
            return

        message = json.dumps({"type": event_type, "data": data})
        disconnected: list[WebSocket] = []

        for ws in list(self._connections):
            try:
                await ws.send_text(message)
            except Exception:
                disconnected.append(ws)

        for ws in disconnected:
            self.disconnect(ws)

    def attach(self, session) -> None:
        """Forward ``session``'s cache writes and connection state to local clients."""
        self.detach()
        self._detachers = [
            session.cache.subscribe(self._on_cache_update),
            session.connection.add_state_listener(self._on_state_change),
        ]

    def detach(self) -> None:
        for detach in self._detachers:
            detach()
        self._detachers = []
        for task in list(self._pending):
            task.cancel()

    def _on_cache_update(self, key: tuple, value: Any) -> None:
        self._schedule("cache_update", {"key": list(key), "value": _to_wire(value)})

    def _on_state_change(self, state) -> None:
        self._schedule("connection", {"state": state.value})

    def _schedule(self, event_type: str, data: Any) -> None:
        if not self._connections:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.broadcast(event_type, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


# Singleton
relay = LocalRelay()
