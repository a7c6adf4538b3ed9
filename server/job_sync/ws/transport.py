"""Socket.IO transport for the push channel.

A thin wrapper over ``socketio.AsyncClient``. The library's own reconnection
is disabled: retry policy belongs to the ConnectionManager. Inbound events
are funnelled through one catch-all trampoline, so the client's handler table
(one handler per event name, last registration wins) is written exactly once
per client instance.
"""

from __future__ import annotations

import logging
from typing import Any, Callable
from urllib.parse import quote, urlsplit

import socketio

from ..errors import AuthenticationError, TransportError

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Any], None]
DisconnectCallback = Callable[[str], None]

_AUTH_MARKERS = ("401", "403", "unauthorized", "forbidden")


def split_socket_url(url: str) -> tuple[str, str]:
    """Split a channel URL into origin and Socket.IO path.

    ``https://example.com/socket`` -> ``("https://example.com", "/socket/socket.io")``
    """
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        logger.warning("Failed to parse socket URL, using as-is: %s", url)
        return url, "/socket.io"
    origin = f"{parts.scheme}://{parts.netloc}"
    path = parts.path.rstrip("/")
    if not path:
        return origin, "/socket.io"
    if path.endswith("/socket.io"):
        return origin, path
    return origin, f"{path}/socket.io"


class SocketIOTransport:
    """One Socket.IO client per opened session."""

    def __init__(self, url: str, transports: tuple[str, ...] = ("websocket", "polling")) -> None:
        self.base_url, self.socketio_path = split_socket_url(url)
        self.transports = transports
        self._client: socketio.AsyncClient | None = None
        self._on_event: EventCallback | None = None
        self._on_disconnect: DisconnectCallback | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None and self._client.connected

    def bind(self, on_event: EventCallback, on_disconnect: DisconnectCallback) -> None:
        """Route inbound events and drops to the given callbacks."""
        self._on_event = on_event
        self._on_disconnect = on_disconnect

    def unbind(self) -> None:
        """Detach callbacks; events arriving afterwards are discarded."""
        self._on_event = None
        self._on_disconnect = None

    async def open(self, token: str, timeout: float) -> None:
        """Open a new Socket.IO session with the token as a query parameter."""
        await self.close()

        client = socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        client.on("*", self._dispatch)
        client.on("disconnect", self._disconnected)
        self._client = client

        logger.info("Connecting to %s with path %s", self.base_url, self.socketio_path)
        try:
            await client.connect(
                f"{self.base_url}?token={quote(token, safe='')}",
                socketio_path=self.socketio_path,
                transports=list(self.transports),
                wait_timeout=timeout,
            )
        except socketio.exceptions.ConnectionError as exc:
            self._client = None
            message = str(exc)
            if any(marker in message.lower() for marker in _AUTH_MARKERS):
                raise AuthenticationError(f"Channel rejected credential: {message}") from exc
            raise TransportError(f"Channel connection failed: {message}") from exc

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.disconnect()

    async def emit(self, event: str, data: Any = None) -> None:
        if not self.connected:
            raise TransportError(f"Cannot emit '{event}': channel is not connected")
        if data is None:
            await self._client.emit(event)
        else:
            await self._client.emit(event, data)

    # ── Internal ──────────────────────────────────────────────────────────

    def _dispatch(self, event: str, *args: Any) -> None:
        callback = self._on_event
        if callback is None:
            return
        callback(event, args[0] if args else None)

    def _disconnected(self, *args: Any) -> None:
        callback = self._on_disconnect
        if callback is None:
            return
        reason = str(args[0]) if args else "transport close"
        callback(reason)
