"""Single entry point for inbound notifications.

Every raw ``(name, payload)`` pair is decoded into its typed variant and
handed to each handler registered for that kind. Malformed payloads are
dropped and logged; a failing handler is logged and skipped. Nothing raised
here ever reaches the transport, so one bad notification cannot stop the
ones after it.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from ..errors import EventDecodeError
from ..models.events import EVENT_TYPES, ChannelEvent, decode_event

logger = logging.getLogger(__name__)

Handler = Callable[[ChannelEvent], None]


class EventRouter:
    """Multi-subscriber dispatch table keyed by notification kind."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self.dropped = 0

    def on(self, kind: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``kind`` and return a detach callable.

        Registering the same handler twice for the same kind is a no-op, so
        repeated setup cannot double delivery.
        """
        if kind not in EVENT_TYPES:
            raise ValueError(f"Unknown notification kind: {kind}")
        handlers = self._handlers.setdefault(kind, [])
        if handler not in handlers:
            handlers.append(handler)
        return lambda: self.off(kind, handler)

    def off(self, kind: str, handler: Handler) -> None:
        handlers = self._handlers.get(kind)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[kind]

    def handler_count(self, kind: str) -> int:
        return len(self._handlers.get(kind, ()))

    def dispatch(self, name: str, payload: Any) -> int:
        """Decode and deliver one notification. Returns the number of handlers invoked."""
        if name not in EVENT_TYPES:
            logger.debug("Ignoring unhandled notification '%s'", name)
            return 0
        try:
            event = decode_event(name, payload)
        except EventDecodeError as exc:
            self.dropped += 1
            logger.warning("Dropping notification: %s", exc)
            return 0

        # Snapshot: handlers may detach themselves while running
        handlers = list(self._handlers.get(name, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Handler for '%s' failed", name)
        return len(handlers)
