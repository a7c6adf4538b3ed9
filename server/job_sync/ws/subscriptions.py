"""Reference-counted room subscriptions that survive reconnects."""

from __future__ import annotations

import logging

from ..auth import subject_from_token
from ..errors import AuthenticationError
from .connection import ConnectionManager

logger = logging.getLogger(__name__)

ALL_JOBS_ROOM = "jobs:all"


def user_room(subject_id: str) -> str:
    return f"user:{subject_id}"


def job_room(job_id: str) -> str:
    return f"job:{job_id}"


class SubscriptionRegistry:
    """Tracks rooms of interest and keeps the channel's membership in step.

    A room is subscribed on the transport when its count goes 0 -> 1 and
    released only when it returns to 0. The channel forgets room membership
    on reconnect, so every held room is re-issued after each new session.
    """

    def __init__(self, connection: ConnectionManager) -> None:
        self._connection = connection
        self._rooms: dict[str, int] = {}
        self._detach = connection.add_connect_listener(self.resubscribe_all)

    @property
    def rooms(self) -> dict[str, int]:
        return dict(self._rooms)

    def is_subscribed(self, room: str) -> bool:
        return self._rooms.get(room, 0) > 0

    def subscribe(self, room: str) -> None:
        count = self._rooms.get(room, 0) + 1
        self._rooms[room] = count
        if count == 1:
            logger.info("Subscribing to room: %s", room)
            self._connection.send("subscribe", {"room": room})

    def unsubscribe(self, room: str) -> None:
        count = self._rooms.get(room, 0)
        if count == 0:
            logger.debug("Unsubscribe for unheld room ignored: %s", room)
            return
        if count > 1:
            self._rooms[room] = count - 1
            return
        del self._rooms[room]
        logger.info("Unsubscribing from room: %s", room)
        self._connection.send("unsubscribe", {"room": room})

    def subscribe_user(self, token: str) -> str:
        """Join the per-user room addressed by the credential's own subject claim."""
        subject = subject_from_token(token)
        if not subject:
            raise AuthenticationError("Credential carries no subject claim")
        room = user_room(subject)
        self.subscribe(room)
        return room

    def resubscribe_all(self) -> None:
        """Re-issue every held room on a fresh session."""
        rooms = [room for room, count in self._rooms.items() if count > 0]
        if rooms:
            logger.info("Re-subscribing %d room(s) after connect", len(rooms))
        for room in rooms:
            self._connection.send("subscribe", {"room": room})

    def close(self) -> None:
        self._detach()
        self._rooms.clear()
