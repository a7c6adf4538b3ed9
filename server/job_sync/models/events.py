"""Inbound push-channel notifications, one model per notification kind.

Every payload crossing the channel boundary is decoded into exactly one of
these variants by :func:`decode_event`. Anything that fails to parse is
rejected with :class:`~job_sync.errors.EventDecodeError`.
"""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..errors import EventDecodeError
from .jobs import JobStatus, JobType, JobUser


class ChannelEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    kind: ClassVar[str] = ""


class ConnectedEvent(ChannelEvent):
    kind: ClassVar[str] = "connected"

    session_id: str
    server_time: str | None = None


class ErrorEvent(ChannelEvent):
    kind: ClassVar[str] = "error"

    code: str
    message: str = ""


class PongEvent(ChannelEvent):
    kind: ClassVar[str] = "pong"

    server_time: str | None = None


class JobCreatedEvent(ChannelEvent):
    kind: ClassVar[str] = "job:created"

    id: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    user_id: str | None = None
    username: str | None = None
    created_at: str | None = None


class JobStartedEvent(ChannelEvent):
    kind: ClassVar[str] = "job:started"

    id: str
    status: JobStatus = JobStatus.RUNNING
    started_at: str | None = None


class JobProgressEvent(ChannelEvent):
    kind: ClassVar[str] = "job:progress"

    id: str
    progress: int = Field(ge=0, le=100)
    message: str | None = None
    step_key: str | None = None
    current_step: int | None = None
    total_steps: int | None = None


class JobCompletedEvent(ChannelEvent):
    kind: ClassVar[str] = "job:completed"

    id: str
    type: JobType | None = None
    status: JobStatus = JobStatus.COMPLETED
    result_data: Any = None
    completed_at: str
    duration_ms: int | None = None


class JobFailedEvent(ChannelEvent):
    kind: ClassVar[str] = "job:failed"

    id: str
    type: JobType | None = None
    status: JobStatus = JobStatus.FAILED
    error_message: str | None = None
    completed_at: str


class JobStoppedEvent(ChannelEvent):
    kind: ClassVar[str] = "job:stopped"

    id: str
    cancelled_by: str | JobUser | None = None
    completed_at: str


class JobLogEvent(ChannelEvent):
    kind: ClassVar[str] = "job:log"

    id: str
    log: str
    timestamp: int | None = None


class ReconnectEvent(ChannelEvent):
    kind: ClassVar[str] = "reconnect"

    attempt: int | None = None


class ReconnectAttemptEvent(ChannelEvent):
    kind: ClassVar[str] = "reconnect_attempt"

    attempt: int


class ReconnectFailedEvent(ChannelEvent):
    kind: ClassVar[str] = "reconnect_failed"


EVENT_TYPES: dict[str, type[ChannelEvent]] = {
    cls.kind: cls
    for cls in (
        ConnectedEvent,
        ErrorEvent,
        PongEvent,
        JobCreatedEvent,
        JobStartedEvent,
        JobProgressEvent,
        JobCompletedEvent,
        JobFailedEvent,
        JobStoppedEvent,
        JobLogEvent,
        ReconnectEvent,
        ReconnectAttemptEvent,
        ReconnectFailedEvent,
    )
}


def decode_event(name: str, payload: Any) -> ChannelEvent:
    """Decode a raw ``(name, payload)`` pair into its typed variant."""
    cls = EVENT_TYPES.get(name)
    if cls is None:
        raise EventDecodeError(name, "unknown notification kind")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise EventDecodeError(name, f"expected an object, got {type(payload).__name__}")
    try:
        return cls.model_validate(payload)
    except ValidationError as exc:
        raise EventDecodeError(name, str(exc)) from exc
