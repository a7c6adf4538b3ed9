"""Per-job observer for consumers that follow exactly one job."""

from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict

from ..models.events import (
    ChannelEvent,
    JobCompletedEvent,
    JobFailedEvent,
    JobLogEvent,
    JobProgressEvent,
    JobStartedEvent,
    JobStoppedEvent,
)
from ..models.jobs import JobStatus, can_transition
from ..ws.router import EventRouter
from ..ws.subscriptions import SubscriptionRegistry, job_room

logger = logging.getLogger(__name__)


class JobState(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    message: str | None = None
    result: Any = None
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


class JobObserver:
    """Follows one job through its own ``job:{id}`` room.

    The room is held only while the observer is active, and the handlers are
    detached with it, so a notification arriving after deactivation has
    nothing to invoke. Every handler also checks the job id: the room can
    briefly deliver events for another job around subscribe/unsubscribe.

    Use as a context manager to guarantee release::

        with session.observe_job(job_id) as observer:
            ...
    """

    def __init__(self, router: EventRouter, subscriptions: SubscriptionRegistry, job_id: str | None = None) -> None:
        self._router = router
        self._subscriptions = subscriptions
        self._job_id = job_id
        self._active = False
        self._detachers: list[Callable[[], None]] = []
        self._listeners: list[Callable[[JobState], None]] = []
        self._log_listeners: list[Callable[[JobLogEvent], None]] = []
        self.state = JobState(id=job_id)

    # ── Derived status ────────────────────────────────────────────────────

    @property
    def job_id(self) -> str | None:
        return self._job_id

    @property
    def active(self) -> bool:
        return self._active

    @property
    def is_running(self) -> bool:
        return self.state.status in (JobStatus.PENDING, JobStatus.RUNNING)

    @property
    def is_completed(self) -> bool:
        return self.state.status == JobStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.state.status == JobStatus.FAILED

    @property
    def is_stopped(self) -> bool:
        return self.state.status == JobStatus.STOPPED

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def activate(self) -> None:
        if self._active or not self._job_id:
            return
        room = job_room(self._job_id)
        self._detachers = [
            self._router.on("job:started", self._on_started),
            self._router.on("job:progress", self._on_progress),
            self._router.on("job:completed", self._on_completed),
            self._router.on("job:failed", self._on_failed),
            self._router.on("job:stopped", self._on_stopped),
            self._router.on("job:log", self._on_log),
        ]
        try:
            self._subscriptions.subscribe(room)
        except Exception:
            for detach in self._detachers:
                detach()
            self._detachers = []
            raise
        self._active = True
        self.state = self.state.model_copy(update={"id": self._job_id})
        logger.debug("Observing job %s", self._job_id)

    def deactivate(self) -> None:
        if not self._active:
            return
        self._active = False
        for detach in self._detachers:
            detach()
        self._detachers = []
        self._subscriptions.unsubscribe(job_room(self._job_id))
        logger.debug("Stopped observing job %s", self._job_id)

    def set_job_id(self, job_id: str | None) -> None:
        """Switch to another job, moving the room subscription with it."""
        if job_id == self._job_id:
            return
        was_active = self._active
        self.deactivate()
        self._job_id = job_id
        if was_active:
            self.activate()

    def reset_state(self) -> None:
        self._set_state(JobState(id=self._job_id))

    def add_listener(self, listener: Callable[[JobState], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def add_log_listener(self, listener: Callable[[JobLogEvent], None]) -> Callable[[], None]:
        self._log_listeners.append(listener)
        return lambda: self._log_listeners.remove(listener) if listener in self._log_listeners else None

    def __enter__(self) -> "JobObserver":
        self.activate()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.deactivate()

    # ── Handlers ──────────────────────────────────────────────────────────

    def _mine(self, event: ChannelEvent) -> bool:
        return self._active and getattr(event, "id", None) == self._job_id

    def _advance(self, status: JobStatus | None, **changes: Any) -> None:
        if status is not None:
            if not can_transition(self.state.status, status):
                return
            changes["status"] = status
        elif self.state.status.is_terminal:
            return
        self._set_state(self.state.model_copy(update=changes))

    def _on_started(self, event: JobStartedEvent) -> None:
        if self._mine(event):
            self._advance(JobStatus.RUNNING, started_at=event.started_at)

    def _on_progress(self, event: JobProgressEvent) -> None:
        if self._mine(event):
            message = self.state.message if event.message is None else event.message
            self._advance(None, progress=event.progress, message=message)

    def _on_completed(self, event: JobCompletedEvent) -> None:
        if self._mine(event):
            self._advance(
                JobStatus.COMPLETED, progress=100, result=event.result_data, completed_at=event.completed_at
            )

    def _on_failed(self, event: JobFailedEvent) -> None:
        if self._mine(event):
            self._advance(JobStatus.FAILED, error=event.error_message, completed_at=event.completed_at)

    def _on_stopped(self, event: JobStoppedEvent) -> None:
        if self._mine(event):
            by = event.cancelled_by
            name = by if isinstance(by, str) or by is None else (by.username or by.id)
            error = "Cancelled" if name is None else f"Cancelled by {name}"
            self._advance(JobStatus.STOPPED, error=error, completed_at=event.completed_at)

    def _on_log(self, event: JobLogEvent) -> None:
        if not self._mine(event):
            return
        for listener in list(self._log_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Job log listener failed")

    def _set_state(self, state: JobState) -> None:
        self.state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Job observer listener failed")
