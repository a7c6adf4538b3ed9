"""Job records as served by the Job API and cached locally."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class JobType(str, Enum):
    GENERATE_TESTS = "GENERATE_TESTS"
    RUN_TESTS = "RUN_TESTS"
    UPLOAD_JSON = "UPLOAD_JSON"
    OPEN_REPORT = "OPEN_REPORT"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.STOPPED})

_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
    JobStatus.STOPPED: 2,
}


def can_transition(current: JobStatus, incoming: JobStatus) -> bool:
    """Whether a record in ``current`` may move to ``incoming``.

    Status only moves forward: a terminal status is final, and RUNNING never
    falls back to PENDING. Repeating the current status is always allowed.
    """
    if current == incoming:
        return True
    if current.is_terminal:
        return False
    return _STATUS_RANK[incoming] >= _STATUS_RANK[current]


class JobUser(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    keycloak_id: str | None = None
    username: str | None = None
    email: str | None = None
    full_name: str | None = None


class Job(BaseModel):
    """A cached job snapshot. Frozen: merges always produce a new instance."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    progress_message: str | None = None
    step_key: str | None = None
    current_step: int | None = None
    total_steps: int | None = None
    request: Any = None
    result: Any = None
    error: str | None = None
    user_id: str | None = None
    username: str | None = None
    user: JobUser | None = None
    cancelled_by: str | JobUser | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
