"""Exception types raised by the sync engine and the Job API adapter."""

from __future__ import annotations

from typing import Any


class AuthenticationError(ConnectionError):
    """The server rejected the credential. Never retried automatically."""


class TransportError(ConnectionError):
    """Network-level failure of the push channel. Retried per policy."""


class ConnectionTimeoutError(TimeoutError):
    """No session acknowledgement arrived within the connect timeout."""


class EventDecodeError(ValueError):
    """An inbound notification did not match its expected shape."""

    def __init__(self, event: str, detail: str) -> None:
        super().__init__(f"Malformed '{event}' payload: {detail}")
        self.event = event


class JobApiError(RuntimeError):
    """The Job API answered with an unexpected status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class JobAlreadyRunningError(JobApiError):
    """A job of the requested type is already in progress (HTTP 409)."""

    def __init__(self, active_job: Any) -> None:
        super().__init__("Job already running", status_code=409)
        self.active_job = active_job
