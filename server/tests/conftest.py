"""Shared fixtures: an in-memory push channel and Job API."""

from __future__ import annotations

import asyncio
import base64
import json
from collections import Counter

import pytest

from job_sync.config import SyncConfig
from job_sync.errors import JobAlreadyRunningError, JobApiError, TransportError
from job_sync.models.jobs import Job, JobStatus, JobType


class FakeTransport:
    """Stands in for SocketIOTransport. The 'server' side is driven by the test."""

    def __init__(self) -> None:
        self.connected = False
        self.sent: list[tuple[str, object]] = []
        self.tokens: list[str] = []
        self.open_calls = 0
        self.failures: list[Exception] = []
        self.auto_ack = True
        self.reject_auth = False
        self._on_event = None
        self._on_disconnect = None

    def bind(self, on_event, on_disconnect) -> None:
        self._on_event = on_event
        self._on_disconnect = on_disconnect

    def unbind(self) -> None:
        self._on_event = None
        self._on_disconnect = None

    async def open(self, token: str, timeout: float) -> None:
        self.open_calls += 1
        self.tokens.append(token)
        await self.close()
        if self.failures:
            raise self.failures.pop(0)
        self.connected = True
        loop = asyncio.get_running_loop()
        if self.reject_auth:
            loop.call_soon(self.server_emit, "error", {"code": "AUTH_FAILED", "message": "Authentication failed"})
        elif self.auto_ack:
            loop.call_soon(self.server_emit, "connected", {"sessionId": f"s{self.open_calls}", "serverTime": "t"})

    async def close(self) -> None:
        was_connected = self.connected
        self.connected = False
        if was_connected and self._on_disconnect is not None:
            self._on_disconnect("io client disconnect")

    async def emit(self, event: str, data=None) -> None:
        if not self.connected:
            raise TransportError("not connected")
        self.sent.append((event, data))

    # ── Test controls ─────────────────────────────────────────────────────

    def server_emit(self, event: str, data=None) -> None:
        if self._on_event is not None:
            self._on_event(event, data)

    def drop(self, reason: str = "transport close") -> None:
        self.connected = False
        if self._on_disconnect is not None:
            self._on_disconnect(reason)

    def rooms(self, event: str = "subscribe") -> list[str]:
        return [data["room"] for name, data in self.sent if name == event]


class FakeJobApi:
    """Stands in for JobApiClient."""

    def __init__(self, jobs=()) -> None:
        self.jobs: dict[str, Job] = {j.id: j for j in jobs}
        self.active: dict[JobType, Job] = {}
        self.conflict: Job | None = None
        self.calls: Counter = Counter()
        self.closed = False

    async def list_jobs(self, size: int = 100) -> list[Job]:
        self.calls["list_jobs"] += 1
        return list(self.jobs.values())

    async def list_jobs_by_type(self, job_type, page: int = 0, size: int = 10) -> dict:
        self.calls["list_jobs_by_type"] += 1
        matching = [j for j in self.jobs.values() if j.type == JobType(job_type)]
        return {"content": matching[page * size : (page + 1) * size], "totalElements": len(matching)}

    async def get_active_job(self, job_type) -> Job | None:
        self.calls["get_active_job"] += 1
        return self.active.get(JobType(job_type))

    async def get_job(self, job_id: str) -> Job:
        self.calls["get_job"] += 1
        if job_id not in self.jobs:
            raise JobApiError(f"Job {job_id} not found", status_code=404)
        return self.jobs[job_id]

    async def start_job(self, job_type, params=None, files=None) -> Job:
        self.calls["start_job"] += 1
        if self.conflict is not None:
            raise JobAlreadyRunningError(self.conflict)
        job = Job(id=f"new-{self.calls['start_job']}", type=JobType(job_type), status=JobStatus.PENDING, created_at="t0")
        self.jobs[job.id] = job
        return job

    async def cancel_job(self, job_id: str) -> None:
        self.calls["cancel_job"] += 1

    async def aclose(self) -> None:
        self.closed = True


def encode_token(claims: dict) -> str:
    def segment(data: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()

    return f"{segment({'alg': 'RS256', 'typ': 'JWT'})}.{segment(claims)}.signature"


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def settings():
    cfg = SyncConfig()
    cfg.token = None
    cfg.connect_timeout = 0.5
    cfg.reconnect_attempts = 3
    cfg.reconnect_delay = 0.01
    cfg.reconnect_delay_max = 0.02
    cfg.health_check_interval = 0.05
    cfg.poll_interval = 0.05
    cfg.subscribe_all_jobs = False
    return cfg


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def job_api():
    return FakeJobApi()


@pytest.fixture
def token():
    return encode_token({"sub": "kc-123", "preferred_username": "alice"})


@pytest.fixture
def make_token():
    return encode_token


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def make_job():
    def _make(job_id="j1", job_type=JobType.RUN_TESTS, status=JobStatus.PENDING, **fields):
        return Job(id=job_id, type=job_type, status=status, **fields)

    return _make
