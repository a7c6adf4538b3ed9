"""End-to-end tests for a sync session over the in-memory channel."""

from __future__ import annotations

import pytest

from job_sync.auth import static_credential
from job_sync.errors import AuthenticationError, JobAlreadyRunningError
from job_sync.models.jobs import JobStatus, JobType
from job_sync.session import SyncSession
from job_sync.ws.connection import ConnectionState


@pytest.fixture
def session(settings, transport, job_api, token):
    return SyncSession(settings, credential_source=static_credential(token), transport=transport, api=job_api)


@pytest.mark.asyncio
async def test_start_loads_connects_and_joins_user_room(session, transport, job_api, make_job, wait_until):
    job_api.jobs["j0"] = make_job("j0", status=JobStatus.COMPLETED, progress=100)

    await session.start()

    assert session.connection.state == ConnectionState.CONNECTED
    assert session.synchronizer.attached
    assert [j.id for j in session.all_jobs()] == ["j0"]
    assert job_api.calls["list_jobs"] == 1
    assert job_api.calls["get_active_job"] == len(JobType)
    await wait_until(lambda: transport.rooms() == ["user:kc-123"])
    await session.stop()


@pytest.mark.asyncio
async def test_start_without_credential_fails(settings, transport, job_api):
    session = SyncSession(settings, credential_source=static_credential(None), transport=transport, api=job_api)
    with pytest.raises(AuthenticationError):
        await session.start()
    assert transport.open_calls == 0


@pytest.mark.asyncio
async def test_lifecycle_notifications_update_cache(session, transport, job_api, make_job):
    await session.start()

    transport.server_emit(
        "job:created",
        {"id": "j1", "type": "RUN_TESTS", "status": "PENDING", "userId": "u1", "username": "u1", "createdAt": "t0"},
    )
    transport.server_emit("job:progress", {"id": "j1", "progress": 40, "message": "running step 2"})

    job = session.job("j1")
    assert (job.status, job.progress, job.progress_message) == (JobStatus.PENDING, 40, "running step 2")
    assert session.active_job(JobType.RUN_TESTS).progress == 40

    job_api.jobs["j1"] = make_job("j1", status=JobStatus.COMPLETED, progress=100, completed_at="t1")
    transport.server_emit(
        "job:completed",
        {"id": "j1", "type": "RUN_TESTS", "status": "COMPLETED", "resultData": {"ok": True}, "completedAt": "t1", "durationMs": 5000},
    )
    await session.cache.wait_idle()

    job = session.job("j1")
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.result == {"ok": True}
    assert session.all_jobs()[0].status == JobStatus.COMPLETED
    assert job_api.calls["list_jobs"] >= 2
    await session.stop()


@pytest.mark.asyncio
async def test_malformed_notification_does_not_block_later_ones(session, transport, make_job):
    await session.start()
    session.synchronizer.record_job(make_job("j1", status=JobStatus.RUNNING))

    transport.server_emit("job:progress", {"id": "j1", "progress": "lots"})
    transport.server_emit("job:progress", {"id": "j1", "progress": 60})

    assert session.job("j1").progress == 60
    assert session.status()["droppedNotifications"] == 1
    await session.stop()


@pytest.mark.asyncio
async def test_reconnect_keeps_single_handler_set(session, transport, wait_until):
    await session.start()
    transport.drop()
    await wait_until(session.connection.is_connected)

    assert session.router.handler_count("job:created") == 1
    await wait_until(lambda: transport.rooms().count("user:kc-123") == 2)
    await session.stop()


@pytest.mark.asyncio
async def test_start_job_records_response(session):
    await session.start()

    job = await session.start_job(JobType.GENERATE_TESTS, {"suite": "smoke"})

    assert session.job(job.id) is job
    assert session.active_job(JobType.GENERATE_TESTS) is job
    assert session.all_jobs()[0] is job
    await session.stop()


@pytest.mark.asyncio
async def test_conflicting_start_records_active_job(session, job_api, make_job):
    await session.start()
    job_api.conflict = make_job("j9", status=JobStatus.RUNNING, progress=15)

    with pytest.raises(JobAlreadyRunningError):
        await session.start_job(JobType.RUN_TESTS)

    assert session.active_job(JobType.RUN_TESTS).id == "j9"
    await session.stop()


@pytest.mark.asyncio
async def test_cancel_refreshes_affected_entries(session, job_api, make_job):
    job_api.jobs["j1"] = make_job("j1", status=JobStatus.RUNNING)
    await session.start()
    before = job_api.calls["list_jobs"]

    await session.cancel_job("j1")
    await session.cache.wait_idle()

    assert job_api.calls["cancel_job"] == 1
    assert job_api.calls["get_job"] >= 1
    assert job_api.calls["list_jobs"] > before
    await session.stop()


@pytest.mark.asyncio
async def test_stop_releases_everything(session, transport, job_api):
    await session.start()
    await session.stop()

    assert session.connection.state == ConnectionState.DISCONNECTED
    assert not session.synchronizer.attached
    assert not session.poller.running
    assert session.subscriptions.rooms == {}
    assert job_api.closed
    assert not transport.connected


@pytest.mark.asyncio
async def test_jobs_by_type_keeps_newer_notification_state(session, transport, job_api, make_job):
    job_api.jobs["j1"] = make_job("j1", status=JobStatus.RUNNING, progress=10)
    job_api.jobs["u1"] = make_job("u1", job_type=JobType.UPLOAD_JSON, status=JobStatus.COMPLETED, progress=100)
    await session.start()
    transport.server_emit("job:progress", {"id": "j1", "progress": 50})

    page = await session.jobs_by_type(JobType.RUN_TESTS)

    assert page["totalElements"] == 1
    assert [(j.id, j.progress) for j in page["content"]] == [("j1", 50)]
    assert job_api.calls["list_jobs_by_type"] == 1
    await session.stop()


@pytest.mark.asyncio
async def test_clear_active_job_forgets_the_job(session):
    await session.start()
    job = await session.start_job(JobType.RUN_TESTS)
    seen = []
    session.cache.subscribe(lambda key, value: seen.append((key, value)))

    session.clear_active_job(JobType.RUN_TESTS, job.id)

    assert session.active_job(JobType.RUN_TESTS) is None
    assert session.job(job.id) is None
    assert (("job", job.id), None) in seen
    await session.stop()
