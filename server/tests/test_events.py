"""Tests for notification decoding at the channel boundary."""

import pytest

from job_sync.errors import EventDecodeError
from job_sync.models.events import (
    JobCompletedEvent,
    JobProgressEvent,
    JobStoppedEvent,
    ReconnectFailedEvent,
    decode_event,
)
from job_sync.models.jobs import JobStatus, JobType, JobUser, can_transition


def test_decode_progress_with_camel_case_fields():
    event = decode_event(
        "job:progress",
        {"id": "j1", "progress": 40, "message": "running step 2", "stepKey": "compile", "currentStep": 2, "totalSteps": 5},
    )
    assert isinstance(event, JobProgressEvent)
    assert event.progress == 40
    assert event.message == "running step 2"
    assert event.step_key == "compile"
    assert event.total_steps == 5


def test_decode_progress_without_message():
    event = decode_event("job:progress", {"id": "j1", "progress": 10})
    assert event.message is None


def test_decode_completed():
    event = decode_event(
        "job:completed",
        {
            "id": "j1",
            "type": "RUN_TESTS",
            "status": "COMPLETED",
            "resultData": {"ok": True},
            "completedAt": "t1",
            "durationMs": 5000,
        },
    )
    assert isinstance(event, JobCompletedEvent)
    assert event.type == JobType.RUN_TESTS
    assert event.result_data == {"ok": True}
    assert event.duration_ms == 5000


def test_decode_stopped_with_user_object():
    event = decode_event("job:stopped", {"id": "j1", "cancelledBy": {"id": "u1", "username": "bob"}, "completedAt": "t2"})
    assert isinstance(event, JobStoppedEvent)
    assert isinstance(event.cancelled_by, JobUser)
    assert event.cancelled_by.username == "bob"


def test_decode_signal_without_payload():
    assert isinstance(decode_event("reconnect_failed", None), ReconnectFailedEvent)


@pytest.mark.parametrize(
    "name,payload",
    [
        ("job:progress", {"id": "j1", "progress": 140}),
        ("job:progress", {"progress": 10}),
        ("job:created", {"id": "j1", "type": "MAKE_COFFEE"}),
        ("job:completed", {"id": "j1"}),
        ("job:started", ["j1"]),
        ("job:unknown", {"id": "j1"}),
    ],
)
def test_malformed_payloads_rejected(name, payload):
    with pytest.raises(EventDecodeError):
        decode_event(name, payload)


def test_status_transitions_only_move_forward():
    assert can_transition(JobStatus.PENDING, JobStatus.RUNNING)
    assert can_transition(JobStatus.PENDING, JobStatus.FAILED)
    assert can_transition(JobStatus.COMPLETED, JobStatus.COMPLETED)
    assert not can_transition(JobStatus.RUNNING, JobStatus.PENDING)
    assert not can_transition(JobStatus.COMPLETED, JobStatus.RUNNING)
    assert not can_transition(JobStatus.COMPLETED, JobStatus.FAILED)
