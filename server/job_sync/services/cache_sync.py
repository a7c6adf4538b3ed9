"""Merges lifecycle notifications into the shared job cache.

Three cache indices view the same job records:

- ``("job", id)``: the canonical per-job record
- ``("activeJob", type)``: the most recent job of a type
- ``("allJobs",)``: every known job, newest first, as a tuple

Merges are pure. A notification builds a patch, the patch is applied to a
frozen snapshot with ``model_copy``, and the new snapshot replaces the old
one in every index whose entry carries the same id. Status only moves
forward; a patch that would move it backwards is dropped.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from ..models.events import (
    JobCompletedEvent,
    JobCreatedEvent,
    JobFailedEvent,
    JobProgressEvent,
    JobStartedEvent,
    JobStoppedEvent,
)
from ..models.jobs import Job, JobStatus, JobType, can_transition
from ..ws.router import EventRouter
from .query_cache import QueryCache

logger = logging.getLogger(__name__)

JOB = "job"
ACTIVE_JOB = "activeJob"
ALL_JOBS = "allJobs"
ALL_JOBS_KEY = (ALL_JOBS,)


def job_key(job_id: str) -> tuple:
    return (JOB, job_id)


def active_job_key(job_type: JobType | str) -> tuple:
    return (ACTIVE_JOB, JobType(job_type).value)


# ── Pure merges ───────────────────────────────────────────────────────────


def merge_job(job: Job, patch: dict[str, Any]) -> Job:
    """Apply a notification patch to ``job``.

    ``None`` values in the patch are skipped, so an absent field never
    erases a recorded one. Returns ``job`` itself when the patch changes
    nothing or would regress status; non-status patches (progress) are
    refused once the job is terminal.
    """
    status = patch.get("status")
    if status is not None and not can_transition(job.status, status):
        return job
    if status is None and job.is_terminal:
        return job

    changes = {k: v for k, v in patch.items() if v is not None and getattr(job, k) != v}
    if not changes:
        return job
    return job.model_copy(update=changes)


def merge_fetched(cached: Job | None, incoming: Job) -> Job:
    """Reconcile a record fetched from the Job API with the cached one.

    The API record wins unless it is behind what notifications have already
    delivered: an earlier status, or the same status with less progress.
    """
    if cached is None or cached.id != incoming.id:
        return incoming
    if not can_transition(cached.status, incoming.status):
        return cached
    if incoming.status == cached.status and cached.progress > incoming.progress:
        return cached
    changes = {name: getattr(incoming, name) for name in incoming.model_fields_set}
    merged = cached.model_copy(update=changes)
    return cached if merged == cached else merged


def patch_jobs(jobs: tuple[Job, ...] | None, job_id: str, patch: dict[str, Any]) -> tuple[Job, ...] | None:
    """Apply ``patch`` to the matching entry of a job list; same tuple if nothing changed."""
    if not jobs:
        return jobs
    changed = False
    result = []
    for job in jobs:
        if job.id == job_id:
            merged = merge_job(job, patch)
            changed = changed or merged is not job
            job = merged
        result.append(job)
    return tuple(result) if changed else jobs


def replace_in_jobs(jobs: tuple[Job, ...] | None, record: Job) -> tuple[Job, ...] | None:
    if not jobs or not any(j.id == record.id and j is not record for j in jobs):
        return jobs
    return tuple(record if j.id == record.id else j for j in jobs)


def prepend_if_absent(jobs: tuple[Job, ...] | None, record: Job) -> tuple[Job, ...]:
    if jobs is None:
        return (record,)
    if any(j.id == record.id for j in jobs):
        return jobs
    return (record, *jobs)


# ── Synchronizer ──────────────────────────────────────────────────────────


class CacheSynchronizer:
    """Writes every job notification into the cache. Attached once per connection lifetime."""

    def __init__(self, cache: QueryCache) -> None:
        self._cache = cache
        self._router: EventRouter | None = None
        self._detach: Callable[[], None] | None = None

    @property
    def attached(self) -> bool:
        return self._detach is not None

    def attach(self, router: EventRouter) -> Callable[[], None]:
        """Register the job handlers on ``router``. Repeat calls return the same detach."""
        if self._detach is not None and self._router is router:
            return self._detach
        if self._detach is not None:
            self._detach()

        detachers = [
            router.on("job:created", self.on_created),
            router.on("job:started", self.on_started),
            router.on("job:progress", self.on_progress),
            router.on("job:completed", self.on_completed),
            router.on("job:failed", self.on_failed),
            router.on("job:stopped", self.on_stopped),
        ]

        def detach() -> None:
            for d in detachers:
                d()
            if self._detach is detach:
                self._detach = None
                self._router = None
            logger.debug("Cache synchronizer detached")

        self._router = router
        self._detach = detach
        logger.debug("Cache synchronizer attached")
        return detach

    # ── Notification handlers ─────────────────────────────────────────────

    def on_created(self, event: JobCreatedEvent) -> None:
        logger.info("Job created: %s (%s)", event.id, event.type.value)
        record = self._cache.get(job_key(event.id))
        if record is None:
            record = Job(
                id=event.id,
                type=event.type,
                status=JobStatus.PENDING,
                progress=0,
                user_id=event.user_id,
                username=event.username,
                created_at=event.created_at,
            )
            self._cache.set(job_key(event.id), record)
        else:
            logger.debug("Job %s already cached, not recreating", event.id)

        self._cache.update(ALL_JOBS_KEY, lambda jobs: prepend_if_absent(jobs, record))
        self._cache.update(active_job_key(record.type), lambda active: record)

    def on_started(self, event: JobStartedEvent) -> None:
        logger.info("Job started: %s", event.id)
        self._apply(event.id, {"status": JobStatus.RUNNING, "started_at": event.started_at})

    def on_progress(self, event: JobProgressEvent) -> None:
        logger.debug("Job progress: %s %d%%", event.id, event.progress)
        self._apply(
            event.id,
            {
                "progress": event.progress,
                "progress_message": event.message,
                "step_key": event.step_key,
                "current_step": event.current_step,
                "total_steps": event.total_steps,
            },
        )

    def on_completed(self, event: JobCompletedEvent) -> None:
        logger.info("Job completed: %s", event.id)
        self._apply(
            event.id,
            {
                "status": JobStatus.COMPLETED,
                "progress": 100,
                "result": event.result_data,
                "completed_at": event.completed_at,
            },
            refetch=True,
        )

    def on_failed(self, event: JobFailedEvent) -> None:
        logger.info("Job failed: %s", event.id)
        self._apply(
            event.id,
            {"status": JobStatus.FAILED, "error": event.error_message, "completed_at": event.completed_at},
            refetch=True,
        )

    def on_stopped(self, event: JobStoppedEvent) -> None:
        logger.info("Job stopped: %s", event.id)
        self._apply(
            event.id,
            {"status": JobStatus.STOPPED, "cancelled_by": event.cancelled_by, "completed_at": event.completed_at},
            refetch=True,
        )

    # ── Job API records ───────────────────────────────────────────────────

    def record_job(self, job: Job) -> Job:
        """Merge a Job API creation response into every index."""
        record = self.reconcile_job(job)
        self._cache.update(ALL_JOBS_KEY, lambda jobs: prepend_if_absent(jobs, record))
        self._cache.update(active_job_key(record.type), lambda active: record)
        return record

    def reconcile_job(self, incoming: Job | None) -> Job | None:
        """Merge one fetched record into job-by-id and the all-jobs entry."""
        if incoming is None:
            return None
        cached = self._cache.get(job_key(incoming.id))
        record = merge_fetched(cached, incoming)
        if record is not cached:
            self._cache.set(job_key(record.id), record)
        self._cache.update(ALL_JOBS_KEY, lambda jobs: replace_in_jobs(jobs, record))
        return record

    def reconcile_all(self, fetched: Iterable[Job]) -> tuple[Job, ...]:
        """Merge a fetched job list; the result becomes the new all-jobs snapshot.

        Unresolved jobs already listed but missing from the fetch stay at the
        front: the fetch may have been answered before their ``job:created``
        reached the cache.
        """
        merged = []
        for incoming in fetched:
            cached = self._cache.get(job_key(incoming.id))
            record = merge_fetched(cached, incoming)
            if record is not cached:
                self._cache.set(job_key(record.id), record)
            merged.append(record)

        fetched_ids = {job.id for job in merged}
        kept = []
        for job in self._cache.get(ALL_JOBS_KEY) or ():
            if job.id in fetched_ids:
                continue
            record = self._cache.get(job_key(job.id)) or job
            if not record.is_terminal:
                kept.append(record)
        if kept:
            logger.debug("Keeping %d unresolved job(s) absent from the fetched list", len(kept))
        return (*kept, *merged)

    # ── Internal ──────────────────────────────────────────────────────────

    def _apply(self, job_id: str, patch: dict[str, Any], refetch: bool = False) -> None:
        current = self._cache.get(job_key(job_id))
        if current is None:
            logger.debug("No cached job %s, ignoring notification", job_id)
        else:
            updated = merge_job(current, patch)
            if updated is current:
                logger.debug("Notification for job %s changed nothing", job_id)
            else:
                self._cache.set(job_key(job_id), updated)
                self._cache.update(ALL_JOBS_KEY, lambda jobs: patch_jobs(jobs, job_id, patch))
                self._cache.update(
                    active_job_key(current.type),
                    lambda active: merge_job(active, patch) if active is not None and active.id == job_id else active,
                )

        if refetch:
            self._cache.invalidate(ALL_JOBS_KEY)
