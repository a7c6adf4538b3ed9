"""Read the synchronized job view; start and cancel jobs through the Job API."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException

from ..auth import require_auth
from ..deps import get_session
from ..errors import JobAlreadyRunningError, JobApiError
from ..models.jobs import JobType
from ..services.cache_sync import job_key
from ..session import SyncSession

router = APIRouter(prefix="/api/jobs", tags=["jobs"], dependencies=[Depends(require_auth)])


@router.get("")
async def list_jobs(session: SyncSession = Depends(get_session)) -> dict:
    """All cached jobs, newest first."""
    return {"jobs": [j.to_wire() for j in session.all_jobs()]}


@router.get("/active/{job_type}")
async def get_active_job(job_type: JobType, session: SyncSession = Depends(get_session)) -> dict:
    """The most recent job of a type, if any."""
    job = session.active_job(job_type)
    return {"job": job.to_wire() if job else None}


@router.delete("/active/{job_type}")
async def clear_active_job(
    job_type: JobType,
    jobId: str | None = None,
    session: SyncSession = Depends(get_session),
) -> dict:
    """Dismiss the active job of a type."""
    session.clear_active_job(job_type, jobId)
    return {"success": True}


@router.get("/type/{job_type}")
async def list_jobs_by_type(
    job_type: JobType,
    page: int = 0,
    size: int = 10,
    session: SyncSession = Depends(get_session),
) -> dict:
    """Paged job history for one type, newest first."""
    try:
        data = await session.jobs_by_type(job_type, page=page, size=size)
    except JobApiError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {**data, "content": [j.to_wire() for j in data["content"]]}


@router.get("/{job_id}")
async def get_job(job_id: str, session: SyncSession = Depends(get_session)) -> dict:
    """Cached job detail, fetched from the Job API on a cache miss."""
    job = session.job(job_id)
    if job is None:
        try:
            job = await session.cache.fetch(job_key(job_id))
        except JobApiError as exc:
            raise HTTPException(status_code=exc.status_code or 502, detail=str(exc))
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return {"job": job.to_wire()}


@router.post("/start/{job_type}")
async def start_job(
    job_type: JobType,
    params: dict[str, Any] | None = Body(default=None),
    session: SyncSession = Depends(get_session),
) -> dict:
    """Start a job of the given type."""
    try:
        job = await session.start_job(job_type, params)
    except JobAlreadyRunningError as exc:
        active = exc.active_job.to_wire() if exc.active_job else None
        raise HTTPException(status_code=409, detail={"message": "Job already running", "activeJob": active})
    except JobApiError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {"job": job.to_wire()}


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, session: SyncSession = Depends(get_session)) -> dict:
    """Cancel a pending or running job."""
    try:
        await session.cancel_job(job_id)
    except JobApiError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "jobId": job_id}
