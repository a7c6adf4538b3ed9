"""HTTP client for the Job API (start, cancel, list, get, active)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..auth import CredentialSource
from ..errors import AuthenticationError, JobAlreadyRunningError, JobApiError
from ..models.jobs import Job, JobType

logger = logging.getLogger(__name__)

_START_PATHS = {
    JobType.GENERATE_TESTS: "/api/jobs/generate-tests",
    JobType.RUN_TESTS: "/api/jobs/run-tests",
    JobType.UPLOAD_JSON: "/api/jobs/upload-json",
    JobType.OPEN_REPORT: "/api/jobs/report/open",
}


class JobApiClient:
    """Thin async adapter over the Job API. Every request carries the bearer token."""

    def __init__(
        self,
        base_url: str,
        credential_source: CredentialSource,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credential_source = credential_source
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Commands ──────────────────────────────────────────────────────────

    async def start_job(
        self,
        job_type: JobType | str,
        params: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> Job:
        """Start a job. Raises JobAlreadyRunningError carrying the active job on 409."""
        job_type = JobType(job_type)
        path = _START_PATHS[job_type]
        if files is not None:
            resp = await self._request("POST", path, files=files, data=params)
        elif params is not None:
            resp = await self._request("POST", path, json=params)
        else:
            resp = await self._request("POST", path)

        if resp.status_code == 409:
            body = resp.json()
            active = body.get("activeJob") if isinstance(body, dict) else None
            raise JobAlreadyRunningError(Job.model_validate(active) if active else None)
        self._check(resp, "start job")
        job = Job.model_validate(resp.json())
        logger.info("Started %s job %s", job_type.value, job.id)
        return job

    async def cancel_job(self, job_id: str) -> None:
        resp = await self._request("POST", f"/api/jobs/{job_id}/cancel")
        self._check(resp, "cancel job")
        logger.info("Cancel requested for job %s", job_id)

    # ── Queries ───────────────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Job:
        resp = await self._request("GET", f"/api/jobs/{job_id}")
        self._check(resp, "get job status")
        return Job.model_validate(resp.json())

    async def get_active_job(self, job_type: JobType | str) -> Job | None:
        resp = await self._request("GET", f"/api/jobs/active/{JobType(job_type).value}")
        if resp.status_code == 204 or not resp.content:
            return None
        self._check(resp, "get active job")
        return Job.model_validate(resp.json())

    async def list_jobs(self, size: int = 100) -> list[Job]:
        resp = await self._request("GET", "/api/jobs", params={"size": size})
        self._check(resp, "get jobs")
        data = resp.json()
        # Paginated ({"content": [...]}) or a bare list
        items = data.get("content", []) if isinstance(data, dict) else data or []
        return [Job.model_validate(item) for item in items]

    async def list_jobs_by_type(self, job_type: JobType | str, page: int = 0, size: int = 10) -> dict[str, Any]:
        resp = await self._request(
            "GET",
            f"/api/jobs/type/{JobType(job_type).value}",
            params={"page": page, "size": size, "sort": "createdAt,desc"},
        )
        self._check(resp, "get jobs by type")
        data = resp.json()
        data["content"] = [Job.model_validate(item) for item in data.get("content", [])]
        return data

    # ── Internal ──────────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = self._credential_source()
        if not token:
            raise AuthenticationError("Unauthorized: No access token provided")
        headers = {"Authorization": f"Bearer {token}"}
        logger.debug("%s %s", method, path)
        return await self._client.request(method, path, headers=headers, **kwargs)

    @staticmethod
    def _check(resp: httpx.Response, action: str) -> None:
        if resp.status_code in (401, 403):
            raise AuthenticationError(f"Failed to {action}: {resp.status_code}")
        if resp.is_error:
            raise JobApiError(f"Failed to {action}: {resp.text}", status_code=resp.status_code)
