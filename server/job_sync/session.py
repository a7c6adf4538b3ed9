"""One sync session: the engine components wired for a single credential.

The session owns the components' lifetimes. Cache handlers are attached
through the connection's initialization phase, the poller and health
check run between start() and stop(), and the Job API backs every cache
refetch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .auth import CredentialSource, static_credential, usable_token
from .config import SyncConfig, config
from .errors import AuthenticationError, JobAlreadyRunningError
from .models.jobs import Job, JobType
from .services.cache_sync import (
    ACTIVE_JOB,
    ALL_JOBS,
    ALL_JOBS_KEY,
    JOB,
    CacheSynchronizer,
    active_job_key,
    job_key,
)
from .services.job_api import JobApiClient
from .services.job_observer import JobObserver
from .services.poller import FallbackPoller
from .services.query_cache import QueryCache
from .ws.connection import ConnectionManager
from .ws.router import EventRouter
from .ws.subscriptions import ALL_JOBS_ROOM, SubscriptionRegistry
from .ws.transport import SocketIOTransport

logger = logging.getLogger(__name__)


class SyncSession:
    """Holds the engine components for one signed-in user."""

    def __init__(
        self,
        settings: SyncConfig | None = None,
        credential_source: CredentialSource | None = None,
        transport=None,
        api: JobApiClient | None = None,
    ) -> None:
        self.config = settings or config
        self.credential_source = credential_source or static_credential(self.config.token)

        self.cache = QueryCache()
        self.router = EventRouter()
        self.connection = ConnectionManager(
            transport or SocketIOTransport(self.config.socket_url),
            self.router,
            self.config,
            self.credential_source,
        )
        self.subscriptions = SubscriptionRegistry(self.connection)
        self.synchronizer = CacheSynchronizer(self.cache)
        self.poller = FallbackPoller(self.cache, interval=self.config.poll_interval)
        self.api = api or JobApiClient(
            self.config.api_url, self.credential_source, timeout=self.config.api_timeout
        )
        self._user_room: str | None = None

        self.connection.add_session_initializer(lambda: self.synchronizer.attach(self.router))
        self.cache.register_fetcher(ALL_JOBS, self._fetch_all_jobs)
        self.cache.register_fetcher(ACTIVE_JOB, self._fetch_active_job)
        self.cache.register_fetcher(JOB, self._fetch_job)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Load the cache, join rooms, and connect the channel.

        Raises if the first connect fails. The health check keeps running
        and reconnects later unless the credential itself was rejected.
        """
        token = usable_token(self.credential_source)
        if not token:
            raise AuthenticationError("No access token available for socket connection")

        if self._user_room is None:
            self._user_room = self.subscriptions.subscribe_user(token)
            if self.config.subscribe_all_jobs:
                self.subscriptions.subscribe(ALL_JOBS_ROOM)

        self.poller.start()
        self.connection.start_health_check()
        await self.load()
        await self.connection.connect(token)
        logger.info("Sync session started (session %s)", self.connection.session_id)

    async def stop(self) -> None:
        self.poller.stop()
        if self._user_room is not None:
            self.subscriptions.unsubscribe(self._user_room)
            if self.config.subscribe_all_jobs:
                self.subscriptions.unsubscribe(ALL_JOBS_ROOM)
            self._user_room = None
        await self.connection.disconnect()
        self.cache.cancel_all()
        await self.api.aclose()
        logger.info("Sync session stopped")

    async def load(self) -> None:
        """Initial load of all-jobs and every active-job slot from the Job API."""
        keys = [ALL_JOBS_KEY] + [active_job_key(t) for t in JobType]
        results = await asyncio.gather(*(self.cache.fetch(k) for k in keys), return_exceptions=True)
        for key, result in zip(keys, results):
            if isinstance(result, Exception):
                logger.warning("Initial load of %s failed: %s", key, result)

    # ── Consumers ─────────────────────────────────────────────────────────

    def observe_job(self, job_id: str | None = None) -> JobObserver:
        return JobObserver(self.router, self.subscriptions, job_id)

    def all_jobs(self) -> tuple[Job, ...]:
        return self.cache.get(ALL_JOBS_KEY) or ()

    def job(self, job_id: str) -> Job | None:
        return self.cache.get(job_key(job_id))

    def active_job(self, job_type: JobType | str) -> Job | None:
        return self.cache.get(active_job_key(job_type))

    def clear_active_job(self, job_type: JobType | str, job_id: str | None = None) -> None:
        """Empty the active-job slot of a type and forget the job it held."""
        self.cache.set(active_job_key(job_type), None)
        if job_id is not None:
            self.cache.remove(job_key(job_id))

    async def jobs_by_type(self, job_type: JobType | str, page: int = 0, size: int = 10) -> dict[str, Any]:
        """One page of a type's job history, reconciled with cached state."""
        data = await self.api.list_jobs_by_type(job_type, page=page, size=size)
        data["content"] = [self.synchronizer.reconcile_job(job) for job in data.get("content", [])]
        return data

    def status(self) -> dict[str, Any]:
        return {
            "connection": self.connection.state.value,
            "sessionId": self.connection.session_id,
            "lastPong": self.connection.last_pong,
            "rooms": self.subscriptions.rooms,
            "poller": self.poller.running,
            "jobs": len(self.all_jobs()),
            "droppedNotifications": self.router.dropped,
        }

    # ── Job API commands ──────────────────────────────────────────────────

    async def start_job(
        self,
        job_type: JobType | str,
        params: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> Job:
        try:
            job = await self.api.start_job(job_type, params, files)
        except JobAlreadyRunningError as exc:
            if exc.active_job is not None:
                self.synchronizer.record_job(exc.active_job)
            raise
        return self.synchronizer.record_job(job)

    async def cancel_job(self, job_id: str) -> None:
        await self.api.cancel_job(job_id)
        self.cache.invalidate(ALL_JOBS_KEY)
        self.cache.invalidate(job_key(job_id))
        for key in self.cache.keys((ACTIVE_JOB,)):
            self.cache.invalidate(key)

    # ── Fetchers ──────────────────────────────────────────────────────────

    async def _fetch_all_jobs(self, key: tuple) -> tuple[Job, ...]:
        return self.synchronizer.reconcile_all(await self.api.list_jobs())

    async def _fetch_active_job(self, key: tuple) -> Job | None:
        return self.synchronizer.reconcile_job(await self.api.get_active_job(key[1]))

    async def _fetch_job(self, key: tuple) -> Job | None:
        return self.synchronizer.reconcile_job(await self.api.get_job(key[1]))
