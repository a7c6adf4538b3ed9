"""Fallback poller: bounds staleness when push notifications are lost."""

from __future__ import annotations

import asyncio
import logging

from ..models.jobs import Job
from .cache_sync import ALL_JOBS_KEY, active_job_key
from .query_cache import QueryCache

logger = logging.getLogger(__name__)


class FallbackPoller:
    """Refreshes the job cache on a timer while any cached job is unresolved.

    Does nothing on ticks where every cached job is terminal, so load tracks
    outstanding work rather than wall time.
    """

    def __init__(self, cache: QueryCache, interval: float = 2.0) -> None:
        self._cache = cache
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick(self) -> bool:
        """Inspect all-jobs once. Returns True if a refresh cycle was triggered."""
        jobs: tuple[Job, ...] = self._cache.get(ALL_JOBS_KEY) or ()
        unresolved = [job for job in jobs if not job.is_terminal]
        if not unresolved:
            return False

        types = sorted({job.type.value for job in unresolved})
        logger.debug("%d unresolved job(s), refreshing all-jobs and %s", len(unresolved), types)
        self._cache.invalidate(ALL_JOBS_KEY)
        for job_type in types:
            self._cache.invalidate(active_job_key(job_type))
        return True

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._poll_loop())
            logger.info("Fallback poller started (every %.1fs)", self.interval)

    def stop(self) -> None:
        if self.running:
            self._task.cancel()
            logger.info("Fallback poller stopped")
        self._task = None

    async def _poll_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval)
                self.tick()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Poller error: %s", exc)
