"""Keyed reactive cache.

A small get/set/update/invalidate store in the shape of a client-side query
cache: keys are tuples, the first element names the namespace, and a
namespace may register a fetcher used to refetch invalidated entries.
Values are replaced, never mutated, so a reader holding a snapshot never
sees a torn state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Key = tuple
Fetcher = Callable[[Key], Awaitable[Any]]
Listener = Callable[[Key, Any], None]


class QueryCache:
    """Process-local store read by every consumer of job state."""

    def __init__(self) -> None:
        self._data: dict[Key, Any] = {}
        self._stale: set[Key] = set()
        self._fetchers: dict[str, Fetcher] = {}
        self._inflight: dict[Key, asyncio.Task] = {}
        self._listeners: list[Listener] = []
        self.fetch_count = 0

    # ── Reads ─────────────────────────────────────────────────────────────

    def get(self, key: Key) -> Any:
        return self._data.get(key)

    def has(self, key: Key) -> bool:
        return key in self._data

    def is_stale(self, key: Key) -> bool:
        return key in self._stale

    def keys(self, prefix: Key = ()) -> list[Key]:
        return [k for k in self._data if k[: len(prefix)] == prefix]

    # ── Writes ────────────────────────────────────────────────────────────

    def set(self, key: Key, value: Any) -> None:
        self._data[key] = value
        self._stale.discard(key)
        self._notify(key, value)

    def update(self, key: Key, updater: Callable[[Any], Any]) -> Any:
        """Replace the value with ``updater(current)``.

        Returning the current object unchanged is a no-op: nothing is
        written and listeners are not notified.
        """
        current = self._data.get(key)
        new = updater(current)
        if new is current:
            return current
        self.set(key, new)
        return new

    def remove(self, key: Key) -> None:
        if self._data.pop(key, None) is not None:
            self._notify(key, None)
        self._stale.discard(key)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    # ── Fetching ──────────────────────────────────────────────────────────

    def register_fetcher(self, namespace: str, fetcher: Fetcher) -> None:
        self._fetchers[namespace] = fetcher

    def invalidate(self, prefix: Key) -> list[Key]:
        """Mark every entry under ``prefix`` stale and schedule refetches.

        When nothing is cached under ``prefix`` it is taken as a full key and
        fetched anyway, so a slot that was never loaded still gets filled.
        Returns the keys scheduled for refetch.
        """
        matched = self.keys(prefix) or [prefix]

        scheduled: list[Key] = []
        for key in matched:
            self._stale.add(key)
            if key[0] in self._fetchers:
                self._schedule(key)
                scheduled.append(key)
        return scheduled

    async def fetch(self, key: Key) -> Any:
        """Fetch ``key`` now, joining an in-flight fetch if there is one."""
        task = self._inflight.get(key)
        if task is None:
            task = self._schedule(key)
        return await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Wait until no refetch is in flight."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()

    # ── Internal ──────────────────────────────────────────────────────────

    def _schedule(self, key: Key) -> asyncio.Task:
        task = self._inflight.get(key)
        if task is not None:
            return task
        fetcher = self._fetchers.get(key[0])
        if fetcher is None:
            raise KeyError(f"No fetcher registered for {key[0]!r}")
        task = asyncio.get_running_loop().create_task(self._run_fetch(key, fetcher))
        # Failures are logged in _run_fetch; background refetches have no awaiter
        task.add_done_callback(lambda t: t.cancelled() or t.exception())
        self._inflight[key] = task
        return task

    async def _run_fetch(self, key: Key, fetcher: Fetcher) -> Any:
        self.fetch_count += 1
        try:
            value = await fetcher(key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Refetch of %s failed: %s", key, exc)
            raise
        finally:
            self._inflight.pop(key, None)
        if key in self._data and self._data[key] is value:
            self._stale.discard(key)
        else:
            self.set(key, value)
        return value

    def _notify(self, key: Key, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception:
                logger.exception("Cache listener failed for %s", key)
