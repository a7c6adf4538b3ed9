"""Push-channel connection manager.

Owns the channel lifecycle: authenticated connect with a handshake timeout,
bounded reconnection with capped exponential backoff, a periodic health
check that doubles as the heartbeat, and a once-per-connection-lifetime
initialization phase for dependents.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable

from ..auth import CredentialSource, usable_token
from ..config import SyncConfig, config
from ..errors import AuthenticationError, ConnectionTimeoutError, EventDecodeError, TransportError
from ..models.events import ConnectedEvent, ErrorEvent, PongEvent, decode_event
from .router import EventRouter

logger = logging.getLogger(__name__)

AUTH_FAILED = "AUTH_FAILED"

# An initializer may hand back a teardown to run on disconnect()
SessionInitializer = Callable[[], "Callable[[], None] | None"]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConnectionManager:
    """Manages the single push-channel connection and its recovery."""

    def __init__(
        self,
        transport,
        router: EventRouter,
        settings: SyncConfig | None = None,
        credential_source: CredentialSource | None = None,
    ) -> None:
        self._transport = transport
        self._router = router
        self._config = settings or config
        self._credential_source = credential_source
        self._token: str | None = None
        self._state = ConnectionState.DISCONNECTED
        self._session_id: str | None = None
        self.last_pong: str | None = None

        self._handshake: asyncio.Future | None = None
        self._suppress_drop = False
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._pending_sends: set[asyncio.Task] = set()

        self._state_listeners: list[Callable[[ConnectionState], None]] = []
        self._connect_listeners: list[Callable[[], None]] = []
        self._initializers: list[SessionInitializer] = []
        self._teardowns: list[Callable[[], None]] = []
        self._initialized = False

    # ── State ─────────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._transport.connected

    def add_state_listener(self, listener: Callable[[ConnectionState], None]) -> Callable[[], None]:
        self._state_listeners.append(listener)
        return lambda: self._discard(self._state_listeners, listener)

    def add_connect_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Called after every acknowledged session, first connect and reconnects alike."""
        self._connect_listeners.append(listener)
        return lambda: self._discard(self._connect_listeners, listener)

    def add_session_initializer(self, initializer: SessionInitializer) -> None:
        """Run ``initializer`` once per connection lifetime.

        Runs at the first acknowledged session after construction or after
        disconnect(), or immediately if that phase has already been entered.
        """
        self._initializers.append(initializer)
        if self._initialized:
            self._run_initializer(initializer)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def connect(self, credential: str) -> None:
        """Open an authenticated session and wait for the server acknowledgement."""
        async with self._connect_lock:
            if self.is_connected():
                return
            self._token = credential
            self._cancel_reconnect()
            self._set_state(ConnectionState.CONNECTING)
            try:
                await asyncio.wait_for(self._connect_with_retry(credential), timeout=self._config.connect_timeout)
            except asyncio.TimeoutError as exc:
                await self._abandon()
                self._set_state(ConnectionState.DISCONNECTED)
                raise ConnectionTimeoutError(
                    f"No session acknowledgement within {self._config.connect_timeout:g}s"
                ) from exc
            except Exception:
                self._set_state(ConnectionState.DISCONNECTED)
                raise
            self._session_established()

    async def disconnect(self) -> None:
        """Tear down the channel and every background task. Idempotent."""
        self.stop_health_check()
        self._cancel_reconnect()
        self._transport.unbind()
        try:
            await self._transport.close()
        except Exception as exc:
            logger.debug("Transport close failed: %s", exc)
        for teardown in reversed(self._teardowns):
            try:
                teardown()
            except Exception:
                logger.exception("Session teardown failed")
        self._teardowns.clear()
        self._initialized = False
        self._session_id = None
        if self._state != ConnectionState.DISCONNECTED:
            logger.info("Channel disconnected")
        self._set_state(ConnectionState.DISCONNECTED)

    def send(self, event: str, data: Any = None) -> bool:
        """Fire-and-forget emit. Returns False (and sends nothing) while disconnected."""
        if not self.is_connected():
            logger.debug("Dropping outbound '%s': not connected", event)
            return False
        task = asyncio.get_running_loop().create_task(self._transport.emit(event, data))
        self._pending_sends.add(task)
        task.add_done_callback(self._send_done)
        return True

    def ping(self) -> bool:
        return self.send("ping")

    # ── Health check ──────────────────────────────────────────────────────

    def start_health_check(self) -> None:
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop())
            logger.info("Connection health check started")

    def stop_health_check(self) -> None:
        if self._health_task and not self._health_task.done():
            self._health_task.cancel()
            logger.info("Connection health check stopped")
        self._health_task = None

    async def _health_loop(self) -> None:
        """Heartbeat while connected; reconnect once automatic retries are exhausted."""
        while True:
            try:
                await asyncio.sleep(self._config.health_check_interval)

                if self.is_connected():
                    self.ping()
                    continue
                if self.reconnecting:
                    continue

                token = self._current_token()
                if not token:
                    continue

                logger.info("Connection lost, attempting reconnect...")
                await self.connect(token)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.warning("Health check reconnect failed: %s", exc)

    # ── Internal ──────────────────────────────────────────────────────────

    async def _connect_with_retry(self, token: str) -> None:
        """Open a session, retrying transient failures with backoff."""
        attempt = 0
        while True:
            try:
                await self._open_session(token)
                return
            except TransportError as exc:
                attempt += 1
                if attempt > self._config.reconnect_attempts:
                    raise
                delay = self._config.reconnect_delay_for(attempt)
                logger.warning("Connect attempt %d failed (%s), retrying in %.1fs", attempt, exc, delay)
                await asyncio.sleep(delay)

    async def _open_session(self, token: str) -> None:
        """One transport open plus handshake. Raises on auth or transport failure."""
        handshake = asyncio.get_running_loop().create_future()
        self._handshake = handshake
        self._transport.bind(self._on_transport_event, self._on_transport_drop)
        try:
            self._suppress_drop = True
            try:
                await self._transport.open(token, timeout=self._config.connect_timeout)
            finally:
                self._suppress_drop = False
            self._session_id = await handshake
        except Exception:
            await self._abandon()
            raise
        finally:
            # A cancelled attempt must not clear the handshake of the attempt that replaced it
            if self._handshake is handshake:
                self._handshake = None
        logger.info("Channel session established: %s", self._session_id)

    async def _abandon(self) -> None:
        """Close a half-open transport without treating it as a drop."""
        self._suppress_drop = True
        try:
            await self._transport.close()
        except Exception as exc:
            logger.debug("Transport close failed: %s", exc)
        finally:
            self._suppress_drop = False

    def _session_established(self, reconnect_attempt: int | None = None) -> None:
        self._set_state(ConnectionState.CONNECTED)

        if not self._initialized:
            self._initialized = True
            for initializer in list(self._initializers):
                self._run_initializer(initializer)

        for listener in list(self._connect_listeners):
            try:
                listener()
            except Exception:
                logger.exception("Connect listener failed")

        if reconnect_attempt is not None:
            self._router.dispatch("reconnect", {"attempt": reconnect_attempt})

    def _run_initializer(self, initializer: SessionInitializer) -> None:
        try:
            teardown = initializer()
        except Exception:
            logger.exception("Session initializer failed")
            return
        if teardown is not None:
            self._teardowns.append(teardown)

    def _on_transport_event(self, name: str, payload: Any) -> None:
        handshake = self._handshake
        if name in ("connected", "error", "pong"):
            try:
                event = decode_event(name, payload)
            except EventDecodeError as exc:
                logger.warning("%s", exc)
                event = None

            if isinstance(event, ConnectedEvent):
                self.last_pong = event.server_time
                if handshake is not None and not handshake.done():
                    handshake.set_result(event.session_id)
            elif isinstance(event, ErrorEvent):
                logger.error("Channel error %s: %s", event.code, event.message)
                if event.code == AUTH_FAILED and handshake is not None and not handshake.done():
                    handshake.set_exception(AuthenticationError(event.message or "Authentication failed"))
            elif isinstance(event, PongEvent):
                self.last_pong = event.server_time

        self._router.dispatch(name, payload)

    def _on_transport_drop(self, reason: str) -> None:
        if self._suppress_drop:
            return
        handshake = self._handshake
        if handshake is not None and not handshake.done():
            handshake.set_exception(TransportError(f"Channel closed during handshake: {reason}"))
            return
        if self._state != ConnectionState.CONNECTED:
            return
        logger.warning("Channel dropped: %s", reason)
        self._session_id = None
        self._set_state(ConnectionState.CONNECTING)
        if not self.reconnecting:
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        attempts = self._config.reconnect_attempts
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.sleep(self._config.reconnect_delay_for(attempt))
                token = self._current_token()
                if not token:
                    logger.warning("No usable credential, giving up reconnect")
                    break

                self._router.dispatch("reconnect_attempt", {"attempt": attempt})
                logger.info("Reconnect attempt %d/%d", attempt, attempts)
                await asyncio.wait_for(self._open_session(token), timeout=self._config.connect_timeout)
            except asyncio.CancelledError:
                return
            except AuthenticationError as exc:
                logger.error("Reconnect rejected: %s", exc)
                break
            except asyncio.TimeoutError:
                await self._abandon()
                logger.warning("Reconnect attempt %d timed out", attempt)
            except Exception as exc:
                logger.warning("Reconnect attempt %d failed: %s", attempt, exc)
            else:
                self._session_established(reconnect_attempt=attempt)
                return

        logger.error("Socket reconnection failed")
        self._set_state(ConnectionState.DISCONNECTED)
        self._router.dispatch("reconnect_failed", None)

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _current_token(self) -> str | None:
        if self._credential_source is not None:
            return usable_token(self._credential_source)
        return self._token

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connection state listener failed")

    def _send_done(self, task: asyncio.Task) -> None:
        self._pending_sends.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Outbound emit failed: %s", task.exception())

    @staticmethod
    def _discard(items: list, item) -> None:
        if item in items:
            items.remove(item)
