"""Reconnection controller wrapping a Transport with capped backoff.

Owns the connection lifecycle (see ``lifecycle.py``): opens a fresh
transport per attempt, keeps a heartbeat on duplex channels, and on
close or error schedules a deferred retry after
``min(base * growth ** attempt, max_delay)``. Only ``disconnect()``
stops retrying for good; running out of attempts parks the controller
in ERROR until an explicit ``connect()``.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from studio_live.adapters.event_bus import EventBus, Listener
from studio_live.adapters.events import ping_message

from .errors import TransportError
from .lifecycle import ConnectionState, ConnectionStatus, validate_transition
from .transport import RawFrame, Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], Transport]
OpenHook = Callable[[Transport], Awaitable[None]]
FrameHook = Callable[[RawFrame, Transport], None]
CloseHook = Callable[[], None]


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    growth_factor: float = 2.0,
    max_delay: float = 30.0,
) -> float:
    """Delay before retry number *attempt* (0-based)."""
    return min(base_delay * growth_factor ** attempt, max_delay)


class ReconnectionController:
    """Keeps one transport connected whenever the caller wants it to be."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        base_delay: float = 1.0,
        growth_factor: float = 2.0,
        max_delay: float = 30.0,
        max_attempts: int | None = 5,
        heartbeat_interval: float = 30.0,
        on_open: OpenHook | None = None,
        on_frame: FrameHook | None = None,
        on_close: CloseHook | None = None,
    ) -> None:
        self._factory = transport_factory
        self.base_delay = base_delay
        self.growth_factor = growth_factor
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.heartbeat_interval = heartbeat_interval
        self._on_open = on_open
        self._on_frame = on_frame
        self._on_close = on_close

        self._state = ConnectionState.DISCONNECTED
        self._attempt = 0
        self._error: str | None = None
        self._retry_in: float | None = None
        self._transport: Transport | None = None
        self._conn_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        # Set by disconnect(); suppresses every automatic retry
        self._suppressed = False
        # Bumped whenever a connection task is superseded
        self._generation = 0
        self._status_bus: EventBus[ConnectionStatus] = EventBus(maxsize=100)

    # ── observable state ──

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            state=self._state,
            attempt=self._attempt,
            error=self._error,
            retry_in=self._retry_in,
        )

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def has_pending_retry(self) -> bool:
        return self._retry_handle is not None

    @property
    def exhausted(self) -> bool:
        return (
            self._state == ConnectionState.ERROR
            and self._retry_handle is None
            and self.max_attempts is not None
            and self._attempt >= self.max_attempts
        )

    def watch(self) -> Listener[ConnectionStatus]:
        """Listener receiving every status change from now on."""
        return self._status_bus.listen()

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(attempt, self.base_delay, self.growth_factor, self.max_delay)

    def _set_state(
        self,
        state: ConnectionState,
        *,
        error: str | None = None,
        retry_in: float | None = None,
    ) -> None:
        validate_transition(self._state, state)
        previous = self.status
        self._state = state
        self._error = error
        self._retry_in = retry_in
        current = self.status
        if current != previous:
            logger.info(
                "Connection %s -> %s attempt=%d%s",
                previous.state.value, state.value, self._attempt,
                f" error={error}" if error else "",
            )
            self._status_bus.publish(current)

    def report_error(self, message: str) -> None:
        """Surface a non-fatal server error without leaving the current state."""
        self._set_state(self._state, error=message, retry_in=self._retry_in)

    # ── commands ──

    def connect(self) -> None:
        """Open the channel. No-op while connecting or connected.

        An explicit call also revives a controller that ran out of
        attempts and skips any pending backoff wait.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        self._suppressed = False
        self._cancel_retry()
        self._attempt = 0
        self._start_attempt()

    async def disconnect(self) -> None:
        """Close the channel and stop retrying until the next connect()."""
        self._suppressed = True
        self._cancel_retry()
        await self._teardown()
        self._attempt = 0
        self._set_state(ConnectionState.DISCONNECTED)

    def stop(self) -> asyncio.Task[None]:
        """Stop retrying now and disconnect in the background.

        Safe to call from a frame handler, which runs on the receive task
        that disconnect() would cancel.
        """
        self._suppressed = True
        self._cancel_retry()
        return asyncio.get_running_loop().create_task(self.disconnect())

    async def reopen(self) -> None:
        """Replace the live connection without counting a failure.

        Used when connection parameters change (SSE filters travel in
        the URL). Does nothing after disconnect() or exhaustion.
        """
        if self._suppressed or self.exhausted:
            return
        if self._state == ConnectionState.DISCONNECTED and self._retry_handle is None:
            return
        self._cancel_retry()
        await self._teardown()
        self._attempt = 0
        if self._state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
        self._start_attempt()

    async def send(self, message: dict[str, Any]) -> bool:
        """Send on the live duplex transport. Returns False if not delivered."""
        transport = self._transport
        if (
            transport is None
            or not transport.duplex
            or self._state != ConnectionState.CONNECTED
        ):
            return False
        try:
            await transport.send(message)
        except TransportError as exc:
            logger.warning("Send failed (%s): %s", message.get("type"), exc.reason)
            return False
        return True

    # ── internals ──

    def _start_attempt(self) -> None:
        loop = asyncio.get_running_loop()
        self._set_state(ConnectionState.CONNECTING)
        transport = self._factory()
        self._transport = transport
        self._generation += 1
        self._conn_task = loop.create_task(self._run(transport, self._generation))

    async def _run(self, transport: Transport, generation: int) -> None:
        failure: str | None = None
        try:
            await transport.open()
            if not await self._handle_open(transport, generation):
                await transport.close()
                return
            async for frame in transport.frames():
                self._dispatch(frame, transport)
        except TransportError as exc:
            failure = exc.reason
        except asyncio.CancelledError:
            await transport.close()
            raise
        except Exception as exc:
            logger.exception("Unexpected error on connection to %s", transport.url)
            failure = f"{type(exc).__name__}: {exc}"
        await transport.close()
        if generation == self._generation:
            self._handle_closed(failure)

    async def _handle_open(self, transport: Transport, generation: int) -> bool:
        if generation != self._generation:
            return False
        self._attempt = 0
        self._set_state(ConnectionState.CONNECTED)
        if self._on_open is not None:
            await self._on_open(transport)
        if transport.duplex and self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.get_running_loop().create_task(
                self._heartbeat(transport)
            )
        return True

    def _dispatch(self, frame: RawFrame, transport: Transport) -> None:
        if self._on_frame is None:
            return
        try:
            self._on_frame(frame, transport)
        except Exception:
            # Never let a consumer bug close the channel
            logger.exception("Frame handler failed")

    async def _heartbeat(self, transport: Transport) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await transport.send(ping_message())
            except TransportError as exc:
                # The receive loop notices the broken connection
                logger.debug("Heartbeat ping failed: %s", exc.reason)
                return

    def _handle_closed(self, failure: str | None) -> None:
        self._stop_heartbeat()
        self._transport = None
        self._conn_task = None
        self._notify_closed()
        if self._suppressed:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        self._attempt += 1
        if self.max_attempts is not None and self._attempt >= self.max_attempts:
            logger.error(
                "Giving up after %d failed connection attempt(s): %s",
                self._attempt, failure or "connection closed",
            )
            self._set_state(ConnectionState.ERROR, error=failure or "connection closed")
            return

        delay = self.delay_for(self._attempt - 1)
        self._retry_handle = asyncio.get_running_loop().call_later(delay, self._fire_retry)
        logger.info(
            "Reconnecting in %.2fs (attempt %d/%s)",
            delay, self._attempt, self.max_attempts or "unbounded",
        )
        if failure is not None:
            self._set_state(ConnectionState.ERROR, error=failure, retry_in=delay)
        else:
            self._set_state(ConnectionState.DISCONNECTED, retry_in=delay)

    def _fire_retry(self) -> None:
        self._retry_handle = None
        if self._suppressed or self._state in (
            ConnectionState.CONNECTING, ConnectionState.CONNECTED,
        ):
            return
        self._start_attempt()

    def _notify_closed(self) -> None:
        if self._on_close is None:
            return
        try:
            self._on_close()
        except Exception:
            logger.exception("Close handler failed")

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _teardown(self) -> None:
        """Cancel the live connection task; its transport is closed on the way out."""
        self._stop_heartbeat()
        self._generation += 1
        task, self._conn_task = self._conn_task, None
        transport, self._transport = self._transport, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        elif transport is not None:
            await transport.close()
        if task is not None or transport is not None:
            self._notify_closed()

    async def dispose(self) -> None:
        """Disconnect and stop status watchers permanently."""
        await self.disconnect()
        self._status_bus.close()
