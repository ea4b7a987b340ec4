"""Per-session activity stream.

Each running agent session has its own SSE feed at
``/api/sessions/{id}/activity`` carrying tool calls, tool results,
agent messages, reasoning, step markers and JSON patches, and ending
with one ``finished`` entry. The stream reuses the ReconnectionController
and SSETransport of the main channel. Entries go through the
reconciliation engine into the cache, then out to listeners. The
``finished`` entry closes the stream for good; the server replays the
whole feed on every reconnect, which the upsert-by-key cache absorbs.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import aiohttp

from studio_live.adapters.event_bus import EventBus, Listener
from studio_live.adapters.events import SessionActivity

from .config import SyncConfig
from .decoder import EventDecoder
from .lifecycle import ConnectionState, ConnectionStatus
from .reconcile import ReconciliationEngine
from .reconnect import ReconnectionController
from .transport import RawFrame, SSETransport, Transport

logger = logging.getLogger(__name__)

ActivityTransportFactory = Callable[[str], Transport]


class SessionActivityStream:
    """Follows one session's activity feed until it finishes."""

    def __init__(
        self,
        session_id: str,
        engine: ReconciliationEngine,
        config: SyncConfig | None = None,
        *,
        transport_factory: ActivityTransportFactory | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.session_id = session_id
        self.config = config or SyncConfig()
        self.url = self.config.activity_url(session_id)
        self._engine = engine
        self._transport_factory = transport_factory
        self._session = session
        self._decoder = EventDecoder()
        self._bus: EventBus[SessionActivity] = EventBus(maxsize=self.config.listener_queue_size)
        self._controller = ReconnectionController(
            self._make_transport,
            base_delay=self.config.base_delay_seconds,
            growth_factor=self.config.growth_factor,
            max_delay=self.config.max_delay_seconds,
            max_attempts=self.config.max_reconnect_attempts,
            heartbeat_interval=self.config.heartbeat_interval_seconds,
            on_frame=self._handle_frame,
        )
        self.finished: SessionActivity | None = None
        self._closing: asyncio.Task[None] | None = None
        self._disposed = False

    @property
    def controller(self) -> ReconnectionController:
        return self._controller

    @property
    def decoder(self) -> EventDecoder:
        return self._decoder

    @property
    def state(self) -> ConnectionState:
        return self._controller.state

    @property
    def status(self) -> ConnectionStatus:
        return self._controller.status

    @property
    def is_finished(self) -> bool:
        return self.finished is not None

    def activities(self) -> list[SessionActivity]:
        """Current feed from the cache, oldest first."""
        return self._engine.cache.activities(self.session_id)

    def watch_status(self) -> Listener[ConnectionStatus]:
        return self._controller.watch()

    def listen(self) -> Listener[SessionActivity]:
        """Channel of entries as they are applied, ``finished`` included."""
        return self._bus.listen()

    def connect(self) -> None:
        """Start following the feed. Does nothing once it has finished."""
        if self._disposed:
            raise RuntimeError("SessionActivityStream has been disposed")
        if self.is_finished:
            logger.debug("Activity stream for %s already finished", self.session_id)
            return
        self._controller.connect()

    async def disconnect(self) -> None:
        await self._controller.disconnect()

    async def wait_finished(self, timeout: float | None = None) -> SessionActivity:
        """Wait for the ``finished`` entry. Raises asyncio.TimeoutError."""
        async def _poll() -> SessionActivity:
            while self.finished is None:
                await asyncio.sleep(0.05)
            return self.finished

        return await asyncio.wait_for(_poll(), timeout=timeout)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self._closing is not None:
            await asyncio.gather(self._closing, return_exceptions=True)
        await self._controller.dispose()
        self._bus.close()

    # ── pipeline wiring ──

    def _make_transport(self) -> Transport:
        if self._transport_factory is not None:
            return self._transport_factory(self.url)
        return SSETransport(self.url, session=self._session)

    def _handle_frame(self, frame: RawFrame, transport: Transport) -> None:
        if self.is_finished:
            # Frames after finished are ignored; the close is already scheduled
            return
        activity = self._decoder.decode_activity(frame.event, frame.data)
        if activity is None:
            return
        self._engine.apply_activity(self.session_id, activity)
        self._bus.publish(activity)
        if activity.is_finished:
            self._finish(activity)

    def _finish(self, activity: SessionActivity) -> None:
        self.finished = activity
        logger.info(
            "Session %s finished (success=%s%s)",
            self.session_id,
            activity.success,
            f", error={activity.error}" if activity.error else "",
        )
        self._closing = self._controller.stop()
