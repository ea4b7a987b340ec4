"""LiveSyncClient, the composition root of the sync pipeline.

Wires Transport → ReconnectionController → EventDecoder →
ReconciliationEngine → Cache, plus the SubscriptionManager on the
control path. Per-session activity streams share the engine
and cache. Each client is an explicitly constructed instance with a
``connect → … → dispose`` lifecycle; nothing is kept at module level,
so tests and multiple UIs can run independent clients side by side.

Usage:
    client = LiveSyncClient(SyncConfig.from_env())
    client.connect()
    async for event in client.events(kinds={"session.ended"}):
        ...
    await client.dispose()
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

import aiohttp

from studio_live.adapters.event_bus import EventBus, Listener, kind_filter
from studio_live.adapters.events import (
    EventMessage,
    Pong,
    ServerError,
    ServerMessage,
    StudioEvent,
    Subscribed,
    Unsubscribed,
    event_kind,
)
from studio_live.shared.models.entities import Finding, Phase, Session, Task

from .activity import ActivityTransportFactory, SessionActivityStream
from .cache import Cache, CacheView, RefetchHook
from .config import SyncConfig
from .decoder import EventDecoder
from .lifecycle import ConnectionState, ConnectionStatus
from .reconcile import ReconciliationEngine
from .reconnect import ReconnectionController
from .subscription import ALL_EVENTS, SubscriptionFilter, SubscriptionManager
from .transport import RawFrame, SSETransport, Transport, WebSocketTransport

logger = logging.getLogger(__name__)

CustomTransportFactory = Callable[[SubscriptionManager], Transport]


class LiveSyncClient:
    """Keeps a local cache in sync with the studio backend's event stream."""

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        transport_factory: CustomTransportFactory | None = None,
        session: aiohttp.ClientSession | None = None,
        initial_filter: SubscriptionFilter | None = ALL_EVENTS,
    ) -> None:
        self.config = config or SyncConfig()
        self.config.validate()
        self._transport_factory = transport_factory
        self._session = session

        self._cache = Cache()
        self._view = CacheView(self._cache)
        self._events: EventBus[StudioEvent] = EventBus(maxsize=self.config.listener_queue_size)
        self._engine = ReconciliationEngine(self._cache, self._events)
        self._decoder = EventDecoder()
        self._controller = ReconnectionController(
            self._make_transport,
            base_delay=self.config.base_delay_seconds,
            growth_factor=self.config.growth_factor,
            max_delay=self.config.max_delay_seconds,
            max_attempts=self.config.max_reconnect_attempts,
            heartbeat_interval=self.config.heartbeat_interval_seconds,
            on_open=self._handle_open,
            on_frame=self._handle_frame,
            on_close=self._handle_close,
        )
        self._subscriptions = SubscriptionManager(
            self._controller,
            duplex=self.config.transport == "ws",
            initial=initial_filter,
        )
        self._activity_streams: dict[str, SessionActivityStream] = {}
        self.last_server_error: str | None = None
        self._disposed = False

    # ── read side ──

    @property
    def cache(self) -> CacheView:
        return self._view

    @property
    def status(self) -> ConnectionStatus:
        return self._controller.status

    @property
    def state(self) -> ConnectionState:
        return self._controller.state

    @property
    def controller(self) -> ReconnectionController:
        return self._controller

    @property
    def subscriptions(self) -> SubscriptionManager:
        return self._subscriptions

    @property
    def decoder(self) -> EventDecoder:
        return self._decoder

    def watch_status(self) -> Listener[ConnectionStatus]:
        """Channel of ConnectionStatus updates for status indicators."""
        return self._controller.watch()

    def events(self, kinds: Iterable[str] | None = None) -> Listener[StudioEvent]:
        """Channel of reconciled events; *kinds* limits it to those wire kinds.

        Unknown kinds only reach unfiltered listeners.
        """
        return self._events.listen(kind_filter(kinds, event_kind))

    # ── commands ──

    def connect(self) -> None:
        if self._disposed:
            raise RuntimeError("LiveSyncClient has been disposed")
        self._controller.connect()

    async def disconnect(self) -> None:
        await self._controller.disconnect()

    async def subscribe(self, subscription: SubscriptionFilter | None = None) -> None:
        await self._subscriptions.subscribe(subscription)

    async def subscribe_tasks(self, task_ids: Iterable[str]) -> None:
        await self._subscriptions.subscribe(SubscriptionFilter.for_tasks(task_ids))

    async def unsubscribe(self) -> None:
        await self._subscriptions.unsubscribe()

    def session_activity(
        self,
        session_id: str,
        *,
        transport_factory: ActivityTransportFactory | None = None,
    ) -> SessionActivityStream:
        """Activity stream of one session, writing into this client's cache.

        Repeated calls for the same session return the same stream. The
        stream is not connected; call its ``connect()``.
        """
        if self._disposed:
            raise RuntimeError("LiveSyncClient has been disposed")
        stream = self._activity_streams.get(session_id)
        if stream is None:
            stream = SessionActivityStream(
                session_id,
                self._engine,
                self.config,
                transport_factory=transport_factory,
                session=self._session,
            )
            self._activity_streams[session_id] = stream
        return stream

    def bind_refetch(self, hook: RefetchHook) -> Callable[[], None]:
        """Bind the external query layer to cache invalidations."""
        return self._cache.bind_refetch(hook)

    def load_tasks(self, tasks: Iterable[Task | dict[str, Any]]) -> None:
        self._engine.load_tasks(tasks)

    def load_sessions(
        self, sessions: Iterable[Session | dict[str, Any]], task_id: str | None = None
    ) -> None:
        self._engine.load_sessions(sessions, task_id=task_id)

    def load_phases(self, task_id: str, phases: Iterable[Phase | dict[str, Any]]) -> None:
        self._engine.load_phases(task_id, phases)

    def load_findings(self, task_id: str, findings: Iterable[Finding | dict[str, Any]]) -> None:
        self._engine.load_findings(task_id, findings)

    async def dispose(self) -> None:
        """Disconnect and close every channel. The client cannot be reused."""
        if self._disposed:
            return
        self._disposed = True
        for stream in list(self._activity_streams.values()):
            await stream.dispose()
        self._activity_streams.clear()
        await self._controller.dispose()
        self._events.close()

    async def __aenter__(self) -> LiveSyncClient:
        self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose()

    # ── pipeline wiring ──

    def _make_transport(self) -> Transport:
        if self._transport_factory is not None:
            return self._transport_factory(self._subscriptions)
        if self.config.transport == "sse":
            return SSETransport(
                self.config.events_url,
                params_provider=self._subscriptions.query_params,
                session=self._session,
            )
        return WebSocketTransport(self.config.ws_url, session=self._session)

    async def _handle_open(self, transport: Transport) -> None:
        self.last_server_error = None
        await self._subscriptions.on_open(transport)

    def _handle_frame(self, frame: RawFrame, transport: Transport) -> None:
        if transport.duplex:
            message = self._decoder.decode_ws(frame.data)
        else:
            message = self._decoder.decode_sse(frame.event, frame.data)
        self.handle_message(message)

    def _handle_close(self) -> None:
        self._subscriptions.on_close()

    def handle_message(self, message: ServerMessage | None) -> None:
        """Route one decoded server message."""
        if message is None:
            return
        if isinstance(message, EventMessage):
            self._engine.apply(message.envelope)
        elif isinstance(message, Subscribed):
            self._subscriptions.on_subscribed()
        elif isinstance(message, Unsubscribed):
            self._subscriptions.on_unsubscribed()
        elif isinstance(message, Pong):
            logger.debug("pong")
        elif isinstance(message, ServerError):
            # Filter rejections and the like; the connection stays open
            logger.warning("Server error: %s", message.message)
            self.last_server_error = message.message
            self._controller.report_error(message.message)
