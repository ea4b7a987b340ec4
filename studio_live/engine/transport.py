"""Push-channel transports: one live connection each.

A transport only knows how to open, send, yield raw frames, and close.
Lifecycle decisions (retry, heartbeat, resubscribe) belong to the
ReconnectionController, which creates a fresh transport per attempt.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from .errors import TransportClosedError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_OPEN_TIMEOUT = 10.0


@dataclass(frozen=True)
class RawFrame:
    """One inbound frame. ``event`` is the SSE event name; None for WebSocket."""
    data: str
    event: str | None = None


class Transport(ABC):
    """One persistent connection to the studio backend."""

    # Duplex transports accept in-band subscribe/ping messages.
    duplex: bool = False

    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession | None = None,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
    ) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self._session = session
        self._owns_session = session is None
        self._closed = False

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    async def open(self) -> None:
        """Connect. Raises TransportError on failure."""

    @abstractmethod
    def frames(self) -> AsyncIterator[RawFrame]:
        """Yield inbound frames until the peer closes. Raises TransportError."""

    async def send(self, message: dict[str, Any]) -> None:
        """Send one JSON message. Only duplex transports support this."""
        raise TransportError(self.url, f"{type(self).__name__} cannot send messages")

    @abstractmethod
    async def _close_connection(self) -> None: ...

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._close_connection()
        finally:
            await self._close_session()

    def _client_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class WebSocketTransport(Transport):
    """JSON-over-WebSocket channel (``ws://host:port/ws``)."""

    duplex = True

    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession | None = None,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
    ) -> None:
        super().__init__(url, session, open_timeout)
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self) -> None:
        session = self._client_session()
        try:
            self._ws = await asyncio.wait_for(
                session.ws_connect(self.url, autoping=True),
                timeout=self.open_timeout,
            )
        except asyncio.TimeoutError as exc:
            await self._close_session()
            raise TransportError(self.url, f"open timed out after {self.open_timeout}s") from exc
        except (aiohttp.ClientError, OSError) as exc:
            await self._close_session()
            raise TransportError(self.url, f"{type(exc).__name__}: {exc}") from exc
        logger.debug("WebSocket open url=%s", self.url)

    async def frames(self) -> AsyncIterator[RawFrame]:
        ws = self._ws
        if ws is None:
            raise TransportClosedError(self.url)
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    yield RawFrame(data=msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    yield RawFrame(data=msg.data.decode("utf-8", errors="replace"))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise TransportError(self.url, f"websocket error: {ws.exception()}")
                else:
                    break
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransportError(self.url, f"{type(exc).__name__}: {exc}") from exc
        logger.debug("WebSocket closed by peer url=%s code=%s", self.url, ws.close_code)

    async def send(self, message: dict[str, Any]) -> None:
        if not self.is_open:
            raise TransportClosedError(self.url)
        assert self._ws is not None
        try:
            await self._ws.send_json(message)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransportError(self.url, f"send failed: {exc}") from exc

    async def _close_connection(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None


class SSETransport(Transport):
    """Server-Sent Events channel (``{base}/api/events``).

    The subscription filter travels as query parameters, so
    *params_provider* is consulted on every open.
    """

    duplex = False

    def __init__(
        self,
        url: str,
        params_provider: Callable[[], dict[str, str]] | None = None,
        session: aiohttp.ClientSession | None = None,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
    ) -> None:
        super().__init__(url, session, open_timeout)
        self._params_provider = params_provider
        self._response: aiohttp.ClientResponse | None = None
        # Tracked for diagnostics only; never replayed as Last-Event-ID.
        self.last_event_id: str | None = None

    @property
    def is_open(self) -> bool:
        return self._response is not None and not self._response.closed

    async def open(self) -> None:
        session = self._client_session()
        params = self._params_provider() if self._params_provider else {}
        try:
            response = await session.get(
                self.url,
                params=params,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.open_timeout),
            )
        except asyncio.TimeoutError as exc:
            await self._close_session()
            raise TransportError(self.url, f"open timed out after {self.open_timeout}s") from exc
        except (aiohttp.ClientError, OSError) as exc:
            await self._close_session()
            raise TransportError(self.url, f"{type(exc).__name__}: {exc}") from exc

        if response.status != 200:
            response.release()
            await self._close_session()
            raise TransportError(self.url, f"unexpected HTTP status {response.status}")
        self._response = response
        logger.debug("SSE open url=%s params=%s", self.url, params)

    async def frames(self) -> AsyncIterator[RawFrame]:
        response = self._response
        if response is None:
            raise TransportClosedError(self.url)
        event_name: str | None = None
        data_lines: list[str] = []
        try:
            async for raw_line in response.content:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    if data_lines:
                        yield RawFrame(data="\n".join(data_lines), event=event_name)
                    event_name = None
                    data_lines = []
                    continue
                if line.startswith(":"):
                    continue  # keep-alive comment
                name, _, value = line.partition(":")
                if value.startswith(" "):
                    value = value[1:]
                if name == "event":
                    event_name = value
                elif name == "data":
                    data_lines.append(value)
                elif name == "id":
                    self.last_event_id = value
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransportError(self.url, f"{type(exc).__name__}: {exc}") from exc
        logger.debug("SSE stream ended url=%s", self.url)

    async def _close_connection(self) -> None:
        if self._response is not None:
            self._response.close()
        self._response = None
