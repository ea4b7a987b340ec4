"""Subscription filter bookkeeping across reconnects.

The server keeps no subscription state across a dropped connection, so
the desired filter is re-asserted on every open. Duplex channels carry
it as an in-band ``subscribe`` message (always the first outbound
message); SSE carries it as the ``task_ids`` query parameter, so a
filter change on SSE means reopening the stream.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from studio_live.adapters.events import subscribe_message, unsubscribe_message

from .lifecycle import ConnectionState
from .reconnect import ReconnectionController
from .transport import Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionFilter:
    """All events (``task_ids is None``) or events for a non-empty task set."""
    task_ids: frozenset[str] | None = None

    def __post_init__(self) -> None:
        if self.task_ids is None:
            return
        ids = frozenset(self.task_ids)
        if not ids:
            raise ValueError("task filter must name at least one task id")
        object.__setattr__(self, "task_ids", ids)

    @classmethod
    def for_tasks(cls, task_ids: Iterable[str]) -> SubscriptionFilter:
        return cls(task_ids=frozenset(task_ids))

    @property
    def is_all(self) -> bool:
        return self.task_ids is None

    def matches(self, task_id: str | None) -> bool:
        """Mirror of the server-side rule: events without a task always pass."""
        if self.task_ids is None or task_id is None:
            return True
        return task_id in self.task_ids

    def to_wire(self) -> dict[str, Any] | None:
        if self.task_ids is None:
            return None
        return {"task_ids": sorted(self.task_ids)}

    def query_params(self) -> dict[str, str]:
        if self.task_ids is None:
            return {}
        return {"task_ids": ",".join(sorted(self.task_ids))}


ALL_EVENTS = SubscriptionFilter()


class SubscriptionManager:
    """Keeps the server-side filter equal to the UI's desired filter."""

    def __init__(
        self,
        controller: ReconnectionController,
        duplex: bool = True,
        initial: SubscriptionFilter | None = ALL_EVENTS,
    ) -> None:
        self._controller = controller
        self._duplex = duplex
        self._desired: SubscriptionFilter | None = initial
        # Filter in force on the current connection; None when nothing is
        self._sent: SubscriptionFilter | None = None
        # Filter baked into the SSE URL of the connection being opened
        self._opening_with: SubscriptionFilter | None = None
        self._is_subscribed = False

    @property
    def desired(self) -> SubscriptionFilter | None:
        return self._desired

    @property
    def sent(self) -> SubscriptionFilter | None:
        return self._sent

    @property
    def is_subscribed(self) -> bool:
        return self._is_subscribed

    @property
    def in_sync(self) -> bool:
        return self._sent == self._desired

    async def subscribe(self, subscription: SubscriptionFilter | None = None) -> None:
        """Set the desired filter (None means all events) and push it if live."""
        self._desired = subscription if subscription is not None else ALL_EVENTS
        logger.debug("Desired filter -> %s", self._desired.to_wire())
        if self._duplex:
            if self._controller.state == ConnectionState.CONNECTED:
                await self._send_desired()
        elif self._sent != self._desired:
            await self._controller.reopen()

    async def unsubscribe(self) -> None:
        """Clear the desired filter and tell the server, if connected."""
        self._desired = None
        if self._duplex:
            if self._controller.state == ConnectionState.CONNECTED:
                if await self._controller.send(unsubscribe_message()):
                    self._sent = None
        else:
            # An SSE stream cannot express "no events"; close it instead.
            await self._controller.disconnect()

    def query_params(self) -> dict[str, str]:
        """SSE query for the connection about to open."""
        self._opening_with = self._desired
        if self._desired is None:
            return {}
        return self._desired.query_params()

    async def on_open(self, transport: Transport) -> None:
        """Re-assert the desired filter on a freshly opened connection."""
        if not transport.duplex:
            self._sent = self._opening_with
            self._is_subscribed = self._sent is not None
            return
        if self._desired is None:
            return
        wanted = self._desired
        # Raises TransportError on failure, which routes into backoff
        await transport.send(subscribe_message(wanted.to_wire()))
        self._sent = wanted

    def on_close(self) -> None:
        self._sent = None
        self._is_subscribed = False

    def on_subscribed(self) -> None:
        self._is_subscribed = True

    def on_unsubscribed(self) -> None:
        self._is_subscribed = False

    async def _send_desired(self) -> None:
        wanted = self._desired
        if wanted is None:
            return
        if await self._controller.send(subscribe_message(wanted.to_wire())):
            self._sent = wanted
