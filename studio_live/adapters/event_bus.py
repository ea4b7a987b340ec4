"""Async fan-out channel bridging the sync engine to UI consumers.

The reconciliation engine publishes every decoded event here after the
cache has been updated; UI components read from their own Listener
instead of registering callbacks. The same class carries connection
status updates on a second bus owned by the reconnection controller.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Listener(Generic[T]):
    """One consumer's view of an EventBus. Async-iterable until closed."""

    def __init__(
        self,
        bus: EventBus[T],
        accepts: Callable[[T], bool] | None,
        maxsize: int,
    ) -> None:
        self._bus = bus
        self._accepts = accepts
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def wants(self, item: T) -> bool:
        return self._accepts is None or self._accepts(item)

    def _offer(self, item: T) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Listener queue full (size=%d), dropping %r",
                self._queue.qsize(), item,
            )

    def pending(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> T:
        """Return the next queued item. Raises asyncio.QueueEmpty if none."""
        return self._queue.get_nowait()

    def drain(self) -> list[T]:
        """Return and remove everything currently queued."""
        items: list[T] = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    async def get(self, timeout: float | None = None) -> T:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    async def __aiter__(self) -> AsyncIterator[T]:
        """Yield items as they arrive. Stops on close()."""
        while not self._closed:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield item
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def close(self) -> None:
        """Unregister from the bus and stop iteration."""
        if self._closed:
            return
        self._closed = True
        self._bus._remove(self)


class EventBus(Generic[T]):
    """Non-blocking publish to any number of bounded listeners.

    ``publish`` never awaits: a slow consumer loses items (logged) rather
    than stalling the engine that runs on message arrival.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self._maxsize = maxsize
        self._listeners: list[Listener[T]] = []
        self._closed = False

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def listen(
        self,
        accepts: Callable[[T], bool] | None = None,
        maxsize: int | None = None,
    ) -> Listener[T]:
        """Register a listener. *accepts* filters items; None takes everything."""
        listener: Listener[T] = Listener(self, accepts, maxsize or self._maxsize)
        self._listeners.append(listener)
        return listener

    def publish(self, item: T) -> int:
        """Deliver *item* to every interested listener. Returns the count."""
        if self._closed:
            return 0
        delivered = 0
        for listener in list(self._listeners):
            try:
                wanted = listener.wants(item)
            except Exception:
                logger.error("Listener filter raised, skipping %r", item, exc_info=True)
                continue
            if wanted:
                listener._offer(item)
                delivered += 1
        return delivered

    def _remove(self, listener: Listener[Any]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def close(self) -> None:
        """Stop all listeners permanently."""
        self._closed = True
        for listener in list(self._listeners):
            listener.close()


def kind_filter(kinds: Iterable[str] | None, kind_of: Callable[[Any], str]) -> Callable[[Any], bool] | None:
    """Build a listener filter accepting only the given kinds."""
    if kinds is None:
        return None
    wanted = frozenset(kinds)
    return lambda item: kind_of(item) in wanted
