"""REST refetch layer for invalidated cache collections.

The sync engine only decides *when* a collection is stale; this module
owns the HTTP side. ``Refetcher`` is bound to cache invalidation,
fetches the stale collection from the studio backend with aiohttp, and
loads the result back through the client (the cache's single writer).
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import aiohttp

from studio_live.engine.cache import ALL_SESSIONS, TASKS, CollectionKey
from studio_live.engine.errors import ApiError

if TYPE_CHECKING:
    from studio_live.engine.client import LiveSyncClient

logger = logging.getLogger(__name__)


def _items(payload: Any, key: str) -> list[dict[str, Any]]:
    """Accept both bare lists and ``{key: [...]}`` wrappers."""
    if isinstance(payload, dict):
        payload = payload.get(key, [])
    if not isinstance(payload, list):
        raise ValueError(f"expected a list of {key}, got {type(payload).__name__}")
    return [item for item in payload if isinstance(item, dict)]


class StudioApiClient:
    """Thin aiohttp client for the read endpoints the cache mirrors."""

    def __init__(
        self,
        base_url: str,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _client_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def get_json(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._client_session().get(url, timeout=self._timeout) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise ApiError(path, resp.status, body[:200] or resp.reason or "")
                return await resp.json()
        except asyncio.TimeoutError as exc:
            raise ApiError(path, None, "request timed out") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise ApiError(path, None, f"{type(exc).__name__}: {exc}") from exc

    async def list_tasks(self) -> list[dict[str, Any]]:
        return _items(await self.get_json("/api/tasks"), "tasks")

    async def list_sessions(self) -> list[dict[str, Any]]:
        return _items(await self.get_json("/api/sessions"), "sessions")

    async def list_task_sessions(self, task_id: str) -> list[dict[str, Any]]:
        return _items(await self.get_json(f"/api/tasks/{task_id}/sessions"), "sessions")

    async def get_task_phases(self, task_id: str) -> list[dict[str, Any]]:
        return _items(await self.get_json(f"/api/tasks/{task_id}/phases"), "phases")

    async def get_task_findings(self, task_id: str) -> list[dict[str, Any]]:
        return _items(await self.get_json(f"/api/tasks/{task_id}/findings"), "findings")

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class Refetcher:
    """Refetches whatever the cache marks stale.

    Concurrent invalidations of the same key coalesce: while a fetch is
    in flight, further invalidations schedule exactly one follow-up.
    """

    def __init__(self, client: LiveSyncClient, api: StudioApiClient) -> None:
        self._client = client
        self._api = api
        self._inflight: dict[CollectionKey, asyncio.Task[None]] = {}
        self._again: set[CollectionKey] = set()
        self._unbind = None
        self.failures = 0

    def bind(self) -> None:
        if self._unbind is None:
            self._unbind = self._client.bind_refetch(self._on_invalidate)

    def _on_invalidate(self, key: CollectionKey) -> None:
        if key in self._inflight:
            self._again.add(key)
            return
        task = asyncio.get_running_loop().create_task(self._run(key))
        self._inflight[key] = task

    async def _run(self, key: CollectionKey) -> None:
        try:
            while True:
                self._again.discard(key)
                await self.refetch(key)
                if key not in self._again:
                    break
        finally:
            self._inflight.pop(key, None)

    async def refetch(self, key: CollectionKey) -> bool:
        """Fetch *key* and load it. Returns False (key stays stale) on failure."""
        try:
            if key == TASKS:
                self._client.load_tasks(await self._api.list_tasks())
            elif key == ALL_SESSIONS:
                self._client.load_sessions(await self._api.list_sessions())
            elif key.collection == "sessions" and key.task_id:
                self._client.load_sessions(
                    await self._api.list_task_sessions(key.task_id), task_id=key.task_id
                )
            elif key.collection == "phases" and key.task_id:
                self._client.load_phases(key.task_id, await self._api.get_task_phases(key.task_id))
            elif key.collection == "findings" and key.task_id:
                self._client.load_findings(
                    key.task_id, await self._api.get_task_findings(key.task_id)
                )
            else:
                logger.warning("No refetch route for %s", key)
                return False
        except (ApiError, ValueError, TypeError) as exc:
            self.failures += 1
            logger.warning("Refetch of %s failed: %s", key, exc)
            return False
        logger.debug("Refetched %s", key)
        return True

    async def prime(self) -> None:
        """Initial authoritative load of the board."""
        await self.refetch(TASKS)
        await self.refetch(ALL_SESSIONS)

    async def close(self) -> None:
        if self._unbind is not None:
            self._unbind()
            self._unbind = None
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        self._again.clear()
