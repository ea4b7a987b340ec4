"""Keyed in-memory store of studio entities.

UI code reads through :class:`CacheView`; only the reconciliation engine
writes. Invalidation marks a collection stale and pokes the bound
refetch hooks; the cache never performs a fetch itself.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from studio_live.shared.models.entities import Finding, Phase, Session, Task

if TYPE_CHECKING:
    from studio_live.adapters.events import SessionActivity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionKey:
    """Identifies one refetchable collection, optionally scoped to a task."""
    collection: str
    task_id: str | None = None

    def __str__(self) -> str:
        if self.task_id is None:
            return self.collection
        return f"{self.collection}:{self.task_id}"


TASKS = CollectionKey("tasks")
ALL_SESSIONS = CollectionKey("sessions")


def sessions_key(task_id: str) -> CollectionKey:
    return CollectionKey("sessions", task_id)


def phases_key(task_id: str) -> CollectionKey:
    return CollectionKey("phases", task_id)


def findings_key(task_id: str) -> CollectionKey:
    return CollectionKey("findings", task_id)


RefetchHook = Callable[[CollectionKey], None]


class Cache:
    """Current best-known snapshot of server entities."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._sessions: dict[str, Session] = {}
        self._phases: dict[str, tuple[Phase, ...]] = {}
        self._findings: dict[str, tuple[Finding, ...]] = {}
        # session id -> activity key -> entry, in arrival order
        self._activities: dict[str, dict[str, SessionActivity]] = {}
        self._executing: set[str] = set()
        self._stale: set[CollectionKey] = set()
        self._refetch_hooks: list[RefetchHook] = []
        # Bumped on every write so pollers can cheaply detect change
        self.version = 0

    # ── reads ──

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def sessions_for_task(self, task_id: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.task_id == task_id]

    def phases(self, task_id: str) -> list[Phase]:
        return list(self._phases.get(task_id, ()))

    def findings(self, task_id: str) -> list[Finding]:
        return list(self._findings.get(task_id, ()))

    def is_executing(self, task_id: str) -> bool:
        return task_id in self._executing

    def executing_task_ids(self) -> frozenset[str]:
        return frozenset(self._executing)

    def activities(self, session_id: str) -> list[SessionActivity]:
        """Activity feed of *session_id*, oldest first."""
        feed = self._activities.get(session_id)
        if not feed:
            return []
        return sorted(feed.values(), key=lambda a: a.at)

    def activity_session_ids(self) -> frozenset[str]:
        return frozenset(self._activities)

    def is_stale(self, key: CollectionKey) -> bool:
        return key in self._stale

    def stale_keys(self) -> frozenset[CollectionKey]:
        return frozenset(self._stale)

    # ── refetch binding ──

    def bind_refetch(self, hook: RefetchHook) -> Callable[[], None]:
        """Call *hook* with the key on every invalidation. Returns an unbind."""
        self._refetch_hooks.append(hook)

        def _unbind() -> None:
            if hook in self._refetch_hooks:
                self._refetch_hooks.remove(hook)

        return _unbind

    # ── writes (reconciliation engine only) ──

    def _touch(self) -> None:
        self.version += 1

    def put_task(self, task: Task) -> None:
        self._tasks[task.id] = task
        self._touch()

    def replace_tasks(self, tasks: Iterable[Task]) -> None:
        self._tasks = {t.id: t for t in tasks}
        self._touch()

    def put_session(self, session: Session) -> None:
        self._sessions[session.id] = session
        self._touch()

    def replace_sessions(self, sessions: Iterable[Session], task_id: str | None = None) -> None:
        """Replace all sessions, or only those of *task_id* when given."""
        incoming = list(sessions)
        if task_id is None:
            self._sessions = {s.id: s for s in incoming}
        else:
            kept = {
                sid: s for sid, s in self._sessions.items() if s.task_id != task_id
            }
            kept.update((s.id, s) for s in incoming)
            self._sessions = kept
        self._touch()

    def set_phases(self, task_id: str, phases: Iterable[Phase]) -> None:
        self._phases[task_id] = tuple(sorted(phases, key=lambda p: p.number))
        self._touch()

    def set_findings(self, task_id: str, findings: Iterable[Finding]) -> None:
        self._findings[task_id] = tuple(findings)
        self._touch()

    def set_executing(self, task_id: str, executing: bool) -> None:
        if executing == (task_id in self._executing):
            return
        if executing:
            self._executing.add(task_id)
        else:
            self._executing.discard(task_id)
        self._touch()

    def upsert_activity(self, session_id: str, activity: SessionActivity) -> None:
        """Insert *activity*, or replace the entry with the same key in place."""
        self._activities.setdefault(session_id, {})[activity.key] = activity
        self._touch()

    def clear_activities(self, session_id: str) -> None:
        if self._activities.pop(session_id, None) is not None:
            self._touch()

    def mark_fresh(self, key: CollectionKey) -> None:
        self._stale.discard(key)

    def invalidate(self, key: CollectionKey) -> None:
        """Mark *key* stale and notify refetch hooks."""
        self._stale.add(key)
        logger.debug("Cache invalidated %s", key)
        for hook in list(self._refetch_hooks):
            try:
                hook(key)
            except Exception:
                logger.error("Refetch hook failed for %s", key, exc_info=True)

    def reset(self) -> None:
        """Drop every entity. Used on project switch."""
        self._tasks.clear()
        self._sessions.clear()
        self._phases.clear()
        self._findings.clear()
        self._executing.clear()
        self._activities.clear()
        self._stale.clear()
        self._touch()


class CacheView:
    """Read-only facade over a Cache for UI consumers."""

    __slots__ = ("_cache",)

    def __init__(self, cache: Cache) -> None:
        self._cache = cache

    @property
    def version(self) -> int:
        return self._cache.version

    def get_task(self, task_id: str) -> Task | None:
        return self._cache.get_task(task_id)

    def tasks(self) -> list[Task]:
        return self._cache.tasks()

    def get_session(self, session_id: str) -> Session | None:
        return self._cache.get_session(session_id)

    def sessions(self) -> list[Session]:
        return self._cache.sessions()

    def sessions_for_task(self, task_id: str) -> list[Session]:
        return self._cache.sessions_for_task(task_id)

    def phases(self, task_id: str) -> list[Phase]:
        return self._cache.phases(task_id)

    def findings(self, task_id: str) -> list[Finding]:
        return self._cache.findings(task_id)

    def is_executing(self, task_id: str) -> bool:
        return self._cache.is_executing(task_id)

    def executing_task_ids(self) -> frozenset[str]:
        return self._cache.executing_task_ids()

    def activities(self, session_id: str) -> list[SessionActivity]:
        return self._cache.activities(session_id)

    def activity_session_ids(self) -> frozenset[str]:
        return self._cache.activity_session_ids()

    def is_stale(self, key: CollectionKey) -> bool:
        return self._cache.is_stale(key)

    def stale_keys(self) -> frozenset[CollectionKey]:
        return self._cache.stale_keys()
