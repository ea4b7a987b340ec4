"""Reconciliation engine: applies decoded events to the cache.

Every event kind has exactly one static rule. A rule either patches a
field whose new value is fully carried by the payload (optimistic, no
round trip), inserts an entity synthesized from the payload, or names
the collections that must be invalidated and refetched. After the
cache is updated the event is published on the outbound event bus.

Patches are idempotent under replay of the same event. Reordering of
different events is not corrected here; later invalidations and
refetches converge the cache instead.

Rules:

    task.created / task.updated        invalidate tasks
    task.status_changed                patch task.status (+ updated_at)
    session.started                    insert session, mark task executing
    session.ended                      patch session status, invalidate
                                       sessions:<task>, clear executing
    phase.completed / phase.continuing invalidate phases:<task>, sessions:<task>
    workspace.*                        invalidate tasks
    project.opened                     reset cache, invalidate tasks
    project.closed                     reset cache
    agent.message / tool.execution /
    error / unknown kinds              no cache effect

Session activity entries arrive on their own per-session stream and are
appended to that session's feed, replacing any entry with the same id.
"""
from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import replace
from typing import Any, TypeVar

from studio_live.adapters.event_bus import EventBus
from studio_live.adapters.events import (
    EVENT_TYPES,
    AgentMessage,
    ErrorEvent,
    EventEnvelope,
    PhaseCompleted,
    PhaseContinuing,
    ProjectClosed,
    ProjectOpened,
    SessionActivity,
    SessionEnded,
    SessionStarted,
    StudioEvent,
    TaskCreated,
    TaskStatusChanged,
    TaskUpdated,
    ToolExecution,
    UnknownEvent,
    WorkspaceCreated,
    WorkspaceDeleted,
    WorkspaceMerged,
    event_kind,
)
from studio_live.shared.models.entities import (
    Finding,
    Phase,
    Session,
    Task,
    utcnow_iso,
)

from .cache import (
    ALL_SESSIONS,
    TASKS,
    Cache,
    CollectionKey,
    findings_key,
    phases_key,
    sessions_key,
)

logger = logging.getLogger(__name__)

E = TypeVar("E")

Invalidations = tuple[CollectionKey, ...]


class ReconciliationEngine:
    """Single writer of the cache."""

    def __init__(
        self,
        cache: Cache,
        bus: EventBus[StudioEvent] | None = None,
        clock: Callable[[], str] = utcnow_iso,
    ) -> None:
        self._cache = cache
        self._bus = bus
        self._clock = clock
        self.applied: Counter[str] = Counter()

    @property
    def cache(self) -> Cache:
        return self._cache

    def apply_activity(self, session_id: str, activity: SessionActivity) -> None:
        """Append *activity* to the session's feed, upserting by id."""
        self._cache.upsert_activity(session_id, activity)
        self.applied[f"activity.{activity.type}"] += 1

    def apply(self, envelope: EventEnvelope) -> None:
        """Reconcile one event, then forward it to listeners."""
        event = envelope.event
        rule = _RULES[type(event)]
        keys = rule(self, event, envelope)
        # Each affected collection goes stale exactly once per event
        for key in dict.fromkeys(keys):
            self._cache.invalidate(key)
        self.applied[event_kind(event)] += 1
        if self._bus is not None:
            self._bus.publish(event)

    def _stamp(self, envelope: EventEnvelope) -> str:
        return envelope.timestamp or self._clock()

    # ── task rules ──

    def _invalidate_tasks(self, event: StudioEvent, envelope: EventEnvelope) -> Invalidations:
        # Payload does not carry the full entity; refetch instead of trusting it
        return (TASKS,)

    def _patch_task_status(self, event: TaskStatusChanged, envelope: EventEnvelope) -> Invalidations:
        task = self._cache.get_task(event.task_id)
        if task is None:
            logger.debug("status_changed for uncached task %s, nothing to patch", event.task_id)
            return ()
        if task.status == event.to_status:
            return ()
        self._cache.put_task(
            replace(task, status=event.to_status, updated_at=self._stamp(envelope))
        )
        return ()

    # ── session rules ──

    def _insert_session(self, event: SessionStarted, envelope: EventEnvelope) -> Invalidations:
        self._cache.set_executing(event.task_id, True)
        if self._cache.get_session(event.session_id) is not None:
            return ()
        self._cache.put_session(Session(
            id=event.session_id,
            task_id=event.task_id,
            phase=event.phase,
            status=event.status or "running",
            opencode_session_id=event.opencode_session_id,
            created_at=event.created_at,
            started_at=self._stamp(envelope),
        ))
        return ()

    def _end_session(self, event: SessionEnded, envelope: EventEnvelope) -> Invalidations:
        self._cache.set_executing(event.task_id, False)
        session = self._cache.get_session(event.session_id)
        status = "completed" if event.success else "failed"
        if session is not None and (session.status != status or session.completed_at is None):
            self._cache.put_session(
                replace(session, status=status, completed_at=self._stamp(envelope))
            )
        # Catch whatever fields the patch above did not cover
        return (sessions_key(event.task_id),)

    # ── phase rules ──

    def _invalidate_phases(
        self, event: PhaseCompleted | PhaseContinuing, envelope: EventEnvelope
    ) -> Invalidations:
        # Phases carry nested summaries; a new session may also have spawned
        return (phases_key(event.task_id), sessions_key(event.task_id))

    # ── project rules ──

    def _open_project(self, event: ProjectOpened, envelope: EventEnvelope) -> Invalidations:
        logger.info("Project opened (%s); resetting cache", event.path or event.name)
        self._cache.reset()
        return (TASKS,)

    def _close_project(self, event: ProjectClosed, envelope: EventEnvelope) -> Invalidations:
        logger.info("Project closed (%s); resetting cache", event.path)
        self._cache.reset()
        return ()

    def _forward_only(self, event: StudioEvent, envelope: EventEnvelope) -> Invalidations:
        return ()

    # ── authoritative fetch results ──

    def load_tasks(self, tasks: Iterable[Task | dict[str, Any]]) -> None:
        self._cache.replace_tasks(_coerce(Task, t) for t in tasks)
        self._cache.mark_fresh(TASKS)

    def load_sessions(
        self,
        sessions: Iterable[Session | dict[str, Any]],
        task_id: str | None = None,
    ) -> None:
        self._cache.replace_sessions((_coerce(Session, s) for s in sessions), task_id=task_id)
        self._cache.mark_fresh(ALL_SESSIONS if task_id is None else sessions_key(task_id))

    def load_phases(self, task_id: str, phases: Iterable[Phase | dict[str, Any]]) -> None:
        self._cache.set_phases(task_id, (_coerce(Phase, p) for p in phases))
        self._cache.mark_fresh(phases_key(task_id))

    def load_findings(self, task_id: str, findings: Iterable[Finding | dict[str, Any]]) -> None:
        self._cache.set_findings(task_id, (_coerce(Finding, f) for f in findings))
        self._cache.mark_fresh(findings_key(task_id))


def _coerce(cls: type[E], item: E | dict[str, Any]) -> E:
    if isinstance(item, dict):
        return cls.from_dict(item)  # type: ignore[attr-defined]
    return item


Rule = Callable[[ReconciliationEngine, Any, EventEnvelope], Invalidations]

_RULES: dict[type[StudioEvent], Rule] = {
    TaskCreated: ReconciliationEngine._invalidate_tasks,
    TaskUpdated: ReconciliationEngine._invalidate_tasks,
    TaskStatusChanged: ReconciliationEngine._patch_task_status,
    SessionStarted: ReconciliationEngine._insert_session,
    SessionEnded: ReconciliationEngine._end_session,
    PhaseCompleted: ReconciliationEngine._invalidate_phases,
    PhaseContinuing: ReconciliationEngine._invalidate_phases,
    WorkspaceCreated: ReconciliationEngine._invalidate_tasks,
    WorkspaceMerged: ReconciliationEngine._invalidate_tasks,
    WorkspaceDeleted: ReconciliationEngine._invalidate_tasks,
    ProjectOpened: ReconciliationEngine._open_project,
    ProjectClosed: ReconciliationEngine._close_project,
    AgentMessage: ReconciliationEngine._forward_only,
    ToolExecution: ReconciliationEngine._forward_only,
    ErrorEvent: ReconciliationEngine._forward_only,
    UnknownEvent: ReconciliationEngine._forward_only,
}


def _check_exhaustive() -> None:
    """Fail at import if an event kind was added without a rule."""
    missing = sorted(kind for kind, cls in EVENT_TYPES.items() if cls not in _RULES)
    if missing:
        raise RuntimeError(f"No reconciliation rule for event kind(s): {', '.join(missing)}")


_check_exhaustive()
