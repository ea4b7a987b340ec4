"""Event types pushed by the studio backend.

Each wire event is a JSON object tagged by ``type`` (``task.created``,
``session.started``, ...) and is parsed into a frozen dataclass for
safe consumption by the reconciliation engine and UI listeners.
Server control messages (subscribe acks, pong, errors) and the
per-session activity feed entries live here too.
"""
from __future__ import annotations

import types
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar, Union, get_args, get_origin, get_type_hints

from studio_live.engine.errors import DecodeError
from studio_live.shared.models.entities import parse_timestamp


@dataclass(frozen=True)
class StudioEvent:
    """Base class for every domain event."""
    kind: ClassVar[str] = ""

    @property
    def task_id_or_none(self) -> str | None:
        return getattr(self, "task_id", None)


# ── Task events ──


@dataclass(frozen=True)
class TaskCreated(StudioEvent):
    kind: ClassVar[str] = "task.created"
    task_id: str
    title: str = ""


@dataclass(frozen=True)
class TaskUpdated(StudioEvent):
    kind: ClassVar[str] = "task.updated"
    task_id: str


@dataclass(frozen=True)
class TaskStatusChanged(StudioEvent):
    kind: ClassVar[str] = "task.status_changed"
    task_id: str
    to_status: str
    from_status: str = ""


# ── Session events ──


@dataclass(frozen=True)
class SessionStarted(StudioEvent):
    kind: ClassVar[str] = "session.started"
    session_id: str
    task_id: str
    phase: str = ""
    status: str = "running"
    opencode_session_id: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class SessionEnded(StudioEvent):
    kind: ClassVar[str] = "session.ended"
    session_id: str
    task_id: str
    success: bool = False


@dataclass(frozen=True)
class AgentMessage(StudioEvent):
    """Streaming agent output. Content is {content, role, is_partial}."""
    kind: ClassVar[str] = "agent.message"
    session_id: str
    task_id: str
    message: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolExecution(StudioEvent):
    """Agent tool call. Tool is {name, input, output, success}."""
    kind: ClassVar[str] = "tool.execution"
    session_id: str
    task_id: str
    tool: dict[str, Any] = field(default_factory=dict)


# ── Phase events ──


@dataclass(frozen=True)
class PhaseCompleted(StudioEvent):
    kind: ClassVar[str] = "phase.completed"
    task_id: str
    session_id: str | None = None
    phase_number: int = 0
    total_phases: int = 0
    phase_title: str = ""


@dataclass(frozen=True)
class PhaseContinuing(StudioEvent):
    kind: ClassVar[str] = "phase.continuing"
    task_id: str
    next_phase_number: int = 0
    total_phases: int = 0


# ── Workspace events ──


@dataclass(frozen=True)
class WorkspaceCreated(StudioEvent):
    kind: ClassVar[str] = "workspace.created"
    task_id: str
    path: str = ""


@dataclass(frozen=True)
class WorkspaceMerged(StudioEvent):
    kind: ClassVar[str] = "workspace.merged"
    task_id: str
    success: bool = False


@dataclass(frozen=True)
class WorkspaceDeleted(StudioEvent):
    kind: ClassVar[str] = "workspace.deleted"
    task_id: str


# ── Project / system events ──


@dataclass(frozen=True)
class ProjectOpened(StudioEvent):
    kind: ClassVar[str] = "project.opened"
    path: str = ""
    name: str = ""
    was_initialized: bool = False


@dataclass(frozen=True)
class ProjectClosed(StudioEvent):
    kind: ClassVar[str] = "project.closed"
    path: str = ""


@dataclass(frozen=True)
class ErrorEvent(StudioEvent):
    """Backend-side error broadcast. Not a channel error."""
    kind: ClassVar[str] = "error"
    message: str = ""
    context: str | None = None


@dataclass(frozen=True)
class UnknownEvent(StudioEvent):
    """An event whose kind this client does not know yet."""
    event_kind: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


# Map of wire kinds to dataclass constructors
EVENT_TYPES: dict[str, type[StudioEvent]] = {
    cls.kind: cls
    for cls in (
        TaskCreated,
        TaskUpdated,
        TaskStatusChanged,
        SessionStarted,
        SessionEnded,
        AgentMessage,
        ToolExecution,
        PhaseCompleted,
        PhaseContinuing,
        WorkspaceCreated,
        WorkspaceMerged,
        WorkspaceDeleted,
        ProjectOpened,
        ProjectClosed,
        ErrorEvent,
    )
}

# SSE event names the server emits; anything else on the stream is ignored.
SSE_EVENT_NAMES: frozenset[str] = frozenset(EVENT_TYPES)

# Resolved field annotations per event class
_FIELD_HINTS: dict[type[StudioEvent], dict[str, Any]] = {
    cls: get_type_hints(cls) for cls in EVENT_TYPES.values()
}


def _type_name(hint: Any) -> str:
    return getattr(hint, "__name__", None) or str(hint)


def _accepts(hint: Any, value: Any) -> bool:
    """True when *value* has the runtime type *hint* names."""
    if hint is Any:
        return True
    origin = get_origin(hint)
    if origin is Union or origin is types.UnionType:
        return any(_accepts(arg, value) for arg in get_args(hint) if arg is not type(None))
    if origin is not None:
        return isinstance(value, origin)
    if hint is int:
        # bool is an int subclass; JSON true is never a count
        return isinstance(value, hint) and not isinstance(value, bool)
    return isinstance(value, hint)


def event_kind(event: StudioEvent) -> str:
    """Wire kind of *event*, including the original kind of unknown events."""
    if isinstance(event, UnknownEvent):
        return event.event_kind
    return event.kind


def dict_to_event(data: dict[str, Any]) -> StudioEvent:
    """Convert a wire event dict to a typed event dataclass.

    Raises DecodeError when the ``type`` tag is missing, a required
    field is absent, or a field does not match its declared type.
    Unrecognized kinds become UnknownEvent.
    """
    kind = data.get("type")
    if not isinstance(kind, str) or not kind:
        raise DecodeError("event has no 'type' tag")
    cls = EVENT_TYPES.get(kind)
    if cls is None:
        payload = {k: v for k, v in data.items() if k != "type"}
        return UnknownEvent(event_kind=kind, payload=payload)

    hints = _FIELD_HINTS[cls]
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        required = f.default is MISSING and f.default_factory is MISSING
        value = data.get(f.name)
        if value is None:
            if required:
                raise DecodeError(f"{kind} is missing required field '{f.name}'")
            continue
        if not _accepts(hints[f.name], value):
            raise DecodeError(
                f"{kind} field '{f.name}' should be {_type_name(hints[f.name])}, "
                f"got {type(value).__name__}"
            )
        kwargs[f.name] = value
    return cls(**kwargs)


def event_to_dict(event: StudioEvent) -> dict[str, Any]:
    """Convert a typed event back to its wire dict."""
    if isinstance(event, UnknownEvent):
        return {"type": event.event_kind, **event.payload}
    d: dict[str, Any] = {"type": event.kind}
    for f in fields(event):
        val = getattr(event, f.name)
        if val is not None:
            d[f.name] = val
    return d


@dataclass(frozen=True)
class EventEnvelope:
    """Wire wrapper around one event. Consumed once, never stored."""
    event: StudioEvent
    id: str | None = None
    timestamp: str | None = None


# ── Server → client control messages ──


@dataclass(frozen=True)
class ServerMessage:
    type: ClassVar[str] = ""


@dataclass(frozen=True)
class EventMessage(ServerMessage):
    type: ClassVar[str] = "event"
    envelope: EventEnvelope


@dataclass(frozen=True)
class Subscribed(ServerMessage):
    type: ClassVar[str] = "subscribed"
    filter: dict[str, Any] | None = None


@dataclass(frozen=True)
class Unsubscribed(ServerMessage):
    type: ClassVar[str] = "unsubscribed"


@dataclass(frozen=True)
class Pong(ServerMessage):
    type: ClassVar[str] = "pong"


@dataclass(frozen=True)
class ServerError(ServerMessage):
    type: ClassVar[str] = "error"
    message: str = ""


# ── Client → server messages ──


def subscribe_message(wire_filter: dict[str, Any] | None) -> dict[str, Any]:
    return {"type": "subscribe", "filter": wire_filter}


def unsubscribe_message() -> dict[str, Any]:
    return {"type": "unsubscribe"}


def ping_message() -> dict[str, Any]:
    return {"type": "ping"}


# ── Session activity feed (``/api/sessions/{id}/activity``) ──

ACTIVITY_TYPES: frozenset[str] = frozenset({
    "tool_call",
    "tool_result",
    "agent_message",
    "reasoning",
    "step_start",
    "json_patch",
    "finished",
})

# Terminal activity: the session is over and the feed will not grow.
FINISHED = "finished"

# Fields each activity type carries besides ``type`` and ``timestamp``
_ACTIVITY_REQUIRED: dict[str, frozenset[str]] = {
    "tool_call": frozenset({"id", "tool_name"}),
    "tool_result": frozenset({"id", "tool_name", "result", "success"}),
    "agent_message": frozenset({"id", "content"}),
    "reasoning": frozenset({"id", "content"}),
    "step_start": frozenset({"id"}),
    "json_patch": frozenset({"patch"}),
    "finished": frozenset({"success"}),
}


@dataclass(frozen=True)
class SessionActivity:
    """One entry of a session's activity feed.

    Entries with an ``id`` are revised in place; a partial agent message
    is re-sent under the same id as it grows. ``json_patch`` and
    ``finished`` carry no id and are keyed by type and timestamp.
    """
    type: str
    timestamp: str
    id: str | None = None
    tool_name: str | None = None
    args: dict[str, Any] | None = None
    result: str | None = None
    success: bool | None = None
    content: str | None = None
    is_partial: bool = False
    step_name: str | None = None
    patch: list[Any] | None = None
    error: str | None = None

    @property
    def key(self) -> str:
        if self.id is not None:
            return self.id
        return f"{self.type}@{self.timestamp}"

    @property
    def is_finished(self) -> bool:
        return self.type == FINISHED

    @property
    def at(self) -> datetime:
        return parse_timestamp(self.timestamp)


_ACTIVITY_HINTS: dict[str, Any] = get_type_hints(SessionActivity)


def dict_to_activity(data: dict[str, Any]) -> SessionActivity:
    """Convert a wire activity dict to a SessionActivity.

    Raises DecodeError on an unknown ``type``, a missing required field,
    a mistyped field, or an unparsable timestamp.
    """
    kind = data.get("type")
    if not isinstance(kind, str) or kind not in ACTIVITY_TYPES:
        raise DecodeError(f"unknown activity type {kind!r}")
    required = _ACTIVITY_REQUIRED[kind] | {"timestamp"}

    kwargs: dict[str, Any] = {"type": kind}
    for f in fields(SessionActivity):
        if f.name == "type":
            continue
        value = data.get(f.name)
        if value is None:
            if f.name in required:
                raise DecodeError(f"{kind} activity is missing required field '{f.name}'")
            continue
        if not _accepts(_ACTIVITY_HINTS[f.name], value):
            raise DecodeError(
                f"{kind} activity field '{f.name}' should be "
                f"{_type_name(_ACTIVITY_HINTS[f.name])}, got {type(value).__name__}"
            )
        kwargs[f.name] = value
    try:
        parse_timestamp(kwargs["timestamp"])
    except ValueError as exc:
        raise DecodeError(f"{kind} activity has a bad timestamp: {exc}") from exc
    return SessionActivity(**kwargs)
