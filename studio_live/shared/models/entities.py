"""Cache entities mirroring the studio backend's REST payloads.

Entities are treated as immutable snapshots: the reconciliation engine
replaces them with ``dataclasses.replace`` instead of mutating fields,
so a reader holding an old instance keeps a stable view.
"""

from __future__ import annotations

import re
from dataclasses import MISSING, dataclass, fields
from datetime import datetime, timezone
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# Backend timestamps may carry nanoseconds; datetime keeps microseconds
_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp (``Z`` suffix allowed) as an aware datetime.

    Naive values are taken as UTC. Raises ValueError when unparsable.
    """
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _pick(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys *cls* declares; REST payloads carry extras.

    Raises ValueError when a field without a default is missing or null.
    """
    picked: dict[str, Any] = {}
    for f in fields(cls):
        if data.get(f.name) is not None:
            picked[f.name] = data[f.name]
        elif f.default is MISSING and f.default_factory is MISSING:
            raise ValueError(f"{cls.__name__} row has no '{f.name}'")
    return picked


@dataclass(frozen=True)
class Task:
    """A kanban task. ``status`` is the column it sits in."""
    id: str
    title: str = ""
    description: str = ""
    status: str = "todo"
    workspace_path: str | None = None
    roadmap_item_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(**_pick(cls, data))


@dataclass(frozen=True)
class Session:
    """One agent session run against a task phase."""
    id: str
    task_id: str
    phase: str = ""
    status: str = "pending"
    opencode_session_id: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(**_pick(cls, data))


@dataclass(frozen=True)
class Phase:
    """One implementation phase of a multi-phase plan."""
    number: int
    title: str = ""
    status: str = "pending"
    content: str = ""
    session_id: str | None = None
    # Nested summary (files changed, notes); too structured to patch from events.
    summary: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Phase:
        return cls(**_pick(cls, data))


@dataclass(frozen=True)
class Finding:
    """A review finding raised against a task's workspace."""
    id: str
    file_path: str | None = None
    title: str = ""
    description: str = ""
    severity: str = "warning"
    status: str = "open"
    line_start: int | None = None
    line_end: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Finding:
        return cls(**_pick(cls, data))
