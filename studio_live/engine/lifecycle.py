"""Connection lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    DISCONNECTED ──> CONNECTING ──┬──> CONNECTED ──┬──> DISCONNECTED
         ^                        │                └──> ERROR
         │                        ├──> DISCONNECTED
         │                        └──> ERROR
         │
    ERROR ──> CONNECTING  (retry timer or explicit connect)
    ERROR ──> DISCONNECTED  (explicit disconnect or pending retry)
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
        ConnectionState.ERROR,
    },
    ConnectionState.CONNECTED: {
        ConnectionState.DISCONNECTED,
        ConnectionState.ERROR,
        # Server error messages re-publish status without leaving CONNECTED
        ConnectionState.CONNECTED,
    },
    ConnectionState.ERROR: {
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
        ConnectionState.ERROR,
    },
}


def validate_transition(current: ConnectionState, target: ConnectionState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid connection transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


@dataclass(frozen=True)
class ConnectionStatus:
    """Snapshot of the connection published to status watchers."""
    state: ConnectionState = ConnectionState.DISCONNECTED
    attempt: int = 0
    error: str | None = None
    retry_in: float | None = None
