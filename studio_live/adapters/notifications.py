"""User-facing notices for events worth a toast.

Pure mapping from a reconciled event to an optional Notice; the UI
decides how to show it (the TUI uses ``App.notify``).
"""
from __future__ import annotations

from dataclasses import dataclass

from studio_live.adapters.events import (
    ErrorEvent,
    PhaseCompleted,
    PhaseContinuing,
    SessionEnded,
    SessionStarted,
    StudioEvent,
)


@dataclass(frozen=True)
class Notice:
    severity: str  # "information", "warning", "error" (Textual's names)
    message: str


def notice_for(event: StudioEvent) -> Notice | None:
    """Return the notice for *event*, or None if it is not toast-worthy."""
    if isinstance(event, SessionStarted):
        phase = event.phase or "Agent"
        return Notice("information", f"{phase} session started")
    if isinstance(event, SessionEnded):
        if event.success:
            return Notice("information", "Session completed successfully")
        return Notice("error", "Session failed")
    if isinstance(event, PhaseCompleted):
        return Notice(
            "information",
            f"Phase {event.phase_number}/{event.total_phases} completed: {event.phase_title}",
        )
    if isinstance(event, PhaseContinuing):
        return Notice(
            "information",
            f"Starting phase {event.next_phase_number}/{event.total_phases}",
        )
    if isinstance(event, ErrorEvent):
        detail = f" ({event.context})" if event.context else ""
        return Notice("error", f"{event.message}{detail}")
    return None
