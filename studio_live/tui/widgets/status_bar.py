"""Status bar — bottom bar showing connection state and board counts."""

from __future__ import annotations

import time
from typing import Optional

from textual.reactive import reactive
from textual.timer import Timer
from textual.widget import Widget
from rich.text import Text

from studio_live.engine.lifecycle import ConnectionStatus
from studio_live.engine.subscription import SubscriptionFilter


def describe_filter(subscription: SubscriptionFilter | None) -> str:
    if subscription is None:
        return "unsubscribed"
    if subscription.task_ids is None:
        return "all tasks"
    return ", ".join(sorted(subscription.task_ids))


def _format_elapsed(seconds: float) -> str:
    """Format elapsed seconds into a human-readable string."""
    secs = int(seconds)
    if secs < 60:
        return f"{secs}s"
    elif secs < 3600:
        m, s = divmod(secs, 60)
        return f"{m}m {s}s"
    else:
        h, remainder = divmod(secs, 3600)
        m = remainder // 60
        return f"{h}h {m}m"


class StatusBar(Widget):
    """Single-line status bar with connection state and task counts."""

    DEFAULT_CSS = """
    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
    }
    """

    state: reactive[str] = reactive("disconnected")
    transport: reactive[str] = reactive("ws")
    attempt: reactive[int] = reactive(0)
    error: reactive[str] = reactive("")
    retry_in: reactive[Optional[float]] = reactive(None)
    subscription: reactive[str] = reactive("all tasks")
    task_count: reactive[int] = reactive(0)
    executing: reactive[int] = reactive(0)

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._connected_at: Optional[float] = None
        self._uptime_timer: Timer | None = None

    def update_status(self, status: ConnectionStatus) -> None:
        self.attempt = status.attempt
        self.error = status.error or ""
        self.retry_in = status.retry_in
        self.state = status.state.value

    def watch_state(self, old_value: str, new_value: str) -> None:
        """Track connection uptime while connected."""
        if new_value == "connected" and old_value != "connected":
            self._connected_at = time.monotonic()
            if self._uptime_timer is None:
                self._uptime_timer = self.set_interval(1.0, self._refresh_uptime)
        elif old_value == "connected" and new_value != "connected":
            self._connected_at = None
            if self._uptime_timer is not None:
                self._uptime_timer.stop()
                self._uptime_timer = None

    def _refresh_uptime(self) -> None:
        self.refresh()

    def render(self) -> Text:
        status_colors = {
            "connected": "green",
            "connecting": "yellow",
            "disconnected": "red",
            "error": "red bold",
        }
        color = status_colors.get(self.state, "white")

        bar = Text()
        bar.append(f" {self.transport.upper()} ", style="bold")
        bar.append(" │ ", style="dim")

        status_display = f"● {self.state}"
        if self._connected_at is not None:
            status_display += f" ({_format_elapsed(time.monotonic() - self._connected_at)})"
        bar.append(status_display, style=color)

        if self.attempt:
            bar.append(f"  attempt {self.attempt}", style="dim")
        if self.retry_in is not None:
            bar.append(f"  retry in {self.retry_in:.1f}s", style="yellow")
        if self.error:
            bar.append(f"  {self.error}", style="dim red")

        bar.append(" │ ", style="dim")
        bar.append(self.subscription, style="cyan")
        bar.append(" │ ", style="dim")
        bar.append(f"{self.task_count} tasks", style="dim")
        if self.executing:
            bar.append(f", {self.executing} executing", style="yellow")
        return bar
