"""Studio Live TUI — Textual application class."""

from __future__ import annotations

from textual import work
from textual.app import App, ComposeResult
from textual.widgets import Footer, Header

from studio_live.adapters.api_client import Refetcher
from studio_live.adapters.notifications import notice_for
from studio_live.engine.client import LiveSyncClient
from studio_live.engine.lifecycle import ConnectionState
from studio_live.tui.widgets.status_bar import StatusBar, describe_filter
from studio_live.tui.widgets.task_board import TaskBoard


class StudioApp(App):
    """Live task board for the studio backend."""

    TITLE = "Studio Live"
    SUB_TITLE = "Task Board"

    BINDINGS = [
        ("ctrl+q", "quit", "Quit"),
        ("r", "reconnect", "Reconnect"),
        ("d", "disconnect", "Disconnect"),
    ]

    def __init__(
        self,
        client: LiveSyncClient,
        refetcher: Refetcher | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.client = client
        self.refetcher = refetcher

    def compose(self) -> ComposeResult:
        yield Header()
        yield TaskBoard(self.client.cache, id="task-board")
        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        bar = self.query_one(StatusBar)
        bar.transport = self.client.config.transport
        bar.subscription = describe_filter(self.client.subscriptions.desired)
        bar.update_status(self.client.status)

        self._watch_connection()
        self._consume_events()
        if self.refetcher is not None:
            self.refetcher.bind()
            self._prime_board()
        self.client.connect()
        # Refetch results land in the cache without an event; poll its version
        self.set_interval(0.5, self._sync_board)

    @work(name="connection-status")
    async def _watch_connection(self) -> None:
        bar = self.query_one(StatusBar)
        async for status in self.client.watch_status():
            bar.update_status(status)
            bar.subscription = describe_filter(self.client.subscriptions.desired)
            if self.client.controller.exhausted:
                self.notify(
                    f"Connection lost: {status.error}. Press r to reconnect.",
                    severity="error",
                    timeout=10,
                )

    @work(name="event-stream")
    async def _consume_events(self) -> None:
        async for event in self.client.events():
            notice = notice_for(event)
            if notice is not None:
                self.notify(notice.message, severity=notice.severity)
            self._sync_board()

    @work(name="prime-board")
    async def _prime_board(self) -> None:
        assert self.refetcher is not None
        await self.refetcher.prime()
        self._sync_board()

    def _sync_board(self) -> None:
        view = self.client.cache
        if self.query_one(TaskBoard).sync():
            bar = self.query_one(StatusBar)
            bar.task_count = len(view.tasks())
            bar.executing = len(view.executing_task_ids())

    def action_reconnect(self) -> None:
        if self.client.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            self.notify("Already connected")
            return
        self.client.connect()

    async def action_disconnect(self) -> None:
        await self.client.disconnect()

    async def action_quit(self) -> None:
        """Stop refetching and close the channel before exiting."""
        if self.refetcher is not None:
            await self.refetcher.close()
        await self.client.dispose()
        await super().action_quit()
