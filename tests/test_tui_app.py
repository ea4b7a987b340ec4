from __future__ import annotations

import asyncio

from fake_transport import FakeServer, event_frame, wait_for
from studio_live.engine.client import LiveSyncClient
from studio_live.engine.config import SyncConfig
from studio_live.engine.lifecycle import ConnectionState
from studio_live.tui.app import StudioApp
from studio_live.tui.widgets.status_bar import StatusBar


def _client(server: FakeServer, **config) -> LiveSyncClient:
    options = dict(base_delay_seconds=0.001, max_delay_seconds=0.01)
    options.update(config)
    return LiveSyncClient(SyncConfig(**options), transport_factory=lambda subs: server.transport())


def test_status_bar_and_board_follow_the_stream():
    async def _run() -> None:
        server = FakeServer()
        client = _client(server)
        client.load_tasks([{"id": "t1", "title": "Auth flow", "status": "todo"}])
        app = StudioApp(client)
        async with app.run_test(size=(120, 40)) as pilot:
            await pilot.pause()
            bar = app.query_one(StatusBar)
            await wait_for(lambda: bar.state == "connected")
            assert bar.subscription == "all tasks"

            server.current.push(event_frame({
                "type": "session.started",
                "session_id": "s1",
                "task_id": "t1",
                "phase": "implementation",
            }))
            await wait_for(lambda: bar.executing == 1)
            assert bar.task_count == 1
            await pilot.pause()
        await client.dispose()

    asyncio.run(_run())


def test_r_reconnects_after_giving_up():
    async def _run() -> None:
        server = FakeServer(fail_next=100)
        client = _client(server, max_reconnect_attempts=2)
        app = StudioApp(client)
        async with app.run_test(size=(120, 40)) as pilot:
            await pilot.pause()
            await wait_for(lambda: client.controller.exhausted)
            bar = app.query_one(StatusBar)
            await wait_for(lambda: bar.state == "error")
            assert server.opens == 2

            server.fail_next = 0
            await pilot.press("r")
            await wait_for(lambda: client.state == ConnectionState.CONNECTED)
            await wait_for(lambda: bar.state == "connected")
            assert server.opens == 3
        await client.dispose()

    asyncio.run(_run())
