from __future__ import annotations

import asyncio
from functools import partial

from fake_transport import FakeServer, event_frame, wait_for
from studio_live.app import _tail
from studio_live.engine.client import LiveSyncClient
from studio_live.engine.config import SyncConfig


class _SlowApi:
    """REST stand-in whose prime overlaps live traffic on the channel."""

    def __init__(self, server: FakeServer) -> None:
        self.server = server

    async def list_tasks(self) -> list:
        await wait_for(lambda: self.server.transports and self.server.current.is_open)
        self.server.current.push(event_frame({"type": "error", "message": "disk full"}))
        await asyncio.sleep(0.05)
        return []

    async def list_sessions(self) -> list:
        # Channel gives out for good before the prime finishes
        self.server.fail_next = 100
        self.server.current.drop()
        await wait_for(lambda: self.server.opens >= 2)
        await asyncio.sleep(0.05)
        return []

    async def close(self) -> None:
        pass


def test_tail_sees_traffic_and_give_up_that_happen_during_prime(monkeypatch, capsys) -> None:
    server = FakeServer()
    monkeypatch.setattr(
        "studio_live.engine.client.LiveSyncClient",
        partial(LiveSyncClient, transport_factory=lambda subs: server.transport()),
    )
    monkeypatch.setattr(
        "studio_live.adapters.api_client.StudioApiClient",
        lambda base_url: _SlowApi(server),
    )
    config = SyncConfig(
        base_delay_seconds=0.001, max_delay_seconds=0.01, max_reconnect_attempts=2,
    )

    asyncio.run(asyncio.wait_for(_tail(config, []), timeout=5.0))

    out = capsys.readouterr().out
    assert "disk full" in out
    assert "connected" in out
    assert "Gave up reconnecting." in out
    assert server.opens == 2
