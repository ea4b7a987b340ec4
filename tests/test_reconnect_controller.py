from __future__ import annotations

import asyncio
import random

import pytest

from fake_transport import FakeServer, wait_for
from studio_live.engine.lifecycle import ConnectionState
from studio_live.engine.reconnect import ReconnectionController, backoff_delay


def _controller(server: FakeServer, **kwargs) -> ReconnectionController:
    options = dict(
        base_delay=0.001,
        growth_factor=2.0,
        max_delay=0.01,
        max_attempts=5,
        heartbeat_interval=30.0,
    )
    options.update(kwargs)
    return ReconnectionController(server.transport, **options)


def test_backoff_doubles_then_caps() -> None:
    delays = [backoff_delay(n, 1.0, 2.0, 30.0) for n in range(7)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_backoff_with_gentler_growth() -> None:
    assert backoff_delay(0, 1.0, 1.5, 30.0) == 1.0
    assert backoff_delay(2, 1.0, 1.5, 30.0) == pytest.approx(2.25)
    assert backoff_delay(20, 1.0, 1.5, 30.0) == 30.0


def test_connect_reaches_connected_and_resets_attempt() -> None:
    async def _run() -> None:
        server = FakeServer(fail_next=2)
        controller = _controller(server)
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)
        assert server.opens == 3
        assert controller.attempt == 0
        assert controller.status.error is None
        await controller.dispose()

    asyncio.run(_run())


def test_retry_delays_follow_backoff_schedule() -> None:
    async def _run() -> None:
        server = FakeServer(fail_next=100)
        controller = _controller(server)
        statuses = controller.watch()
        controller.connect()
        await wait_for(lambda: controller.exhausted)

        retry_delays = [s.retry_in for s in statuses.drain() if s.retry_in is not None]
        assert retry_delays == [0.001, 0.002, 0.004, 0.008]
        await controller.dispose()

    asyncio.run(_run())


def test_exhaustion_parks_in_error_without_timer() -> None:
    async def _run() -> None:
        server = FakeServer(fail_next=100)
        controller = _controller(server)
        controller.connect()
        await wait_for(lambda: controller.exhausted)

        assert server.opens == 5
        assert controller.state == ConnectionState.ERROR
        assert not controller.has_pending_retry
        assert controller.status.retry_in is None
        assert controller.status.error == "connection refused"

        # Nothing else happens on its own
        await asyncio.sleep(0.05)
        assert server.opens == 5

        # An explicit connect starts over from attempt zero
        server.fail_next = 0
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)
        assert server.opens == 6
        assert controller.attempt == 0
        await controller.dispose()

    asyncio.run(_run())


def test_unbounded_attempts_keep_retrying() -> None:
    async def _run() -> None:
        server = FakeServer(fail_next=12)
        controller = _controller(server, max_attempts=None)
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)
        assert server.opens == 13
        await controller.dispose()

    asyncio.run(_run())


def test_disconnect_cancels_pending_retry() -> None:
    async def _run() -> None:
        server = FakeServer(fail_next=100)
        controller = _controller(server, base_delay=10.0, max_delay=10.0)
        controller.connect()
        await wait_for(lambda: controller.has_pending_retry)
        assert controller.state == ConnectionState.ERROR

        await controller.disconnect()
        assert not controller.has_pending_retry
        assert controller.state == ConnectionState.DISCONNECTED
        assert controller.attempt == 0
        assert server.opens == 1

    asyncio.run(_run())


def test_disconnect_closes_live_transport_and_stops_retrying() -> None:
    async def _run() -> None:
        server = FakeServer()
        controller = _controller(server)
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)

        await controller.disconnect()
        assert controller.state == ConnectionState.DISCONNECTED
        assert not server.live
        await asyncio.sleep(0.05)
        assert server.opens == 1

    asyncio.run(_run())


def test_peer_close_schedules_retry_and_reconnects() -> None:
    async def _run() -> None:
        server = FakeServer()
        controller = _controller(server)
        statuses = controller.watch()
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)

        server.current.drop()
        await wait_for(lambda: server.opens == 2 and controller.state == ConnectionState.CONNECTED)

        states = [s.state for s in statuses.drain()]
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        await controller.dispose()

    asyncio.run(_run())


def test_receive_error_reports_reason() -> None:
    async def _run() -> None:
        server = FakeServer()
        controller = _controller(server, base_delay=10.0, max_delay=10.0)
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)

        server.current.fail("connection reset")
        await wait_for(lambda: controller.state == ConnectionState.ERROR)
        assert controller.status.error == "connection reset"
        assert controller.status.retry_in == 10.0
        await controller.dispose()

    asyncio.run(_run())


def test_connect_is_noop_while_connected() -> None:
    async def _run() -> None:
        server = FakeServer()
        controller = _controller(server)
        controller.connect()
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)
        controller.connect()
        await asyncio.sleep(0.01)
        assert server.opens == 1
        await controller.dispose()

    asyncio.run(_run())


def test_reopen_never_overlaps_transports() -> None:
    async def _run() -> None:
        server = FakeServer()
        controller = _controller(server)
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)

        for expected in (2, 3, 4):
            await controller.reopen()
            await wait_for(
                lambda: server.opens == expected
                and controller.state == ConnectionState.CONNECTED
            )
        assert server.max_live == 1
        assert len(server.live) == 1
        await controller.dispose()

    asyncio.run(_run())


@pytest.mark.parametrize("seed", [3, 17, 2026])
def test_random_command_sequences_keep_one_live_transport(seed: int) -> None:
    async def _run() -> None:
        rng = random.Random(seed)
        server = FakeServer()
        controller = _controller(server, max_attempts=None)

        for _ in range(300):
            op = rng.choice(("connect", "disconnect", "reopen", "drop", "fail", "refuse", "wait"))
            if op == "connect":
                controller.connect()
            elif op == "disconnect":
                await controller.disconnect()
            elif op == "reopen":
                await controller.reopen()
            elif op == "drop" and server.live:
                next(iter(server.live)).drop()
            elif op == "fail" and server.live:
                next(iter(server.live)).fail()
            elif op == "refuse":
                server.fail_next = rng.randint(1, 3)
            else:
                await asyncio.sleep(rng.choice((0, 0.001, 0.005)))
            assert len(server.live) <= 1

        server.fail_next = 0
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)
        assert server.max_live <= 1
        assert len(server.live) == 1

        await controller.dispose()
        assert not server.live

    asyncio.run(_run())


def test_reopen_does_nothing_after_disconnect() -> None:
    async def _run() -> None:
        server = FakeServer()
        controller = _controller(server)
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)
        await controller.disconnect()

        await controller.reopen()
        await asyncio.sleep(0.01)
        assert server.opens == 1
        assert controller.state == ConnectionState.DISCONNECTED

    asyncio.run(_run())


def test_heartbeat_pings_duplex_transport() -> None:
    async def _run() -> None:
        server = FakeServer()
        controller = _controller(server, heartbeat_interval=0.005)
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)
        await wait_for(lambda: {"type": "ping"} in server.current.sent)
        await controller.dispose()

    asyncio.run(_run())


def test_no_heartbeat_on_simplex_transport() -> None:
    async def _run() -> None:
        server = FakeServer()
        controller = ReconnectionController(
            lambda: server.transport(duplex=False),
            base_delay=0.001,
            max_delay=0.01,
            heartbeat_interval=0.005,
        )
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)
        await asyncio.sleep(0.03)
        assert server.current.sent == []
        assert await controller.send({"type": "ping"}) is False
        await controller.dispose()

    asyncio.run(_run())


def test_frame_handler_errors_keep_connection_open() -> None:
    async def _run() -> None:
        server = FakeServer()
        seen: list[str] = []

        def _on_frame(frame, transport) -> None:
            seen.append(frame.data)
            if frame.data == "boom":
                raise RuntimeError("consumer bug")

        controller = _controller(server)
        controller._on_frame = _on_frame
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)
        server.current.push_raw("boom")
        server.current.push_raw("after")
        await wait_for(lambda: len(seen) == 2)
        assert controller.state == ConnectionState.CONNECTED
        assert server.opens == 1
        await controller.dispose()

    asyncio.run(_run())


def test_stop_from_frame_handler_suppresses_retry_on_close() -> None:
    async def _run() -> None:
        server = FakeServer()
        stops = []

        def _on_frame(frame, transport) -> None:
            stops.append(controller.stop())

        controller = _controller(server, on_frame=_on_frame)
        controller.connect()
        await wait_for(lambda: controller.state == ConnectionState.CONNECTED)

        # Peer closes right behind the final frame
        server.current.push({"type": "done"})
        server.current.drop()
        await wait_for(lambda: stops and stops[0].done())
        await asyncio.sleep(0.02)

        assert controller.state == ConnectionState.DISCONNECTED
        assert not controller.has_pending_retry
        assert server.opens == 1
        assert not server.live
        await controller.dispose()

    asyncio.run(_run())
