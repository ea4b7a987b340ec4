"""Studio Live CLI — main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

from studio_live.engine.config import SyncConfig

logger = logging.getLogger(__name__)

LOG_DIR = Path.home() / ".studio-live" / "logs"


def _configure_logging(log_level: str, to_stderr: bool) -> Path:
    """Rotating file log always; stderr only when no TUI owns the terminal."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / "studio-live.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if to_stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def with_url(config: SyncConfig, url: str) -> SyncConfig:
    """Point *config* at *url*.

    A ``ws://``/``wss://`` URL is taken as the WebSocket channel itself;
    an ``http(s)://`` URL is the backend base, from which the WebSocket
    channel (``/ws``) is derived.
    """
    url = url.rstrip("/")
    if url.startswith(("ws://", "wss://")):
        return replace(config, ws_url=url)
    if url.startswith("https://"):
        ws_url = "wss://" + url[len("https://"):] + "/ws"
    elif url.startswith("http://"):
        ws_url = "ws://" + url[len("http://"):] + "/ws"
    else:
        ws_url = config.ws_url
    return replace(config, api_url=url, ws_url=ws_url)


def build_config(args) -> SyncConfig:
    """Env, then YAML ``sync:`` section, then command-line flags."""
    config = SyncConfig.from_env()
    if args.config:
        from studio_live.engine.yaml_config import load_yaml_config

        config = load_yaml_config(args.config, base=config)
    if args.transport:
        config = replace(config, transport=args.transport)
    if args.url:
        config = with_url(config, args.url)
    if args.verbose:
        config = replace(config, log_level="DEBUG")
    config.validate()
    return config


async def _tail(config: SyncConfig, task_ids: list[str]) -> None:
    """Print status changes and reconciled events until interrupted."""
    from rich.console import Console

    from studio_live.adapters.api_client import Refetcher, StudioApiClient
    from studio_live.adapters.events import event_kind, event_to_dict
    from studio_live.adapters.notifications import notice_for
    from studio_live.engine.client import LiveSyncClient
    from studio_live.engine.lifecycle import ConnectionState
    from studio_live.engine.subscription import ALL_EVENTS, SubscriptionFilter

    console = Console()
    initial = SubscriptionFilter.for_tasks(task_ids) if task_ids else ALL_EVENTS
    client = LiveSyncClient(config, initial_filter=initial)
    api = StudioApiClient(config.api_url)
    refetcher = Refetcher(client, api)
    refetcher.bind()
    # Listen before connecting so nothing published during the prime is lost
    statuses = client.watch_status()
    events = client.events()

    async def _statuses() -> None:
        async for status in statuses:
            line = f"[bold]{status.state.value}[/bold] attempt={status.attempt}"
            if status.retry_in is not None:
                line += f" retry_in={status.retry_in:.1f}s"
            if status.error:
                line += f" [red]{status.error}[/red]"
            console.print(line)
            # A terminal error carries no retry delay
            if status.state == ConnectionState.ERROR and status.retry_in is None:
                console.print("[red]Gave up reconnecting.[/red]")
                return

    async def _events() -> None:
        async for event in events:
            payload = event_to_dict(event)
            payload.pop("type", None)
            console.print(f"[cyan]{event_kind(event)}[/cyan]", payload, highlight=True)
            notice = notice_for(event)
            if notice is not None:
                style = "red" if notice.severity == "error" else "green"
                console.print(f"  [{style}]{notice.message}[/{style}]")

    console.print(f"Connecting to [bold]{config.channel_url}[/bold] ({config.transport})")
    client.connect()
    events_task = asyncio.create_task(_events())
    try:
        await refetcher.prime()
        console.print(f"{len(client.cache.tasks())} task(s) loaded")
        await _statuses()
    finally:
        events_task.cancel()
        await asyncio.gather(events_task, return_exceptions=True)
        statuses.close()
        events.close()
        await refetcher.close()
        await client.dispose()
        await api.close()


async def _tail_activity(config: SyncConfig, session_id: str) -> bool:
    """Print one session's activity feed until it finishes.

    Returns the session's success flag, or False when the stream gave up.
    """
    from rich.console import Console

    from studio_live.engine.client import LiveSyncClient
    from studio_live.engine.lifecycle import ConnectionState

    console = Console()
    client = LiveSyncClient(config)
    stream = client.session_activity(session_id)
    entries = stream.listen()
    statuses = stream.watch_status()

    async def _entries() -> bool:
        async for activity in entries:
            console.print(_describe_activity(activity), highlight=False)
            if activity.is_finished:
                return bool(activity.success)
        return False

    async def _statuses() -> bool:
        async for status in statuses:
            if status.state == ConnectionState.ERROR and status.retry_in is None:
                console.print(f"[red]Gave up on activity stream: {status.error}[/red]")
                return False
        return False

    console.print(f"Following [bold]{stream.url}[/bold]")
    stream.connect()
    waiters = [asyncio.create_task(_entries()), asyncio.create_task(_statuses())]
    try:
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        return next(iter(done)).result()
    finally:
        for waiter in waiters:
            waiter.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)
        await client.dispose()


def _describe_activity(activity) -> str:
    """One console line (rich markup) for an activity feed entry."""
    from rich.markup import escape

    if activity.type == "tool_call":
        return f"[cyan]→ {escape(activity.tool_name)}[/cyan] {escape(str(activity.args or ''))}"
    if activity.type == "tool_result":
        style = "green" if activity.success else "red"
        return f"[{style}]← {escape(activity.tool_name)}[/{style}] {escape(activity.result)}"
    if activity.type == "agent_message":
        suffix = " …" if activity.is_partial else ""
        return f"{escape(activity.content)}{suffix}"
    if activity.type == "reasoning":
        return f"[dim]{escape(activity.content)}[/dim]"
    if activity.type == "step_start":
        return f"[bold]step[/bold] {escape(activity.step_name or '')}"
    if activity.type == "json_patch":
        return f"[dim]patch ({len(activity.patch or [])} op(s))[/dim]"
    if activity.success:
        return "[green]Session finished successfully[/green]"
    return f"[red]Session failed: {escape(activity.error or 'unknown error')}[/red]"


def _run_tui(config: SyncConfig, task_ids: list[str]) -> None:
    from studio_live.adapters.api_client import Refetcher, StudioApiClient
    from studio_live.engine.client import LiveSyncClient
    from studio_live.engine.subscription import ALL_EVENTS, SubscriptionFilter
    from studio_live.tui.app import StudioApp

    async def _main() -> None:
        initial = SubscriptionFilter.for_tasks(task_ids) if task_ids else ALL_EVENTS
        client = LiveSyncClient(config, initial_filter=initial)
        api = StudioApiClient(config.api_url)
        refetcher = Refetcher(client, api)
        try:
            await StudioApp(client, refetcher).run_async()
        finally:
            await refetcher.close()
            await client.dispose()
            await api.close()

    asyncio.run(_main())


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="studio-live",
        description="Studio Live — live task board synced from the studio backend",
    )
    parser.add_argument(
        "--transport", choices=("ws", "sse"),
        help="Push channel to use (default: STUDIO_TRANSPORT or ws)",
    )
    parser.add_argument(
        "--url", metavar="URL",
        help="Backend base URL (http://host:port) or WebSocket URL (ws://host:port/ws)",
    )
    parser.add_argument(
        "--task", metavar="TASK_ID", action="append", default=[],
        help="Only receive events for this task (repeatable)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file with a 'sync' section",
    )
    parser.add_argument(
        "--tail", action="store_true",
        help="Stream events and status to the terminal instead of the TUI",
    )
    parser.add_argument(
        "--activity", metavar="SESSION_ID",
        help="Print one session's activity feed until it finishes",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Debug logging",
    )
    args = parser.parse_args()

    from studio_live.engine.errors import ConfigError

    try:
        config = build_config(args)
    except ConfigError as exc:
        print(f"studio-live: {exc}", file=sys.stderr)
        sys.exit(2)

    log_file = _configure_logging(config.log_level, to_stderr=args.tail or bool(args.activity))
    logger.info(
        "Starting studio-live transport=%s url=%s tasks=%s config=%s log=%s",
        config.transport,
        config.channel_url,
        ",".join(args.task) or "<all>",
        args.config or "<none>",
        log_file,
    )

    if args.activity:
        try:
            ok = asyncio.run(_tail_activity(config, args.activity))
        except KeyboardInterrupt:
            return
        sys.exit(0 if ok else 1)

    if args.tail:
        try:
            asyncio.run(_tail(config, args.task))
        except KeyboardInterrupt:
            pass
        return

    _run_tui(config, args.task)


if __name__ == "__main__":
    main()
