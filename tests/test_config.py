from __future__ import annotations

import os
from argparse import Namespace
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from studio_live.app import build_config, with_url
from studio_live.engine.config import SyncConfig
from studio_live.engine.errors import ConfigError
from studio_live.engine.yaml_config import load_yaml_config


def _clean_env() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if not k.startswith("STUDIO_")}


def test_defaults_match_reconnect_policy() -> None:
    config = SyncConfig()
    assert config.transport == "ws"
    assert config.base_delay_seconds == 1.0
    assert config.growth_factor == 2.0
    assert config.max_delay_seconds == 30.0
    assert config.max_reconnect_attempts == 5
    assert config.heartbeat_interval_seconds == 30.0
    assert config.events_url == "http://localhost:3001/api/events"
    assert config.channel_url == "ws://localhost:3001/ws"


def test_from_env_overrides() -> None:
    env = _clean_env()
    env.update({
        "STUDIO_API_URL": "http://studio:9000/",
        "STUDIO_TRANSPORT": "SSE",
        "STUDIO_BASE_DELAY": "3",
        "STUDIO_GROWTH_FACTOR": "1.5",
        "STUDIO_MAX_ATTEMPTS": "0",
        "STUDIO_LOG_LEVEL": "debug",
    })
    with patch.dict(os.environ, env, clear=True):
        config = SyncConfig.from_env()
    assert config.transport == "sse"
    assert config.base_delay_seconds == 3.0
    assert config.growth_factor == 1.5
    assert config.max_reconnect_attempts is None
    assert config.log_level == "DEBUG"
    assert config.channel_url == "http://studio:9000/api/events"


@pytest.mark.parametrize(
    "name,value",
    [
        ("STUDIO_TRANSPORT", "carrier-pigeon"),
        ("STUDIO_BASE_DELAY", "soon"),
        ("STUDIO_MAX_ATTEMPTS", "-2"),
        ("STUDIO_MAX_DELAY", "0.1"),
    ],
)
def test_from_env_rejects_bad_values(name: str, value: str) -> None:
    env = _clean_env()
    env[name] = value
    with patch.dict(os.environ, env, clear=True):
        with pytest.raises(ConfigError):
            SyncConfig.from_env()


def test_yaml_overlays_sync_section(tmp_path: Path) -> None:
    path = tmp_path / "studio.yaml"
    path.write_text(yaml.safe_dump({
        "sync": {
            "transport": "sse",
            "api_url": "http://studio.local:3001",
            "base_delay_seconds": "2",
            "max_reconnect_attempts": None,
            "listener_queue_size": 50,
            "colour": "blue",
        },
        "other": {"ignored": True},
    }), encoding="utf-8")

    config = load_yaml_config(path, base=SyncConfig())
    assert config.transport == "sse"
    assert config.api_url == "http://studio.local:3001"
    assert config.base_delay_seconds == 2.0
    assert config.max_reconnect_attempts is None
    assert config.listener_queue_size == 50
    assert not hasattr(config, "colour")


def test_yaml_leaves_base_untouched(tmp_path: Path) -> None:
    path = tmp_path / "studio.yaml"
    path.write_text("sync:\n  transport: sse\n  growth_factor: 3\n", encoding="utf-8")
    base = SyncConfig()

    config = load_yaml_config(path, base=base)
    assert config is not base
    assert config.transport == "sse"
    assert config.growth_factor == 3.0
    assert base.transport == "ws"
    assert base.growth_factor == 2.0


def test_yaml_invalid_value_raises(tmp_path: Path) -> None:
    path = tmp_path / "studio.yaml"
    path.write_text("sync:\n  max_reconnect_attempts: lots\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_yaml_config(path, base=SyncConfig())


def test_yaml_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml", base=SyncConfig())


def test_with_url_derives_ws_channel() -> None:
    config = with_url(SyncConfig(), "https://studio.example.com/")
    assert config.api_url == "https://studio.example.com"
    assert config.ws_url == "wss://studio.example.com/ws"

    config = with_url(SyncConfig(), "ws://127.0.0.1:4000/socket")
    assert config.ws_url == "ws://127.0.0.1:4000/socket"
    assert config.api_url == SyncConfig().api_url


def test_cli_flags_win_over_yaml(tmp_path: Path) -> None:
    path = tmp_path / "studio.yaml"
    path.write_text("sync:\n  transport: sse\n  log_level: warning\n", encoding="utf-8")
    args = Namespace(
        config=str(path),
        transport="ws",
        url="http://10.0.0.5:3001",
        verbose=True,
    )
    with patch.dict(os.environ, _clean_env(), clear=True):
        config = build_config(args)
    assert config.transport == "ws"
    assert config.ws_url == "ws://10.0.0.5:3001/ws"
    assert config.log_level == "DEBUG"
