"""YAML configuration loader.

Overlays the ``sync`` section of a YAML file on top of the env-derived
SyncConfig, so a checked-in file can pin channel URLs and backoff policy.

Example YAML:
    sync:
      transport: sse
      api_url: http://localhost:3001
      ws_url: ws://localhost:3001/ws
      base_delay_seconds: 1.0
      growth_factor: 2.0
      max_delay_seconds: 30
      max_reconnect_attempts: 5     # or null to retry forever
      heartbeat_interval_seconds: 30
      log_level: DEBUG
"""
from __future__ import annotations

import logging
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from .config import SyncConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

_FLOAT_KEYS = {
    "base_delay_seconds",
    "growth_factor",
    "max_delay_seconds",
    "heartbeat_interval_seconds",
}
_INT_KEYS = {"listener_queue_size"}


def _coerce(key: str, value: object) -> object:
    if key in _FLOAT_KEYS:
        try:
            return float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ConfigError(key, value, "not a number") from exc
    if key in _INT_KEYS:
        try:
            return int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ConfigError(key, value, "not an integer") from exc
    if key == "max_reconnect_attempts":
        if value is None or value == 0:
            return None
        if not isinstance(value, int) or isinstance(value, bool):
            raise ConfigError(key, value, "expected an integer or null")
        return value
    if key == "transport":
        return str(value).lower()
    if key == "log_level":
        return str(value).upper()
    return str(value)


def load_yaml_config(path: str | Path, base: SyncConfig | None = None) -> SyncConfig:
    """Load a YAML config file and overlay its ``sync`` section on *base*.

    *base* defaults to ``SyncConfig.from_env()``. Unknown keys are
    logged and ignored; invalid values raise ConfigError.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ConfigError("<root>", type(raw).__name__, "expected a mapping")

    config = base if base is not None else SyncConfig.from_env()
    section = raw.get("sync") or {}
    if not isinstance(section, dict):
        raise ConfigError("sync", section, "expected a mapping")

    known = {f.name for f in fields(SyncConfig)}
    overrides: dict[str, Any] = {}
    for key, value in section.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown sync key %r in %s", key, path)
            continue
        overrides[key] = _coerce(key, value)
    # *base* belongs to the caller; overlay onto a copy
    config = replace(config, **overrides)

    config.validate()
    logger.info(
        "Loaded YAML config %s: transport=%s url=%s",
        path.name, config.transport, config.channel_url,
    )
    return config
