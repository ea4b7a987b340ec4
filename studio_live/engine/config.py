"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via STUDIO_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from urllib.parse import quote

from .errors import ConfigError

logger = logging.getLogger(__name__)

TRANSPORTS = ("ws", "sse")


def _parse_max_attempts(raw: str) -> int | None:
    """Parse STUDIO_MAX_ATTEMPTS. ``0`` or ``none`` means retry forever."""
    value = raw.strip().lower()
    if value in {"", "0", "none", "unbounded"}:
        return None
    try:
        attempts = int(value)
    except ValueError as exc:
        raise ConfigError("max_reconnect_attempts", raw, "not an integer") from exc
    if attempts < 0:
        raise ConfigError("max_reconnect_attempts", raw, "must be >= 0")
    return attempts


def _parse_float(key: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(key, raw, "not a number") from exc


@dataclass
class SyncConfig:
    """Live sync client configuration."""

    # Backend REST base URL. The SSE channel lives at {api_url}/api/events.
    api_url: str = "http://localhost:3001"
    # WebSocket channel URL.
    ws_url: str = "ws://localhost:3001/ws"
    # "ws" (duplex, in-band subscribe + ping) or "sse" (filter in the URL)
    transport: str = "ws"

    # Reconnect backoff: delay = min(base * growth ** attempt, max)
    base_delay_seconds: float = 1.0
    growth_factor: float = 2.0
    max_delay_seconds: float = 30.0
    # Consecutive failed attempts before giving up. None retries forever.
    max_reconnect_attempts: int | None = 5

    # Keep-alive ping interval for duplex transports.
    heartbeat_interval_seconds: float = 30.0

    # Per-listener queue bound on the outbound event channel.
    listener_queue_size: int = 1000

    # Logging
    log_level: str = "INFO"

    @property
    def events_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/api/events"

    def activity_url(self, session_id: str) -> str:
        """Per-session activity stream (SSE only)."""
        return f"{self.api_url.rstrip('/')}/api/sessions/{quote(session_id, safe='')}/activity"

    @property
    def channel_url(self) -> str:
        return self.ws_url if self.transport == "ws" else self.events_url

    def validate(self) -> None:
        """Raise ConfigError on values the controller cannot run with."""
        if self.transport not in TRANSPORTS:
            raise ConfigError(
                "transport", self.transport, f"expected one of {', '.join(TRANSPORTS)}"
            )
        if self.base_delay_seconds <= 0:
            raise ConfigError("base_delay_seconds", self.base_delay_seconds, "must be > 0")
        if self.growth_factor < 1:
            raise ConfigError("growth_factor", self.growth_factor, "must be >= 1")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ConfigError(
                "max_delay_seconds", self.max_delay_seconds,
                "must be >= base_delay_seconds",
            )
        if self.heartbeat_interval_seconds <= 0:
            raise ConfigError(
                "heartbeat_interval_seconds", self.heartbeat_interval_seconds, "must be > 0"
            )
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 1:
            raise ConfigError(
                "max_reconnect_attempts", self.max_reconnect_attempts, "must be >= 1 or None"
            )

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from STUDIO_* environment variables."""
        studio_vars = {
            k: v for k, v in os.environ.items() if k.startswith("STUDIO_")
        }
        if studio_vars:
            logger.info(
                "SyncConfig.from_env: STUDIO_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(studio_vars.items())),
            )
        else:
            logger.debug("SyncConfig.from_env: no STUDIO_* env vars set, using defaults")

        max_attempts_raw = os.getenv("STUDIO_MAX_ATTEMPTS")
        config = cls(
            api_url=os.getenv("STUDIO_API_URL", cls.api_url),
            ws_url=os.getenv("STUDIO_WS_URL", cls.ws_url),
            transport=os.getenv("STUDIO_TRANSPORT", cls.transport).lower(),
            base_delay_seconds=_parse_float(
                "base_delay_seconds",
                os.getenv("STUDIO_BASE_DELAY", str(cls.base_delay_seconds)),
            ),
            growth_factor=_parse_float(
                "growth_factor",
                os.getenv("STUDIO_GROWTH_FACTOR", str(cls.growth_factor)),
            ),
            max_delay_seconds=_parse_float(
                "max_delay_seconds",
                os.getenv("STUDIO_MAX_DELAY", str(cls.max_delay_seconds)),
            ),
            max_reconnect_attempts=(
                _parse_max_attempts(max_attempts_raw)
                if max_attempts_raw is not None
                else cls.max_reconnect_attempts
            ),
            heartbeat_interval_seconds=_parse_float(
                "heartbeat_interval_seconds",
                os.getenv(
                    "STUDIO_HEARTBEAT_INTERVAL", str(cls.heartbeat_interval_seconds)
                ),
            ),
            log_level=os.getenv("STUDIO_LOG_LEVEL", cls.log_level).upper(),
        )
        config.validate()
        logger.info(
            "SyncConfig.from_env: transport=%s url=%s max_attempts=%s",
            config.transport, config.channel_url, config.max_reconnect_attempts,
        )
        return config
