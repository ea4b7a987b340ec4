"""Exception hierarchy for the live sync client.

Transport failures route into the reconnect backoff and decode failures
are dropped by the decoder, so none of these should reach UI consumers.
"""
from __future__ import annotations


class StudioSyncError(Exception):
    """Base exception for all sync client errors."""


class TransportError(StudioSyncError):
    """The push channel failed to open, send, or receive."""
    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Transport error on {url}: {reason}")


class TransportClosedError(TransportError):
    """Send attempted on a transport that is not open."""
    def __init__(self, url: str):
        super().__init__(url, "transport is not open")


class DecodeError(StudioSyncError):
    """A wire payload could not be parsed into a known message."""
    def __init__(self, reason: str, raw: str = ""):
        self.reason = reason
        self.raw = raw
        super().__init__(f"Cannot decode message: {reason}")


class ConfigError(StudioSyncError):
    """Invalid sync configuration value."""
    def __init__(self, key: str, value: object, reason: str):
        self.key = key
        self.value = value
        super().__init__(f"Invalid config {key}={value!r}: {reason}")


class ApiError(StudioSyncError):
    """A REST refetch against the studio backend failed."""
    def __init__(self, path: str, status: int | None, reason: str):
        self.path = path
        self.status = status
        status_str = status if status is not None else "n/a"
        super().__init__(f"GET {path} failed (status={status_str}): {reason}")
