"""Live sync engine. Keeps a local cache consistent with the studio event stream."""
from .config import SyncConfig
from .errors import (
    ApiError,
    ConfigError,
    DecodeError,
    StudioSyncError,
    TransportClosedError,
    TransportError,
)
from .lifecycle import ConnectionState, ConnectionStatus

__all__ = [
    # Composition root (lazy import to avoid circular deps)
    "LiveSyncClient",
    # Pipeline stages (lazy import)
    "Cache",
    "CacheView",
    "CollectionKey",
    "EventDecoder",
    "ReconciliationEngine",
    "ReconnectionController",
    "SessionActivityStream",
    "SubscriptionFilter",
    "SubscriptionManager",
    "backoff_delay",
    # Config
    "SyncConfig",
    "load_yaml_config",
    # Lifecycle
    "ConnectionState",
    "ConnectionStatus",
    # Errors
    "ApiError",
    "ConfigError",
    "DecodeError",
    "StudioSyncError",
    "TransportClosedError",
    "TransportError",
]


def __getattr__(name: str):
    if name == "LiveSyncClient":
        from .client import LiveSyncClient
        return LiveSyncClient
    if name in ("Cache", "CacheView", "CollectionKey"):
        from . import cache
        return getattr(cache, name)
    if name == "EventDecoder":
        from .decoder import EventDecoder
        return EventDecoder
    if name == "SessionActivityStream":
        from .activity import SessionActivityStream
        return SessionActivityStream
    if name == "ReconciliationEngine":
        from .reconcile import ReconciliationEngine
        return ReconciliationEngine
    if name in ("ReconnectionController", "backoff_delay"):
        from . import reconnect
        return getattr(reconnect, name)
    if name in ("SubscriptionFilter", "SubscriptionManager"):
        from . import subscription
        return getattr(subscription, name)
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
