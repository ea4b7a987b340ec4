"""Adapters package - Bridge between the sync engine and its collaborators.

This package contains the typed event model, the outbound event bus,
user-facing notices, and the REST refetcher that backs cache
invalidation.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "Listener",
    "Notice",
    "notice_for",
    "Refetcher",
    "StudioApiClient",
]

from studio_live.adapters.event_bus import EventBus, Listener
from studio_live.adapters.notifications import Notice, notice_for
from studio_live.adapters.api_client import Refetcher, StudioApiClient
