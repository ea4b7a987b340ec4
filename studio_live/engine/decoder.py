"""Wire decoding for both push transports.

WebSocket frames are JSON objects discriminated by ``type``; SSE frames
arrive as a named event plus a JSON envelope body. Session activity
frames are named after their activity type and carry the bare entry.
Anything malformed is logged and dropped here so the reconciliation
engine only ever sees typed messages and the connection stays open.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from studio_live.adapters.events import (
    ACTIVITY_TYPES,
    SSE_EVENT_NAMES,
    EventEnvelope,
    EventMessage,
    Pong,
    ServerError,
    ServerMessage,
    SessionActivity,
    Subscribed,
    Unsubscribed,
    dict_to_activity,
    dict_to_event,
)
from studio_live.engine.errors import DecodeError

logger = logging.getLogger(__name__)

# SSE frames the server sends that carry no domain event
_SSE_IGNORED = frozenset({"connected", "keepalive", "message"})

# Longest raw payload echoed into a log line
_LOG_PREVIEW = 200


def _preview(raw: str) -> str:
    if len(raw) <= _LOG_PREVIEW:
        return raw
    return raw[:_LOG_PREVIEW] + "..."


def _load_object(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError("payload is not UTF-8") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"invalid JSON: {exc.msg}", raw) from exc
    if not isinstance(data, dict):
        raise DecodeError(f"expected a JSON object, got {type(data).__name__}", raw)
    return data


def _envelope_from(data: Any) -> EventEnvelope:
    if not isinstance(data, dict):
        raise DecodeError("envelope is not an object")
    event = data.get("event")
    if not isinstance(event, dict):
        raise DecodeError("envelope has no 'event' object")
    envelope_id = data.get("id")
    timestamp = data.get("timestamp")
    return EventEnvelope(
        event=dict_to_event(event),
        id=str(envelope_id) if envelope_id is not None else None,
        timestamp=str(timestamp) if timestamp is not None else None,
    )


class EventDecoder:
    """Turns raw frames into ServerMessage values, or None when dropped."""

    def __init__(self) -> None:
        self.dropped = 0

    def _drop(self, exc: DecodeError, raw: str | bytes) -> None:
        self.dropped += 1
        text = raw if isinstance(raw, str) else repr(raw)
        logger.warning("Dropping malformed message (%s): %s", exc.reason, _preview(text))

    def decode_ws(self, raw: str | bytes) -> ServerMessage | None:
        """Decode one WebSocket text frame."""
        try:
            return self._decode_ws(raw)
        except DecodeError as exc:
            self._drop(exc, raw)
            return None

    def _decode_ws(self, raw: str | bytes) -> ServerMessage:
        data = _load_object(raw)
        msg_type = data.get("type")
        if not isinstance(msg_type, str):
            raise DecodeError("message has no 'type' discriminator")

        if msg_type == "event":
            return EventMessage(envelope=_envelope_from(data.get("envelope")))
        if msg_type == "subscribed":
            wire_filter = data.get("filter")
            return Subscribed(filter=wire_filter if isinstance(wire_filter, dict) else None)
        if msg_type == "unsubscribed":
            return Unsubscribed()
        if msg_type == "pong":
            return Pong()
        if msg_type == "error":
            return ServerError(message=str(data.get("message", "")))
        raise DecodeError(f"unknown message type '{msg_type}'")

    def decode_sse(self, event_name: str | None, raw: str) -> ServerMessage | None:
        """Decode one SSE frame. Unnamed and hello frames are skipped silently."""
        name = event_name or "message"
        if name in _SSE_IGNORED:
            logger.debug("Ignoring SSE frame %r", name)
            return None
        try:
            envelope = _envelope_from(_load_object(raw))
        except DecodeError as exc:
            self._drop(exc, raw)
            return None
        if name in SSE_EVENT_NAMES and envelope.event.kind and name != envelope.event.kind:
            logger.debug(
                "SSE event name %r disagrees with payload kind %r; using payload",
                name, envelope.event.kind,
            )
        return EventMessage(envelope=envelope)

    def decode_activity(self, event_name: str | None, raw: str) -> SessionActivity | None:
        """Decode one frame of a session activity stream.

        The SSE event name mirrors the payload's ``type``; frames named
        anything else are skipped silently.
        """
        if event_name is not None and event_name not in ACTIVITY_TYPES:
            logger.debug("Ignoring activity frame %r", event_name)
            return None
        try:
            activity = dict_to_activity(_load_object(raw))
        except DecodeError as exc:
            self._drop(exc, raw)
            return None
        if event_name is not None and event_name != activity.type:
            logger.debug(
                "Activity event name %r disagrees with payload type %r; using payload",
                event_name, activity.type,
            )
        return activity
