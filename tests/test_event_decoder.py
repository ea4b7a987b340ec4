from __future__ import annotations

import json

import pytest

from studio_live.adapters.events import (
    EventMessage,
    PhaseCompleted,
    Pong,
    ServerError,
    SessionActivity,
    SessionStarted,
    Subscribed,
    TaskStatusChanged,
    UnknownEvent,
    Unsubscribed,
    dict_to_activity,
    dict_to_event,
    event_to_dict,
)
from studio_live.engine.decoder import EventDecoder
from studio_live.engine.errors import DecodeError


def _ws(event: dict, **envelope) -> str:
    return json.dumps({"type": "event", "envelope": {"event": event, **envelope}})


def test_decodes_event_envelope() -> None:
    decoder = EventDecoder()
    msg = decoder.decode_ws(_ws(
        {"type": "task.status_changed", "task_id": "t1", "from_status": "todo",
         "to_status": "in_progress"},
        id="evt-1",
        timestamp="2026-10-17T12:00:00Z",
    ))
    assert isinstance(msg, EventMessage)
    assert msg.envelope.id == "evt-1"
    assert msg.envelope.timestamp == "2026-10-17T12:00:00Z"
    assert msg.envelope.event == TaskStatusChanged(
        task_id="t1", from_status="todo", to_status="in_progress"
    )


def test_decodes_control_messages() -> None:
    decoder = EventDecoder()
    assert decoder.decode_ws('{"type": "subscribed", "filter": {"task_ids": ["t1"]}}') == Subscribed(
        filter={"task_ids": ["t1"]}
    )
    assert decoder.decode_ws('{"type": "subscribed", "filter": null}') == Subscribed()
    assert decoder.decode_ws('{"type": "unsubscribed"}') == Unsubscribed()
    assert decoder.decode_ws('{"type": "pong"}') == Pong()
    assert decoder.decode_ws('{"type": "error", "message": "nope"}') == ServerError(message="nope")
    assert decoder.dropped == 0


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        '{"no_type": true}',
        '{"type": "mystery"}',
        '{"type": "event"}',
        '{"type": "event", "envelope": {"event": {"task_id": "t1"}}}',
        _ws({"type": "session.started", "task_id": "t1"}),
        _ws({"type": "task.status_changed", "task_id": "t1"}),
    ],
)
def test_malformed_messages_are_dropped(raw: str) -> None:
    decoder = EventDecoder()
    assert decoder.decode_ws(raw) is None
    assert decoder.dropped == 1


def test_bytes_frames_are_accepted() -> None:
    decoder = EventDecoder()
    assert decoder.decode_ws(b'{"type": "pong"}') == Pong()
    assert decoder.decode_ws(b"\xff\xfe") is None
    assert decoder.dropped == 1


def test_unknown_event_kind_is_forwarded() -> None:
    decoder = EventDecoder()
    msg = decoder.decode_ws(_ws({"type": "review.requested", "task_id": "t1", "reviewer": "x"}))
    assert isinstance(msg, EventMessage)
    assert msg.envelope.event == UnknownEvent(
        event_kind="review.requested", payload={"task_id": "t1", "reviewer": "x"}
    )


def test_optional_fields_take_defaults() -> None:
    event = dict_to_event({
        "type": "session.started",
        "session_id": "s1",
        "task_id": "t1",
        "opencode_session_id": None,
    })
    assert event == SessionStarted(session_id="s1", task_id="t1")
    assert event.status == "running"


def test_event_to_dict_round_trips_wire_shape() -> None:
    wire = {
        "type": "phase.completed",
        "task_id": "t1",
        "session_id": "s1",
        "phase_number": 2,
        "total_phases": 4,
        "phase_title": "Wire API",
    }
    event = dict_to_event(wire)
    assert isinstance(event, PhaseCompleted)
    assert event_to_dict(event) == wire


def test_missing_type_raises() -> None:
    with pytest.raises(DecodeError):
        dict_to_event({"task_id": "t1"})


def test_sse_hello_and_keepalive_are_skipped() -> None:
    decoder = EventDecoder()
    assert decoder.decode_sse("connected", '{"status": "connected"}') is None
    assert decoder.decode_sse("keepalive", "") is None
    assert decoder.decode_sse(None, "{}") is None
    assert decoder.dropped == 0


def test_sse_named_event_decodes_envelope() -> None:
    decoder = EventDecoder()
    body = json.dumps({
        "id": "42",
        "timestamp": "2026-10-17T12:00:00Z",
        "event": {"type": "session.ended", "session_id": "s1", "task_id": "t1", "success": True},
    })
    msg = decoder.decode_sse("session.ended", body)
    assert isinstance(msg, EventMessage)
    assert msg.envelope.id == "42"
    assert msg.envelope.event.kind == "session.ended"


def test_sse_malformed_body_is_dropped() -> None:
    decoder = EventDecoder()
    assert decoder.decode_sse("task.created", "{broken") is None
    assert decoder.decode_sse("task.created", '{"event": {"type": "task.created"}}') is None
    assert decoder.dropped == 2


@pytest.mark.parametrize(
    "event",
    [
        {"type": "session.started", "session_id": ["s1"], "task_id": "t1"},
        {"type": "task.status_changed", "task_id": "t1", "to_status": {"x": 1}},
        {"type": "task.created", "task_id": 7},
        {"type": "session.ended", "session_id": "s1", "task_id": "t1", "success": "yes"},
        {"type": "phase.completed", "task_id": "t1", "phase_number": "2"},
        {"type": "phase.continuing", "task_id": "t1", "next_phase_number": True},
        {"type": "agent.message", "session_id": "s1", "task_id": "t1", "message": "text"},
        {"type": "tool.execution", "session_id": "s1", "task_id": "t1", "tool": ["bash"]},
        {"type": "project.opened", "path": "/p", "was_initialized": 1},
        {"type": "error", "message": "boom", "context": 42},
    ],
)
def test_mistyped_fields_are_dropped(event: dict) -> None:
    decoder = EventDecoder()
    assert decoder.decode_ws(_ws(event)) is None
    assert decoder.decode_sse(event["type"], json.dumps({"event": event})) is None
    assert decoder.dropped == 2


def test_mistyped_field_names_the_field() -> None:
    with pytest.raises(DecodeError) as excinfo:
        dict_to_event({"type": "session.started", "session_id": ["s1"], "task_id": "t1"})
    assert "session_id" in excinfo.value.reason
    assert "list" in excinfo.value.reason


def test_optional_field_accepts_its_declared_type() -> None:
    event = dict_to_event({
        "type": "phase.completed",
        "task_id": "t1",
        "session_id": "s1",
        "phase_number": 0,
    })
    assert isinstance(event, PhaseCompleted)
    assert event.session_id == "s1"


# ── session activity frames ──


def test_activity_frame_decodes() -> None:
    decoder = EventDecoder()
    activity = decoder.decode_activity("tool_result", json.dumps({
        "type": "tool_result",
        "id": "c1",
        "tool_name": "bash",
        "args": None,
        "result": "ok",
        "success": True,
        "timestamp": "2026-10-17T12:00:00.123456789Z",
    }))
    assert activity == SessionActivity(
        type="tool_result", id="c1", tool_name="bash", result="ok", success=True,
        timestamp="2026-10-17T12:00:00.123456789Z",
    )
    assert activity.at.microsecond == 123456
    assert activity.key == "c1"


def test_activity_without_id_is_keyed_by_type_and_time() -> None:
    activity = dict_to_activity({
        "type": "finished", "success": False, "error": "agent crashed",
        "timestamp": "2026-10-17T12:00:00Z",
    })
    assert activity.is_finished
    assert activity.key == "finished@2026-10-17T12:00:00Z"


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "tool_call", "tool_name": "bash", "timestamp": "2026-10-17T12:00:00Z"},
        {"type": "tool_call", "id": "c1", "tool_name": "bash"},
        {"type": "tool_call", "id": 5, "tool_name": "bash", "timestamp": "2026-10-17T12:00:00Z"},
        {"type": "agent_message", "id": "m1", "content": "hi", "is_partial": "no",
         "timestamp": "2026-10-17T12:00:00Z"},
        {"type": "json_patch", "patch": {"op": "add"}, "timestamp": "2026-10-17T12:00:00Z"},
        {"type": "finished", "timestamp": "2026-10-17T12:00:00Z"},
        {"type": "reasoning", "id": "r1", "content": "hmm", "timestamp": "soon"},
        {"type": "heartbeat", "timestamp": "2026-10-17T12:00:00Z"},
    ],
)
def test_malformed_activity_is_dropped(payload: dict) -> None:
    decoder = EventDecoder()
    assert decoder.decode_activity(None, json.dumps(payload)) is None
    assert decoder.dropped == 1


def test_unknown_activity_frame_names_are_skipped() -> None:
    decoder = EventDecoder()
    assert decoder.decode_activity("keep-alive", "") is None
    assert decoder.dropped == 0
