"""
Tests for parsing bridge event stream frames.
"""

import pytest

from voicecall.errors import MalformedEventError
from voicecall.events import (
    EVENT_CLASSES,
    BridgeEvent,
    CallEndedEvent,
    CallLifecycleEvent,
    EventType,
    SnapshotEvent,
    SpeakEvent,
    TranscriptionEvent,
    parse_event,
)


def test_every_event_type_has_a_class():
    assert set(EVENT_CLASSES) == set(EventType)


def test_snapshot():
    event = parse_event({
        "type": "snapshot",
        "calls": [{"callId": "a", "status": "answered"}, {"callId": "b"}, "junk"],
    })

    assert isinstance(event, SnapshotEvent)
    assert event.event_type is EventType.SNAPSHOT
    assert [c.call_id for c in event.calls] == ["a", "b"]
    assert event.calls[0].status == "answered"


def test_snapshot_without_calls_is_empty():
    assert parse_event({"type": "snapshot"}).calls == []


def test_lifecycle_fields_from_data():
    event = parse_event({
        "type": "call.inbound",
        "callId": "c1",
        "timestamp": "2026-01-01T00:00:00Z",
        "data": {"channelId": "PJSIP/trunk-01", "callerNumber": "+15551234567", "calleeNumber": "100"},
    })

    assert isinstance(event, CallLifecycleEvent)
    assert event.call_id == "c1"
    assert event.channel_id == "PJSIP/trunk-01"
    assert event.caller_number == "+15551234567"
    assert event.callee_number == "100"
    assert event.state is None


def test_lifecycle_fields_fall_back_to_top_level():
    event = parse_event({"type": "call.state_changed", "callId": "c1", "state": "Up"})
    assert event.state == "Up"


def test_call_ended_reason():
    event = parse_event({"type": "call.ended", "callId": "c1", "data": {"reason": "hangup"}})
    assert isinstance(event, CallEndedEvent)
    assert event.reason == "hangup"


@pytest.mark.parametrize(
    "data,is_final",
    [
        ({"text": "hello", "is_final": True}, True),
        ({"text": "hello", "isFinal": True}, True),
        ({"text": "hel", "is_partial": True}, False),
    ],
)
def test_transcription(data, is_final):
    event = parse_event({"type": "call.transcription", "callId": "c1", "data": data})

    assert isinstance(event, TranscriptionEvent)
    assert event.is_final is is_final
    assert event.text in ("hello", "hel")


def test_transcription_missing_text_is_empty():
    assert parse_event({"type": "call.transcription", "callId": "c1"}).text == ""


def test_speak_finished_duration():
    event = parse_event({"type": "call.speak_finished", "callId": "c1", "data": {"durationSeconds": "2.5"}})
    assert isinstance(event, SpeakEvent)
    assert event.duration_seconds == 2.5


def test_unknown_type_kept_as_base_event():
    payload = {"type": "call.something_new", "callId": "c1", "data": {"x": 1}}
    event = parse_event(payload)

    assert type(event) is BridgeEvent
    assert event.event_type is None
    assert event.raw is payload
    assert event.get("x") == 1


def test_missing_call_id_is_none():
    assert parse_event({"type": "call.dtmf", "data": {"digit": "5"}}).call_id is None


@pytest.mark.parametrize("frame", [[], "snapshot", 42, None])
def test_non_object_frame_rejected(frame):
    with pytest.raises(MalformedEventError):
        parse_event(frame)


@pytest.mark.parametrize("payload", [{}, {"type": ""}, {"type": 5}, {"callId": "c1"}])
def test_frame_without_type_rejected(payload):
    with pytest.raises(MalformedEventError):
        parse_event(payload)


@pytest.mark.parametrize("calls", [5, "c1", {"callId": "c1"}])
def test_snapshot_calls_must_be_a_list(calls):
    with pytest.raises(MalformedEventError, match="calls"):
        parse_event({"type": "snapshot", "calls": calls})
