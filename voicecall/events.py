"""
Bridge event stream model.

Every frame on ``/events`` is a JSON object with a ``type`` discriminator.
``parse_event`` turns a decoded frame into one of the typed event classes
below; unknown types become a plain ``BridgeEvent`` so they can still be
forwarded. The decoded payload is kept on ``raw`` so subscribers receive
the event verbatim.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from .core.models import CallRecord
from .errors import MalformedEventError


class EventType(str, Enum):
    SNAPSHOT = "snapshot"
    # Lifecycle
    CALL_CREATED = "call.created"
    CALL_READY = "call.ready"
    CALL_INBOUND = "call.inbound"
    CALL_STARTED = "call.started"
    CALL_RINGING = "call.ringing"
    CALL_ANSWERED = "call.answered"
    CALL_STATE_CHANGED = "call.state_changed"
    CALL_ENDED = "call.ended"
    # Speech
    TRANSCRIPTION = "call.transcription"
    SPEAK_STARTED = "call.speak_started"
    SPEAK_FINISHED = "call.speak_finished"
    SPEAK_ERROR = "call.speak_error"
    # Status only
    DTMF = "call.dtmf"
    PLAYBACK_STARTED = "call.playback_started"
    PLAYBACK_FINISHED = "call.playback_finished"
    PLAYBACK_STREAM_STARTED = "call.playback_stream_started"
    PLAYBACK_STREAM_FINISHED = "call.playback_stream_finished"
    PLAYBACK_STREAM_ERROR = "call.playback_stream_error"
    RECORDING_STARTED = "call.recording_started"
    RECORDING_FINISHED = "call.recording_finished"
    AUDIO_CAPTURE_STARTED = "call.audio_capture_started"
    AUDIO_CAPTURE_STOPPED = "call.audio_capture_stopped"
    AUDIO_CAPTURE_ERROR = "call.audio_capture_error"
    # Raw audio, never processed
    AUDIO_FRAME = "call.audio_frame"

    @classmethod
    def lookup(cls, value: str) -> Optional["EventType"]:
        try:
            return cls(value)
        except ValueError:
            return None


def _lookup(payload: Dict[str, Any], *names: str) -> Any:
    """First non-None value for ``names`` in ``payload["data"]``, then the top level."""
    data = payload.get("data")
    scopes = (data, payload) if isinstance(data, dict) else (payload,)
    for scope in scopes:
        for name in names:
            value = scope.get(name)
            if value is not None:
                return value
    return None


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _opt_float(value: Any) -> Optional[float]:
    try:
        return None if value is None else float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class BridgeEvent:
    type: str
    call_id: Optional[str] = None
    timestamp: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def event_type(self) -> Optional[EventType]:
        return EventType.lookup(self.type)

    @property
    def data(self) -> Dict[str, Any]:
        data = self.raw.get("data")
        return data if isinstance(data, dict) else {}

    def get(self, name: str, default: Any = None) -> Any:
        value = _lookup(self.raw, name)
        return default if value is None else value

    @classmethod
    def _fields_from(cls, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BridgeEvent":
        call_id = payload.get("callId")
        return cls(
            type=payload["type"],
            call_id=str(call_id) if call_id else None,
            timestamp=_opt_str(payload.get("timestamp")),
            raw=payload,
            **cls._fields_from(payload),
        )


@dataclass
class SnapshotEvent(BridgeEvent):
    calls: List[CallRecord] = field(default_factory=list)

    @classmethod
    def _fields_from(cls, payload):
        entries = payload.get("calls")
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise MalformedEventError(f"snapshot 'calls' must be a list, got {type(entries).__name__}")
        return {"calls": [CallRecord.from_payload(c) for c in entries if isinstance(c, dict)]}


@dataclass
class CallLifecycleEvent(BridgeEvent):
    state: Optional[str] = None
    channel_id: Optional[str] = None
    caller_number: Optional[str] = None
    callee_number: Optional[str] = None

    @classmethod
    def _fields_from(cls, payload):
        return {
            "state": _opt_str(_lookup(payload, "state", "status")),
            "channel_id": _opt_str(_lookup(payload, "channelId", "channel")),
            "caller_number": _opt_str(_lookup(payload, "callerNumber", "caller")),
            "callee_number": _opt_str(_lookup(payload, "calleeNumber", "callee")),
        }


@dataclass
class CallEndedEvent(BridgeEvent):
    reason: Optional[str] = None

    @classmethod
    def _fields_from(cls, payload):
        return {"reason": _opt_str(_lookup(payload, "reason", "cause"))}


@dataclass
class TranscriptionEvent(BridgeEvent):
    text: str = ""
    is_final: bool = False
    is_partial: bool = False

    @classmethod
    def _fields_from(cls, payload):
        return {
            "text": str(_lookup(payload, "text") or ""),
            "is_final": bool(_lookup(payload, "is_final", "isFinal")),
            "is_partial": bool(_lookup(payload, "is_partial", "isPartial")),
        }


@dataclass
class SpeakEvent(BridgeEvent):
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    voice: Optional[str] = None

    @classmethod
    def _fields_from(cls, payload):
        return {
            "duration_seconds": _opt_float(_lookup(payload, "durationSeconds", "duration")),
            "error": _opt_str(_lookup(payload, "error")),
            "voice": _opt_str(_lookup(payload, "voice")),
        }


@dataclass
class DtmfEvent(BridgeEvent):
    digit: Optional[str] = None

    @classmethod
    def _fields_from(cls, payload):
        return {"digit": _opt_str(_lookup(payload, "digit", "digits"))}


@dataclass
class PlaybackEvent(BridgeEvent):
    playback_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def _fields_from(cls, payload):
        return {
            "playback_id": _opt_str(_lookup(payload, "playbackId")),
            "error": _opt_str(_lookup(payload, "error")),
        }


@dataclass
class RecordingEvent(BridgeEvent):
    recording_id: Optional[str] = None

    @classmethod
    def _fields_from(cls, payload):
        return {"recording_id": _opt_str(_lookup(payload, "recordingId", "name"))}


@dataclass
class AudioCaptureEvent(BridgeEvent):
    error: Optional[str] = None

    @classmethod
    def _fields_from(cls, payload):
        return {"error": _opt_str(_lookup(payload, "error"))}


@dataclass
class AudioFrameEvent(BridgeEvent):
    pass


EVENT_CLASSES: Dict[EventType, Type[BridgeEvent]] = {
    EventType.SNAPSHOT: SnapshotEvent,
    EventType.CALL_CREATED: CallLifecycleEvent,
    EventType.CALL_READY: CallLifecycleEvent,
    EventType.CALL_INBOUND: CallLifecycleEvent,
    EventType.CALL_STARTED: CallLifecycleEvent,
    EventType.CALL_RINGING: CallLifecycleEvent,
    EventType.CALL_ANSWERED: CallLifecycleEvent,
    EventType.CALL_STATE_CHANGED: CallLifecycleEvent,
    EventType.CALL_ENDED: CallEndedEvent,
    EventType.TRANSCRIPTION: TranscriptionEvent,
    EventType.SPEAK_STARTED: SpeakEvent,
    EventType.SPEAK_FINISHED: SpeakEvent,
    EventType.SPEAK_ERROR: SpeakEvent,
    EventType.DTMF: DtmfEvent,
    EventType.PLAYBACK_STARTED: PlaybackEvent,
    EventType.PLAYBACK_FINISHED: PlaybackEvent,
    EventType.PLAYBACK_STREAM_STARTED: PlaybackEvent,
    EventType.PLAYBACK_STREAM_FINISHED: PlaybackEvent,
    EventType.PLAYBACK_STREAM_ERROR: PlaybackEvent,
    EventType.RECORDING_STARTED: RecordingEvent,
    EventType.RECORDING_FINISHED: RecordingEvent,
    EventType.AUDIO_CAPTURE_STARTED: AudioCaptureEvent,
    EventType.AUDIO_CAPTURE_STOPPED: AudioCaptureEvent,
    EventType.AUDIO_CAPTURE_ERROR: AudioCaptureEvent,
    EventType.AUDIO_FRAME: AudioFrameEvent,
}


def parse_event(payload: Any) -> BridgeEvent:
    """Build the typed event for a decoded frame.

    Raises:
        MalformedEventError: the frame is not an object with a string ``type``
    """
    if not isinstance(payload, dict):
        raise MalformedEventError(f"event frame must be a JSON object, got {type(payload).__name__}")
    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("event frame has no 'type'")
    cls = EVENT_CLASSES.get(EventType.lookup(event_type), BridgeEvent)
    return cls.from_payload(payload)
