"""
Core data models for the voicecall bridge.

Typed structures for the call registry and the per-call conversation
state; wire payloads are camelCase dicts and are converted at the edges.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CallRecord:
    """Last-known status of an active call as reported by the bridge."""
    call_id: str
    status: str = "active"
    channel: Optional[str] = None
    caller: Optional[str] = None
    callee: Optional[str] = None
    duration: Optional[float] = None

    # Wire key -> attribute
    _WIRE_FIELDS = {
        "callId": "call_id",
        "status": "status",
        "channel": "channel",
        "caller": "caller",
        "callee": "callee",
        "duration": "duration",
    }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CallRecord":
        """Build from a bridge call object (``GET /calls/{id}`` or a snapshot entry)."""
        kwargs = {attr: payload[key] for key, attr in cls._WIRE_FIELDS.items() if payload.get(key) is not None}
        kwargs["call_id"] = str(payload.get("callId") or "")
        if "status" in kwargs:
            kwargs["status"] = str(kwargs["status"])
        return cls(**kwargs)

    def merge(self, **fields: Any) -> None:
        """Overwrite attributes with every non-None value given."""
        for name, value in fields.items():
            if name == "call_id" or value is None:
                continue
            if not hasattr(self, name):
                raise AttributeError(f"CallRecord has no field '{name}'")
            setattr(self, name, value)

    def to_dict(self) -> Dict[str, Any]:
        data = {key: getattr(self, attr) for key, attr in self._WIRE_FIELDS.items()}
        return {k: v for k, v in data.items() if v is not None}


class ConversationState(str, Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    PROCESSING = "PROCESSING"
    SPEAKING = "SPEAKING"


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Turn:
    role: TurnRole
    content: str
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class ConversationContext:
    """Dialogue state for one call.

    Created lazily on first access and destroyed only when the call ends.
    ``utterance_timer`` is the single outstanding debounce timer, if any.
    """
    call_id: str
    state: ConversationState = ConversationState.IDLE
    partial_text: str = ""
    history: List[Turn] = field(default_factory=list)
    last_state_change: str = field(default_factory=utc_now_iso)
    conversation_mode: bool = False
    utterance_timer: Optional[asyncio.TimerHandle] = None
    # Utterances completed while a turn was in flight
    pending_utterance: str = ""
    # Incremented per dispatched utterance; stale agent results check it
    turn: int = 0

    @property
    def resting_state(self) -> ConversationState:
        return ConversationState.LISTENING if self.conversation_mode else ConversationState.IDLE

    @property
    def is_busy(self) -> bool:
        return self.state in (ConversationState.PROCESSING, ConversationState.SPEAKING)

    def add_turn(self, role: TurnRole, content: str) -> Turn:
        turn = Turn(role=role, content=content)
        self.history.append(turn)
        return turn

    def cancel_utterance_timer(self) -> bool:
        if self.utterance_timer is None:
            return False
        self.utterance_timer.cancel()
        self.utterance_timer = None
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "callId": self.call_id,
            "state": self.state.value,
            "partialText": self.partial_text,
            "history": [{"role": t.role.value, "content": t.content, "timestamp": t.timestamp} for t in self.history],
            "lastStateChange": self.last_state_change,
            "conversationMode": self.conversation_mode,
            "turn": self.turn,
        }


@dataclass
class CallLookup:
    """Result of a registry read; ``found`` is False for unknown call ids."""
    call_id: str
    found: bool
    call: Optional[CallRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"callId": self.call_id, "found": self.found}
        if self.call is not None:
            data["call"] = self.call.to_dict()
        return data
