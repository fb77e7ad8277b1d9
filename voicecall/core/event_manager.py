"""
Event dispatcher for the bridge event stream.

The EventManager owns the call registry and the conversation state
machine, consumes the bridge event stream and forwards every event to an
injected CallEventHandler (the agent/tool layer). It is constructed and
owned explicitly; ``start()``/``stop()`` (or ``async with``) bound its
lifetime.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

import structlog

from voicecall.bridge_client import BridgeClient, EventStreamOptions
from voicecall.errors import AgentCallbackFailure, TransportError
from voicecall.events import (
    AudioCaptureEvent,
    BridgeEvent,
    CallLifecycleEvent,
    DtmfEvent,
    EventType,
    PlaybackEvent,
    RecordingEvent,
    SnapshotEvent,
    SpeakEvent,
    TranscriptionEvent,
)
from voicecall.logging_config import bind_call_id, reset_call_id
from voicecall.metrics import (
    observe_agent_latency,
    record_agent_failure,
    record_event,
    record_stream_disconnect,
    record_utterance,
    set_active_calls,
    set_stream_connected,
)

from .call_registry import CallRegistry
from .conversation import ConversationStateMachine
from .models import CallLookup, CallRecord, ConversationContext, ConversationState

logger = structlog.get_logger(__name__)


class CallEventHandler(Protocol):
    """Capability implemented by the agent layer."""

    async def on_call_event(self, event: BridgeEvent) -> None:
        """Receive every non-audio event after internal processing."""

    async def on_transcription_final(
        self, call_id: str, text: str, context: ConversationContext
    ) -> Optional[str]:
        """Handle one complete utterance.

        A returned non-blank string is spoken back into the call. Raising
        puts the call back into its resting state.
        """


class LoggingCallEventHandler:
    """Handler that only logs; used when no agent is attached."""

    async def on_call_event(self, event: BridgeEvent) -> None:
        logger.debug("Call event", type=event.type, call_id=event.call_id)

    async def on_transcription_final(self, call_id, text, context):
        logger.info("Final transcription", call_id=call_id, text=text, turns=len(context.history))
        return None


# Ended call ids remembered to reject late per-call events
ENDED_CALL_MEMORY = 1024

_CREATION_EVENTS = {
    EventType.CALL_CREATED,
    EventType.CALL_READY,
    EventType.CALL_INBOUND,
    EventType.CALL_STARTED,
}


class EventManager:
    """Keeps the registry and conversations in step with the bridge."""

    def __init__(
        self,
        client: BridgeClient,
        handler: Optional[CallEventHandler] = None,
        utterance_silence_ms: int = 1500,
        auto_reconnect: bool = True,
        reconnect_delay_ms: int = 3000,
        default_endpoint: str = "PJSIP/101",
        from_number: Optional[str] = None,
        outbound_trunk: Optional[str] = None,
        voice: Optional[str] = None,
        language: Optional[str] = None,
        owns_client: bool = False,
    ):
        self.client = client
        self.handler = handler or LoggingCallEventHandler()
        self.registry = CallRegistry()
        self.conversations = ConversationStateMachine(
            silence_window=utterance_silence_ms / 1000.0,
            on_utterance=self._on_utterance,
        )
        self.auto_reconnect = auto_reconnect
        self.reconnect_delay = reconnect_delay_ms / 1000.0
        self.default_endpoint = default_endpoint
        self.from_number = from_number
        self.outbound_trunk = outbound_trunk
        self.voice = voice
        self.language = language
        self._owns_client = owns_client
        self._running = False
        self._tasks: Set[asyncio.Task] = set()
        self._ended_calls: "OrderedDict[str, None]" = OrderedDict()
        self._dispatch: Dict[EventType, Callable[[Any], Awaitable[None]]] = {
            EventType.CALL_CREATED: self._on_lifecycle,
            EventType.CALL_READY: self._on_lifecycle,
            EventType.CALL_INBOUND: self._on_lifecycle,
            EventType.CALL_STARTED: self._on_lifecycle,
            EventType.CALL_RINGING: self._on_lifecycle,
            EventType.CALL_ANSWERED: self._on_lifecycle,
            EventType.CALL_STATE_CHANGED: self._on_lifecycle,
            EventType.CALL_ENDED: self._on_call_ended,
            EventType.TRANSCRIPTION: self._on_transcription,
            EventType.SPEAK_STARTED: self._on_speak_started,
            EventType.SPEAK_FINISHED: self._on_speak_finished,
            EventType.SPEAK_ERROR: self._on_speak_finished,
            EventType.DTMF: self._on_dtmf,
            EventType.PLAYBACK_STARTED: self._on_status_event,
            EventType.PLAYBACK_FINISHED: self._on_status_event,
            EventType.PLAYBACK_STREAM_STARTED: self._on_status_event,
            EventType.PLAYBACK_STREAM_FINISHED: self._on_status_event,
            EventType.PLAYBACK_STREAM_ERROR: self._on_status_event,
            EventType.RECORDING_STARTED: self._on_status_event,
            EventType.RECORDING_FINISHED: self._on_status_event,
            EventType.AUDIO_CAPTURE_STARTED: self._on_status_event,
            EventType.AUDIO_CAPTURE_STOPPED: self._on_status_event,
            EventType.AUDIO_CAPTURE_ERROR: self._on_status_event,
        }
        # Snapshots arrive on their own callback; audio frames are dropped
        unhandled = set(EventType) - set(self._dispatch) - {EventType.SNAPSHOT, EventType.AUDIO_FRAME}
        if unhandled:
            raise RuntimeError(f"No dispatch handler for event types: {sorted(t.value for t in unhandled)}")

    @classmethod
    def from_config(cls, config, handler: Optional[CallEventHandler] = None) -> "EventManager":
        return cls(
            client=BridgeClient.from_config(config.bridge),
            handler=handler,
            utterance_silence_ms=config.conversation.utterance_silence_ms,
            auto_reconnect=config.events.auto_reconnect,
            reconnect_delay_ms=config.events.reconnect_delay_ms,
            default_endpoint=config.calls.default_endpoint,
            from_number=config.calls.from_number,
            outbound_trunk=config.calls.outbound_trunk,
            voice=config.conversation.voice,
            language=config.conversation.language,
            owns_client=True,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Event manager already running")
            return
        self._running = True
        logger.info("Starting event manager", url=self.client.base_url)
        await self.client.connect_events(
            EventStreamOptions(
                on_connect=self._on_connect,
                on_disconnect=self._on_disconnect,
                on_error=self._on_stream_error,
                on_snapshot=self.handle_snapshot,
                on_event=self.handle_event,
                auto_reconnect=self.auto_reconnect,
                reconnect_delay=self.reconnect_delay,
            )
        )

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping event manager")
        self._running = False
        await self.client.disconnect_events()

        discarded = self.conversations.discard_all()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.registry.clear()
        set_active_calls(0)
        self._ended_calls.clear()
        set_stream_connected(False)
        if self._owns_client:
            await self.client.close()
        logger.info("Event manager stopped", conversations_discarded=discarded, tasks_cancelled=len(tasks))

    async def __aenter__(self) -> "EventManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def is_connected(self) -> bool:
        return self.client.is_events_connected()

    def _on_connect(self) -> None:
        set_stream_connected(True)
        logger.info("Connected to bridge events; registry stale until snapshot")

    def _on_disconnect(self, code: int, reason: str) -> None:
        set_stream_connected(False)
        record_stream_disconnect()
        logger.warning("Disconnected from bridge events", code=code, reason=reason, tracked_calls=len(self.registry))

    def _on_stream_error(self, error: BaseException) -> None:
        logger.error("Bridge event stream error", error=str(error) or type(error).__name__)

    # ------------------------------------------------------------------
    # Ingress
    # ------------------------------------------------------------------

    async def handle_snapshot(self, snapshot: SnapshotEvent) -> None:
        count = self.registry.apply_snapshot(snapshot.calls)
        for record in snapshot.calls:
            self._ended_calls.pop(record.call_id, None)
        set_active_calls(count)
        record_event(snapshot.type)
        logger.info("Snapshot received", active_calls=count)
        await self._forward(snapshot)

    async def handle_event(self, event: BridgeEvent) -> None:
        event_type = event.event_type
        if event_type is EventType.AUDIO_FRAME:
            return
        if event_type is EventType.SNAPSHOT:
            await self.handle_snapshot(event)
            return

        token = bind_call_id(event.call_id)
        try:
            logger.debug("Event", type=event.type)
            record_event(event_type.value if event_type is not None else "unknown")
            handler = self._dispatch.get(event_type) if event_type is not None else None
            if handler is not None:
                await handler(event)
            await self._forward(event)
        finally:
            reset_call_id(token)

    async def _forward(self, event: BridgeEvent) -> None:
        try:
            await self.handler.on_call_event(event)
        except Exception:
            logger.error("Call event subscriber failed", type=event.type, call_id=event.call_id, exc_info=True)

    async def _on_lifecycle(self, event: CallLifecycleEvent) -> None:
        call_id = event.call_id
        if not call_id:
            return
        if event.event_type in _CREATION_EVENTS:
            self._ended_calls.pop(call_id, None)
            self.registry.upsert(
                call_id,
                status=event.state or "active",
                channel=event.channel_id,
                caller=event.caller_number,
                callee=event.callee_number,
            )
            set_active_calls(len(self.registry))
            return
        status = event.state
        if status is None and event.event_type is EventType.CALL_ANSWERED:
            status = "answered"
        elif status is None and event.event_type is EventType.CALL_RINGING:
            status = "ringing"
        self.registry.update(call_id, status=status, channel=event.channel_id)

    async def _on_call_ended(self, event: BridgeEvent) -> None:
        if not event.call_id:
            return
        self.registry.remove(event.call_id)
        set_active_calls(len(self.registry))
        self.conversations.discard(event.call_id)
        self._remember_ended(event.call_id)
        logger.info("Call ended", reason=event.get("reason"))

    def _remember_ended(self, call_id: str) -> None:
        self._ended_calls[call_id] = None
        self._ended_calls.move_to_end(call_id)
        while len(self._ended_calls) > ENDED_CALL_MEMORY:
            self._ended_calls.popitem(last=False)

    def is_ended(self, call_id: str) -> bool:
        return call_id in self._ended_calls

    def _accepts_call_event(self, event: BridgeEvent) -> bool:
        if not event.call_id:
            return False
        if event.call_id in self._ended_calls:
            logger.debug("Ignoring event for ended call", type=event.type)
            return False
        return True

    async def _on_transcription(self, event: TranscriptionEvent) -> None:
        if not self._accepts_call_event(event):
            return
        self.conversations.on_transcription(event.call_id, event.text, is_final=event.is_final)

    async def _on_speak_started(self, event: SpeakEvent) -> None:
        if not self._accepts_call_event(event):
            return
        self.conversations.on_speak_started(event.call_id)
        logger.info("TTS started", voice=event.voice)

    async def _on_speak_finished(self, event: SpeakEvent) -> None:
        if not self._accepts_call_event(event):
            return
        if event.event_type is EventType.SPEAK_ERROR:
            logger.error("TTS error", error=event.error)
        else:
            logger.info("TTS finished", duration_sec=event.duration_seconds)
        self.conversations.on_speak_finished(event.call_id, reason=event.type)

    async def _on_dtmf(self, event: DtmfEvent) -> None:
        logger.info("DTMF received", digit=event.digit)

    async def _on_status_event(self, event: BridgeEvent) -> None:
        error = getattr(event, "error", None)
        if error:
            logger.error("Call media error", type=event.type, error=error)
        elif isinstance(event, AudioCaptureEvent):
            logger.info("Audio capture status", type=event.type)
        elif isinstance(event, (PlaybackEvent, RecordingEvent)):
            logger.debug("Media status", type=event.type)

    # ------------------------------------------------------------------
    # Utterance processing
    # ------------------------------------------------------------------

    def _on_utterance(self, call_id: str, text: str, context: ConversationContext) -> None:
        # Called synchronously with the context already in PROCESSING
        record_utterance()
        task = asyncio.get_running_loop().create_task(
            self._process_utterance(call_id, text, context, context.turn),
            name=f"voicecall-utterance-{call_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process_utterance(self, call_id: str, text: str, context: ConversationContext, turn: int) -> None:
        token = bind_call_id(call_id)
        started = time.monotonic()
        try:
            try:
                reply = await self.handler.on_transcription_final(call_id, text, context)
            except Exception as e:
                record_agent_failure()
                failure = AgentCallbackFailure(call_id, e)
                logger.error("Agent callback failed", error=str(failure), exc_info=True)
                self.conversations.settle(context, "agent_error", turn=turn)
                return

            observe_agent_latency(time.monotonic() - started)
            if not isinstance(reply, str) or not reply.strip():
                self.conversations.settle(context, "agent_done", turn=turn)
                return

            if not self.conversations.begin_speaking(context, reply, turn=turn):
                logger.info("Dropping stale agent reply", turn=turn, current_turn=context.turn)
                return
            try:
                await self.client.speak(call_id, reply, voice=self.voice, language=self.language)
            except TransportError as e:
                logger.error("Speaking agent reply failed", status=e.status, error=str(e))
            finally:
                self.conversations.settle(context, "reply_spoken", turn=turn)
        finally:
            reset_call_id(token)

    # ------------------------------------------------------------------
    # Accessors for the agent/tool layer
    # ------------------------------------------------------------------

    def list_active_calls(self) -> List[CallRecord]:
        return self.registry.list()

    def get_call(self, call_id: str) -> Optional[CallRecord]:
        return self.registry.get(call_id)

    def lookup_call(self, call_id: str) -> CallLookup:
        call = self.registry.get(call_id)
        return CallLookup(call_id=call_id, found=call is not None, call=call)

    def get_conversation_context(self, call_id: str) -> ConversationContext:
        return self.conversations.get_context(call_id)

    def get_conversation_state(self, call_id: str) -> ConversationState:
        return self.conversations.get_context(call_id).state

    def set_conversation_state(self, call_id: str, state: ConversationState) -> None:
        self.conversations.set_state(call_id, state)

    def enable_conversation_mode(self, call_id: str) -> None:
        self.conversations.enable_conversation_mode(call_id)

    # ------------------------------------------------------------------
    # Outbound control
    # ------------------------------------------------------------------

    def resolve_endpoint(self, to: Optional[str] = None) -> str:
        """Map a destination to a dial endpoint.

        Empty -> default endpoint; a phone number with an outbound trunk
        configured -> the trunk pattern; anything else is used as given.
        """
        target = (to or "").strip()
        if not target:
            return self.default_endpoint
        if "/" not in target and self.outbound_trunk:
            return self.outbound_trunk.replace("{number}", target)
        return target

    async def originate_call(
        self,
        to: Optional[str] = None,
        caller_id: Optional[str] = None,
        mode: str = "notify",
        timeout: Optional[int] = None,
    ) -> Dict[str, Any]:
        if mode not in ("notify", "conversation"):
            raise ValueError(f"Unknown call mode: {mode}")
        caller = caller_id or self.from_number
        if not caller:
            raise ValueError("caller id required (set calls.from_number)")
        endpoint = self.resolve_endpoint(to)

        result = await self.client.originate(endpoint, caller, timeout=timeout)
        call_id = result.get("callId")
        if call_id and mode == "conversation":
            self.conversations.enable_conversation_mode(call_id)
        logger.info("Call initiated", call_id=call_id, endpoint=endpoint, mode=mode)
        return {**result, "endpoint": endpoint, "mode": mode}

    async def start_listening(self, call_id: str) -> Dict[str, Any]:
        result = await self.client.start_audio_capture(call_id)
        self.conversations.start_listening(call_id)
        return result

    async def stop_listening(self, call_id: str) -> Dict[str, Any]:
        # Local state goes IDLE even if the bridge rejects the request
        self.conversations.stop_listening(call_id)
        return await self.client.stop_audio_capture(call_id)

    async def speak(self, call_id: str, text: str, voice: Optional[str] = None, language: Optional[str] = None) -> Dict[str, Any]:
        return await self.client.speak(call_id, text, voice=voice or self.voice, language=language or self.language)

    async def hangup(self, call_id: str) -> Dict[str, Any]:
        return await self.client.hangup(call_id)
