"""
Per-call conversation state machine and utterance debouncer.

States: IDLE -> LISTENING -> PROCESSING -> SPEAKING, returning to LISTENING
(conversation mode) or IDLE (one-shot) after speaking or after an error.

The bridge only marks a transcription final when the call is torn down,
so utterance boundaries are inferred locally: each non-empty partial
replaces the buffered text and re-arms a single silence timer; when the
timer fires the buffer becomes one complete utterance.

All methods must run on the event loop thread; timers are
``loop.call_later`` handles so cancellation is synchronous.
"""

import asyncio
from typing import Callable, Dict, List, Optional

import structlog

from .models import ConversationContext, ConversationState, TurnRole, utc_now_iso

logger = structlog.get_logger(__name__)

DEFAULT_SILENCE_WINDOW_SEC = 1.5

UtteranceCallback = Callable[[str, str, ConversationContext], None]


class ConversationStateMachine:
    """Owns every live ConversationContext, keyed by call id."""

    def __init__(
        self,
        silence_window: float = DEFAULT_SILENCE_WINDOW_SEC,
        on_utterance: Optional[UtteranceCallback] = None,
    ):
        self.silence_window = silence_window
        self.on_utterance = on_utterance
        self._contexts: Dict[str, ConversationContext] = {}

    # ------------------------------------------------------------------
    # Context lifecycle
    # ------------------------------------------------------------------

    def get_context(self, call_id: str) -> ConversationContext:
        """Return the call's context, creating it on first access."""
        context = self._contexts.get(call_id)
        if context is None:
            context = ConversationContext(call_id=call_id)
            self._contexts[call_id] = context
        return context

    def peek(self, call_id: str) -> Optional[ConversationContext]:
        return self._contexts.get(call_id)

    def is_live(self, context: ConversationContext) -> bool:
        """False once the context's call has ended (or it was replaced)."""
        return self._contexts.get(context.call_id) is context

    def _is_current(self, context: ConversationContext, turn: Optional[int]) -> bool:
        if not self.is_live(context):
            return False
        return turn is None or turn == context.turn

    def contexts(self) -> List[ConversationContext]:
        return list(self._contexts.values())

    def discard(self, call_id: str) -> bool:
        """Destroy the call's context, cancelling its timer."""
        context = self._contexts.pop(call_id, None)
        if context is None:
            return False
        context.cancel_utterance_timer()
        context.partial_text = ""
        context.pending_utterance = ""
        logger.debug("Conversation context discarded", call_id=call_id, turns=len(context.history))
        return True

    def discard_all(self) -> int:
        call_ids = list(self._contexts)
        for call_id in call_ids:
            self.discard(call_id)
        return len(call_ids)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, context: ConversationContext, state: ConversationState, reason: str) -> None:
        previous = context.state
        context.state = state
        context.last_state_change = utc_now_iso()
        if previous is not state:
            logger.debug(
                "Conversation state changed",
                call_id=context.call_id,
                from_state=previous.value,
                to_state=state.value,
                reason=reason,
            )
        if not context.is_busy and context.pending_utterance:
            held = context.pending_utterance
            context.pending_utterance = ""
            logger.info("Releasing held utterance", call_id=context.call_id, text=held)
            self._complete_utterance(context, held)

    def set_state(self, call_id: str, state: ConversationState) -> ConversationContext:
        context = self.get_context(call_id)
        self._transition(context, state, "explicit")
        return context

    def enable_conversation_mode(self, call_id: str) -> ConversationContext:
        context = self.get_context(call_id)
        context.conversation_mode = True
        logger.info("Conversation mode enabled", call_id=call_id)
        return context

    def start_listening(self, call_id: str) -> ConversationContext:
        context = self.get_context(call_id)
        context.conversation_mode = True
        self._transition(context, ConversationState.LISTENING, "start_listening")
        return context

    def stop_listening(self, call_id: str) -> ConversationContext:
        """Go IDLE and drop any half-heard utterance."""
        context = self.get_context(call_id)
        context.cancel_utterance_timer()
        context.partial_text = ""
        context.pending_utterance = ""
        self._transition(context, ConversationState.IDLE, "stop_listening")
        return context

    def on_speak_started(self, call_id: str) -> ConversationContext:
        context = self.get_context(call_id)
        self._transition(context, ConversationState.SPEAKING, "speak_started")
        return context

    def on_speak_finished(self, call_id: str, reason: str = "speak_finished") -> Optional[ConversationContext]:
        """SPEAKING -> resting state; ignored in any other state."""
        context = self.get_context(call_id)
        if context.state is not ConversationState.SPEAKING:
            logger.debug("Speak end outside SPEAKING ignored", call_id=call_id, state=context.state.value)
            return None
        self._transition(context, context.resting_state, reason)
        return context

    def begin_speaking(self, context: ConversationContext, text: str, turn: Optional[int] = None) -> bool:
        """Record the assistant turn and enter SPEAKING.

        False if the call ended or ``turn`` is no longer the current one.
        """
        if not self._is_current(context, turn):
            return False
        context.add_turn(TurnRole.ASSISTANT, text)
        self._transition(context, ConversationState.SPEAKING, "agent_reply")
        return True

    def settle(self, context: ConversationContext, reason: str, turn: Optional[int] = None) -> None:
        """Leave PROCESSING/SPEAKING for the resting state.

        No-op when the call already ended, the context already rests, or
        ``turn`` has been superseded by a later utterance.
        """
        if not self._is_current(context, turn) or not context.is_busy:
            return
        self._transition(context, context.resting_state, reason)

    # ------------------------------------------------------------------
    # Utterance debouncing
    # ------------------------------------------------------------------

    def on_transcription(self, call_id: str, text: str, is_final: bool = False) -> bool:
        """Feed one transcription event; returns False if it was discarded.

        Input while SPEAKING is the agent's own audio leaking back and is
        dropped without touching the buffer.
        """
        context = self.get_context(call_id)
        if context.state is ConversationState.SPEAKING:
            logger.debug("Ignoring transcription while speaking", call_id=call_id)
            return False

        if is_final:
            context.cancel_utterance_timer()
            final_text = text if text.strip() else context.partial_text
            context.partial_text = ""
            if final_text.strip():
                logger.info("End-of-call transcription", call_id=call_id, text=final_text)
                self._complete_utterance(context, final_text)
            return True

        if text.strip():
            # Partials restate the whole utterance so far; latest wins
            context.partial_text = text
            context.cancel_utterance_timer()
            loop = asyncio.get_running_loop()
            context.utterance_timer = loop.call_later(self.silence_window, self._on_silence, context)
            logger.debug("Partial transcription", call_id=call_id, text=text[:80])
        return True

    def _on_silence(self, context: ConversationContext) -> None:
        context.utterance_timer = None
        if not self.is_live(context):
            return
        utterance = context.partial_text
        context.partial_text = ""
        if utterance.strip():
            logger.info("Utterance complete", call_id=context.call_id, text=utterance)
            self._complete_utterance(context, utterance)

    def _complete_utterance(self, context: ConversationContext, text: str) -> None:
        if context.is_busy:
            context.pending_utterance = f"{context.pending_utterance} {text}".strip()
            logger.info(
                "Utterance held until current turn completes",
                call_id=context.call_id,
                state=context.state.value,
            )
            return

        context.add_turn(TurnRole.USER, text)
        context.turn += 1
        self._transition(context, ConversationState.PROCESSING, "utterance_complete")
        if self.on_utterance is None:
            self.settle(context, "no_utterance_handler")
            return
        self.on_utterance(context.call_id, text, context)
