"""
Tests for the per-call conversation state machine and utterance debouncer.

Silence windows are shortened to tens of milliseconds so timer behaviour
can be observed with real sleeps.
"""

import asyncio

import pytest

from voicecall.core.conversation import ConversationStateMachine
from voicecall.core.models import ConversationState, TurnRole

WINDOW = 0.1


class Recorder:
    """on_utterance callback that records emissions."""

    def __init__(self):
        self.utterances = []

    def __call__(self, call_id, text, context):
        self.utterances.append((call_id, text))


def _machine(window=WINDOW):
    recorder = Recorder()
    return ConversationStateMachine(silence_window=window, on_utterance=recorder), recorder


@pytest.mark.asyncio
async def test_partials_coalesce_into_one_utterance():
    machine, recorder = _machine()
    machine.start_listening("c1")

    for text in ("hi", "hi the", "hi there"):
        machine.on_transcription("c1", text)
        await asyncio.sleep(WINDOW / 5)

    assert recorder.utterances == []
    await asyncio.sleep(WINDOW * 3)

    assert recorder.utterances == [("c1", "hi there")]
    context = machine.get_context("c1")
    assert context.state is ConversationState.PROCESSING
    assert context.partial_text == ""
    assert [(t.role, t.content) for t in context.history] == [(TurnRole.USER, "hi there")]


@pytest.mark.asyncio
async def test_partial_resets_the_timer():
    window = 0.2
    machine, recorder = _machine(window)

    machine.on_transcription("c1", "one")
    await asyncio.sleep(window * 0.6)
    machine.on_transcription("c1", "one two")
    await asyncio.sleep(window * 0.6)

    # First timer would have fired by now had it not been replaced
    assert recorder.utterances == []
    await asyncio.sleep(window * 2)
    assert recorder.utterances == [("c1", "one two")]


@pytest.mark.asyncio
async def test_blank_partial_does_not_arm_timer():
    machine, recorder = _machine()

    machine.on_transcription("c1", "   ")

    assert machine.get_context("c1").utterance_timer is None
    await asyncio.sleep(WINDOW * 2)
    assert recorder.utterances == []


@pytest.mark.asyncio
async def test_final_before_timer_emits_once():
    machine, recorder = _machine()

    machine.on_transcription("c1", "book a table")
    machine.on_transcription("c1", "book a table for two", is_final=True)
    await asyncio.sleep(WINDOW * 3)

    assert recorder.utterances == [("c1", "book a table for two")]


@pytest.mark.asyncio
async def test_blank_final_flushes_buffer():
    machine, recorder = _machine()

    machine.on_transcription("c1", "goodbye")
    machine.on_transcription("c1", "", is_final=True)
    await asyncio.sleep(WINDOW * 3)

    assert recorder.utterances == [("c1", "goodbye")]


@pytest.mark.asyncio
async def test_blank_final_with_empty_buffer_emits_nothing():
    machine, recorder = _machine()
    machine.on_transcription("c1", "", is_final=True)
    assert recorder.utterances == []


@pytest.mark.asyncio
async def test_transcription_while_speaking_is_ignored():
    machine, recorder = _machine()
    context = machine.get_context("c1")
    context.partial_text = "earlier"
    machine.on_speak_started("c1")

    accepted = machine.on_transcription("c1", "echo of the agent")

    assert accepted is False
    assert context.partial_text == "earlier"
    assert context.utterance_timer is None
    await asyncio.sleep(WINDOW * 2)
    assert recorder.utterances == []


@pytest.mark.asyncio
async def test_utterance_while_processing_is_held_then_released():
    machine, recorder = _machine()
    machine.start_listening("c1")
    machine.on_transcription("c1", "first", is_final=True)
    context = machine.get_context("c1")
    assert context.state is ConversationState.PROCESSING

    machine.on_transcription("c1", "second", is_final=True)
    machine.on_transcription("c1", "third", is_final=True)

    assert recorder.utterances == [("c1", "first")]
    assert context.pending_utterance == "second third"

    machine.settle(context, "agent_done")

    assert recorder.utterances == [("c1", "first"), ("c1", "second third")]
    assert context.pending_utterance == ""
    assert context.state is ConversationState.PROCESSING


@pytest.mark.asyncio
async def test_held_utterance_dropped_when_call_ends():
    machine, recorder = _machine()
    machine.on_transcription("c1", "first", is_final=True)
    machine.on_transcription("c1", "second", is_final=True)
    context = machine.get_context("c1")

    machine.discard("c1")
    machine.settle(context, "agent_done")

    assert recorder.utterances == [("c1", "first")]
    assert machine.peek("c1") is None


@pytest.mark.asyncio
async def test_discard_cancels_pending_timer():
    machine, recorder = _machine()
    machine.on_transcription("c1", "half a sentence")

    assert machine.discard("c1") is True
    await asyncio.sleep(WINDOW * 3)

    assert recorder.utterances == []
    assert machine.discard("c1") is False


@pytest.mark.asyncio
async def test_stop_listening_drops_buffer_and_timer():
    machine, recorder = _machine()
    machine.start_listening("c1")
    machine.on_transcription("c1", "never mind")

    context = machine.stop_listening("c1")
    await asyncio.sleep(WINDOW * 3)

    assert context.state is ConversationState.IDLE
    assert context.partial_text == ""
    assert recorder.utterances == []


def test_speak_finished_returns_to_resting_state():
    machine, _ = _machine()
    machine.start_listening("c1")
    machine.on_speak_started("c1")

    context = machine.on_speak_finished("c1")

    assert context.state is ConversationState.LISTENING


def test_speak_finished_without_conversation_mode_goes_idle():
    machine, _ = _machine()
    machine.on_speak_started("c1")
    assert machine.on_speak_finished("c1").state is ConversationState.IDLE


def test_speak_finished_outside_speaking_is_ignored():
    machine, _ = _machine()
    machine.start_listening("c1")
    context = machine.set_state("c1", ConversationState.PROCESSING)

    assert machine.on_speak_finished("c1") is None
    assert context.state is ConversationState.PROCESSING


def test_begin_speaking_records_assistant_turn():
    machine, _ = _machine()
    context = machine.get_context("c1")

    assert machine.begin_speaking(context, "How can I help?") is True
    assert context.state is ConversationState.SPEAKING
    assert context.history[-1].role is TurnRole.ASSISTANT


def test_begin_speaking_after_call_ended():
    machine, _ = _machine()
    context = machine.get_context("c1")
    machine.discard("c1")

    assert machine.begin_speaking(context, "too late") is False
    assert context.history == []


def test_superseded_turn_cannot_settle_or_speak():
    machine, recorder = _machine()
    machine.start_listening("c1")

    machine.on_transcription("c1", "first", is_final=True)
    context = machine.get_context("c1")
    first_turn = context.turn
    machine.on_speak_started("c1")
    machine.on_speak_finished("c1")
    machine.on_transcription("c1", "second", is_final=True)
    assert context.turn == first_turn + 1

    machine.settle(context, "agent_done", turn=first_turn)
    assert context.state is ConversationState.PROCESSING
    assert machine.begin_speaking(context, "stale reply", turn=first_turn) is False
    assert [t.content for t in context.history] == ["first", "second"]

    machine.settle(context, "agent_done", turn=context.turn)
    assert context.state is ConversationState.LISTENING
    assert recorder.utterances == [("c1", "first"), ("c1", "second")]


def test_no_callback_settles_immediately():
    machine = ConversationStateMachine(silence_window=WINDOW)
    machine.start_listening("c1")

    machine.on_transcription("c1", "hello", is_final=True)

    context = machine.get_context("c1")
    assert context.state is ConversationState.LISTENING
    assert context.history[0].content == "hello"


def test_contexts_are_created_lazily_and_isolated():
    machine, _ = _machine()
    assert machine.peek("c1") is None

    machine.start_listening("c1")
    machine.get_context("c2")

    assert machine.get_context("c1").conversation_mode is True
    assert machine.get_context("c2").conversation_mode is False
    assert machine.discard_all() == 2
    assert machine.contexts() == []
