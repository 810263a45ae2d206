"""Tests for the booking orchestrator and its turn graph.

Covers:
  - State transitions for direct replies, tool rounds and errors
  - Error → fixed reply mapping
  - Speech output and preemption
  - Voice capture turns and busy sessions
  - Background transcript persistence
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest
from langchain_core.messages import AIMessage

from voice_booking.dialogue import DialogueModelClient
from voice_booking.errors import PersistenceError, SessionBusy, SessionNotFound
from voice_booking.models import AssistantState, Channel
from voice_booking.orchestrator import (
    APOLOGY_REPLY,
    GENERIC_ERROR_REPLY,
    REPEAT_REPLY,
    Orchestrator,
)
from voice_booking.services.records_client import RecordsClient
from voice_booking.speech.capture import QueueRecognizer
from voice_booking.speech.output import SpeechResult, SpeechSource
from voice_booking.stores import InMemoryAppointmentStore, InMemoryTranscriptStore, StaticAvailability
from voice_booking.tools import ToolExecutor

S = AssistantState

# ── Helpers ──────────────────────────────────────────────────────────


def _reply(text: str) -> AIMessage:
    return AIMessage(content=json.dumps({"text": text, "speech": text}))


def _tool_call(name: str, args: dict, call_id: str = "call_1") -> AIMessage:
    return AIMessage(content="", tool_calls=[{"name": name, "args": args, "id": call_id}])


def _connection_error() -> anthropic.APIConnectionError:
    return anthropic.APIConnectionError(
        request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"),
    )


class _Harness:
    """An orchestrator over fake models and in-memory stores, recording transitions."""

    def __init__(self, primary, fallback=None, *, speech=None, transcripts=None):
        llms = {"primary": primary, "fallback": fallback}
        availability = StaticAvailability()
        self.appointments = InMemoryAppointmentStore()
        self.transcripts = transcripts or InMemoryTranscriptStore()
        model = DialogueModelClient(
            availability,
            llm_factory=lambda name: llms[name],
            primary_model="primary",
            fallback_model="fallback",
        )
        tools = ToolExecutor(model, availability, self.appointments)
        self.orchestrator = Orchestrator(model, tools, self.transcripts, speech_output=speech)
        self.transitions: list[tuple[AssistantState, AssistantState]] = []
        self.orchestrator.add_listener(lambda _sid, old, new: self.transitions.append((old, new)))


class _FakeSpeech:
    """Speech output whose first (or every) ``speak`` blocks until cancelled."""

    def __init__(self, *, block_first: bool = False, block_all: bool = False):
        self.block_first = block_first
        self.block_all = block_all
        self.spoken: list[str] = []
        self.cancelled_texts: list[str] = []

    @property
    def cancelled(self) -> int:
        return len(self.cancelled_texts)

    async def speak(self, text, language):
        self.spoken.append(text)
        if self.block_all or (self.block_first and len(self.spoken) == 1):
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled_texts.append(text)
                raise
        return SpeechResult(SpeechSource.PRIMARY, audio=b"mp3", audio_encoding="MP3")


async def _wait_for_state(session, state, rounds: int = 200) -> None:
    for _ in range(rounds):
        if session.state is state:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"session never reached {state}")


# ── Tests: sessions ──────────────────────────────────────────────────


class TestSessions:
    def test_create_session_uses_default_language(self, fake_llm):
        h = _Harness(fake_llm())
        session = h.orchestrator.create_session()
        assert session.language == "en-US"
        assert session.state is S.IDLE
        assert h.orchestrator.get_session(session.session_id) is session

    async def test_unknown_session_raises(self, fake_llm):
        h = _Harness(fake_llm())
        with pytest.raises(SessionNotFound):
            await h.orchestrator.handle_text("nope", "hello")

    async def test_end_session_removes_it(self, fake_llm):
        h = _Harness(fake_llm())
        session = h.orchestrator.create_session()
        await h.orchestrator.end_session(session.session_id)
        with pytest.raises(SessionNotFound):
            h.orchestrator.get_session(session.session_id)

    async def test_idle_sessions_are_evicted(self, fake_llm):
        h = _Harness(fake_llm())
        stale = h.orchestrator.create_session()
        fresh = h.orchestrator.create_session()
        h.orchestrator._sessions[stale.session_id].last_active -= 3600

        evicted = await h.orchestrator.evict_idle(1800)

        assert evicted == [stale.session_id]
        assert h.orchestrator.get_session(fresh.session_id) is fresh
        with pytest.raises(SessionNotFound):
            h.orchestrator.get_session(stale.session_id)

    async def test_busy_sessions_are_not_evicted(self, fake_llm):
        h = _Harness(fake_llm())
        session = h.orchestrator.create_session()
        entry = h.orchestrator._sessions[session.session_id]
        entry.last_active -= 3600

        async with entry.lock:
            assert await h.orchestrator.evict_idle(1800) == []

    def test_listener_can_unsubscribe(self, fake_llm):
        h = _Harness(fake_llm())
        seen = []
        remove = h.orchestrator.add_listener(lambda *args: seen.append(args))
        remove()
        session = h.orchestrator.create_session()
        h.orchestrator._set_state(session, S.CAPTURING)
        assert seen == []


# ── Tests: text turns ────────────────────────────────────────────────


class TestTextTurns:
    async def test_direct_reply(self, fake_llm):
        h = _Harness(fake_llm(_reply("Hello, what is your name?")))
        session = h.orchestrator.create_session(channel=Channel.TEXT)

        result = await h.orchestrator.handle_text(session.session_id, "hi")

        assert result.reply.display_text == "Hello, what is your name?"
        assert result.error is None
        assert result.state is S.IDLE
        assert h.transitions == [(S.IDLE, S.THINKING), (S.THINKING, S.IDLE)]
        assert session.transcript_lines() == ["You: hi", "Puck: Hello, what is your name?"]

    async def test_tool_round(self, fake_llm):
        primary = fake_llm(
            _tool_call("get_availability", {"department": "general"}),
            _reply("Dr. Smith at 10 AM or Dr. Jones at 2 PM?"),
        )
        h = _Harness(primary)
        session = h.orchestrator.create_session()

        result = await h.orchestrator.handle_text(session.session_id, "general medicine")

        assert "Dr. Smith" in result.reply.display_text
        assert h.transitions == [
            (S.IDLE, S.THINKING), (S.THINKING, S.TOOL_ROUND), (S.TOOL_ROUND, S.IDLE),
        ]
        assert any(t.is_tool_action for t in session.turns)

    async def test_full_booking_commits_once(self, fake_llm):
        booking = {
            "patientName": "Anu", "department": "General Medicine",
            "doctorName": "Dr. Smith", "symptoms": "fever", "timeSlot": "10:00 AM",
        }
        primary = fake_llm(
            _tool_call("confirm_appointment", booking, call_id="c1"),
            _tool_call("confirm_appointment", booking, call_id="c2"),
        )
        h = _Harness(primary)
        session = h.orchestrator.create_session()

        first = await h.orchestrator.handle_text(session.session_id, "10 AM please")
        second = await h.orchestrator.handle_text(session.session_id, "book it again")

        assert first.reply.display_text == "Confirmed: Dr. Smith at 10:00 AM."
        assert "already" in second.reply.display_text
        assert len(h.appointments.appointments) == 1
        assert len(primary.calls) == 2

    async def test_model_unavailable_gives_apology(self, fake_llm):
        h = _Harness(fake_llm(_connection_error()), fake_llm(_connection_error()))
        session = h.orchestrator.create_session()

        result = await h.orchestrator.handle_text(session.session_id, "hello")

        assert result.reply == APOLOGY_REPLY
        assert result.error == "ModelUnavailable"
        assert (S.THINKING, S.ERROR) in h.transitions
        assert (S.ERROR, S.IDLE) in h.transitions
        assert session.state is S.IDLE

    async def test_malformed_reply_asks_to_repeat(self, fake_llm):
        h = _Harness(fake_llm(AIMessage(content="")))
        session = h.orchestrator.create_session()
        result = await h.orchestrator.handle_text(session.session_id, "hello")
        assert result.reply == REPEAT_REPLY
        assert result.error == "MalformedReply"

    async def test_unknown_tool_gives_generic_reply(self, fake_llm):
        h = _Harness(fake_llm(_tool_call("delete_records", {})))
        session = h.orchestrator.create_session()
        result = await h.orchestrator.handle_text(session.session_id, "hello")
        assert result.reply == GENERIC_ERROR_REPLY
        assert result.error == "UnknownTool"

    async def test_session_recovers_after_error(self, fake_llm):
        h = _Harness(fake_llm(AIMessage(content=""), _reply("I'm here")))
        session = h.orchestrator.create_session()
        await h.orchestrator.handle_text(session.session_id, "hello")

        result = await h.orchestrator.handle_text(session.session_id, "hello?")
        assert result.reply.display_text == "I'm here"
        assert result.error is None

    async def test_text_turns_queue_per_session(self, fake_llm):
        h = _Harness(fake_llm(_reply("one"), _reply("two")))
        session = h.orchestrator.create_session()

        results = await asyncio.gather(
            h.orchestrator.handle_text(session.session_id, "first"),
            h.orchestrator.handle_text(session.session_id, "second"),
        )

        assert [r.reply.display_text for r in results] == ["one", "two"]
        assert session.transcript_lines() == ["You: first", "Puck: one", "You: second", "Puck: two"]


# ── Tests: speech ────────────────────────────────────────────────────


class TestSpeech:
    async def test_reply_is_spoken_then_idle(self, fake_llm):
        speech = _FakeSpeech()
        h = _Harness(fake_llm(_reply("Hello")), speech=speech)
        session = h.orchestrator.create_session()

        result = await h.orchestrator.handle_text(session.session_id, "hi")

        assert speech.spoken == ["Hello"]
        assert result.speech.delivered
        assert result.speech.audio_base64 == "bXAz"
        assert h.transitions[-2:] == [(S.THINKING, S.SPEAKING), (S.SPEAKING, S.IDLE)]
        assert result.state is S.IDLE

    async def test_new_turn_preempts_speaking(self, fake_llm):
        speech = _FakeSpeech(block_first=True)
        h = _Harness(fake_llm(_reply("A long answer"), _reply("Short")), speech=speech)
        session = h.orchestrator.create_session()

        first = asyncio.create_task(h.orchestrator.handle_text(session.session_id, "tell me"))
        await _wait_for_state(session, S.SPEAKING)
        second = await h.orchestrator.handle_text(session.session_id, "stop, next")

        assert (await first).speech.source is SpeechSource.CANCELLED
        assert second.speech.delivered
        assert speech.cancelled == 1

    async def test_preempting_one_session_leaves_others_speaking(self, fake_llm):
        speech = _FakeSpeech(block_all=True)
        h = _Harness(fake_llm(_reply("Alpha"), _reply("Beta")), speech=speech)
        first = h.orchestrator.create_session()
        second = h.orchestrator.create_session()

        first_turn = asyncio.create_task(h.orchestrator.handle_text(first.session_id, "hi"))
        await _wait_for_state(first, S.SPEAKING)
        second_turn = asyncio.create_task(h.orchestrator.handle_text(second.session_id, "hi"))
        await _wait_for_state(second, S.SPEAKING)

        await h.orchestrator.start_capture(first.session_id, QueueRecognizer())

        assert (await first_turn).speech.source is SpeechSource.CANCELLED
        assert second.state is S.SPEAKING
        assert speech.cancelled_texts == ["Alpha"]

        await h.orchestrator.cancel_capture(first.session_id)
        await h.orchestrator.end_session(second.session_id)
        assert (await second_turn).speech.source is SpeechSource.CANCELLED

    async def test_failed_speech_still_returns_reply(self, fake_llm):
        speech = MagicMock()
        speech.speak = AsyncMock(return_value=SpeechResult(SpeechSource.NONE, error="no voice"))
        h = _Harness(fake_llm(_reply("Hello")), speech=speech)
        session = h.orchestrator.create_session()

        result = await h.orchestrator.handle_text(session.session_id, "hi")

        assert result.reply.display_text == "Hello"
        assert not result.speech.delivered
        assert session.state is S.IDLE


# ── Tests: voice capture ─────────────────────────────────────────────


class TestCapture:
    async def test_final_segment_runs_a_turn(self, fake_llm):
        h = _Harness(fake_llm(_reply("What is your name?")))
        session = h.orchestrator.create_session()
        recognizer = QueueRecognizer()

        await h.orchestrator.start_capture(session.session_id, recognizer)
        recognizer.push("I need a doctor", is_final=True)
        result = await h.orchestrator.complete_capture(session.session_id)

        assert result.reply.display_text == "What is your name?"
        assert session.turns[0].text == "I need a doctor"
        assert h.transitions[:2] == [(S.IDLE, S.CAPTURING), (S.CAPTURING, S.THINKING)]

    async def test_continuous_capture_flushes_on_stop(self, fake_llm):
        h = _Harness(fake_llm(_reply("Noted")))
        session = h.orchestrator.create_session()
        recognizer = QueueRecognizer()

        await h.orchestrator.start_capture(session.session_id, recognizer, continuous=True)
        recognizer.push("my name is Anu", is_final=True)
        recognizer.push("and I have a fe")
        waiter = asyncio.create_task(h.orchestrator.complete_capture(session.session_id))
        for _ in range(5):
            await asyncio.sleep(0)
        await h.orchestrator.stop_capture(session.session_id)
        result = await waiter

        assert result.reply.display_text == "Noted"
        assert session.turns[0].text == "my name is Anu and I have a fe"

    async def test_cancelled_capture_returns_to_idle(self, fake_llm):
        llm = fake_llm()
        h = _Harness(llm)
        session = h.orchestrator.create_session()
        recognizer = QueueRecognizer()

        await h.orchestrator.start_capture(session.session_id, recognizer, continuous=True)
        recognizer.push("hello", is_final=True)
        await h.orchestrator.cancel_capture(session.session_id)

        assert await h.orchestrator.complete_capture(session.session_id) is None
        assert session.state is S.IDLE
        assert llm.calls == []

    async def test_recognizer_failure_is_silent(self, fake_llm):
        llm = fake_llm()
        h = _Harness(llm)
        session = h.orchestrator.create_session()
        recognizer = QueueRecognizer()

        await h.orchestrator.start_capture(session.session_id, recognizer)
        recognizer.fail("microphone unplugged")
        result = await h.orchestrator.complete_capture(session.session_id)

        assert result is None
        assert session.turns == []
        assert h.transitions[-2:] == [(S.CAPTURING, S.ERROR), (S.ERROR, S.IDLE)]
        assert llm.calls == []

    async def test_capture_while_thinking_is_busy(self, fake_llm):
        h = _Harness(fake_llm())
        session = h.orchestrator.create_session()

        async with h.orchestrator._sessions[session.session_id].lock:
            with pytest.raises(SessionBusy):
                await h.orchestrator.start_capture(session.session_id, QueueRecognizer())

    async def test_capture_preempts_speaking(self, fake_llm):
        speech = _FakeSpeech(block_first=True)
        h = _Harness(fake_llm(_reply("A long answer")), speech=speech)
        session = h.orchestrator.create_session()

        turn = asyncio.create_task(h.orchestrator.handle_text(session.session_id, "tell me"))
        await _wait_for_state(session, S.SPEAKING)
        await h.orchestrator.start_capture(session.session_id, QueueRecognizer())

        assert session.state is S.CAPTURING
        assert (await turn).speech.source is SpeechSource.CANCELLED
        await h.orchestrator.cancel_capture(session.session_id)


# ── Tests: transcripts ───────────────────────────────────────────────


class TestTranscripts:
    async def test_transcript_is_upserted_after_each_turn(self, fake_llm):
        h = _Harness(fake_llm(_reply("one"), _reply("two")))
        session = h.orchestrator.create_session()

        await h.orchestrator.handle_text(session.session_id, "first")
        await h.orchestrator.drain()
        first_start = h.transcripts.records[session.session_id].start_time
        await h.orchestrator.handle_text(session.session_id, "second")
        await h.orchestrator.drain()

        assert len(h.transcripts.records) == 1
        record = h.transcripts.records[session.session_id]
        assert record.messages == ["You: first", "Puck: one", "You: second", "Puck: two"]
        assert record.start_time == first_start
        assert record.type == "voice"

    async def test_transcript_failure_is_logged(self, fake_llm, caplog):
        transcripts = MagicMock()
        transcripts.save_transcript = AsyncMock(side_effect=PersistenceError("down"))
        h = _Harness(fake_llm(_reply("ok")), transcripts=transcripts)
        session = h.orchestrator.create_session()

        result = await h.orchestrator.handle_text(session.session_id, "hi")
        await h.orchestrator.drain()

        assert result.reply.display_text == "ok"
        assert "Transcript not saved" in caplog.text

    async def test_dropped_records_connection_does_not_break_shutdown(self, fake_llm, caplog):
        records = RecordsClient(base_url="http://records.test")
        records._client.request = AsyncMock(side_effect=httpx.ReadError("connection reset"))
        h = _Harness(fake_llm(_reply("ok")), transcripts=records)
        session = h.orchestrator.create_session()

        result = await h.orchestrator.handle_text(session.session_id, "hi")
        await h.orchestrator.aclose()

        assert result.reply.display_text == "ok"
        assert "Transcript not saved" in caplog.text
        assert not h.orchestrator._pending
