"""Booking orchestrator: sequences every user turn of every dialogue session.

State machine per session::

    IDLE → CAPTURING → THINKING → (TOOL_ROUND) → SPEAKING → IDLE
                          ERROR (from anywhere) → IDLE

* One turn runs at a time per session (``asyncio.Lock``).  Text turns queue
  behind the one in flight; a capture request while the model is working
  raises :class:`SessionBusy`.
* A new capture or text turn preempts ``SPEAKING``.
* No error ends a session.  Each failure maps to a fixed reply, or to
  silence for capture failures, and the session returns to ``IDLE``.
* Transcripts are written in the background after every turn and drained
  on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from voice_booking.agent import build_turn_graph
from voice_booking.config import DEFAULT_LANGUAGE
from voice_booking.dialogue import DialogueModelClient
from voice_booking.errors import (
    CaptureError,
    MalformedReply,
    ModelUnavailable,
    PersistenceError,
    SessionBusy,
    SessionNotFound,
    ToolProtocolViolation,
)
from voice_booking.models import (
    AssistantState,
    Channel,
    DialogueSession,
    DirectReply,
    Role,
    TranscriptRecord,
)
from voice_booking.sentiment import SentimentAnalyzer
from voice_booking.services.records_client import RecordsClient
from voice_booking.speech.capture import Recognizer, SpeechCapture
from voice_booking.speech.output import SpeechOutput, SpeechResult, SpeechSource
from voice_booking.stores import (
    InMemoryAppointmentStore,
    InMemoryTranscriptStore,
    StaticAvailability,
    TranscriptStore,
)
from voice_booking.tools import ToolExecutor

logger = logging.getLogger(__name__)

StateListener = Callable[[str, AssistantState, AssistantState], None]

# ── Fixed replies ────────────────────────────────────────────────────
APOLOGY_REPLY = DirectReply(
    display_text="I'm sorry, something went wrong. Please say that again.",
    speech_text="I'm sorry, something went wrong. Please say that again.",
)
GENERIC_ERROR_REPLY = DirectReply(
    display_text="Sorry, I couldn't complete that. Could you tell me again what you need?",
    speech_text="Sorry, I couldn't complete that. Could you tell me again what you need?",
)
REPEAT_REPLY = DirectReply(
    display_text="Sorry, I didn't catch that. Could you please repeat?",
    speech_text="Sorry, I didn't catch that. Could you please repeat?",
)

BUSY_STATES = (AssistantState.THINKING, AssistantState.TOOL_ROUND)


@dataclass
class TurnResult:
    session_id: str
    reply: DirectReply
    state: AssistantState
    speech: SpeechResult | None = None
    # Name of the error that produced a fixed reply, if any
    error: str | None = None


@dataclass
class _SessionEntry:
    session: DialogueSession
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    capture: SpeechCapture | None = None
    speech_task: asyncio.Task | None = None
    last_active: float = field(default_factory=time.monotonic)


class Orchestrator:
    """Owns the session registry and drives each session's state machine."""

    def __init__(
        self,
        model_client: DialogueModelClient,
        tools: ToolExecutor,
        transcripts: TranscriptStore,
        *,
        speech_output: SpeechOutput | None = None,
        default_language: str = DEFAULT_LANGUAGE,
    ) -> None:
        self._model = model_client
        self._tools = tools
        self._transcripts = transcripts
        self._speech = speech_output
        self.default_language = default_language
        self._graph = build_turn_graph(model_client, tools, self._set_state)
        self._sessions: dict[str, _SessionEntry] = {}
        self._listeners: list[StateListener] = []
        self._pending: set[asyncio.Task] = set()

    # ── Sessions ─────────────────────────────────────────────────────

    def create_session(
        self, language: str | None = None, channel: Channel = Channel.VOICE,
    ) -> DialogueSession:
        session = DialogueSession(language=language or self.default_language, channel=channel)
        self._sessions[session.session_id] = _SessionEntry(session=session)
        logger.info(
            "[%s] Session started (%s, %s)", session.session_id, session.language, channel.value,
        )
        return session

    def get_session(self, session_id: str) -> DialogueSession:
        return self._entry(session_id).session

    async def end_session(self, session_id: str) -> None:
        entry = self._sessions.pop(session_id, None)
        if entry is None:
            raise SessionNotFound(session_id)
        if entry.capture is not None:
            await entry.capture.cancel()
        await self._preempt_speech(entry)
        logger.info("[%s] Session ended after %d turns", session_id, len(entry.session.turns))

    async def evict_idle(self, max_idle_seconds: float) -> list[str]:
        """End idle sessions untouched for *max_idle_seconds*."""
        cutoff = time.monotonic() - max_idle_seconds
        stale = [
            session_id for session_id, entry in self._sessions.items()
            if entry.last_active < cutoff
            and entry.session.state is AssistantState.IDLE
            and not entry.lock.locked()
        ]
        for session_id in stale:
            if session_id in self._sessions:
                await self.end_session(session_id)
        if stale:
            logger.info("Evicted %d idle session(s)", len(stale))
        return stale

    def _entry(self, session_id: str) -> _SessionEntry:
        try:
            entry = self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(session_id) from None
        entry.last_active = time.monotonic()
        return entry

    # ── State ────────────────────────────────────────────────────────

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to ``(session_id, old, new)`` transitions.  Returns an unsubscribe."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, session: DialogueSession, state: AssistantState) -> None:
        old = session.state
        if old is state:
            return
        session.state = state
        logger.debug("[%s] %s → %s", session.session_id, old.value, state.value)
        for listener in list(self._listeners):
            try:
                listener(session.session_id, old, state)
            except Exception:
                logger.exception("State listener failed")

    # ── Text turns ───────────────────────────────────────────────────

    async def handle_text(self, session_id: str, text: str) -> TurnResult:
        """Run one user turn and wait for its reply to be spoken."""
        entry = self._entry(session_id)
        session = entry.session

        async with entry.lock:
            await self._preempt_speech(entry)
            session.add_turn(Role.USER, text)
            error: Exception | None = None
            try:
                result = await self._graph.ainvoke(
                    {"session": session, "utterance": text, "reply": None},
                )
                reply = result["reply"]
            except ModelUnavailable as exc:
                logger.error("[%s] Model unavailable: %s", session_id, exc)
                error, reply = exc, APOLOGY_REPLY
            except ToolProtocolViolation as exc:
                logger.warning("[%s] Tool protocol violation: %s", session_id, exc)
                error, reply = exc, GENERIC_ERROR_REPLY
            except MalformedReply as exc:
                logger.warning("[%s] Malformed model reply: %s", session_id, exc)
                error, reply = exc, REPEAT_REPLY
            except Exception as exc:
                logger.exception("[%s] Unexpected error during turn", session_id)
                error, reply = exc, GENERIC_ERROR_REPLY

            if error is not None:
                self._set_state(session, AssistantState.ERROR)
                self._set_state(session, AssistantState.IDLE)

            session.add_turn(Role.ASSISTANT, reply.display_text)
            self._persist(session)
            task = self._start_speech(entry, reply)

        speech = await self._await_speech(task) if task is not None else None
        return TurnResult(
            session_id=session_id,
            reply=reply,
            state=session.state,
            speech=speech,
            error=type(error).__name__ if error is not None else None,
        )

    # ── Voice turns ──────────────────────────────────────────────────

    async def start_capture(
        self, session_id: str, recognizer: Recognizer, *, continuous: bool = False,
    ) -> SpeechCapture:
        """Begin listening.  Raises :class:`SessionBusy` while the model is working."""
        entry = self._entry(session_id)
        session = entry.session
        if entry.lock.locked() or session.state in BUSY_STATES:
            raise SessionBusy(session_id, session.state.value)

        if entry.capture is not None:
            await entry.capture.cancel()
        await self._preempt_speech(entry)

        capture = SpeechCapture(recognizer, language=session.language, continuous=continuous)
        await capture.start()
        entry.capture = capture
        self._set_state(session, AssistantState.CAPTURING)
        return capture

    async def complete_capture(
        self, session_id: str, capture: SpeechCapture | None = None,
    ) -> TurnResult | None:
        """Wait for *capture* (default: the current one) and run its utterance as a turn.

        Returns ``None`` when nothing usable was heard, the capture was
        cancelled or replaced, or the recognizer failed.
        """
        entry = self._entry(session_id)
        capture = capture or entry.capture
        if capture is None:
            return None
        session = entry.session
        try:
            utterance = await capture.result()
        except CaptureError as exc:
            logger.warning("[%s] Capture failed: %s", session_id, exc)
            if entry.capture is capture:
                entry.capture = None
                self._set_state(session, AssistantState.ERROR)
                self._set_state(session, AssistantState.IDLE)
            return None

        if entry.capture is not capture:
            logger.debug("[%s] Capture superseded, utterance dropped", session_id)
            return None
        entry.capture = None

        if not utterance or not utterance.strip():
            if session.state is AssistantState.CAPTURING:
                self._set_state(session, AssistantState.IDLE)
            return None
        return await self.handle_text(session_id, utterance.strip())

    async def stop_capture(self, session_id: str) -> None:
        """Stop listening and keep what was heard."""
        capture = self._entry(session_id).capture
        if capture is not None and capture.is_active:
            await capture.stop()

    async def cancel_capture(self, session_id: str) -> None:
        """Stop listening and discard what was heard."""
        capture = self._entry(session_id).capture
        if capture is not None:
            await capture.cancel()

    # ── Speech ───────────────────────────────────────────────────────

    def _start_speech(self, entry: _SessionEntry, reply: DirectReply) -> asyncio.Task | None:
        session = entry.session
        if self._speech is None:
            self._set_state(session, AssistantState.IDLE)
            return None

        self._set_state(session, AssistantState.SPEAKING)
        task = asyncio.create_task(
            self._speech.speak(reply.speech_text, session.language),
            name=f"speech-{session.session_id}",
        )
        entry.speech_task = task

        def _done(finished: asyncio.Task) -> None:
            if entry.speech_task is finished:
                entry.speech_task = None
                if session.state is AssistantState.SPEAKING:
                    self._set_state(session, AssistantState.IDLE)

        task.add_done_callback(_done)
        return task

    @staticmethod
    async def _await_speech(task: asyncio.Task) -> SpeechResult:
        await asyncio.wait({task})
        if task.cancelled():
            return SpeechResult(SpeechSource.CANCELLED)
        exc = task.exception()
        if exc is not None:
            logger.error("Speech output failed: %s", exc)
            return SpeechResult(SpeechSource.NONE, error=str(exc))
        return task.result()

    async def _preempt_speech(self, entry: _SessionEntry) -> None:
        task = entry.speech_task
        if task is None or task.done():
            return
        logger.debug("[%s] Speech preempted", entry.session.session_id)
        entry.speech_task = None
        task.cancel()
        await asyncio.wait({task})
        if entry.session.state is AssistantState.SPEAKING:
            self._set_state(entry.session, AssistantState.IDLE)

    # ── Transcript persistence ───────────────────────────────────────

    def _persist(self, session: DialogueSession) -> None:
        record = TranscriptRecord(
            session_id=session.session_id,
            type=session.channel.value,
            messages=session.transcript_lines(),
            start_time=session.started_at,
        )
        task = asyncio.create_task(self._write_transcript(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_transcript(self, record: TranscriptRecord) -> None:
        try:
            await self._transcripts.save_transcript(record)
        except PersistenceError as exc:
            logger.error("[%s] Transcript not saved: %s", record.session_id, exc)

    # ── Shutdown ─────────────────────────────────────────────────────

    async def drain(self) -> None:
        """Wait for background transcript writes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def aclose(self) -> None:
        for entry in list(self._sessions.values()):
            if entry.capture is not None:
                await entry.capture.cancel()
            await self._preempt_speech(entry)
        await self.drain()


# ── Factory ──────────────────────────────────────────────────────────


def create_booking_assistant(
    records: RecordsClient | None = None,
    *,
    speech_output: SpeechOutput | None = None,
    offline: bool = False,
    llm_factory=None,
) -> Orchestrator:
    """Wire the model client, tools and stores into an orchestrator.

    With ``offline=True`` the records backend is replaced by in-memory
    stores over a fixed slot list; the dialogue model is still called.
    """
    if offline:
        availability, appointments, transcripts = (
            StaticAvailability(), InMemoryAppointmentStore(), InMemoryTranscriptStore(),
        )
    else:
        records = records or RecordsClient()
        availability = appointments = transcripts = records

    model_client = DialogueModelClient(availability, llm_factory=llm_factory)
    tools = ToolExecutor(model_client, availability, appointments, sentiment=SentimentAnalyzer())
    logger.debug(
        "Booking assistant wired (primary: %s, fallback: %s, offline: %s)",
        model_client.primary_model, model_client.fallback_model, offline,
    )
    return Orchestrator(model_client, tools, transcripts, speech_output=speech_output)
