"""Streaming symptom chat: a tool-less conversation on the fast model.

Separate from the booking flow.  The assistant's turn is updated in place as
chunks arrive, and the transcript is saved with type ``chat`` after every
reply.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import anthropic
import httpx
from langchain_core.messages import HumanMessage

from voice_booking.config import DEFAULT_LANGUAGE, FAST_MODEL_NAME
from voice_booking.dialogue import ModelConversation, build_fast_llm
from voice_booking.errors import PersistenceError, SessionNotFound
from voice_booking.models import ASSISTANT_NAME, Channel, DialogueSession, Role, TranscriptRecord
from voice_booking.prompts import get_health_chat_prompt
from voice_booking.stores import TranscriptStore

logger = logging.getLogger(__name__)

GREETING = (
    f"Hello! I'm {ASSISTANT_NAME}, your medical assistant. I can help verify "
    "symptoms and check doctor availability. How are you feeling?"
)
CONNECTION_ERROR_REPLY = (
    "I'm having trouble connecting to the hospital network. Please try again."
)
TRANSCRIPT_TYPE = "chat"


@dataclass
class _ChatEntry:
    session: DialogueSession
    conversation: ModelConversation
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_active: float = field(default_factory=time.monotonic)


class HealthChat:
    def __init__(
        self,
        transcripts: TranscriptStore,
        *,
        llm=None,
        default_language: str = DEFAULT_LANGUAGE,
    ) -> None:
        self._transcripts = transcripts
        self._llm = llm
        self.default_language = default_language
        self._chats: dict[str, _ChatEntry] = {}

    def _get_llm(self):
        if self._llm is None:
            self._llm = build_fast_llm()
        return self._llm

    def open(self, session_id: str | None = None, language: str | None = None) -> DialogueSession:
        """Start a chat (or return the existing one) with the greeting as first turn."""
        if session_id and session_id in self._chats:
            return self._chats[session_id].session

        session = DialogueSession(language=language or self.default_language, channel=Channel.TEXT)
        if session_id:
            session.session_id = session_id
        session.add_turn(Role.ASSISTANT, GREETING)
        conversation = ModelConversation(
            FAST_MODEL_NAME, self._get_llm(), get_health_chat_prompt(session.language),
        )
        self._chats[session.session_id] = _ChatEntry(session=session, conversation=conversation)
        logger.info("[%s] Health chat opened", session.session_id)
        return session

    async def stream_reply(self, session_id: str, message: str) -> AsyncIterator[str]:
        """Yield the assistant's reply to *message* chunk by chunk.

        If the caller stops consuming before the reply is complete, the
        exchange is dropped from both the transcript and the model history.
        """
        self.open(session_id)
        entry = self._chats[session_id]
        session = entry.session

        async with entry.lock:
            entry.last_active = time.monotonic()
            mark = len(session.turns)
            session.add_turn(Role.USER, message)
            turn = session.add_turn(Role.ASSISTANT, "")
            stream = entry.conversation.stream([HumanMessage(content=message)])
            try:
                async with contextlib.aclosing(stream):
                    async for chunk in stream:
                        turn.text += chunk
                        yield chunk
            except (anthropic.APIError, httpx.HTTPError) as exc:
                logger.error("[%s] Health chat failed: %s", session_id, exc)
                tail = CONNECTION_ERROR_REPLY if not turn.text else f"\n\n{CONNECTION_ERROR_REPLY}"
                turn.text += tail
                yield tail
            except BaseException:
                del session.turns[mark:]
                logger.info("[%s] Health chat reply abandoned", session_id)
                raise

            await self._save(session)

    def close(self, session_id: str) -> None:
        """Forget a chat and its model history."""
        if self._chats.pop(session_id, None) is None:
            raise SessionNotFound(session_id)
        logger.info("[%s] Health chat closed", session_id)

    def evict_idle(self, max_idle_seconds: float) -> list[str]:
        """Close chats untouched for *max_idle_seconds*.  Chats mid-reply are kept."""
        cutoff = time.monotonic() - max_idle_seconds
        stale = [
            session_id for session_id, entry in self._chats.items()
            if entry.last_active < cutoff and not entry.lock.locked()
        ]
        for session_id in stale:
            del self._chats[session_id]
        if stale:
            logger.info("Evicted %d idle health chat(s)", len(stale))
        return stale

    async def _save(self, session: DialogueSession) -> None:
        record = TranscriptRecord(
            session_id=session.session_id,
            type=TRANSCRIPT_TYPE,
            messages=session.transcript_lines(),
            start_time=session.started_at,
        )
        try:
            await self._transcripts.save_transcript(record)
        except PersistenceError as exc:
            logger.error("[%s] Chat log not saved: %s", session.session_id, exc)
