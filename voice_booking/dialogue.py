"""Dialogue model client: one Claude conversation per dialogue session.

Each :class:`DialogueSession` owns a :class:`ModelConversation` handle,
created lazily on the first model call with the booking system prompt and
the tool schemas bound.  The handle keeps the provider-side message history
(human, AI, tool results) so the session's conversation stays coherent.

Failure handling
----------------
Transport, auth, model-not-found, rate-limit and 5xx failures on the primary
model trigger a single fallback: a fresh handle on ``FALLBACK_MODEL_NAME``
with the same system prompt, replaying only the current utterance.  Earlier
turns are NOT carried over.  The session stays on the fallback model from
then on.  Anything else, or a failure on the fallback, raises
:class:`ModelUnavailable`.

Reply parsing
-------------
A tool call always wins over text.  Text replies are expected to be
``{"text": ..., "speech": ...}`` JSON, possibly wrapped in a markdown code
fence; anything unparsable is passed through as both display and speech text.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator, Callable
from typing import Any

import anthropic
import httpx
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from voice_booking.config import (
    ANTHROPIC_API_KEY,
    FALLBACK_MODEL_NAME,
    FAST_MODEL_NAME,
    MODEL_NAME,
)
from voice_booking.errors import AvailabilityError, MalformedReply, ModelUnavailable, UnknownTool
from voice_booking.models import (
    DialogueSession,
    DirectReply,
    ModelReply,
    ToolCallReply,
    ToolInvocation,
    ToolName,
)
from voice_booking.prompts import get_booking_prompt
from voice_booking.services.metrics import metrics
from voice_booking.stores import AvailabilityProvider
from voice_booking.tools import TOOL_DEFINITIONS

logger = logging.getLogger(__name__)

# Provider failures that justify switching to the fallback model
FALLBACK_ERRORS: tuple[type[Exception], ...] = (
    anthropic.APIConnectionError,
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
    anthropic.NotFoundError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
    httpx.TransportError,
)

SKIPPED_TOOL_CALL = "Not executed: only one tool call is handled per turn."
SUPERSEDED_TOOL_CALL = "Not executed: the patient said something new first."

_CODE_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)

LLMFactory = Callable[[str], Any]


# ── LLM builders ────────────────────────────────────────────────────


def _build_llm(model_name: str):
    """Build a booking LLM with the tool schemas bound."""
    llm = ChatAnthropic(
        model=model_name,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.2,
        max_tokens=1024,
    )
    return llm.bind_tools(TOOL_DEFINITIONS)


def build_fast_llm() -> ChatAnthropic:
    """Build the cheap, tool-less LLM used for sentiment and the symptom chat."""
    return ChatAnthropic(
        model=FAST_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.3,
        max_tokens=1024,
    )


# ── Reply parsing ───────────────────────────────────────────────────


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE_RE.sub("", text).strip()


def message_text(message: BaseMessage) -> str:
    """Concatenate the text blocks of a (possibly multi-block) message."""
    content = message.content
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def parse_direct_text(raw: str) -> DirectReply:
    """Parse the ``{"text", "speech"}`` envelope, degrading to raw text."""
    cleaned = strip_code_fences(raw)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.debug("Reply is not JSON, passing raw text through")
        data = None

    if not isinstance(data, dict) or not isinstance(data.get("text"), str):
        fallback = cleaned or raw.strip()
        return DirectReply(display_text=fallback, speech_text=fallback)

    text = data["text"]
    speech = data.get("speech")
    if not isinstance(speech, str) or not speech.strip():
        speech = text
    return DirectReply(display_text=text, speech_text=speech)


def parse_model_reply(message: AIMessage) -> ModelReply:
    """Turn a provider message into exactly one reply shape."""
    tool_calls = getattr(message, "tool_calls", None) or []
    if tool_calls:
        if len(tool_calls) > 1:
            logger.warning(
                "Model requested %d tool calls; only %r will run",
                len(tool_calls), tool_calls[0].get("name"),
            )
        call = tool_calls[0]
        try:
            name = ToolName(call.get("name"))
        except ValueError:
            raise UnknownTool(str(call.get("name"))) from None
        arguments = {
            str(key): str(value)
            for key, value in (call.get("args") or {}).items()
            if value is not None
        }
        return ToolCallReply(
            invocation=ToolInvocation(name=name, arguments=arguments, call_id=call.get("id") or ""),
        )

    text = message_text(message).strip()
    if not text:
        raise MalformedReply("Model returned neither text nor a tool call")
    return parse_direct_text(text)


# ── Per-session conversation handle ─────────────────────────────────


class ModelConversation:
    """Provider conversation owned by exactly one dialogue session."""

    def __init__(self, model_name: str, llm, system_prompt: str) -> None:
        self.model_name = model_name
        self.system_prompt = system_prompt
        self.messages: list[BaseMessage] = []
        self._llm = llm

    @property
    def open_tool_calls(self) -> list[dict[str, Any]]:
        """Tool calls of the latest AI message that have no result yet."""
        answered: set[str] = set()
        for message in reversed(self.messages):
            if isinstance(message, ToolMessage):
                answered.add(message.tool_call_id)
                continue
            if isinstance(message, AIMessage):
                return [c for c in message.tool_calls if c.get("id") not in answered]
            return []
        return []

    def close_open_tool_calls(self, reason: str, *, keep: str | None = None) -> list[ToolMessage]:
        """Answer every open tool call except *keep* with *reason*."""
        closing = [
            ToolMessage(content=reason, tool_call_id=call.get("id") or "")
            for call in self.open_tool_calls
            if call.get("id") != keep
        ]
        self.messages.extend(closing)
        return closing

    def append(self, *messages: BaseMessage) -> None:
        self.messages.extend(messages)

    async def exchange(self, new_messages: list[BaseMessage]) -> AIMessage:
        """Send *new_messages* and record the reply.  History is unchanged on failure."""
        mark = len(self.messages)
        self.messages.extend(new_messages)
        try:
            response = await self._llm.ainvoke(
                [SystemMessage(content=self.system_prompt), *self.messages],
            )
        except Exception:
            del self.messages[mark:]
            raise
        self.messages.append(response)
        return response

    async def stream(self, new_messages: list[BaseMessage]) -> AsyncIterator[str]:
        """Like :meth:`exchange`, yielding text chunks as they arrive."""
        mark = len(self.messages)
        self.messages.extend(new_messages)
        pieces: list[str] = []
        try:
            async for chunk in self._llm.astream(
                [SystemMessage(content=self.system_prompt), *self.messages],
            ):
                text = message_text(chunk)
                if text:
                    pieces.append(text)
                    yield text
        except BaseException:
            # Includes the consumer closing the stream early
            del self.messages[mark:]
            raise
        self.messages.append(AIMessage(content="".join(pieces)))


# ── Client ──────────────────────────────────────────────────────────


class DialogueModelClient:
    """Sends user utterances and tool results to the session's model conversation."""

    def __init__(
        self,
        availability: AvailabilityProvider,
        *,
        llm_factory: LLMFactory | None = None,
        primary_model: str = MODEL_NAME,
        fallback_model: str = FALLBACK_MODEL_NAME,
    ) -> None:
        self._availability = availability
        self._llm_factory = llm_factory or _build_llm
        self.primary_model = primary_model
        self.fallback_model = fallback_model

    # ── Public API ───────────────────────────────────────────────────

    async def send(self, session: DialogueSession, utterance: str) -> ModelReply:
        """Send one user utterance and return the model's reply."""
        handle = await self._ensure_handle(session)
        handle.close_open_tool_calls(SUPERSEDED_TOOL_CALL)
        message = HumanMessage(content=utterance)
        return await self._exchange(session, [message], replay=message, operation="send")

    async def send_tool_result(
        self,
        session: DialogueSession,
        invocation: ToolInvocation,
        result: str,
    ) -> ModelReply:
        """Feed a tool result back as the second message of the turn."""
        handle = await self._ensure_handle(session)
        replay = HumanMessage(
            content=json.dumps({"tool": invocation.name.value, "result": result}),
        )
        if self._is_open(handle, invocation):
            handle.close_open_tool_calls(SKIPPED_TOOL_CALL, keep=invocation.call_id)
            messages: list[BaseMessage] = [
                ToolMessage(content=result, tool_call_id=invocation.call_id),
            ]
        else:
            # The call is not in this conversation (e.g. replaced by a fallback)
            handle.close_open_tool_calls(SKIPPED_TOOL_CALL)
            messages = [replay]
        return await self._exchange(session, messages, replay=replay, operation="tool_result")

    def record_tool_outcome(
        self,
        session: DialogueSession,
        invocation: ToolInvocation,
        result: str,
        reply: DirectReply,
    ) -> None:
        """Record a tool result and the fixed reply shown for it, without a model call."""
        handle = session.model_handle
        if handle is None:
            return
        if self._is_open(handle, invocation):
            handle.close_open_tool_calls(SKIPPED_TOOL_CALL, keep=invocation.call_id)
            handle.append(ToolMessage(content=result, tool_call_id=invocation.call_id))
        else:
            handle.close_open_tool_calls(SKIPPED_TOOL_CALL)
        handle.append(
            AIMessage(content=json.dumps({"text": reply.display_text, "speech": reply.speech_text})),
        )

    # ── Internal ─────────────────────────────────────────────────────

    @staticmethod
    def _is_open(handle: ModelConversation, invocation: ToolInvocation) -> bool:
        return bool(invocation.call_id) and any(
            call.get("id") == invocation.call_id for call in handle.open_tool_calls
        )

    def _new_handle(self, model_name: str, system_prompt: str) -> ModelConversation:
        return ModelConversation(model_name, self._llm_factory(model_name), system_prompt)

    async def _ensure_handle(self, session: DialogueSession) -> ModelConversation:
        if session.model_handle is None:
            try:
                slots = await self._availability.list_slots()
            except AvailabilityError as exc:
                logger.warning("[%s] Starting without a slot summary: %s", session.session_id, exc)
                slots = []
            session.model_handle = self._new_handle(
                self.primary_model, get_booking_prompt(session.language, slots),
            )
            logger.info(
                "[%s] Model conversation started on %s", session.session_id, self.primary_model,
            )
        return session.model_handle

    async def _exchange(
        self,
        session: DialogueSession,
        messages: list[BaseMessage],
        *,
        replay: HumanMessage,
        operation: str,
    ) -> ModelReply:
        handle = session.model_handle
        try:
            async with metrics.track("anthropic", f"{operation}:{handle.model_name}"):
                response = await handle.exchange(messages)

        except FALLBACK_ERRORS as exc:
            if handle.model_name == self.fallback_model:
                raise ModelUnavailable(
                    f"Fallback model {handle.model_name} failed: {exc}",
                    model_name=handle.model_name,
                ) from exc

            logger.warning(
                "[%s] Model %s unavailable (%s); switching to %s. "
                "Earlier turns are not carried over.",
                session.session_id, handle.model_name, type(exc).__name__, self.fallback_model,
            )
            metrics.record_event("ModelFallback", Model=self.fallback_model)
            fallback = self._new_handle(self.fallback_model, handle.system_prompt)
            session.model_handle = fallback
            try:
                async with metrics.track("anthropic", f"{operation}:{fallback.model_name}"):
                    response = await fallback.exchange([replay])
            except Exception as fallback_exc:
                raise ModelUnavailable(
                    f"Fallback model {fallback.model_name} failed: {fallback_exc}",
                    model_name=fallback.model_name,
                ) from fallback_exc

        except Exception as exc:
            raise ModelUnavailable(
                f"Model {handle.model_name} call failed: {exc}",
                model_name=handle.model_name,
            ) from exc

        try:
            return parse_model_reply(response)
        except MalformedReply:
            # An empty assistant message would be rejected on the next call
            session.model_handle.messages.pop()
            raise
