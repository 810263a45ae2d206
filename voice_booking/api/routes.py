"""FastAPI route definitions for the voice booking assistant API."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import APIRouter, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from voice_booking.api.schemas import (
    HealthChatRequest,
    HealthResponse,
    MessageRequest,
    MessageResponse,
    SessionCreateRequest,
    SessionResponse,
)
from voice_booking.errors import SessionBusy, SessionNotFound
from voice_booking.health_chat import HealthChat
from voice_booking.models import DialogueSession
from voice_booking.orchestrator import Orchestrator, TurnResult
from voice_booking.speech.capture import QueueRecognizer, SpeechCapture

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_orchestrator(request: Request) -> Orchestrator:
    """Retrieve the orchestrator from app state (set up in the lifespan)."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return orchestrator


def _get_health_chat(request: Request) -> HealthChat:
    chat = getattr(request.app.state, "health_chat", None)
    if chat is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return chat


def _session_response(session: DialogueSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        language=session.language,
        channel=session.channel,
        state=session.state,
        transcript=session.transcript_lines(),
        booked=session.draft.is_committed,
    )


def _message_response(result: TurnResult) -> MessageResponse:
    return MessageResponse(
        session_id=result.session_id,
        reply=result.reply.display_text,
        speech=result.reply.speech_text,
        state=result.state,
        audio_base64=result.speech.audio_base64 if result.speech else None,
        error=result.error,
    )


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/sessions", response_model=SessionResponse, status_code=201)
async def create_session(body: SessionCreateRequest, http_request: Request):
    """Start a booking conversation."""
    orchestrator = _get_orchestrator(http_request)
    session = orchestrator.create_session(body.language, body.channel)
    return _session_response(session)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, http_request: Request):
    orchestrator = _get_orchestrator(http_request)
    try:
        return _session_response(orchestrator.get_session(session_id))
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.delete("/sessions/{session_id}", status_code=204)
async def end_session(session_id: str, http_request: Request):
    orchestrator = _get_orchestrator(http_request)
    try:
        await orchestrator.end_session(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return Response(status_code=204)


@router.post("/sessions/{session_id}/messages", response_model=MessageResponse)
async def send_message(session_id: str, body: MessageRequest, http_request: Request):
    """Send a typed turn and get the assistant's reply.

    Model failures never show up as HTTP errors: they come back as a fixed
    reply with ``error`` set.  Only unexpected failures return a 500.
    """
    orchestrator = _get_orchestrator(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        result = await orchestrator.handle_text(session_id, body.message)
        return _message_response(result)

    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except Exception as e:
        # Full traceback stays server-side
        logger.exception("[%s] Error processing message", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e


@router.post("/health-chat")
async def health_chat(body: HealthChatRequest, http_request: Request):
    """Stream the symptom chat's reply as plain text chunks."""
    chat = _get_health_chat(http_request)
    chat.open(body.session_id, body.language)
    return StreamingResponse(
        chat.stream_reply(body.session_id, body.message),
        media_type="text/plain; charset=utf-8",
    )


@router.delete("/health-chat/{session_id}", status_code=204)
async def close_health_chat(session_id: str, http_request: Request):
    """Forget a symptom chat and its history."""
    chat = _get_health_chat(http_request)
    try:
        chat.close(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return Response(status_code=204)


# ── Voice websocket ──────────────────────────────────────────────────
#
# Client → server:
#   {"type": "start", "continuous": false}   begin listening
#   {"type": "partial" | "final", "text": ""} recognizer results
#   {"type": "recognizer_error", "message": ""}
#   {"type": "stop"} | {"type": "cancel"}
#   {"type": "text", "text": ""}              typed turn on the same session
#
# Server → client:
#   {"type": "state", "old": "", "new": ""}
#   {"type": "partial" | "final", "text": ""}
#   {"type": "reply", ...MessageResponse}
#   {"type": "error", "detail": ""}


async def _send_events(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        event = await outbox.get()
        await websocket.send_json(event)


async def _relay_capture(
    orchestrator: Orchestrator,
    session_id: str,
    capture: SpeechCapture,
    outbox: asyncio.Queue,
) -> None:
    async for event in capture.events():
        outbox.put_nowait({"type": event.kind.value, "text": event.text})
    result = await orchestrator.complete_capture(session_id, capture)
    if result is not None:
        outbox.put_nowait({"type": "reply", **_message_response(result).model_dump(mode="json")})


async def _relay_turn(orchestrator: Orchestrator, session_id: str, text: str, outbox: asyncio.Queue) -> None:
    result = await orchestrator.handle_text(session_id, text)
    outbox.put_nowait({"type": "reply", **_message_response(result).model_dump(mode="json")})


def _log_task_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Voice relay task failed", exc_info=task.exception())


@router.websocket("/sessions/{session_id}/voice")
async def voice(websocket: WebSocket, session_id: str):
    """Relay recognizer events in and state / transcript / reply events out."""
    orchestrator = getattr(websocket.app.state, "orchestrator", None)
    if orchestrator is None:
        await websocket.close(code=1013)
        return
    try:
        orchestrator.get_session(session_id)
    except SessionNotFound:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()

    def on_state(changed_id, old, new):
        if changed_id == session_id:
            outbox.put_nowait({"type": "state", "old": old.value, "new": new.value})

    unsubscribe = orchestrator.add_listener(on_state)
    sender = asyncio.create_task(_send_events(websocket, outbox))
    relays: set[asyncio.Task] = set()
    recognizer: QueueRecognizer | None = None

    def spawn(coro) -> None:
        task = asyncio.create_task(coro)
        relays.add(task)
        task.add_done_callback(relays.discard)
        task.add_done_callback(_log_task_failure)

    try:
        while True:
            data = await websocket.receive_json()
            kind = data.get("type")

            if kind == "start":
                recognizer = QueueRecognizer()
                try:
                    capture = await orchestrator.start_capture(
                        session_id, recognizer, continuous=bool(data.get("continuous")),
                    )
                except SessionBusy as e:
                    outbox.put_nowait({"type": "error", "detail": str(e)})
                    continue
                spawn(_relay_capture(orchestrator, session_id, capture, outbox))
            elif kind in ("partial", "final"):
                if recognizer is not None:
                    recognizer.push(str(data.get("text", "")), is_final=kind == "final")
            elif kind == "recognizer_error":
                if recognizer is not None:
                    recognizer.fail(str(data.get("message") or "Recognizer error"))
            elif kind == "stop":
                await orchestrator.stop_capture(session_id)
            elif kind == "cancel":
                await orchestrator.cancel_capture(session_id)
            elif kind == "text" and str(data.get("text", "")).strip():
                spawn(_relay_turn(orchestrator, session_id, str(data["text"]).strip(), outbox))
            else:
                outbox.put_nowait({"type": "error", "detail": f"Unsupported message: {kind!r}"})

    except WebSocketDisconnect:
        logger.info("[%s] Voice socket closed", session_id)
    except SessionNotFound:
        logger.info("[%s] Session ended while the voice socket was open", session_id)
        await websocket.close(code=4404)
    finally:
        unsubscribe()
        sender.cancel()
        # In-flight turns are left to finish; only listening is stopped
        with contextlib.suppress(SessionNotFound):
            await orchestrator.cancel_capture(session_id)
