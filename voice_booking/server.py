"""FastAPI server for the voice booking assistant.

Run with:
    uvicorn voice_booking.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager, suppress

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from voice_booking.api.routes import router
from voice_booking.config import (
    CORS_ORIGINS,
    SERVER_HOST,
    SERVER_PORT,
    SESSION_IDLE_TIMEOUT_SECONDS,
    SESSION_SWEEP_INTERVAL_SECONDS,
)
from voice_booking.health_chat import HealthChat
from voice_booking.orchestrator import create_booking_assistant
from voice_booking.services.metrics import metrics
from voice_booking.services.records_client import RecordsClient
from voice_booking.speech.output import CloudSynthesizer, SpeechOutput

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Idle session sweep ───────────────────────────────────────────────
async def _evict_idle_sessions(orchestrator, health_chat: HealthChat) -> None:
    """Drop sessions and chats whose clients went away without ending them."""
    while True:
        await asyncio.sleep(SESSION_SWEEP_INTERVAL_SECONDS)
        try:
            await orchestrator.evict_idle(SESSION_IDLE_TIMEOUT_SECONDS)
            health_chat.evict_idle(SESSION_IDLE_TIMEOUT_SECONDS)
        except Exception:
            logger.exception("Idle session sweep failed")


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the records client, speech output and orchestrator once.

    Audio goes back to the browser, so the server only uses the networked
    synthesizer; local playback is a CLI feature.
    """
    logger.info("Starting voice booking assistant…")
    records = RecordsClient()
    speech = SpeechOutput(primary=CloudSynthesizer())
    orchestrator = create_booking_assistant(records, speech_output=speech)
    health_chat = HealthChat(records)
    application.state.orchestrator = orchestrator
    application.state.health_chat = health_chat
    sweeper = asyncio.create_task(_evict_idle_sessions(orchestrator, health_chat))
    logger.info("Assistant ready.")
    yield
    logger.info("Shutting down: draining transcript writes…")
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await orchestrator.aclose()
    await speech.aclose()
    await records.aclose()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Voice Booking Assistant",
    description=(
        "Spoken hospital receptionist that collects patient details, reads out "
        "doctor availability and books appointments."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the browser client) ────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    Returned to the client as ``X-Request-ID``.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Voice Booking Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting voice booking API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "voice_booking.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
