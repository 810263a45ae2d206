"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from voice_booking.config import SUPPORTED_LANGUAGES
from voice_booking.models import AssistantState, Channel


class SessionCreateRequest(BaseModel):
    """Start a booking conversation."""

    language: str | None = Field(
        None, description="Locale code, e.g. en-US or ml-IN. Defaults to DEFAULT_LANGUAGE.",
    )
    channel: Channel = Field(Channel.VOICE, description="voice or chat")

    @field_validator("language")
    @classmethod
    def _supported_language(cls, value: str | None) -> str | None:
        if value is not None and value not in SUPPORTED_LANGUAGES:
            raise ValueError(
                f"Unsupported language {value!r}; choose one of {', '.join(SUPPORTED_LANGUAGES)}",
            )
        return value


class SessionResponse(BaseModel):
    session_id: str
    language: str
    channel: Channel
    state: AssistantState
    transcript: list[str] = Field(default_factory=list)
    booked: bool = Field(False, description="Whether an appointment was committed")


class MessageRequest(BaseModel):
    """A typed user turn."""

    message: str = Field(..., min_length=1, max_length=2000, description="The user's message")


class MessageResponse(BaseModel):
    """The assistant's reply to one turn."""

    session_id: str
    reply: str = Field(..., description="Text to display")
    speech: str = Field(..., description="Text that was (or would be) spoken")
    state: AssistantState
    audio_base64: str | None = Field(None, description="Synthesized speech, when available")
    error: str | None = Field(None, description="Error behind a fixed fallback reply")


class HealthChatRequest(BaseModel):
    """Incoming symptom-chat message."""

    message: str = Field(..., min_length=1, max_length=2000, description="The user's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )
    language: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "voice-booking-assistant"
