"""Domain types shared by the orchestrator, the model client and the tools.

In-memory conversation state uses dataclasses; the records exchanged with
the external backend are Pydantic models so they serialise to the
backend's camelCase JSON contract.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from voice_booking.dialogue import ModelConversation

ASSISTANT_NAME = "Puck"


def _now() -> datetime:
    return datetime.now(UTC)


# ── Enumerations ─────────────────────────────────────────────────────


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Channel(str, Enum):
    """How the user talks to the assistant.  Also the appointment ``source`` tag."""

    VOICE = "voice"
    TEXT = "chat"


class AssistantState(str, Enum):
    """Per-session state machine driven by the orchestrator."""

    IDLE = "idle"
    CAPTURING = "capturing"
    THINKING = "thinking"
    TOOL_ROUND = "tool_round"
    SPEAKING = "speaking"
    ERROR = "error"


class ToolName(str, Enum):
    """The closed set of tools the dialogue model may invoke."""

    GET_AVAILABILITY = "get_availability"
    CONFIRM_APPOINTMENT = "confirm_appointment"


# ── Conversation ─────────────────────────────────────────────────────


@dataclass
class Turn:
    role: Role
    text: str
    created_at: datetime = field(default_factory=_now)
    # Audit entry for a tool call, logged as if the assistant did it
    is_tool_action: bool = False

    def as_transcript_line(self) -> str:
        speaker = "You" if self.role is Role.USER else ASSISTANT_NAME
        return f"{speaker}: {self.text}"


@dataclass
class BookingDraft:
    """Booking fields accumulated across turns.

    Promotion to a committed :class:`Appointment` requires every field in
    ``REQUIRED_FIELDS`` to be non-empty; once committed the draft keeps a
    reference to the written appointment.
    """

    REQUIRED_FIELDS = {
        "patient_name": "patientName",
        "symptoms": "symptoms",
        "department": "department",
        "time_slot": "timeSlot",
    }

    patient_name: str = ""
    symptoms: str = ""
    department: str = ""
    doctor_name: str = ""
    time_slot: str = ""
    committed: Appointment | None = None

    def update(self, **values: str | None) -> None:
        """Overwrite fields with the non-blank values given."""
        for name, value in values.items():
            if value is not None and str(value).strip():
                setattr(self, name, str(value).strip())

    def missing_fields(self) -> list[str]:
        """Wire names of the required fields that are still blank."""
        return [
            wire_name
            for attr, wire_name in self.REQUIRED_FIELDS.items()
            if not getattr(self, attr).strip()
        ]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()

    @property
    def is_committed(self) -> bool:
        return self.committed is not None


@dataclass
class DialogueSession:
    """One conversation.  Owned by the orchestrator's session registry."""

    language: str = "en-US"
    channel: Channel = Channel.VOICE
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    turns: list[Turn] = field(default_factory=list)
    draft: BookingDraft = field(default_factory=BookingDraft)
    state: AssistantState = AssistantState.IDLE
    started_at: datetime = field(default_factory=_now)
    # Created lazily by the DialogueModelClient on the first model call
    model_handle: ModelConversation | None = None

    def add_turn(self, role: Role, text: str, *, tool_action: bool = False) -> Turn:
        turn = Turn(role=role, text=text, is_tool_action=tool_action)
        self.turns.append(turn)
        return turn

    def transcript_lines(self) -> list[str]:
        return [turn.as_transcript_line() for turn in self.turns]


# ── Model replies ────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolInvocation:
    name: ToolName
    arguments: dict[str, str] = field(default_factory=dict)
    # Provider id of the tool call, needed to answer it in the history
    call_id: str = ""


@dataclass(frozen=True)
class DirectReply:
    display_text: str
    speech_text: str


@dataclass(frozen=True)
class ToolCallReply:
    invocation: ToolInvocation


ModelReply = DirectReply | ToolCallReply


# ── Backend records ──────────────────────────────────────────────────


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AvailabilitySlot(_WireModel):
    """A bookable offering from the availability provider (read-only snapshot)."""

    doctor: str
    department: str
    time: str
    date: str | None = None
    # Some backends only send a free-text weekday
    day: str | None = None

    @property
    def date_label(self) -> str:
        """``Thu, Jan 08`` when ``date`` is ISO formatted, else the raw value."""
        if self.date:
            try:
                return datetime.fromisoformat(self.date).strftime("%a, %b %d")
            except ValueError:
                return self.date
        return self.day or "Date to be confirmed"

    def summary_line(self) -> str:
        return f"{self.date_label} at {self.time} with {self.doctor} ({self.department})"


class Appointment(_WireModel):
    patient_name: str
    department: str
    doctor_name: str
    symptoms: str
    time_slot: str
    source: str
    sentiment: str | None = None
    confidence: float | None = None
    created_at: datetime = Field(default_factory=_now)


class TranscriptRecord(_WireModel):
    session_id: str
    type: str
    messages: list[str]
    start_time: datetime
    last_updated: datetime = Field(default_factory=_now)
