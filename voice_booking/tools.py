"""Tool execution layer: the closed set of tools the booking model may call.

``get_availability`` needs a second model round to phrase the slots for the
patient; ``confirm_appointment`` commits the booking and answers with a
fixed template, without going back to the model.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from voice_booking.config import ALLOW_REBOOKING
from voice_booking.errors import (
    AvailabilityError,
    IncompleteBooking,
    PersistenceError,
    ToolProtocolViolation,
    UnknownTool,
)
from voice_booking.models import (
    Appointment,
    AvailabilitySlot,
    DialogueSession,
    DirectReply,
    Role,
    ToolCallReply,
    ToolInvocation,
    ToolName,
)
from voice_booking.prompts import language_name
from voice_booking.services.metrics import metrics
from voice_booking.stores import AppointmentStore, AvailabilityProvider

if TYPE_CHECKING:
    from voice_booking.dialogue import DialogueModelClient
    from voice_booking.sentiment import SentimentAnalyzer

logger = logging.getLogger(__name__)


# ── Schemas bound to the model ──────────────────────────────────────

TOOL_DEFINITIONS = [
    {
        "name": ToolName.GET_AVAILABILITY.value,
        "description": "Get the list of available doctor slots for a specific department.",
        "input_schema": {
            "type": "object",
            "properties": {
                "department": {
                    "type": "string",
                    "description": "Medical department (e.g. General, Cardiology)",
                },
            },
            "required": ["department"],
        },
    },
    {
        "name": ToolName.CONFIRM_APPOINTMENT.value,
        "description": (
            "Finalize the booking. REQUIRED: the patient must have picked a "
            "specific time slot before you call this."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "patientName": {"type": "string", "description": "Name of patient"},
                "department": {"type": "string", "description": "Department booked"},
                "doctorName": {"type": "string", "description": "Doctor name"},
                "symptoms": {"type": "string", "description": "Patient symptoms"},
                "timeSlot": {
                    "type": "string",
                    "description": 'The specific time slot selected (e.g. "10:00 AM")',
                },
            },
            "required": ["patientName", "department", "symptoms", "timeSlot"],
        },
    },
]


# ── Helpers ──────────────────────────────────────────────────────────


def match_department(slots: list[AvailabilitySlot], department: str) -> list[AvailabilitySlot]:
    """Slots whose department contains, or is contained in, *department*.

    Case-insensitive so that "general" finds "General Medicine".  When
    nothing matches, every slot is returned so the patient is always offered
    something.
    """
    wanted = department.strip().lower()
    matching = [
        slot for slot in slots
        if wanted in slot.department.lower() or slot.department.lower() in wanted
    ] if wanted else []
    return matching or list(slots)


def format_slots(slots: list[AvailabilitySlot]) -> str:
    if not slots:
        return "None"
    return "\n".join(f"- {slot.date_label}, {slot.time}, {slot.doctor}" for slot in slots)


def _describe(invocation: ToolInvocation) -> str:
    args = ", ".join(f"{key}={value!r}" for key, value in invocation.arguments.items())
    return f"[tool] {invocation.name.value}({args})"


def confirmation_reply(doctor: str, time_slot: str) -> DirectReply:
    return DirectReply(
        display_text=f"Confirmed: {doctor} at {time_slot}.",
        speech_text=f"I have booked your appointment with {doctor} for {time_slot}.",
    )


# ── Executor ─────────────────────────────────────────────────────────


class ToolExecutor:
    """Resolves one tool invocation per turn into a user-facing reply."""

    def __init__(
        self,
        model_client: DialogueModelClient,
        availability: AvailabilityProvider,
        appointments: AppointmentStore,
        *,
        sentiment: SentimentAnalyzer | None = None,
        allow_rebooking: bool = ALLOW_REBOOKING,
    ) -> None:
        self._model = model_client
        self._availability = availability
        self._appointments = appointments
        self._sentiment = sentiment
        self.allow_rebooking = allow_rebooking

    async def execute(self, session: DialogueSession, invocation: ToolInvocation) -> DirectReply:
        """Run *invocation* and return the reply to show and speak."""
        session.add_turn(Role.ASSISTANT, _describe(invocation), tool_action=True)
        logger.info("[%s] Tool call: %s", session.session_id, _describe(invocation))
        metrics.record_event("ToolCall", Tool=invocation.name.value)

        if invocation.name is ToolName.GET_AVAILABILITY:
            return await self.get_availability(session, invocation)
        if invocation.name is ToolName.CONFIRM_APPOINTMENT:
            try:
                return await self.confirm_appointment(session, invocation)
            except IncompleteBooking as exc:
                logger.warning("[%s] %s", session.session_id, exc)
                return await self._follow_up(
                    session,
                    invocation,
                    "Rejected: the booking was NOT made. Missing: "
                    f"{', '.join(exc.missing_fields)}. Ask the patient for it, "
                    f"in {language_name(session.language)}.",
                )
        raise UnknownTool(str(invocation.name))

    # ── get_availability ─────────────────────────────────────────────

    async def find_slots(self, department: str) -> list[AvailabilitySlot]:
        """Fetch fresh availability and filter it by *department*."""
        slots = await self._availability.list_slots()
        return match_department(slots, department)

    async def get_availability(
        self, session: DialogueSession, invocation: ToolInvocation,
    ) -> DirectReply:
        department = invocation.arguments.get("department", "")
        session.draft.update(department=department)
        language = language_name(session.language)

        try:
            slots = await self.find_slots(department)
        except AvailabilityError as exc:
            logger.error("[%s] Failed to get availability: %s", session.session_id, exc)
            result = (
                "Could not fetch availability right now. Apologise and ask the "
                f"patient to try again in a moment. Reply in {language}."
            )
        else:
            result = (
                f"Found slots:\n{format_slots(slots)}\n"
                f"Read these to the patient and ask them to pick one. Reply in {language}."
            )
        return await self._follow_up(session, invocation, result)

    async def _follow_up(
        self, session: DialogueSession, invocation: ToolInvocation, result: str,
    ) -> DirectReply:
        """Second model round of the turn.  Must produce a direct reply."""
        reply = await self._model.send_tool_result(session, invocation, result)
        if isinstance(reply, ToolCallReply):
            raise ToolProtocolViolation(
                f"Chained tool call {reply.invocation.name.value!r} after "
                f"{invocation.name.value!r}; one tool call per turn is allowed",
            )
        return reply

    # ── confirm_appointment ──────────────────────────────────────────

    async def confirm_appointment(
        self, session: DialogueSession, invocation: ToolInvocation,
    ) -> DirectReply:
        """Commit the booking.  Raises :class:`IncompleteBooking` before any write."""
        args = invocation.arguments
        draft = session.draft

        if draft.is_committed and not self.allow_rebooking:
            booked = draft.committed
            reply = DirectReply(
                display_text=f"You already have an appointment with {booked.doctor_name} at {booked.time_slot}.",
                speech_text=f"You are already booked with {booked.doctor_name} for {booked.time_slot}.",
            )
            self._model.record_tool_outcome(session, invocation, "Already booked; nothing written.", reply)
            return reply

        draft.update(
            patient_name=args.get("patientName"),
            department=args.get("department"),
            doctor_name=args.get("doctorName"),
            symptoms=args.get("symptoms"),
        )
        # The slot must come with this call, never from an earlier one
        time_slot = (args.get("timeSlot") or "").strip()
        missing = [name for name in draft.missing_fields() if name != "timeSlot"]
        if not time_slot:
            missing.append("timeSlot")
        if missing:
            raise IncompleteBooking(missing)
        draft.time_slot = time_slot

        doctor = draft.doctor_name or f"{draft.department} Department"
        appointment = Appointment(
            patient_name=draft.patient_name,
            department=draft.department,
            doctor_name=doctor,
            symptoms=draft.symptoms,
            time_slot=draft.time_slot,
            source=session.channel.value,
        )
        if self._sentiment is not None:
            score = await self._sentiment.analyze(session.transcript_lines())
            appointment.sentiment = score.label
            appointment.confidence = score.confidence

        try:
            await self._appointments.save_appointment(appointment)
        except PersistenceError as exc:
            logger.error(
                "[%s] Appointment for %s not persisted: %s",
                session.session_id, appointment.patient_name, exc,
            )
        draft.committed = appointment
        metrics.record_event("AppointmentCommitted", Department=appointment.department)

        reply = confirmation_reply(doctor, draft.time_slot)
        self._model.record_tool_outcome(session, invocation, reply.display_text, reply)
        return reply
