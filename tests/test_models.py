"""Tests for domain types, prompts and the in-memory stores."""

from __future__ import annotations

from datetime import UTC, datetime

from voice_booking.models import (
    AvailabilitySlot,
    BookingDraft,
    DialogueSession,
    Role,
    TranscriptRecord,
)
from voice_booking.prompts import get_booking_prompt, get_health_chat_prompt, language_name
from voice_booking.stores import InMemoryTranscriptStore


class TestBookingDraft:
    def test_new_draft_is_missing_everything_required(self):
        assert BookingDraft().missing_fields() == ["patientName", "symptoms", "department", "timeSlot"]

    def test_update_ignores_blank_values(self):
        draft = BookingDraft(patient_name="Anu")
        draft.update(patient_name="  ", symptoms=None, department=" Cardiology ")
        assert draft.patient_name == "Anu"
        assert draft.department == "Cardiology"

    def test_complete_draft(self):
        draft = BookingDraft(patient_name="Anu", symptoms="fever", department="General", time_slot="10 AM")
        assert draft.is_complete
        assert not draft.is_committed


class TestSession:
    def test_transcript_lines(self):
        session = DialogueSession()
        session.add_turn(Role.USER, "hi")
        session.add_turn(Role.ASSISTANT, "Hello!")
        assert session.transcript_lines() == ["You: hi", "Puck: Hello!"]

    def test_session_ids_are_unique(self):
        assert DialogueSession().session_id != DialogueSession().session_id


class TestAvailabilitySlot:
    def test_iso_date_label(self):
        slot = AvailabilitySlot(doctor="Dr. Smith", department="General", date="2026-01-08", time="10:00 AM")
        assert slot.date_label == "Thu, Jan 08"

    def test_free_text_date_is_kept(self):
        slot = AvailabilitySlot(doctor="Dr. Smith", department="General", date="next week", time="10:00 AM")
        assert slot.date_label == "next week"

    def test_day_used_when_no_date(self):
        slot = AvailabilitySlot(doctor="Dr. Smith", department="General", day="Monday", time="10:00 AM")
        assert slot.date_label == "Monday"

    def test_camel_case_input_is_accepted(self):
        slot = AvailabilitySlot.model_validate({"doctor": "Dr. X", "department": "ENT", "time": "9 AM"})
        assert slot.date_label == "Date to be confirmed"


class TestPrompts:
    def test_booking_prompt_injects_date_language_and_slots(self):
        slot = AvailabilitySlot(doctor="Dr. Smith", department="General", date="2026-01-08", time="10:00 AM")
        prompt = get_booking_prompt("ml-IN", [slot], now=datetime(2026, 1, 7))
        assert "Wednesday, Jan 07 2026" in prompt
        assert "Malayalam" in prompt
        assert "Dr. Smith" in prompt
        assert '{"text":' in prompt

    def test_health_chat_prompt_language(self):
        assert "English" in get_health_chat_prompt("en-US")

    def test_unknown_language_code_passes_through(self):
        assert language_name("de-DE") == "de-DE"


class TestInMemoryTranscriptStore:
    async def test_second_write_replaces_messages(self):
        store = InMemoryTranscriptStore()
        start = datetime(2026, 1, 8, 9, 0, tzinfo=UTC)
        await store.save_transcript(
            TranscriptRecord(session_id="s", type="voice", messages=["You: hi"], start_time=start),
        )
        await store.save_transcript(
            TranscriptRecord(
                session_id="s", type="voice", messages=["You: hi", "Puck: hello"],
                start_time=datetime(2026, 1, 8, 9, 5, tzinfo=UTC),
            ),
        )

        assert len(store.records) == 1
        assert store.records["s"].messages == ["You: hi", "Puck: hello"]
        assert store.records["s"].start_time == start
