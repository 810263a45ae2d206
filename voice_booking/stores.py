"""Contracts for the external collaborators, plus in-memory implementations.

The HTTP-backed implementation lives in
:mod:`voice_booking.services.records_client`.  The in-memory classes back
the test-suite and the CLI's ``--offline`` mode.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from voice_booking.models import Appointment, AvailabilitySlot, TranscriptRecord

logger = logging.getLogger(__name__)


class AvailabilityProvider(Protocol):
    async def list_slots(self) -> list[AvailabilitySlot]: ...


class AppointmentStore(Protocol):
    async def save_appointment(self, appointment: Appointment) -> None: ...


class TranscriptStore(Protocol):
    async def save_transcript(self, record: TranscriptRecord) -> None: ...


DEFAULT_SLOTS = [
    AvailabilitySlot(doctor="Dr. Smith", department="General Medicine", date="2026-01-08", time="10:00 AM"),
    AvailabilitySlot(doctor="Dr. Jones", department="General Medicine", date="2026-01-08", time="2:00 PM"),
]


class StaticAvailability:
    """Availability provider over a fixed list of slots."""

    def __init__(self, slots: list[AvailabilitySlot] | None = None) -> None:
        self.slots = list(DEFAULT_SLOTS if slots is None else slots)
        self.fetch_count = 0

    async def list_slots(self) -> list[AvailabilitySlot]:
        self.fetch_count += 1
        return list(self.slots)


class InMemoryAppointmentStore:
    """Append-only appointment log.  No dedup key, like the real backend."""

    def __init__(self) -> None:
        self.appointments: list[Appointment] = []

    async def save_appointment(self, appointment: Appointment) -> None:
        self.appointments.append(appointment)
        logger.info("[SAVED] Appointment for %s", appointment.patient_name)


class InMemoryTranscriptStore:
    """Transcript records keyed by session id; a repeat write replaces ``messages``."""

    def __init__(self) -> None:
        self.records: dict[str, TranscriptRecord] = {}
        self._lock = asyncio.Lock()

    async def save_transcript(self, record: TranscriptRecord) -> None:
        async with self._lock:
            existing = self.records.get(record.session_id)
            if existing is None:
                self.records[record.session_id] = record.model_copy()
                return
            self.records[record.session_id] = existing.model_copy(
                update={
                    "messages": list(record.messages),
                    "last_updated": record.last_updated,
                },
            )
