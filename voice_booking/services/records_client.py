"""Async HTTP client for the records backend.

The backend exposes four endpoints:

* ``GET  /doctors``                → ``{"slots": [{doctor, department, date, time}, …]}``
* ``POST /log-appointment``        → appends an appointment record
* ``POST /log-conversation``       → upserts a chat transcript by ``sessionId``
* ``POST /log-voice-conversation`` → upserts a voice transcript by ``sessionId``

Reads are retried with exponential backoff on transport errors and 5xx.
Writes are never retried: a failed write raises :class:`PersistenceError`
and the caller logs it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from voice_booking.config import RECORDS_BASE_URL
from voice_booking.errors import AvailabilityError, PersistenceError
from voice_booking.models import Appointment, AvailabilitySlot, TranscriptRecord
from voice_booking.services.metrics import metrics

logger = logging.getLogger(__name__)

# Transcript endpoint per channel
TRANSCRIPT_PATHS = {
    "chat": "/log-conversation",
    "voice": "/log-voice-conversation",
}

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 10.0


class RecordsAPIError(Exception):
    """Raised when a records backend call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RecordsClient:
    """Availability provider, appointment store and transcript store over HTTP."""

    def __init__(self, base_url: str | None = None, *, timeout: float = REQUEST_TIMEOUT_SECONDS):
        self._base_url = base_url or RECORDS_BASE_URL
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        attempts: int = MAX_RETRIES,
    ) -> dict[str, Any]:
        """Execute an HTTP request, retrying transport errors and 5xx up to *attempts* times."""
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(method, path, json=json_body)
                if response.status_code >= 400:
                    raise RecordsAPIError(
                        f"{method} {path} returned {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                return response.json()

            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "Records API %s %s attempt %d/%d failed (%s)",
                    method, path, attempt, attempts, type(exc).__name__,
                )
            except RecordsAPIError as exc:
                if exc.status_code is None or exc.status_code < 500:
                    raise  # 4xx errors are not retried
                last_error = exc
                logger.warning(
                    "Records API server error on attempt %d/%d", attempt, attempts,
                )

            if attempt < attempts:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        status = getattr(last_error, "status_code", None)
        raise RecordsAPIError(
            f"{method} {path} failed after {attempts} attempt(s): {last_error}",
            status_code=status,
        )

    # ── Availability provider ────────────────────────────────────────

    async def list_slots(self) -> list[AvailabilitySlot]:
        """Fetch the current bookable slots.  Never cached."""
        try:
            async with metrics.track("records", "GET /doctors"):
                data = await self._request("GET", "/doctors")
        except (RecordsAPIError, ValueError) as exc:
            raise AvailabilityError(
                f"Could not load availability: {exc}",
                status_code=getattr(exc, "status_code", None),
            ) from exc

        slots: list[AvailabilitySlot] = []
        for raw in data.get("slots", []):
            try:
                slots.append(AvailabilitySlot.model_validate(raw))
            except ValidationError:
                logger.warning("Skipping malformed availability slot: %r", raw)
        return slots

    # ── Appointment store ────────────────────────────────────────────

    async def save_appointment(self, appointment: Appointment) -> None:
        await self._write("/log-appointment", appointment.to_payload())
        logger.info("[SAVED] Appointment for %s", appointment.patient_name)

    # ── Transcript store ─────────────────────────────────────────────

    async def save_transcript(self, record: TranscriptRecord) -> None:
        path = TRANSCRIPT_PATHS.get(record.type, TRANSCRIPT_PATHS["chat"])
        await self._write(path, record.to_payload())
        logger.debug("[SAVED] %s log %s", record.type, record.session_id)

    async def _write(self, path: str, payload: dict[str, Any]) -> None:
        try:
            async with metrics.track("records", f"POST {path}"):
                data = await self._request("POST", path, json_body=payload, attempts=1)
        except (RecordsAPIError, ValueError) as exc:
            raise PersistenceError(
                f"Write to {path} failed: {exc}",
                status_code=getattr(exc, "status_code", None),
            ) from exc
        if data.get("success") is False:
            raise PersistenceError(f"Backend rejected write to {path}")
