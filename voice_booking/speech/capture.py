"""Speech capture: recognizer events in, one finalized utterance out.

Recognition itself happens elsewhere (typically the browser's speech API,
relayed over the voice websocket).  A :class:`Recognizer` is anything that
yields :class:`RecognitionEvent` objects; :class:`SpeechCapture` turns that
stream into

* a live partial transcript (finalized segments + the unstable interim),
* an event stream for a single consumer, and
* one finalized utterance, resolved on the first final segment (single-shot)
  or when the capture is stopped (continuous).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from voice_booking.errors import CaptureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecognitionEvent:
    text: str
    is_final: bool = False


class Recognizer(Protocol):
    def listen(self, language: str) -> AsyncIterator[RecognitionEvent]: ...


class QueueRecognizer:
    """Recognizer fed from outside, one event at a time."""

    _END = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, text: str, *, is_final: bool = False) -> None:
        self._queue.put_nowait(RecognitionEvent(text=text, is_final=is_final))

    def fail(self, message: str) -> None:
        self._queue.put_nowait(CaptureError(message))

    def end(self) -> None:
        self._queue.put_nowait(self._END)

    async def listen(self, language: str) -> AsyncIterator[RecognitionEvent]:
        while True:
            item = await self._queue.get()
            if item is self._END:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class CaptureEventKind(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"


@dataclass(frozen=True)
class CaptureEvent:
    kind: CaptureEventKind
    text: str


class SpeechCapture:
    """One listening session over a recognizer."""

    def __init__(
        self,
        recognizer: Recognizer,
        *,
        language: str = "en-US",
        continuous: bool = False,
    ) -> None:
        self.language = language
        self.continuous = continuous
        self._recognizer = recognizer
        self._segments: list[str] = []
        self._interim = ""
        self._events: asyncio.Queue[CaptureEvent | None] = asyncio.Queue()
        self._result: asyncio.Future[str | None] | None = None
        self._pump: asyncio.Task | None = None
        self._has_consumer = False

    # ── State ────────────────────────────────────────────────────────

    @property
    def is_active(self) -> bool:
        return self._result is not None and not self._result.done()

    @property
    def partial_transcript(self) -> str:
        parts = list(self._segments)
        if self._interim:
            parts.append(self._interim)
        return " ".join(parts)

    # ── Control ──────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._pump is not None:
            raise CaptureError("Capture already started")
        self._result = asyncio.get_running_loop().create_future()
        self._pump = asyncio.create_task(self._run(), name="speech-capture")

    async def stop(self) -> str | None:
        """Stop listening and flush the buffer as the finalized utterance."""
        if self._result is None:
            raise CaptureError("Capture was never started")
        if self._result.done():
            return await self.result()
        await self._stop_pump()
        utterance = self._flush()
        self._finish(utterance)
        return utterance

    async def cancel(self) -> None:
        """Stop listening and discard whatever was heard."""
        if self._result is None or self._result.done():
            return
        await self._stop_pump()
        self._segments.clear()
        self._interim = ""
        self._finish(None)

    async def result(self) -> str | None:
        """The finalized utterance, ``None`` if cancelled.  Raises :class:`CaptureError`."""
        if self._result is None:
            raise CaptureError("Capture was never started")
        return await asyncio.shield(self._result)

    async def events(self) -> AsyncIterator[CaptureEvent]:
        """Partial / final events until the capture ends.  Single consumer only."""
        if self._has_consumer:
            raise CaptureError("Capture events already have a consumer")
        self._has_consumer = True
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    # ── Internal ─────────────────────────────────────────────────────

    async def _run(self) -> None:
        try:
            async for event in self._recognizer.listen(self.language):
                text = event.text.strip()
                if event.is_final:
                    if text:
                        self._segments.append(text)
                    self._interim = ""
                    self._events.put_nowait(CaptureEvent(CaptureEventKind.FINAL, text))
                    if not self.continuous:
                        self._finish(self._flush())
                        return
                else:
                    self._interim = text
                    self._events.put_nowait(
                        CaptureEvent(CaptureEventKind.PARTIAL, self.partial_transcript),
                    )
            self._finish(self._flush())
        except CaptureError as exc:
            self._fail(exc)
        except Exception as exc:
            self._fail(CaptureError(f"Speech recognition failed: {exc}"))

    async def _stop_pump(self) -> None:
        if self._pump is not None and not self._pump.done():
            self._pump.cancel()
            await asyncio.wait({self._pump})

    def _flush(self) -> str:
        utterance = self.partial_transcript
        self._segments.clear()
        self._interim = ""
        return utterance

    def _finish(self, utterance: str | None) -> None:
        if not self._result.done():
            self._result.set_result(utterance)
            self._events.put_nowait(None)

    def _fail(self, error: CaptureError) -> None:
        logger.warning("Speech capture failed: %s", error)
        if not self._result.done():
            self._result.set_exception(error)
            self._events.put_nowait(None)
