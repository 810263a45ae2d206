"""Speech output: networked synthesis first, local voice as the fallback.

The primary synthesizer speaks the Google Cloud Text-to-Speech REST contract
(``POST /v1/text:synthesize`` → ``{"audioContent": <base64>}``) and returns
the audio to the caller, which forwards it to the client.  The local
synthesizer (``pyttsx3``) plays through the host's speech driver.

A failed synthesis never fails the turn: the reply's display text is shown
regardless and :class:`SpeechResult` says what happened.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import threading
from dataclasses import dataclass
from enum import Enum

import httpx

from voice_booking.config import TTS_API_KEY, TTS_BASE_URL
from voice_booking.errors import SynthesisError
from voice_booking.services.metrics import metrics

logger = logging.getLogger(__name__)

# locale → (voice language code, cloud voice name)
VOICES: dict[str, tuple[str, str]] = {
    "en-US": ("en-IN", "en-IN-Wavenet-D"),
    "ml-IN": ("ml-IN", "ml-IN-Wavenet-A"),
}
DEFAULT_VOICE = VOICES["en-US"]


def voice_for(language: str) -> tuple[str, str]:
    return VOICES.get(language, DEFAULT_VOICE)


class SpeechSource(str, Enum):
    PRIMARY = "primary"
    LOCAL = "local"
    NONE = "none"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SpeechResult:
    source: SpeechSource
    audio: bytes | None = None
    audio_encoding: str | None = None
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.source in (SpeechSource.PRIMARY, SpeechSource.LOCAL)

    @property
    def audio_base64(self) -> str | None:
        return base64.b64encode(self.audio).decode("ascii") if self.audio else None


class CloudSynthesizer:
    """Google Cloud Text-to-Speech over REST."""

    AUDIO_ENCODING = "MP3"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        timeout: float = 8.0,
    ) -> None:
        self._api_key = api_key or TTS_API_KEY
        self._client = httpx.AsyncClient(base_url=base_url or TTS_BASE_URL, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def synthesize(self, text: str, language: str) -> bytes:
        if not self._api_key:
            raise SynthesisError("TTS_API_KEY is not configured")

        language_code, voice_name = voice_for(language)
        payload = {
            "input": {"text": text},
            "voice": {"languageCode": language_code, "name": voice_name},
            "audioConfig": {"audioEncoding": self.AUDIO_ENCODING},
        }
        async with metrics.track("tts", "text:synthesize"):
            try:
                response = await self._client.post(
                    "/text:synthesize", params={"key": self._api_key}, json=payload,
                )
            except httpx.HTTPError as exc:
                raise SynthesisError(f"TTS request failed: {exc}") from exc
            if response.status_code >= 400:
                raise SynthesisError(f"TTS returned {response.status_code}: {response.text}")
            try:
                audio = base64.b64decode(response.json().get("audioContent") or "")
            except (ValueError, binascii.Error) as exc:
                raise SynthesisError(f"TTS returned an unreadable payload: {exc}") from exc
            if not audio:
                raise SynthesisError("TTS returned no audio")
        return audio


class _Utterance:
    __slots__ = ("text", "language", "cancelled")

    def __init__(self, text: str, language: str) -> None:
        self.text = text
        self.language = language
        self.cancelled = False


class LocalSynthesizer:
    """Host speech driver via pyttsx3, with a best-effort voice match.

    The engine is shared, so utterances play one at a time.  Cancelling a
    ``speak`` call only stops that call's utterance: it is skipped if still
    queued, or interrupted if it is the one playing.
    """

    def __init__(self) -> None:
        self._engine = None
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._current: _Utterance | None = None

    def _get_engine(self):
        if self._engine is None:
            import pyttsx3  # noqa: PLC0415

            self._engine = pyttsx3.init()
        return self._engine

    @staticmethod
    def _voice_languages(voice) -> list[str]:
        langs = []
        for lang in getattr(voice, "languages", None) or []:
            if isinstance(lang, bytes):
                lang = lang.decode("utf-8", errors="ignore")
            langs.append(str(lang).lower())
        return langs

    def select_voice(self, voices: list, language: str) -> str | None:
        """Pick the id of the voice closest to *language*, or ``None``."""
        candidates = [language, voice_for(language)[0], language.split("-")[0]]
        for code in (c.lower() for c in candidates):
            for voice in voices:
                langs = self._voice_languages(voice)
                if any(code in lang for lang in langs) or code in str(getattr(voice, "id", "")).lower():
                    return voice.id
        return None

    def _speak_blocking(self, utterance: _Utterance) -> None:
        with self._lock:
            with self._state_lock:
                if utterance.cancelled:
                    return
                self._current = utterance
            try:
                engine = self._get_engine()
                voice_id = self.select_voice(engine.getProperty("voices") or [], utterance.language)
                if voice_id:
                    engine.setProperty("voice", voice_id)
                engine.say(utterance.text)
                engine.runAndWait()
            finally:
                with self._state_lock:
                    self._current = None

    def _cancel(self, utterance: _Utterance) -> None:
        with self._state_lock:
            utterance.cancelled = True
            playing = self._current is utterance
        if playing and self._engine is not None:
            self._engine.stop()

    async def speak(self, text: str, language: str) -> None:
        utterance = _Utterance(text, language)
        try:
            await asyncio.to_thread(self._speak_blocking, utterance)
        except asyncio.CancelledError:
            self._cancel(utterance)
            raise


class SpeechOutput:
    """Speaks replies, cloud voice first and local voice as fallback."""

    def __init__(
        self,
        primary: CloudSynthesizer | None = None,
        local: LocalSynthesizer | None = None,
    ) -> None:
        self._primary = primary
        self._local = local

    async def speak(self, text: str, language: str) -> SpeechResult:
        if not text.strip():
            return SpeechResult(SpeechSource.NONE, error="Nothing to say")

        errors: list[str] = []
        if self._primary is not None:
            try:
                audio = await self._primary.synthesize(text, language)
                return SpeechResult(
                    SpeechSource.PRIMARY, audio=audio, audio_encoding=CloudSynthesizer.AUDIO_ENCODING,
                )
            except SynthesisError as exc:
                logger.warning("Cloud speech failed, using local voice: %s", exc)
                errors.append(str(exc))

        if self._local is not None:
            try:
                await self._local.speak(text, language)
                return SpeechResult(SpeechSource.LOCAL)
            except Exception as exc:  # pyttsx3 driver errors are untyped
                logger.warning("Local speech failed: %s", exc)
                errors.append(str(exc))

        return SpeechResult(SpeechSource.NONE, error="; ".join(errors) or "No synthesizer configured")

    async def aclose(self) -> None:
        if self._primary is not None:
            await self._primary.aclose()
