"""Exception hierarchy for the voice booking assistant.

None of these terminate a session: the orchestrator maps each one to a
user-facing reply (or to silence) and returns the session to ``IDLE``.
"""

from __future__ import annotations


class VoiceBookingError(Exception):
    """Base class for every error raised by this package."""


class CaptureError(VoiceBookingError):
    """Microphone / recognizer failure.  The user re-initiates capture."""


class ModelUnavailable(VoiceBookingError):
    """The dialogue model could not be reached, even after fallback."""

    def __init__(self, message: str, model_name: str | None = None):
        self.model_name = model_name
        super().__init__(message)


class MalformedReply(VoiceBookingError):
    """The model answered with nothing usable (no text, no tool call)."""


class ToolProtocolViolation(VoiceBookingError):
    """The model broke the tool contract (unknown tool, chained call, bad args)."""


class UnknownTool(ToolProtocolViolation):
    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Unknown tool requested by the model: {tool_name!r}")


class IncompleteBooking(ToolProtocolViolation):
    """``confirm_appointment`` was called before every required field was known."""

    def __init__(self, missing_fields: list[str]):
        self.missing_fields = missing_fields
        super().__init__(
            "confirm_appointment rejected, missing: " + ", ".join(missing_fields)
        )


class PersistenceError(VoiceBookingError):
    """A transcript or appointment write failed.  Logged, never surfaced."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class AvailabilityError(VoiceBookingError):
    """The availability provider could not be read."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class SynthesisError(VoiceBookingError):
    """A speech synthesizer produced no audio."""


class SessionNotFound(VoiceBookingError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")


class SessionBusy(VoiceBookingError):
    """A capture was requested while a model call is in flight."""

    def __init__(self, session_id: str, state: str):
        self.session_id = session_id
        self.state = state
        super().__init__(f"Session {session_id} is busy ({state})")
