"""Centralized configuration for the voice booking assistant.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/voice-booking/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged at DEBUG so that the local-dev
    path keeps working.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/voice-booking/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when unset."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_secret(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /voice-booking/{name} (AWS)."
    )


def _env_flag(name: str, default: bool = False) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes")


# ── Dialogue model ──────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-opus-4-6")

# Pinned for the rest of a session once the primary model fails
FALLBACK_MODEL_NAME: str = os.getenv("FALLBACK_MODEL_NAME", "claude-haiku-4-5")

# Cheap model for the symptom chat and sentiment scoring
FAST_MODEL_NAME: str = os.getenv("FAST_MODEL_NAME", "claude-haiku-4-5")

# ── Records backend (availability, appointments, transcripts) ───────
RECORDS_BASE_URL: str = os.getenv("RECORDS_BASE_URL", "http://localhost:4000")

# ── Speech synthesis ────────────────────────────────────────────────
TTS_API_KEY: str | None = _optional_secret("TTS_API_KEY")
TTS_BASE_URL: str = os.getenv("TTS_BASE_URL", "https://texttospeech.googleapis.com/v1")

# ── Conversation ────────────────────────────────────────────────────
DEFAULT_LANGUAGE: str = os.getenv("DEFAULT_LANGUAGE", "en-US")
SUPPORTED_LANGUAGES: dict[str, str] = {
    "en-US": "English",
    "ml-IN": "Malayalam",
}
ALLOW_REBOOKING: bool = _env_flag("ALLOW_REBOOKING")
# Sessions and health chats untouched this long are dropped
SESSION_IDLE_TIMEOUT_SECONDS: float = float(os.getenv("SESSION_IDLE_TIMEOUT_SECONDS", "1800"))
SESSION_SWEEP_INTERVAL_SECONDS: float = 60.0

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
