"""CLI entry point for the voice booking assistant.

A terminal chat for testing and development.  For production, use the
FastAPI server (voice_booking/server.py).

Usage:
    python -m voice_booking.main                  # normal mode (quiet)
    python -m voice_booking.main --debug          # debug mode (shows API calls)
    python -m voice_booking.main --offline        # in-memory slots and stores
    python -m voice_booking.main --speak          # read replies aloud
    python -m voice_booking.main --language ml-IN
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from dotenv import load_dotenv

from voice_booking.config import DEFAULT_LANGUAGE, SUPPORTED_LANGUAGES
from voice_booking.models import ASSISTANT_NAME, Channel
from voice_booking.orchestrator import Orchestrator, create_booking_assistant
from voice_booking.services.records_client import RecordsClient
from voice_booking.speech.output import LocalSynthesizer, SpeechOutput

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    # Always keep our own logger at INFO minimum so session starts show
    logging.getLogger("voice_booking").setLevel(logging.DEBUG if debug else logging.INFO)


def _build_speech(speak: bool) -> SpeechOutput | None:
    if not speak:
        return None
    # Cloud audio can't be played from the terminal, so only the local voice speaks
    return SpeechOutput(local=LocalSynthesizer())


async def _chat_loop(orchestrator: Orchestrator, language: str) -> None:
    session = orchestrator.create_session(language, Channel.TEXT)

    while True:
        try:
            user_input = (await asyncio.to_thread(input, "You: ")).strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Take care!")
            break

        if user_input.lower() == "new":
            session = orchestrator.create_session(language, Channel.TEXT)
            print(f"\n>> New session started: {session.session_id[:8]}...\n")
            continue

        result = await orchestrator.handle_text(session.session_id, user_input)
        print(f"\n{ASSISTANT_NAME}: {result.reply.display_text}\n")
        if result.speech is not None and not result.speech.delivered:
            logger.warning("Reply was not spoken: %s", result.speech.error)


async def _run(args: argparse.Namespace) -> None:
    records = None if args.offline else RecordsClient()
    speech = _build_speech(args.speak)
    orchestrator = create_booking_assistant(records, speech_output=speech, offline=args.offline)
    try:
        await _chat_loop(orchestrator, args.language)
    finally:
        await orchestrator.aclose()
        if speech is not None:
            await speech.aclose()
        if records is not None:
            await records.aclose()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Voice Booking Assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--language", default=DEFAULT_LANGUAGE, choices=sorted(SUPPORTED_LANGUAGES),
        help="Conversation language",
    )
    parser.add_argument(
        "--offline", action="store_true",
        help="Use built-in slots and in-memory stores instead of the records backend",
    )
    parser.add_argument(
        "--speak", action="store_true",
        help="Read replies aloud with the local speech engine",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print(f"  {ASSISTANT_NAME} - Hospital Booking Assistant CLI")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()
