"""Voice Booking Assistant — a spoken hospital appointment receptionist.

Architecture Overview
=====================

Every user turn, spoken or typed, goes through the **orchestrator**, which
runs a small LangGraph turn graph against the session's Claude conversation:

1. **think** — one model call.  The model either answers directly with a
   ``{"text", "speech"}`` JSON reply or calls one of two tools.

2. **tool_round** — ``get_availability`` fetches fresh slots and asks the
   model to read them out; ``confirm_appointment`` writes the appointment and
   answers with a fixed confirmation.

Routing: think → (tool call?) → tool_round → END, otherwise think → END

Key Design Decisions
--------------------
- **Structured slot filling**: booking fields only ever arrive as tool-call
  arguments.  ``confirm_appointment`` is rejected, with nothing written, unless
  name, symptoms, department and a time slot are all present.
- **Model fallback**: if the primary model is unreachable the session moves
  to the fallback model for good, replaying only the current utterance.
- **Speech**: recognition runs client-side and is relayed over a websocket;
  synthesis uses Google Cloud TTS with a local ``pyttsx3`` fallback.
- **Persistence**: availability, appointments and transcripts live in an
  external records backend reached over HTTP.  Transcript writes are
  background tasks and never block a reply.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development).

Package Structure
-----------------
- ``voice_booking/orchestrator.py`` — session registry and state machine
- ``voice_booking/agent.py`` — LangGraph turn graph
- ``voice_booking/dialogue.py`` — per-session model conversation, fallback, reply parsing
- ``voice_booking/tools.py`` — tool schemas and execution
- ``voice_booking/health_chat.py`` — streaming symptom chat
- ``voice_booking/speech/`` — speech capture and speech output
- ``voice_booking/services/`` — records backend client, metrics
- ``voice_booking/api/`` — FastAPI routes and Pydantic schemas
- ``voice_booking/server.py`` — FastAPI application
- ``voice_booking/main.py`` — CLI chat interface
"""
