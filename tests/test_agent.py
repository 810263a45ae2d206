"""Tests for the LangGraph turn graph.

Covers:
  - Conditional routing (direct reply vs tool round)
  - Node state callbacks
  - End-to-end graph runs with mocked model client and tools
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from langgraph.graph import END

from voice_booking.agent import TurnState, build_turn_graph, needs_tool
from voice_booking.errors import ModelUnavailable
from voice_booking.models import (
    AssistantState,
    DialogueSession,
    DirectReply,
    ToolCallReply,
    ToolInvocation,
    ToolName,
)

DIRECT = DirectReply(display_text="Hello", speech_text="Hello")
TOOL_CALL = ToolCallReply(ToolInvocation(ToolName.GET_AVAILABILITY, {"department": "General"}, "t1"))


# ── Helpers ──────────────────────────────────────────────────────────


def _graph(first_reply, tool_reply=DIRECT):
    model = MagicMock()
    model.send = AsyncMock(return_value=first_reply)
    tools = MagicMock()
    tools.execute = AsyncMock(return_value=tool_reply)
    states: list[AssistantState] = []
    graph = build_turn_graph(model, tools, lambda _session, state: states.append(state))
    return graph, model, tools, states


# ── TestNeedsTool ────────────────────────────────────────────────────


class TestNeedsTool:
    def test_direct_reply_ends_turn(self):
        state: TurnState = {"session": DialogueSession(), "utterance": "hi", "reply": DIRECT}
        assert needs_tool(state) == END

    def test_tool_call_routes_to_tool_round(self):
        state: TurnState = {"session": DialogueSession(), "utterance": "hi", "reply": TOOL_CALL}
        assert needs_tool(state) == "tool_round"


# ── TestTurnGraph ────────────────────────────────────────────────────


class TestTurnGraph:
    async def test_direct_reply_skips_tools(self):
        graph, model, tools, states = _graph(DIRECT)
        session = DialogueSession()

        result = await graph.ainvoke({"session": session, "utterance": "hi", "reply": None})

        assert result["reply"] == DIRECT
        model.send.assert_awaited_once_with(session, "hi")
        tools.execute.assert_not_called()
        assert states == [AssistantState.THINKING]

    async def test_tool_call_runs_exactly_one_tool_round(self):
        slots_reply = DirectReply(display_text="Dr. Smith at 10", speech_text="Dr. Smith at ten")
        graph, model, tools, states = _graph(TOOL_CALL, slots_reply)
        session = DialogueSession()

        result = await graph.ainvoke({"session": session, "utterance": "general", "reply": None})

        assert result["reply"] == slots_reply
        tools.execute.assert_awaited_once_with(session, TOOL_CALL.invocation)
        assert model.send.await_count == 1
        assert states == [AssistantState.THINKING, AssistantState.TOOL_ROUND]

    async def test_model_errors_propagate(self):
        graph, model, _, _ = _graph(DIRECT)
        model.send.side_effect = ModelUnavailable("down", model_name="primary")

        with pytest.raises(ModelUnavailable):
            await graph.ainvoke({"session": DialogueSession(), "utterance": "hi", "reply": None})
