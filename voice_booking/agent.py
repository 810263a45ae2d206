"""LangGraph turn graph for the booking assistant.

Architecture:
  One user turn is a small LangGraph StateGraph with two nodes:

    1. **think**       — one call to the session's dialogue model
    2. **tool_round**  — resolves the single tool call the model asked for
                         (which may itself make the turn's second model call)

  Routing:
    think → (tool call?) → tool_round → END
          → (direct reply?) → END

  Unlike a free-running agent loop there is no edge back from
  ``tool_round`` to ``think``: a turn resolves at most one tool call, and a
  tool call in the second model round is a protocol violation raised by the
  tool layer.

  Memory:
    No checkpointer.  Conversation history lives in the session's own model
    conversation handle, so the graph state only carries the current turn.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from voice_booking.dialogue import DialogueModelClient
from voice_booking.models import AssistantState, DialogueSession, ModelReply, ToolCallReply
from voice_booking.tools import ToolExecutor

logger = logging.getLogger(__name__)

StateCallback = Callable[[DialogueSession, AssistantState], None]


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict):
    """The state that flows through one turn.

    ``reply`` is written by ``think`` and, when it holds a tool call,
    replaced by ``tool_round`` with the reply that resolves it.
    """

    session: DialogueSession
    utterance: str
    reply: ModelReply | None


# ── Nodes ────────────────────────────────────────────────────────────


def _make_think_node(model_client: DialogueModelClient, on_state: StateCallback):
    async def think_node(state: TurnState) -> dict:
        session = state["session"]
        on_state(session, AssistantState.THINKING)
        reply = await model_client.send(session, state["utterance"])
        logger.debug("[%s] think → %s", session.session_id, type(reply).__name__)
        return {"reply": reply}

    return think_node


def _make_tool_node(tools: ToolExecutor, on_state: StateCallback):
    async def tool_node(state: TurnState) -> dict:
        session = state["session"]
        on_state(session, AssistantState.TOOL_ROUND)
        reply = await tools.execute(session, state["reply"].invocation)
        return {"reply": reply}

    return tool_node


# ── Conditional edge ─────────────────────────────────────────────────


def needs_tool(state: TurnState) -> str:
    """Route to the tool round when the model asked for a tool."""
    if isinstance(state.get("reply"), ToolCallReply):
        return "tool_round"
    return END


# ── Graph assembly ───────────────────────────────────────────────────


def build_turn_graph(
    model_client: DialogueModelClient,
    tools: ToolExecutor,
    on_state: StateCallback,
):
    """Build and compile the per-turn graph.

    *on_state* is called on entry to each node so the orchestrator can
    publish ``THINKING`` / ``TOOL_ROUND`` transitions.

    Returns a compiled graph that can be invoked with:
        await graph.ainvoke({"session": session, "utterance": "...", "reply": None})
    """
    graph = StateGraph(TurnState)

    graph.add_node("think", _make_think_node(model_client, on_state))
    graph.add_node("tool_round", _make_tool_node(tools, on_state))

    graph.set_entry_point("think")
    graph.add_conditional_edges("think", needs_tool, {"tool_round": "tool_round", END: END})
    graph.add_edge("tool_round", END)

    return graph.compile()
