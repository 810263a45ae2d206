"""Shared test fixtures for the voice booking test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessageChunk


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("METRICS_ENABLED", "false")


# ── Fake model ───────────────────────────────────────────────────────


class FakeLLM:
    """Stands in for a tool-bound ChatAnthropic.

    Each ``ainvoke`` pops the next scripted response; exceptions are raised.
    Every call's message list is kept in ``calls``.
    """

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls: list[list] = []

    async def ainvoke(self, messages):
        self.calls.append(list(messages))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def astream(self, messages):
        self.calls.append(list(messages))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        for piece in item:
            if isinstance(piece, Exception):
                raise piece
            yield AIMessageChunk(content=piece)


@pytest.fixture
def fake_llm():
    """Factory fixture: ``fake_llm(response, …)`` → :class:`FakeLLM`."""

    def _make(*responses):
        return FakeLLM(responses)

    return _make


@pytest.fixture
def mock_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
