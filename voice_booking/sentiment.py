"""Sentiment scoring attached to confirmed appointments.

Best effort: any failure yields ``Neutral`` with confidence ``0.5`` and the
booking goes ahead.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from langchain_core.messages import HumanMessage

from voice_booking.dialogue import build_fast_llm, message_text, strip_code_fences
from voice_booking.prompts import SENTIMENT_PROMPT
from voice_booking.services.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Sentiment:
    label: str = "Neutral"
    confidence: float = 0.5


NEUTRAL = Sentiment()


class SentimentAnalyzer:
    def __init__(self, llm=None) -> None:
        self._llm = llm

    def _get_llm(self):
        if self._llm is None:
            self._llm = build_fast_llm()
        return self._llm

    async def analyze(self, transcript: list[str]) -> Sentiment:
        if not transcript:
            return NEUTRAL
        prompt = SENTIMENT_PROMPT.format(transcript="\n".join(transcript))
        try:
            async with metrics.track("anthropic", "sentiment"):
                response = await self._get_llm().ainvoke([HumanMessage(content=prompt)])
            data = json.loads(strip_code_fences(message_text(response)))
            confidence = min(max(float(data["confidence"]), 0.0), 1.0)
            return Sentiment(label=str(data["sentiment"]), confidence=confidence)
        except Exception as exc:
            logger.warning("Sentiment skipped: %s", exc)
            return NEUTRAL
