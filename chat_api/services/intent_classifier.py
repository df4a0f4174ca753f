"""
Regex-ladder intent classification.

Rules are evaluated in the order declared in ``patterns.INTENT_RULES``
(aggregation, trend, comparison, filter, exploratory); the first match wins
at confidence 90, otherwise the question is plain retrieval at 60.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from chat_api.services import patterns
from chat_api.services.models import QueryIntent

MATCH_CONFIDENCE = 90
DEFAULT_CONFIDENCE = 60

CHART_BY_INTENT: Dict[QueryIntent, str] = {
    QueryIntent.AGGREGATION: "pie",
    QueryIntent.TREND: "line",
    QueryIntent.COMPARISON: "bar",
}


@dataclass
class IntentClassification:
    intent: QueryIntent
    confidence: int
    matched_keywords: List[str] = field(default_factory=list)

    @property
    def chart(self) -> str:
        return suggest_chart(self.intent)


def suggest_chart(intent: QueryIntent) -> str:
    return CHART_BY_INTENT.get(intent, "table")


def classify_intent(question: str) -> IntentClassification:
    q = (question or "").strip().lower()
    for name, pattern, keywords in patterns.INTENT_RULES:
        if pattern.search(q):
            matched = [kw for kw in keywords if kw in q]
            return IntentClassification(QueryIntent(name), MATCH_CONFIDENCE, matched)
    return IntentClassification(QueryIntent.RETRIEVAL, DEFAULT_CONFIDENCE, [])


def has_trend_indicators(question: str) -> bool:
    return bool(patterns.TREND_INDICATORS.search(question or ""))


def has_aggregation_indicators(question: str) -> bool:
    return bool(patterns.AGGREGATION_INDICATORS.search(question or ""))


def has_comparison_indicators(question: str) -> bool:
    return bool(patterns.COMPARISON_INDICATORS.search(question or ""))
