import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from chat_api.services.intent_classifier import (
    DEFAULT_CONFIDENCE,
    MATCH_CONFIDENCE,
    classify_intent,
    has_trend_indicators,
    suggest_chart,
)
from chat_api.services.models import QueryIntent


def test_aggregation_wins_over_later_rules():
    result = classify_intent("Quantos pedidos por mês?")
    assert result.intent == QueryIntent.AGGREGATION
    assert result.confidence == MATCH_CONFIDENCE
    assert "quantos" in result.matched_keywords


def test_trend_comparison_filter_exploratory():
    assert classify_intent("evolução das vendas por mês").intent == QueryIntent.TREND
    assert classify_intent("compare janeiro versus fevereiro").intent == QueryIntent.COMPARISON
    assert classify_intent("clientes onde status é ativo").intent == QueryIntent.FILTER
    assert classify_intent("quais são as colunas").intent == QueryIntent.EXPLORATORY


def test_default_is_retrieval():
    result = classify_intent("mostre os pedidos")
    assert result.intent == QueryIntent.RETRIEVAL
    assert result.confidence == DEFAULT_CONFIDENCE
    assert result.matched_keywords == []


def test_chart_suggestion_follows_intent():
    assert suggest_chart(QueryIntent.AGGREGATION) == "pie"
    assert suggest_chart(QueryIntent.TREND) == "line"
    assert suggest_chart(QueryIntent.COMPARISON) == "bar"
    assert suggest_chart(QueryIntent.RETRIEVAL) == "table"
    assert classify_intent("ranking dos produtos").chart == "bar"


def test_trend_indicator_helper():
    assert has_trend_indicators("vendas dos últimos 30 dias")
    assert not has_trend_indicators("vendas de hoje")
