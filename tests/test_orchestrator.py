import json
import sys
from collections import deque
from pathlib import Path

from sqlalchemy import text

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from chat_api.services.context_memory import ConversationContext, TurnRecord
from chat_api.services.llm_providers import LLMProvider, ProviderChain, ProviderError
from chat_api.services.models import IntentResult, QueryIntent, StatementKind, TableSummary
from chat_api.services.orchestrator import LAST_RESORT_CONFIDENCE, Orchestrator
from chat_api.services.schema_cache import SchemaCache
from chat_api.services.sql_translator import SqlTranslator
from datastore.db_utils import DatabaseConfig, SQLStore, create_database, create_engine_with_timeout

STAGES = ("Agente Coordenador", "Agente SQL", "Agente Analyst", "Agente Formatter")


class _StageProvider(LLMProvider):
    """Answers by stage; a missing or exception entry makes that stage fail."""

    def __init__(self, replies, name="dummy"):
        self.name = name
        self.replies = replies
        self.prompts = []

    def complete(self, prompt, *, max_tokens, temperature, timeout_s):
        for marker in STAGES:
            if marker in prompt:
                self.prompts.append(marker)
                reply = self.replies.get(marker)
                if reply is None or isinstance(reply, Exception):
                    raise reply or ProviderError("no scripted reply")
                return reply if isinstance(reply, str) else json.dumps(reply)
        raise ProviderError("unknown stage")


def _store(allow_raw_read=True, extra_tables=False):
    config = DatabaseConfig("sqlite://", allow_raw_read=allow_raw_read)
    engine = create_engine_with_timeout(config)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE clientes (id INTEGER PRIMARY KEY, nome TEXT, email TEXT)"))
        for i in range(42):
            conn.execute(
                text("INSERT INTO clientes (nome, email) VALUES (:n, :e)"),
                {"n": f"cliente{i:02d}", "e": f"c{i}@example.com"},
            )
        if extra_tables:
            conn.execute(text("CREATE TABLE pedidos (id INTEGER PRIMARY KEY, valor REAL)"))
    return SQLStore(create_database(config, engine), config)


def _orchestrator(store, *providers):
    cache = SchemaCache(store)
    return Orchestrator(ProviderChain(list(providers)), cache, SqlTranslator(store))


def _inventory(store):
    return [TableSummary(name) for name in store.list_tables()]


COUNT_INTENT = {"category": "aggregation", "tables_needed": ["clientes"], "operations": ["count"], "confidence": 0.95}


def test_count_question_runs_all_five_stages():
    store = _store()
    provider = _StageProvider(
        {
            "Agente Coordenador": COUNT_INTENT,
            "Agente SQL": {"sql_query": "SELECT COUNT(*) FROM clientes", "query_type": "simple_count"},
            "Agente Analyst": {"insights": [{"metric": "total", "value": "42"}], "summary": "42 clientes"},
            "Agente Formatter": "👥 Você tem **42** clientes cadastrados.",
        }
    )
    outcome = _orchestrator(store, provider).run("quantos clientes temos?", tables=_inventory(store))
    response = outcome.response

    assert provider.prompts == list(STAGES)
    assert outcome.strategy.kind == StatementKind.SIMPLE_COUNT
    assert outcome.result.scalar == 42
    assert "42" in response.content
    assert response.sql_used == "SELECT COUNT(*) FROM clientes"
    assert response.table_used == "clientes"
    assert response.confidence == 95
    assert response.intent == QueryIntent.AGGREGATION.value
    assert response.chart == "pie"
    assert response.provider_used == "dummy"
    assert response.insights == [{"metric": "total", "value": "42", "comparison": "", "significance": "media"}]
    assert response.latency_ms is not None


def test_formatter_reply_without_the_figure_gets_it_appended():
    store = _store()
    provider = _StageProvider(
        {
            "Agente Coordenador": COUNT_INTENT,
            "Agente SQL": {"sql_query": "SELECT COUNT(*) FROM clientes"},
            "Agente Formatter": "Você tem vários clientes.",
        }
    )
    response = _orchestrator(store, provider).run("quantos clientes temos?", tables=_inventory(store)).response
    assert response.content.endswith("Total: **42**")


def test_destructive_sql_is_never_executed():
    store = _store()
    provider = _StageProvider(
        {
            "Agente Coordenador": COUNT_INTENT,
            "Agente SQL": {"sql_query": "DROP TABLE clientes"},
        }
    )
    outcome = _orchestrator(store, provider).run("apague tudo dos clientes", tables=_inventory(store))
    response = outcome.response

    assert "consulta segura" in response.content
    assert "DROP" not in (response.sql_used or "")
    assert response.sql_used == "SELECT COUNT(*) FROM clientes"
    assert response.confidence == LAST_RESORT_CONFIDENCE
    assert "42" in response.content
    assert store.count("clientes") == 42


def test_secondary_provider_covers_a_failing_primary():
    store = _store()
    broken = _StageProvider({}, name="primary")
    backup = _StageProvider(
        {
            "Agente Coordenador": COUNT_INTENT,
            "Agente SQL": {"sql_query": "SELECT COUNT(*) FROM clientes"},
            "Agente Analyst": {"insights": [], "summary": "ok"},
            "Agente Formatter": "Total de **42** clientes.",
        },
        name="secondary",
    )
    response = _orchestrator(store, broken, backup).run("quantos clientes?", tables=_inventory(store)).response
    assert response.provider_used == "secondary"
    assert len(broken.prompts) == 4
    assert len(backup.prompts) == 4


def test_every_provider_down_still_answers():
    store = _store()
    response = _orchestrator(store, _StageProvider({})).run("quantos clientes temos?", tables=_inventory(store)).response

    assert response.table_used == "clientes"
    assert response.sql_used == "SELECT COUNT(*) FROM clientes"
    assert "Total: **42** registros" in response.content
    assert response.confidence == LAST_RESORT_CONFIDENCE
    assert response.provider_used == "fallback"


def test_ambiguous_table_asks_for_clarification():
    store = _store(extra_tables=True)
    response = _orchestrator(store, _StageProvider({})).run("quantos registros temos?", tables=_inventory(store)).response

    assert response.requires_clarification
    assert "(A) quantos registros temos na tabela clientes" in response.content
    assert "(B) quantos registros temos na tabela pedidos" in response.content
    assert response.sql_used is None


def test_conversational_intent_skips_the_query():
    store = _store()
    provider = _StageProvider(
        {"Agente Coordenador": {"category": "conversational", "skip_query": True, "direct_answer": "Consigo sim!"}}
    )
    response = _orchestrator(store, provider).run("você consegue me ajudar?", tables=_inventory(store)).response
    assert response.content == "Consigo sim!"
    assert response.sql_used is None
    assert provider.prompts == ["Agente Coordenador"]


def test_tabular_result_is_rendered_without_formatter():
    store = _store()
    provider = _StageProvider(
        {
            "Agente Coordenador": {"category": "retrieval", "tables_needed": ["clientes"], "operations": ["list"]},
            "Agente SQL": {"sql_query": "SELECT nome FROM clientes ORDER BY nome LIMIT 3"},
            "Agente Analyst": {"insights": [], "summary": ""},
        }
    )
    outcome = _orchestrator(store, provider).run("mostre 3 clientes", tables=_inventory(store))
    assert "Agente Formatter" not in provider.prompts
    assert outcome.strategy.kind == StatementKind.LIST
    assert "| Nome |" in outcome.response.content
    assert "cliente00" in outcome.response.content
    assert len(outcome.response.data) == 3


def test_untranslatable_query_gets_an_apology():
    store = _store(allow_raw_read=False)
    provider = _StageProvider(
        {
            "Agente Coordenador": {"category": "filter", "tables_needed": ["clientes"], "operations": ["filter"]},
            "Agente SQL": {"sql_query": "SELECT * FROM clientes WHERE nome = 'x' OR id = 1"},
        }
    )
    response = _orchestrator(store, provider).run("clientes x ou 1", tables=_inventory(store)).response
    assert "Desculpe" in response.content
    assert response.table_used == "clientes"
    assert response.suggestions


def test_confirmation_replays_previous_turn():
    store = _store()
    provider = _StageProvider(
        {
            "Agente SQL": {"sql_query": "SELECT COUNT(*) FROM clientes"},
            "Agente Formatter": "São **42** clientes.",
        }
    )
    previous = IntentResult(QueryIntent.AGGREGATION, confidence=90, tables_needed=["clientes"], operations=["count"])
    context = ConversationContext(last_table="clientes")
    context.recent_turns = deque([TurnRecord("quantos clientes temos?", previous)], maxlen=5)

    outcome = _orchestrator(store, provider).run("sim", tables=_inventory(store), context=context)
    assert "Agente Coordenador" not in provider.prompts
    assert outcome.intent.provider == "context"
    assert "42" in outcome.response.content
