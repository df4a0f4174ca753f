import sys
from pathlib import Path

from sqlalchemy import text

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from chat_api.services.chat_service import ChatService
from chat_api.services.context_memory import ContextMemoryStore
from chat_api.services.llm_providers import LLMProvider, ProviderChain, ProviderError
from chat_api.services.orchestrator import Orchestrator
from chat_api.services.schema_cache import SchemaCache
from chat_api.services.session import SessionStore
from chat_api.services.sql_translator import SqlTranslator
from datastore.db_utils import DatabaseConfig, SQLStore, create_database, create_engine_with_timeout


class _OfflineProvider(LLMProvider):
    name = "offline"

    def __init__(self):
        self.calls = 0

    def complete(self, prompt, *, max_tokens, temperature, timeout_s):
        self.calls += 1
        raise ProviderError("offline")


def _service():
    config = DatabaseConfig("sqlite://")
    engine = create_engine_with_timeout(config)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE clientes (id INTEGER PRIMARY KEY, nome TEXT)"))
        conn.execute(text("INSERT INTO clientes (nome) VALUES ('Ana'), ('Bruno'), ('Carla')"))
        conn.execute(text("CREATE TABLE pedidos (id INTEGER PRIMARY KEY, valor REAL)"))
        conn.execute(text("INSERT INTO pedidos (valor) VALUES (10), (20)"))
    store = SQLStore(create_database(config, engine), config)
    cache = SchemaCache(store)
    contexts = ContextMemoryStore()
    sessions = SessionStore(on_evict=contexts.clear)
    provider = _OfflineProvider()
    orchestrator = Orchestrator(ProviderChain([provider]), cache, SqlTranslator(store))
    return ChatService(store, cache, contexts, sessions, orchestrator), provider


def test_fast_path_never_reaches_the_providers():
    service, provider = _service()
    sid, response = service.handle_message("oi")
    assert response.confidence == 100
    assert response.provider_used == "fast_path"
    assert provider.calls == 0
    assert len(service.get_session(sid).messages) == 2


def test_clarification_then_letter_choice():
    service, _ = _service()
    sid, first = service.handle_message("quantos registros temos?")
    assert first.requires_clarification

    same_sid, second = service.handle_message("B", session_id=sid)
    assert same_sid == sid
    assert second.table_used == "pedidos"
    assert "Total: **2** registros" in second.content


def test_follow_up_uses_the_last_table():
    service, _ = _service()
    sid, first = service.handle_message("quantos clientes temos?")
    assert first.table_used == "clientes"

    _, second = service.handle_message("quantos tem na mesma tabela?", session_id=sid)
    assert second.table_used == "clientes"
    assert "**3**" in second.content


def test_current_table_hint_is_applied():
    service, _ = _service()
    sid, response = service.handle_message("quantos registros?", current_table="PEDIDOS")
    assert response.table_used == "pedidos"
    assert service.contexts.get(sid).last_table == "pedidos"


def test_session_metadata_and_deletion_clears_context():
    service, _ = _service()
    sid, _ = service.handle_message("quantos clientes temos?")
    session = service.get_session(sid)
    assert session.metadata.query_count == 1
    assert session.metadata.tables_touched == ["clientes"]

    assert service.delete_session(sid)
    assert service.get_session(sid) is None
    assert service.contexts.get(sid) is None


def test_inventory_and_stats():
    service, _ = _service()
    assert [t.name for t in service.table_inventory()] == ["clientes", "pedidos"]
    counted = {t.name: t.row_count for t in service.table_inventory(with_counts=True)}
    assert counted == {"clientes": 3, "pedidos": 2}

    service.handle_message("oi")
    stats = service.stats()
    assert stats["active_sessions"] == 1
    assert stats["tables"] == 2


def test_naming_another_table_switches_away_from_the_last_one():
    service, _ = _service()
    sid, first = service.handle_message("quantos clientes temos?")
    assert first.table_used == "clientes"

    _, second = service.handle_message("quantos pedidos temos?", session_id=sid)
    assert second.table_used == "pedidos"
    assert "pedidos" in second.sql_used
    assert "clientes" not in second.sql_used
    assert service.contexts.get(sid).last_table == "pedidos"


def test_confirmation_replays_the_previous_question():
    service, _ = _service()
    sid, _ = service.handle_message("quantos clientes temos?")

    _, replay = service.handle_message("show me", session_id=sid)
    assert replay.provider_used == "context"
    assert replay.table_used == "clientes"
    assert "**3**" in replay.content
    assert service.contexts.get(sid).recent_turns[0].message == "quantos clientes temos?"
