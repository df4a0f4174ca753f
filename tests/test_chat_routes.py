import sys
import uuid
from pathlib import Path

from fastapi.testclient import TestClient
from sqlalchemy import text

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from chat_api.main import app
from chat_api.routes.deps import get_chat_service
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

    def complete(self, prompt, *, max_tokens, temperature, timeout_s):
        raise ProviderError("offline")


def _build_service() -> ChatService:
    config = DatabaseConfig("sqlite://")
    engine = create_engine_with_timeout(config)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE clientes (id INTEGER PRIMARY KEY, nome TEXT)"))
        for i in range(42):
            conn.execute(text("INSERT INTO clientes (nome) VALUES (:n)"), {"n": f"c{i}"})
    store = SQLStore(create_database(config, engine), config)
    cache = SchemaCache(store)
    contexts = ContextMemoryStore()
    orchestrator = Orchestrator(ProviderChain([_OfflineProvider()]), cache, SqlTranslator(store))
    return ChatService(store, cache, contexts, SessionStore(on_evict=contexts.clear), orchestrator)


SERVICE = _build_service()
app.dependency_overrides[get_chat_service] = lambda: SERVICE
client = TestClient(app)


def _post(payload):
    return client.post("/api/chat/message", json=payload)


def test_health():
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers["x-request-id"]


def test_greeting_round_trip():
    resp = _post({"message": "oi"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert uuid.UUID(body["session_id"])
    assert body["response"]["confidence"] == 100
    assert "Olá" in body["response"]["content"]


def test_count_question_returns_the_number():
    resp = _post({"message": "quantos clientes temos?"})
    assert resp.status_code == 200
    reply = resp.json()["response"]
    assert "**42**" in reply["content"]
    assert reply["sql_used"] == "SELECT COUNT(*) FROM clientes"
    assert reply["table_used"] == "clientes"
    assert reply["data"] == [{"total": 42}]


def test_session_id_is_kept_across_turns():
    sid = str(uuid.uuid4())
    first = _post({"message": "oi", "session_id": sid})
    second = _post({"message": "quantos clientes temos?", "session_id": sid})
    assert first.json()["session_id"] == sid
    assert second.json()["session_id"] == sid

    session = client.get(f"/api/chat/sessions/{sid}").json()["session"]
    assert [m["role"] for m in session["messages"]] == ["user", "assistant", "user", "assistant"]
    assert session["metadata"]["query_count"] == 1


def test_empty_message_is_a_400_with_details():
    resp = _post({"message": ""})
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == "Validation failed"
    assert body["details"][0]["field"] == "message"


def test_blank_and_oversized_messages_rejected():
    assert _post({"message": "   "}).status_code == 400
    assert _post({"message": "x" * 2001}).status_code == 400


def test_bad_session_id_and_table_name_rejected():
    resp = _post({"message": "oi", "session_id": "not-a-uuid"})
    assert resp.status_code == 400
    assert resp.json()["details"][0]["field"] == "session_id"

    resp = _post({"message": "oi", "context": {"current_table": "clientes; drop"}})
    assert resp.status_code == 400
    assert resp.json()["details"][0]["field"] == "context.current_table"


def test_unknown_session_is_404():
    missing = str(uuid.uuid4())
    assert client.get(f"/api/chat/sessions/{missing}").status_code == 404
    assert client.delete(f"/api/chat/sessions/{missing}").status_code == 404


def test_delete_session():
    sid = _post({"message": "oi"}).json()["session_id"]
    assert client.delete(f"/api/chat/sessions/{sid}").status_code == 200
    assert client.get(f"/api/chat/sessions/{sid}").status_code == 404


def test_tables_and_stats():
    tables = client.get("/api/chat/tables").json()
    assert tables == [{"name": "clientes", "row_count": 42}]

    stats = client.get("/api/chat/stats").json()
    assert stats["success"] is True
    assert stats["stats"]["tables"] == 1
