import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from chat_api.services.context_memory import ContextMemoryStore, extract_options
from chat_api.services.models import IntentResult, QueryIntent

SID = "sess-1"
OFFER = (
    "Encontrei mais de uma tabela possível:\n"
    "(A) quantos registros na tabela clientes\n"
    "(B) quantos registros na tabela pedidos"
)


def _store(now=None):
    clock = now or [1000.0]
    return ContextMemoryStore(ttl_s=60, clock=lambda: clock[0]), clock


def test_extract_letter_options_with_tables():
    options = extract_options(OFFER)
    assert [o.key for o in options] == ["A", "B"]
    assert options[1].description == "quantos registros na tabela pedidos"
    assert options[1].related_table == "pedidos"


def test_extract_numbered_options():
    options = extract_options("Escolha:\n1. Ver clientes\n2. Ver pedidos")
    assert [o.key for o in options] == ["1", "2"]


def test_option_choice_by_letter_is_consumed_once():
    store, _ = _store()
    store.set_offered_options(SID, OFFER)

    choice = store.resolve_option_choice(SID, "B")
    assert choice.is_choice
    assert choice.message == "quantos registros na tabela pedidos"
    assert store.get(SID).last_table == "pedidos"

    again = store.resolve_option_choice(SID, "B")
    assert not again.is_choice
    assert again.message == "B"


def test_option_choice_by_ordinal():
    store, _ = _store()
    store.set_offered_options(SID, OFFER)
    choice = store.resolve_option_choice(SID, "a primeira")
    assert choice.is_choice
    assert choice.option.related_table == "clientes"


def test_plain_message_is_not_a_choice():
    store, _ = _store()
    store.set_offered_options(SID, OFFER)
    choice = store.resolve_option_choice(SID, "quantos pedidos temos?")
    assert not choice.is_choice
    assert choice.message == "quantos pedidos temos?"


def test_same_table_reference_is_rewritten():
    store, _ = _store()
    store.set_current_table(SID, "clientes")
    res = store.resolve_references(SID, "e quantos tem na mesma tabela?")
    assert res.context_used
    assert "tabela clientes" in res.resolved
    assert res.original == "e quantos tem na mesma tabela?"


def test_implicit_query_gets_last_table():
    store, _ = _store()
    store.set_current_table(SID, "clientes")
    res = store.resolve_references(SID, "quantos ativos?")
    assert res.resolved == "quantos ativos da tabela clientes"
    assert res.context_used


def test_explicit_table_is_left_alone():
    store, _ = _store()
    store.set_current_table(SID, "clientes")
    res = store.resolve_references(SID, "quantos registros na tabela pedidos?")
    assert not res.context_used
    assert res.resolved == res.original


def test_inventory_table_name_blocks_implicit_rewrite():
    store, _ = _store()
    store.set_current_table(SID, "clientes")
    res = store.resolve_references(SID, "quantos pedidos temos?", ["clientes", "pedidos"])
    assert not res.context_used
    assert res.resolved == "quantos pedidos temos?"

    pronoun = store.resolve_references(SID, "mostre isso de pedidos", ["clientes", "pedidos"])
    assert pronoun.resolved == "mostre isso de pedidos"


def test_no_context_means_no_rewrite():
    store, _ = _store()
    res = store.resolve_references("unknown", "quantos ativos?")
    assert res.resolved == "quantos ativos?"
    assert not res.context_used


def test_same_email_reuses_last_reference_value():
    store, _ = _store()
    intent = IntentResult(QueryIntent.FILTER, tables_needed=["leads"], operations=["filter"])
    store.record_turn(SID, "busque ana@example.com", intent)
    res = store.resolve_references(SID, "e o mesmo email em pedidos?")
    assert "email ana@example.com" in res.resolved
    assert store.last_intent(SID) is intent


def test_record_turn_keeps_five_most_recent():
    store, _ = _store()
    for i in range(7):
        store.record_turn(SID, f"pergunta {i}", IntentResult(QueryIntent.RETRIEVAL, tables_needed=["t"]))
    ctx = store.get(SID)
    assert len(ctx.recent_turns) == 5
    assert ctx.recent_turns[0].message == "pergunta 6"


def test_idle_contexts_are_swept():
    store, clock = _store()
    store.set_current_table(SID, "clientes")
    clock[0] += 61
    assert store.sweep_expired() == 1
    assert store.get(SID) is None


def test_inline_options_resolve_to_the_chosen_description():
    store, _ = _store()
    store.set_offered_options(SID, "Qual delas? (A) pedidos (B) clientes")
    choice = store.resolve_option_choice(SID, "B")
    assert choice.is_choice
    assert choice.message == "clientes"
    assert store.get(SID).pending_options == []
