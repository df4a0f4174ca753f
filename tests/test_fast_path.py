import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from chat_api.services.fast_path import FAST_PATH_MAX_CHARS, names_a_table, try_quick_response
from chat_api.services.models import TableSummary

TABLES = [TableSummary("clientes", 42), TableSummary("pedidos", None)]


def test_greeting_gets_canned_reply_with_suggestions():
    quick = try_quick_response("Oi!", TABLES)
    assert quick is not None
    assert quick.name == "greeting"
    assert quick.confidence == 100
    assert 0 < len(quick.suggestions) <= 3


def test_list_tables_names_every_table():
    quick = try_quick_response("Quais tabelas existem?", TABLES)
    assert quick is not None
    assert quick.name == "list_tables"
    assert "**clientes**" in quick.content
    assert "**pedidos**" in quick.content


def test_thanks_and_farewell():
    assert try_quick_response("obrigado", TABLES).name == "thanks"
    assert try_quick_response("tchau", TABLES).name == "farewell"


def test_data_questions_are_not_swallowed():
    assert try_quick_response("quantos clientes temos?", TABLES) is None
    assert try_quick_response("o que você pode fazer na tabela clientes?", TABLES) is None


def test_long_messages_skip_the_fast_path():
    text = "oi " + "x" * (FAST_PATH_MAX_CHARS + 1)
    assert try_quick_response(text, TABLES) is None


def test_names_a_table():
    assert names_a_table("mostre a tabela vendas")
    assert names_a_table("e os pedidos?", TABLES)
    assert not names_a_table("quais tabelas existem?", TABLES)
