import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from chat_api.services.json_extract import extract_json


def test_fenced_json():
    text = 'Aqui está:\n```json\n{"sql_query": "SELECT 1", "query_type": "count"}\n```'
    assert extract_json(text) == {"sql_query": "SELECT 1", "query_type": "count"}


def test_prose_around_object():
    assert extract_json('Claro! {"a": 1} espero ter ajudado') == {"a": 1}


def test_single_quotes():
    assert extract_json("{'category': 'aggregation'}") == {"category": "aggregation"}


def test_comments_and_trailing_comma():
    text = '{\n  "a": 1,\n  // comentário\n  "b": 2,\n}'
    assert extract_json(text) == {"a": 1, "b": 2}


def test_unparseable_returns_copy_of_default():
    default = {"insights": []}
    out = extract_json("nada de json aqui", default)
    assert out == default
    assert out is not default


def test_empty_without_default_is_none():
    assert extract_json("") is None
    assert extract_json("[1, 2, 3]") is None
