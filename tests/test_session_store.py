import sys
import threading
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from chat_api.services.session import Message, MessageMetadata, SessionStore


def test_history_is_trimmed_to_most_recent_80_percent():
    store = SessionStore(max_messages=1000)
    session = store.create_or_get()
    for i in range(1001):
        store.append(session.id, Message(role="user", content=f"m{i}"))

    snapshot = store.get(session.id)
    assert len(snapshot.messages) == 800
    assert snapshot.messages[-1].content == "m1000"
    assert snapshot.messages[0].content == "m201"


def test_create_or_get_reuses_known_id():
    store = SessionStore()
    first = store.create_or_get("abc")
    assert store.create_or_get("abc") is first
    assert len(store) == 1


def test_assistant_sql_counts_as_query_and_tracks_tables():
    store = SessionStore()
    sid = store.create_or_get().id
    store.append(sid, Message(role="user", content="quantos clientes?"))
    store.append(
        sid,
        Message(
            role="assistant",
            content="42",
            metadata=MessageMetadata(sql_used="SELECT COUNT(*) FROM clientes", table_used="clientes"),
        ),
    )
    meta = store.get(sid).metadata
    assert meta.query_count == 1
    assert meta.tables_touched == ["clientes"]


def test_get_returns_a_snapshot():
    store = SessionStore()
    sid = store.create_or_get().id
    store.append(sid, Message(role="user", content="a"))
    snap = store.get(sid)
    store.append(sid, Message(role="user", content="b"))
    assert len(snap.messages) == 1
    assert store.get("missing") is None


def test_idle_sessions_expire_and_notify():
    now = [0.0]
    evicted = []
    store = SessionStore(ttl_s=100, clock=lambda: now[0], on_evict=evicted.append)
    old = store.create_or_get("old").id
    now[0] = 50.0
    fresh = store.create_or_get("fresh").id
    now[0] = 120.0

    assert store.sweep_expired() == 1
    assert store.get(old) is None
    assert store.get(fresh) is not None
    assert evicted == [old]


def test_delete_and_stats():
    evicted = []
    store = SessionStore(on_evict=evicted.append)
    sid = store.create_or_get().id
    store.append(sid, Message(role="user", content="oi"))
    stats = store.stats()
    assert stats["active_sessions"] == 1
    assert stats["total_messages"] == 1

    assert store.delete(sid) is True
    assert store.delete(sid) is False
    assert evicted == [sid]


def test_session_to_dict_has_iso_timestamps():
    store = SessionStore()
    sid = store.create_or_get().id
    store.append(sid, Message(role="user", content="oi"))
    out = store.get(sid).to_dict()
    assert out["id"] == sid
    assert "T" in out["created_at"]
    assert out["messages"][0]["role"] == "user"
    assert "T" in out["messages"][0]["timestamp"]


def test_background_sweeper_evicts_runs_hooks_and_stops():
    now = [0.0]
    evicted = []
    hook_ran = threading.Event()
    store = SessionStore(ttl_s=100, clock=lambda: now[0], on_evict=evicted.append)
    store.add_sweep_hook(hook_ran.set)
    sid = store.create_or_get().id
    now[0] = 500.0

    store.start_sweeper(interval_s=0.01)
    thread = store._sweeper
    try:
        assert hook_ran.wait(timeout=5)
        assert store.get(sid) is None
        assert evicted == [sid]
        store.start_sweeper(interval_s=0.01)
        assert store._sweeper is thread
    finally:
        store.stop_sweeper()

    assert not thread.is_alive()
    assert store._sweeper is None
