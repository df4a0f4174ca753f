"""
In-memory conversation store.
Sessions are evicted after an idle TTL by a background sweeper thread; message
history is capped and batch-trimmed to the most recent 80% when the cap is hit.
"""
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from chat_api.services import settings
from chat_api.services.runtime import log_event

logger = logging.getLogger("session")

TRIM_RATIO = 0.8


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class MessageMetadata:
    sql_used:   Optional[str]   = None
    table_used: Optional[str]   = None
    confidence: Optional[int]   = None
    latency_ms: Optional[int]   = None


@dataclass
class Message:
    role:      str                      # user | assistant
    content:   str
    id:        str                      = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float                    = field(default_factory=time.time)
    metadata:  MessageMetadata          = field(default_factory=MessageMetadata)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["timestamp"] = _iso(self.timestamp)
        return out


@dataclass
class SessionMetadata:
    query_count:    int       = 0
    tables_touched: List[str] = field(default_factory=list)


@dataclass
class Session:
    id:               str
    messages:         List[Message]   = field(default_factory=list)
    created_at:       float           = field(default_factory=time.time)
    last_activity_at: float           = field(default_factory=time.time)
    metadata:         SessionMetadata = field(default_factory=SessionMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": _iso(self.created_at),
            "last_activity_at": _iso(self.last_activity_at),
            "metadata": asdict(self.metadata),
        }


class SessionStore:
    def __init__(
        self,
        ttl_s: float = settings.SESSION_TTL_S,
        max_messages: int = settings.SESSION_MAX_MESSAGES,
        clock: Callable[[], float] = time.time,
        on_evict: Optional[Callable[[str], None]] = None,
    ):
        self.ttl_s = ttl_s
        self.max_messages = max_messages
        self._clock = clock
        self._on_evict = on_evict
        self._store: Dict[str, Session] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self._sweep_hooks: List[Callable[[], Any]] = []

    def create_or_get(self, session_id: Optional[str] = None) -> Session:
        with self._lock:
            if session_id and session_id in self._store:
                return self._store[session_id]
            now = self._clock()
            s = Session(id=session_id or str(uuid.uuid4()), created_at=now, last_activity_at=now)
            self._store[s.id] = s
        log_event(logger, logging.INFO, "session_created", session=s.id)
        return s

    def append(self, session_id: str, message: Message) -> None:
        with self._lock:
            s = self.create_or_get(session_id)
            s.messages.append(message)
            s.last_activity_at = self._clock()
            meta = message.metadata
            if message.role == "assistant" and meta.sql_used:
                s.metadata.query_count += 1
            if meta.table_used and meta.table_used not in s.metadata.tables_touched:
                s.metadata.tables_touched.append(meta.table_used)
            if len(s.messages) > self.max_messages:
                keep = int(self.max_messages * TRIM_RATIO)
                dropped = len(s.messages) - keep
                del s.messages[:dropped]
                log_event(logger, logging.INFO, "session_trimmed", session=session_id, dropped=dropped, kept=keep)

    def get(self, session_id: str) -> Optional[Session]:
        """Snapshot copy; callers never see later mutations."""
        with self._lock:
            s = self._store.get(session_id)
            if s is None:
                return None
            return replace(
                s,
                messages=list(s.messages),
                metadata=replace(s.metadata, tables_touched=list(s.metadata.tables_touched)),
            )

    def delete(self, session_id: str) -> bool:
        with self._lock:
            removed = self._store.pop(session_id, None) is not None
        if removed and self._on_evict:
            self._on_evict(session_id)
        return removed

    def sweep_expired(self) -> int:
        cutoff = self._clock() - self.ttl_s
        with self._lock:
            expired = [sid for sid, s in self._store.items() if s.last_activity_at < cutoff]
            for sid in expired:
                del self._store[sid]
        if self._on_evict:
            for sid in expired:
                self._on_evict(sid)
        if expired:
            log_event(logger, logging.INFO, "session_sweep", removed=len(expired))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            sessions = list(self._store.values())
            total = sum(len(s.messages) for s in sessions)
        oldest = max((now - s.created_at for s in sessions), default=0.0)
        return {
            "active_sessions": len(sessions),
            "total_messages": total,
            "oldest_session_age_s": round(oldest, 1),
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    # --- background sweep ---

    def add_sweep_hook(self, hook: Callable[[], Any]) -> None:
        """Extra cleanup run after every background sweep (e.g. context memory)."""
        self._sweep_hooks.append(hook)

    def start_sweeper(self, interval_s: float = settings.SESSION_SWEEP_INTERVAL_S) -> None:
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop.clear()
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                args=(interval_s,),
                name="session-sweeper",
                daemon=True,
            )
            self._sweeper.start()
        log_event(logger, logging.INFO, "session_sweeper_started", interval_s=interval_s)

    def stop_sweeper(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        thread = self._sweeper
        if thread is not None:
            thread.join(timeout=timeout_s)
        self._sweeper = None

    def _sweep_loop(self, interval_s: float) -> None:
        while not self._stop.wait(interval_s):
            try:
                self.sweep_expired()
                for hook in self._sweep_hooks:
                    hook()
            except Exception:
                logger.exception("session_sweep_failed")
