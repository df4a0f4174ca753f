"""Five-minute memoization of per-table schema facts (columns, row count, sample)."""
from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from chat_api.services.runtime import log_event

logger = logging.getLogger("schema_cache")

SCHEMA_CACHE_TTL_S = max(1.0, float(os.getenv("SCHEMA_CACHE_TTL_S", "300")))
SCHEMA_SAMPLE_ROWS = max(0, int(os.getenv("SCHEMA_SAMPLE_ROWS", "2")))


class SchemaIntrospector(Protocol):
    def list_columns(self, table: str) -> List[str]: ...

    def sample(self, table: str, n: int) -> List[Dict[str, Any]]: ...

    def row_count(self, table: str) -> int: ...


@dataclass
class SchemaCacheEntry:
    table_name:     str
    column_names:   List[str]
    row_count_hint: Optional[int]
    sample_rows:    List[Dict[str, Any]] = field(default_factory=list)
    cached_at:      float = 0.0

    def is_fresh(self, now: float, ttl_s: float) -> bool:
        return (now - self.cached_at) < ttl_s

    def describe(self) -> str:
        return (
            f"Tabela: {self.table_name}\n"
            f"Colunas: {', '.join(self.column_names)}\n"
            f"Registros: {self.row_count_hint if self.row_count_hint is not None else 'desconhecido'}\n"
            f"Amostra: {self.sample_rows[:1]}"
        )


class SchemaCache:
    def __init__(
        self,
        introspector: SchemaIntrospector,
        ttl_s: float = SCHEMA_CACHE_TTL_S,
        sample_rows: int = SCHEMA_SAMPLE_ROWS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._introspector = introspector
        self.ttl_s = ttl_s
        self.sample_rows = sample_rows
        self._clock = clock
        self._entries: Dict[str, SchemaCacheEntry] = {}
        self._lock = threading.RLock()

    def get(self, table: str) -> Optional[SchemaCacheEntry]:
        """Fresh entry for ``table``; refetches when stale. ``None`` for unknown tables."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(table)
            if entry is not None and entry.is_fresh(now, self.ttl_s):
                return entry
            self._entries.pop(table, None)

        started = time.perf_counter()
        columns = self._introspector.list_columns(table)
        if not columns:
            log_event(logger, logging.WARNING, "schema_table_unknown", table=table)
            return None
        try:
            row_count: Optional[int] = self._introspector.row_count(table)
        except Exception as exc:
            log_event(logger, logging.WARNING, "schema_row_count_failed", table=table, error=str(exc)[:200])
            row_count = None
        try:
            sample = self._introspector.sample(table, self.sample_rows) if self.sample_rows else []
        except Exception as exc:
            log_event(logger, logging.WARNING, "schema_sample_failed", table=table, error=str(exc)[:200])
            sample = []

        entry = SchemaCacheEntry(
            table_name=table,
            column_names=list(columns),
            row_count_hint=row_count,
            sample_rows=list(sample)[: self.sample_rows],
            cached_at=self._clock(),
        )
        with self._lock:
            self._entries[table] = entry
        log_event(
            logger,
            logging.INFO,
            "schema_cache_fill",
            table=table,
            columns=len(columns),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return entry

    def peek(self, table: str) -> Optional[SchemaCacheEntry]:
        """Cached entry if still fresh; never introspects."""
        with self._lock:
            entry = self._entries.get(table)
        if entry is not None and entry.is_fresh(self._clock(), self.ttl_s):
            return entry
        return None

    def get_many(self, tables: Iterable[str]) -> List[SchemaCacheEntry]:
        out: List[SchemaCacheEntry] = []
        for table in tables:
            entry = self.get(table)
            if entry is not None:
                out.append(entry)
        return out

    def invalidate(self, table: Optional[str] = None) -> None:
        with self._lock:
            if table is None:
                self._entries.clear()
            else:
                self._entries.pop(table, None)
