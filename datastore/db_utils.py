"""
Database utilities: engine creation, schema introspection and safe reads.

``SQLStore`` is the only object that touches the database. It exposes
- introspection: ``list_tables``, ``list_columns``, ``sample``, ``row_count``
- a structured builder: ``select`` / ``count`` with a fixed operator set
- ``fetch_all`` for the translator's in-memory scan
- ``execute_read``: the narrow escape hatch, accepting only statements that
  went through ``chat_api.services.sql_safety.validate_read_only``
Every call runs on the runtime call executor with a bounded timeout.
"""
import logging
import os
import sys
import threading
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import sqlalchemy
from langchain_community.utilities import SQLDatabase
from sqlalchemy import MetaData, Table, create_engine, func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).parent.parent))
from chat_api.services.runtime import log_event, run_with_timeout
from chat_api.services.sql_safety import ValidatedStatement

logger = logging.getLogger("db_utils")

_ENGINE_CACHE: Dict[str, Engine] = {}
_ENGINE_CACHE_LOCK = threading.RLock()

OPERATORS: Dict[str, Callable[[Any, Any], Any]] = {
    "eq": lambda col, v: col == v,
    "neq": lambda col, v: col != v,
    "gt": lambda col, v: col > v,
    "gte": lambda col, v: col >= v,
    "lt": lambda col, v: col < v,
    "lte": lambda col, v: col <= v,
    "like": lambda col, v: col.like(v),
    "ilike": lambda col, v: col.ilike(v),
    "in": lambda col, v: col.in_(list(v)),
    "is": lambda col, v: col.is_(v),
}


@dataclass
class DatabaseConfig:
    """Database connection configuration"""
    url: str

    # Timeout settings (in seconds)
    query_timeout: int = 30

    # Result limits
    max_rows: int = 1000
    scan_max_rows: int = 50000

    # Arbitrary (validated) SELECT support; off for stores that only
    # allow the structured builder.
    allow_raw_read: bool = True

    view_support: bool = True
    include_tables: Optional[List[str]] = None
    ignore_tables: Optional[List[str]] = None


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any


class QueryTimeoutError(Exception):
    """Raised when a query exceeds the timeout limit"""
    pass


class QueryExecutionError(Exception):
    """Raised when query execution fails"""
    pass


class UnknownTableError(QueryExecutionError):
    def __init__(self, table: str):
        super().__init__(f"unknown table: {table}")
        self.table = table


class UnknownColumnError(QueryExecutionError):
    def __init__(self, table: str, column: str):
        super().__init__(f"unknown column {column!r} in table {table!r}")
        self.table = table
        self.column = column


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") in {"sqlite:", "sqlite+pysqlite:"})


def create_engine_with_timeout(config: DatabaseConfig) -> Engine:
    """
    Create (or reuse) a SQLAlchemy engine for ``config.url``.

    In-memory SQLite gets a single shared connection so every executor
    thread sees the same database; it is never cached.
    """
    url = config.url
    if _is_memory_sqlite(url):
        return create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})

    with _ENGINE_CACHE_LOCK:
        cached = _ENGINE_CACHE.get(url)
        if cached is not None:
            return cached

    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(
            url,
            pool_pre_ping=True,  # remote DBs drop idle connections
            pool_recycle=300,
            pool_size=5,
            max_overflow=10,
        )
    with _ENGINE_CACHE_LOCK:
        _ENGINE_CACHE[url] = engine
    log_event(logger, logging.INFO, "engine_created", dialect=engine.dialect.name)
    return engine


def create_database(config: DatabaseConfig, engine: Optional[Engine] = None) -> SQLDatabase:
    return SQLDatabase(
        engine=engine or create_engine_with_timeout(config),
        view_support=config.view_support,
        include_tables=config.include_tables,
        ignore_tables=config.ignore_tables,
        sample_rows_in_table_info=0,
    )


def _first_line(exc: Exception) -> str:
    return (str(exc).splitlines() or [type(exc).__name__])[0]


def _is_transient_operational_error(error_text: str) -> bool:
    text_low = (error_text or "").lower()
    transient_signals = (
        "timeout",
        "timed out",
        "could not connect",
        "connection reset",
        "deadlock",
        "database is locked",
    )
    return any(sig in text_low for sig in transient_signals)


class SQLStore:
    def __init__(self, db: SQLDatabase, config: DatabaseConfig):
        self.db = db
        self.config = config
        self._engine: Engine = db._engine
        self._tables: Dict[str, Table] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "SQLStore":
        return cls(create_database(config), config)

    @property
    def supports_raw_read(self) -> bool:
        return bool(self.config.allow_raw_read)

    # --- execution plumbing ---

    def _run(self, op: str, fn: Callable[[], Any]) -> Any:
        max_retries = max(0, int(os.getenv("DB_TRANSIENT_RETRIES", "1")))
        attempt = 0
        while True:
            started = time.perf_counter()
            try:
                out = run_with_timeout(fn, self.config.query_timeout)
                log_event(
                    logger,
                    logging.DEBUG,
                    "db_call_ok",
                    op=op,
                    elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
                )
                return out
            except FuturesTimeoutError as exc:
                raise QueryTimeoutError(f"Query exceeded {self.config.query_timeout} second timeout") from exc
            except sqlalchemy.exc.OperationalError as exc:
                if attempt < max_retries and _is_transient_operational_error(str(exc)):
                    attempt += 1
                    log_event(logger, logging.WARNING, "db_transient_retry", op=op, attempt=attempt, error=str(exc)[:180])
                    continue
                raise QueryExecutionError(f"Database error: {_first_line(exc)}") from exc
            except sqlalchemy.exc.SQLAlchemyError as exc:
                raise QueryExecutionError(f"Query execution failed: {_first_line(exc)}") from exc

    def resolve_table_name(self, name: str) -> Optional[str]:
        """Case-insensitive lookup against the usable tables."""
        wanted = (name or "").strip().strip("\"`[]").lower()
        for table in self.list_tables():
            if table.lower() == wanted:
                return table
        return None

    def _table(self, requested: str) -> Table:
        name = self.resolve_table_name(requested)
        if name is None:
            raise UnknownTableError(requested)
        with self._lock:
            table = self._tables.get(name)
        if table is not None:
            return table
        try:
            table = self._run("reflect", lambda: Table(name, MetaData(), autoload_with=self._engine))
        except QueryExecutionError as exc:
            if isinstance(exc.__cause__, sqlalchemy.exc.NoSuchTableError):
                raise UnknownTableError(name) from exc
            raise
        with self._lock:
            self._tables[name] = table
        return table

    def _column(self, table: Table, name: str):
        if name not in table.c:
            raise UnknownColumnError(table.name, name)
        return table.c[name]

    def _fetch(self, stmt: Any, max_rows: int) -> List[Dict[str, Any]]:
        def _execute():
            rows: List[Dict[str, Any]] = []
            with self._engine.connect() as conn:
                result = conn.execute(stmt)
                # fetchmany keeps peak memory bounded on large result sets
                while len(rows) < max_rows:
                    chunk = result.fetchmany(500)
                    if not chunk:
                        break
                    rows.extend(dict(r._mapping) for r in chunk)
            return rows[:max_rows]

        return _execute

    # --- introspection ---

    def list_tables(self) -> List[str]:
        return list(self.db.get_usable_table_names())

    def list_columns(self, table: str) -> List[str]:
        try:
            return [c.name for c in self._table(table).columns]
        except UnknownTableError:
            return []

    def sample(self, table: str, n: int) -> List[Dict[str, Any]]:
        t = self._table(table)
        return self._run("sample", self._fetch(select(t).limit(max(0, n)), max(0, n)))

    def row_count(self, table: str) -> int:
        return self.count(table)

    # --- structured builder ---

    def _where(self, t: Table, filters: Sequence[Filter]) -> List[Any]:
        clauses = []
        for f in filters:
            op = OPERATORS.get(f.op)
            if op is None:
                raise QueryExecutionError(f"unsupported operator: {f.op}")
            clauses.append(op(self._column(t, f.column), f.value))
        return clauses

    def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        columns: Optional[Sequence[str]] = None,
        order_by: Sequence[Tuple[str, bool]] = (),
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """``order_by`` is a list of ``(column, ascending)``; ``limit``/``offset`` form a range."""
        t = self._table(table)
        cols = [self._column(t, c) for c in columns] if columns else [t]
        stmt = select(*cols)
        clauses = self._where(t, filters)
        if clauses:
            stmt = stmt.where(*clauses)
        for col, ascending in order_by:
            c = self._column(t, col)
            stmt = stmt.order_by(c.asc() if ascending else c.desc())
        cap = min(limit, self.config.max_rows) if limit is not None else self.config.max_rows
        stmt = stmt.limit(cap)
        if offset:
            stmt = stmt.offset(offset)
        return self._run("select", self._fetch(stmt, cap))

    def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        t = self._table(table)
        stmt = select(func.count()).select_from(t)
        clauses = self._where(t, filters)
        if clauses:
            stmt = stmt.where(*clauses)

        def _execute() -> int:
            with self._engine.connect() as conn:
                return int(conn.execute(stmt).scalar() or 0)

        return self._run("count", _execute)

    def fetch_all(self, table: str) -> List[Dict[str, Any]]:
        t = self._table(table)
        rows = self._run("scan", self._fetch(select(t), self.config.scan_max_rows))
        if len(rows) >= self.config.scan_max_rows:
            log_event(logger, logging.WARNING, "scan_truncated", table=table, max_rows=self.config.scan_max_rows)
        return rows

    # --- escape hatch ---

    def execute_read(self, statement: ValidatedStatement) -> List[Dict[str, Any]]:
        if not isinstance(statement, ValidatedStatement):
            raise QueryExecutionError("refusing to execute an unvalidated statement")
        if not self.supports_raw_read:
            raise QueryExecutionError("raw reads are disabled for this store")
        return self._run("raw_read", self._fetch(text(statement.text), self.config.max_rows))
