"""
Validated SELECT text -> store operation.

Priority:
1. statements with GROUP BY / CASE WHEN / COUNT(DISTINCT) / DATE_TRUNC / ILIKE /
   JOIN or computed projections go to the store's raw-read escape hatch; when
   that is unavailable or fails they are evaluated client-side over a
   whole-table scan (pandas). The scan is O(table size).
2. bare ``COUNT(*)`` without GROUP BY -> ``backend.count`` (no row fetch).
3. everything else -> ``backend.select`` with WHERE/ORDER BY/LIMIT pulled out
   by pattern matching; LIMIT defaults to 100.

A WHERE clause that cannot be translated completely is never dropped: the
statement goes to the escape hatch or fails with ``TranslationError``.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import pandas as pd

from chat_api.services.models import StatementKind
from chat_api.services.runtime import log_event
from chat_api.services.sql_safety import ValidatedStatement
from datastore.db_utils import Filter, QueryExecutionError, UnknownTableError

logger = logging.getLogger("sql_translator")

DEFAULT_LIMIT = 100

SYSTEM_CATALOGS = {
    "information_schema", "pg_catalog", "sqlite_master", "sqlite_schema",
    "sqlite_temp_master", "sys", "mysql", "performance_schema",
}

_COMPLEX_MARKERS = re.compile(
    r"\bgroup\s+by\b|\bcase\s+when\b|\bcount\s*\(\s*distinct\b|\bdate_trunc\s*\(|\bilike\b|\bjoin\b",
    re.IGNORECASE,
)
_TABLE_REFS = re.compile(r"\b(?:from|join)\s+([\w.\"`\[\]]+)", re.IGNORECASE)
_SELECT_DISTINCT = re.compile(r"^distinct\s+", re.IGNORECASE)
_STATEMENT = re.compile(
    r"^\s*select\s+(?P<proj>.+?)\s+from\s+(?P<table>[\w\"`\[\]]+)"
    r"(?:\s+where\s+(?P<where>.+?))?"
    r"(?:\s+group\s+by\s+(?P<group>.+?))?"
    r"(?:\s+order\s+by\s+(?P<order>.+?))?"
    r"(?:\s+limit\s+(?P<limit>\d+))?"
    r"(?:\s+offset\s+(?P<offset>\d+))?\s*;?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_IDENT = re.compile(r"^[A-Za-z_]\w*$")
_BARE_COUNT = re.compile(r"^count\s*\(\s*\*\s*\)$", re.IGNORECASE)
_AGG = re.compile(
    r"^(?P<fn>count|sum|avg|min|max)\s*\(\s*(?P<distinct>distinct\s+)?(?P<arg>\*|[A-Za-z_]\w*)\s*\)$",
    re.IGNORECASE,
)
_ALIAS = re.compile(r"^(?P<expr>.+?)\s+(?:as\s+)?(?P<alias>[A-Za-z_]\w*|\"[^\"]+\")$", re.IGNORECASE | re.DOTALL)
_DATE_TRUNC = re.compile(r"^date_trunc\s*\(\s*'(?P<unit>\w+)'\s*,\s*(?P<col>[A-Za-z_]\w*)\s*\)$", re.IGNORECASE)
_CASE = re.compile(r"^case\s+(?P<body>.+?)\s+end$", re.IGNORECASE | re.DOTALL)
_WHEN = re.compile(r"when\s+(?P<cond>.+?)\s+then\s+'(?P<label>(?:''|[^'])*)'", re.IGNORECASE | re.DOTALL)
_ELSE = re.compile(r"\belse\s+'(?P<label>(?:''|[^'])*)'\s*$", re.IGNORECASE | re.DOTALL)
_CONDITION = re.compile(
    r"^\s*(?:lower\s*\(\s*)?(?P<col>[A-Za-z_]\w*)\s*\)?\s*"
    r"(?P<op>>=|<=|<>|!=|=|>|<|not\s+ilike\b|not\s+like\b|ilike\b|like\b|not\s+in\b|in\b|is\s+not\b|is\b)\s*"
    r"(?P<val>.+?)\s*$",
    re.IGNORECASE | re.DOTALL,
)
_ORDER_ITEM = re.compile(r"^(?P<expr>.+?)(?:\s+(?P<dir>asc|desc))?$", re.IGNORECASE | re.DOTALL)
_STRING = re.compile(r"^'((?:''|[^'])*)'$", re.DOTALL)
_NUMBER = re.compile(r"^-?\d+(?:\.\d+)?$")

_OP_NAMES = {
    "=": "eq", "!=": "neq", "<>": "neq", ">": "gt", ">=": "gte", "<": "lt", "<=": "lte",
    "like": "like", "ilike": "ilike",
}


class TranslationError(Exception):
    """The statement cannot be mapped onto the store's operations."""


class QueryBackend(Protocol):
    supports_raw_read: bool

    def select(self, table: str, filters: Sequence[Filter] = (), columns: Optional[Sequence[str]] = None,
               order_by: Sequence[Tuple[str, bool]] = (), limit: Optional[int] = None,
               offset: Optional[int] = None) -> List[Dict[str, Any]]: ...

    def count(self, table: str, filters: Sequence[Filter] = ()) -> int: ...

    def fetch_all(self, table: str) -> List[Dict[str, Any]]: ...

    def execute_read(self, statement: ValidatedStatement) -> List[Dict[str, Any]]: ...


@dataclass
class TranslationResult:
    strategy: str          # escape_hatch | memory_scan | count | structured
    table: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def is_scalar(self) -> bool:
        """One row with one column: a count or a single aggregate."""
        return len(self.rows) == 1 and len(self.rows[0]) == 1

    @property
    def scalar(self) -> Any:
        return next(iter(self.rows[0].values())) if self.is_scalar else None


@dataclass
class _Parts:
    projection: str
    table: str
    where: Optional[str]
    group: Optional[str]
    order: Optional[str]
    limit: Optional[int]
    offset: Optional[int]
    distinct: bool = False


# ---------------------------
# Parsing helpers
# ---------------------------

def _unquote_ident(name: str) -> str:
    return name.strip().strip("\"`[]")


def _normalize_expr(expr: str) -> str:
    return re.sub(r"\s+", "", expr.lower())


def split_top_level(text: str, sep: str = ",") -> List[str]:
    """Split on ``sep`` outside parentheses and single-quoted literals."""
    parts: List[str] = []
    buf: List[str] = []
    depth = 0
    in_str = False
    for ch in text:
        if ch == "'":
            in_str = not in_str
        elif not in_str and ch == "(":
            depth += 1
        elif not in_str and ch == ")":
            depth -= 1
        if ch == sep and depth == 0 and not in_str:
            parts.append("".join(buf).strip())
            buf = []
        else:
            buf.append(ch)
    if buf:
        parts.append("".join(buf).strip())
    return [p for p in parts if p]


def _split_and(where: str) -> List[str]:
    masked = re.sub(r"'(?:''|[^'])*'", lambda m: "_" * len(m.group(0)), where)
    if re.search(r"\bor\b", masked, re.IGNORECASE):
        raise TranslationError("OR conditions are not supported")
    parts, start = [], 0
    for m in re.finditer(r"\s+and\s+", masked, re.IGNORECASE):
        parts.append(where[start:m.start()])
        start = m.end()
    parts.append(where[start:])
    return [p.strip() for p in parts if p.strip()]


def _literal(raw: str) -> Any:
    raw = raw.strip()
    m = _STRING.match(raw)
    if m:
        return m.group(1).replace("''", "'")
    if _NUMBER.match(raw):
        return float(raw) if "." in raw else int(raw)
    low = raw.lower()
    if low == "null":
        return None
    if low in {"true", "false"}:
        return low == "true"
    raise TranslationError(f"unsupported literal: {raw[:40]}")


def parse_condition(cond: str) -> Filter:
    m = _CONDITION.match(cond)
    if not m:
        raise TranslationError(f"unsupported condition: {cond[:60]}")
    col = m.group("col")
    op = re.sub(r"\s+", " ", m.group("op").lower())
    raw_val = m.group("val")
    if op.startswith("not "):
        raise TranslationError(f"{op.upper()} is not supported")
    if op == "in":
        inner = raw_val.strip()
        if not (inner.startswith("(") and inner.endswith(")")):
            raise TranslationError("IN expects a parenthesised list")
        return Filter(col, "in", [_literal(v) for v in split_top_level(inner[1:-1])])
    if op in {"is", "is not"}:
        if _literal(raw_val) is not None:
            raise TranslationError("IS only supports NULL")
        return Filter(col, "neq" if op == "is not" else "is", None)
    return Filter(col, _OP_NAMES[op], _literal(raw_val))


def _parse_order(order: Optional[str], aliases: Optional[Dict[str, str]] = None) -> List[Tuple[str, bool]]:
    out: List[Tuple[str, bool]] = []
    for item in split_top_level(order or ""):
        m = _ORDER_ITEM.match(item.strip())
        expr = m.group("expr").strip()
        if aliases:
            expr = aliases.get(_normalize_expr(expr), expr)
        if not _IDENT.match(expr):
            raise TranslationError(f"unsupported ORDER BY item: {item[:40]}")
        out.append((expr, (m.group("dir") or "asc").lower() != "desc"))
    return out


def _parse_statement(sql: str) -> Optional[_Parts]:
    m = _STATEMENT.match(sql)
    if not m:
        return None
    projection = m.group("proj").strip()
    distinct = bool(_SELECT_DISTINCT.match(projection))
    if distinct:
        projection = _SELECT_DISTINCT.sub("", projection, count=1)
    return _Parts(
        projection=projection,
        table=_unquote_ident(m.group("table")),
        where=m.group("where") or None,
        group=m.group("group") or None,
        order=m.group("order") or None,
        limit=int(m.group("limit")) if m.group("limit") else None,
        offset=int(m.group("offset")) if m.group("offset") else None,
        distinct=distinct,
    )


def _split_alias(item: str) -> Tuple[str, Optional[str]]:
    item = item.strip()
    m = _ALIAS.match(item)
    if m:
        expr, alias = m.group("expr").strip(), m.group("alias")
        allowed_expr = (
            _IDENT.match(expr) or expr == "*" or expr.endswith(")")
            or re.search(r"\bend$", expr, re.IGNORECASE)
        )
        if alias.lower() not in {"end", "asc", "desc"} and allowed_expr:
            return expr, _unquote_ident(alias)
    return item, None


def referenced_tables(sql: str) -> List[str]:
    return [_unquote_ident(t) for t in _TABLE_REFS.findall(sql or "")]


def infer_statement_kind(sql: str) -> StatementKind:
    low = (sql or "").lower()
    if re.search(r"\bjoin\b|\bcase\s+when\b|\(\s*select\b", low):
        return StatementKind.COMPLEX
    if re.search(r"count\s*\(\s*distinct\b", low):
        return StatementKind.COUNT_DISTINCT
    if re.search(r"\bgroup\s+by\b|\b(sum|avg|min|max)\s*\(|\bdate_trunc\s*\(", low):
        return StatementKind.AGGREGATION
    parts = _parse_statement(sql or "")
    if parts and _BARE_COUNT.match(_split_alias(parts.projection)[0]):
        return StatementKind.SIMPLE_COUNT
    if re.search(r"\bcount\s*\(", low):
        return StatementKind.AGGREGATION
    return StatementKind.LIST


# ---------------------------
# In-memory evaluation
# ---------------------------

def _like_regex(pattern: str, case_insensitive: bool) -> "re.Pattern[str]":
    body = "".join(".*" if ch == "%" else "." if ch == "_" else re.escape(ch) for ch in pattern)
    flags = re.DOTALL | (re.IGNORECASE if case_insensitive else 0)
    return re.compile(f"^{body}$", flags)


def _mask(df: pd.DataFrame, f: Filter) -> pd.Series:
    if f.column not in df.columns:
        raise TranslationError(f"unknown column: {f.column}")
    col = df[f.column]
    if f.op in {"like", "ilike"}:
        rx = _like_regex(str(f.value), f.op == "ilike")
        return col.map(lambda v: v is not None and not pd.isna(v) and bool(rx.match(str(v)))).astype(bool)
    if f.op == "in":
        return col.isin(list(f.value))
    if f.value is None:
        return col.notna() if f.op == "neq" else col.isna()
    ops = {
        "eq": lambda s: s == f.value, "is": lambda s: s == f.value, "neq": lambda s: s != f.value,
        "gt": lambda s: s > f.value, "gte": lambda s: s >= f.value,
        "lt": lambda s: s < f.value, "lte": lambda s: s <= f.value,
    }
    try:
        return ops[f.op](col)
    except TypeError as exc:
        raise TranslationError(f"cannot compare {f.column} with {f.value!r}") from exc


def _case_series(df: pd.DataFrame, body: str) -> pd.Series:
    whens = list(_WHEN.finditer(body))
    if not whens:
        raise TranslationError("CASE without WHEN branches")
    else_m = _ELSE.search(body)
    default = else_m.group("label").replace("''", "'") if else_m else None
    out = pd.Series([default] * len(df), index=df.index, dtype=object)
    assigned = pd.Series(False, index=df.index)
    for w in whens:
        hit = pd.Series(False, index=df.index)
        for cond in re.split(r"\s+or\s+", w.group("cond"), flags=re.IGNORECASE):
            hit = hit | _mask(df, parse_condition(cond))
        take = hit & ~assigned
        out[take] = w.group("label").replace("''", "'")
        assigned = assigned | hit
    return out


def _date_trunc_series(df: pd.DataFrame, unit: str, col: str) -> pd.Series:
    if col not in df.columns:
        raise TranslationError(f"unknown column: {col}")
    ts = pd.to_datetime(df[col], errors="coerce")
    unit = unit.lower()
    if unit == "day":
        return ts.dt.floor("D")
    freq = {"week": "W", "month": "M", "quarter": "Q", "year": "Y"}.get(unit)
    if freq is None:
        raise TranslationError(f"unsupported date_trunc unit: {unit}")
    return ts.dt.to_period(freq).dt.start_time


def _aggregate(fn: str, distinct: bool, arg: str, frame: pd.DataFrame) -> Any:
    if arg == "*":
        return int(len(frame))
    if arg not in frame.columns:
        raise TranslationError(f"unknown column: {arg}")
    series = frame[arg]
    if fn == "count":
        return int(series.dropna().nunique() if distinct else series.notna().sum())
    if distinct:
        series = series.drop_duplicates()
    if fn in {"sum", "avg"}:
        series = pd.to_numeric(series, errors="coerce")
    value = {"sum": series.sum, "avg": series.mean, "min": series.min, "max": series.max}[fn]()
    return None if pd.isna(value) else value


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    clean = df.astype(object).where(df.notna(), None)
    return clean.to_dict(orient="records")


class _MemoryScan:
    """Evaluates a single-table statement over already-fetched rows."""

    def __init__(self, parts: _Parts, rows: List[Dict[str, Any]]):
        self.parts = parts
        self.df = pd.DataFrame(rows)
        self.aliases: Dict[str, str] = {}

    def run(self) -> List[Dict[str, Any]]:
        if self.df.empty:
            return self._empty_result()
        df = self.df
        if self.parts.where:
            for cond in _split_and(self.parts.where):
                df = df[_mask(df, parse_condition(cond))]

        derived: Dict[str, pd.Series] = {}
        aggregates: List[Tuple[str, str, bool, str]] = []
        plain: List[str] = []
        select_all = False
        for item in split_top_level(self.parts.projection):
            expr, alias = _split_alias(item)
            agg = _AGG.match(expr)
            if agg:
                fn, arg = agg.group("fn").lower(), agg.group("arg")
                name = alias or ("total" if fn == "count" else f"{fn}_{arg}")
                aggregates.append((name, fn, bool(agg.group("distinct")), arg))
                self.aliases[_normalize_expr(expr)] = name
                continue
            if expr == "*":
                select_all = True
                continue
            dt = _DATE_TRUNC.match(expr)
            case = _CASE.match(expr)
            if dt:
                name = alias or "periodo"
                derived[name] = _date_trunc_series(df, dt.group("unit"), dt.group("col"))
            elif case:
                name = alias or "categoria"
                derived[name] = _case_series(df, case.group("body"))
            elif _IDENT.match(expr):
                if expr not in df.columns:
                    raise TranslationError(f"unknown column: {expr}")
                name = alias or expr
                if alias:
                    derived[name] = df[expr]
            else:
                raise TranslationError(f"unsupported select item: {item[:60]}")
            self.aliases[_normalize_expr(expr)] = name
            plain.append(name)

        frame = df.copy()
        for name, series in derived.items():
            frame[name] = series

        if self.parts.group or aggregates:
            result = self._grouped(frame, plain, aggregates)
        else:
            result = frame if select_all or not plain else frame[plain]

        if self.parts.distinct:
            result = result.drop_duplicates()

        if self.parts.order:
            order = _parse_order(self.parts.order, self.aliases)
            missing = [c for c, _ in order if c not in result.columns]
            if missing:
                raise TranslationError(f"unknown ORDER BY column: {missing[0]}")
            result = result.sort_values([c for c, _ in order], ascending=[a for _, a in order], kind="stable")
        elif aggregates and self.parts.group and not result.empty:
            # biggest group first
            result = result.sort_values(aggregates[0][0], ascending=False, kind="stable")
        offset = self.parts.offset or 0
        result = result.iloc[offset: offset + (self.parts.limit or DEFAULT_LIMIT)]
        return _records(result.reset_index(drop=True))

    def _grouped(
        self,
        frame: pd.DataFrame,
        plain: List[str],
        aggregates: List[Tuple[str, str, bool, str]],
    ) -> pd.DataFrame:
        keys: List[str] = []
        for token in split_top_level(self.parts.group or ""):
            norm = _normalize_expr(token)
            if token.isdigit() and 0 < int(token) <= len(plain):
                keys.append(plain[int(token) - 1])
            elif norm in self.aliases:
                keys.append(self.aliases[norm])
            elif token in frame.columns:
                keys.append(token)
            else:
                raise TranslationError(f"unsupported GROUP BY item: {token[:40]}")

        if not keys:
            row = {name: _aggregate(fn, distinct, arg, frame) for name, fn, distinct, arg in aggregates}
            return pd.DataFrame([row])

        rows = []
        for key, group in frame.groupby(keys, dropna=False, sort=False):
            row = dict(zip(keys, key if isinstance(key, tuple) else (key,)))
            for name, fn, distinct, arg in aggregates:
                row[name] = _aggregate(fn, distinct, arg, group)
            rows.append(row)
        return pd.DataFrame(rows, columns=keys + [a[0] for a in aggregates])

    def _empty_result(self) -> List[Dict[str, Any]]:
        if self.parts.group:
            return []
        row: Dict[str, Any] = {}
        for item in split_top_level(self.parts.projection):
            expr, alias = _split_alias(item)
            agg = _AGG.match(expr)
            if not agg:
                return []
            fn = agg.group("fn").lower()
            row[alias or ("total" if fn == "count" else f"{fn}_{agg.group('arg')}")] = 0 if fn == "count" else None
        return [row] if row else []


# ---------------------------
# Translator
# ---------------------------

class SqlTranslator:
    def __init__(self, backend: QueryBackend, default_limit: int = DEFAULT_LIMIT):
        self.backend = backend
        self.default_limit = default_limit

    def execute(self, statement: ValidatedStatement) -> TranslationResult:
        if not isinstance(statement, ValidatedStatement):
            raise TranslationError("statement has not been validated")
        sql = statement.text
        self._guard_tables(sql)
        started = time.perf_counter()

        parts = _parse_statement(sql)
        if _COMPLEX_MARKERS.search(sql) or parts is None or not self._is_simple_projection(parts):
            result = self._complex(statement, parts)
        else:
            try:
                if _BARE_COUNT.match(_split_alias(parts.projection)[0]):
                    result = self._count(parts)
                else:
                    result = self._structured(parts)
            except TranslationError as exc:
                if not self.backend.supports_raw_read:
                    raise
                log_event(logger, logging.INFO, "translator_structured_unsupported", reason=str(exc))
                result = TranslationResult("escape_hatch", parts.table, self.backend.execute_read(statement))

        result.elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        log_event(
            logger,
            logging.INFO,
            "sql_translated",
            strategy=result.strategy,
            table=result.table,
            rows=len(result.rows),
            elapsed_ms=result.elapsed_ms,
        )
        return result

    def _guard_tables(self, sql: str) -> None:
        tables = referenced_tables(sql)
        if not tables:
            raise TranslationError("statement names no table")
        for name in tables:
            low = name.lower()
            if "." in name or low in SYSTEM_CATALOGS or low.startswith("pg_"):
                log_event(logger, logging.WARNING, "translator_table_rejected", table=name)
                raise TranslationError(f"table not allowed: {name}")

    @staticmethod
    def _is_simple_projection(parts: _Parts) -> bool:
        if parts.group or parts.distinct:
            return False
        items = [_split_alias(i) for i in split_top_level(parts.projection)]
        if len(items) == 1 and _BARE_COUNT.match(items[0][0]):
            return True
        return all(expr == "*" or (_IDENT.match(expr) and alias is None) for expr, alias in items)

    @staticmethod
    def _filters(parts: _Parts) -> List[Filter]:
        return [parse_condition(c) for c in _split_and(parts.where)] if parts.where else []

    def _count(self, parts: _Parts) -> TranslationResult:
        filters = self._filters(parts)
        name = _split_alias(parts.projection)[1] or "total"
        return TranslationResult("count", parts.table, [{name: self.backend.count(parts.table, filters)}])

    def _structured(self, parts: _Parts) -> TranslationResult:
        filters = self._filters(parts)
        order = _parse_order(parts.order)
        columns = None
        if parts.projection.strip() != "*":
            columns = [_split_alias(i)[0] for i in split_top_level(parts.projection)]
        rows = self.backend.select(
            parts.table,
            filters=filters,
            columns=columns,
            order_by=order,
            limit=parts.limit if parts.limit is not None else self.default_limit,
            offset=parts.offset,
        )
        return TranslationResult("structured", parts.table, rows)

    def _complex(self, statement: ValidatedStatement, parts: Optional[_Parts]) -> TranslationResult:
        table = parts.table if parts else referenced_tables(statement.text)[0]
        if self.backend.supports_raw_read:
            try:
                return TranslationResult("escape_hatch", table, self.backend.execute_read(statement))
            except UnknownTableError:
                raise
            except QueryExecutionError as exc:
                log_event(logger, logging.WARNING, "escape_hatch_failed", table=table, error=str(exc)[:200])
        if parts is None:
            raise TranslationError("statement is too complex for the in-memory fallback")
        log_event(logger, logging.WARNING, "memory_scan_fallback", table=parts.table)
        rows = self.backend.fetch_all(parts.table)
        return TranslationResult("memory_scan", parts.table, _MemoryScan(parts, rows).run())
