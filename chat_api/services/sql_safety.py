"""
Read-only gate for generated SQL.

Every statement that reaches execution passes through ``validate_read_only``
and comes out wrapped in a ``ValidatedStatement``; the translator and the
store refuse plain strings.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from chat_api.services.runtime import log_event

logger = logging.getLogger("sql_safety")

BLOCKED_KEYWORDS = (
    "drop", "delete", "update", "insert", "alter", "truncate",
    "create", "grant", "revoke", "exec", "execute",
)

_LEADING_TOKEN = re.compile(r"\s*([A-Za-z_]+)")
_BLOCKED_RX = re.compile(r"\b(" + "|".join(BLOCKED_KEYWORDS) + r")\b", re.IGNORECASE)


class UnsafeSQLError(Exception):
    """Raised when a statement is not a plain read query."""

    def __init__(self, keyword: str, reason: str):
        super().__init__(f"unsafe sql rejected ({reason}: {keyword})")
        self.keyword = keyword
        self.reason = reason


@dataclass(frozen=True)
class ValidatedStatement:
    text: str

    def __str__(self) -> str:
        return self.text


def _reject(keyword: str, reason: str, sql: str) -> UnsafeSQLError:
    log_event(
        logger,
        logging.WARNING,
        "sql_security_rejected",
        keyword=keyword,
        reason=reason,
        sql_chars=len(sql or ""),
    )
    return UnsafeSQLError(keyword, reason)


def validate_read_only(sql: str) -> ValidatedStatement:
    text = (sql or "").strip()
    m = _LEADING_TOKEN.match(text)
    leading = m.group(1).lower() if m else ""
    if leading != "select":
        raise _reject(leading or "<empty>", "leading_keyword", text)

    blocked = _BLOCKED_RX.search(text)
    if blocked:
        raise _reject(blocked.group(1).lower(), "blocked_keyword", text)

    body = text.rstrip().rstrip(";").rstrip()
    if ";" in _strip_literals(body):
        raise _reject(";", "stacked_statements", text)
    return ValidatedStatement(body)


def _strip_literals(sql: str) -> str:
    return re.sub(r"'(?:''|[^'])*'", "''", sql)
