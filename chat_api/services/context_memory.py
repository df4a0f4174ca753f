"""
Per-session conversational memory.

Holds what the previous turns were about (table, email, operation), the last
few classified turns and any multiple-choice options the assistant offered,
and rewrites ambiguous follow-ups ("quantos tem na mesma tabela?") into
self-contained requests before they reach the orchestrator.
"""
from __future__ import annotations

import logging
import os
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Sequence

from chat_api.services import patterns
from chat_api.services.models import IntentResult
from chat_api.services.runtime import log_event

logger = logging.getLogger("context_memory")

MAX_RECENT_TURNS = 5
MAX_RECENT_TABLES = 5
CONTEXT_TTL_S = max(60.0, float(os.getenv("CONTEXT_TTL_MINUTES", "30")) * 60.0)


@dataclass
class PendingOption:
    key: str
    description: str
    related_table: Optional[str] = None


@dataclass
class TurnRecord:
    message:   str
    intent:    IntentResult
    timestamp: float = field(default_factory=time.time)


@dataclass
class ConversationContext:
    last_table:           Optional[str]        = None
    last_reference_value: Optional[str]        = None
    last_operation:       Optional[str]        = None
    recent_turns:         Deque[TurnRecord]    = field(default_factory=lambda: deque(maxlen=MAX_RECENT_TURNS))
    recent_tables:        List[str]            = field(default_factory=list)
    pending_options:      List[PendingOption]  = field(default_factory=list)
    updated_at:           float                = field(default_factory=time.time)

    def summary(self) -> str:
        """Compact context block for LLM prompts."""
        lines = []
        if self.last_reference_value:
            lines.append(f"- Último email consultado: {self.last_reference_value}")
        if self.last_table:
            lines.append(f"- Última tabela consultada: {self.last_table}")
        if self.last_operation:
            lines.append(f"- Última operação: {self.last_operation}")
        for idx, turn in enumerate(list(self.recent_turns)[:3], start=1):
            tables = ", ".join(turn.intent.tables_needed) or "N/A"
            lines.append(f"{idx}. \"{turn.message}\" (tabelas: {tables}; categoria: {turn.intent.category.value})")
        return "\n".join(lines) if lines else "Sem contexto anterior."


@dataclass
class ReferenceResolution:
    original: str
    resolved: str
    context_used: bool = False


@dataclass
class OptionResolution:
    is_choice: bool
    message: str
    option: Optional[PendingOption] = None


def extract_options(text: str) -> List[PendingOption]:
    """Pull ``(A) ...`` or ``1. ...`` options out of an assistant message."""
    found: Dict[str, PendingOption] = {}
    for m in patterns.LETTER_OPTION.finditer(text or ""):
        key, desc = m.group(1).upper(), m.group(2).strip(" \t-:;,.")
        if key not in found and desc:
            found[key] = PendingOption(key, desc, _option_table(desc))
    if not found:
        for m in patterns.NUMBER_OPTION.finditer(text or ""):
            key, desc = m.group(1), m.group(2).strip(" \t-:;,.")
            if key not in found and desc:
                found[key] = PendingOption(key, desc, _option_table(desc))
    return list(found.values())


def _option_table(description: str) -> Optional[str]:
    m = patterns.OPTION_TABLE.search(description)
    return m.group(1) if m else None


def _names_any(text: str, names: Sequence[str]) -> bool:
    low = text.lower()
    return any(name and re.search(rf"\b{re.escape(name.lower())}\b", low) for name in names)


class ContextMemoryStore:
    """Thread-safe map of session id -> ``ConversationContext``."""

    def __init__(self, ttl_s: float = CONTEXT_TTL_S, clock: Callable[[], float] = time.time):
        self.ttl_s = ttl_s
        self._clock = clock
        self._contexts: Dict[str, ConversationContext] = {}
        self._lock = threading.RLock()

    # --- lifecycle ---

    def get(self, session_id: str) -> Optional[ConversationContext]:
        with self._lock:
            return self._contexts.get(session_id)

    def get_or_create(self, session_id: str) -> ConversationContext:
        with self._lock:
            ctx = self._contexts.get(session_id)
            if ctx is None:
                ctx = ConversationContext(updated_at=self._clock())
                self._contexts[session_id] = ctx
            return ctx

    def clear(self, session_id: str) -> None:
        with self._lock:
            self._contexts.pop(session_id, None)

    def sweep_expired(self) -> int:
        cutoff = self._clock() - self.ttl_s
        with self._lock:
            expired = [sid for sid, ctx in self._contexts.items() if ctx.updated_at < cutoff]
            for sid in expired:
                del self._contexts[sid]
        if expired:
            log_event(logger, logging.INFO, "context_sweep", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    # --- mutation ---

    def record_turn(self, session_id: str, message: str, intent: IntentResult) -> None:
        with self._lock:
            ctx = self.get_or_create(session_id)
            ctx.recent_turns.appendleft(TurnRecord(message=message, intent=intent, timestamp=self._clock()))
            if intent.tables_needed:
                self._touch_table(ctx, intent.tables_needed[0])
            if intent.operations:
                ctx.last_operation = intent.operations[0]
            email = patterns.EMAIL.search(message or "")
            if email:
                ctx.last_reference_value = email.group(0)
            ctx.updated_at = self._clock()

    def set_current_table(self, session_id: str, table: str) -> None:
        with self._lock:
            ctx = self.get_or_create(session_id)
            self._touch_table(ctx, table)
            ctx.updated_at = self._clock()

    def set_offered_options(self, session_id: str, assistant_message: str) -> List[PendingOption]:
        options = extract_options(assistant_message)
        with self._lock:
            ctx = self.get_or_create(session_id)
            ctx.pending_options = options
            ctx.updated_at = self._clock()
        if options:
            log_event(logger, logging.INFO, "options_offered", count=len(options))
        return options

    def last_intent(self, session_id: str) -> Optional[IntentResult]:
        with self._lock:
            ctx = self._contexts.get(session_id)
            if ctx is None or not ctx.recent_turns:
                return None
            return ctx.recent_turns[0].intent

    @staticmethod
    def _touch_table(ctx: ConversationContext, table: str) -> None:
        ctx.last_table = table
        if table in ctx.recent_tables:
            ctx.recent_tables.remove(table)
        ctx.recent_tables.insert(0, table)
        del ctx.recent_tables[MAX_RECENT_TABLES:]

    # --- resolution ---

    def resolve_option_choice(self, session_id: str, message: str) -> OptionResolution:
        text = (message or "").strip()
        with self._lock:
            ctx = self._contexts.get(session_id)
            if ctx is None or not ctx.pending_options:
                return OptionResolution(False, message)
            chosen = self._match_choice(ctx.pending_options, text)
            if chosen is None:
                return OptionResolution(False, message)
            ctx.pending_options = []
            if chosen.related_table:
                self._touch_table(ctx, chosen.related_table)
            ctx.updated_at = self._clock()
        log_event(logger, logging.INFO, "option_choice_resolved", key=chosen.key, table=chosen.related_table)
        return OptionResolution(True, chosen.description, chosen)

    @staticmethod
    def _match_choice(options: List[PendingOption], text: str) -> Optional[PendingOption]:
        by_key = {opt.key.upper(): opt for opt in options}
        for pattern in patterns.CHOICE_PATTERNS:
            m = pattern.match(text)
            if m:
                return by_key.get(m.group(1).upper())
        m = patterns.ORDINAL_CHOICE.match(text)
        if m:
            idx = patterns.ORDINAL_INDEX.get(m.group(1).lower())
            if idx is not None and idx < len(options):
                return options[idx]
        return None

    def resolve_references(
        self, session_id: str, message: str, table_names: Sequence[str] = ()
    ) -> ReferenceResolution:
        """Fill in the table or value a follow-up leaves implicit.

        Messages that already name a table from ``table_names`` keep their own target.
        """
        original = message or ""
        with self._lock:
            ctx = self._contexts.get(session_id)
            table = ctx.last_table if ctx else None
            value = ctx.last_reference_value if ctx else None
        if not table and not value:
            return ReferenceResolution(original, original)

        resolved = original
        used = False

        if value and patterns.SAME_VALUE_PATTERN.search(resolved):
            resolved = patterns.SAME_VALUE_PATTERN.sub(f"email {value}", resolved)
            used = True

        if table:
            for pattern in patterns.SAME_TABLE_PATTERNS:
                if pattern.search(resolved):
                    resolved = pattern.sub(f"tabela {table}", resolved)
                    used = True

            mentions_table = bool(patterns.EXPLICIT_TABLE_MENTION.search(resolved)) or _names_any(
                resolved, [table, *table_names]
            )
            if not mentions_table:
                if any(p.search(resolved) for p in patterns.PRONOUN_PATTERNS):
                    resolved = f'{resolved} (contexto: tabela "{table}")'
                    used = True
                elif patterns.IMPLICIT_QUERY_VERB.search(resolved):
                    resolved = f"{resolved.rstrip(' ?!.')} da tabela {table}"
                    used = True

        if used:
            log_event(logger, logging.INFO, "references_resolved", table=table, changed=resolved != original)
        return ReferenceResolution(original, resolved, used)
