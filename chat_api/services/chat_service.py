"""
One chat turn end to end:
fast path -> option choice -> reference resolution -> orchestrator -> memory/session bookkeeping.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from chat_api.services import patterns
from chat_api.services.context_memory import ContextMemoryStore
from chat_api.services.fast_path import try_quick_response
from chat_api.services.models import ChatResponse, QueryIntent, TableSummary
from chat_api.services.orchestrator import Orchestrator
from chat_api.services.runtime import log_event, set_session_id
from chat_api.services.schema_cache import SchemaCache
from chat_api.services.session import Message, MessageMetadata, Session, SessionStore
from datastore.db_utils import SQLStore

logger = logging.getLogger("chat_service")


class ChatService:
    def __init__(
        self,
        store: SQLStore,
        schema_cache: SchemaCache,
        contexts: ContextMemoryStore,
        sessions: SessionStore,
        orchestrator: Orchestrator,
    ):
        self.store = store
        self.schema_cache = schema_cache
        self.contexts = contexts
        self.sessions = sessions
        self.orchestrator = orchestrator

    def table_inventory(self, with_counts: bool = False) -> List[TableSummary]:
        """Usable tables; row counts come from the schema cache (introspected only when asked)."""
        out: List[TableSummary] = []
        for name in self.store.list_tables():
            entry = self.schema_cache.get(name) if with_counts else self.schema_cache.peek(name)
            out.append(TableSummary(name, entry.row_count_hint if entry else None))
        return out

    def handle_message(
        self,
        message: str,
        session_id: Optional[str] = None,
        current_table: Optional[str] = None,
    ) -> Tuple[str, ChatResponse]:
        session = self.sessions.create_or_get(session_id)
        set_session_id(session.id)
        raw = (message or "").strip()

        if current_table:
            resolved_table = self.store.resolve_table_name(current_table)
            if resolved_table:
                self.contexts.set_current_table(session.id, resolved_table)
            else:
                log_event(logger, logging.WARNING, "current_table_unknown", table=current_table)

        tables = self.table_inventory()

        quick = try_quick_response(raw, tables)
        if quick is not None:
            response = ChatResponse(
                content=quick.content,
                confidence=quick.confidence,
                suggestions=list(quick.suggestions),
                intent=QueryIntent.CONVERSATIONAL.value,
                provider_used="fast_path",
                latency_ms=0,
            )
            log_event(logger, logging.INFO, "fast_path_hit", rule=quick.name)
            self._remember(session.id, raw, response)
            return session.id, response

        effective = raw
        # a bare confirmation replays the previous request untouched
        replaying = bool(patterns.CONFIRMATION.match(raw)) and self.contexts.last_intent(session.id) is not None
        if not replaying:
            choice = self.contexts.resolve_option_choice(session.id, raw)
            if choice.is_choice:
                effective = choice.message
            effective = self.contexts.resolve_references(
                session.id, effective, [t.name for t in tables]
            ).resolved

        outcome = self.orchestrator.run(
            effective,
            tables=tables,
            context=self.contexts.get(session.id),
        )
        response = outcome.response

        if not replaying and not outcome.intent.requires_clarification and not outcome.intent.skip_query:
            self.contexts.record_turn(session.id, effective, outcome.intent)
        if response.table_used:
            self.contexts.set_current_table(session.id, response.table_used)
        self.contexts.set_offered_options(session.id, response.content)

        self._remember(session.id, raw, response)
        return session.id, response

    def _remember(self, session_id: str, user_text: str, response: ChatResponse) -> None:
        self.sessions.append(session_id, Message(role="user", content=user_text))
        self.sessions.append(
            session_id,
            Message(
                role="assistant",
                content=response.content,
                metadata=MessageMetadata(
                    sql_used=response.sql_used,
                    table_used=response.table_used,
                    confidence=response.confidence,
                    latency_ms=response.latency_ms,
                ),
            ),
        )

    # --- session surface ---

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        return self.sessions.delete(session_id)

    def stats(self) -> Dict[str, Any]:
        out = self.sessions.stats()
        out["contexts"] = len(self.contexts)
        out["tables"] = len(self.store.list_tables())
        return out
