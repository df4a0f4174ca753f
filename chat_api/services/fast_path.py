"""Canned replies for purely conversational input (no LLM, no store access)."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Pattern, Sequence, Tuple

from chat_api.services import patterns
from chat_api.services.formatting import format_number
from chat_api.services.models import TableSummary
from chat_api.services.runtime import log_event

logger = logging.getLogger("fast_path")

FAST_PATH_MAX_CHARS = max(10, int(os.getenv("FAST_PATH_MAX_CHARS", "60")))
MAX_SUGGESTIONS = 3


@dataclass
class QuickResponse:
    name: str
    content: str
    suggestions: List[str] = field(default_factory=list)
    confidence: int = 100


_GREETING = (
    "👋 **Olá!** Sou seu assistente de dados.\n\n"
    "Posso ajudar você a:\n"
    "- Consultar dados das tabelas\n"
    "- Filtrar e buscar informações\n"
    "- Contar e agregar registros\n\n"
    "**Como posso ajudar você hoje?**"
)
_CAPABILITIES = (
    "🤖 **Minhas capacidades:**\n\n"
    "- Consultar dados (SELECT)\n"
    "- Filtrar e buscar registros\n"
    "- Agrupar e agregar (COUNT, SUM, AVG)\n"
    "- Ordenar e limitar resultados\n\n"
    "⛔ **Não posso** modificar ou apagar dados.\n\n"
    "Experimente: \"Quantos clientes temos?\" ou \"Quais são os últimos 5 pedidos?\""
)
_JOIN = (
    "✅ **Sim, consigo relacionar tabelas.**\n\n"
    "Por exemplo:\n"
    "- \"Mostre pedidos com dados dos clientes\"\n"
    "- \"Liste produtos e suas categorias\"\n\n"
    "Basta dizer quais tabelas você quer relacionar."
)
_THANKS = "😊 **De nada!** Se precisar de mais alguma coisa, é só perguntar."
_FAREWELL = "👋 **Até mais!** Volte sempre que precisar consultar seus dados."
_HELP = (
    "❓ **Como usar:**\n\n"
    "1. Digite sua pergunta em português\n"
    "2. Eu transformo a pergunta em uma consulta segura\n"
    "3. Os resultados aparecem formatados\n\n"
    "Exemplos: \"Quantos registros tem na tabela X?\", \"Mostre os últimos 10 pedidos\"."
)
_WHO = (
    "🤖 **Sou um assistente de dados.**\n\n"
    "Entendo sua pergunta, monto uma consulta somente leitura, "
    "analiso o resultado e respondo em linguagem natural."
)


def _list_tables_content(tables: Sequence[TableSummary]) -> str:
    if not tables:
        return "📋 Ainda não encontrei tabelas disponíveis. Verifique a conexão com o banco de dados."
    lines = []
    for idx, table in enumerate(tables[:10], start=1):
        if table.row_count is None:
            lines.append(f"{idx}. **{table.name}**")
        else:
            lines.append(f"{idx}. **{table.name}** ({format_number(table.row_count)} registros)")
    more = f"\n\n...e mais {len(tables) - 10} tabelas" if len(tables) > 10 else ""
    return f"📊 **Tabelas disponíveis ({len(tables)}):**\n\n" + "\n".join(lines) + more + "\n\nQual tabela você quer consultar?"


_Builder = Callable[[Sequence[TableSummary]], str]

# name, pattern, content builder, suggestions
_RULES: Tuple[Tuple[str, Pattern[str], _Builder, Tuple[str, ...]], ...] = (
    ("greeting", patterns.GREETING, lambda _t: _GREETING,
     ("Quais tabelas existem?", "O que você pode fazer?", "Quantos registros tem no banco?")),
    ("list_tables", patterns.CANONICAL_LIST_TABLES, _list_tables_content,
     ("Quantos registros tem na maior tabela?", "Mostre os últimos 10 registros", "O que você pode fazer?")),
    ("join_capability", patterns.JOIN_CAPABILITY, lambda _t: _JOIN,
     ("Quais tabelas existem?", "Mostre os últimos 10 registros")),
    ("capabilities", patterns.CAPABILITIES, lambda _t: _CAPABILITIES,
     ("Quais tabelas existem?", "Mostre os últimos 10 registros", "Quantos registros tem na maior tabela?")),
    ("thanks", patterns.THANKS, lambda _t: _THANKS,
     ("Mostre mais dados", "Quais tabelas existem?")),
    ("farewell", patterns.FAREWELL, lambda _t: _FAREWELL, ()),
    ("help", patterns.HELP, lambda _t: _HELP,
     ("Quais tabelas existem?", "O que você pode fazer?", "Mostre os últimos registros")),
    ("who_are_you", patterns.WHO_ARE_YOU, lambda _t: _WHO,
     ("O que você pode fazer?", "Quais tabelas existem?")),
)


def names_a_table(text: str, tables: Sequence[TableSummary] = ()) -> bool:
    """True when ``text`` points at a specific table (by phrase or by name)."""
    if patterns.CANONICAL_LIST_TABLES.search(text):
        return False
    if patterns.TABLE_REFERENCE.search(text):
        return True
    low = text.lower()
    for table in tables:
        name = table.name.lower()
        if name and re.search(rf"\b{re.escape(name)}\b", low):
            return True
    return False


def try_quick_response(message: str, tables: Sequence[TableSummary] = ()) -> Optional[QuickResponse]:
    """Return a canned reply or ``None``.

    Only short messages that do not name a table qualify; a false positive
    here would swallow a real data question.
    """
    text = (message or "").strip()
    if not text or len(text) > FAST_PATH_MAX_CHARS:
        return None
    if names_a_table(text, tables):
        return None

    for name, pattern, build, suggestions in _RULES:
        if pattern.search(text):
            log_event(logger, logging.INFO, "fast_path_hit", rule=name, message_chars=len(text))
            return QuickResponse(
                name=name,
                content=build(tables),
                suggestions=list(suggestions[:MAX_SUGGESTIONS]),
            )
    return None
