"""Deterministic rendering helpers (pt-BR numbers, markdown tables, summaries)."""
from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from chat_api.services.intent_classifier import (
    has_aggregation_indicators,
    has_comparison_indicators,
    has_trend_indicators,
)

MAX_TABLE_ROWS = 20
MAX_CELL_CHARS = 50
MAX_REPLY_CHARS = 800
MAX_EMOJI = 3

# Pictographs, dingbats and symbol blocks commonly used as emoji.
_EMOJI = re.compile(
    "[\U0001F300-\U0001FAFF\U00002600-\U000027BF\U0001F000-\U0001F2FF\U00002B00-\U00002BFF]\uFE0F?"
)


def format_number(value: Any) -> str:
    """pt-BR formatting: ``1234567`` -> ``1.234.567``, ``1234.5`` -> ``1.234,5``."""
    if isinstance(value, bool):
        return "sim" if value else "não"
    if isinstance(value, Decimal):
        value = float(value)
    if isinstance(value, int):
        return f"{value:,}".replace(",", ".")
    if isinstance(value, float):
        if value.is_integer():
            return format_number(int(value))
        text = f"{value:,.2f}".rstrip("0").rstrip(".")
        return text.replace(",", "_").replace(".", ",").replace("_", ".")
    return str(value)


def humanize_header(column: str) -> str:
    return " ".join(part[:1].upper() + part[1:] for part in str(column).split("_") if part)


def format_cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return format_number(value)
    if isinstance(value, datetime):
        return value.strftime("%d/%m/%Y %H:%M")
    if isinstance(value, date):
        return value.strftime("%d/%m/%Y")
    text = str(value).replace("|", "\\|").replace("\n", " ")
    if len(text) > MAX_CELL_CHARS:
        text = text[:MAX_CELL_CHARS - 3] + "..."
    return text


def markdown_table(rows: Sequence[Dict[str, Any]], max_rows: int = MAX_TABLE_ROWS) -> str:
    if not rows:
        return ""
    columns = list(rows[0].keys())
    header = "| " + " | ".join(humanize_header(c) for c in columns) + " |"
    sep = "| " + " | ".join("---" for _ in columns) + " |"
    body = [
        "| " + " | ".join(format_cell(row.get(c)) for c in columns) + " |"
        for row in rows[:max_rows]
    ]
    out = "\n".join([header, sep] + body)
    if len(rows) > max_rows:
        out += f"\n\n_Mostrando {max_rows} de {format_number(len(rows))} linhas._"
    return out


def _total_column(columns: Sequence[str]) -> Optional[str]:
    for col in columns:
        low = col.lower()
        if "total" in low or "count" in low or "quantidade" in low:
            return col
    return None


def smart_summary(rows: Sequence[Dict[str, Any]], question: str) -> str:
    count = len(rows)
    columns = list(rows[0].keys()) if rows else []
    q = (question or "").lower()

    if "agrupar" in q or "group" in q or "distribui" in q:
        operation = "agrupamento"
    elif "últim" in q or "ultim" in q or "recente" in q:
        operation = "listagem"
    elif "filtr" in q or "buscar" in q:
        operation = "filtro"
    else:
        operation = "consulta"

    total_col = _total_column(columns)
    total = 0
    if total_col:
        for row in rows:
            val = row.get(total_col)
            if isinstance(val, (int, float, Decimal)) and not isinstance(val, bool):
                total += val

    noun = "linha" if count == 1 else "linhas"
    summary = f"📊 **Encontrei {format_number(count)} {noun} de dados.**\n\n"
    if operation == "agrupamento" and total:
        summary += (
            f"Agrupei os dados em **{format_number(count)} categorias** "
            f"totalizando **{format_number(total)} registros**.\n\n"
        )
    elif operation == "listagem":
        summary += f"Aqui estão os **{format_number(count)} registros** mais recentes.\n\n"
    elif operation == "filtro":
        summary += f"Filtrei os dados e encontrei **{format_number(count)} resultados**.\n\n"
    else:
        label = "resultado" if count == 1 else "resultados"
        summary += f"A consulta retornou **{format_number(count)} {label}**.\n\n"

    shown = ", ".join(f"**{humanize_header(c)}**" for c in columns[:5])
    extra = f" e mais {len(columns) - 5}" if len(columns) > 5 else ""
    return summary + f"Colunas: {shown}{extra}"


def limit_emoji(text: str, max_emoji: int = MAX_EMOJI) -> str:
    seen = 0

    def _keep(m: "re.Match[str]") -> str:
        nonlocal seen
        seen += 1
        return m.group(0) if seen <= max_emoji else ""

    return _EMOJI.sub(_keep, text)


def clamp_reply(text: str, max_chars: int = MAX_REPLY_CHARS) -> str:
    text = limit_emoji((text or "").strip())
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    space = cut.rfind(" ")
    if space > max_chars * 0.6:
        cut = cut[:space]
    return cut.rstrip() + "..."


def follow_up_suggestions(question: str, table: Optional[str], row_count: int) -> List[str]:
    """Rule-based follow-ups keyed on the shape of the question (≤3)."""
    name = table or "dados"
    q = (question or "").lower()
    out: List[str] = []
    if "quant" in q or "total" in q or "count" in q:
        out += [f"Quais são os últimos 10 registros de {name}?", "Como esses dados se distribuem por categoria?"]
    elif "lista" in q or "mostr" in q or "exib" in q:
        out += [f"Qual o total de registros em {name}?", "Existe algum padrão nesses dados?"]
    elif "filtr" in q or "busc" in q or "onde" in q:
        out += ["Quantos registros correspondem a esse filtro?", "Quais os mais recentes com esse critério?"]
    elif has_aggregation_indicators(q):
        out += ["Como esse valor se compara aos últimos meses?", "Quais registros contribuem mais para esse resultado?"]
    elif row_count > 10:
        out += ["Quais são os top 5 dessa análise?", "Posso ver um resumo agrupado desses dados?"]
    else:
        out += [f"Existem mais dados relacionados em {name}?", "Qual a tendência desses dados ao longo do tempo?"]

    if not has_trend_indicators(q) and table:
        out.append(f"Como os registros de {name} evoluem por mês?")
    elif not has_comparison_indicators(q) and table:
        out.append(f"Quais são os top 10 de {name}?")
    return out[:3]
