"""
Shared keyword/regex tables.

The fast path, the intent classifier, context memory and the coordinator
fallback all read from here so that a phrase means the same thing
everywhere. Order inside the tuples is significant: matchers walk them
first-match-wins.
"""
from __future__ import annotations

import re
from typing import Pattern, Tuple

_I = re.IGNORECASE


def _rx(pattern: str) -> Pattern[str]:
    return re.compile(pattern, _I)


# ---------------------------
# Table references
# ---------------------------

# "tabela orders", "table clients", "na tabela 'aug25'"
TABLE_REFERENCE = _rx(r"\b(?:tabelas?|tables?)\s+['\"`]?([A-Za-z_][\w.]*)")

# "quais tabelas existem?", "liste as tabelas", "what tables are there"
CANONICAL_LIST_TABLES = _rx(
    r"^\s*(?:quais|que|liste|lista|listar|mostre|mostra|ver|what|which|list|show)\s+"
    r"(?:s[ãa]o\s+|are\s+)?(?:as\s+|the\s+)?(?:tabelas|tables)"
    r"(?:\s+(?:existem|existentes|dispon[ií]veis|tem|h[áa]|temos|exist|are\s+there|do\s+you\s+have))?"
    r"\s*[?!.]*\s*$"
)

EXPLICIT_TABLE_MENTION = _rx(r"\b(?:tabela|table)\s+\w+\b")
TABLE_NAME_AFTER_KEYWORD = _rx(r"\b(?:tabela|table)\s+['\"`]?(\w+)")

# ---------------------------
# Context references
# ---------------------------

PRONOUN_PATTERNS: Tuple[Pattern[str], ...] = (
    _rx(r"\b(ela|ele|essa|este|esta|isso|aquela|aquele)\b"),
    _rx(r"\b(nela|nele|dela|dele|dessa|desse|desta|deste)\b"),
)

SAME_TABLE_PATTERNS: Tuple[Pattern[str], ...] = (
    _rx(r"\b(?:mesma|essa|esta|dessa|desta|nessa|nesta)\s+tabela\b"),
    _rx(r"\btabela\s+(?:atual|anterior)\b"),
    _rx(r"\b(?:same|this|that)\s+table\b"),
)

SAME_VALUE_PATTERN = _rx(r"\b(?:mesmo|esse|este|same)\s+(?:e-?mail|email)\b")

IMPLICIT_QUERY_VERB = _rx(r"^\s*(quantos|quantas|quais|liste|mostre|conte|how\s+many|list|show)\s+")

EMAIL = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")

# ---------------------------
# Multiple-choice options
# ---------------------------

LETTER_OPTION = re.compile(r"\(([A-Z])\)\s*([^(\n]+?)(?=\s*\([A-Z]\)|\n|$)")
NUMBER_OPTION = re.compile(r"(?:^|\s)(\d+)[.)]\s*([^0-9\n]+?)(?=\s\d+[.)]|\n|$)")
OPTION_TABLE = _rx(r"tabela\s+['\"`]?(\w+)")

CHOICE_PATTERNS: Tuple[Pattern[str], ...] = (
    _rx(r"^\s*\(?([A-Z]|\d{1,2})\)?[\s.!?]*$"),
    _rx(r"^\s*op[çc][ãa]o\s*\(?([A-Z]|\d{1,2})\)?[\s.!?]*$"),
    _rx(r"^\s*option\s*\(?([A-Z]|\d{1,2})\)?[\s.!?]*$"),
    _rx(r"^\s*escolho\s+(?:a\s+|o\s+)?\(?([A-Z]|\d{1,2})\)?[\s.!?]*$"),
    _rx(r"^\s*quero\s+(?:a\s+|o\s+)?\(?([A-Z]|\d{1,2})\)?[\s.!?]*$"),
)

ORDINAL_CHOICE = _rx(
    r"^\s*(?:a\s+|o\s+|the\s+)?(primeir[ao]|segund[ao]|terceir[ao]|quart[ao]|first|second|third|fourth)"
    r"(?:\s+op[çc][ãa]o|\s+option)?[\s.!?]*$"
)

ORDINAL_INDEX = {
    "primeira": 0, "primeiro": 0, "first": 0,
    "segunda": 1, "segundo": 1, "second": 1,
    "terceira": 2, "terceiro": 2, "third": 2,
    "quarta": 3, "quarto": 3, "fourth": 3,
}

# ---------------------------
# Coordinator heuristics
# ---------------------------

CONFIRMATION = _rx(r"^\s*(sim|yes|ok|okay|mostre|continue|vai|pode|quero|show\s+me)[\s!.]*$")

COUNT_INDICATORS = _rx(r"\b(quantos|quantas|quantidade|contar|conte|total|count|how\s+many)\b")
LIST_INDICATORS = _rx(r"\b(listar|liste|mostrar|mostre|trazer|traga|dados|informa[çc][õo]es|list|show)\b")
SEARCH_INDICATORS = _rx(r"\b(buscar|busque|procurar|procure|encontrar|encontre|localizar|verificar|find|search)\b")

# Table-name fragments that usually hold the entity an email refers to.
EMAIL_ENTITY_HINTS: Tuple[str, ...] = (
    "lead", "qualified", "engaged", "contact", "contato", "user", "usuario",
    "customer", "client", "cliente",
)

# ---------------------------
# Intent rules (order is the tie-break)
# ---------------------------

INTENT_RULES: Tuple[Tuple[str, Pattern[str], Tuple[str, ...]], ...] = (
    (
        "aggregation",
        _rx(
            r"\b(quantos?|quantas?|quanto|totai?s?|soma|m[ée]dia|contagem|count|somar|agregar|quantidade"
            r"|total\s+de|n[úu]mero\s+de|percentual|porcentagem)\b"
        ),
        ("quantos", "quanto", "total", "soma", "média", "contagem", "count"),
    ),
    (
        "trend",
        _rx(
            r"\b(evolu[çc][ãa]o|hist[óo]rico|ao\s+longo|crescimento|tend[êe]ncia|varia[çc][ãa]o|por\s+m[êe]s"
            r"|por\s+dia|por\s+semana|por\s+ano|mensal|di[áa]rio|semanal|anual|timeline|per[íi]odo"
            r"|[úu]ltimos?\s+\d+\s+(?:dias?|meses?|semanas?|anos?))\b"
        ),
        ("evolução", "histórico", "tendência", "por mês", "por dia", "crescimento"),
    ),
    (
        "comparison",
        _rx(
            r"\b(compare?|comparar|versus|vs\.?|diferen[çc]a\s+entre|entre\s+.*\s+e\s+|ranking|rank"
            r"|top\s+\d+|melhores?|piores?|maior\s+e\s+menor)\b"
        ),
        ("compare", "versus", "vs", "diferença entre", "ranking", "top"),
    ),
    (
        "filter",
        _rx(
            r"\b(onde|filtr\w*|apenas|s[óo]|somente|maior\s+que|menor\s+que|acima\s+de|abaixo\s+de"
            r"|entre\s+\d+|igual\s+a|diferente\s+de|com\s+status|que\s+tem|que\s+n[ãa]o|exceto|sem|com"
            r"|status\s*=)\b"
        ),
        ("onde", "filtrar", "apenas", "maior que", "menor que", "status"),
    ),
    (
        "exploratory",
        _rx(
            r"\b(o\s+que|quais?\s+(?:s[ãa]o|existem|tem|h[áa])|explore|analise|mostre?\s+tudo|estrutura"
            r"|descreva?|explique|colunas?\s+de|campos?\s+de|esquema|overview|vis[ãa]o\s+geral)\b"
        ),
        ("o que", "quais são", "explore", "estrutura", "descreva"),
    ),
)

TREND_INDICATORS = _rx(
    r"\b(por\s+(?:m[êe]s|dia|semana|ano)|mensal|di[áa]rio|[úu]ltimos?\s+\d+|ao\s+longo|crescimento|varia[çc][ãa]o)\b"
)
AGGREGATION_INDICATORS = _rx(
    r"\b(quantos?|quanto|total|soma|m[ée]dia|count|contagem|n[úu]mero\s+de|quantidade)\b"
)
COMPARISON_INDICATORS = _rx(r"\b(compare|versus|vs|entre\s+.*\s+e\s+|ranking|top\s+\d+|melhores?|piores?)\b")

# ---------------------------
# Fast path
# ---------------------------

GREETING = _rx(r"^(oi|ol[áa]|hello|hi|hey|e\s*a[íi]|eai|bom\s+dia|boa\s+(?:tarde|noite))[\s!?.]*$")
THANKS = _rx(r"^(obrigad[oa]|valeu|thanks?|thank\s*you|vlw|tmj)[\s!?.]*$")
FAREWELL = _rx(r"^(tchau|adeus|bye|at[ée]\s*(?:mais|logo)?|flw|falou)[\s!?.]*$")
HELP = _rx(r"^(ajuda|help|socorro|como\s+(?:eu\s+)?uso)[\s!?.]*$")
CAPABILITIES = _rx(
    r"\b(o\s*que\s*(?:voc[êe]|vc)\s*(?:pode|consegue|sabe)(?:\s+fazer)?|quais?\s*(?:s[ãa]o\s*)?(?:as\s+)?suas?\s*"
    r"(?:capacidades|funcionalidades|recursos)|como\s*(?:voc[êe]|vc)\s*funciona|what\s+can\s+you\s+do)\b"
)
JOIN_CAPABILITY = _rx(r"\b(consegue|pode|sabe|faz|suporta)\b.*\b(join|juntar|unir|relacionar)\b")
WHO_ARE_YOU = _rx(r"\b(quem\s+(?:[ée]\s+)?(?:voc[êe]|vc)|who\s+are\s+you)\b")
