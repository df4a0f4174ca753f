"""
Five-stage question pipeline: Coordinator -> Schema -> Query -> Analyst -> Formatter.

Every LLM stage goes through ``ProviderChain`` (primary, then secondary, at
most once each) and ends in a deterministic fallback, so a turn always yields
a response. Generated SQL reaches the translator only as a
``ValidatedStatement``; a rejected statement is never echoed back.
"""
from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import asdict, dataclass, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from chat_api.services import patterns, settings
from chat_api.services.context_memory import ConversationContext
from chat_api.services.formatting import (
    clamp_reply,
    follow_up_suggestions,
    format_cell,
    format_number,
    markdown_table,
    smart_summary,
)
from chat_api.services.intent_classifier import classify_intent
from chat_api.services.json_extract import extract_json
from chat_api.services.llm_providers import CallBounds, ProviderChain
from chat_api.services.models import (
    AnalysisResult,
    ChatResponse,
    Insight,
    IntentResult,
    QueryIntent,
    QueryStageResult,
    SqlStrategy,
    StatementKind,
    TableSummary,
)
from chat_api.services.runtime import log_event
from chat_api.services.schema_cache import SchemaCache, SchemaCacheEntry
from chat_api.services.sql_safety import UnsafeSQLError, validate_read_only
from chat_api.services.sql_translator import (
    SqlTranslator,
    TranslationError,
    TranslationResult,
    infer_statement_kind,
)
from datastore.db_utils import QueryExecutionError, QueryTimeoutError

logger = logging.getLogger("orchestrator")

COORDINATOR_BOUNDS = CallBounds(max_tokens=500, temperature=0.1, timeout_s=settings.COORDINATOR_TIMEOUT_S)
QUERY_BOUNDS = CallBounds(max_tokens=800, temperature=0.1, timeout_s=settings.QUERY_TIMEOUT_S)
ANALYST_BOUNDS = CallBounds(max_tokens=500, temperature=0.3, timeout_s=settings.ANALYST_TIMEOUT_S)
FORMATTER_BOUNDS = CallBounds(max_tokens=600, temperature=0.7, timeout_s=settings.FORMATTER_TIMEOUT_S)

FALLBACK_CONFIDENCE = 70
LAST_RESORT_CONFIDENCE = 30
MAX_INSIGHTS = 3
MAX_RESPONSE_ROWS = 100
MAX_CLARIFICATION_OPTIONS = 4
ANALYST_SAMPLE_ROWS = 20

LEGACY_CATEGORIES = {
    "count": QueryIntent.AGGREGATION,
    "aggregate": QueryIntent.AGGREGATION,
    "list": QueryIntent.RETRIEVAL,
    "join": QueryIntent.RETRIEVAL,
    "complex_analysis": QueryIntent.EXPLORATORY,
}

DEFAULT_DIRECT_ANSWER = (
    "💬 Posso consultar e resumir os dados das suas tabelas. "
    "Pergunte, por exemplo, quantos registros existem em uma tabela."
)

# ---------------------------
# Prompt constants
# ---------------------------

COORDINATOR_PROMPT = """Você é o Agente Coordenador de um sistema de análise de dados.

TABELAS DISPONÍVEIS:
{tables}

CONTEXTO DA CONVERSA:
{context}

INSTRUÇÕES:
1. Pergunta conversacional ("você consegue?", "olá") -> category "conversational", skip_query true e direct_answer preenchido
2. Contagens -> category "aggregation" e operations ["count"]
3. Busca por valor específico (email, id) -> category "filter" e operations ["filter"]
4. Agrupar / distribuição -> category "aggregation" e operations ["group_by"]
5. Use SOMENTE nomes de tabelas da lista acima em tables_needed

RESPONDA APENAS EM JSON VÁLIDO (sem markdown):
{{
  "category": "retrieval|aggregation|filter|trend|comparison|exploratory|conversational",
  "tables_needed": ["tabela1"],
  "operations": ["count", "filter", "group_by", "list"],
  "explanation": "o que será feito",
  "confidence": 0.9,
  "skip_query": false,
  "direct_answer": null
}}

SOLICITAÇÃO DO USUÁRIO: "{question}"
"""

QUERY_PROMPT = """Você é o Agente SQL. Construa UMA consulta SELECT somente leitura.

SCHEMAS DISPONÍVEIS:
{schemas}

CONTEXTO DA CONVERSA:
{context}

INTENÇÃO ANALISADA:
{intent}

REGRAS:
- exatamente um SELECT, sem ponto e vírgula
- use apenas tabelas e colunas dos schemas acima
- "quantidade distinta" / "únicos" -> COUNT(DISTINCT coluna)
- "últimos registros" -> ORDER BY coluna_de_data DESC LIMIT N
- listagens sem limite explícito -> LIMIT 100
- agrupamentos -> GROUP BY com COUNT(*) ou SUM/AVG

RESPONDA APENAS EM JSON VÁLIDO:
{{
  "sql_query": "SELECT ...",
  "query_type": "count_distinct|simple_count|list|aggregation|complex",
  "explanation": "...",
  "expected_result": "..."
}}

PERGUNTA: "{question}"
"""

ANALYST_PROMPT = """Você é o Agente Analyst. Extraia insights APENAS dos dados fornecidos.

DADOS:
{rows}

PERGUNTA ORIGINAL: "{question}"

REGRAS ESTRITAS:
1. Nada de suposições além dos dados
2. Apenas métricas quantificáveis
3. Máximo de 3 insights

RESPONDA EM JSON:
{{
  "insights": [
    {{"metric": "nome", "value": "valor", "comparison": "comparação", "significance": "alta|media|baixa"}}
  ],
  "summary": "resumo técnico (máximo 100 caracteres)"
}}
"""

FORMATTER_PROMPT = """Você é o Agente Formatter de um chat web.

RESULTADO DA CONSULTA:
{result}

ANÁLISE:
{analysis}

PERGUNTA ORIGINAL: "{question}"

DIRETRIZES:
- direto e objetivo (máximo 800 caracteres)
- no máximo 3 emojis
- destaque números com **negrito** e cite o número exato do resultado
- Markdown simples

RESPONDA APENAS O TEXTO FORMATADO (sem JSON):
"""


@dataclass
class TurnOutcome:
    response: ChatResponse
    intent: IntentResult
    strategy: Optional[SqlStrategy] = None
    result: Optional[TranslationResult] = None


# ---------------------------
# Helpers
# ---------------------------

def _inventory_block(tables: Sequence[TableSummary]) -> str:
    if not tables:
        return "(nenhuma tabela disponível)"
    lines = []
    for t in tables:
        count = f"{format_number(t.row_count)} registros" if t.row_count is not None else "tamanho desconhecido"
        lines.append(f"- {t.name} ({count})")
    return "\n".join(lines)


def _known_tables(names: Any, tables: Sequence[TableSummary]) -> List[str]:
    by_lower = {t.name.lower(): t.name for t in tables}
    out: List[str] = []
    for raw in names if isinstance(names, list) else []:
        name = by_lower.get(str(raw).strip().strip("\"`").lower())
        if name and name not in out:
            out.append(name)
    return out


def _confidence(value: Any, default: int = 60) -> int:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return default
    if num <= 1.0:
        num *= 100
    return int(max(0, min(100, round(num))))


def _category(data: Dict[str, Any]) -> Optional[QueryIntent]:
    raw = str(data.get("category") or data.get("analysis_type") or "").strip().lower()
    try:
        return QueryIntent(raw)
    except ValueError:
        return LEGACY_CATEGORIES.get(raw)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _result_count(result: TranslationResult) -> Any:
    if result.is_scalar and _is_number(result.scalar):
        return result.scalar
    return len(result.rows)


def _mentioned_table(question: str, tables: Sequence[TableSummary]) -> Optional[str]:
    by_lower = {t.name.lower(): t.name for t in tables}
    for m in patterns.TABLE_NAME_AFTER_KEYWORD.finditer(question or ""):
        name = by_lower.get(m.group(1).lower())
        if name:
            return name
    low = (question or "").lower()
    for t in tables:
        if re.search(rf"\b{re.escape(t.name.lower())}\b", low):
            return t.name
    return None


def _non_empty_reply(raw: str) -> Optional[str]:
    text = clamp_reply(raw)
    return text or None


class Orchestrator:
    def __init__(self, chain: ProviderChain, schema_cache: SchemaCache, translator: SqlTranslator):
        self.chain = chain
        self.schema_cache = schema_cache
        self.translator = translator

    # ---------------------------
    # Entry point
    # ---------------------------

    def run(
        self,
        question: str,
        *,
        tables: Sequence[TableSummary],
        context: Optional[ConversationContext] = None,
    ) -> TurnOutcome:
        started = time.perf_counter()

        replayed = self._replay(question, context)
        if replayed is not None:
            intent, question = replayed
        else:
            intent = self.coordinate(question, tables, context)

        outcome = self._run_stages(question, intent, tables, context)
        outcome.response.latency_ms = int((time.perf_counter() - started) * 1000)
        log_event(
            logger,
            logging.INFO,
            "turn_done",
            category=intent.category.value,
            table=outcome.response.table_used,
            confidence=outcome.response.confidence,
            provider=outcome.response.provider_used,
            latency_ms=outcome.response.latency_ms,
        )
        return outcome

    def _run_stages(
        self,
        question: str,
        intent: IntentResult,
        tables: Sequence[TableSummary],
        context: Optional[ConversationContext],
    ) -> TurnOutcome:
        classification = classify_intent(question)

        if intent.skip_query:
            return TurnOutcome(
                ChatResponse(
                    content=intent.direct_answer or DEFAULT_DIRECT_ANSWER,
                    confidence=intent.confidence,
                    intent=QueryIntent.CONVERSATIONAL.value,
                    provider_used=intent.provider,
                ),
                intent,
            )

        if intent.requires_clarification:
            return TurnOutcome(
                ChatResponse(
                    content=intent.clarification_question or "",
                    confidence=intent.confidence,
                    requires_clarification=True,
                    clarification_question=intent.clarification_question,
                    intent=classification.intent.value,
                    provider_used=intent.provider,
                ),
                intent,
            )

        schemas = self.load_schemas(intent.tables_needed)
        if not schemas:
            return TurnOutcome(self._no_table_response(tables, intent), intent)

        stage = self.build_query(question, intent, schemas, context)
        strategy = stage.strategy
        try:
            result = self.translator.execute(strategy.statement)
        except (TranslationError, QueryExecutionError, QueryTimeoutError) as exc:
            log_event(logger, logging.WARNING, "execution_failed", table=schemas[0].table_name, error=str(exc)[:200])
            return TurnOutcome(self._execution_error_response(schemas[0].table_name, intent, stage), intent, strategy)

        analysis = self.analyze(question, result) if stage.success else AnalysisResult()
        content, formatter_provider = self.format_reply(question, result, analysis)
        if not stage.success:
            content = self._degraded_note(stage, result.table) + content

        response = ChatResponse(
            content=content,
            confidence=intent.confidence if stage.success else LAST_RESORT_CONFIDENCE,
            sql_used=strategy.sql,
            table_used=result.table,
            suggestions=follow_up_suggestions(question, result.table, len(result.rows)),
            data=result.rows[:MAX_RESPONSE_ROWS],
            intent=classification.intent.value,
            chart=classification.chart,
            provider_used=stage.provider or formatter_provider or intent.provider or "fallback",
            insights=[asdict(i) for i in analysis.insights],
        )
        return TurnOutcome(response, intent, strategy, result)

    # ---------------------------
    # 1) Coordinator
    # ---------------------------

    def _replay(
        self, question: str, context: Optional[ConversationContext]
    ) -> Optional[Tuple[IntentResult, str]]:
        if not patterns.CONFIRMATION.match(question or "") or context is None or not context.recent_turns:
            return None
        last = context.recent_turns[0]
        log_event(logger, logging.INFO, "coordinator_replay", previous=last.message[:120])
        intent = replace(
            last.intent,
            explanation=f"Repetindo: {last.message}",
            requires_clarification=False,
            clarification_question=None,
            provider="context",
        )
        return intent, last.message

    def coordinate(
        self,
        question: str,
        tables: Sequence[TableSummary],
        context: Optional[ConversationContext] = None,
    ) -> IntentResult:
        prompt = COORDINATOR_PROMPT.format(
            tables=_inventory_block(tables),
            context=context.summary() if context else "Sem contexto anterior.",
            question=question,
        )
        attempt = self.chain.run(
            "coordinator",
            prompt,
            COORDINATOR_BOUNDS,
            parse=lambda raw: self._parse_intent(raw, question, tables),
        )
        if attempt.ok:
            intent = attempt.value
            intent.provider = attempt.provider
        else:
            intent = self._heuristic_intent(question)

        if not intent.skip_query and not intent.tables_needed:
            table = self._resolve_table(question, tables)
            if table:
                intent.tables_needed = [table]
            elif len(tables) >= 2:
                intent.requires_clarification = True
                intent.clarification_question = self._clarification(question, tables)
        return intent

    @staticmethod
    def _parse_intent(raw: str, question: str, tables: Sequence[TableSummary]) -> Optional[IntentResult]:
        data = extract_json(raw)
        if not data:
            return None
        category = _category(data) or classify_intent(question).intent
        skip = bool(data.get("skip_query", data.get("skip_sql", False))) or category == QueryIntent.CONVERSATIONAL
        direct = data.get("direct_answer")
        operations = data.get("operations") if isinstance(data.get("operations"), list) else []
        return IntentResult(
            category=QueryIntent.CONVERSATIONAL if skip else category,
            confidence=_confidence(data.get("confidence")),
            tables_needed=_known_tables(data.get("tables_needed"), tables),
            operations=[str(op) for op in operations if str(op).strip()][:5],
            skip_query=skip,
            direct_answer=str(direct) if direct else None,
            explanation=str(data.get("explanation") or ""),
        )

    @staticmethod
    def _heuristic_intent(question: str) -> IntentResult:
        if patterns.COUNT_INDICATORS.search(question):
            category, operations = QueryIntent.AGGREGATION, ["count"]
        elif patterns.LIST_INDICATORS.search(question) and not patterns.SEARCH_INDICATORS.search(question):
            category, operations = QueryIntent.RETRIEVAL, ["list"]
        else:
            category, operations = classify_intent(question).intent, ["filter"]
        log_event(logger, logging.INFO, "coordinator_fallback", category=category.value)
        return IntentResult(
            category=category,
            confidence=FALLBACK_CONFIDENCE,
            operations=operations,
            explanation="Fallback por palavras-chave",
            provider="fallback",
        )

    def _resolve_table(self, question: str, tables: Sequence[TableSummary]) -> Optional[str]:
        mentioned = _mentioned_table(question, tables)
        if mentioned:
            return mentioned
        if patterns.EMAIL.search(question) or patterns.SAME_VALUE_PATTERN.search(question):
            entity = self._entity_table(tables)
            if entity:
                return entity
        if len(tables) == 1:
            return tables[0].name
        return None

    def _entity_table(self, tables: Sequence[TableSummary]) -> Optional[str]:
        for t in tables:
            if any(hint in t.name.lower() for hint in patterns.EMAIL_ENTITY_HINTS):
                return t.name
        for t in tables:
            entry = self.schema_cache.get(t.name)
            if entry and any(c.lower() == "email" for c in entry.column_names):
                return t.name
        return None

    @staticmethod
    def _clarification(question: str, tables: Sequence[TableSummary]) -> str:
        base = re.sub(r"[()]", "", (question or "").strip()).rstrip(" ?!.")
        options = [
            f"({chr(ord('A') + idx)}) {base} na tabela {t.name}"
            for idx, t in enumerate(tables[:MAX_CLARIFICATION_OPTIONS])
        ]
        return "🤔 Não consegui identificar a tabela. Qual delas você quer consultar?\n\n" + "\n".join(options)

    # ---------------------------
    # 2) Schema
    # ---------------------------

    def load_schemas(self, tables_needed: Sequence[str]) -> List[SchemaCacheEntry]:
        return self.schema_cache.get_many(tables_needed)

    # ---------------------------
    # 3) Query
    # ---------------------------

    def build_query(
        self,
        question: str,
        intent: IntentResult,
        schemas: Sequence[SchemaCacheEntry],
        context: Optional[ConversationContext] = None,
    ) -> QueryStageResult:
        prompt = QUERY_PROMPT.format(
            schemas="\n\n".join(s.describe() for s in schemas),
            context=context.summary() if context else "Sem contexto anterior.",
            intent=json.dumps(intent.to_dict(), ensure_ascii=False),
            question=question,
        )
        blocked: List[str] = []

        def _parse(raw: str) -> Optional[SqlStrategy]:
            data = extract_json(raw)
            if not data:
                return None
            sql = str(data.get("sql_query") or data.get("sql") or "").strip()
            if not sql:
                return None
            try:
                statement = validate_read_only(sql)
            except UnsafeSQLError as exc:
                blocked.append(exc.keyword)
                raise ValueError(f"unsafe_sql:{exc.keyword}") from exc
            return SqlStrategy(
                statement=statement,
                kind=infer_statement_kind(statement.text),
                explanation=str(data.get("explanation") or ""),
                expected_result_shape=str(data.get("expected_result") or ""),
            )

        attempt = self.chain.run("query", prompt, QUERY_BOUNDS, parse=_parse)
        if attempt.ok:
            return QueryStageResult(success=True, strategy=attempt.value, provider=attempt.provider)

        first_table = schemas[0].table_name
        log_event(
            logger,
            logging.WARNING,
            "query_stage_last_resort",
            table=first_table,
            security_blocked=bool(blocked),
        )
        fallback = SqlStrategy(
            statement=validate_read_only(f"SELECT COUNT(*) FROM {first_table}"),
            kind=StatementKind.SIMPLE_COUNT,
            explanation="Contagem de último recurso",
            expected_result_shape="contagem simples",
        )
        return QueryStageResult(
            success=False,
            strategy=fallback,
            security_blocked=bool(blocked),
            error="; ".join(attempt.errors)[:300] or "no_provider_reply",
        )

    # ---------------------------
    # 4) Analyst
    # ---------------------------

    def analyze(self, question: str, result: TranslationResult) -> AnalysisResult:
        prompt = ANALYST_PROMPT.format(
            rows=json.dumps(result.rows[:ANALYST_SAMPLE_ROWS], ensure_ascii=False, default=str),
            question=question,
        )
        attempt = self.chain.run("analyst", prompt, ANALYST_BOUNDS, parse=self._parse_analysis)
        if attempt.ok:
            attempt.value.provider = attempt.provider
            return attempt.value
        return AnalysisResult(
            insights=[Insight("total_records", format_number(_result_count(result)), "n/a", "baixa")],
            summary="Análise básica dos dados",
        )

    @staticmethod
    def _parse_analysis(raw: str) -> Optional[AnalysisResult]:
        data = extract_json(raw)
        if not data or not isinstance(data.get("insights"), list):
            return None
        insights = []
        for item in data["insights"]:
            if not isinstance(item, dict) or not item.get("metric"):
                continue
            insights.append(
                Insight(
                    metric=str(item["metric"]),
                    value=str(item.get("value", "")),
                    comparison=str(item.get("comparison") or ""),
                    significance=str(item.get("significance") or "media"),
                )
            )
        return AnalysisResult(insights=insights[:MAX_INSIGHTS], summary=str(data.get("summary") or "")[:200])

    # ---------------------------
    # 5) Formatter
    # ---------------------------

    def format_reply(
        self, question: str, result: TranslationResult, analysis: AnalysisResult
    ) -> Tuple[str, Optional[str]]:
        """Tabular results never go through the LLM; the rows are rendered as-is."""
        if result.rows and not result.is_scalar:
            return f"{smart_summary(result.rows, question)}\n\n{markdown_table(result.rows)}", None

        prompt = FORMATTER_PROMPT.format(
            result=json.dumps(result.rows, ensure_ascii=False, default=str),
            analysis=analysis.summary or json.dumps([asdict(i) for i in analysis.insights], ensure_ascii=False),
            question=question,
        )
        attempt = self.chain.run("formatter", prompt, FORMATTER_BOUNDS, parse=_non_empty_reply)
        if not attempt.ok:
            return self._template_reply(result), None
        return self._ensure_figure(attempt.value, result), attempt.provider

    @staticmethod
    def _ensure_figure(text: str, result: TranslationResult) -> str:
        if not (result.is_scalar and _is_number(result.scalar)):
            return text
        figure = format_number(result.scalar)
        if figure in text or str(result.scalar) in text:
            return text
        log_event(logger, logging.INFO, "formatter_figure_appended", figure=figure)
        return f"{text}\n\nTotal: **{figure}**"

    @staticmethod
    def _template_reply(result: TranslationResult) -> str:
        if result.is_scalar:
            value = result.scalar
            if _is_number(value):
                return f"📊 **Resultado**\n\n🔢 Total: **{format_number(value)}** registros"
            return f"📊 **Resultado**\n\n{format_cell(value)}"
        return "📊 **Resultado**\n\nA consulta não retornou registros."

    # ---------------------------
    # Degraded responses
    # ---------------------------

    @staticmethod
    def _degraded_note(stage: QueryStageResult, table: str) -> str:
        if stage.security_blocked:
            return (
                "⚠️ Não consegui construir uma consulta segura para essa pergunta. "
                f"Mostro a contagem total da tabela **{table}**.\n\n"
            )
        return f"ℹ️ Não consegui montar a consulta exata. Mostro a contagem total da tabela **{table}**.\n\n"

    @staticmethod
    def _execution_error_response(table: str, intent: IntentResult, stage: QueryStageResult) -> ChatResponse:
        return ChatResponse(
            content=(
                "😕 Desculpe, não consegui executar essa consulta. "
                f"Tente perguntar diretamente sobre a tabela **{table}**."
            ),
            confidence=min(intent.confidence, LAST_RESORT_CONFIDENCE),
            sql_used=None if stage.security_blocked else stage.strategy.sql,
            table_used=table,
            suggestions=[f"Quantos registros tem na tabela {table}?", f"Mostre 10 registros da tabela {table}"],
            intent=intent.category.value,
            provider_used=stage.provider or intent.provider or "fallback",
        )

    @staticmethod
    def _no_table_response(tables: Sequence[TableSummary], intent: IntentResult) -> ChatResponse:
        if tables:
            best = tables[0].name
            content = f"😕 Desculpe, não encontrei essa tabela. Que tal consultar a tabela **{best}**?"
            suggestions = [f"Quantos registros tem na tabela {best}?", "Quais tabelas existem?"]
        else:
            best = None
            content = "😕 Nenhuma tabela disponível para consulta no momento."
            suggestions = []
        return ChatResponse(
            content=content,
            confidence=min(intent.confidence, LAST_RESORT_CONFIDENCE),
            table_used=best,
            suggestions=suggestions,
            intent=intent.category.value,
            provider_used=intent.provider or "fallback",
        )
