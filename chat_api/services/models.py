"""Dataclasses shared by the pipeline stages."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from chat_api.services.sql_safety import ValidatedStatement


class QueryIntent(str, Enum):
    RETRIEVAL = "retrieval"
    AGGREGATION = "aggregation"
    FILTER = "filter"
    TREND = "trend"
    COMPARISON = "comparison"
    EXPLORATORY = "exploratory"
    CONVERSATIONAL = "conversational"


class StatementKind(str, Enum):
    COUNT_DISTINCT = "count_distinct"
    SIMPLE_COUNT = "simple_count"
    LIST = "list"
    AGGREGATION = "aggregation"
    COMPLEX = "complex"


@dataclass(frozen=True)
class TableSummary:
    name: str
    row_count: Optional[int] = None


@dataclass
class IntentResult:
    category:               QueryIntent
    confidence:             int                 = 60
    tables_needed:          List[str]           = field(default_factory=list)
    operations:             List[str]           = field(default_factory=list)
    skip_query:             bool                = False
    direct_answer:          Optional[str]       = None
    explanation:            str                 = ""
    requires_clarification: bool                = False
    clarification_question: Optional[str]       = None
    provider:               Optional[str]       = None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["category"] = self.category.value
        return out


@dataclass
class SqlStrategy:
    statement:             ValidatedStatement
    kind:                  StatementKind
    explanation:           str = ""
    expected_result_shape: str = ""

    @property
    def sql(self) -> str:
        return self.statement.text


@dataclass
class QueryStageResult:
    success:          bool
    strategy:         Optional[SqlStrategy]
    provider:         Optional[str] = None
    security_blocked: bool          = False
    error:            Optional[str] = None


@dataclass
class Insight:
    metric:       str
    value:        str
    comparison:   str = ""
    significance: str = "media"


@dataclass
class AnalysisResult:
    insights: List[Insight] = field(default_factory=list)
    summary:  str           = ""
    provider: Optional[str] = None


@dataclass
class ChatResponse:
    content:                str
    confidence:             int
    sql_used:               Optional[str]            = None
    table_used:             Optional[str]            = None
    suggestions:            List[str]                = field(default_factory=list)
    requires_clarification: bool                     = False
    clarification_question: Optional[str]            = None
    data:                   Optional[List[Dict[str, Any]]] = None
    intent:                 Optional[str]            = None
    chart:                  Optional[str]            = None
    provider_used:          Optional[str]            = None
    latency_ms:             Optional[int]            = None
    insights:               List[Dict[str, Any]]     = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
