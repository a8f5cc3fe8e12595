from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# 계획 단계에서 LLM이 선택할 수 있는 차트 종류
CHART_TYPES = (
    "line", "bar", "pie", "scatter", "heatmap", "radar",
    "sankey", "treemap", "funnel", "calendar", "choropleth", "network",
)
ChartType = Literal[
    "line", "bar", "pie", "scatter", "heatmap", "radar",
    "sankey", "treemap", "funnel", "calendar", "choropleth", "network",
]


class CamelModel(BaseModel):
    """LLM이 돌려주는 camelCase JSON과 파이썬 snake_case 필드를 모두 허용하는 베이스 모델"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- [Planning] ---

class DataRequirement(CamelModel):
    name: str
    description: str = ""
    sql_hint: Optional[str] = None
    required: bool = True
    data_type: str = "text"  # numeric | categorical | datetime | text


class QueryInstruction(CamelModel):
    step: int
    description: str
    tables: List[str] = Field(default_factory=list)
    expected_output: str = ""
    depends_on: List[int] = Field(default_factory=list)


class ClarificationRequest(CamelModel):
    question: str
    options: Optional[List[str]] = None
    context: Optional[str] = None


class ChartPlan(CamelModel):
    """planning 노드가 LLM 응답에서 읽어들이는 계획 전체"""
    # 알 수 없는 차트 타입은 변환 단계에서 거부하므로 여기서는 문자열로 받습니다.
    chart_type: Optional[str] = None
    data_requirements: List[DataRequirement] = Field(default_factory=list)
    query_plan: List[QueryInstruction] = Field(default_factory=list)
    clarification_needed: Optional[ClarificationRequest] = None


class RoutingDecision(CamelModel):
    intent: str = "chat"
    reasoning: Optional[str] = None


# --- [Query & Validation] ---

class SQLQuery(CamelModel):
    query: str
    explanation: Optional[str] = None
    optimization_hints: List[str] = Field(default_factory=list)
    estimated_rows: Optional[int] = None
    tables_used: List[str] = Field(default_factory=list)
    columns_used: List[str] = Field(default_factory=list)
    schema_validation_issues: List[str] = Field(default_factory=list)

    @field_validator("estimated_rows", mode="before")
    @classmethod
    def _coerce_estimated_rows(cls, value):
        # "about 100" 같은 자유 서술은 버립니다.
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None


class QueryResult(CamelModel):
    data: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    execution_time: float = 0.0  # ms
    error: Optional[str] = None


class ValidationResult(CamelModel):
    is_valid: bool
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class SchemaValidationResult(CamelModel):
    is_valid: bool
    issues: List[str] = Field(default_factory=list)
    tables_found: List[str] = Field(default_factory=list)
    columns_checked: int = 0


# --- [Chart Output] ---

class ChartData(CamelModel):
    type: str
    data: Any
    config: Optional[Dict[str, Any]] = None
    title: Optional[str] = None
    description: Optional[str] = None


class AggregationInstruction(CamelModel):
    field: str
    operation: Literal["sum", "avg", "count", "min", "max", "first", "last"]
    group_by: Optional[List[str]] = None


class FilterInstruction(CamelModel):
    field: str
    operator: Literal["equals", "contains", "greaterThan", "lessThan", "in", "notNull"]
    value: Any = None


class GroupingInstruction(CamelModel):
    field: str
    create_series: bool = False
    series_name_field: Optional[str] = None


class SortingInstruction(CamelModel):
    field: str
    direction: Literal["asc", "desc"] = "asc"


class TransformationInstruction(CamelModel):
    """LLM(또는 폴백 규칙)이 만든 원본 필드 → 차트 필드 매핑 계획"""
    field_mappings: Dict[str, str]
    aggregations: List[AggregationInstruction] = Field(default_factory=list)
    filters: List[FilterInstruction] = Field(default_factory=list)
    groupings: List[GroupingInstruction] = Field(default_factory=list)
    sorting: Optional[SortingInstruction] = None


# --- [Memory & API Payloads] ---

class ChatTurn(CamelModel):
    user_id: str
    session_id: str
    user_message: str
    assistant_response: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AgentRequest(BaseModel):
    user_id: str = Field(..., min_length=1, examples=["user_01"])
    session_id: str = Field(..., min_length=1, examples=["session_01"])
    message: str = Field(..., min_length=1, max_length=10000, examples=["Show revenue by region as a pie chart"])
    context: Optional[Dict[str, Any]] = None
    stream: bool = False


class AgentResponse(BaseModel):
    message: str
    chart_data: Optional[ChartData] = None
    clarification_needed: Optional[ClarificationRequest] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class VectorDocumentRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=50000)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProgressEvent(BaseModel):
    type: Literal["progress", "content", "done", "error"]
    operation: str
    message: str
    current_state: Optional[str] = None
    percentage: Optional[int] = None
    content: Optional[Union[str, Dict[str, Any]]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
