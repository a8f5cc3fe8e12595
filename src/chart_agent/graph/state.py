import logging
from typing import Annotated, Callable, Dict, List, Optional, TypedDict

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langgraph.graph.message import add_messages

from chart_agent.domain.models import (
    ChartData,
    ChatTurn,
    ClarificationRequest,
    DataRequirement,
    QueryInstruction,
    QueryResult,
    SQLQuery,
    ValidationResult,
)

logger = logging.getLogger(__name__)

# 상태 이름별 고정 진행률 (전진 경로에서 단조 증가)
PROGRESS_MAP: Dict[str, int] = {
    "routing": 5,
    "planning": 10,
    "understanding_schema": 20,
    "generating_query": 30,
    "retrying": 35,
    "clarifying": 40,
    "executing_query": 50,
    "validating_results": 70,
    "transforming_data": 90,
    "chatting": 90,
    "completed": 100,
    "failed": 100,
}


class ProgressState(TypedDict):
    current_state: str
    percentage: int
    message: str


ProgressCallback = Callable[[ProgressState], None]


class AgentState(TypedDict, total=False):
    """
    그래프 노드 간에 공유되는 상태 객체입니다.
    단계별 산출물 리스트(sql_queries, query_results, validation_results)는 query_plan 과 같은 인덱스를 사용합니다.
    """
    # 대화 기록
    messages: Annotated[List[BaseMessage], add_messages]

    # 세션 정보
    user_id: str
    session_id: str
    user_request: str

    # 의도 및 계획
    intent: Optional[str]                  # chart | chat | clarify
    chart_type: Optional[str]
    data_requirements: List[DataRequirement]
    query_plan: List[QueryInstruction]

    # 실행 커서 및 재시도
    current_step: int
    retry_count: int
    max_retries: int

    # 단계별 산출물
    schema_context: str
    sql_queries: List[SQLQuery]
    query_results: List[QueryResult]
    validation_results: List[ValidationResult]

    # 최종 결과
    final_chart_data: Optional[ChartData]
    chat_response: Optional[str]
    clarification_needed: Optional[ClarificationRequest]
    friendly_error_message: Optional[str]
    errors: List[str]

    progress: ProgressState


def calculate_progress(state_name: str) -> int:
    return PROGRESS_MAP.get(state_name, 0)


def make_progress(state_name: str, message: str) -> ProgressState:
    return {"current_state": state_name, "percentage": calculate_progress(state_name), "message": message}


def update_progress(
    state_name: str, message: str, callback: Optional[ProgressCallback] = None
) -> ProgressState:
    """진행 상태를 만들고 관찰자에게 알립니다. 콜백 예외는 실행에 영향을 주지 않습니다."""
    progress = make_progress(state_name, message)
    if callback is not None:
        try:
            callback(progress)
        except Exception as e:
            logger.warning(f"진행 상태 콜백 실패 (무시): {e}")
    return progress


def history_to_messages(turns: List[ChatTurn]) -> List[BaseMessage]:
    """저장된 대화 턴을 Human/AI 메시지 쌍으로 펼칩니다."""
    messages: List[BaseMessage] = []
    for turn in turns:
        messages.append(HumanMessage(content=turn.user_message))
        messages.append(AIMessage(content=turn.assistant_response))
    return messages


def build_initial_state(
    user_request: str,
    user_id: str,
    session_id: str,
    max_retries: int,
    history: Optional[List[ChatTurn]] = None,
) -> AgentState:
    """AgentState 의 모든 키를 초기화하여 KeyError 를 방지합니다."""
    return {
        "messages": history_to_messages(history or []) + [HumanMessage(content=user_request)],
        "user_id": user_id,
        "session_id": session_id,
        "user_request": user_request,
        "intent": None,
        "chart_type": None,
        "data_requirements": [],
        "query_plan": [],
        "current_step": 0,
        "retry_count": 0,
        "max_retries": max_retries,
        "schema_context": "",
        "sql_queries": [],
        "query_results": [],
        "validation_results": [],
        "final_chart_data": None,
        "chat_response": None,
        "clarification_needed": None,
        "friendly_error_message": None,
        "errors": [],
        "progress": make_progress("routing", "Starting agent..."),
    }


def set_at(items: List, index: int, value) -> List:
    """리스트 사본의 index 위치에 값을 기록합니다. 중간 빈 칸은 None 으로 채웁니다."""
    updated = list(items or [])
    while len(updated) <= index:
        updated.append(None)
    updated[index] = value
    return updated


def get_at(items: Optional[List], index: int):
    if items and 0 <= index < len(items):
        return items[index]
    return None
