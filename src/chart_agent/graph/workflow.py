import inspect
import logging
from typing import Optional

from langgraph.graph import END, StateGraph

from chart_agent.common.config import settings
from chart_agent.graph.nodes import (
    GraphDependencies,
    chatting_node,
    clarifying_node,
    executing_query_node,
    generating_query_node,
    next_step_updater,
    planning_node,
    retry_updater,
    routing_node,
    transforming_data_node,
    understanding_schema_node,
    validating_results_node,
)
from chart_agent.graph.state import AgentState, build_initial_state, get_at, make_progress

logger = logging.getLogger(__name__)


# --- [1. 조건부 라우터 (Routers)] ---

def route_after_routing(state: AgentState) -> str:
    if state.get("errors"):
        return "end"
    return "chart" if state.get("intent") == "chart" else "chat"


def route_after_planning(state: AgentState) -> str:
    if state.get("errors"):
        return "end"
    if state.get("clarification_needed"):
        return "clarify"
    return "continue"


def route_on_errors(state: AgentState) -> str:
    return "end" if state.get("errors") else "continue"


def route_after_validation(state: AgentState) -> str:
    """검증 결과에 따라 다음 단계 / 변환 / 재시도 / 종료를 결정합니다."""
    if state.get("errors"):
        return "end"
    step = state.get("current_step", 0)
    validation = get_at(state.get("validation_results"), step)
    if validation is not None and validation.is_valid:
        return "next_step" if step + 1 < len(state.get("query_plan", [])) else "transform"
    if state.get("retry_count", 0) < state.get("max_retries", settings.MAX_RETRIES):
        return "retry"
    return "end"


def _bind(node, deps: GraphDependencies):
    """노드에 의존성을 묶어 LangGraph 가 state 하나로 호출할 수 있게 합니다."""
    if not inspect.iscoroutinefunction(node):
        def bound(state: AgentState):
            return node(state, deps)
        bound.__name__ = node.__name__
        return bound

    async def bound(state: AgentState):
        return await node(state, deps)
    bound.__name__ = node.__name__
    return bound


def create_chart_workflow(deps: GraphDependencies):
    """
    차트/대화 에이전트 워크플로우를 생성합니다.
    routing → planning → understanding_schema → (generating → executing → validating)* → transforming
    """
    workflow = StateGraph(AgentState)

    # --- [2. 노드 등록 (Node Registration)] ---
    workflow.add_node("routing", _bind(routing_node, deps))
    workflow.add_node("planning", _bind(planning_node, deps))
    workflow.add_node("understanding_schema", _bind(understanding_schema_node, deps))
    workflow.add_node("generating_query", _bind(generating_query_node, deps))
    workflow.add_node("executing_query", _bind(executing_query_node, deps))
    workflow.add_node("validating_results", _bind(validating_results_node, deps))
    workflow.add_node("transforming_data", _bind(transforming_data_node, deps))
    workflow.add_node("clarifying", _bind(clarifying_node, deps))
    workflow.add_node("chatting", _bind(chatting_node, deps))
    # 외부 호출이 없는 상태 갱신 노드 (진행 상태만 관찰자에게 알림)
    workflow.add_node("next_step_updater", _bind(next_step_updater, deps))
    workflow.add_node("retry_updater", _bind(retry_updater, deps))

    # --- [3. 시작점 설정 (Entry Point)] ---
    workflow.set_entry_point("routing")

    # --- [4. 엣지 및 조건부 흐름 제어 (Edges & Routing)] ---
    workflow.add_conditional_edges(
        "routing",
        route_after_routing,
        {"chart": "planning", "chat": "chatting", "end": END}
    )
    workflow.add_conditional_edges(
        "planning",
        route_after_planning,
        {"clarify": "clarifying", "continue": "understanding_schema", "end": END}
    )
    workflow.add_edge("understanding_schema", "generating_query")
    workflow.add_conditional_edges(
        "generating_query",
        route_on_errors,
        {"continue": "executing_query", "end": END}
    )
    # 실행 에러는 결과에 기록되므로 항상 검증 단계로 이동
    workflow.add_edge("executing_query", "validating_results")
    workflow.add_conditional_edges(
        "validating_results",
        route_after_validation,
        {
            "next_step": "next_step_updater",
            "transform": "transforming_data",
            "retry": "retry_updater",
            "end": END
        }
    )
    workflow.add_edge("next_step_updater", "generating_query")
    workflow.add_conditional_edges(
        "retry_updater",
        route_on_errors,
        {"continue": "generating_query", "end": END}
    )
    workflow.add_edge("transforming_data", END)
    workflow.add_edge("clarifying", END)
    workflow.add_edge("chatting", END)

    return workflow.compile()


def has_output(state: AgentState) -> bool:
    return bool(
        state.get("final_chart_data")
        or state.get("chat_response")
        or state.get("clarification_needed")
        or state.get("errors")
    )


async def run_agent_flow(
    user_request: str,
    user_id: str,
    session_id: str,
    deps: GraphDependencies,
    max_retries: Optional[int] = None,
    graph=None,
) -> AgentState:
    """
    요청 한 건에 대해 그래프를 끝까지 실행하고 최종 상태를 돌려줍니다.
    어떤 예외도 밖으로 던지지 않으며, 결과가 비어 있으면 에러를 남깁니다.
    """
    max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
    try:
        history = await deps.memory.get_recent_messages(user_id, session_id, deps.history_turns)
    except Exception as e:
        logger.warning(f"대화 기록 로드 실패, 기록 없이 진행: {e}")
        history = []

    initial_state = build_initial_state(user_request, user_id, session_id, max_retries, history)
    try:
        graph = graph or create_chart_workflow(deps)
        final_state = await graph.ainvoke(initial_state, config={"recursion_limit": settings.GRAPH_RECURSION_LIMIT})
    except Exception as e:
        logger.error(f"에이전트 실행 실패: {e}")
        error = f"Agent flow failed: {e}"
        return {
            **initial_state,
            "errors": list(initial_state.get("errors", [])) + [error],
            "progress": make_progress("failed", error),
        }

    if not has_output(final_state):
        error = "Agent flow finished without producing a chart, reply, or clarification"
        logger.error(error)
        final_state = {
            **final_state,
            "errors": list(final_state.get("errors", [])) + [error],
            "progress": make_progress("failed", error),
        }
    return final_state


# --- [5. 워크플로우 시각화 함수] ---
def display_graph_info(graph):
    """
    워크플로우 구조를 시각화하여 출력합니다.
    """
    print("\n" + "="*60 + "\n📊 Chart Agent AI Workflow\n" + "="*60)
    try:
        graph.get_graph().print_ascii()
    except Exception:
        print(" (ASCII 시각화 생략) ")

    print("\n" + "-"*60 + "\n🔗 [Mermaid Code for Visualization]\n")
    print(graph.get_graph().draw_mermaid())
    print("\n" + "-"*60 + "\n")
