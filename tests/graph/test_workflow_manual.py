"""
실제 LLM / Redis / SQL DB 를 사용하는 수동 시나리오 테스트
RUN_MANUAL_TESTS=true 이고 스키마가 적재된 DB 가 있을 때만 실행합니다.
"""

import pytest
import pytest_asyncio

from chart_agent.common.config import settings
from chart_agent.graph.nodes import GraphDependencies
from chart_agent.graph.workflow import run_agent_flow
from chart_agent.infrastructure.ingestor import SchemaIngestor
from chart_agent.infrastructure.llm_client import get_llm_client
from chart_agent.infrastructure.memory_store import build_memory_store
from chart_agent.infrastructure.sql_tool import build_tool_registry, get_sql_engine

# --- [테스트용 Fixtures] ---

@pytest_asyncio.fixture
async def live_deps():
    engine = get_sql_engine()
    memory = build_memory_store()
    await SchemaIngestor(engine, memory).ingest()
    yield GraphDependencies(llm=get_llm_client(), tools=build_tool_registry(engine), memory=memory)
    await memory.clear_session_memory("manual_test_user", "manual_test_session")
    await memory.redis_client.aclose()

# -----------------------------------------------------------------
# 1. 일반 대화 시나리오
# -----------------------------------------------------------------

@pytest.mark.skipif(not settings.RUN_MANUAL_TESTS, reason="수동 테스트 비활성화")
@pytest.mark.asyncio
async def test_manual_chat(live_deps):
    print("\n🚀 [1/2] 일반 대화 시나리오 시작...")
    state = await run_agent_flow("Hello, what can you do?", "manual_test_user", "manual_test_session", live_deps)
    print(f"   - 응답: {state.get('chat_response')}")
    assert state["intent"] == "chat"
    assert state["chat_response"]

# -----------------------------------------------------------------
# 2. 차트 생성 시나리오
# -----------------------------------------------------------------

@pytest.mark.skipif(not settings.RUN_MANUAL_TESTS, reason="수동 테스트 비활성화")
@pytest.mark.asyncio
async def test_manual_chart(live_deps):
    print("\n🚀 [2/2] 차트 생성 시나리오 시작...")
    state = await run_agent_flow(
        "Show the number of rows per table as a bar chart", "manual_test_user", "manual_test_session", live_deps
    )
    print(f"   - 생성된 SQL: {[q.query for q in state.get('sql_queries', []) if q]}")
    print(f"   - 에러: {state.get('errors')}")
    assert state.get("final_chart_data") or state.get("clarification_needed") or state.get("errors")
