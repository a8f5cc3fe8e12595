import pytest

from chart_agent.domain.models import (
    QueryInstruction,
    QueryResult,
    SQLQuery,
    ValidationResult,
)
from chart_agent.graph.nodes import (
    FALLBACK_CLARIFICATION,
    GraphDependencies,
    chatting_node,
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
from chart_agent.graph.state import build_initial_state, update_progress
from chart_agent.infrastructure.sql_tool import ToolRegistry

PLAN = [QueryInstruction(step=1, description="Sum revenue per region", tables=["Orders"], expected_output="region, revenue")]


def make_state(**overrides):
    state = build_initial_state("Show revenue by region as a pie chart", "u1", "s1", max_retries=3)
    state.update(overrides)
    return state


def make_deps(llm, memory, tools=None, events=None):
    return GraphDependencies(
        llm=llm,
        tools=ToolRegistry(tools or []),
        memory=memory,
        progress_callback=events.append if events is not None else None,
    )

# --- [1. 라우팅 / 계획] ---

@pytest.mark.asyncio
async def test_routing_unknown_intent_becomes_chat(scripted_llm, fake_memory):
    llm = scripted_llm([{"intent": "sql", "reasoning": "needs data"}])
    res = await routing_node(make_state(), make_deps(llm, fake_memory()))
    assert res["intent"] == "chat"
    assert llm.calls[0]["temperature"] == 0

@pytest.mark.asyncio
async def test_routing_parse_failure_is_error(scripted_llm, fake_memory):
    events = []
    res = await routing_node(make_state(), make_deps(scripted_llm(["not json"]), fake_memory(), events=events))
    assert res["errors"] == ["Routing failed: Failed to parse JSON from LLM response"]
    assert res["progress"]["current_state"] == "failed"
    assert [e["current_state"] for e in events] == ["routing", "failed"]

@pytest.mark.asyncio
async def test_planning_success(scripted_llm, fake_memory):
    llm = scripted_llm([{
        "chartType": "Pie",
        "dataRequirements": [{"name": "revenue", "dataType": "numeric"}],
        "queryPlan": [{"step": 1, "description": "Sum revenue per region", "tables": ["Orders"]}],
    }])
    res = await planning_node(make_state(), make_deps(llm, fake_memory()))
    assert res["chart_type"] == "pie"
    assert res["query_plan"][0].tables == ["Orders"]
    assert res["current_step"] == 0
    assert llm.calls[0]["temperature"] == 0.3

@pytest.mark.asyncio
async def test_planning_clarification_has_priority(scripted_llm, fake_memory):
    llm = scripted_llm([{"chartType": "pie", "queryPlan": [], "clarificationNeeded": "Which metric should I use?"}])
    res = await planning_node(make_state(), make_deps(llm, fake_memory()))
    assert res["intent"] == "clarify"
    assert res["clarification_needed"].question == "Which metric should I use?"

@pytest.mark.asyncio
async def test_planning_without_query_plan_falls_back_to_clarification(scripted_llm, fake_memory):
    res = await planning_node(make_state(), make_deps(scripted_llm([{"chartType": "pie"}]), fake_memory()))
    assert res["clarification_needed"].question == FALLBACK_CLARIFICATION
    assert "queryPlan" in res["clarification_needed"].context

# --- [2. 스키마 / 쿼리 생성] ---

@pytest.mark.asyncio
async def test_understanding_schema_collects_documents(scripted_llm, fake_memory, orders_schema):
    res = await understanding_schema_node(make_state(query_plan=PLAN), make_deps(scripted_llm([]), fake_memory([orders_schema])))
    assert res["schema_context"] == orders_schema

@pytest.mark.asyncio
async def test_understanding_schema_empty_is_not_fatal(scripted_llm, fake_memory):
    res = await understanding_schema_node(make_state(query_plan=PLAN), make_deps(scripted_llm([]), fake_memory()))
    assert res["schema_context"] == ""
    assert "errors" not in res

@pytest.mark.asyncio
async def test_generating_query_rejects_cte(scripted_llm, fake_memory, orders_schema):
    llm = scripted_llm([{"query": "WITH t AS (SELECT region FROM Orders) SELECT * FROM t"}])
    state = make_state(query_plan=PLAN, schema_context=orders_schema)
    res = await generating_query_node(state, make_deps(llm, fake_memory()))
    assert res["errors"] == ["Query contains forbidden WITH clause (CTE). Only simple SELECT statements allowed."]

@pytest.mark.asyncio
async def test_generating_query_without_sql(scripted_llm, fake_memory):
    res = await generating_query_node(make_state(query_plan=PLAN), make_deps(scripted_llm(["I cannot help"]), fake_memory()))
    assert res["errors"] == ["Query generation failed: no SQL query found in the model response"]

@pytest.mark.asyncio
async def test_generating_query_guided_retry_exhausted(scripted_llm, fake_memory, orders_schema):
    """컬럼 이슈가 계속되면 재시도 한도(2회) 이후 사용자 친화 메시지로 실패"""
    bad = {"query": "SELECT region FROM Orders WHERE profit > 0"}
    llm = scripted_llm([bad, bad])
    state = make_state(query_plan=PLAN, schema_context=orders_schema, retry_count=1)
    res = await generating_query_node(state, make_deps(llm, fake_memory()))

    assert len(llm.calls) == 2
    assert res["retry_count"] == 2
    assert "profit" in res["friendly_error_message"]
    assert res["errors"] == [res["friendly_error_message"]]
    assert res["sql_queries"][0].schema_validation_issues == ["Column 'profit' not found in schema."]

@pytest.mark.asyncio
async def test_generating_query_uses_validation_feedback(scripted_llm, fake_memory, orders_schema):
    llm = scripted_llm([{"query": "SELECT region, SUM(revenue) AS revenue FROM Orders GROUP BY region"}])
    previous = ValidationResult(is_valid=False, issues=["Only one row returned"], suggestions=["Group by region"])
    state = make_state(query_plan=PLAN, schema_context=orders_schema, retry_count=1, validation_results=[previous])
    res = await generating_query_node(state, make_deps(llm, fake_memory()))

    prompt = llm.calls[0]["messages"][1].content
    assert "Only one row returned" in prompt
    assert "Group by region" in prompt
    assert res["sql_queries"][0].query.startswith("SELECT region")
    assert res["retry_count"] == 1

# --- [3. 실행 / 검증] ---

@pytest.mark.asyncio
async def test_executing_query_records_tool_errors(scripted_llm, fake_memory, fake_sql_tool):
    tool = fake_sql_tool([{"error": "no such table: Purchases"}])
    state = make_state(query_plan=PLAN, sql_queries=[SQLQuery(query="SELECT * FROM Purchases")])
    res = await executing_query_node(state, make_deps(scripted_llm([]), fake_memory(), [tool]))
    assert res["query_results"][0].error == "SQL execution failed: no such table: Purchases"
    assert "errors" not in res

@pytest.mark.asyncio
async def test_executing_query_success(scripted_llm, fake_memory, fake_sql_tool):
    tool = fake_sql_tool([{"data": [{"region": "East", "revenue": 100}], "rowCount": 1}])
    state = make_state(query_plan=PLAN, sql_queries=[SQLQuery(query="SELECT region, revenue FROM Orders")])
    res = await executing_query_node(state, make_deps(scripted_llm([]), fake_memory(), [tool]))
    result = res["query_results"][0]
    assert result.row_count == 1
    assert result.error is None
    assert tool.queries == ["SELECT region, revenue FROM Orders"]

@pytest.mark.asyncio
async def test_executing_query_edge_cases(scripted_llm, fake_memory):
    deps = make_deps(scripted_llm([]), fake_memory())
    res = await executing_query_node(make_state(query_plan=PLAN), deps)
    assert res["query_results"][0].error == "No SQL query to execute"

    state = make_state(query_plan=PLAN, sql_queries=[SQLQuery(query="SELECT 1")])
    res = await executing_query_node(state, deps)
    assert res["errors"] == ["SQL query tool not available"]

@pytest.mark.asyncio
async def test_validating_execution_error_skips_llm(scripted_llm, fake_memory):
    llm = scripted_llm([])
    state = make_state(query_plan=PLAN, query_results=[QueryResult(error="no such column: profit")])
    res = await validating_results_node(state, make_deps(llm, fake_memory()))
    validation = res["validation_results"][0]
    assert validation.is_valid is False
    assert validation.issues == ["Query execution failed: no such column: profit"]
    assert validation.suggestions[0] == "Check table and column names against the schema"
    assert llm.calls == []

@pytest.mark.asyncio
async def test_validating_llm_failure_is_fail_safe(scripted_llm, fake_memory):
    state = make_state(query_plan=PLAN, query_results=[QueryResult(data=[{"a": 1}], row_count=1)])
    res = await validating_results_node(state, make_deps(scripted_llm(["???"]), fake_memory()))
    assert res["validation_results"][0].issues == ["Validation process failed"]

@pytest.mark.asyncio
async def test_validating_reports_exhaustion(scripted_llm, fake_memory):
    llm = scripted_llm([{"isValid": False, "issues": ["empty result"]}])
    state = make_state(query_plan=PLAN, query_results=[QueryResult()], retry_count=3)
    res = await validating_results_node(state, make_deps(llm, fake_memory()))
    assert res["errors"] == ["Query for step 1 failed validation after 3 attempts: empty result"]

@pytest.mark.asyncio
async def test_validating_missing_results(scripted_llm, fake_memory):
    res = await validating_results_node(make_state(query_plan=PLAN), make_deps(scripted_llm([]), fake_memory()))
    assert res["errors"] == ["No results to validate"]

# --- [4. 변환 / 대화] ---

@pytest.mark.asyncio
async def test_transforming_unsupported_chart(scripted_llm, fake_memory):
    state = make_state(chart_type="sankey", query_results=[QueryResult(data=[{"a": "x", "b": 1}])])
    res = await transforming_data_node(state, make_deps(scripted_llm([]), fake_memory()))
    assert res["errors"] == ["Data transformation failed: Unsupported chart type: sankey"]

@pytest.mark.asyncio
async def test_chatting_includes_history(scripted_llm, fake_memory):
    from chart_agent.domain.models import ChatTurn

    history = [ChatTurn(user_id="u1", session_id="s1", user_message="Hi", assistant_response="Hello!")]
    llm = scripted_llm(["I can build charts from your data."])
    res = await chatting_node(make_state(user_request="What can you do?"), make_deps(llm, fake_memory(history=history)))

    assert res["chat_response"] == "I can build charts from your data."
    assert res["progress"]["percentage"] == 100
    contents = [m.content for m in llm.calls[0]["messages"]]
    assert contents[1:] == ["Hi", "Hello!", "What can you do?"]

@pytest.mark.asyncio
async def test_chatting_empty_reply_is_error(scripted_llm, fake_memory):
    res = await chatting_node(make_state(), make_deps(scripted_llm(["   "]), fake_memory()))
    assert res["errors"] == ["Chatting failed: empty response"]

@pytest.mark.asyncio
async def test_chatting_streams_chunks(fake_memory):
    class ChunkedLlm:
        async def complete(self, messages, temperature=None):
            raise AssertionError("스트리밍 모드에서는 complete 를 호출하지 않음")

        async def stream(self, messages, temperature=None):
            for chunk in ["Hello", ", ", "world!"]:
                yield chunk

    chunks = []
    deps = GraphDependencies(llm=ChunkedLlm(), tools=ToolRegistry(), memory=fake_memory(), content_callback=chunks.append)
    res = await chatting_node(make_state(), deps)

    assert chunks == ["Hello", ", ", "world!"]
    assert res["chat_response"] == "Hello, world!"

# --- [5. 순수 상태 갱신] ---

def test_retry_updater_budget():
    state = make_state(retry_count=0, validation_results=[ValidationResult(is_valid=False, issues=["bad"])])
    assert retry_updater(state)["retry_count"] == 1
    assert "errors" not in retry_updater(state)

    exhausted = retry_updater({**state, "retry_count": 2})
    assert exhausted["errors"] == ["Query for step 1 failed validation after 3 attempts: bad"]
    assert exhausted["progress"]["current_state"] == "failed"

def test_next_step_updater_resets_retries():
    res = next_step_updater(make_state(current_step=0, retry_count=2, query_plan=PLAN * 2))
    assert res["current_step"] == 1
    assert res["retry_count"] == 0

def test_updaters_notify_progress_observer(scripted_llm, fake_memory):
    events = []
    deps = make_deps(scripted_llm([]), fake_memory(), events=events)
    state = make_state(query_plan=PLAN * 2, validation_results=[ValidationResult(is_valid=False, issues=["bad"])])

    next_step_updater(state, deps)
    retry_updater(state, deps)
    retry_updater({**state, "retry_count": 2}, deps)

    assert [e["current_state"] for e in events] == ["generating_query", "retrying", "failed"]
    assert events[1]["percentage"] == 35

def test_progress_callback_errors_are_ignored():
    def broken(_):
        raise RuntimeError("observer down")

    progress = update_progress("planning", "Planning...", broken)
    assert progress == {"current_state": "planning", "percentage": 10, "message": "Planning..."}
