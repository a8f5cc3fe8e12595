import json
import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from langchain_core.documents import Document
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from chart_agent.common.config import settings
from chart_agent.common.exceptions import LlmResponseParseError
from chart_agent.common.llm_parser import extract_json_from_response, parse_llm_response
from chart_agent.domain.models import (
    CHART_TYPES,
    ChartPlan,
    ClarificationRequest,
    QueryResult,
    RoutingDecision,
    SQLQuery,
    ValidationResult,
)
from chart_agent.graph.state import (
    AgentState,
    ProgressCallback,
    get_at,
    history_to_messages,
    make_progress,
    set_at,
    update_progress,
)
from chart_agent.infrastructure.sql_tool import ToolRegistry
from chart_agent.interfaces.llm import ILlmClient
from chart_agent.interfaces.memory import IMemoryStore
from chart_agent.transform.engine import transform
from chart_agent.validation.schema_validator import (
    create_user_friendly_error_message,
    split_issues,
    validate_query_against_schema,
)
from chart_agent.validation.sql_policy import WEEK_START_EXPRESSION, check_sql_policy

# 로깅 설정
logger = logging.getLogger(__name__)

SQL_TOOL_NAME = "sql_query"
# 컬럼 이슈로 인한 자동 재생성은 단계당 최대 2회
GUIDED_RETRY_LIMIT = 2
SCHEMA_PREVIEW_LENGTH = 2000
VALIDATION_SAMPLE_ROWS = 5

SCHEMA_DOC_FILTER = {"type": "technical_documentation"}
ALTERNATE_SCHEMA_FILTERS: List[Optional[Dict[str, Any]]] = [
    {"type": "technical_documentation"},
    {"category": "system_documentation"},
    {"tags": "schema"},
    None,
]
_SCHEMA_WORDS = ("table", "schema", "column")

FALLBACK_CLARIFICATION = (
    "I'm having a little trouble understanding your request. "
    "Could you please rephrase it or provide more details?"
)


@dataclass
class GraphDependencies:
    """노드가 사용하는 외부 협력자 묶음. 워크플로우 생성 시 한 번 주입됩니다."""
    llm: ILlmClient
    tools: ToolRegistry
    memory: IMemoryStore
    progress_callback: Optional[ProgressCallback] = None
    # 설정되면 대화 응답을 청크 단위로 스트리밍합니다.
    content_callback: Optional[Callable[[str], None]] = None
    history_turns: int = settings.HISTORY_TURNS


# --- [Prompts] ---

ROUTING_PROMPT = """You route requests for a data visualization assistant.
Classify the latest user message:
- chart: the user wants data from the database shown as a chart or graph
  (e.g. "Show revenue by region as a pie chart", "Plot monthly signups")
- chat: greetings, general questions, or anything that does not need database data
  (e.g. "Hello", "What can you do?")

Respond with JSON only:
{"intent": "chart" or "chat", "reasoning": "one short sentence"}"""

PLANNING_PROMPT = f"""You plan charts for a data visualization assistant backed by a SQL database.
Choose one chart type from: {", ".join(CHART_TYPES)}.
Break the data retrieval into ordered query steps. Use step numbers starting at 1.
If the request is too ambiguous to plan (unknown metric, unclear grouping), ask a clarification question instead.

Respond with JSON only:
{{
  "chartType": "pie",
  "dataRequirements": [{{"name": "revenue", "description": "total revenue", "sqlHint": "SUM(revenue)", "required": true, "dataType": "numeric"}}],
  "queryPlan": [{{"step": 1, "description": "Sum revenue per region", "tables": ["Orders"], "expectedOutput": "region, revenue", "dependsOn": []}}],
  "clarificationNeeded": null
}}
When clarification is needed, set "clarificationNeeded" to {{"question": "...", "options": ["..."], "context": "..."}}."""

GENERATION_PROMPT = f"""You write SQLite SELECT statements for chart data.
Rules:
1. Only a single SELECT statement. No WITH clauses (CTEs), no data modification.
2. Use only tables and columns documented in the schema.
3. Alias aggregated columns with readable names (e.g. SUM(amount) AS total_amount).
4. Weekly grouping: {WEEK_START_EXPRESSION}. Never use strftime('%W') or strftime('%U').
5. Monthly grouping: strftime('%Y-%m', date_column) AS month in one column.

Respond with JSON only:
{{"query": "SELECT ...", "explanation": "...", "optimizationHints": [], "estimatedRows": 10, "tablesUsed": [], "columnsUsed": []}}"""

VALIDATION_PROMPT = """You check whether SQL query results can answer one step of a chart plan.
Judge whether the columns and rows match the expected output and whether the data is plausible.

Respond with JSON only:
{"isValid": true or false, "issues": ["..."], "suggestions": ["..."]}"""

CHAT_SYSTEM_PROMPT = "You are a helpful AI assistant. You have access to tools and memory."


# --- [Utility Functions] ---

def _notify(deps: GraphDependencies, state_name: str, message: str):
    return update_progress(state_name, message, deps.progress_callback)


def _fail(state: AgentState, deps: GraphDependencies, error: str) -> Dict[str, Any]:
    """에러를 누적하고 failed 진행 상태로 전환하는 부분 업데이트를 만듭니다."""
    logger.error(error)
    return {
        "errors": list(state.get("errors", [])) + [error],
        "progress": _notify(deps, "failed", error),
    }


def _step_label(state: AgentState) -> str:
    return f"step {state.get('current_step', 0) + 1}/{max(len(state.get('query_plan', [])), 1)}"


def _normalize_plan_payload(parsed: Dict[str, Any]) -> Dict[str, Any]:
    # "clarificationNeeded": false / "" / "질문 문자열" 형태를 정리합니다.
    key = "clarificationNeeded" if "clarificationNeeded" in parsed else "clarification_needed"
    value = parsed.get(key)
    if isinstance(value, str) and value.strip():
        parsed[key] = {"question": value.strip()}
    elif not isinstance(value, dict) or not value.get("question"):
        parsed.pop(key, None)
    return parsed


def _build_generation_prompt(state: AgentState, step: int, feedback: List[str]) -> str:
    instruction = state["query_plan"][step]
    requirements = "\n".join(
        f"- {r.name} ({r.data_type}): {r.description}" + (f" [hint: {r.sql_hint}]" if r.sql_hint else "")
        for r in state.get("data_requirements", [])
    ) or "- (none specified)"
    schema = state.get("schema_context") or "(no schema documentation available)"

    prompt = (
        f"User request: {state.get('user_request', '')}\n"
        f"Chart type: {state.get('chart_type')}\n"
        f"Data requirements:\n{requirements}\n\n"
        f"Current step {instruction.step}: {instruction.description}\n"
        f"Suggested tables: {', '.join(instruction.tables) or 'any'}\n"
        f"Expected output: {instruction.expected_output or 'not specified'}\n\n"
        f"Database schema:\n{schema}"
    )
    if feedback:
        prompt += "\n\nThe previous query had these problems. Fix all of them:\n" + "\n".join(f"- {f}" for f in feedback)
        if any("week" in f.lower() for f in feedback):
            prompt += f"\nFor weekly grouping use exactly: {WEEK_START_EXPRESSION}"
    return prompt


def _extract_rows(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("data", payload.get("results", [payload]))
    if not isinstance(payload, list):
        return []
    return [row for row in payload if isinstance(row, dict)]


# --- [Workflow Nodes] ---

async def routing_node(state: AgentState, deps: GraphDependencies):
    """요청 의도를 chart / chat 으로 분류합니다."""
    progress = _notify(deps, "routing", "Understanding your request...")
    messages = [SystemMessage(content=ROUTING_PROMPT), *state.get("messages", [])]
    try:
        response = await deps.llm.complete(messages, temperature=0)
        decision = RoutingDecision.model_validate(parse_llm_response(response, ["intent"]))
        # 허용된 값 외에는 chat 으로 강제
        intent = "chart" if decision.intent.strip().lower() == "chart" else "chat"
        logger.info(f"의도 분류: {intent} ({decision.reasoning})")
        return {"intent": intent, "progress": progress}
    except Exception as e:
        return _fail(state, deps, f"Routing failed: {e}")


async def planning_node(state: AgentState, deps: GraphDependencies):
    """차트 타입, 데이터 요구사항, 단계별 쿼리 계획을 세웁니다. 실패하면 되묻기로 전환합니다."""
    progress = _notify(deps, "planning", "Planning your chart...")
    messages = [SystemMessage(content=PLANNING_PROMPT), *state.get("messages", [])]
    try:
        response = await deps.llm.complete(messages, temperature=0.3)
        plan = ChartPlan.model_validate(_normalize_plan_payload(parse_llm_response(response)))

        # 되묻기 요청이 있으면 계획보다 우선합니다.
        if plan.clarification_needed:
            logger.info(f"계획 단계에서 되묻기 요청: {plan.clarification_needed.question}")
            return {"intent": "clarify", "clarification_needed": plan.clarification_needed, "progress": progress}

        if not plan.chart_type or not plan.query_plan:
            raise LlmResponseParseError("Plan must include chartType and a non-empty queryPlan")

        logger.info(f"계획 완료: {plan.chart_type}, {len(plan.query_plan)}단계")
        return {
            "chart_type": plan.chart_type.strip().lower(),
            "data_requirements": plan.data_requirements,
            "query_plan": plan.query_plan,
            "current_step": 0,
            "retry_count": 0,
            "progress": progress,
        }
    except Exception as e:
        logger.warning(f"계획 생성 실패, 되묻기로 전환: {e}")
        return {
            "intent": "clarify",
            "clarification_needed": ClarificationRequest(question=FALLBACK_CLARIFICATION, context=str(e)),
            "progress": progress,
        }


async def _search_schema_documents(state: AgentState, deps: GraphDependencies) -> List[Document]:
    tables = sorted({t for instruction in state.get("query_plan", []) for t in instruction.tables})
    searches = []
    if tables:
        searches.append((f"Database schema tables: {', '.join(tables)}", SCHEMA_DOC_FILTER, 5))
    searches.append(
        (f"Database schema documentation tables columns relationships {state.get('user_request', '')}", SCHEMA_DOC_FILTER, 5)
    )
    searches.append(("database schema tables columns", None, 10))
    searches += [("database schema documentation", flt, 5) for flt in ALTERNATE_SCHEMA_FILTERS]

    for query, flt, limit in searches:
        try:
            documents = await deps.memory.query_vector_memory(query, flt, limit)
        except Exception as e:
            logger.warning(f"스키마 검색 실패 ({query[:40]}...): {e}")
            continue
        if flt is None and limit == 10:
            # 필터 없는 넓은 검색은 스키마 관련 문서만 남깁니다.
            documents = [d for d in documents if any(w in d.page_content.lower() for w in _SCHEMA_WORDS)]
        if documents:
            return documents
    return []


async def understanding_schema_node(state: AgentState, deps: GraphDependencies):
    """벡터 메모리에서 스키마 문서를 찾아 schema_context 로 저장합니다. 실패해도 빈 스키마로 진행합니다."""
    progress = _notify(deps, "understanding_schema", "Looking up your database schema...")
    try:
        documents = await _search_schema_documents(state, deps)
        schema = "\n\n".join(doc.page_content for doc in documents)
    except Exception as e:
        logger.error(f"스키마 조회 실패, 빈 스키마로 진행: {e}")
        schema = ""
    if not schema:
        logger.warning("스키마 문서를 찾지 못했습니다. 스키마 검증 없이 쿼리를 생성합니다.")
    return {"schema_context": schema, "progress": progress}


async def generating_query_node(state: AgentState, deps: GraphDependencies):
    """
    현재 단계의 SQL 을 생성하고 정책/스키마 검증을 수행합니다.

    컬럼 이슈는 같은 재시도 예산(retry_count / max_retries) 안에서 최대 2회까지
    이슈를 프롬프트에 담아 즉시 재생성합니다. 테이블 이슈와 정책 위반은 단계 실패입니다.
    """
    step = state.get("current_step", 0)
    progress = _notify(deps, "generating_query", f"Generating SQL query ({_step_label(state)})...")
    if get_at(state.get("query_plan"), step) is None:
        return _fail(state, deps, "No query instruction found")

    instruction = state["query_plan"][step]
    retry_count = state.get("retry_count", 0)
    max_retries = state.get("max_retries", settings.MAX_RETRIES)
    schema = state.get("schema_context", "")
    validation_results = list(state.get("validation_results", []))

    previous = get_at(validation_results, step)
    feedback: List[str] = []
    if retry_count > 0 and previous is not None and not previous.is_valid:
        feedback = previous.issues + previous.suggestions

    try:
        while True:
            messages = [
                SystemMessage(content=GENERATION_PROMPT),
                HumanMessage(content=_build_generation_prompt(state, step, feedback)),
            ]
            response = await deps.llm.complete(messages, temperature=0.1)
            parsed = extract_json_from_response(response)
            if not parsed or not parsed.get("query"):
                return _fail(state, deps, "Query generation failed: no SQL query found in the model response")
            sql_query = SQLQuery.model_validate(parsed)
            logger.debug(f"생성된 SQL ({_step_label(state)}): {sql_query.query}")

            policy_error = check_sql_policy(sql_query.query, state.get("user_request", ""), instruction.description)
            if policy_error:
                return {**_fail(state, deps, policy_error), "retry_count": retry_count}

            if schema.strip():
                schema_result = validate_query_against_schema(sql_query.query, schema)
                if not schema_result.is_valid:
                    sql_query.schema_validation_issues = schema_result.issues
                    table_issues, column_issues = split_issues(schema_result.issues)
                    can_retry = retry_count < GUIDED_RETRY_LIMIT and retry_count + 1 < max_retries
                    if column_issues and not table_issues and can_retry:
                        retry_count += 1
                        feedback = column_issues + ["Use only columns listed in the schema documentation"]
                        validation_results = set_at(
                            validation_results,
                            step,
                            ValidationResult(is_valid=False, issues=column_issues, suggestions=feedback[-1:]),
                        )
                        _notify(deps, "retrying", f"Fixing column references (attempt {retry_count + 1}/{max_retries})...")
                        continue

                    friendly = create_user_friendly_error_message(schema_result.issues, schema)
                    return {
                        **_fail(state, deps, friendly),
                        "friendly_error_message": friendly,
                        "sql_queries": set_at(state.get("sql_queries", []), step, sql_query),
                        "validation_results": validation_results,
                        "retry_count": retry_count,
                    }

            return {
                "sql_queries": set_at(state.get("sql_queries", []), step, sql_query),
                "validation_results": validation_results,
                "retry_count": retry_count,
                "progress": progress,
            }
    except Exception as e:
        return _fail(state, deps, f"Query generation failed: {e}")


async def executing_query_node(state: AgentState, deps: GraphDependencies):
    """SQL 도구로 현재 단계 쿼리를 실행합니다. 실행 에러는 결과에 기록하고 검증 단계로 넘깁니다."""
    step = state.get("current_step", 0)
    progress = _notify(deps, "executing_query", f"Executing SQL query ({_step_label(state)})...")
    results = state.get("query_results", [])

    sql_query = get_at(state.get("sql_queries"), step)
    if sql_query is None or not sql_query.query.strip():
        result = QueryResult(error="No SQL query to execute")
        return {"query_results": set_at(results, step, result), "progress": progress}

    tool = deps.tools.get_tool(SQL_TOOL_NAME)
    if tool is None:
        message = "SQL query tool not available"
        return {**_fail(state, deps, message), "query_results": set_at(results, step, QueryResult(error=message))}

    started = time.perf_counter()
    try:
        raw = await tool.ainvoke(json.dumps({"query": sql_query.query}))
        payload = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        if isinstance(payload, dict) and payload.get("error"):
            raise RuntimeError(f"SQL execution failed: {payload['error']}")
        rows = _extract_rows(payload)
        result = QueryResult(
            data=rows,
            row_count=len(rows),
            execution_time=round((time.perf_counter() - started) * 1000, 2),
        )
        logger.info(f"쿼리 실행 완료 ({_step_label(state)}): {len(rows)}행")
    except Exception as e:
        logger.error(f"SQL 실행 에러: {e}")
        # 실행 실패도 결과로 남겨 검증 단계에서 재시도 여부를 판단합니다.
        result = QueryResult(data=[], row_count=0, execution_time=0, error=str(e))

    return {"query_results": set_at(results, step, result), "progress": progress}


async def validating_results_node(state: AgentState, deps: GraphDependencies):
    """실행 결과가 단계 목표에 맞는지 검증합니다. 실행 에러가 있으면 LLM 호출 없이 무효 처리합니다."""
    if state.get("errors"):
        return {"progress": state.get("progress") or make_progress("failed", "Failed")}

    step = state.get("current_step", 0)
    progress = _notify(deps, "validating_results", f"Validating query results ({_step_label(state)})...")
    result = get_at(state.get("query_results"), step)
    instruction = get_at(state.get("query_plan"), step)
    if result is None or instruction is None:
        return _fail(state, deps, "No results to validate")

    if result.error:
        suggestions = ["Regenerate the query using only documented tables and columns"]
        lowered = result.error.lower()
        if "no such table" in lowered or "no such column" in lowered:
            suggestions.insert(0, "Check table and column names against the schema")
        validation = ValidationResult(
            is_valid=False,
            issues=[f"Query execution failed: {result.error}"],
            suggestions=suggestions,
        )
    else:
        sql_query = get_at(state.get("sql_queries"), step)
        prompt = (
            f"Step goal: {instruction.description}\n"
            f"Expected output: {instruction.expected_output or 'not specified'}\n"
            f"SQL: {sql_query.query if sql_query else ''}\n"
            f"Row count: {result.row_count}\n"
            f"Execution time: {result.execution_time} ms\n"
            f"Sample rows: {json.dumps(result.data[:VALIDATION_SAMPLE_ROWS], default=str)}\n\n"
            f"Schema (truncated):\n{(state.get('schema_context') or '')[:SCHEMA_PREVIEW_LENGTH]}"
        )
        try:
            response = await deps.llm.complete(
                [SystemMessage(content=VALIDATION_PROMPT), HumanMessage(content=prompt)], temperature=0.1
            )
            validation = ValidationResult.model_validate(parse_llm_response(response))
        except Exception as e:
            logger.warning(f"결과 검증 실패, 무효로 처리: {e}")
            validation = ValidationResult(
                is_valid=False,
                issues=["Validation process failed"],
                suggestions=["Retry query generation"],
            )

    logger.info(f"결과 검증 ({_step_label(state)}): valid={validation.is_valid}, issues={validation.issues}")
    updates: Dict[str, Any] = {
        "validation_results": set_at(state.get("validation_results", []), step, validation),
        "progress": progress,
    }
    max_retries = state.get("max_retries", settings.MAX_RETRIES)
    if not validation.is_valid and state.get("retry_count", 0) >= max_retries:
        updates.update(_fail(
            state, deps,
            f"Query for step {step + 1} failed validation after {max_retries} attempts: {'; '.join(validation.issues)}",
        ))
    return updates


async def transforming_data_node(state: AgentState, deps: GraphDependencies):
    """모든 단계의 쿼리 결과를 차트 데이터로 변환합니다."""
    _notify(deps, "transforming_data", "Preparing chart data...")
    chart_type = state.get("chart_type")
    if not chart_type:
        return _fail(state, deps, "Data transformation failed: no chart type was planned")
    try:
        chart = await transform(state.get("query_results", []), chart_type, deps.llm)
    except Exception as e:
        return _fail(state, deps, f"Data transformation failed: {e}")
    logger.info(f"차트 변환 완료: {chart.type} - {chart.title}")
    return {"final_chart_data": chart, "progress": _notify(deps, "completed", "Chart ready!")}


async def clarifying_node(state: AgentState, deps: GraphDependencies):
    """사용자에게 되물을 질문이 준비된 상태를 표시합니다."""
    return {"progress": _notify(deps, "clarifying", "Need clarification from user...")}


async def chatting_node(state: AgentState, deps: GraphDependencies):
    """최근 대화 기록을 포함해 일반 대화 응답을 생성합니다."""
    _notify(deps, "chatting", "Thinking...")
    try:
        turns = await deps.memory.get_recent_messages(
            state.get("user_id", ""), state.get("session_id", ""), deps.history_turns
        )
    except Exception as e:
        logger.warning(f"대화 기록 조회 실패, 기록 없이 진행: {e}")
        turns = []

    messages = [
        SystemMessage(content=CHAT_SYSTEM_PROMPT),
        *history_to_messages(turns),
        HumanMessage(content=state.get("user_request", "")),
    ]
    try:
        if deps.content_callback is not None:
            chunks = []
            async for chunk in deps.llm.stream(messages):
                chunks.append(chunk)
                deps.content_callback(chunk)
            reply = "".join(chunks).strip()
        else:
            reply = await deps.llm.complete(messages)
        if not reply or not reply.strip():
            raise LlmResponseParseError("empty response")
    except Exception as e:
        return _fail(state, deps, f"Chatting failed: {e}")
    return {
        "chat_response": reply,
        "messages": [AIMessage(content=reply)],
        "progress": _notify(deps, "completed", "Response ready!"),
    }


# --- [Pure Updaters] ---

def next_step_updater(state: AgentState, deps: Optional[GraphDependencies] = None):
    """다음 쿼리 단계로 커서를 옮기고 재시도 횟수를 초기화합니다."""
    step = state.get("current_step", 0) + 1
    callback = deps.progress_callback if deps else None
    return {
        "current_step": step,
        "retry_count": 0,
        "progress": update_progress(
            "generating_query", f"Moving to step {step + 1}/{len(state.get('query_plan', []))}...", callback
        ),
    }


def retry_updater(state: AgentState, deps: Optional[GraphDependencies] = None):
    """재시도 횟수를 올립니다. 예산을 모두 쓰면 에러를 남깁니다."""
    retry_count = state.get("retry_count", 0) + 1
    callback = deps.progress_callback if deps else None
    max_retries = state.get("max_retries", settings.MAX_RETRIES)
    if retry_count >= max_retries:
        step = state.get("current_step", 0)
        previous = get_at(state.get("validation_results"), step)
        issues = "; ".join(previous.issues) if previous else "unknown issues"
        error = f"Query for step {step + 1} failed validation after {max_retries} attempts: {issues}"
        logger.error(error)
        return {
            "retry_count": retry_count,
            "errors": list(state.get("errors", [])) + [error],
            "progress": update_progress("failed", error, callback),
        }
    return {
        "retry_count": retry_count,
        "progress": update_progress(
            "retrying", f"Retrying query generation (attempt {retry_count + 1}/{max_retries})...", callback
        ),
    }
