import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

from chart_agent.common.config import settings
from chart_agent.domain.models import AgentRequest, AgentResponse, ProgressEvent
from chart_agent.graph.nodes import GraphDependencies
from chart_agent.graph.state import AgentState, ProgressCallback, ProgressState
from chart_agent.graph.workflow import run_agent_flow
from chart_agent.infrastructure.sql_tool import ToolRegistry
from chart_agent.interfaces.llm import ILlmClient
from chart_agent.interfaces.memory import IMemoryStore

logger = logging.getLogger(__name__)

NO_OUTPUT_MESSAGE = "The request completed, but I have no specific output."


def build_response_from_state(state: AgentState) -> AgentResponse:
    """
    최종 상태를 사용자 응답으로 바꿉니다.
    우선순위: 되묻기 → 에러 → 차트 → 대화 응답 → 기본 문구
    """
    progress = state.get("progress") or {}
    metadata: Dict[str, Any] = {
        "intent": state.get("intent"),
        "chart_type": state.get("chart_type"),
        "steps": len(state.get("query_plan", []) or []),
        "retry_count": state.get("retry_count", 0),
        "progress": dict(progress),
    }

    clarification = state.get("clarification_needed")
    if clarification:
        return AgentResponse(message=clarification.question, clarification_needed=clarification, metadata=metadata)

    errors = state.get("errors") or []
    if errors:
        metadata["errors"] = list(errors)
        return AgentResponse(
            message=f"Sorry, I couldn't complete your request: {'; '.join(errors)}",
            metadata=metadata,
        )

    chart = state.get("final_chart_data")
    if chart:
        queries = [q.query for q in state.get("sql_queries", []) if q is not None]
        metadata["sql_queries"] = queries
        return AgentResponse(message=chart.description or "Here is your chart:", chart_data=chart, metadata=metadata)

    if state.get("chat_response"):
        return AgentResponse(message=state["chat_response"], metadata=metadata)

    return AgentResponse(message=NO_OUTPUT_MESSAGE, metadata=metadata)


class AgentOrchestrator:
    """
    요청 한 건의 수명주기를 관리합니다.
    워크플로우 실행 → 응답 생성 → 대화 기록 저장 순서로 동작하며, 스트리밍 모드에서는
    진행 이벤트를 실시간으로 흘려보냅니다.
    """

    def __init__(
        self,
        llm: ILlmClient,
        tools: ToolRegistry,
        memory: IMemoryStore,
        max_retries: int = settings.MAX_RETRIES,
    ):
        self.llm = llm
        self.tools = tools
        self.memory = memory
        self.max_retries = max_retries

    def _dependencies(
        self,
        progress_callback: Optional[ProgressCallback] = None,
        content_callback: Optional[Callable[[str], None]] = None,
    ) -> GraphDependencies:
        return GraphDependencies(
            llm=self.llm,
            tools=self.tools,
            memory=self.memory,
            progress_callback=progress_callback,
            content_callback=content_callback,
        )

    async def process_request(
        self,
        request: AgentRequest,
        progress_callback: Optional[ProgressCallback] = None,
        content_callback: Optional[Callable[[str], None]] = None,
    ) -> AgentResponse:
        logger.info(f"요청 처리 시작 (user={request.user_id}, session={request.session_id})")
        state = await run_agent_flow(
            request.message,
            request.user_id,
            request.session_id,
            self._dependencies(progress_callback, content_callback),
            max_retries=self.max_retries,
        )
        response = build_response_from_state(state)

        # 기록 저장 실패는 응답에 영향을 주지 않습니다.
        try:
            await self.memory.store_short_term_memory(
                request.user_id,
                request.session_id,
                request.message,
                response.message,
                {"intent": state.get("intent"), "chart_type": state.get("chart_type")},
            )
        except Exception as e:
            logger.error(f"대화 기록 저장 실패: {e}")
        return response

    async def stream_response(self, request: AgentRequest) -> AsyncIterator[ProgressEvent]:
        """
        진행 상태를 progress 이벤트로, 대화 응답 청크를 content 이벤트로 내보내고
        마지막에 done(또는 error) 이벤트를 보냅니다.
        """
        queue: asyncio.Queue = asyncio.Queue()

        def on_progress(progress: ProgressState):
            queue.put_nowait(ProgressEvent(
                type="progress",
                operation=progress["current_state"],
                message=progress["message"],
                current_state=progress["current_state"],
                percentage=progress["percentage"],
            ))

        def on_content(chunk: str):
            queue.put_nowait(ProgressEvent(
                type="content", operation="chatting", message=chunk, current_state="chatting", content=chunk
            ))

        async def run():
            try:
                return await self.process_request(request, progress_callback=on_progress, content_callback=on_content)
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(run())
        while True:
            event = await queue.get()
            if event is None:
                break
            yield event

        try:
            response = await task
        except Exception as e:
            logger.error(f"스트리밍 처리 실패: {e}")
            yield ProgressEvent(type="error", operation="failed", message=str(e), current_state="failed", percentage=100)
            return

        progress = response.metadata.get("progress", {})
        yield ProgressEvent(
            type="done",
            operation="completed",
            message=response.message,
            current_state=progress.get("current_state", "completed"),
            percentage=100,
            content=response.model_dump(mode="json"),
        )
