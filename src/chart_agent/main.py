import json
import logging
from contextlib import asynccontextmanager
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse

from chart_agent.common.config import settings
from chart_agent.domain.models import AgentRequest, AgentResponse, VectorDocumentRequest
from chart_agent.infrastructure.ingestor import SchemaIngestor
from chart_agent.infrastructure.llm_client import get_llm_client
from chart_agent.infrastructure.memory_store import build_memory_store
from chart_agent.infrastructure.sql_tool import build_tool_registry, get_sql_engine
from chart_agent.orchestrator import AgentOrchestrator

# 로그 설정
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@lru_cache
def get_orchestrator() -> AgentOrchestrator:
    """프로세스당 하나의 오케스트레이터를 구성합니다. 테스트에서는 dependency_overrides 로 교체합니다."""
    engine = get_sql_engine()
    return AgentOrchestrator(
        llm=get_llm_client(),
        tools=build_tool_registry(engine),
        memory=build_memory_store(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 인메모리 벡터 저장소는 프로세스마다 비어 있으므로 시작 시 스키마 문서를 채웁니다.
    if settings.SEED_SCHEMA_ON_STARTUP:
        orchestrator = get_orchestrator()
        try:
            tables = await SchemaIngestor(get_sql_engine(), orchestrator.memory).ingest()
            logger.info(f"스키마 문서 적재: {tables}")
        except Exception as e:
            logger.error(f"스키마 문서 적재 실패 (스키마 검증 없이 동작): {e}")
    yield


app = FastAPI(
    title="Chart Agent AI API",
    description="자연어 요청을 SQL 조회와 차트 데이터로 바꿔주는 대화형 에이전트 서비스",
    lifespan=lifespan,
)

# --- [SECTION: API 엔드포인트] ---

@app.post("/api/v1/agent", response_model=AgentResponse)
async def run_agent(req: AgentRequest, orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """
    요청을 분류한 뒤 차트 생성(계획 → 스키마 → SQL → 검증 → 변환) 또는 일반 대화를 수행합니다.
    """
    try:
        return await orchestrator.process_request(req)
    except Exception as e:
        logger.error(f"Critical System Error: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/v1/agent/stream")
async def stream_agent(req: AgentRequest, orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    """진행 상태를 Server-Sent Events 로 전달하고 마지막에 done 이벤트로 최종 응답을 보냅니다."""
    async def event_source():
        async for event in orchestrator.stream_response(req):
            yield f"data: {json.dumps(event.model_dump(mode='json'), ensure_ascii=False)}\n\n"

    return StreamingResponse(event_source(), media_type="text/event-stream")


# --- [SECTION: 메모리 및 도구 관리] ---

@app.delete("/api/v1/memory/session/{session_id}")
async def clear_session_memory(
    session_id: str,
    user_id: str = Query(..., min_length=1),
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
):
    """특정 세션의 대화 기록을 삭제합니다."""
    try:
        await orchestrator.memory.clear_session_memory(user_id, session_id)
    except Exception as e:
        logger.error(f"세션 메모리 삭제 실패: {e}")
        raise HTTPException(status_code=500, detail="Failed to clear session memory")
    return {"message": "Session memory cleared"}


@app.post("/api/v1/memory/vector")
async def store_vector_document(
    req: VectorDocumentRequest, orchestrator: AgentOrchestrator = Depends(get_orchestrator)
):
    """스키마 설명 등 참고 문서를 벡터 메모리에 저장합니다."""
    try:
        await orchestrator.memory.store_vector_memory(req.content, req.metadata)
    except Exception as e:
        logger.error(f"벡터 메모리 저장 실패: {e}")
        raise HTTPException(status_code=500, detail="Failed to store document")
    return {"message": "Document stored in vector memory"}


@app.get("/api/v1/tools")
async def list_tools(orchestrator: AgentOrchestrator = Depends(get_orchestrator)):
    return {"tools": orchestrator.tools.describe()}


@app.get("/health")
async def health_check():
    """서버 상태 및 LLM 모델 정보 확인"""
    return {
        "status": "healthy",
        "project": "Chart Agent AI",
        "model": settings.LLM_MODEL_NAME
    }


def run():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)


if __name__ == "__main__":
    run()
