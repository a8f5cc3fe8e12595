"""
공용 테스트 더블 모음
그래프/오케스트레이터 테스트는 실제 LLM, Redis, DB 대신 아래 스텁을 주입해 결정적으로 실행합니다.
"""

import json
from typing import Any, Dict, List, Optional

import pytest
from langchain_core.documents import Document

from chart_agent.domain.models import ChatTurn
from chart_agent.interfaces.llm import ILlmClient
from chart_agent.interfaces.memory import IMemoryStore
from chart_agent.interfaces.tools import ITool


class ScriptedLlm(ILlmClient):
    """큐에 넣어둔 응답을 순서대로 돌려주고 호출 내역을 기록하는 LLM 스텁"""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, temperature=None) -> str:
        self.calls.append({"messages": messages, "temperature": temperature})
        if not self.responses:
            raise AssertionError("ScriptedLlm 응답 큐가 비었습니다.")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response if isinstance(response, str) else json.dumps(response)

    async def stream(self, messages, temperature=None):
        yield await self.complete(messages, temperature)


class FakeMemory(IMemoryStore):
    """스키마 문서와 대화 기록을 메모리에 들고 있는 저장소 스텁"""

    def __init__(self, schema_docs: Optional[List[str]] = None, history: Optional[List[ChatTurn]] = None):
        self.documents = [
            Document(page_content=doc, metadata={"type": "technical_documentation"}) for doc in (schema_docs or [])
        ]
        self.history = list(history or [])
        self.stored: List[Dict[str, Any]] = []

    async def get_recent_messages(self, user_id, session_id, limit=10):
        return self.history[-limit:]

    async def store_short_term_memory(self, user_id, session_id, user_message, assistant_response, metadata=None):
        self.stored.append({
            "user_id": user_id,
            "session_id": session_id,
            "user_message": user_message,
            "assistant_response": assistant_response,
            "metadata": metadata or {},
        })

    async def query_vector_memory(self, text, filter=None, limit=5):
        return self.documents[:limit]

    async def store_vector_memory(self, content, metadata=None):
        self.documents.append(Document(page_content=content, metadata=metadata or {}))

    async def clear_session_memory(self, user_id, session_id):
        self.history = []


class FakeSqlTool(ITool):
    """쿼리별로 준비된 결과(JSON)를 돌려주는 sql_query 도구 스텁"""

    name = "sql_query"
    description = "fake sql tool"

    def __init__(self, responses: List[Dict[str, Any]]):
        self.responses = list(responses)
        self.queries: List[str] = []

    async def ainvoke(self, payload: str) -> str:
        self.queries.append(json.loads(payload)["query"])
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return json.dumps(response)


ORDERS_SCHEMA = "## Orders Table\nColumns:\n- region (TEXT)\n- revenue (REAL)\n- order_date (TEXT)"


@pytest.fixture
def scripted_llm():
    return ScriptedLlm


@pytest.fixture
def fake_memory():
    return FakeMemory


@pytest.fixture
def fake_sql_tool():
    return FakeSqlTool


@pytest.fixture
def orders_schema():
    return ORDERS_SCHEMA
