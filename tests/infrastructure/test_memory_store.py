import pytest
from unittest.mock import AsyncMock
from langchain_core.embeddings import DeterministicFakeEmbedding
from langchain_core.vectorstores import InMemoryVectorStore

from chart_agent.domain.models import ChatTurn
from chart_agent.infrastructure.memory_store import RedisMemoryStore, matches_filter, session_key


def make_turn(n):
    return ChatTurn(user_id="u1", session_id="s1", user_message=f"q{n}", assistant_response=f"a{n}")

# --- [1. 단기 메모리 (Redis)] ---

@pytest.mark.asyncio
async def test_get_recent_messages_is_chronological():
    """LPUSH 순서(최신 우선)를 시간순으로 뒤집고 손상된 항목은 건너뛰는지 확인"""
    redis_client = AsyncMock()
    redis_client.lrange.return_value = [make_turn(2).model_dump_json(), "{broken", make_turn(1).model_dump_json()]
    store = RedisMemoryStore(redis_client)

    turns = await store.get_recent_messages("u1", "s1", limit=3)

    redis_client.lrange.assert_awaited_once_with("chat:u1:s1", 0, 2)
    assert [t.user_message for t in turns] == ["q1", "q2"]

@pytest.mark.asyncio
async def test_store_short_term_memory_trims_and_expires():
    redis_client = AsyncMock()
    store = RedisMemoryStore(redis_client, ttl=60, max_messages=10)

    await store.store_short_term_memory("u1", "s1", "Hello", "Hi!", {"intent": "chat"})

    key, raw = redis_client.lpush.await_args.args
    assert key == session_key("u1", "s1")
    saved = ChatTurn.model_validate_json(raw)
    assert saved.assistant_response == "Hi!"
    assert saved.metadata == {"intent": "chat"}
    redis_client.ltrim.assert_awaited_once_with(key, 0, 9)
    redis_client.expire.assert_awaited_once_with(key, 60)

@pytest.mark.asyncio
async def test_clear_session_memory():
    redis_client = AsyncMock()
    await RedisMemoryStore(redis_client).clear_session_memory("u1", "s1")
    redis_client.delete.assert_awaited_once_with("chat:u1:s1")

# --- [2. 문서 검색 (Vector Store)] ---

def test_matches_filter():
    assert matches_filter({"type": "technical_documentation"}, {"type": "technical_documentation"})
    assert matches_filter({"tags": ["schema", "sql"]}, {"tags": "schema"})
    assert not matches_filter({"type": "faq"}, {"type": "technical_documentation"})
    assert matches_filter({"anything": 1}, None)

@pytest.mark.asyncio
async def test_vector_memory_filters_by_metadata():
    store = RedisMemoryStore(AsyncMock(), InMemoryVectorStore(DeterministicFakeEmbedding(size=16)))
    await store.store_vector_memory("## orders Table\nColumns:\n- revenue", {"type": "technical_documentation"})
    await store.store_vector_memory("Office hours are 9 to 5", {"type": "faq"})

    schema_docs = await store.query_vector_memory("database schema", {"type": "technical_documentation"}, limit=5)
    assert [d.page_content.splitlines()[0] for d in schema_docs] == ["## orders Table"]

    everything = await store.query_vector_memory("database schema", None, limit=5)
    assert len(everything) == 2

@pytest.mark.asyncio
async def test_vector_memory_without_store():
    store = RedisMemoryStore(AsyncMock())
    await store.store_vector_memory("ignored")
    assert await store.query_vector_memory("anything") == []
