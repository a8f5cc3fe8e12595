import logging
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from langchain_core.documents import Document
from langchain_core.vectorstores import InMemoryVectorStore, VectorStore
from langchain_openai import OpenAIEmbeddings
from pydantic import ValidationError

from chart_agent.common.config import settings
from chart_agent.domain.models import ChatTurn
from chart_agent.interfaces.memory import IMemoryStore

logger = logging.getLogger(__name__)

# 메타데이터 필터는 검색 후 적용하므로 넉넉히 가져옵니다.
FILTER_OVERSAMPLE = 4


def session_key(user_id: str, session_id: str) -> str:
    return f"chat:{user_id}:{session_id}"


def matches_filter(metadata: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """metadata[key] == value 조건을 모두 만족하는지 확인합니다. 리스트 값은 포함 여부로 판단합니다."""
    for key, expected in (filter or {}).items():
        actual = metadata.get(key)
        if isinstance(actual, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


class RedisMemoryStore(IMemoryStore):
    """
    Redis 리스트에 세션 대화를 저장하고, LangChain VectorStore 로 문서를 검색하는 메모리 저장소입니다.
    vector_store 가 없으면 문서 검색은 항상 빈 결과를 돌려줍니다.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        vector_store: Optional[VectorStore] = None,
        ttl: int = settings.REDIS_TTL,
        max_messages: int = settings.SHORT_TERM_MEMORY_LIMIT,
    ):
        self.redis_client = redis_client
        self.vector_store = vector_store
        self.ttl = ttl
        self.max_messages = max_messages

    # --- [Short-term Memory] ---

    async def get_recent_messages(self, user_id: str, session_id: str, limit: int = 10) -> List[ChatTurn]:
        raw_items = await self.redis_client.lrange(session_key(user_id, session_id), 0, limit - 1)
        turns = []
        for raw in raw_items:
            try:
                turns.append(ChatTurn.model_validate_json(raw))
            except (ValidationError, ValueError) as e:
                logger.warning(f"손상된 대화 기록 항목 건너뜀: {e}")
        # LPUSH 로 저장했으므로 최신 순서 → 시간순으로 뒤집습니다.
        turns.reverse()
        return turns

    async def store_short_term_memory(
        self,
        user_id: str,
        session_id: str,
        user_message: str,
        assistant_response: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        turn = ChatTurn(
            user_id=user_id,
            session_id=session_id,
            user_message=user_message,
            assistant_response=assistant_response,
            metadata=metadata or {},
        )
        key = session_key(user_id, session_id)
        await self.redis_client.lpush(key, turn.model_dump_json())
        await self.redis_client.ltrim(key, 0, self.max_messages - 1)
        await self.redis_client.expire(key, self.ttl)

    async def clear_session_memory(self, user_id: str, session_id: str) -> None:
        await self.redis_client.delete(session_key(user_id, session_id))

    # --- [Vector Memory] ---

    async def query_vector_memory(
        self, text: str, filter: Optional[Dict[str, Any]] = None, limit: int = 5
    ) -> List[Document]:
        if self.vector_store is None:
            return []
        k = limit * FILTER_OVERSAMPLE if filter else limit
        documents = await self.vector_store.asimilarity_search(text, k=k)
        matched = [doc for doc in documents if matches_filter(doc.metadata, filter)]
        return matched[:limit]

    async def store_vector_memory(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if self.vector_store is None:
            logger.warning("벡터 저장소가 설정되지 않아 문서를 저장하지 않습니다.")
            return
        await self.vector_store.aadd_documents([Document(page_content=content, metadata=metadata or {})])


def build_memory_store() -> RedisMemoryStore:
    """설정값으로 Redis 클라이언트와 인메모리 벡터 저장소를 구성합니다."""
    redis_client = redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
    )
    embeddings = OpenAIEmbeddings(
        model=settings.EMBEDDING_MODEL_NAME,
        base_url=settings.LLM_BASE_URL,
        api_key=settings.LLM_API_KEY or "none",
    )
    return RedisMemoryStore(redis_client, InMemoryVectorStore(embeddings))
