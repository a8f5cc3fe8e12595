from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from langchain_core.documents import Document

from chart_agent.domain.models import ChatTurn

class IMemoryStore(ABC):
    """
    대화 기록(단기)과 문서 검색(장기) 메모리를 위한 인터페이스입니다.
    """

    @abstractmethod
    async def get_recent_messages(self, user_id: str, session_id: str, limit: int = 10) -> List[ChatTurn]:
        """
        세션의 최근 대화 턴을 시간순(오래된 것 → 최신)으로 돌려줍니다.

        Args:
            user_id (str): 사용자 식별자
            session_id (str): 세션 식별자
            limit (int): 최대 턴 수

        Returns:
            List[ChatTurn]: 시간순 대화 턴 목록
        """
        pass

    @abstractmethod
    async def store_short_term_memory(
        self,
        user_id: str,
        session_id: str,
        user_message: str,
        assistant_response: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """한 번의 요청/응답 쌍을 세션 기록에 추가합니다."""
        pass

    @abstractmethod
    async def query_vector_memory(
        self, text: str, filter: Optional[Dict[str, Any]] = None, limit: int = 5
    ) -> List[Document]:
        """
        유사도 검색으로 문서를 찾습니다.

        Args:
            text (str): 검색 질의
            filter (Optional[Dict[str, Any]]): 메타데이터 일치 조건 (metadata[key] == value)
            limit (int): 최대 문서 수

        Returns:
            List[Document]: page_content 와 metadata 를 가진 문서 목록
        """
        pass

    @abstractmethod
    async def store_vector_memory(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        pass

    @abstractmethod
    async def clear_session_memory(self, user_id: str, session_id: str) -> None:
        pass
