from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional

from langchain_core.messages import BaseMessage

class ILlmClient(ABC):
    """
    LLM 클라이언트를 위한 추상 베이스 클래스(Interface)입니다.
    그래프 노드와 변환 엔진은 이 규격만 의존하므로 테스트에서는 스크립트된 스텁으로 교체할 수 있습니다.
    """

    @abstractmethod
    async def complete(self, messages: List[BaseMessage], temperature: Optional[float] = None) -> str:
        """
        메시지 목록을 한 번에 보내고 전체 응답 텍스트를 받습니다.

        Args:
            messages (List[BaseMessage]): System/Human/AI 메시지로 구성된 대화 컨텍스트
            temperature (Optional[float]): 호출별 샘플링 온도 (None 이면 클라이언트 기본값)

        Returns:
            str: 모델 응답 텍스트
        """
        pass

    @abstractmethod
    def stream(self, messages: List[BaseMessage], temperature: Optional[float] = None) -> AsyncIterator[str]:
        """
        응답을 토큰(청크) 단위로 흘려보냅니다.

        Args:
            messages (List[BaseMessage]): 대화 컨텍스트
            temperature (Optional[float]): 호출별 샘플링 온도

        Returns:
            AsyncIterator[str]: 응답 텍스트 조각
        """
        pass
