from abc import ABC, abstractmethod

class ITool(ABC):
    """
    에이전트가 이름으로 찾아 호출하는 도구의 규격입니다.
    입력과 출력은 모두 JSON 문자열입니다.
    """

    name: str = ""
    description: str = ""

    @abstractmethod
    async def ainvoke(self, payload: str) -> str:
        """
        도구를 실행합니다.

        Args:
            payload (str): JSON 문자열 입력

        Returns:
            str: JSON 문자열 결과. 도구 수준 에러는 {"error": "..."} 형태로 돌려줍니다.
        """
        pass
