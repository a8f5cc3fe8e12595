import re
import logging
from typing import AsyncIterator, List, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage
from langchain_openai import ChatOpenAI

from chart_agent.common.config import settings
from chart_agent.interfaces.llm import ILlmClient

# 로깅 설정
logger = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 10000

# 사용자 입력에서 제거할 지시 주입 문구
_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(?:all\s+)?(?:the\s+)?previous\s+instructions", re.IGNORECASE),
    re.compile(r"disregard\s+(?:all\s+)?(?:the\s+)?(?:above|previous)", re.IGNORECASE),
    re.compile(r"forget\s+(?:all\s+)?(?:your\s+)?instructions", re.IGNORECASE),
    re.compile(r"^\s*system\s*prompt\s*:", re.IGNORECASE | re.MULTILINE),
    re.compile(r"<\|im_(?:start|end)\|>", re.IGNORECASE),
]
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

# 응답에서 가릴 민감 정보
_SECRET_ASSIGNMENT = re.compile(r"\b(password|passwd|api[_-]?key|secret|access[_-]?token)\b(\s*[:=]\s*)([^\s,;\"']+)", re.IGNORECASE)
_SECRET_TOKEN = re.compile(r"\bsk-[A-Za-z0-9_-]{16,}\b")


def sanitize_input(text: str) -> str:
    """사용자 입력에서 제어 문자와 지시 주입 문구를 제거하고 길이를 제한합니다."""
    cleaned = _CONTROL_CHARS.sub("", text or "")
    for pattern in _INJECTION_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    if len(cleaned) > MAX_INPUT_LENGTH:
        logger.warning(f"입력 길이 초과 ({len(cleaned)}자), {MAX_INPUT_LENGTH}자로 자름")
        cleaned = cleaned[:MAX_INPUT_LENGTH]
    return cleaned.strip()


def filter_output(text: str) -> str:
    """모델 응답에 섞인 비밀번호/키/토큰 값을 가립니다."""
    redacted = _SECRET_ASSIGNMENT.sub(lambda m: f"{m.group(1)}{m.group(2)}[REDACTED]", text or "")
    return _SECRET_TOKEN.sub("[REDACTED]", redacted)


class LlmGateway(ILlmClient):
    """
    ChatOpenAI 기반 LLM 게이트웨이입니다.
    OpenAI 호환 규격을 사용하므로 vLLM, Grok 등 base_url 만 바꿔 연결할 수 있으며,
    주 모델 실패 시 보조 모델로 한 번 더 시도합니다.
    """

    def __init__(self, primary: BaseChatModel, fallback: Optional[BaseChatModel] = None):
        self.primary = primary
        self.fallback = fallback

    @staticmethod
    def _prepare(messages: List[BaseMessage]) -> List[BaseMessage]:
        # 사용자 메시지만 정제합니다. 시스템 프롬프트는 내부에서 만든 것입니다.
        prepared = []
        for message in messages:
            if isinstance(message, HumanMessage) and isinstance(message.content, str):
                message = HumanMessage(content=sanitize_input(message.content))
            prepared.append(message)
        return prepared

    @staticmethod
    def _bind(model: BaseChatModel, temperature: Optional[float]):
        return model.bind(temperature=temperature) if temperature is not None else model

    async def complete(self, messages: List[BaseMessage], temperature: Optional[float] = None) -> str:
        prepared = self._prepare(messages)
        try:
            response = await self._bind(self.primary, temperature).ainvoke(prepared)
        except Exception as e:
            if self.fallback is None:
                logger.error(f"LLM 호출 실패: {e}")
                raise
            logger.warning(f"주 모델 호출 실패, 보조 모델로 재시도: {e}")
            response = await self._bind(self.fallback, temperature).ainvoke(prepared)
        return filter_output(str(response.content)).strip()

    async def stream(self, messages: List[BaseMessage], temperature: Optional[float] = None) -> AsyncIterator[str]:
        prepared = self._prepare(messages)
        emitted = False
        try:
            async for chunk in self._bind(self.primary, temperature).astream(prepared):
                text = chunk.content if isinstance(chunk.content, str) else ""
                if text:
                    emitted = True
                    yield filter_output(text)
        except Exception as e:
            # 이미 일부를 내보냈다면 중복 응답이 되므로 그대로 실패시킵니다.
            if emitted:
                logger.error(f"스트리밍 중단: {e}")
                raise
            logger.warning(f"스트리밍 실패, 일반 호출로 대체: {e}")
            yield await self.complete(messages, temperature)


def _chat_model(model_name: str) -> ChatOpenAI:
    return ChatOpenAI(
        model=model_name,
        base_url=settings.LLM_BASE_URL,
        api_key=settings.LLM_API_KEY or "none",
        temperature=settings.LLM_TEMPERATURE,
        max_tokens=settings.LLM_MAX_TOKENS,
        timeout=settings.LLM_TIMEOUT,
    )


def get_llm_client() -> LlmGateway:
    """LLM 객체를 지연 생성하여 테스트 수집 시 api_key 에러를 방지합니다."""
    fallback = _chat_model(settings.LLM_FALLBACK_MODEL_NAME) if settings.LLM_FALLBACK_MODEL_NAME else None
    return LlmGateway(_chat_model(settings.LLM_MODEL_NAME), fallback)
