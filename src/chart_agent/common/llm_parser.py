import json
import re
import logging
from typing import Any, Dict, List, Optional

from chart_agent.common.exceptions import LlmResponseParseError

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _balanced_objects(content: str):
    """문자열 안에서 중괄호 균형이 맞는 JSON 후보 구간을 앞에서부터 순서대로 반환합니다."""
    depth, start, in_string, escaped = 0, None, False, False
    for idx, ch in enumerate(content):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start is not None:
                yield content[start:idx + 1]
                start = None


def extract_json_from_response(content: str) -> Optional[Dict[str, Any]]:
    """
    LLM 응답 텍스트에서 JSON 객체를 추출합니다.
    코드 펜스, 앞뒤 설명 문장, 여러 객체가 섞인 응답까지 순서대로 시도하고
    모두 실패하면 None을 반환합니다.
    """
    if not content:
        return None

    candidates: List[str] = [content.strip()]
    candidates += [m.strip() for m in _FENCE_PATTERN.findall(content)]
    greedy = re.search(r"\{.*\}", content, re.DOTALL)
    if greedy:
        candidates.append(greedy.group())
    candidates += list(_balanced_objects(content))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed

    logger.debug(f"JSON 추출 실패 (응답 미리보기): {content[:200]}")
    return None


def parse_llm_response(content: str, required_fields: Optional[List[str]] = None) -> Dict[str, Any]:
    """JSON을 추출하고 필수 키 존재 여부까지 확인합니다. 실패 시 LlmResponseParseError."""
    parsed = extract_json_from_response(content)
    if parsed is None:
        raise LlmResponseParseError("Failed to parse JSON from LLM response")
    missing = [field for field in (required_fields or []) if parsed.get(field) in (None, "")]
    if missing:
        raise LlmResponseParseError(f"Missing required fields in LLM response: {', '.join(missing)}")
    return parsed
