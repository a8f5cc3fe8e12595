import re
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

WEEK_START_EXPRESSION = "date(date_column, 'weekday 0', '-6 days') AS week_start_date"

_WITH_CLAUSE = re.compile(r"^\s*WITH\s|\bWITH\s+\w+\s+AS\s*\(", re.IGNORECASE)
_INVALID_WEEK_FORMAT = re.compile(r"strftime\s*\(\s*'%[WU]'", re.IGNORECASE)
_WEEK_START = re.compile(r"'weekday 0'\s*,\s*'-6 days'", re.IGNORECASE)
_YEAR_PART = re.compile(r"strftime\s*\(\s*'%Y'\s*,", re.IGNORECASE)
_MONTH_PART = re.compile(r"strftime\s*\(\s*'%m'\s*,", re.IGNORECASE)
_YEAR_MONTH = re.compile(r"strftime\s*\(\s*'%Y-%m'", re.IGNORECASE)


@dataclass(frozen=True)
class Granularity:
    yearly: bool = False
    monthly: bool = False
    weekly: bool = False
    daily: bool = False


def _mentions(text: str, unit: str, adjective: str) -> bool:
    return bool(re.search(rf"\b(?:per|each|by)\s+{unit}\b|\b{adjective}\b", text))


def detect_granularity(user_request: str, instruction_description: str = "") -> Granularity:
    """요청 문장과 쿼리 지시문에서 시간 단위(연/월/주/일)를 추정합니다."""
    request = (user_request or "").lower()
    instruction = (instruction_description or "").lower()
    monthly = _mentions(request, "month", "monthly") or "month" in instruction
    return Granularity(
        yearly=_mentions(request, "year", "yearly") or ("year" in instruction and "month" not in instruction),
        monthly=monthly,
        weekly=_mentions(request, "week", "weekly") or "week" in instruction,
        daily=_mentions(request, "day", "daily"),
    )


def check_sql_policy(query: str, user_request: str, instruction_description: str = "") -> Optional[str]:
    """
    생성된 SQL이 차트용 쿼리 규칙을 지키는지 확인합니다.
    규칙 위반 시 LLM에게 그대로 되돌려줄 수 있는 에러 문장을, 통과하면 None을 반환합니다.
    """
    if _WITH_CLAUSE.search(query):
        return "Query contains forbidden WITH clause (CTE). Only simple SELECT statements allowed."

    granularity = detect_granularity(user_request, instruction_description)

    if _INVALID_WEEK_FORMAT.search(query):
        return (
            "Invalid week formatting: strftime('%W') and strftime('%U') are not allowed. "
            f"For weekly grouping use: {WEEK_START_EXPRESSION}"
        )

    if granularity.weekly and not _WEEK_START.search(query):
        return (
            "Weekly aggregation must group by the week start date. "
            f"Use: {WEEK_START_EXPRESSION}"
        )

    if granularity.monthly:
        if _YEAR_PART.search(query) and _MONTH_PART.search(query):
            return (
                "Monthly aggregation must not split year and month into separate columns. "
                "Use a single strftime('%Y-%m', date_column) AS month column."
            )
        if _YEAR_PART.search(query) and not _YEAR_MONTH.search(query):
            return (
                "Monthly aggregation must not use year-only formatting. "
                "Use strftime('%Y-%m', date_column) AS month."
            )

    if granularity.yearly and not granularity.monthly and _YEAR_MONTH.search(query):
        logger.warning("연 단위 요청에 월 단위 포맷(%Y-%m)이 사용되었습니다. 그대로 진행합니다.")

    return None
