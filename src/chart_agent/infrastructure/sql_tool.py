import json
import re
import asyncio
import logging
import pandas as pd
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from chart_agent.common.config import settings
from chart_agent.common.exceptions import UnsafeQueryError
from chart_agent.interfaces.tools import ITool

logger = logging.getLogger(__name__)

FORBIDDEN_PATTERNS = [
    r"\bDROP\b", r"\bDELETE\b", r"\bUPDATE\b", r"\bTRUNCATE\b", r"\bALTER\b",
    r"\bINSERT\b", r"\bCREATE\b", r"\bEXEC(?:UTE)?\b", r"\bATTACH\b", r"\bPRAGMA\b",
]

# --- [Utility Functions] ---

def validate_sql_security(sql: str) -> bool:
    """SQL Injection 및 파괴적인 명령어를 방어합니다. SELECT 단일 문장만 허용합니다."""
    sql_upper = (sql or "").upper()
    for pattern in FORBIDDEN_PATTERNS:
        if re.search(pattern, sql_upper):
            return False
    # 끝의 세미콜론 하나는 허용하되 다중 문장은 거부
    if ";" in sql_upper.strip().rstrip(";"):
        return False
    return sql_upper.strip().startswith("SELECT")


def rows_to_records(raw_rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Decimal, datetime 등 DB 타입을 JSON 직렬화 가능한 값으로 정리합니다."""
    if not raw_rows:
        return []
    # NUMERIC 컬럼의 Decimal 은 pandas 버전에 따라 문자열로 직렬화되므로 먼저 float 로 바꿉니다.
    rows = [{key: float(value) if isinstance(value, Decimal) else value for key, value in row.items()} for row in raw_rows]
    # Pandas를 거쳐 JSON으로 변환하여 데이터 일관성 확보
    return json.loads(pd.Series(rows).to_json(orient="records", date_format="iso"))


class SqlQueryTool(ITool):
    """
    읽기 전용 SQL 실행 도구입니다.
    입력: {"query": "SELECT ...", "database": "선택"} JSON 문자열
    출력: {"data": [...], "rowCount": n} 또는 {"error": "..."} JSON 문자열
    """

    name = "sql_query"
    description = "Execute a read-only SELECT statement against the analytics database."

    def __init__(self, engine: Engine):
        self.engine = engine

    def _run(self, query: str) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            result = conn.execute(text(query))
            if not result.returns_rows:
                return []
            return rows_to_records([dict(row._mapping) for row in result])

    async def ainvoke(self, payload: str) -> str:
        try:
            request = json.loads(payload)
            query = str(request.get("query", "")).strip()
            if not validate_sql_security(query):
                raise UnsafeQueryError("Only single read-only SELECT statements are allowed")
            # 동기 SQLAlchemy 호출은 이벤트 루프를 막지 않도록 스레드에서 실행
            rows = await asyncio.to_thread(self._run, query.rstrip().rstrip(";"))
            return json.dumps({"data": rows, "rowCount": len(rows)})
        except Exception as e:
            logger.error(f"SQL 실행 에러: {e}")
            return json.dumps({"error": str(e)})


class ToolRegistry:
    """이름으로 도구를 등록/조회하는 레지스트리"""

    def __init__(self, tools: Optional[List[ITool]] = None):
        self._tools: Dict[str, ITool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ITool) -> None:
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> Optional[ITool]:
        return self._tools.get(name)

    @property
    def tool_names(self) -> List[str]:
        return list(self._tools.keys())

    def describe(self) -> List[Dict[str, str]]:
        """등록된 도구의 이름과 설명 목록"""
        return [{"name": tool.name, "description": tool.description} for tool in self._tools.values()]


def get_sql_engine(url: Optional[str] = None) -> Engine:
    return create_engine(url or settings.SQL_DATABASE_URL)


def build_tool_registry(engine: Optional[Engine] = None) -> ToolRegistry:
    return ToolRegistry([SqlQueryTool(engine or get_sql_engine())])
