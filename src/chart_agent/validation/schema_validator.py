import re
import logging
from typing import List, Set

from chart_agent.domain.models import SchemaValidationResult

logger = logging.getLogger(__name__)

# --- [Schema Text Patterns] ---
# "## Orders Table", "Table: orders", "Table Name: `orders`" 형식의 테이블 선언
_TABLE_HEADING = re.compile(r"^\s*#{1,6}\s+(.+?)\s+Table\s*$", re.IGNORECASE | re.MULTILINE)
_TABLE_LABEL = re.compile(r"^\s*Table(?:\s+Name)?\s*:\s*[`\"']?([^`\"'\n]+?)[`\"']?\s*$", re.IGNORECASE | re.MULTILINE)
_TABLE_NAME_BACKTICK = re.compile(r"Table Name.*?`([^`]+)`", re.IGNORECASE)

# "Columns:" 이후 다음 테이블 선언 전까지가 하나의 컬럼 섹션
_COLUMN_SECTION = re.compile(
    r"Columns:(.*?)(?=^\s*#{1,6}\s|^\s*Table(?:\s+Name)?\s*:|\Z)",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)
_BULLET_COLUMN = re.compile(r"^\s*[-*]\s*(?:name\s*:\s*)?`?([A-Za-z_][\w]*)`?")
_TABLE_ROW_COLUMN = re.compile(r"^\s*\|\s*`?([A-Za-z_][\w]*)`?\s*\|")
_BACKTICK_COLUMN = re.compile(r"`([A-Za-z_][\w]*)`")
_TABLE_HEADER_WORDS = {"column", "columns", "name", "field", "type"}

# --- [SQL Patterns] ---
_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_FROM_JOIN = re.compile(r"\b(?:FROM|JOIN)\s+(\(|`[^`]+`|\"[^\"]+\"|\[[^\]]+\]|[\w.]+)", re.IGNORECASE)
_QUALIFIED_COLUMN = re.compile(r"\b([A-Za-z_]\w*)\.([A-Za-z_]\w*)\b")
_CLAUSE_COLUMN = re.compile(
    r"\b(?:SELECT|WHERE|GROUP\s+BY|ORDER\s+BY|HAVING|ON|AND|OR)\s+(?:DISTINCT\s+)?([A-Za-z_]\w*)\b(?!\s*[.(])",
    re.IGNORECASE,
)
_ALIAS = re.compile(r"\bAS\s+[`\"']?([A-Za-z_]\w*)", re.IGNORECASE)

# 컬럼 후보에서 제외할 함수명과 키워드
_SKIP_WORDS = {
    "count", "sum", "avg", "min", "max", "strftime", "date", "datetime", "julianday",
    "cast", "coalesce", "ifnull", "nullif", "round", "abs", "length", "lower", "upper",
    "substr", "trim", "replace", "total", "group_concat", "printf",
    "distinct", "case", "when", "then", "else", "end", "not", "null", "is", "in",
    "exists", "between", "like", "and", "or", "true", "false", "select", "from", "as",
    "asc", "desc", "limit", "all",
}


# --- [Schema Parsing] ---

def extract_schema_tables(schema: str) -> List[str]:
    """스키마 문서에서 선언된 테이블 이름을 등장 순서대로(중복 제거) 반환합니다."""
    found = []
    for pattern in (_TABLE_HEADING, _TABLE_LABEL, _TABLE_NAME_BACKTICK):
        for match in pattern.finditer(schema or ""):
            name = match.group(1).strip().strip("`\"'")
            if name and name not in found:
                found.append(name)
    return found


def extract_schema_columns(schema: str) -> Set[str]:
    """'Columns:' 섹션에서 선언된 컬럼 이름(소문자)을 모읍니다."""
    columns: Set[str] = set()
    for section in _COLUMN_SECTION.findall(schema or ""):
        lines = section.splitlines()
        # "Columns: a, b, c" 처럼 같은 줄에 나열된 경우
        inline = lines[0].strip() if lines else ""
        if inline:
            for part in inline.split(","):
                token = re.match(r"\s*`?([A-Za-z_]\w*)`?", part)
                if token:
                    columns.add(token.group(1).lower())
        for line in lines[1:]:
            bullet = _BULLET_COLUMN.match(line)
            if bullet:
                columns.add(bullet.group(1).lower())
            # 마크다운 표의 헤더 행("| Column | Type |")만 건너뜁니다.
            row = _TABLE_ROW_COLUMN.match(line)
            if row and row.group(1).lower() not in _TABLE_HEADER_WORDS:
                columns.add(row.group(1).lower())
            for match in _BACKTICK_COLUMN.finditer(line):
                columns.add(match.group(1).lower())
    return columns


# --- [SQL Parsing] ---

def _clean_table_reference(raw: str) -> str:
    if raw[:1] in "`\"[":
        return raw.strip("`\"[]").strip()
    # schema.table -> table
    return raw.split(".")[-1]


def extract_query_tables(sql: str) -> List[str]:
    tables = []
    text = _STRING_LITERAL.sub("''", sql or "")
    for match in _FROM_JOIN.finditer(text):
        raw = match.group(1)
        if "(" in raw:
            continue  # 서브쿼리
        name = _clean_table_reference(raw)
        if name and name not in tables:
            tables.append(name)
    return tables


def _table_aliases(sql: str) -> Set[str]:
    """FROM orders o / JOIN customers AS c 에서 별칭(o, c)을 모읍니다."""
    aliases = set()
    for match in re.finditer(r"\b(?:FROM|JOIN)\s+[`\"\[]?[\w.]+[`\"\]]?\s+(?:AS\s+)?([A-Za-z_]\w*)", sql, re.IGNORECASE):
        alias = match.group(1)
        if alias.lower() not in _SKIP_WORDS and alias.upper() not in {
            "WHERE", "GROUP", "ORDER", "HAVING", "LIMIT", "ON", "INNER", "LEFT", "RIGHT", "JOIN", "CROSS", "OUTER", "UNION",
        }:
            aliases.add(alias.lower())
    return aliases


def extract_query_columns(sql: str) -> List[str]:
    """SQL에서 스키마와 대조할 컬럼 후보를 등장 순서대로 반환합니다. 별칭과 함수명은 제외합니다."""
    text = _STRING_LITERAL.sub("''", sql or "")
    select_aliases = {m.group(1).lower() for m in _ALIAS.finditer(text)}
    table_aliases = _table_aliases(text)
    table_names = {t.lower() for t in extract_query_tables(text)}

    candidates = []
    for match in _QUALIFIED_COLUMN.finditer(text):
        candidates.append((match.start(), match.group(2)))
    for match in _CLAUSE_COLUMN.finditer(text):
        candidates.append((match.start(1), match.group(1)))

    columns = []
    for _, name in sorted(candidates, key=lambda item: item[0]):
        lowered = name.lower()
        if lowered in _SKIP_WORDS or lowered in select_aliases:
            continue
        if lowered in table_aliases or lowered in table_names:
            continue
        if lowered not in [c.lower() for c in columns]:
            columns.append(name)
    return columns


# --- [Validation] ---

def _table_declared(name: str, declared: List[str]) -> bool:
    target = name.lower()
    for table in declared:
        candidate = table.lower()
        if candidate == target or candidate in target or target in candidate:
            return True
    return False


def validate_query_against_schema(sql: str, schema: str) -> SchemaValidationResult:
    """
    생성된 SQL이 스키마 문서에 선언된 테이블/컬럼만 참조하는지 텍스트 수준에서 검사합니다.

    같은 입력에는 항상 같은 결과(이슈 순서 포함)를 돌려주며, 스키마가 테이블이나
    컬럼을 하나도 선언하지 않으면 해당 검사는 건너뜁니다.
    """
    declared_tables = extract_schema_tables(schema)
    declared_columns = extract_schema_columns(schema)
    query_tables = extract_query_tables(sql)
    query_columns = extract_query_columns(sql)

    issues: List[str] = []
    tables_found: List[str] = []

    if declared_tables:
        for table in query_tables:
            if _table_declared(table, declared_tables):
                tables_found.append(table)
            else:
                issues.append(
                    f"Table '{table}' not found in schema. Available tables: {', '.join(declared_tables[:5])}"
                )
    else:
        tables_found = list(query_tables)

    checked = 0
    if declared_columns:
        for column in query_columns:
            checked += 1
            if column.lower() not in declared_columns:
                issues.append(f"Column '{column}' not found in schema.")

    if issues:
        logger.info(f"스키마 검증 이슈 {len(issues)}건: {issues}")
    return SchemaValidationResult(
        is_valid=not issues,
        issues=issues,
        tables_found=tables_found,
        columns_checked=checked,
    )


def split_issues(issues: List[str]):
    """이슈 목록을 (테이블 이슈, 컬럼 이슈)로 나눕니다."""
    table_issues = [i for i in issues if i.startswith("Table '")]
    column_issues = [i for i in issues if i.startswith("Column '")]
    return table_issues, column_issues


def create_user_friendly_error_message(issues: List[str], schema: str) -> str:
    """검증 이슈를 사용자에게 보여줄 문장으로 바꿉니다."""
    table_issues, column_issues = split_issues(issues)
    if table_issues:
        missing = [re.search(r"Table '([^']+)'", i).group(1) for i in table_issues]
        available = extract_schema_tables(schema)
        return (
            f"I couldn't find the table \"{', '.join(missing)}\" in your database schema. "
            f"Available tables are: {', '.join(available) or 'none'}. "
            "Please verify the table name or provide additional schema information."
        )
    if column_issues:
        missing = [re.search(r"Column '([^']+)'", i).group(1) for i in column_issues]
        return (
            f"I couldn't find these columns in your database schema: {', '.join(missing)}. "
            "Please verify the column names or provide additional schema information."
        )
    return "The generated query does not match your database schema. Please rephrase your request."
