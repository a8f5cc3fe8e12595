import re
import logging
from dataclasses import dataclass, field
from numbers import Number
from typing import Any, Dict, List, Optional

import pandas as pd

from chart_agent.domain.models import QueryResult

logger = logging.getLogger(__name__)

# 엔티티별로 묶어 여러 시리즈를 만드는 차트
SERIES_CHART_TYPES = {"line", "scatter", "bar", "radar"}

FLAT_SAMPLE_SIZE = 5
SERIES_SAMPLE_SIZE = 3
GROUPING_CARDINALITY_LIMIT = 20

_TIME_NAME = re.compile(r"date|month|year|time|week|day|period", re.IGNORECASE)
_ID_NAME = re.compile(r"(?:^|_)id$|^id_|Id$|ID$")
# 정수로 저장된 연/월 컬럼 (year = 2024)
_TIME_UNIT_NAME = re.compile(r"(?:^|_)(?:year|month|week|day|quarter)$", re.IGNORECASE)
_DATE_STRING = re.compile(
    r"^\d{4}$"                                   # 2024
    r"|^\d{4}-\d{2}$"                            # 2024-01
    r"|^\d{4}-\d{2}-\d{2}(?:[ T]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?Z?)?$"
    r"|^\d{1,2}/\d{1,2}/\d{2,4}$"
)


@dataclass
class FieldMetadata:
    name: str
    type: str   # numeric | categorical | temporal | boolean | text
    role: str   # measure | dimension | identifier | grouping | temporal
    unique_values: int = 0
    sample_values: List[Any] = field(default_factory=list)


@dataclass
class DataStructureMetadata:
    data_structure: str  # flat | series | hierarchical
    fields: Dict[str, FieldMetadata]
    sample: Any
    full_data: Any
    row_count: int = 0
    entity_column: Optional[str] = None
    time_column: Optional[str] = None


# --- [Value Heuristics] ---

def is_numeric_value(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def is_date_string(value: Any) -> bool:
    """'2024', '2024-01', '2024-01-15', ISO datetime 형식만 날짜로 인정합니다."""
    if not isinstance(value, str) or not _DATE_STRING.match(value.strip()):
        return False
    return not pd.isna(pd.to_datetime(value.strip(), errors="coerce"))


def flatten_results(query_results: List[QueryResult]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for result in query_results or []:
        if result is None:
            continue
        rows.extend(row for row in result.data if isinstance(row, dict))
    return rows


def _columns(rows: List[Dict[str, Any]]) -> List[str]:
    columns: List[str] = []
    for row in rows:
        for key in row.keys():
            if key not in columns:
                columns.append(key)
    return columns


def _is_time_column(name: str, rows: List[Dict[str, Any]]) -> bool:
    values = [r.get(name) for r in rows if r.get(name) is not None]
    if not values:
        return False
    if all(is_date_string(v) for v in values[:FLAT_SAMPLE_SIZE]):
        return True
    if _TIME_UNIT_NAME.search(name):
        return True
    return bool(_TIME_NAME.search(name)) and not all(is_numeric_value(v) for v in values)


# --- [Preprocessing] ---

def preprocess_chart_data(query_results: List[QueryResult], chart_type: str) -> Dict[str, Any]:
    """
    쿼리 결과를 합친 뒤 엔티티/시간/값 컬럼을 찾아 데이터 형태를 결정합니다.

    Returns:
        dict: {"type": "flat" | "series" | "hierarchical", "data": ..., "entity_column", "time_column",
               "value_columns"}
        series 형태의 data는 {엔티티 값: [행, ...]} 딕셔너리입니다.
    """
    rows = flatten_results(query_results)
    columns = _columns(rows)
    processed: Dict[str, Any] = {
        "type": "flat",
        "data": rows,
        "entity_column": None,
        "time_column": None,
        "value_columns": [],
    }
    if not rows:
        return processed

    if any(isinstance(v, (dict, list)) for row in rows for v in row.values()):
        processed["type"] = "hierarchical"
        return processed

    time_column = next((c for c in columns if _is_time_column(c, rows)), None)
    value_columns = [
        c for c in columns
        if c != time_column and all(is_numeric_value(r.get(c)) for r in rows if r.get(c) is not None)
    ]
    id_like = [c for c in columns if _ID_NAME.search(c) and "order" not in c.lower()]
    text_like = [c for c in columns if c != time_column and c not in value_columns]
    entity_column = next(iter(id_like), None) or next(iter(text_like), None)

    processed.update(time_column=time_column, value_columns=value_columns, entity_column=entity_column)

    if (chart_type or "").lower() in SERIES_CHART_TYPES and entity_column:
        keys = [r.get(entity_column) for r in rows]
        unique = list(dict.fromkeys(keys))
        if 1 < len(unique) < len(keys):
            grouped: Dict[Any, List[Dict[str, Any]]] = {key: [] for key in unique}
            for row in rows:
                grouped[row.get(entity_column)].append(row)
            processed["type"] = "series"
            processed["data"] = grouped
            logger.info(f"시리즈 데이터로 전처리: 엔티티 '{entity_column}' {len(unique)}개")

    return processed


# --- [Field Analysis] ---

def analyze_field(name: str, samples: List[Any], all_values: List[Any]) -> FieldMetadata:
    """샘플 값의 타입과 전체 값의 카디널리티로 필드의 타입/역할을 분류합니다."""
    non_null = [v for v in samples if v is not None]
    first = non_null[0] if non_null else None
    unique_count = len({str(v) for v in all_values if v is not None})

    if isinstance(first, bool):
        field_type = "boolean"
    elif is_numeric_value(first) and _TIME_UNIT_NAME.search(name):
        field_type = "temporal"
    elif is_numeric_value(first):
        field_type = "numeric"
    elif is_date_string(first):
        field_type = "temporal"
    elif unique_count < max(len(all_values), 1) * 0.5:
        field_type = "categorical"
    else:
        field_type = "text"

    if field_type == "numeric" and not _ID_NAME.search(name):
        role = "measure"
    elif field_type == "temporal":
        role = "temporal"
    elif _ID_NAME.search(name):
        role = "identifier"
    elif field_type == "categorical" and unique_count < GROUPING_CARDINALITY_LIMIT:
        role = "grouping"
    else:
        role = "dimension"

    return FieldMetadata(
        name=name,
        type=field_type,
        role=role,
        unique_values=unique_count,
        sample_values=non_null[:3],
    )


def analyze_data_structure(processed: Dict[str, Any]) -> DataStructureMetadata:
    """전처리 결과로부터 LLM 매핑 및 폴백 규칙이 사용할 메타데이터를 만듭니다."""
    structure = processed["type"]
    data = processed["data"]

    if structure == "series":
        rows = [row for series in data.values() for row in series]
        sample = {key: series[:SERIES_SAMPLE_SIZE] for key, series in data.items()}
        sample_rows = [row for series in sample.values() for row in series]
    else:
        rows = data
        sample = data[:FLAT_SAMPLE_SIZE]
        sample_rows = sample

    fields: Dict[str, FieldMetadata] = {}
    for name in _columns(rows):
        fields[name] = analyze_field(
            name,
            [r.get(name) for r in sample_rows],
            [r.get(name) for r in rows],
        )

    if structure == "series":
        # 시리즈 이름으로 사용할 가상 필드
        fields["seriesKey"] = FieldMetadata(
            name="seriesKey", type="categorical", role="grouping",
            unique_values=len(data), sample_values=list(data.keys())[:3],
        )

    return DataStructureMetadata(
        data_structure=structure,
        fields=fields,
        sample=sample,
        full_data=data,
        row_count=len(rows),
        entity_column=processed.get("entity_column"),
        time_column=processed.get("time_column"),
    )


def fields_by_role(metadata: DataStructureMetadata, *roles: str) -> List[str]:
    return [f.name for f in metadata.fields.values() if f.role in roles and f.name != "seriesKey"]
