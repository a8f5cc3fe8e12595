import json
import re
import logging
from numbers import Number
from typing import Any, Dict, List, Optional

import pandas as pd
from langchain_core.messages import HumanMessage, SystemMessage

from chart_agent.common.exceptions import LlmResponseParseError
from chart_agent.common.llm_parser import parse_llm_response
from chart_agent.domain.chart_requirements import NUMERIC_FIELDS, ChartRequirement, get_chart_requirement
from chart_agent.domain.models import (
    ChartData,
    FilterInstruction,
    GroupingInstruction,
    QueryResult,
    SortingInstruction,
    TransformationInstruction,
)
from chart_agent.interfaces.llm import ILlmClient
from chart_agent.transform.analysis import (
    DataStructureMetadata,
    analyze_data_structure,
    fields_by_role,
    is_numeric_value,
    preprocess_chart_data,
)

logger = logging.getLogger(__name__)

TRANSFORM_TEMPERATURE = 0.1
YEAR_DUPLICATE_RATIO_LIMIT = 0.3
_PANDAS_AGG = {"sum": "sum", "avg": "mean", "count": "count", "min": "min", "max": "max", "first": "first", "last": "last"}

TRANSFORM_SYSTEM_PROMPT = """You map SQL result fields onto the data structure a chart renderer expects.
Only use field names that appear in the field metadata. Respond with JSON only:
{
  "fieldMappings": {"<sourceField>": "<targetField>"},
  "aggregations": [{"field": "...", "operation": "sum|avg|count|min|max|first|last", "groupBy": ["..."]}],
  "filters": [{"field": "...", "operator": "equals|contains|greaterThan|lessThan|in|notNull", "value": ...}],
  "groupings": [{"field": "...", "createSeries": true, "seriesNameField": "..."}],
  "sorting": {"field": "...", "direction": "asc|desc"}
}"""


# --- [Instruction Generation] ---

def _required_targets(chart_type: str, requirement: ChartRequirement) -> List[str]:
    # line/scatter 의 id/data 는 변환 단계에서 만들어지므로 포인트 필드만 요구합니다.
    if chart_type in ("line", "scatter"):
        return ["x", "y"]
    return list(requirement.required_fields)


def _build_transform_prompt(metadata: DataStructureMetadata, chart_type: str, requirement: ChartRequirement) -> str:
    fields = [
        {"name": f.name, "type": f.type, "role": f.role, "uniqueValues": f.unique_values, "samples": f.sample_values}
        for f in metadata.fields.values()
    ]
    return (
        f"Chart type: {chart_type}\n"
        f"Data structure: {metadata.data_structure} ({metadata.row_count} rows)\n"
        f"Required fields: {requirement.required_fields}\n"
        f"Optional fields: {requirement.optional_fields}\n"
        f"Rules: {requirement.rules}\n"
        f"Example output: {json.dumps(requirement.example_structure)}\n\n"
        f"Field metadata:\n{json.dumps(fields, default=str, indent=2)}\n\n"
        f"Sample data:\n{json.dumps(metadata.sample, default=str)[:3000]}"
    )


def _check_instructions(
    instructions: TransformationInstruction, metadata: DataStructureMetadata, chart_type: str
) -> TransformationInstruction:
    """LLM 매핑이 실제 필드를 참조하고 필수 대상 필드를 모두 채우는지 확인합니다."""
    known = set(metadata.fields.keys())
    unknown = [src for src in instructions.field_mappings if src not in known]
    if unknown:
        logger.warning(f"존재하지 않는 필드 매핑 제거: {unknown}")
        instructions.field_mappings = {s: t for s, t in instructions.field_mappings.items() if s in known}

    targets = set(instructions.field_mappings.values())
    missing = [t for t in _required_targets(chart_type, get_chart_requirement(chart_type)) if t not in targets]
    # series 데이터의 id 는 엔티티 키에서 채워집니다.
    if metadata.data_structure == "series":
        missing = [t for t in missing if t != "id"]
    if missing:
        raise LlmResponseParseError(f"Field mappings do not cover required fields: {missing}")
    return instructions


async def generate_transformation_instructions(
    metadata: DataStructureMetadata, chart_type: str, llm: Optional[ILlmClient]
) -> TransformationInstruction:
    """샘플 데이터만 LLM에 보내 매핑 계획을 받고, 실패하면 규칙 기반 폴백을 사용합니다."""
    if llm is None or not metadata.fields:
        return generate_fallback_instructions(metadata, chart_type)

    requirement = get_chart_requirement(chart_type)
    messages = [
        SystemMessage(content=TRANSFORM_SYSTEM_PROMPT),
        HumanMessage(content=_build_transform_prompt(metadata, chart_type, requirement)),
    ]
    try:
        response = await llm.complete(messages, temperature=TRANSFORM_TEMPERATURE)
        parsed = parse_llm_response(response, ["fieldMappings"])
        instructions = TransformationInstruction.model_validate(parsed)
        return _check_instructions(instructions, metadata, chart_type)
    except Exception as e:
        logger.warning(f"LLM 변환 지시 생성 실패, 폴백 규칙 사용: {e}")
        return generate_fallback_instructions(metadata, chart_type)


def generate_fallback_instructions(metadata: DataStructureMetadata, chart_type: str) -> TransformationInstruction:
    """필드 역할만으로 차트 타입별 기본 매핑을 만듭니다."""
    entity = metadata.entity_column if metadata.data_structure == "series" else None
    measures = fields_by_role(metadata, "measure")
    temporals = fields_by_role(metadata, "temporal")
    labels = [f for f in fields_by_role(metadata, "dimension", "grouping", "identifier") if f != entity]

    mappings: Dict[str, str] = {}
    groupings: List[GroupingInstruction] = []
    sorting: Optional[SortingInstruction] = None

    if chart_type in ("pie", "funnel", "bar"):
        key = (labels or temporals or [None])[0]
        if key:
            mappings[key] = "id"
        if measures:
            mappings[measures[0]] = "value"
    elif chart_type in ("line", "scatter"):
        axis = (temporals or labels or [None])[0]
        if axis is None and len(measures) >= 2:
            axis, measures = measures[0], measures[1:]
        if axis:
            mappings[axis] = "x"
            sorting = SortingInstruction(field=axis, direction="asc") if axis in temporals else None
        if measures:
            mappings[measures[0]] = "y"
    elif chart_type == "heatmap":
        axes = labels + temporals
        if len(axes) >= 2:
            mappings[axes[0]] = "x"
            mappings[axes[1]] = "y"
        if measures:
            mappings[measures[0]] = "v"
    elif chart_type == "treemap":
        # 첫 번째 라벨은 상위 그룹, 마지막 라벨은 잎 노드 이름
        if labels:
            mappings[labels[-1]] = "name"
        if measures:
            mappings[measures[0]] = "value"
        if len(labels) > 1:
            groupings.append(GroupingInstruction(field=labels[0]))
    elif chart_type == "calendar":
        if temporals:
            mappings[temporals[0]] = "day"
        if measures:
            mappings[measures[0]] = "value"

    logger.info(f"폴백 매핑 사용 ({chart_type}): {mappings}")
    return TransformationInstruction(field_mappings=mappings, groupings=groupings, sorting=sorting)


# --- [Execution] ---

def _numeric_operand(value):
    """비교 연산 값(예: "60")을 숫자로 바꿉니다. 숫자가 아니면 NaN 이 되어 어떤 행도 통과하지 못합니다."""
    if isinstance(value, (list, dict)):
        return float("nan")
    return pd.to_numeric(pd.Series([value]), errors="coerce").iloc[0]


def apply_filters(df: pd.DataFrame, filters: List[FilterInstruction]) -> pd.DataFrame:
    for flt in filters:
        if flt.field not in df.columns:
            logger.warning(f"필터 필드 없음, 건너뜀: {flt.field}")
            continue
        column = df[flt.field]
        if flt.operator == "equals":
            mask = column == flt.value
        elif flt.operator == "contains":
            mask = column.astype(str).str.contains(str(flt.value), case=False, na=False, regex=False)
        elif flt.operator == "greaterThan":
            mask = pd.to_numeric(column, errors="coerce") > _numeric_operand(flt.value)
        elif flt.operator == "lessThan":
            mask = pd.to_numeric(column, errors="coerce") < _numeric_operand(flt.value)
        elif flt.operator == "in":
            mask = column.isin(flt.value if isinstance(flt.value, list) else [flt.value])
        else:  # notNull
            mask = column.notna()
        df = df[mask]
    return df


def apply_aggregations(df: pd.DataFrame, instructions: TransformationInstruction) -> pd.DataFrame:
    """aggregations 를 pandas groupby 로 실행합니다. 그룹 키가 없으면 전체를 한 행으로 줄입니다."""
    if not instructions.aggregations or df.empty:
        return df
    first = instructions.aggregations[0]
    group_by = [g for g in (first.group_by or []) if g in df.columns]
    if not group_by:
        aggregated = [a.field for a in instructions.aggregations]
        group_by = [
            src for src in instructions.field_mappings
            if src in df.columns and src not in aggregated and not pd.api.types.is_numeric_dtype(df[src])
        ]

    result: Optional[pd.DataFrame] = None
    for agg in instructions.aggregations:
        if agg.field not in df.columns or agg.field in group_by:
            logger.warning(f"집계 필드 사용 불가, 건너뜀: {agg.field}")
            continue
        op = _PANDAS_AGG[agg.operation]
        if group_by:
            part = df.groupby(group_by, sort=False, dropna=False)[agg.field].agg(op).reset_index()
        else:
            part = pd.DataFrame([{agg.field: _series_agg(df[agg.field], agg.operation)}])
        result = part if result is None else result.merge(part, on=group_by) if group_by else pd.concat([result, part], axis=1)
    return df if result is None else result


def _series_agg(values: pd.Series, operation: str):
    # Series.first/last 는 시간 오프셋용이므로 위치 기반으로 처리합니다.
    if operation in ("first", "last"):
        if values.empty:
            return None
        return values.iloc[0] if operation == "first" else values.iloc[-1]
    return values.agg(_PANDAS_AGG[operation])


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    # Pandas를 거쳐 JSON으로 변환하여 numpy 타입을 일반 타입으로 정리
    return json.loads(df.to_json(orient="records")) if not df.empty else []


def _rename(records: List[Dict[str, Any]], mappings: Dict[str, str]) -> List[Dict[str, Any]]:
    return [{target: row.get(source) for source, target in mappings.items() if source in row} for row in records]


def _sort(records: List[Dict[str, Any]], sorting: Optional[SortingInstruction], mappings: Dict[str, str]):
    if not sorting or not records:
        return records
    key = mappings.get(sorting.field, sorting.field)
    if key not in records[0]:
        return records
    df = pd.DataFrame(records)
    try:
        df = df.sort_values(key, ascending=sorting.direction == "asc", na_position="last", kind="stable")
    except TypeError:
        df = df.assign(_key=df[key].astype(str)).sort_values("_key", ascending=sorting.direction == "asc").drop(columns="_key")
    return _records(df)


def _build_treemap(records: List[Dict[str, Any]], mappings: Dict[str, str], groupings: List[GroupingInstruction]):
    name_src = next((s for s, t in mappings.items() if t == "name"), None)
    value_src = next((s for s, t in mappings.items() if t == "value"), None)

    def leaf(row):
        value = row.get(value_src) if value_src else 0
        value = value if is_numeric_value(value) else 0
        return {"name": str(row.get(name_src)) if name_src else "Unknown", "value": value, "loc": value}

    parent_field = groupings[0].field if groupings else None
    if parent_field:
        parents: Dict[str, Dict[str, Any]] = {}
        for row in records:
            parent = parents.setdefault(str(row.get(parent_field)), {"name": str(row.get(parent_field)), "children": []})
            parent["children"].append(leaf(row))
        children = []
        for parent in parents.values():
            total = sum(c["value"] for c in parent["children"])
            children.append({**parent, "value": total, "loc": total})
    else:
        children = [leaf(row) for row in records]

    total = sum(c["value"] for c in children)
    return {"name": "root", "value": total, "loc": total, "children": children}


def _series_from_groups(groups: Dict[Any, List[Dict[str, Any]]], instructions: TransformationInstruction):
    mappings = {s: t for s, t in instructions.field_mappings.items() if t != "id"}
    series = []
    for key, rows in groups.items():
        points = _sort(_rename(rows, mappings), instructions.sorting, mappings)
        series.append({"id": str(key), "data": points})
    return series


def _execute_series(metadata: DataStructureMetadata, instructions: TransformationInstruction, chart_type: str):
    groups = {}
    for key, rows in metadata.full_data.items():
        filtered = _records(apply_filters(pd.DataFrame(rows), instructions.filters))
        if filtered:
            groups[key] = filtered

    if chart_type in ("line", "scatter"):
        return _series_from_groups(groups, instructions)

    # bar/radar: 엔티티별 한 개의 값으로 요약 (기본은 첫 번째 측정값의 합계)
    value_src = next((s for s, t in instructions.field_mappings.items() if t in ("value", "y")), None)
    value_src = value_src or next(iter(fields_by_role(metadata, "measure")), None)
    operation = next((a.operation for a in instructions.aggregations if a.field == value_src), "sum")
    items = []
    for key, rows in groups.items():
        values = pd.Series([r.get(value_src) for r in rows]) if value_src else pd.Series([1] * len(rows))
        if not value_src:
            operation = "count"
        summary = _series_agg(values, operation)
        items.append({"id": str(key), "label": str(key), "value": json.loads(pd.Series([summary]).to_json(orient="records"))[0]})
    if instructions.sorting:
        items = _sort(items, SortingInstruction(field="value", direction=instructions.sorting.direction), {})
    return items


def execute_transformation(
    metadata: DataStructureMetadata, instructions: TransformationInstruction, chart_type: str
) -> Any:
    """
    매핑 계획을 전체 데이터에 적용합니다.
    순서: 필터 → 그룹/집계 → 필드 이름 변경 → 정렬
    """
    if metadata.data_structure == "series":
        return _execute_series(metadata, instructions, chart_type)

    if metadata.data_structure == "hierarchical":
        data = metadata.full_data
        if instructions.field_mappings and isinstance(data, list):
            known = instructions.field_mappings
            data = [{known.get(k, k): v for k, v in row.items()} for row in data]
        return data

    df = pd.DataFrame(metadata.full_data)
    df = apply_filters(df, instructions.filters)
    df = apply_aggregations(df, instructions)
    records = _records(df)
    mappings = instructions.field_mappings

    if chart_type == "treemap":
        return _build_treemap(records, mappings, instructions.groupings)

    series_grouping = next((g for g in instructions.groupings if g.create_series and g.field in df.columns), None)
    if chart_type in ("line", "scatter"):
        if series_grouping:
            groups: Dict[Any, List[Dict[str, Any]]] = {}
            for row in records:
                groups.setdefault(row.get(series_grouping.series_name_field or series_grouping.field), []).append(row)
            return _series_from_groups(groups, instructions)
        # 단일 시리즈로 감쌉니다.
        name = next((s for s, t in mappings.items() if t == "y"), None) or "series1"
        points = _sort(_rename(records, mappings), instructions.sorting, mappings)
        return [{"id": name, "data": points}]

    return _sort(_rename(records, mappings), instructions.sorting, mappings)


# --- [Validation & Correction] ---

def _missing(item: Dict[str, Any], field_name: str) -> bool:
    return field_name not in item or item[field_name] is None


def _walk_tree(node: Any, path: str, issues: List[str]):
    if not isinstance(node, dict):
        issues.append(f"Node {path} is not an object")
        return
    if _missing(node, "name"):
        issues.append(f"Node {path} missing required field 'name'")
    if not is_numeric_value(node.get("value")):
        issues.append(f"Node {path} has non-numeric 'value'")
    for idx, child in enumerate(node.get("children") or []):
        _walk_tree(child, f"{path}.{idx}", issues)


def validate_chart_data(data: Any, chart_type: str) -> List[str]:
    """레지스트리 요구사항 대비 누락/타입 문제를 이슈 목록으로 반환합니다."""
    requirement = get_chart_requirement(chart_type)
    issues: List[str] = []
    if requirement.data_structure == "tree":
        if not isinstance(data, dict):
            issues.append("Treemap data must be a single root object")
        else:
            _walk_tree(data, "root", issues)
        return issues

    if not isinstance(data, list):
        return [f"{chart_type} data must be an array"]
    for idx, item in enumerate(data):
        if not isinstance(item, dict):
            issues.append(f"Item {idx} is not an object")
            continue
        for field_name in requirement.required_fields:
            if _missing(item, field_name):
                issues.append(f"Item {idx} missing required field '{field_name}'")
            elif field_name in NUMERIC_FIELDS and not is_numeric_value(item[field_name]):
                issues.append(f"Item {idx} has non-numeric '{field_name}'")
    return issues


def _to_number(value: Any) -> Number:
    if is_numeric_value(value):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def _correct_node(node: Any, is_root: bool) -> Dict[str, Any]:
    if not isinstance(node, dict):
        node = {"name": str(node)} if node is not None else {}
    children = [_correct_node(c, False) for c in (node.get("children") or []) if c is not None]
    corrected = dict(node)
    if _missing(corrected, "name"):
        corrected["name"] = "root" if is_root else "Unknown"
    value = corrected.get("value")
    if not is_numeric_value(value):
        value = sum(c["value"] for c in children) if children else _to_number(value)
    corrected["value"] = value
    corrected["loc"] = value
    if children:
        corrected["children"] = children
    return corrected


def correct_chart_data(data: Any, chart_type: str) -> Any:
    """검증 이슈를 기본값으로 보정합니다. treemap 은 항상 단일 루트 트리가 됩니다."""
    requirement = get_chart_requirement(chart_type)
    if requirement.data_structure == "tree":
        if isinstance(data, list):
            data = {"name": "root", "children": data}
        elif not isinstance(data, dict):
            data = {"name": "root", "children": []}
        return _correct_node(data, True)

    items = data if isinstance(data, list) else ([data] if isinstance(data, dict) else [])
    corrected = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            logger.warning(f"객체가 아닌 데이터 포인트 제거: {item!r}")
            continue
        fixed = dict(item)
        for field_name in requirement.required_fields:
            if field_name == "id" and _missing(fixed, "id"):
                fixed["id"] = f"item_{idx + 1}"
            elif field_name == "data":
                if not isinstance(fixed.get("data"), list):
                    fixed["data"] = []
                fixed["data"] = [
                    {**p, "y": _to_number(p.get("y"))} if isinstance(p, dict) else {"x": None, "y": _to_number(p)}
                    for p in fixed["data"]
                ]
            elif field_name in NUMERIC_FIELDS:
                fixed[field_name] = _to_number(fixed.get(field_name))
            elif _missing(fixed, field_name):
                logger.warning(f"필수 필드 '{field_name}' 누락 (item {idx}), null 로 채움")
                fixed[field_name] = None
        if "label" in requirement.optional_fields and _missing(fixed, "label") and "id" in fixed:
            fixed["label"] = fixed["id"]
        corrected.append(fixed)
    return corrected


def validate_time_series_data(data: Any, chart_type: str) -> None:
    """line/scatter 시리즈의 중복 x 값을 로그로 남깁니다. 연도만 반복되는 경우는 에러로 기록합니다."""
    if chart_type not in ("line", "scatter") or not isinstance(data, list):
        return
    for series in data:
        points = series.get("data") if isinstance(series, dict) else None
        if not points:
            continue
        xs = [str(p.get("x")) for p in points if isinstance(p, dict)]
        duplicates = len(xs) - len(set(xs))
        if not duplicates:
            continue
        ratio = duplicates / len(xs)
        if all(re.fullmatch(r"\d{4}", x) for x in xs) and ratio > YEAR_DUPLICATE_RATIO_LIMIT:
            logger.error(
                f"시리즈 '{series.get('id')}' 의 x 값이 연도만 반복됩니다 (중복 비율 {ratio:.0%}). "
                "월/주 단위 포맷이 필요한지 확인하세요."
            )
        else:
            logger.debug(f"시리즈 '{series.get('id')}' 에 중복 x 값 {duplicates}개")


# --- [Entry Point] ---

def generate_chart_title(metadata: DataStructureMetadata, instructions: TransformationInstruction) -> str:
    mapped = list(instructions.field_mappings.keys())
    roles = {name: f.role for name, f in metadata.fields.items()}
    measure = next((m for m in mapped if roles.get(m) == "measure"), None)
    dimension = next((m for m in mapped if roles.get(m) in ("dimension", "grouping", "temporal", "identifier")), None)
    if measure and dimension:
        return f"{measure} by {dimension}"
    return "Data Visualization"


def generate_chart_description(data: Any, instructions: TransformationInstruction) -> str:
    count = len(data.get("children") or []) if isinstance(data, dict) else len(data or [])
    return f"Chart showing {count} data points with {len(instructions.field_mappings)} field mappings"


async def transform(
    query_results: List[QueryResult], chart_type: str, llm: Optional[ILlmClient] = None
) -> ChartData:
    """
    쿼리 결과를 렌더러가 바로 쓸 수 있는 차트 데이터로 변환합니다.

    Args:
        query_results: 단계별 쿼리 결과 (모든 단계의 행을 합쳐 사용)
        chart_type: 계획 단계에서 선택된 차트 타입
        llm: 매핑 계획 생성용 LLM (None 이면 폴백 규칙만 사용)

    Returns:
        ChartData: 레지스트리 요구사항을 만족하도록 보정된 차트 데이터

    Raises:
        UnsupportedChartTypeError: 레지스트리에 없는 차트 타입
    """
    chart_type = (chart_type or "").lower()
    requirement = get_chart_requirement(chart_type)

    processed = preprocess_chart_data(query_results, chart_type)
    metadata = analyze_data_structure(processed)
    instructions = await generate_transformation_instructions(metadata, requirement.chart_type, llm)

    try:
        data = execute_transformation(metadata, instructions, chart_type)
    except Exception as e:
        # LLM 매핑 계획이 실행 단계에서 실패하면 규칙 기반 계획으로 다시 실행합니다.
        logger.warning(f"변환 계획 실행 실패, 폴백 규칙으로 재실행: {e}")
        instructions = generate_fallback_instructions(metadata, chart_type)
        data = execute_transformation(metadata, instructions, chart_type)
    issues = validate_chart_data(data, chart_type)
    if issues:
        logger.warning(f"차트 데이터 보정 ({len(issues)}건): {issues[:5]}")
        data = correct_chart_data(data, chart_type)
    validate_time_series_data(data, chart_type)

    return ChartData(
        type=chart_type,
        data=data,
        title=generate_chart_title(metadata, instructions),
        description=generate_chart_description(data, instructions),
    )
