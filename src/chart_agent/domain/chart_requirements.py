from dataclasses import dataclass, field
from typing import Any, Dict, List

from chart_agent.common.exceptions import UnsupportedChartTypeError


@dataclass(frozen=True)
class ChartRequirement:
    """
    차트 하나가 렌더러에 넘기기 전에 반드시 만족해야 하는 데이터 구조 정의입니다.

    Attributes:
        chart_type: 차트 이름 (line, bar, ...)
        data_structure: "array" 또는 "tree"
        required_fields: 각 데이터 포인트(또는 트리 노드)의 필수 필드
        optional_fields: 있으면 렌더러가 활용하는 선택 필드
        example_structure: LLM 프롬프트에 그대로 들어가는 예시
        rules: 사람이 읽는 제약 조건 목록 (프롬프트 및 로그용)
    """
    chart_type: str
    data_structure: str
    required_fields: List[str]
    optional_fields: List[str] = field(default_factory=list)
    example_structure: Any = None
    rules: List[str] = field(default_factory=list)


CHART_REQUIREMENTS: Dict[str, ChartRequirement] = {
    "line": ChartRequirement(
        chart_type="line",
        data_structure="array",
        required_fields=["id", "data"],
        optional_fields=["color"],
        example_structure=[
            {"id": "series1", "data": [{"x": "2024-01", "y": 100}, {"x": "2024-02", "y": 120}]},
        ],
        rules=[
            "Each series needs a unique id",
            "data is an array of {x, y} points",
            "x values within a series should be unique and ordered",
        ],
    ),
    "bar": ChartRequirement(
        chart_type="bar",
        data_structure="array",
        required_fields=["id", "value"],
        optional_fields=["label", "color"],
        example_structure=[{"id": "A", "label": "Category A", "value": 30}],
        rules=["id must be unique per bar", "value must be numeric"],
    ),
    "pie": ChartRequirement(
        chart_type="pie",
        data_structure="array",
        required_fields=["id", "value"],
        optional_fields=["label", "color"],
        example_structure=[{"id": "slice1", "label": "Slice 1", "value": 45}],
        rules=["id must be unique per slice", "value must be a non-negative number"],
    ),
    "scatter": ChartRequirement(
        chart_type="scatter",
        data_structure="array",
        required_fields=["id", "data"],
        optional_fields=["color"],
        example_structure=[{"id": "group1", "data": [{"x": 1.5, "y": 2.3}]}],
        rules=["Each group needs a unique id", "x and y must be numeric"],
    ),
    "heatmap": ChartRequirement(
        chart_type="heatmap",
        data_structure="array",
        required_fields=["x", "y", "v"],
        optional_fields=[],
        example_structure=[{"x": "Mon", "y": "09:00", "v": 12}],
        rules=["x and y are categorical axes", "v is the numeric cell value"],
    ),
    "treemap": ChartRequirement(
        chart_type="treemap",
        data_structure="tree",
        required_fields=["name", "value"],
        optional_fields=["children", "loc", "color"],
        example_structure={
            "name": "root",
            "value": 100,
            "loc": 100,
            "children": [{"name": "A", "value": 60, "loc": 60}, {"name": "B", "value": 40, "loc": 40}],
        },
        rules=[
            "Output is a single root node",
            "Every node has a name and a numeric value",
            "loc mirrors value for the renderer",
        ],
    ),
    "funnel": ChartRequirement(
        chart_type="funnel",
        data_structure="array",
        required_fields=["id", "value"],
        optional_fields=["label"],
        example_structure=[{"id": "visited", "label": "Visited", "value": 1000}],
        rules=["Stages are ordered from widest to narrowest", "value must be numeric"],
    ),
    "calendar": ChartRequirement(
        chart_type="calendar",
        data_structure="array",
        required_fields=["day", "value"],
        optional_fields=[],
        example_structure=[{"day": "2024-01-15", "value": 7}],
        rules=["day is an ISO date (YYYY-MM-DD)", "value must be numeric"],
    ),
}

# 개별 포인트 안에서 숫자여야 하는 필드
NUMERIC_FIELDS = {"value", "v", "loc"}


def get_chart_requirement(chart_type: str) -> ChartRequirement:
    """차트 타입에 해당하는 요구사항을 돌려줍니다. 등록되지 않은 타입이면 UnsupportedChartTypeError."""
    requirement = CHART_REQUIREMENTS.get((chart_type or "").lower())
    if requirement is None:
        raise UnsupportedChartTypeError(chart_type)
    return requirement


def supported_chart_types() -> List[str]:
    return list(CHART_REQUIREMENTS.keys())
