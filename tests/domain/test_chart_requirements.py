import pytest

from chart_agent.common.exceptions import UnsupportedChartTypeError
from chart_agent.domain.chart_requirements import (
    CHART_REQUIREMENTS,
    get_chart_requirement,
    supported_chart_types,
)
from chart_agent.domain.models import ChartPlan, SQLQuery


def test_registry_entries():
    assert get_chart_requirement("pie").required_fields == ["id", "value"]
    assert get_chart_requirement("HEATMAP").required_fields == ["x", "y", "v"]
    assert get_chart_requirement("treemap").data_structure == "tree"
    assert set(supported_chart_types()) == set(CHART_REQUIREMENTS)


def test_unknown_chart_type_raises():
    with pytest.raises(UnsupportedChartTypeError, match="Unsupported chart type: sankey"):
        get_chart_requirement("sankey")


def test_chart_plan_accepts_camel_case():
    """LLM 의 camelCase 응답이 snake_case 필드로 매핑되는지 확인"""
    plan = ChartPlan.model_validate({
        "chartType": "bar",
        "queryPlan": [{"step": 1, "description": "count orders", "tables": ["Orders"], "expectedOutput": "region, n"}],
    })
    assert plan.chart_type == "bar"
    assert plan.query_plan[0].expected_output == "region, n"
    assert plan.clarification_needed is None


def test_sql_query_estimated_rows_coercion():
    assert SQLQuery(query="SELECT 1", estimatedRows="12").estimated_rows == 12
    assert SQLQuery(query="SELECT 1", estimatedRows="about 100").estimated_rows is None
