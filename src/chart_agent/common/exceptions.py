class ChartAgentError(Exception):
    """에이전트 내부에서 발생하는 예외의 공통 부모 클래스"""


class LlmResponseParseError(ChartAgentError):
    """LLM 응답에서 기대한 JSON 구조를 추출하지 못했을 때 발생합니다."""


class UnsupportedChartTypeError(ChartAgentError):
    """차트 요구사항 레지스트리에 없는 차트 타입이 요청되었을 때 발생합니다."""

    def __init__(self, chart_type: str):
        self.chart_type = chart_type
        super().__init__(f"Unsupported chart type: {chart_type}")


class UnsafeQueryError(ChartAgentError):
    """읽기 전용 정책을 위반하는 SQL이 전달되었을 때 발생합니다."""
