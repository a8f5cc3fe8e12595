from chart_agent.graph.state import PROGRESS_MAP, AgentState, ProgressState

__all__ = ["AgentState", "ProgressState", "PROGRESS_MAP"]
