"""Tool surface over the hierarchical store."""

from decision_os.tools.decision_tools import get_decision_tools, get_store, run_tool

__all__ = ["get_decision_tools", "get_store", "run_tool"]
