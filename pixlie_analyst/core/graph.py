"""
LangGraph wiring of the analysis loop.

plan -> execute_tool | await_user | synthesize | fail, with tool and user
nodes looping back to plan until a terminal outcome.
"""

from typing import Literal

import structlog
from langgraph.graph import StateGraph, START, END

from ..models.contracts import AskUser, FinalAnswer, InvokeTool, NeedMoreIterations
from .nodes import LoopNodes
from .state import AnalysisState

logger = structlog.get_logger(__name__)


def route_entry(state: AnalysisState) -> Literal["plan", "await_user"]:
    """A run resumed while suspended on AskUser goes straight back to waiting."""
    return "await_user" if state.get("resume_step_id") is not None else "plan"


def route_after_plan(state: AnalysisState) -> Literal["plan", "execute_tool", "await_user", "synthesize", "fail"]:
    if state.get("terminal"):
        return "fail"
    decision = state.get("decision")
    if isinstance(decision, InvokeTool):
        return "execute_tool"
    if isinstance(decision, AskUser):
        return "await_user"
    if isinstance(decision, FinalAnswer):
        return "synthesize"
    if isinstance(decision, NeedMoreIterations):
        return "plan"
    logger.error("Unroutable planner decision", objective_id=state.get("objective_id"), decision=repr(decision))
    return "fail"


def route_after_tool(state: AnalysisState) -> Literal["plan", "fail"]:
    return "fail" if state.get("terminal") else "plan"


def route_after_user(state: AnalysisState) -> Literal["plan", "fail"]:
    return "fail" if state.get("terminal") else "plan"


def create_analysis_graph(nodes: LoopNodes) -> StateGraph:
    """
    Create the analysis loop graph for one objective.

    Args:
        nodes: Node implementations bound to the objective's runtime

    Returns:
        Uncompiled StateGraph
    """
    graph = StateGraph(AnalysisState)

    graph.add_node("plan", nodes.plan)
    graph.add_node("execute_tool", nodes.execute_tool)
    graph.add_node("await_user", nodes.await_user)
    graph.add_node("synthesize", nodes.synthesize)
    graph.add_node("fail", nodes.fail)

    graph.add_conditional_edges(START, route_entry, {"plan": "plan", "await_user": "await_user"})
    graph.add_conditional_edges(
        "plan",
        route_after_plan,
        {
            "plan": "plan",
            "execute_tool": "execute_tool",
            "await_user": "await_user",
            "synthesize": "synthesize",
            "fail": "fail",
        },
    )
    graph.add_conditional_edges("execute_tool", route_after_tool, {"plan": "plan", "fail": "fail"})
    graph.add_conditional_edges("await_user", route_after_user, {"plan": "plan", "fail": "fail"})
    graph.add_edge("synthesize", END)
    graph.add_edge("fail", END)

    return graph
