"""
State for the LangGraph analysis loop.

The durable record of an objective lives in its Conversation; this state
only carries what flows between nodes within one run.
"""

from typing import TypedDict, List, Dict, Any, Optional

from pydantic import BaseModel, Field

from ..errors import TerminalReason
from ..models.contracts import ObjectiveStatus, PlanDecision
from ..settings import Settings


class AnalysisState(TypedDict, total=False):
    """
    State object that flows through the analysis graph.

    ``terminal`` is set by any node that decides the objective must end;
    routing then sends the run to the ``fail`` node.
    """

    objective_id: str
    workspace: str

    # Latest planner output
    decision: Optional[PlanDecision]
    plan_request: Optional[str]
    plan_response: Optional[str]
    stream_chunks: List[str]

    # Same-tool failure streak
    failure_tool: Optional[str]
    failure_streak: int

    # Step to reuse when resuming a conversation suspended on AskUser
    resume_step_id: Optional[int]

    terminal: Optional[Dict[str, Any]]


class LoopLimits(BaseModel):
    """Per-objective limits, taken from Settings."""
    max_iterations: int = Field(10, ge=1)
    max_consecutive_tool_failures: int = Field(3, ge=0, description="0 disables the limit")
    context_window_steps: int = Field(8, ge=0)
    ask_user_timeout_seconds: Optional[float] = None
    enable_streaming: bool = True

    @classmethod
    def from_settings(cls, cfg: Settings) -> "LoopLimits":
        return cls(
            max_iterations=cfg.max_iterations,
            max_consecutive_tool_failures=cfg.max_consecutive_tool_failures,
            context_window_steps=cfg.context_window_steps,
            ask_user_timeout_seconds=cfg.ask_user_timeout_seconds,
            enable_streaming=cfg.enable_streaming,
        )

    @property
    def recursion_limit(self) -> int:
        # plan + action per iteration, so the iteration cap always fires first
        return self.max_iterations * 3 + 10


def create_initial_state(
    objective_id: str,
    workspace: str,
    resume_step_id: Optional[int] = None,
) -> AnalysisState:
    return AnalysisState(
        objective_id=objective_id,
        workspace=workspace,
        decision=None,
        plan_request=None,
        plan_response=None,
        stream_chunks=[],
        failure_tool=None,
        failure_streak=0,
        resume_step_id=resume_step_id,
        terminal=None,
    )


def terminal(
    status: ObjectiveStatus,
    reason: TerminalReason,
    summary: str,
    data: Any = None,
) -> Dict[str, Any]:
    return {"status": status, "reason": reason, "summary": summary, "data": data}
