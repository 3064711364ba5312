"""
Data contracts for the Pixlie Analyst engine and API.

Ownership is one-directional: a Workspace owns its Objectives, an Objective
owns its Conversation, a Conversation owns its Steps. Back references are
plain identifiers.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union
from enum import Enum
import uuid

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing_extensions import Annotated


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ObjectiveStatus(str, Enum):
    """Lifecycle of an objective and its conversation."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ObjectiveStatus.ACTIVE


class StepType(str, Enum):
    PLANNING = "planning"
    TOOL_EXECUTION = "tool_execution"
    SYNTHESIS = "synthesis"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STEP_STATUS_RANK[self]

    @property
    def is_final(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED)


_STEP_STATUS_RANK = {
    StepStatus.PENDING: 0,
    StepStatus.IN_PROGRESS: 1,
    StepStatus.COMPLETED: 2,
    StepStatus.FAILED: 2,
}


class ToolExecution(BaseModel):
    """One tool invocation. Exactly one of result/error is set."""

    model_config = ConfigDict(frozen=True)

    tool_name: str = Field(..., description="Name of the invoked tool")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Input parameters")
    result: Optional[Any] = Field(None, description="Structured result on success")
    error: Optional[str] = Field(None, description="Error message on failure")
    execution_time_ms: float = Field(0.0, ge=0.0, description="Execution duration")

    @model_validator(mode="after")
    def _exactly_one_outcome(self):
        if (self.result is None) == (self.error is None):
            raise ValueError("exactly one of result or error must be set")
        return self

    @property
    def ok(self) -> bool:
        return self.error is None


class ToolExecutionMetrics(BaseModel):
    """Counts and timings over every tool execution of a conversation."""
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    total_time_ms: float = 0.0
    average_time_ms: float = 0.0
    max_time_ms: float = 0.0


class StepResult(BaseModel):
    data: Any = Field(default=None, description="Structured step output")
    summary: Optional[str] = Field(None, description="Human-readable summary")
    next_action: Optional[str] = Field(None, description="Suggested next action")


class ConversationStep(BaseModel):
    """One iteration of plan -> act -> observe."""
    step_id: int = Field(..., ge=1, description="Monotonic id within the conversation")
    step_type: StepType
    llm_request: Optional[str] = None
    llm_response: Optional[str] = None
    tool_calls: List[ToolExecution] = Field(default_factory=list)
    results: Optional[StepResult] = None
    status: StepStatus = StepStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    """Append-only ledger root of one objective."""
    id: str = Field(default_factory=new_id)
    objective_id: str
    user_query: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    status: ObjectiveStatus = ObjectiveStatus.ACTIVE
    terminal_reason: Optional[str] = None
    steps: List[ConversationStep] = Field(default_factory=list)
    next_step_id: int = Field(1, ge=1, description="Next id to assign; ids are never reused")
    iterations: int = Field(0, ge=0, description="Planning calls made so far")
    awaiting_user_prompt: Optional[str] = Field(None, description="Set while suspended on AskUser")
    pending_messages: List[str] = Field(default_factory=list, description="User messages not yet planned on")
    pending_answers: List[str] = Field(default_factory=list, description="Answers to the pending AskUser not yet consumed")
    final_answer: Optional[str] = None


class Objective(BaseModel):
    """One user-stated analysis goal."""
    id: str = Field(default_factory=new_id)
    workspace: str = Field(..., description="Owning workspace name")
    text: str = Field(..., min_length=1, max_length=4000)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    status: ObjectiveStatus = ObjectiveStatus.ACTIVE
    terminal_reason: Optional[str] = None
    unsaved: bool = Field(False, description="Last save attempt failed")
    conversation: Conversation


class Workspace(BaseModel):
    """Durable root grouping objectives and their ledgers."""
    name: str
    path: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    objectives: List[Objective] = Field(default_factory=list)

    def find_objective(self, objective_id: str) -> Optional[Objective]:
        for objective in self.objectives:
            if objective.id == objective_id:
                return objective
        return None


class ToolCategory(str, Enum):
    DATA_QUERY = "data_query"
    ENTITY_ANALYSIS = "entity_analysis"
    RELATION_EXPLORATION = "relation_exploration"
    SCHEMA = "schema"


class ToolConstraints(BaseModel):
    model_config = ConfigDict(frozen=True)

    read_only: bool = True
    max_rows: Optional[int] = None
    timeout_seconds: Optional[float] = None
    max_result_bytes: Optional[int] = None


class ToolDescriptor(BaseModel):
    """Static tool metadata, registered once at startup."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., pattern=r"^[a-zA-Z_][a-zA-Z0-9_]{0,63}$")
    description: str
    category: ToolCategory = ToolCategory.DATA_QUERY
    input_schema: Dict[str, Any] = Field(default_factory=dict, description="JSON Schema of the parameters")
    constraints: ToolConstraints = Field(default_factory=ToolConstraints)
    examples: List[Dict[str, Any]] = Field(default_factory=list)


# Plan decisions returned by providers

class InvokeTool(BaseModel):
    kind: Literal["invoke_tool"] = "invoke_tool"
    name: str
    params: Dict[str, Any] = Field(default_factory=dict)


class AskUser(BaseModel):
    kind: Literal["ask_user"] = "ask_user"
    prompt: str


class FinalAnswer(BaseModel):
    kind: Literal["final_answer"] = "final_answer"
    text: str
    data: Any = None


class NeedMoreIterations(BaseModel):
    kind: Literal["need_more_iterations"] = "need_more_iterations"
    reason: str = ""


PlanDecision = Annotated[
    Union[InvokeTool, AskUser, FinalAnswer, NeedMoreIterations],
    Field(discriminator="kind"),
]


# API contracts

class StartObjectiveRequest(BaseModel):
    workspace: Optional[str] = Field(None, description="Workspace name; the default workspace when omitted")
    objective: str = Field(..., min_length=1, max_length=4000, description="Natural language objective")


class UserMessageRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4000)


class ObjectiveResponse(BaseModel):
    objective_id: str
    workspace: str
    status: ObjectiveStatus
    terminal_reason: Optional[str] = None
    unsaved: bool = False
    conversation: Conversation

    @classmethod
    def from_objective(cls, objective: Objective) -> "ObjectiveResponse":
        return cls(
            objective_id=objective.id,
            workspace=objective.workspace,
            status=objective.status,
            terminal_reason=objective.terminal_reason,
            unsaved=objective.unsaved,
            conversation=objective.conversation,
        )


class ObjectiveMetricsResponse(BaseModel):
    objective_id: str
    status: ObjectiveStatus
    iterations: int
    step_count: int
    tools: ToolExecutionMetrics


class ObjectiveSummary(BaseModel):
    objective_id: str
    text: str
    status: ObjectiveStatus
    step_count: int
    created_at: datetime
    updated_at: datetime


class WorkspaceSummary(BaseModel):
    name: str
    path: str
    created_at: datetime
    updated_at: datetime
    objectives: List[ObjectiveSummary] = Field(default_factory=list)

    @classmethod
    def from_workspace(cls, workspace: Workspace) -> "WorkspaceSummary":
        return cls(
            name=workspace.name,
            path=workspace.path,
            created_at=workspace.created_at,
            updated_at=workspace.updated_at,
            objectives=[
                ObjectiveSummary(
                    objective_id=o.id,
                    text=o.text,
                    status=o.status,
                    step_count=len(o.conversation.steps),
                    created_at=o.created_at,
                    updated_at=o.updated_at,
                )
                for o in workspace.objectives
            ],
        )


class ToolSchemaResponse(BaseModel):
    tools: List[ToolDescriptor] = Field(default_factory=list)


class HealthCheck(BaseModel):
    status: str
    timestamp: datetime
    version: str
    uptime_seconds: float
    dependencies: Dict[str, str] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
