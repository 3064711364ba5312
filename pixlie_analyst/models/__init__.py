"""
Data models for the Pixlie Analyst service.

Contains the Pydantic models for the conversation ledger, tools, plan
decisions and API schemas.
"""

from .contracts import (
    ObjectiveStatus,
    StepType,
    StepStatus,
    ToolExecution,
    StepResult,
    ConversationStep,
    Conversation,
    Objective,
    Workspace,
    ToolCategory,
    ToolConstraints,
    ToolDescriptor,
    InvokeTool,
    AskUser,
    FinalAnswer,
    NeedMoreIterations,
    PlanDecision,
    StartObjectiveRequest,
    UserMessageRequest,
    ObjectiveResponse,
    WorkspaceSummary,
)

__all__ = [
    "ObjectiveStatus",
    "StepType",
    "StepStatus",
    "ToolExecution",
    "StepResult",
    "ConversationStep",
    "Conversation",
    "Objective",
    "Workspace",
    "ToolCategory",
    "ToolConstraints",
    "ToolDescriptor",
    "InvokeTool",
    "AskUser",
    "FinalAnswer",
    "NeedMoreIterations",
    "PlanDecision",
    "StartObjectiveRequest",
    "UserMessageRequest",
    "ObjectiveResponse",
    "WorkspaceSummary",
]
