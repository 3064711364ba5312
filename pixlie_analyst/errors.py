"""
Error taxonomy for the analysis engine.

Recoverable errors (tool failures, invalid parameters) are turned into
observations for the planner; terminal errors end an objective with a
named reason recorded on its final step.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class TerminalReason(str, Enum):
    """Reason recorded on the terminal step of a conversation."""
    ANSWERED = "answered"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    PROVIDER_ERROR = "provider_error"
    TOOL_FAILURE_LIMIT = "tool_failure_limit"
    USER_CANCELLED = "user_cancelled"
    ASK_USER_TIMEOUT = "ask_user_timeout"
    INTERNAL_ERROR = "internal_error"


class AnalystError(Exception):
    """Base class for all engine errors."""

    reason: str = "analyst_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details


class ProviderError(AnalystError):
    """An LLM provider failed (network, timeout, vendor rejection)."""

    reason = TerminalReason.PROVIDER_ERROR.value

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        attempts: int = 1,
        errors: Optional[List[str]] = None,
    ):
        super().__init__(message, provider=provider, attempts=attempts)
        self.provider = provider
        self.attempts = attempts
        self.errors = errors or []


class ToolExecutionError(AnalystError):
    """A tool handler failed; captured on the ToolExecution record."""

    reason = "tool_execution_error"


class ToolNotFound(ToolExecutionError):
    reason = "tool_not_found"


class ParameterValidationError(AnalystError):
    """Malformed tool parameters; returned to the planner as an observation."""

    reason = "validation_error"


class UnsafeQueryError(ParameterValidationError):
    """SQL that is not a single parameterised read-only query."""

    reason = "unsafe_query"


class PersistenceError(AnalystError):
    """Workspace save or load failed."""

    reason = "persistence_error"


class InvalidState(AnalystError):
    """Operation not allowed in the current state."""

    reason = "invalid_state"


class ObjectiveNotFound(AnalystError):
    reason = "objective_not_found"


class WorkspaceNotFound(AnalystError):
    reason = "workspace_not_found"
