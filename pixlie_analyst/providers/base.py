"""
LLM provider abstraction.

A provider turns the planning context of one objective into exactly one
PlanDecision. Vendor specifics stay behind this interface; the analysis
loop only ever sees decisions.
"""

import json
from typing import Any, AsyncIterator, Dict, List, Protocol, Union, runtime_checkable

from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from langchain_core.messages import AIMessage
import structlog

from ..models.contracts import (
    AskUser,
    FinalAnswer,
    InvokeTool,
    NeedMoreIterations,
    PlanDecision,
    ToolDescriptor,
)

logger = structlog.get_logger(__name__)

_decision_adapter = TypeAdapter(PlanDecision)

CONTROL_TOOLS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "ask_user",
            "description": "Ask the user a clarifying question when the objective is ambiguous.",
            "parameters": {
                "type": "object",
                "properties": {"prompt": {"type": "string", "description": "Question for the user"}},
                "required": ["prompt"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "final_answer",
            "description": "Finish the objective with the final answer for the user.",
            "parameters": {
                "type": "object",
                "properties": {
                    "text": {"type": "string", "description": "Final answer text"},
                    "data": {"description": "Optional structured data supporting the answer"},
                },
                "required": ["text"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "need_more_iterations",
            "description": "Record a planning note and continue without calling a tool.",
            "parameters": {
                "type": "object",
                "properties": {"reason": {"type": "string"}},
                "required": ["reason"],
            },
        },
    },
]

CONTROL_TOOL_NAMES = {t["function"]["name"] for t in CONTROL_TOOLS}


class PlanningContext(BaseModel):
    """Everything a provider needs to plan the next step of one objective."""
    workspace: str
    objective_id: str
    objective: str
    context: str = Field("", description="Rendered conversation ledger")
    pending_messages: List[str] = Field(default_factory=list)
    iteration: int = 1
    max_iterations: int = 10


class PlanChunk(BaseModel):
    text: str


class PlanStreamEnd(BaseModel):
    decision: PlanDecision


PlanStreamItem = Union[PlanChunk, PlanStreamEnd]


@runtime_checkable
class LLMProvider(Protocol):
    """Capability set every provider implements."""

    name: str

    async def plan(self, context: PlanningContext, tools: List[ToolDescriptor]) -> PlanDecision:
        ...

    def stream_plan(self, context: PlanningContext, tools: List[ToolDescriptor]) -> AsyncIterator[PlanStreamItem]:
        """Yield text chunks, then exactly one PlanStreamEnd."""
        ...


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return ""


def decision_from_text(text: str) -> PlanDecision:
    """
    Interpret plain model output.

    A JSON object carrying a ``kind`` is read as a decision; anything else
    is the final answer.
    """
    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            return _decision_adapter.validate_python(json.loads(stripped))
        except (ValueError, ValidationError):
            pass
    return FinalAnswer(text=text)


def decision_from_message(message: AIMessage) -> PlanDecision:
    """
    Convert a chat model reply into a decision.

    Only the first tool call is honoured; the loop runs one step per
    planning call.
    """
    tool_calls = getattr(message, "tool_calls", None) or []
    if tool_calls:
        call = tool_calls[0]
        name = call.get("name")
        args = call.get("args") or {}
        if len(tool_calls) > 1:
            logger.debug("Ignoring extra tool calls", kept=name, dropped=len(tool_calls) - 1)
        if name == "ask_user":
            return AskUser(prompt=str(args.get("prompt", "")))
        if name == "final_answer":
            return FinalAnswer(text=str(args.get("text", "")), data=args.get("data"))
        if name == "need_more_iterations":
            return NeedMoreIterations(reason=str(args.get("reason", "")))
        return InvokeTool(name=name, params=args)

    return decision_from_text(_message_text(message.content))


def decision_summary(decision: PlanDecision) -> str:
    if isinstance(decision, InvokeTool):
        return f"invoke {decision.name} {json.dumps(decision.params, default=str, sort_keys=True)}"
    if isinstance(decision, AskUser):
        return f"ask user: {decision.prompt}"
    if isinstance(decision, NeedMoreIterations):
        return f"continue planning: {decision.reason}"
    return f"final answer: {decision.text}"


def chunk_text(text: str, size: int = 32) -> List[str]:
    """Split text into streaming chunks whose concatenation is ``text``."""
    if not text:
        return []
    return [text[i:i + size] for i in range(0, len(text), size)]


SYSTEM_PROMPT = """You are a data analyst working toward a user's objective over a read-only database.

Work in small steps. On every turn do exactly one of:
- call one data tool to gather evidence;
- call ask_user when the objective is genuinely ambiguous;
- call need_more_iterations to record a planning note;
- call final_answer (or reply in plain text) once the evidence answers the objective.

Never invent data. Base the final answer on tool results recorded in the conversation.
You are on iteration {iteration} of at most {max_iterations}."""


def build_user_prompt(context: PlanningContext) -> str:
    sections = [f"Objective: {context.objective}"]
    if context.context:
        sections.append(f"Conversation so far:\n{context.context}")
    if context.pending_messages:
        sections.append("New messages from the user:\n" + "\n".join(f"- {m}" for m in context.pending_messages))
    return "\n\n".join(sections)
