"""
Provider backed by a LangChain chat model.

Data tools and the control tools (ask_user, final_answer,
need_more_iterations) are bound as functions; a reply without a tool call
is taken as the final answer.
"""

from typing import AsyncIterator, List, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage
import structlog

from ..errors import ProviderError
from ..models.contracts import PlanDecision, ToolDescriptor
from ..tools.registry import function_payload
from .base import (
    CONTROL_TOOLS,
    SYSTEM_PROMPT,
    PlanChunk,
    PlanningContext,
    PlanStreamEnd,
    PlanStreamItem,
    build_user_prompt,
    decision_from_message,
)

logger = structlog.get_logger(__name__)

_JSON_FALLBACK_INSTRUCTIONS = """
Tool calling is unavailable. Reply with exactly one JSON object:
{{"kind": "invoke_tool", "name": "<tool>", "params": {{...}}}}
{{"kind": "ask_user", "prompt": "<question>"}}
{{"kind": "need_more_iterations", "reason": "<note>"}}
or the final answer as plain text.
Available tools:
{tools}"""


class LangChainProvider:
    """Adapts any ``BaseChatModel`` to the provider interface."""

    def __init__(self, name: str, llm: BaseChatModel, model: Optional[str] = None):
        self.name = name
        self.llm = llm
        self.model = model

    def _bound(self, tools: List[ToolDescriptor]):
        payloads = [function_payload(t) for t in tools] + CONTROL_TOOLS
        try:
            return self.llm.bind_tools(payloads), True
        except NotImplementedError:
            logger.info("Chat model has no tool calling; using JSON replies", provider=self.name)
            return self.llm, False

    def _messages(self, context: PlanningContext, tools: List[ToolDescriptor], native_tools: bool):
        system = SYSTEM_PROMPT.format(iteration=context.iteration, max_iterations=context.max_iterations)
        if not native_tools:
            listing = "\n".join(f"- {t.name}: {t.description} schema={t.input_schema}" for t in tools)
            system += _JSON_FALLBACK_INSTRUCTIONS.format(tools=listing)
        return [SystemMessage(content=system), HumanMessage(content=build_user_prompt(context))]

    async def plan(self, context: PlanningContext, tools: List[ToolDescriptor]) -> PlanDecision:
        runnable, native_tools = self._bound(tools)
        try:
            reply = await runnable.ainvoke(self._messages(context, tools, native_tools))
        except Exception as e:
            raise ProviderError(f"{self.name} request failed: {e}", provider=self.name) from e

        if not isinstance(reply, AIMessage):
            reply = AIMessage(content=getattr(reply, "content", str(reply)))
        decision = decision_from_message(reply)
        logger.debug("Provider planned", provider=self.name, kind=decision.kind, objective_id=context.objective_id)
        return decision

    async def stream_plan(self, context: PlanningContext, tools: List[ToolDescriptor]) -> AsyncIterator[PlanStreamItem]:
        runnable, native_tools = self._bound(tools)
        merged: Optional[AIMessageChunk] = None
        try:
            async for chunk in runnable.astream(self._messages(context, tools, native_tools)):
                if not isinstance(chunk, AIMessageChunk):
                    chunk = AIMessageChunk(content=getattr(chunk, "content", str(chunk)))
                merged = chunk if merged is None else merged + chunk
                if isinstance(chunk.content, str) and chunk.content and not merged.tool_call_chunks:
                    yield PlanChunk(text=chunk.content)
        except Exception as e:
            raise ProviderError(f"{self.name} stream failed: {e}", provider=self.name) from e

        if merged is None:
            raise ProviderError(f"{self.name} returned an empty stream", provider=self.name)
        yield PlanStreamEnd(decision=decision_from_message(merged))
