"""
Deterministic providers for local runs and tests.
"""

import asyncio
from typing import AsyncIterator, List, Optional, Sequence

import structlog

from ..errors import ProviderError
from ..models.contracts import FinalAnswer, PlanDecision, ToolDescriptor
from .base import PlanChunk, PlanningContext, PlanStreamEnd, PlanStreamItem, chunk_text

logger = structlog.get_logger(__name__)


class ScriptedProvider:
    """
    Replays a fixed list of decisions, one per planning call.

    Once the script is exhausted the provider keeps returning ``default``
    (a FinalAnswer unless given). Every received context is kept in
    ``calls`` for assertions.
    """

    def __init__(
        self,
        decisions: Sequence[PlanDecision],
        name: str = "mock",
        default: Optional[PlanDecision] = None,
        delay_seconds: float = 0.0,
        chunk_size: int = 8,
    ):
        self.name = name
        self._decisions: List[PlanDecision] = list(decisions)
        self._default = default or FinalAnswer(text="No further analysis planned.")
        self.delay_seconds = delay_seconds
        self.chunk_size = chunk_size
        self.calls: List[PlanningContext] = []

    def _next(self, context: PlanningContext) -> PlanDecision:
        self.calls.append(context)
        if self._decisions:
            return self._decisions.pop(0)
        return self._default

    async def plan(self, context: PlanningContext, tools: List[ToolDescriptor]) -> PlanDecision:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return self._next(context)

    async def stream_plan(self, context: PlanningContext, tools: List[ToolDescriptor]) -> AsyncIterator[PlanStreamItem]:
        decision = await self.plan(context, tools)
        if isinstance(decision, FinalAnswer):
            for piece in chunk_text(decision.text, self.chunk_size):
                yield PlanChunk(text=piece)
        yield PlanStreamEnd(decision=decision)


class FailingProvider:
    """Raises ProviderError on every call and counts the attempts."""

    def __init__(self, name: str = "failing", message: str = "provider unavailable"):
        self.name = name
        self.message = message
        self.attempts = 0

    async def plan(self, context: PlanningContext, tools: List[ToolDescriptor]) -> PlanDecision:
        self.attempts += 1
        logger.debug("Failing provider called", provider=self.name, attempts=self.attempts)
        raise ProviderError(self.message, provider=self.name)

    async def stream_plan(self, context: PlanningContext, tools: List[ToolDescriptor]) -> AsyncIterator[PlanStreamItem]:
        await self.plan(context, tools)
        yield PlanStreamEnd(decision=FinalAnswer(text=""))
