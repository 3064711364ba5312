"""
Test helpers: objective builders, a stub tool registry and a provider
scripted per objective.
"""

import asyncio
from typing import Dict, List, Sequence

from pixlie_analyst.models.contracts import (
    Conversation,
    FinalAnswer,
    Objective,
    PlanDecision,
    ToolCategory,
    ToolDescriptor,
)
from pixlie_analyst.providers.base import PlanChunk, PlanningContext, PlanStreamEnd, chunk_text
from pixlie_analyst.tools.registry import ToolRegistry
from pixlie_analyst.tools.schemas import SqlQueryParams, TableSchemaParams


def make_objective(text: str = "How many distinct authors posted?", workspace: str = "default") -> Objective:
    objective = Objective(
        workspace=workspace,
        text=text,
        conversation=Conversation(objective_id="pending", user_query=text),
    )
    objective.conversation.objective_id = objective.id
    return objective


def build_stub_registry(rows: Sequence[Sequence] = ((42,),)) -> ToolRegistry:
    """Registry whose sql_query ignores the SQL and returns fixed rows."""
    registry = ToolRegistry(default_timeout_seconds=2)

    def sql_query(params: SqlQueryParams) -> Dict:
        return {
            "columns": ["authors"],
            "rows": [list(r) for r in rows],
            "row_count": len(rows),
            "has_more": False,
        }

    def table_schema(params: TableSchemaParams) -> Dict:
        raise RuntimeError("schema unavailable")

    registry.register(
        ToolDescriptor(name="sql_query", description="Run SQL", category=ToolCategory.DATA_QUERY),
        sql_query,
        SqlQueryParams,
    )
    registry.register(
        ToolDescriptor(name="table_schema", description="Describe tables", category=ToolCategory.SCHEMA),
        table_schema,
        TableSchemaParams,
    )
    registry.freeze()
    return registry


class ByObjectiveProvider:
    """
    Scripted provider keyed by objective text, so concurrent objectives
    sharing one provider each follow their own script.
    """

    def __init__(self, scripts: Dict[str, List[PlanDecision]], name: str = "by-objective", chunk_size: int = 8):
        self.name = name
        self.scripts = {text: list(decisions) for text, decisions in scripts.items()}
        self.chunk_size = chunk_size
        self.calls: List[PlanningContext] = []

    async def plan(self, context: PlanningContext, tools) -> PlanDecision:
        self.calls.append(context)
        await asyncio.sleep(0)
        script = self.scripts.get(context.objective, [])
        if script:
            return script.pop(0)
        return FinalAnswer(text=f"Done: {context.objective}")

    async def stream_plan(self, context: PlanningContext, tools):
        decision = await self.plan(context, tools)
        if isinstance(decision, FinalAnswer):
            for piece in chunk_text(decision.text, self.chunk_size):
                yield PlanChunk(text=piece)
        yield PlanStreamEnd(decision=decision)


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` on the running loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
