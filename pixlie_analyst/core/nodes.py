"""
Nodes of the analysis loop.

One iteration is plan -> act -> observe and writes exactly one step:
InvokeTool opens a ToolExecution step, AskUser and NeedMoreIterations a
Planning step, FinalAnswer a Synthesis step. Every terminal outcome ends
the conversation with exactly one terminal step.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..errors import ProviderError, TerminalReason
from ..models.contracts import (
    AskUser,
    FinalAnswer,
    InvokeTool,
    NeedMoreIterations,
    Objective,
    ObjectiveStatus,
    StepResult,
    StepType,
    utcnow,
)
from ..providers.base import PlanChunk, PlanningContext, PlanStreamEnd, build_user_prompt, chunk_text, decision_summary
from ..providers.chain import ProviderChain
from ..tools.registry import ToolRegistry
from .ledger import ConversationLedger
from .state import AnalysisState, LoopLimits, terminal

logger = structlog.get_logger(__name__)

Checkpoint = Callable[[], Awaitable[None]]


class LoopNodes:
    """Graph nodes bound to the runtime of one objective."""

    def __init__(
        self,
        objective: Objective,
        ledger: ConversationLedger,
        registry: ToolRegistry,
        chain: ProviderChain,
        limits: LoopLimits,
        answers: "asyncio.Queue[str]",
        checkpoint: Optional[Checkpoint] = None,
    ):
        self.objective = objective
        self.ledger = ledger
        self.registry = registry
        self.chain = chain
        self.limits = limits
        self.answers = answers
        self._checkpoint = checkpoint

    @property
    def conversation(self):
        return self.ledger.conversation

    async def checkpoint(self) -> None:
        if self._checkpoint is not None:
            await self._checkpoint()

    def _drain_answers(self) -> None:
        while not self.answers.empty():
            self.answers.get_nowait()

    def _settle_answers(self, answer: Optional[str]) -> None:
        """Consume ``answer``; any further answers become plain messages."""
        answers = self.conversation.pending_answers
        if answer is not None and answers and answers[0] == answer:
            answers.pop(0)
        self.conversation.pending_messages.extend(answers)
        answers.clear()
        self._drain_answers()

    async def plan(self, state: AnalysisState) -> Dict[str, Any]:
        """Ask the provider chain for the next decision."""
        conversation = self.conversation
        if conversation.iterations >= self.limits.max_iterations:
            logger.warning(
                "Iteration limit reached",
                objective_id=self.objective.id,
                max_iterations=self.limits.max_iterations,
            )
            return {
                "terminal": terminal(
                    ObjectiveStatus.FAILED,
                    TerminalReason.MAX_ITERATIONS_EXCEEDED,
                    f"Reached the limit of {self.limits.max_iterations} iterations without a final answer",
                )
            }

        messages = list(conversation.pending_messages)
        conversation.pending_messages.clear()
        self._drain_answers()
        conversation.iterations += 1

        context = PlanningContext(
            workspace=self.objective.workspace,
            objective_id=self.objective.id,
            objective=self.objective.text,
            context=self.ledger.render_context(self.limits.context_window_steps),
            pending_messages=messages,
            iteration=conversation.iterations,
            max_iterations=self.limits.max_iterations,
        )
        tools = self.registry.descriptors()

        chunks: List[str] = []
        try:
            if self.limits.enable_streaming:
                decision = None
                async for item in self.chain.stream_plan(context, tools):
                    if isinstance(item, PlanChunk):
                        chunks.append(item.text)
                    elif isinstance(item, PlanStreamEnd):
                        decision = item.decision
            else:
                decision = await self.chain.plan(context, tools)
        except ProviderError as e:
            return {
                "terminal": terminal(
                    ObjectiveStatus.FAILED,
                    TerminalReason.PROVIDER_ERROR,
                    f"LLM provider failed after {e.attempts} attempts: {e.message}",
                    data={"attempts": e.attempts, "errors": e.errors},
                )
            }

        summary = decision_summary(decision)
        logger.info(
            "Planned next step",
            objective_id=self.objective.id,
            iteration=conversation.iterations,
            kind=decision.kind,
        )
        request = build_user_prompt(context)

        if isinstance(decision, NeedMoreIterations):
            step = await self.ledger.open_step(StepType.PLANNING, llm_request=request, llm_response=summary)
            await self.ledger.complete_step(
                step.step_id, StepResult(summary=decision.reason or "Continue planning", next_action="plan")
            )

        return {
            "decision": decision,
            "plan_request": request,
            "plan_response": summary,
            "stream_chunks": chunks,
        }

    async def execute_tool(self, state: AnalysisState) -> Dict[str, Any]:
        decision: InvokeTool = state["decision"]
        step = await self.ledger.open_step(
            StepType.TOOL_EXECUTION,
            llm_request=state.get("plan_request"),
            llm_response=state.get("plan_response"),
        )
        await self.ledger.start_step(step.step_id)

        execution = await self.registry.execute(decision.name, decision.params)
        await self.ledger.record_tool_execution(step.step_id, execution)

        if execution.ok:
            await self.ledger.complete_step(
                step.step_id,
                StepResult(summary=_tool_summary(decision.name, execution.result), next_action="plan"),
            )
            return {"failure_tool": None, "failure_streak": 0}

        await self.ledger.fail_step(step.step_id, f"{decision.name} failed: {execution.error}")
        streak = state.get("failure_streak", 0) + 1 if state.get("failure_tool") == decision.name else 1
        update: Dict[str, Any] = {"failure_tool": decision.name, "failure_streak": streak}

        limit = self.limits.max_consecutive_tool_failures
        if limit and streak >= limit:
            logger.warning("Tool failure limit reached", objective_id=self.objective.id, tool=decision.name, streak=streak)
            update["terminal"] = terminal(
                ObjectiveStatus.FAILED,
                TerminalReason.TOOL_FAILURE_LIMIT,
                f"Stopped after {streak} consecutive failures of {decision.name}: {execution.error}",
                data={"tool": decision.name, "failures": streak},
            )
        return update

    async def await_user(self, state: AnalysisState) -> Dict[str, Any]:
        """Suspend until the user answers, persisting first."""
        resume_step_id = state.get("resume_step_id")
        if resume_step_id is not None:
            step = self.ledger.get_step(resume_step_id)
            prompt = self.conversation.awaiting_user_prompt or ""
        else:
            decision: AskUser = state["decision"]
            prompt = decision.prompt
            step = await self.ledger.open_step(
                StepType.PLANNING,
                llm_request=state.get("plan_request"),
                llm_response=state.get("plan_response"),
            )
            self.conversation.awaiting_user_prompt = prompt
            await self.ledger.start_step(step.step_id)

        await self.checkpoint()
        logger.info("Waiting for user answer", objective_id=self.objective.id, step_id=step.step_id)

        try:
            answer = await asyncio.wait_for(self.answers.get(), timeout=self.limits.ask_user_timeout_seconds)
        except asyncio.TimeoutError:
            self._settle_answers(None)
            self.conversation.awaiting_user_prompt = None
            await self.ledger.fail_step(step.step_id, f"No answer within {self.limits.ask_user_timeout_seconds}s")
            return {
                "resume_step_id": None,
                "terminal": terminal(
                    ObjectiveStatus.FAILED,
                    TerminalReason.ASK_USER_TIMEOUT,
                    f"The user did not answer: {prompt}",
                ),
            }

        self._settle_answers(answer)
        self.conversation.awaiting_user_prompt = None
        await self.ledger.complete_step(
            step.step_id,
            StepResult(data={"question": prompt, "answer": answer}, summary=f"User answered: {answer}", next_action="plan"),
        )
        return {"resume_step_id": None}

    async def synthesize(self, state: AnalysisState) -> Dict[str, Any]:
        decision: FinalAnswer = state["decision"]
        step = await self.ledger.open_step(
            StepType.SYNTHESIS,
            llm_request=state.get("plan_request"),
            llm_response=state.get("plan_response"),
        )
        await self.ledger.start_step(step.step_id)

        if self.limits.enable_streaming:
            chunks = state.get("stream_chunks") or []
            if "".join(chunks) != decision.text:
                chunks = chunk_text(decision.text)
            for piece in chunks:
                await self.ledger.append_content(step.step_id, piece)

        await self.ledger.complete_step(step.step_id, StepResult(data=decision.data, summary=decision.text))
        await self.write_terminal(
            ObjectiveStatus.COMPLETED,
            TerminalReason.ANSWERED,
            decision.text,
            final_answer=decision.text,
            terminal_step_id=step.step_id,
        )
        return {}

    async def fail(self, state: AnalysisState) -> Dict[str, Any]:
        outcome = state["terminal"]
        await self.write_terminal(outcome["status"], outcome["reason"], outcome["summary"], data=outcome.get("data"))
        return {}

    async def write_terminal(
        self,
        status: ObjectiveStatus,
        reason: TerminalReason,
        summary: str,
        data: Any = None,
        final_answer: Optional[str] = None,
        terminal_step_id: Optional[int] = None,
    ) -> None:
        """
        End the conversation.

        Any step still open is failed first, then one terminal step is
        written (unless the synthesis step already is it), statuses are set,
        the workspace is checkpointed and subscribers are closed.
        """
        ledger = self.ledger
        if ledger.closed:
            return

        for step in ledger.steps:
            if not step.status.is_final and step.step_id != terminal_step_id:
                await ledger.fail_step(step.step_id, f"Abandoned: {summary}")

        if terminal_step_id is None:
            step = await ledger.open_step(StepType.SYNTHESIS)
            await ledger.fail_step(step.step_id, summary, data={"reason": reason.value, **({"detail": data} if data is not None else {})})

        self.conversation.awaiting_user_prompt = None
        self.objective.status = status
        self.objective.terminal_reason = reason.value
        self.objective.updated_at = utcnow()
        await ledger.set_status(status, reason.value, final_answer)

        logger.info(
            "Objective finished",
            objective_id=self.objective.id,
            workspace=self.objective.workspace,
            status=status.value,
            reason=reason.value,
            steps=len(ledger.steps),
        )
        await self.checkpoint()
        await ledger.close()


def _tool_summary(tool_name: str, result: Any) -> str:
    if isinstance(result, dict) and "row_count" in result:
        more = ", more available" if result.get("has_more") else ""
        return f"{tool_name} returned {result['row_count']} rows{more}"
    return f"{tool_name} succeeded"
