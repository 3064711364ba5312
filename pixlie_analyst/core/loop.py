"""
Analysis loop runtime for one objective.
"""

import asyncio
from typing import Optional

import structlog

from ..errors import InvalidState, TerminalReason
from ..models.contracts import Objective, ObjectiveStatus, StepStatus, StepType
from ..providers.chain import ProviderChain
from ..tools.registry import ToolRegistry
from .graph import create_analysis_graph
from .ledger import ConversationLedger
from .nodes import Checkpoint, LoopNodes
from .state import LoopLimits, create_initial_state

logger = structlog.get_logger(__name__)


class AnalysisLoop:
    """
    Drives one objective from its current ledger state to a terminal state.

    The loop owns the objective's ledger while it runs. Cancellation is
    delivered by cancelling the task running ``run()``; the loop then writes
    a Cancelled terminal step and re-raises.
    """

    def __init__(
        self,
        objective: Objective,
        registry: ToolRegistry,
        chain: ProviderChain,
        limits: LoopLimits,
        ledger: Optional[ConversationLedger] = None,
        checkpoint: Optional[Checkpoint] = None,
    ):
        self.objective = objective
        self.ledger = ledger or ConversationLedger(objective.conversation)
        self.limits = limits
        self.answers: "asyncio.Queue[str]" = asyncio.Queue()
        self.cancel_requested = False
        self.nodes = LoopNodes(
            objective=objective,
            ledger=self.ledger,
            registry=registry,
            chain=chain,
            limits=limits,
            answers=self.answers,
            checkpoint=checkpoint,
        )
        self.graph = create_analysis_graph(self.nodes).compile()

    @property
    def awaiting_user(self) -> bool:
        return self.objective.conversation.awaiting_user_prompt is not None

    def submit_user_message(self, text: str) -> None:
        """
        Deliver a user message.

        While an AskUser is pending the message answers it; otherwise it
        is queued for the next planning call and never taken as an answer
        to a question asked later.
        """
        if self.ledger.closed or self.objective.status.is_terminal:
            raise InvalidState(
                f"Objective {self.objective.id} is {self.objective.status.value}",
                objective_id=self.objective.id,
            )
        conversation = self.objective.conversation
        if conversation.awaiting_user_prompt is not None:
            conversation.pending_answers.append(text)
            self.answers.put_nowait(text)
        else:
            conversation.pending_messages.append(text)

    def _suspended_step_id(self) -> Optional[int]:
        conversation = self.objective.conversation
        if conversation.awaiting_user_prompt is None or not conversation.steps:
            return None
        last = conversation.steps[-1]
        if last.step_type == StepType.PLANNING and last.status == StepStatus.IN_PROGRESS:
            return last.step_id
        return None

    async def run(self) -> Objective:
        """
        Run the graph until a terminal step is written.

        Raises:
            asyncio.CancelledError: After the Cancelled terminal step is written
        """
        resume_step_id = self._suspended_step_id()
        if resume_step_id is not None:
            # answers delivered before the restart
            for text in self.objective.conversation.pending_answers:
                self.answers.put_nowait(text)
        elif self.objective.conversation.pending_answers:
            # no question is pending any more, so these are plain messages
            conversation = self.objective.conversation
            conversation.pending_messages.extend(conversation.pending_answers)
            conversation.pending_answers.clear()

        state = create_initial_state(self.objective.id, self.objective.workspace, resume_step_id)
        logger.info(
            "Starting analysis loop",
            objective_id=self.objective.id,
            workspace=self.objective.workspace,
            resumed=resume_step_id is not None or bool(self.objective.conversation.steps),
        )

        try:
            await self.graph.ainvoke(state, config={"recursion_limit": self.limits.recursion_limit})
        except asyncio.CancelledError:
            if not self.cancel_requested:
                # shutdown: leave the objective active so it can be resumed
                logger.info("Analysis loop stopped", objective_id=self.objective.id)
                raise
            logger.info("Analysis loop cancelled", objective_id=self.objective.id)
            await self.nodes.write_terminal(
                ObjectiveStatus.CANCELLED,
                TerminalReason.USER_CANCELLED,
                "Cancelled by user",
            )
            raise

        if not self.ledger.closed:
            # the graph always ends through synthesize or fail
            await self.abort(TerminalReason.INTERNAL_ERROR, "Analysis loop ended without a terminal step")
        return self.objective

    async def abort(self, reason: TerminalReason, summary: str) -> None:
        """Fail the objective with ``reason`` unless it already ended."""
        await self.nodes.write_terminal(ObjectiveStatus.FAILED, reason, summary)
