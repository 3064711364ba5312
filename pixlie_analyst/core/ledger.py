"""
Append-only conversation ledger with ordered event fan-out.

The ledger is the only writer of a Conversation. Step ids are assigned
from a monotonic counter, step status only moves forward, and every
mutation is published to subscribers in the order it happened.
"""

import asyncio
import json
from typing import Any, AsyncIterator, List, Literal, Optional

from pydantic import BaseModel
import structlog

from ..errors import InvalidState
from ..models.contracts import (
    Conversation,
    ConversationStep,
    ObjectiveStatus,
    StepResult,
    StepStatus,
    StepType,
    ToolExecution,
    ToolExecutionMetrics,
    utcnow,
)

logger = structlog.get_logger(__name__)

EventType = Literal["step", "content", "status", "closed"]

# Maximum characters of a single tool result rendered into planning context
_RENDER_RESULT_CHARS = 4000


class LedgerEvent(BaseModel):
    """One published change. ``step`` is a snapshot, never the live object."""
    type: EventType
    objective_id: str
    step: Optional[ConversationStep] = None
    step_id: Optional[int] = None
    content: Optional[str] = None
    status: Optional[ObjectiveStatus] = None
    terminal_reason: Optional[str] = None


class Subscription:
    """Bounded, ordered stream of ledger events for one consumer."""

    def __init__(self, ledger: "ConversationLedger", maxsize: int):
        self._ledger = ledger
        self._queue: "asyncio.Queue[Optional[LedgerEvent]]" = asyncio.Queue(maxsize=maxsize)
        self._finished = False
        self._ended = False
        self.dropped = False

    def __aiter__(self) -> AsyncIterator[LedgerEvent]:
        return self

    async def __anext__(self) -> LedgerEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            self._finished = True
            raise StopAsyncIteration
        return event

    async def _put(self, event: LedgerEvent, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _end(self) -> None:
        """Wake the consumer with the end-of-stream marker, discarding backlog if full."""
        if self._ended:
            return
        self._ended = True
        if self._queue.full():
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(None)

    def close(self) -> None:
        self._ledger._unsubscribe(self)
        if not self._finished:
            self._end()


class ConversationLedger:
    """Sole writer of one Conversation."""

    def __init__(
        self,
        conversation: Conversation,
        buffer_size: int = 256,
        put_timeout_seconds: float = 5.0,
    ):
        self.conversation = conversation
        self.buffer_size = buffer_size
        self.put_timeout_seconds = put_timeout_seconds
        self._subscribers: List[Subscription] = []
        self._publish_lock = asyncio.Lock()
        self._closed = conversation.status.is_terminal

    @property
    def objective_id(self) -> str:
        return self.conversation.objective_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def steps(self) -> List[ConversationStep]:
        return self.conversation.steps

    def get_step(self, step_id: int) -> ConversationStep:
        for step in self.conversation.steps:
            if step.step_id == step_id:
                return step
        raise InvalidState(f"Unknown step {step_id}", objective_id=self.objective_id)

    # Subscriptions

    def subscribe(self, replay: bool = True) -> Subscription:
        """
        Subscribe to future events, optionally replaying existing steps first.

        A subscription on a closed ledger replays and then ends.
        """
        backlog = len(self.conversation.steps) + 2 if replay else 2
        sub = Subscription(self, maxsize=max(self.buffer_size, backlog))
        if replay:
            for step in self.conversation.steps:
                sub._queue.put_nowait(self._step_event(step))
        if self._closed:
            sub._queue.put_nowait(self._closed_event())
            sub._end()
        else:
            self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def _publish(self, event: LedgerEvent) -> None:
        async with self._publish_lock:
            for sub in list(self._subscribers):
                delivered = await sub._put(event, self.put_timeout_seconds)
                if not delivered:
                    logger.warning(
                        "Dropping slow subscriber",
                        objective_id=self.objective_id,
                        timeout_seconds=self.put_timeout_seconds,
                    )
                    sub.dropped = True
                    self._unsubscribe(sub)
                    sub._end()

    def _step_event(self, step: ConversationStep) -> LedgerEvent:
        return LedgerEvent(
            type="step",
            objective_id=self.objective_id,
            step=step.model_copy(deep=True),
            step_id=step.step_id,
        )

    def _closed_event(self) -> LedgerEvent:
        return LedgerEvent(
            type="closed",
            objective_id=self.objective_id,
            status=self.conversation.status,
            terminal_reason=self.conversation.terminal_reason,
        )

    # Mutations

    def _check_open(self) -> None:
        if self._closed:
            raise InvalidState("Conversation ledger is closed", objective_id=self.objective_id)

    def _touch(self) -> None:
        self.conversation.updated_at = utcnow()

    async def open_step(
        self,
        step_type: StepType,
        llm_request: Optional[str] = None,
        llm_response: Optional[str] = None,
    ) -> ConversationStep:
        """Append a Pending step with the next id."""
        self._check_open()
        step = ConversationStep(
            step_id=self.conversation.next_step_id,
            step_type=step_type,
            llm_request=llm_request,
            llm_response=llm_response,
        )
        self.conversation.next_step_id += 1
        self.conversation.steps.append(step)
        self._touch()
        logger.debug("Opened step", objective_id=self.objective_id, step_id=step.step_id, step_type=step_type.value)
        await self._publish(self._step_event(step))
        return step

    async def _transition(self, step_id: int, status: StepStatus, results: Optional[StepResult] = None) -> ConversationStep:
        self._check_open()
        step = self.get_step(step_id)
        if status.rank <= step.status.rank:
            raise InvalidState(
                f"Step {step_id} cannot move from {step.status.value} to {status.value}",
                objective_id=self.objective_id,
                step_id=step_id,
            )
        step.status = status
        if results is not None:
            step.results = results
        self._touch()
        await self._publish(self._step_event(step))
        return step

    async def start_step(self, step_id: int) -> ConversationStep:
        return await self._transition(step_id, StepStatus.IN_PROGRESS)

    async def complete_step(self, step_id: int, results: Optional[StepResult] = None) -> ConversationStep:
        return await self._transition(step_id, StepStatus.COMPLETED, results)

    async def fail_step(self, step_id: int, summary: str, data: Any = None) -> ConversationStep:
        return await self._transition(step_id, StepStatus.FAILED, StepResult(data=data, summary=summary))

    async def record_tool_execution(self, step_id: int, execution: ToolExecution) -> ConversationStep:
        self._check_open()
        step = self.get_step(step_id)
        if step.status.is_final:
            raise InvalidState(f"Step {step_id} is already {step.status.value}", step_id=step_id)
        step.tool_calls.append(execution)
        self._touch()
        await self._publish(self._step_event(step))
        return step

    async def append_content(self, step_id: int, text: str) -> None:
        """Publish one streamed chunk of a synthesis step."""
        self._check_open()
        await self._publish(
            LedgerEvent(type="content", objective_id=self.objective_id, step_id=step_id, content=text)
        )

    async def set_status(
        self,
        status: ObjectiveStatus,
        terminal_reason: Optional[str] = None,
        final_answer: Optional[str] = None,
    ) -> None:
        self._check_open()
        self.conversation.status = status
        self.conversation.terminal_reason = terminal_reason
        if final_answer is not None:
            self.conversation.final_answer = final_answer
        self._touch()
        await self._publish(
            LedgerEvent(
                type="status",
                objective_id=self.objective_id,
                status=status,
                terminal_reason=terminal_reason,
            )
        )

    async def close(self) -> None:
        """Publish the closing event and end every subscription."""
        if self._closed:
            return
        await self._publish(self._closed_event())
        self._closed = True
        for sub in list(self._subscribers):
            self._unsubscribe(sub)
            sub._end()

    # Metrics

    def execution_metrics(self) -> ToolExecutionMetrics:
        """Aggregate counts and timings over every recorded tool execution."""
        executions = [call for step in self.conversation.steps for call in step.tool_calls]
        if not executions:
            return ToolExecutionMetrics()
        times = [call.execution_time_ms for call in executions]
        successful = sum(1 for call in executions if call.ok)
        return ToolExecutionMetrics(
            total_executions=len(executions),
            successful_executions=successful,
            failed_executions=len(executions) - successful,
            total_time_ms=sum(times),
            average_time_ms=sum(times) / len(executions),
            max_time_ms=max(times),
        )

    # Planning context

    def render_context(self, window: int) -> str:
        """
        Render the ledger for a planner.

        The last ``window`` steps are rendered in full; every older step is
        summarised on one line.
        """
        steps = self.conversation.steps
        cut = max(0, len(steps) - max(window, 0))
        lines = []
        if cut:
            lines.append(f"Earlier steps ({cut}, summarised):")
            lines.extend(_summary_line(step) for step in steps[:cut])
        for step in steps[cut:]:
            lines.append(_full_render(step))
        return "\n".join(lines)


def _summary_line(step: ConversationStep) -> str:
    if step.tool_calls:
        call = step.tool_calls[-1]
        outcome = f"error: {call.error}" if call.error else _result_gist(call.result)
        detail = f"{call.tool_name} -> {outcome}"
    elif step.results and step.results.summary:
        detail = step.results.summary
    else:
        detail = step.llm_response or ""
    detail = " ".join(detail.split())
    if len(detail) > 160:
        detail = detail[:157] + "..."
    return f"- step {step.step_id} [{step.step_type.value}, {step.status.value}] {detail}"


def _result_gist(result: Any) -> str:
    if isinstance(result, dict) and "row_count" in result:
        return f"{result['row_count']} rows" + (" (more available)" if result.get("has_more") else "")
    return "ok"


def _full_render(step: ConversationStep) -> str:
    parts = [f"Step {step.step_id} [{step.step_type.value}, {step.status.value}]"]
    if step.llm_response:
        parts.append(f"  planner: {step.llm_response}")
    for call in step.tool_calls:
        parts.append(f"  tool {call.tool_name} params={json.dumps(call.parameters, default=str, sort_keys=True)}")
        if call.error:
            parts.append(f"  error: {call.error}")
        else:
            rendered = json.dumps(call.result, default=str)
            if len(rendered) > _RENDER_RESULT_CHARS:
                rendered = rendered[:_RENDER_RESULT_CHARS] + "...(truncated)"
            parts.append(f"  result: {rendered}")
    if step.results and step.results.summary:
        parts.append(f"  outcome: {step.results.summary}")
    return "\n".join(parts)
