"""Scenario tests for the analysis loop."""

import asyncio

import pytest

from pixlie_analyst.core.loop import AnalysisLoop
from pixlie_analyst.core.state import LoopLimits
from pixlie_analyst.errors import InvalidState
from pixlie_analyst.models.contracts import (
    AskUser,
    ConversationStep,
    FinalAnswer,
    InvokeTool,
    NeedMoreIterations,
    ObjectiveStatus,
    StepStatus,
    StepType,
)
from pixlie_analyst.providers import FailingProvider, PlanChunk, PlanStreamEnd, ProviderChain, ScriptedProvider
from pixlie_analyst.tools import build_default_registry
from tests.helpers import build_stub_registry, make_objective, wait_until

COUNT_AUTHORS = InvokeTool(
    name="sql_query",
    params={"sql": "SELECT COUNT(DISTINCT author) AS authors FROM hn_items"},
)


def _loop(objective, provider, registry=None, checkpoint=None, **limit_overrides):
    limits = LoopLimits(**{"max_iterations": 5, "max_consecutive_tool_failures": 3, **limit_overrides})
    chain = ProviderChain([provider] if not isinstance(provider, list) else provider, retries=0, timeout_seconds=2)
    return AnalysisLoop(
        objective,
        registry=registry or build_stub_registry(),
        chain=chain,
        limits=limits,
        checkpoint=checkpoint,
    )


def _terminal_data(objective):
    last = objective.conversation.steps[-1]
    assert last.step_type == StepType.SYNTHESIS
    return last.results.data


class Counter:
    def __init__(self):
        self.count = 0

    async def __call__(self):
        self.count += 1


class GatedProvider(ScriptedProvider):
    """Holds the first planning call until ``release`` is set."""

    def __init__(self, decisions):
        super().__init__(decisions, name="gated")
        self.entered = False
        self.release = asyncio.Event()

    async def plan(self, context, tools):
        if not self.entered:
            self.entered = True
            await self.release.wait()
        return await super().plan(context, tools)


@pytest.mark.asyncio
async def test_tool_then_answer_produces_two_steps():
    objective = make_objective()
    provider = ScriptedProvider([COUNT_AUTHORS, FinalAnswer(text="42 authors")])
    loop = _loop(objective, provider)

    await loop.run()

    steps = objective.conversation.steps
    assert len(steps) == 2
    assert steps[0].step_type == StepType.TOOL_EXECUTION
    assert steps[0].status == StepStatus.COMPLETED
    assert steps[0].tool_calls[0].result["rows"] == [[42]]
    assert steps[0].llm_response.startswith("invoke sql_query")
    assert steps[1].step_type == StepType.SYNTHESIS
    assert steps[1].status == StepStatus.COMPLETED
    assert steps[1].results.summary == "42 authors"

    assert objective.status == ObjectiveStatus.COMPLETED
    assert objective.terminal_reason == "answered"
    assert objective.conversation.status == ObjectiveStatus.COMPLETED
    assert objective.conversation.final_answer == "42 authors"
    assert loop.ledger.closed

    # the second planning call saw the tool result
    assert "[[42]]" in provider.calls[1].context
    assert provider.calls[1].iteration == 2


@pytest.mark.asyncio
async def test_answer_over_sample_database(connector):
    objective = make_objective()
    provider = ScriptedProvider([COUNT_AUTHORS, FinalAnswer(text="7 authors")])
    loop = _loop(objective, provider, registry=build_default_registry(connector))

    await loop.run()

    assert objective.conversation.steps[0].tool_calls[0].result["rows"] == [[7]]
    assert objective.conversation.final_answer == "7 authors"


@pytest.mark.asyncio
async def test_planning_note_writes_a_planning_step():
    objective = make_objective()
    provider = ScriptedProvider([NeedMoreIterations(reason="look at the schema first"), FinalAnswer(text="done")])

    await _loop(objective, provider).run()

    steps = objective.conversation.steps
    assert [s.step_type for s in steps] == [StepType.PLANNING, StepType.SYNTHESIS]
    assert steps[0].status == StepStatus.COMPLETED
    assert steps[0].results.summary == "look at the schema first"


@pytest.mark.asyncio
async def test_iteration_limit_fails_objective():
    objective = make_objective()
    provider = ScriptedProvider([], default=NeedMoreIterations(reason="still thinking"))

    await _loop(objective, provider, max_iterations=3).run()

    steps = objective.conversation.steps
    assert len(provider.calls) == 3
    assert objective.conversation.iterations == 3
    assert len(steps) == 4
    assert all(s.status == StepStatus.COMPLETED for s in steps[:3])
    assert steps[-1].status == StepStatus.FAILED
    assert _terminal_data(objective) == {"reason": "max_iterations_exceeded"}
    assert objective.status == ObjectiveStatus.FAILED
    assert objective.terminal_reason == "max_iterations_exceeded"


@pytest.mark.asyncio
async def test_provider_exhaustion_fails_objective():
    objective = make_objective()
    providers = [FailingProvider("primary"), FailingProvider("fallback-1"), FailingProvider("fallback-2")]

    await _loop(objective, providers).run()

    steps = objective.conversation.steps
    assert len(steps) == 1
    data = _terminal_data(objective)
    assert data["reason"] == "provider_error"
    assert data["detail"]["attempts"] == 3
    assert [p.attempts for p in providers] == [1, 1, 1]
    assert objective.status == ObjectiveStatus.FAILED
    assert "3 attempts" in steps[0].results.summary


@pytest.mark.asyncio
async def test_consecutive_failures_of_one_tool_fail_objective():
    objective = make_objective()
    provider = ScriptedProvider([], default=InvokeTool(name="table_schema", params={}))

    await _loop(objective, provider).run()

    steps = objective.conversation.steps
    assert len(steps) == 4
    assert all(s.status == StepStatus.FAILED for s in steps)
    assert steps[0].tool_calls[0].error == "RuntimeError: schema unavailable"
    assert _terminal_data(objective) == {
        "reason": "tool_failure_limit",
        "detail": {"tool": "table_schema", "failures": 3},
    }
    assert objective.terminal_reason == "tool_failure_limit"


@pytest.mark.asyncio
async def test_tool_errors_are_observations():
    objective = make_objective()
    provider = ScriptedProvider([
        InvokeTool(name="table_schema", params={}),
        InvokeTool(name="table_schema", params={}),
        COUNT_AUTHORS,
        InvokeTool(name="table_schema", params={}),
        InvokeTool(name="table_schema", params={}),
        FinalAnswer(text="42 authors"),
    ])

    await _loop(objective, provider, max_iterations=10).run()

    statuses = [s.status for s in objective.conversation.steps]
    assert statuses == [
        StepStatus.FAILED,
        StepStatus.FAILED,
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.FAILED,
        StepStatus.COMPLETED,
    ]
    assert objective.status == ObjectiveStatus.COMPLETED
    assert "schema unavailable" in provider.calls[1].context


@pytest.mark.asyncio
async def test_unknown_tool_is_an_observation():
    objective = make_objective()
    provider = ScriptedProvider([InvokeTool(name="drop_everything"), FinalAnswer(text="ok")])

    await _loop(objective, provider).run()

    first = objective.conversation.steps[0]
    assert first.status == StepStatus.FAILED
    assert first.tool_calls[0].error.startswith("Unknown tool: drop_everything")
    assert objective.status == ObjectiveStatus.COMPLETED


@pytest.mark.asyncio
async def test_ask_user_suspends_until_answer():
    objective = make_objective("Which stories did best?")
    provider = ScriptedProvider([AskUser(prompt="Which year?"), FinalAnswer(text="Done for 2023")])
    checkpoint = Counter()
    loop = _loop(objective, provider, checkpoint=checkpoint)

    task = asyncio.create_task(loop.run())
    await wait_until(lambda: loop.awaiting_user and checkpoint.count == 1)

    waiting = objective.conversation.steps[-1]
    assert waiting.step_type == StepType.PLANNING
    assert waiting.status == StepStatus.IN_PROGRESS
    assert objective.conversation.awaiting_user_prompt == "Which year?"

    loop.submit_user_message("2023")
    await asyncio.wait_for(task, timeout=5)

    steps = objective.conversation.steps
    assert steps[0].status == StepStatus.COMPLETED
    assert steps[0].results.data == {"question": "Which year?", "answer": "2023"}
    assert provider.calls[1].pending_messages == []
    assert "User answered: 2023" in provider.calls[1].context
    assert objective.conversation.pending_messages == []
    assert objective.conversation.pending_answers == []
    assert objective.conversation.awaiting_user_prompt is None
    assert objective.status == ObjectiveStatus.COMPLETED
    # once on suspension, once on the terminal step
    assert checkpoint.count == 2


@pytest.mark.asyncio
async def test_message_sent_while_planning_does_not_answer_next_question():
    objective = make_objective("Which stories did best?")
    provider = GatedProvider([AskUser(prompt="Which year?"), FinalAnswer(text="Done for 2023")])
    loop = _loop(objective, provider)

    task = asyncio.create_task(loop.run())
    await wait_until(lambda: provider.entered)
    loop.submit_user_message("also look at comments")
    provider.release.set()

    await wait_until(lambda: loop.awaiting_user and objective.conversation.steps[-1].status == StepStatus.IN_PROGRESS)
    waiting = objective.conversation.steps[-1]
    assert waiting.step_type == StepType.PLANNING
    assert objective.conversation.pending_answers == []
    assert objective.conversation.pending_messages == ["also look at comments"]

    loop.submit_user_message("2023")
    await asyncio.wait_for(task, timeout=5)

    assert waiting.results.data == {"question": "Which year?", "answer": "2023"}
    assert provider.calls[1].pending_messages == ["also look at comments"]
    assert objective.status == ObjectiveStatus.COMPLETED


@pytest.mark.asyncio
async def test_ask_user_timeout_fails_objective():
    objective = make_objective()
    provider = ScriptedProvider([AskUser(prompt="Which year?")])

    await _loop(objective, provider, ask_user_timeout_seconds=0.05).run()

    steps = objective.conversation.steps
    assert steps[0].status == StepStatus.FAILED
    assert _terminal_data(objective) == {"reason": "ask_user_timeout"}
    assert objective.status == ObjectiveStatus.FAILED


@pytest.mark.asyncio
async def test_resume_while_waiting_on_user():
    objective = make_objective()
    conversation = objective.conversation
    conversation.steps.append(
        ConversationStep(step_id=1, step_type=StepType.PLANNING, status=StepStatus.IN_PROGRESS)
    )
    conversation.next_step_id = 2
    conversation.iterations = 1
    conversation.awaiting_user_prompt = "Which year?"
    conversation.pending_answers.append("2023")

    provider = ScriptedProvider([FinalAnswer(text="Done for 2023")])
    await _loop(objective, provider).run()

    steps = conversation.steps
    assert steps[0].status == StepStatus.COMPLETED
    assert steps[0].results.data["answer"] == "2023"
    assert steps[1].step_id == 2
    assert provider.calls[0].pending_messages == []
    assert conversation.pending_answers == []
    assert objective.status == ObjectiveStatus.COMPLETED


@pytest.mark.asyncio
async def test_streamed_chunks_concatenate_to_final_answer():
    text = "Seven distinct authors posted stories or comments."
    objective = make_objective()
    provider = ScriptedProvider([COUNT_AUTHORS, FinalAnswer(text=text)], chunk_size=4)
    loop = _loop(objective, provider)
    subscription = loop.ledger.subscribe()

    await loop.run()
    events = [event async for event in subscription]

    synthesis_id = objective.conversation.steps[-1].step_id
    content = [e for e in events if e.type == "content"]
    assert len(content) > 1
    assert {e.step_id for e in content} == {synthesis_id}
    assert "".join(e.content for e in content) == text
    assert events[-1].type == "closed"


@pytest.mark.asyncio
async def test_streamed_content_always_matches_decision():
    class Thinker:
        name = "thinker"

        async def plan(self, context, tools):
            return FinalAnswer(text="7")

        async def stream_plan(self, context, tools):
            yield PlanChunk(text="Let me think... ")
            yield PlanStreamEnd(decision=FinalAnswer(text="7"))

    objective = make_objective()
    loop = _loop(objective, Thinker())
    subscription = loop.ledger.subscribe()

    await loop.run()
    content = [e.content async for e in subscription if e.type == "content"]

    assert "".join(content) == "7"


@pytest.mark.asyncio
async def test_no_content_events_without_streaming():
    objective = make_objective()
    provider = ScriptedProvider([FinalAnswer(text="42 authors")])
    loop = _loop(objective, provider, enable_streaming=False)
    subscription = loop.ledger.subscribe()

    await loop.run()
    events = [event async for event in subscription]

    assert not [e for e in events if e.type == "content"]
    assert objective.conversation.final_answer == "42 authors"


@pytest.mark.asyncio
async def test_user_cancellation_writes_cancelled_terminal_step():
    objective = make_objective()
    provider = ScriptedProvider([AskUser(prompt="Which year?")])
    loop = _loop(objective, provider)

    task = asyncio.create_task(loop.run())
    await wait_until(lambda: loop.awaiting_user)

    loop.cancel_requested = True
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    steps = objective.conversation.steps
    assert steps[0].status == StepStatus.FAILED
    assert steps[0].results.summary.startswith("Abandoned")
    assert _terminal_data(objective) == {"reason": "user_cancelled"}
    assert objective.status == ObjectiveStatus.CANCELLED
    assert objective.conversation.status == ObjectiveStatus.CANCELLED
    assert loop.ledger.closed


@pytest.mark.asyncio
async def test_shutdown_leaves_objective_active():
    objective = make_objective()
    provider = ScriptedProvider([AskUser(prompt="Which year?")])
    loop = _loop(objective, provider)

    task = asyncio.create_task(loop.run())
    await wait_until(lambda: loop.awaiting_user)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert objective.status == ObjectiveStatus.ACTIVE
    assert objective.conversation.steps[-1].status == StepStatus.IN_PROGRESS
    assert not loop.ledger.closed


@pytest.mark.asyncio
async def test_messages_to_finished_objective_are_rejected():
    objective = make_objective()
    loop = _loop(objective, ScriptedProvider([FinalAnswer(text="done")]))
    await loop.run()

    with pytest.raises(InvalidState):
        loop.submit_user_message("one more thing")


@pytest.mark.asyncio
async def test_every_terminal_outcome_writes_one_terminal_step():
    objective = make_objective()
    await _loop(objective, ScriptedProvider([COUNT_AUTHORS, FinalAnswer(text="42 authors")])).run()

    steps = objective.conversation.steps
    ids = [s.step_id for s in steps]
    assert ids == sorted(set(ids))
    assert all(s.status.is_final for s in steps)
    assert sum(1 for s in steps if s.step_type == StepType.SYNTHESIS) == 1
