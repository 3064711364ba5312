"""Tests for the multi-objective coordinator."""

import asyncio
import os

import pytest

from pixlie_analyst.core.coordinator import INTERRUPTED, ObjectiveCoordinator
from pixlie_analyst.errors import (
    InvalidState,
    ObjectiveNotFound,
    ParameterValidationError,
    PersistenceError,
    WorkspaceNotFound,
)
from pixlie_analyst.models.contracts import (
    AskUser,
    ConversationStep,
    FinalAnswer,
    InvokeTool,
    ObjectiveStatus,
    StepStatus,
    StepType,
    Workspace,
)
from pixlie_analyst.providers import ProviderChain
from pixlie_analyst.storage import InMemoryWorkspaceStore
from pixlie_analyst.tools.registry import ToolRegistry
from tests.helpers import ByObjectiveProvider, build_stub_registry, make_objective, wait_until

COUNT_AUTHORS = InvokeTool(name="sql_query", params={"sql": "SELECT COUNT(DISTINCT author) FROM hn_items"})


class ExplodingRegistry(ToolRegistry):
    """Stub registry whose ``explode`` tool breaks the sandbox contract."""

    def __init__(self):
        super().__init__()
        self._inner = build_stub_registry()

    def descriptors(self):
        return self._inner.descriptors()

    async def execute(self, name, params):
        if name == "explode":
            raise RuntimeError("sandbox escaped")
        return await self._inner.execute(name, params)


class FlakyStore(InMemoryWorkspaceStore):
    def __init__(self):
        super().__init__()
        self.failing = False

    def save(self, workspace):
        if self.failing:
            raise PersistenceError("disk full")
        super().save(workspace)


def _coordinator(test_settings, scripts=None, store=None, registry=None):
    provider = ByObjectiveProvider(scripts or {})
    coordinator = ObjectiveCoordinator(
        registry=registry if registry is not None else build_stub_registry(),
        chain=ProviderChain([provider], retries=0, timeout_seconds=2),
        store=store or InMemoryWorkspaceStore(),
        settings=test_settings,
    )
    return coordinator, provider


@pytest.mark.asyncio
async def test_create_objective_runs_to_completion(test_settings):
    coordinator, _ = _coordinator(
        test_settings, {"How many authors?": [COUNT_AUTHORS, FinalAnswer(text="42 authors")]}
    )
    await coordinator.start()

    objective = await coordinator.create_objective("research", "How many authors?")
    assert coordinator.is_running(objective.id)
    await coordinator.wait_for(objective.id, timeout=5)

    assert objective.status == ObjectiveStatus.COMPLETED
    assert objective.conversation.final_answer == "42 authors"
    assert not coordinator.is_running(objective.id)
    assert [w.name for w in coordinator.list_workspaces()] == ["research"]
    assert coordinator.store.load(coordinator.workspace_path("research")).objectives[0].status == ObjectiveStatus.COMPLETED

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_default_workspace_and_validation(test_settings):
    coordinator, _ = _coordinator(test_settings)

    objective = await coordinator.create_objective(None, "Anything?")
    assert objective.workspace == test_settings.default_workspace

    with pytest.raises(ParameterValidationError):
        await coordinator.create_objective("../escape", "Anything?")
    with pytest.raises(ParameterValidationError):
        await coordinator.create_objective("research", "   ")

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_crash_in_one_objective_is_contained(test_settings):
    coordinator, _ = _coordinator(
        test_settings,
        {
            "Crash please": [InvokeTool(name="explode")],
            "How many authors?": [COUNT_AUTHORS, FinalAnswer(text="42 authors")],
        },
        registry=ExplodingRegistry(),
    )

    crashing = await coordinator.create_objective("alpha", "Crash please")
    healthy = await coordinator.create_objective("beta", "How many authors?")
    await coordinator.wait_for(crashing.id, timeout=5)
    await coordinator.wait_for(healthy.id, timeout=5)

    assert crashing.status == ObjectiveStatus.FAILED
    assert crashing.terminal_reason == "internal_error"
    last = crashing.conversation.steps[-1]
    assert last.step_type == StepType.SYNTHESIS
    assert "sandbox escaped" in last.results.summary
    # the tool step opened before the crash was closed too
    assert all(s.status.is_final for s in crashing.conversation.steps)

    assert healthy.status == ObjectiveStatus.COMPLETED
    assert healthy.conversation.final_answer == "42 authors"

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_objectives_in_one_workspace_run_concurrently(test_settings):
    scripts = {
        "First?": [AskUser(prompt="Which year?"), FinalAnswer(text="first done")],
        "Second?": [COUNT_AUTHORS, FinalAnswer(text="second done")],
    }
    coordinator, _ = _coordinator(test_settings, scripts)

    first = await coordinator.create_objective("shared", "First?")
    second = await coordinator.create_objective("shared", "Second?")
    await coordinator.wait_for(second.id, timeout=5)

    # the second objective finished while the first is still waiting on the user
    assert second.status == ObjectiveStatus.COMPLETED
    assert first.status == ObjectiveStatus.ACTIVE
    await wait_until(lambda: first.conversation.awaiting_user_prompt is not None)

    await coordinator.submit_user_response(first.id, "2023")
    await coordinator.wait_for(first.id, timeout=5)
    assert first.conversation.final_answer == "first done"

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_cancel_running_objective(test_settings):
    coordinator, _ = _coordinator(test_settings, {"Wait for me": [AskUser(prompt="Which year?")]})

    objective = await coordinator.create_objective("research", "Wait for me")
    await wait_until(lambda: objective.conversation.awaiting_user_prompt is not None)
    subscription = coordinator.subscribe(objective.id)

    await coordinator.cancel(objective.id)

    assert objective.status == ObjectiveStatus.CANCELLED
    assert objective.terminal_reason == "user_cancelled"
    assert not coordinator.is_running(objective.id)
    events = [event async for event in subscription]
    assert events[-1].type == "closed"
    assert events[-1].status == ObjectiveStatus.CANCELLED

    # cancelling again is a no-op, answering is refused
    again = await coordinator.cancel(objective.id)
    assert again.status == ObjectiveStatus.CANCELLED
    assert len(objective.conversation.steps) == 2
    with pytest.raises(InvalidState):
        await coordinator.submit_user_response(objective.id, "2023")

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_cancel_leaves_sibling_objective_untouched(test_settings):
    scripts = {
        "Cancel me": [AskUser(prompt="Which year?")],
        "Keep me": [AskUser(prompt="Which author?"), FinalAnswer(text="pg it is")],
    }
    coordinator, _ = _coordinator(test_settings, scripts)

    doomed = await coordinator.create_objective("shared", "Cancel me")
    sibling = await coordinator.create_objective("shared", "Keep me")
    for objective in (doomed, sibling):
        await wait_until(
            lambda o=objective: o.conversation.awaiting_user_prompt is not None
            and o.conversation.steps[-1].status == StepStatus.IN_PROGRESS
        )
    before = sibling.conversation.model_dump_json()

    await coordinator.cancel(doomed.id)

    assert doomed.status == ObjectiveStatus.CANCELLED
    assert sibling.conversation.model_dump_json() == before
    assert sibling.status == ObjectiveStatus.ACTIVE
    assert coordinator.is_running(sibling.id)

    await coordinator.submit_user_response(sibling.id, "pg")
    await coordinator.wait_for(sibling.id, timeout=5)
    assert sibling.conversation.final_answer == "pg it is"

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_unknown_ids(test_settings):
    coordinator, _ = _coordinator(test_settings)
    with pytest.raises(ObjectiveNotFound):
        coordinator.get_objective("missing")
    with pytest.raises(ObjectiveNotFound):
        await coordinator.cancel("missing")
    with pytest.raises(WorkspaceNotFound):
        await coordinator.get_workspace("nowhere")


@pytest.mark.asyncio
async def test_failed_save_flags_objectives_unsaved(test_settings):
    store = FlakyStore()
    store.failing = True
    coordinator, _ = _coordinator(test_settings, {"Wait for me": [AskUser(prompt="Which year?")]}, store=store)

    objective = await coordinator.create_objective("research", "Wait for me")
    assert objective.unsaved
    await wait_until(lambda: objective.conversation.awaiting_user_prompt is not None)
    # the loop keeps going even though every save fails
    assert objective.status == ObjectiveStatus.ACTIVE

    store.failing = False
    assert await coordinator.save_workspace("research")
    assert not objective.unsaved

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_resume_fails_interrupted_steps_and_replans(test_settings):
    store = InMemoryWorkspaceStore()
    path = os.path.join(test_settings.workspace_root, "restored")
    objective = make_objective("How many authors?", workspace="restored")
    conversation = objective.conversation
    conversation.steps.append(
        ConversationStep(step_id=1, step_type=StepType.TOOL_EXECUTION, status=StepStatus.IN_PROGRESS)
    )
    conversation.next_step_id = 2
    conversation.iterations = 1
    done = make_objective("Already answered", workspace="restored")
    done.status = ObjectiveStatus.COMPLETED
    done.conversation.status = ObjectiveStatus.COMPLETED
    store.save(Workspace(name="restored", path=path, objectives=[objective, done]))

    coordinator, provider = _coordinator(
        test_settings, {"How many authors?": [FinalAnswer(text="42 authors")]}, store=store
    )
    await coordinator.start()
    assert [w.name for w in coordinator.list_workspaces()] == ["restored"]
    assert not coordinator.is_running(objective.id)

    resumed = await coordinator.resume_workspace("restored")
    assert resumed == [objective.id]
    await coordinator.wait_for(objective.id, timeout=5)

    restored = coordinator.get_objective(objective.id)
    steps = restored.conversation.steps
    assert steps[0].status == StepStatus.FAILED
    assert steps[0].results.summary == INTERRUPTED
    assert steps[1].step_id == 2
    assert restored.status == ObjectiveStatus.COMPLETED
    assert "interrupted by restart" in provider.calls[0].context

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_answer_resumes_objective_suspended_before_restart(test_settings):
    store = InMemoryWorkspaceStore()
    path = os.path.join(test_settings.workspace_root, "restored")
    objective = make_objective("Which stories did best?", workspace="restored")
    conversation = objective.conversation
    conversation.steps.append(
        ConversationStep(step_id=1, step_type=StepType.PLANNING, status=StepStatus.IN_PROGRESS)
    )
    conversation.next_step_id = 2
    conversation.iterations = 1
    conversation.awaiting_user_prompt = "Which year?"
    store.save(Workspace(name="restored", path=path, objectives=[objective]))

    coordinator, provider = _coordinator(
        test_settings, {"Which stories did best?": [FinalAnswer(text="Done for 2023")]}, store=store
    )
    await coordinator.start()

    await coordinator.submit_user_response(objective.id, "2023")
    await coordinator.wait_for(objective.id, timeout=5)

    restored = coordinator.get_objective(objective.id)
    assert restored.conversation.steps[0].status == StepStatus.COMPLETED
    assert restored.conversation.steps[0].results.data == {"question": "Which year?", "answer": "2023"}
    assert restored.status == ObjectiveStatus.COMPLETED
    assert provider.calls[0].pending_messages == []
    assert restored.conversation.pending_answers == []

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_shutdown_keeps_objectives_active_and_saved(test_settings):
    store = InMemoryWorkspaceStore()
    coordinator, _ = _coordinator(test_settings, {"Wait for me": [AskUser(prompt="Which year?")]}, store=store)

    objective = await coordinator.create_objective("research", "Wait for me")
    await wait_until(lambda: objective.conversation.awaiting_user_prompt is not None)
    subscription = coordinator.subscribe(objective.id)

    await coordinator.shutdown()

    assert objective.status == ObjectiveStatus.ACTIVE
    stored = store.load(coordinator.workspace_path("research"))
    assert stored.objectives[0].status == ObjectiveStatus.ACTIVE
    assert stored.objectives[0].conversation.awaiting_user_prompt == "Which year?"
    # subscribers are released rather than left hanging
    await asyncio.wait_for(_drain(subscription), timeout=1)


async def _drain(subscription):
    return [event async for event in subscription]


@pytest.mark.asyncio
async def test_delete_objective_and_workspace(test_settings):
    store = InMemoryWorkspaceStore()
    coordinator, _ = _coordinator(
        test_settings,
        {"Wait for me": [AskUser(prompt="Which year?")], "Quick": [FinalAnswer(text="done")]},
        store=store,
    )
    waiting = await coordinator.create_objective("research", "Wait for me")
    quick = await coordinator.create_objective("research", "Quick")
    await coordinator.wait_for(quick.id, timeout=5)

    await coordinator.delete_objective(waiting.id)
    assert not coordinator.is_running(waiting.id)
    with pytest.raises(ObjectiveNotFound):
        coordinator.get_objective(waiting.id)
    assert [o.id for o in store.load(coordinator.workspace_path("research")).objectives] == [quick.id]

    await coordinator.delete_workspace("research")
    assert coordinator.list_workspaces() == []
    assert not store.exists(coordinator.workspace_path("research"))
    with pytest.raises(ObjectiveNotFound):
        coordinator.get_objective(quick.id)

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_autosave_timer_saves_active_workspaces(test_settings):
    test_settings.autosave_interval_seconds = 0.02
    store = InMemoryWorkspaceStore()
    coordinator, _ = _coordinator(test_settings, {"Wait for me": [AskUser(prompt="Which year?")]}, store=store)
    await coordinator.start()

    objective = await coordinator.create_objective("research", "Wait for me")
    await wait_until(lambda: objective.conversation.awaiting_user_prompt is not None)
    saves = store.save_count
    await wait_until(lambda: store.save_count > saves + 1, timeout=2)

    await coordinator.shutdown()
