"""Tests for workspace persistence."""

import os

import pytest

from pixlie_analyst.errors import WorkspaceNotFound
from pixlie_analyst.models.contracts import (
    ConversationStep,
    ObjectiveStatus,
    StepResult,
    StepStatus,
    StepType,
    ToolExecution,
    Workspace,
)
from pixlie_analyst.storage import InMemoryWorkspaceStore, SQLWorkspaceStore
from pixlie_analyst.storage.sql_store import DB_FILENAME
from tests.helpers import make_objective


def _workspace(root) -> Workspace:
    path = os.path.join(str(root), "research")
    answered = make_objective("How many authors?", workspace="research")
    conversation = answered.conversation
    conversation.steps = [
        ConversationStep(
            step_id=1,
            step_type=StepType.TOOL_EXECUTION,
            llm_request="Objective: How many authors?",
            llm_response="invoke sql_query",
            tool_calls=[
                ToolExecution(
                    tool_name="sql_query",
                    parameters={"sql": "SELECT COUNT(DISTINCT author) FROM hn_items"},
                    result={"columns": ["authors"], "rows": [[7]], "row_count": 1, "has_more": False},
                    execution_time_ms=3.5,
                )
            ],
            results=StepResult(summary="sql_query returned 1 rows", next_action="plan"),
            status=StepStatus.COMPLETED,
        ),
        ConversationStep(
            step_id=2,
            step_type=StepType.TOOL_EXECUTION,
            tool_calls=[ToolExecution(tool_name="table_schema", parameters={"table": "users"}, error="Unknown table: users")],
            results=StepResult(summary="table_schema failed"),
            status=StepStatus.FAILED,
        ),
        ConversationStep(
            step_id=3,
            step_type=StepType.SYNTHESIS,
            results=StepResult(summary="7 authors", data={"authors": 7}),
            status=StepStatus.COMPLETED,
        ),
    ]
    conversation.next_step_id = 4
    conversation.iterations = 3
    conversation.status = ObjectiveStatus.COMPLETED
    conversation.terminal_reason = "answered"
    conversation.final_answer = "7 authors"
    answered.status = ObjectiveStatus.COMPLETED
    answered.terminal_reason = "answered"

    waiting = make_objective("Which stories did best?", workspace="research")
    waiting.conversation.steps = [
        ConversationStep(step_id=1, step_type=StepType.PLANNING, status=StepStatus.IN_PROGRESS)
    ]
    waiting.conversation.next_step_id = 2
    waiting.conversation.awaiting_user_prompt = "Which year?"
    waiting.conversation.pending_messages = ["focus on stories"]
    waiting.conversation.pending_answers = ["2023"]

    return Workspace(name="research", path=path, objectives=[answered, waiting])


@pytest.fixture
def sql_store():
    store = SQLWorkspaceStore()
    yield store
    store.close()


def test_sql_store_round_trip(tmp_path, sql_store):
    workspace = _workspace(tmp_path)
    sql_store.save(workspace)

    assert os.path.exists(os.path.join(workspace.path, DB_FILENAME))
    loaded = sql_store.load(workspace.path)

    assert loaded.model_dump() == workspace.model_dump()
    assert [o.text for o in loaded.objectives] == ["How many authors?", "Which stories did best?"]
    assert loaded.objectives[0].conversation.steps[0].tool_calls[0].result["rows"] == [[7]]
    assert loaded.objectives[0].conversation.steps[1].tool_calls[0].error == "Unknown table: users"


def test_sql_store_save_replaces_previous_snapshot(tmp_path, sql_store):
    workspace = _workspace(tmp_path)
    sql_store.save(workspace)

    workspace.objectives = workspace.objectives[:1]
    workspace.objectives[0].conversation.final_answer = "Seven authors"
    sql_store.save(workspace)

    loaded = sql_store.load(workspace.path)
    assert len(loaded.objectives) == 1
    assert loaded.objectives[0].conversation.final_answer == "Seven authors"


def test_sql_store_listing_and_deletes(tmp_path, sql_store):
    workspace = _workspace(tmp_path)
    sql_store.save(workspace)
    os.makedirs(tmp_path / "not-a-workspace")

    assert sql_store.list_paths(str(tmp_path)) == [workspace.path]
    assert sql_store.list_paths(str(tmp_path / "missing")) == []

    sql_store.delete_objective(workspace.path, workspace.objectives[0].id)
    loaded = sql_store.load(workspace.path)
    assert [o.id for o in loaded.objectives] == [workspace.objectives[1].id]

    sql_store.delete_workspace(workspace.path)
    assert not sql_store.exists(workspace.path)
    assert not os.path.exists(workspace.path)


def test_sql_store_load_missing(tmp_path, sql_store):
    with pytest.raises(WorkspaceNotFound):
        sql_store.load(str(tmp_path / "nothing"))


def test_memory_store_isolates_copies(tmp_path):
    store = InMemoryWorkspaceStore()
    workspace = _workspace(tmp_path)
    store.save(workspace)

    workspace.objectives.clear()
    loaded = store.load(workspace.path)
    assert len(loaded.objectives) == 2

    loaded.objectives.clear()
    assert len(store.load(workspace.path).objectives) == 2
    assert store.list_paths(str(tmp_path)) == [workspace.path]
