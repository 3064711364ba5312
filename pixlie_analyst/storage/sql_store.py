"""
SQLite persistence of workspaces using SQLAlchemy Core.

Each workspace directory holds one ``workspace.db`` with the tables
workspaces, objectives, conversations and conversation_steps. A save
rewrites the whole graph in a single transaction, so a crash leaves either
the previous or the new snapshot on disk.
"""

import os
import shutil
import threading
from typing import Dict, List

import structlog
from sqlalchemy import (
    JSON,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..errors import PersistenceError, WorkspaceNotFound
from ..models.contracts import Conversation, ConversationStep, Objective, Workspace

logger = structlog.get_logger(__name__)

DB_FILENAME = "workspace.db"

metadata = MetaData()

workspaces_table = Table(
    "workspaces",
    metadata,
    Column("name", String(64), primary_key=True),
    Column("path", Text, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

objectives_table = Table(
    "objectives",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("workspace", String(64), nullable=False),
    Column("position", Integer, nullable=False),
    Column("text", Text, nullable=False),
    Column("status", String(20), nullable=False),
    Column("terminal_reason", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

conversations_table = Table(
    "conversations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("objective_id", String(36), nullable=False, index=True),
    Column("user_query", Text, nullable=False),
    Column("status", String(20), nullable=False),
    Column("terminal_reason", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("next_step_id", Integer, nullable=False),
    Column("iterations", Integer, nullable=False),
    Column("awaiting_user_prompt", Text),
    Column("pending_messages", JSON, nullable=False),
    Column("pending_answers", JSON, nullable=False),
    Column("final_answer", Text),
)

steps_table = Table(
    "conversation_steps",
    metadata,
    Column("conversation_id", String(36), primary_key=True),
    Column("step_id", Integer, primary_key=True),
    Column("step_type", String(20), nullable=False),
    Column("llm_request", Text),
    Column("llm_response", Text),
    Column("tool_calls", JSON, nullable=False),
    Column("results", JSON),
    Column("status", String(20), nullable=False),
    Column("created_at", String(40), nullable=False),
)


class SQLWorkspaceStore:
    """One SQLite database per workspace directory."""

    def __init__(self) -> None:
        self._engines: Dict[str, Engine] = {}
        self._lock = threading.Lock()

    @staticmethod
    def db_path(path: str) -> str:
        return os.path.join(path, DB_FILENAME)

    def _engine(self, path: str) -> Engine:
        key = os.path.abspath(path)
        with self._lock:
            engine = self._engines.get(key)
            if engine is None:
                os.makedirs(key, exist_ok=True)
                engine = create_engine(
                    f"sqlite:///{self.db_path(key)}",
                    connect_args={"check_same_thread": False},
                )
                metadata.create_all(engine)
                self._engines[key] = engine
            return engine

    def exists(self, path: str) -> bool:
        return os.path.exists(self.db_path(path))

    def list_paths(self, root: str) -> List[str]:
        if not os.path.isdir(root):
            return []
        return sorted(
            os.path.join(root, entry)
            for entry in os.listdir(root)
            if self.exists(os.path.join(root, entry))
        )

    def save(self, workspace: Workspace) -> None:
        """Rewrite the workspace graph in one transaction."""
        data = workspace.model_dump(mode="json")
        objective_rows, conversation_rows, step_rows = [], [], []
        for position, objective in enumerate(data["objectives"]):
            conversation = objective.pop("conversation")
            objective.pop("unsaved", None)
            objective_rows.append({**objective, "position": position})
            steps = conversation.pop("steps")
            conversation_rows.append(conversation)
            step_rows.extend({**step, "conversation_id": conversation["id"]} for step in steps)

        try:
            with self._engine(workspace.path).begin() as conn:
                for table in (steps_table, conversations_table, objectives_table, workspaces_table):
                    conn.execute(delete(table))
                conn.execute(
                    workspaces_table.insert(),
                    [{k: data[k] for k in ("name", "path", "created_at", "updated_at")}],
                )
                if objective_rows:
                    conn.execute(objectives_table.insert(), objective_rows)
                    conn.execute(conversations_table.insert(), conversation_rows)
                if step_rows:
                    conn.execute(steps_table.insert(), step_rows)
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to save workspace", workspace=workspace.name, error=str(e))
            raise PersistenceError(f"Failed to save workspace {workspace.name}: {e}", workspace=workspace.name) from e

        logger.debug("Saved workspace", workspace=workspace.name, objectives=len(objective_rows), steps=len(step_rows))

    def load(self, path: str) -> Workspace:
        """Load a workspace, ordering objectives by creation and steps by id."""
        if not self.exists(path):
            raise WorkspaceNotFound(f"No workspace stored at {path}", path=path)

        try:
            with self._engine(path).connect() as conn:
                ws_row = conn.execute(select(workspaces_table)).mappings().first()
                if ws_row is None:
                    raise WorkspaceNotFound(f"Workspace database at {path} is empty", path=path)
                objective_rows = conn.execute(
                    select(objectives_table).order_by(objectives_table.c.position)
                ).mappings().all()
                conversation_rows = {
                    row["objective_id"]: dict(row)
                    for row in conn.execute(select(conversations_table)).mappings()
                }
                steps_by_conversation: Dict[str, List[dict]] = {}
                for row in conn.execute(
                    select(steps_table).order_by(steps_table.c.conversation_id, steps_table.c.step_id)
                ).mappings():
                    step = dict(row)
                    steps_by_conversation.setdefault(step.pop("conversation_id"), []).append(step)
        except SQLAlchemyError as e:
            logger.error("Failed to load workspace", path=path, error=str(e))
            raise PersistenceError(f"Failed to load workspace at {path}: {e}", path=path) from e

        objectives = []
        for row in objective_rows:
            objective = dict(row)
            objective.pop("position")
            conversation = conversation_rows.get(objective["id"])
            if conversation is None:
                raise PersistenceError(f"Objective {objective['id']} has no conversation", path=path)
            conversation["steps"] = [
                ConversationStep.model_validate(step) for step in steps_by_conversation.get(conversation["id"], [])
            ]
            objectives.append(Objective(**objective, conversation=Conversation.model_validate(conversation)))

        workspace = Workspace(**dict(ws_row), objectives=objectives)
        logger.info("Loaded workspace", workspace=workspace.name, objectives=len(objectives))
        return workspace

    def delete_objective(self, path: str, objective_id: str) -> None:
        if not self.exists(path):
            return
        try:
            with self._engine(path).begin() as conn:
                conversation_ids = [
                    row[0]
                    for row in conn.execute(
                        select(conversations_table.c.id).where(conversations_table.c.objective_id == objective_id)
                    )
                ]
                if conversation_ids:
                    conn.execute(delete(steps_table).where(steps_table.c.conversation_id.in_(conversation_ids)))
                conn.execute(delete(conversations_table).where(conversations_table.c.objective_id == objective_id))
                conn.execute(delete(objectives_table).where(objectives_table.c.id == objective_id))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete objective {objective_id}: {e}", path=path) from e

    def delete_workspace(self, path: str) -> None:
        key = os.path.abspath(path)
        with self._lock:
            engine = self._engines.pop(key, None)
        if engine is not None:
            engine.dispose()
        if os.path.isdir(key):
            try:
                shutil.rmtree(key)
            except OSError as e:
                raise PersistenceError(f"Failed to delete workspace at {path}: {e}", path=path) from e
        logger.info("Deleted workspace", path=path)

    def close(self) -> None:
        with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
        for engine in engines:
            engine.dispose()
