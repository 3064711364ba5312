"""
Multi-objective coordinator.

Runs one asyncio task per active objective, routes user messages and
cancellations to the right loop, and persists workspaces on terminal steps,
on AskUser suspension and on a timer. A crash in one objective's loop is
contained to that objective.
"""

import asyncio
import os
import re
from typing import Dict, List, Optional

import structlog

from ..errors import (
    InvalidState,
    ObjectiveNotFound,
    ParameterValidationError,
    PersistenceError,
    TerminalReason,
    WorkspaceNotFound,
)
from ..models.contracts import (
    Conversation,
    Objective,
    ObjectiveStatus,
    StepStatus,
    StepType,
    ToolExecutionMetrics,
    Workspace,
    new_id,
    utcnow,
)
from ..providers.chain import ProviderChain
from ..settings import Settings, settings as default_settings
from ..storage.base import WorkspaceStore
from ..tools.registry import ToolRegistry
from .ledger import ConversationLedger, Subscription
from .loop import AnalysisLoop
from .state import LoopLimits

logger = structlog.get_logger(__name__)

WORKSPACE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
INTERRUPTED = "interrupted by restart"


class ObjectiveCoordinator:
    """Owns every loaded workspace and the loops of their active objectives."""

    def __init__(
        self,
        registry: ToolRegistry,
        chain: ProviderChain,
        store: WorkspaceStore,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.chain = chain
        self.store = store
        self.settings = settings or default_settings
        self.limits = LoopLimits.from_settings(self.settings)

        self._workspaces: Dict[str, Workspace] = {}
        self._ledgers: Dict[str, ConversationLedger] = {}
        self._loops: Dict[str, AnalysisLoop] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._save_locks: Dict[str, asyncio.Lock] = {}
        self._autosave_task: Optional[asyncio.Task] = None

    # Lifecycle

    async def start(self) -> None:
        """Load stored workspaces and start the auto-save timer."""
        root = self.settings.workspace_root
        for path in await asyncio.to_thread(self.store.list_paths, root):
            try:
                workspace = await asyncio.to_thread(self.store.load, path)
            except (PersistenceError, WorkspaceNotFound) as e:
                logger.error("Skipping unreadable workspace", path=path, error=str(e))
                continue
            self._workspaces[workspace.name] = workspace

        if self.settings.autosave_interval_seconds > 0:
            self._autosave_task = asyncio.create_task(self._autosave_loop())
        logger.info("Coordinator started", workspaces=len(self._workspaces), root=root)

    async def shutdown(self) -> None:
        """Stop every loop without ending its objective, then save everything."""
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            await asyncio.gather(self._autosave_task, return_exceptions=True)
            self._autosave_task = None

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._loops.clear()

        ledgers = list(self._ledgers.values())
        self._ledgers.clear()
        for ledger in ledgers:
            await ledger.close()

        for name in list(self._workspaces):
            await self.save_workspace(name)
        logger.info("Coordinator stopped", stopped_loops=len(tasks))

    async def _autosave_loop(self) -> None:
        interval = self.settings.autosave_interval_seconds
        while True:
            await asyncio.sleep(interval)
            for name, workspace in list(self._workspaces.items()):
                if any(o.status == ObjectiveStatus.ACTIVE or o.unsaved for o in workspace.objectives):
                    await self.save_workspace(name)

    # Workspaces

    def workspace_path(self, name: str) -> str:
        return os.path.join(self.settings.workspace_root, name)

    def _validate_name(self, name: str) -> str:
        if not WORKSPACE_NAME.match(name or ""):
            raise ParameterValidationError(
                "Workspace names use letters, digits, '-' and '_' (max 64 characters)",
                workspace=name,
            )
        return name

    async def _load_workspace(self, name: str) -> Optional[Workspace]:
        workspace = self._workspaces.get(name)
        if workspace is not None:
            return workspace
        path = self.workspace_path(name)
        if not self.store.exists(path):
            return None
        workspace = await asyncio.to_thread(self.store.load, path)
        self._workspaces[name] = workspace
        return workspace

    async def get_workspace(self, name: str) -> Workspace:
        workspace = await self._load_workspace(self._validate_name(name))
        if workspace is None:
            raise WorkspaceNotFound(f"Workspace not found: {name}", workspace=name)
        return workspace

    def list_workspaces(self) -> List[Workspace]:
        return sorted(self._workspaces.values(), key=lambda w: w.name)

    async def save_workspace(self, name: str) -> bool:
        """
        Persist a snapshot of the workspace.

        A failed save never propagates into a loop; the workspace's
        objectives are flagged ``unsaved`` until a later save succeeds.
        """
        workspace = self._workspaces.get(name)
        if workspace is None:
            return False

        lock = self._save_locks.setdefault(name, asyncio.Lock())
        async with lock:
            snapshot = workspace.model_copy(deep=True)
            try:
                await asyncio.to_thread(self.store.save, snapshot)
            except Exception as e:
                logger.error("Workspace save failed", workspace=name, error=str(e))
                for objective in workspace.objectives:
                    objective.unsaved = True
                return False

        for objective in workspace.objectives:
            objective.unsaved = False
        return True

    async def delete_workspace(self, name: str) -> None:
        """Cancel running loops, forget the workspace and remove it from disk."""
        workspace = await self.get_workspace(name)
        for objective in workspace.objectives:
            await self._stop(objective.id)
            self._ledgers.pop(objective.id, None)
        self._workspaces.pop(name, None)
        self._save_locks.pop(name, None)
        if self.chain.limiter is not None:
            self.chain.limiter.discard(name)
        await asyncio.to_thread(self.store.delete_workspace, workspace.path)
        logger.info("Deleted workspace", workspace=name, objectives=len(workspace.objectives))

    async def resume_workspace(self, name: str) -> List[str]:
        """
        Restart every active objective of a stored workspace.

        Steps interrupted by the restart are failed; a conversation that was
        waiting on the user goes back to waiting.

        Returns:
            Ids of the objectives whose loops were started
        """
        workspace = await self.get_workspace(name)
        resumed = []
        for objective in workspace.objectives:
            if objective.status != ObjectiveStatus.ACTIVE or objective.id in self._tasks:
                continue
            await self._resume_objective(workspace, objective)
            resumed.append(objective.id)
        logger.info("Resumed workspace", workspace=name, objectives=len(resumed))
        return resumed

    async def _resume_objective(self, workspace: Workspace, objective: Objective) -> None:
        ledger = self._ledger(objective)
        conversation = objective.conversation

        suspended_step = None
        if conversation.awaiting_user_prompt is not None and conversation.steps:
            last = conversation.steps[-1]
            if last.step_type == StepType.PLANNING and last.status == StepStatus.IN_PROGRESS:
                suspended_step = last.step_id
        if suspended_step is None:
            conversation.awaiting_user_prompt = None

        for step in list(conversation.steps):
            if not step.status.is_final and step.step_id != suspended_step:
                await ledger.fail_step(step.step_id, INTERRUPTED)

        self._spawn(workspace, objective)

    # Objectives

    async def create_objective(self, workspace_name: Optional[str], text: str) -> Objective:
        """Create an objective (and its workspace on first use) and start its loop."""
        name = self._validate_name(workspace_name or self.settings.default_workspace)
        text = (text or "").strip()
        if not text:
            raise ParameterValidationError("Objective text must not be empty")

        workspace = await self._load_workspace(name)
        if workspace is None:
            workspace = Workspace(name=name, path=self.workspace_path(name))
            self._workspaces[name] = workspace
            logger.info("Created workspace", workspace=name, path=workspace.path)

        objective_id = new_id()
        objective = Objective(
            id=objective_id,
            workspace=name,
            text=text,
            conversation=Conversation(objective_id=objective_id, user_query=text),
        )
        workspace.objectives.append(objective)
        workspace.updated_at = utcnow()
        logger.info("Created objective", objective_id=objective_id, workspace=name)

        await self.save_workspace(name)
        self._spawn(workspace, objective)
        return objective

    def find_objective(self, objective_id: str) -> Objective:
        for workspace in self._workspaces.values():
            objective = workspace.find_objective(objective_id)
            if objective is not None:
                return objective
        raise ObjectiveNotFound(f"Objective not found: {objective_id}", objective_id=objective_id)

    def get_objective(self, objective_id: str) -> Objective:
        return self.find_objective(objective_id)

    def execution_metrics(self, objective_id: str) -> ToolExecutionMetrics:
        """Tool execution counts and timings of one objective."""
        return self._ledger(self.find_objective(objective_id)).execution_metrics()

    def is_running(self, objective_id: str) -> bool:
        return objective_id in self._tasks

    async def submit_user_response(self, objective_id: str, text: str) -> Objective:
        """
        Deliver a user message to an active objective.

        Raises:
            InvalidState: If the objective already ended
        """
        objective = self.find_objective(objective_id)
        if objective.status.is_terminal:
            raise InvalidState(
                f"Objective {objective_id} is {objective.status.value}; start a new objective instead",
                objective_id=objective_id,
            )

        loop = self._loops.get(objective_id)
        if loop is not None:
            loop.submit_user_message(text)
        else:
            # loaded but not running: queue the message and resume this objective
            conversation = objective.conversation
            if conversation.awaiting_user_prompt is not None:
                conversation.pending_answers.append(text)
            else:
                conversation.pending_messages.append(text)
            await self._resume_objective(self._workspaces[objective.workspace], objective)
        logger.info("User message delivered", objective_id=objective_id)
        return objective

    async def cancel(self, objective_id: str) -> Objective:
        """Cancel an objective; a no-op on objectives that already ended."""
        objective = self.find_objective(objective_id)
        if objective.status.is_terminal:
            return objective

        if not await self._stop(objective_id):
            idle = self._make_loop(self._workspaces[objective.workspace], objective)
            await idle.nodes.write_terminal(
                ObjectiveStatus.CANCELLED,
                TerminalReason.USER_CANCELLED,
                "Cancelled by user",
            )
        logger.info("Objective cancelled", objective_id=objective_id)
        return objective

    async def delete_objective(self, objective_id: str) -> None:
        """Cancel if running, then remove the objective and its ledger."""
        objective = self.find_objective(objective_id)
        await self._stop(objective_id)
        workspace = self._workspaces[objective.workspace]
        workspace.objectives = [o for o in workspace.objectives if o.id != objective_id]
        workspace.updated_at = utcnow()
        ledger = self._ledgers.pop(objective_id, None)
        if ledger is not None:
            await ledger.close()
        await asyncio.to_thread(self.store.delete_objective, workspace.path, objective_id)
        logger.info("Deleted objective", objective_id=objective_id, workspace=workspace.name)

    def subscribe(self, objective_id: str, replay: bool = True) -> Subscription:
        objective = self.find_objective(objective_id)
        return self._ledger(objective).subscribe(replay=replay)

    # Internals

    def _ledger(self, objective: Objective) -> ConversationLedger:
        ledger = self._ledgers.get(objective.id)
        if ledger is None:
            ledger = ConversationLedger(
                objective.conversation,
                buffer_size=self.settings.subscriber_buffer_size,
                put_timeout_seconds=self.settings.subscriber_put_timeout_seconds,
            )
            self._ledgers[objective.id] = ledger
        return ledger

    def _make_loop(self, workspace: Workspace, objective: Objective) -> AnalysisLoop:
        name = workspace.name

        async def checkpoint() -> None:
            await self.save_workspace(name)

        return AnalysisLoop(
            objective,
            registry=self.registry,
            chain=self.chain,
            limits=self.limits,
            ledger=self._ledger(objective),
            checkpoint=checkpoint,
        )

    def _spawn(self, workspace: Workspace, objective: Objective) -> None:
        loop = self._make_loop(workspace, objective)
        self._loops[objective.id] = loop
        task = asyncio.create_task(self._run(loop), name=f"objective-{objective.id}")
        self._tasks[objective.id] = task

    async def _run(self, loop: AnalysisLoop) -> None:
        objective_id = loop.objective.id
        try:
            await loop.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Analysis loop crashed", objective_id=objective_id, error=str(e))
            try:
                await loop.abort(TerminalReason.INTERNAL_ERROR, f"Internal error: {type(e).__name__}: {e}")
            except Exception as inner:
                logger.error("Could not record internal error", objective_id=objective_id, error=str(inner))
        finally:
            if self._tasks.get(objective_id) is asyncio.current_task():
                self._tasks.pop(objective_id, None)
                self._loops.pop(objective_id, None)

    async def _stop(self, objective_id: str) -> bool:
        """
        Cancel a running loop as a user cancellation.

        Returns:
            False if no loop was running
        """
        task = self._tasks.pop(objective_id, None)
        loop = self._loops.pop(objective_id, None)
        if task is None or loop is None:
            return False
        loop.cancel_requested = True
        task.cancel()
        await asyncio.wait({task})
        if not loop.objective.status.is_terminal:
            # cancelled before the task got to run
            await loop.nodes.write_terminal(
                ObjectiveStatus.CANCELLED,
                TerminalReason.USER_CANCELLED,
                "Cancelled by user",
            )
        return True

    async def wait_for(self, objective_id: str, timeout: Optional[float] = None) -> Objective:
        """Wait until the objective's loop finishes (mainly for tests and scripts)."""
        task = self._tasks.get(objective_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return self.find_objective(objective_id)
