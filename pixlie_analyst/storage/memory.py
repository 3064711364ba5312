"""In-memory workspace store for tests and ephemeral runs."""

import os
import threading
from typing import Dict, List

from ..errors import WorkspaceNotFound
from ..models.contracts import Workspace


class InMemoryWorkspaceStore:
    """Keeps deep copies, so callers never share state with the store."""

    def __init__(self) -> None:
        self._workspaces: Dict[str, Workspace] = {}
        self._lock = threading.Lock()
        self.save_count = 0

    def save(self, workspace: Workspace) -> None:
        with self._lock:
            self._workspaces[workspace.path] = workspace.model_copy(deep=True)
            self.save_count += 1

    def load(self, path: str) -> Workspace:
        with self._lock:
            workspace = self._workspaces.get(path)
            if workspace is None:
                raise WorkspaceNotFound(f"No workspace stored at {path}", path=path)
            return workspace.model_copy(deep=True)

    def exists(self, path: str) -> bool:
        return path in self._workspaces

    def list_paths(self, root: str) -> List[str]:
        prefix = os.path.normpath(root)
        return sorted(p for p in self._workspaces if os.path.dirname(os.path.normpath(p)) == prefix)

    def delete_objective(self, path: str, objective_id: str) -> None:
        with self._lock:
            workspace = self._workspaces.get(path)
            if workspace is not None:
                workspace.objectives = [o for o in workspace.objectives if o.id != objective_id]

    def delete_workspace(self, path: str) -> None:
        with self._lock:
            self._workspaces.pop(path, None)

    def reset(self) -> None:
        with self._lock:
            self._workspaces.clear()
