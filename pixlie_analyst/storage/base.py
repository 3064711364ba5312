"""
Persistence contract for workspaces.

Stores are synchronous; the coordinator calls them from worker threads
with deep-copied snapshots.
"""

from typing import List, Protocol

from ..models.contracts import Workspace


class WorkspaceStore(Protocol):
    """Persistence contract for workspace state."""

    def save(self, workspace: Workspace) -> None: ...

    def load(self, path: str) -> Workspace: ...

    def exists(self, path: str) -> bool: ...

    def list_paths(self, root: str) -> List[str]: ...

    def delete_objective(self, path: str, objective_id: str) -> None: ...

    def delete_workspace(self, path: str) -> None: ...
