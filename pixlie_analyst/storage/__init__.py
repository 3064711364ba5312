"""
Workspace persistence.
"""

from .base import WorkspaceStore
from .memory import InMemoryWorkspaceStore
from .sql_store import SQLWorkspaceStore

__all__ = ["WorkspaceStore", "InMemoryWorkspaceStore", "SQLWorkspaceStore"]
