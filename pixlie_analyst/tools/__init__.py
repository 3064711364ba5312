"""
Analysis tools: registry, sandboxed execution and the built-in SQL tools.
"""

from .registry import ToolRegistry, cap_result
from .sql_tools import SQLToolset, build_default_registry

__all__ = ["ToolRegistry", "cap_result", "SQLToolset", "build_default_registry"]
