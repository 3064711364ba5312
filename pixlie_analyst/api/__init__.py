"""
HTTP interface of the analysis engine.
"""

from .app import create_app

__all__ = ["create_app"]
