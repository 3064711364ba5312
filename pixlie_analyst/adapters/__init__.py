"""
Read-only data source adapters used by the analysis tools.
"""

from .base import Connector
from .registry import kind_for_url, list_available_connectors, make_connector, register
from .sqlalchemy_connector import SQLAlchemyConnector

__all__ = [
    "Connector",
    "kind_for_url",
    "make_connector",
    "register",
    "list_available_connectors",
    "SQLAlchemyConnector",
]
