"""
Connector kinds and the factory that builds them.

A connector class registers under a kind plus the SQLAlchemy URL schemes it
serves, so the data source can be picked from ``DATA_DATABASE_URL`` alone.
"""

from typing import Dict, Optional, Type
import structlog
from .base import Connector

logger = structlog.get_logger(__name__)

CONNECTORS: Dict[str, Type[Connector]] = {}
_KIND_BY_SCHEME: Dict[str, str] = {}


def register(kind: str, *schemes: str):
    """
    Class decorator registering a connector under ``kind``.

    Example:
        @register("postgres", "postgresql")
        class PostgreSQLConnector(SQLAlchemyConnector):
            ...
    """
    def _wrap(cls: Type[Connector]) -> Type[Connector]:
        CONNECTORS[kind] = cls
        for scheme in (kind, *schemes):
            _KIND_BY_SCHEME[scheme] = kind
        logger.debug("Registered connector", kind=kind, schemes=list(schemes), class_name=cls.__name__)
        return cls
    return _wrap


def kind_for_url(url: str) -> Optional[str]:
    """Connector kind serving a SQLAlchemy URL such as ``postgresql+psycopg2://``."""
    scheme = url.split("://", 1)[0] if "://" in url else url.split(":", 1)[0]
    return _KIND_BY_SCHEME.get(scheme.split("+", 1)[0].lower())


def make_connector(kind: Optional[str] = None, **kwargs) -> Connector:
    """
    Build a connector, inferring the kind from ``url`` when none is given.

    Raises:
        ValueError: If the kind is unknown or cannot be inferred
    """
    if kind is None and kwargs.get("url"):
        kind = kind_for_url(kwargs["url"])
    if kind not in CONNECTORS:
        raise ValueError(
            f"Unsupported connector kind: {kind}. "
            f"Available kinds: {sorted(CONNECTORS)}"
        )

    connector_class = CONNECTORS[kind]
    logger.info("Creating connector", kind=kind, class_name=connector_class.__name__)
    return connector_class(**kwargs)


def list_available_connectors() -> Dict[str, str]:
    """Map every registered connector kind to its class name."""
    return {kind: cls.__name__ for kind, cls in CONNECTORS.items()}
