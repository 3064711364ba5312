"""
Connector interface of the analysed data source.

Tools never touch a database driver directly; they go through a Connector,
which is always opened read-only and enforces a per-execution deadline.
"""

from typing import Protocol, Any, Dict, List, Optional, runtime_checkable
import pyarrow as pa


@runtime_checkable
class Connector(Protocol):
    """
    Read-only access to one SQL data source.

    Writes must be rejected by the connection itself, not only by the
    statement checks done before a query reaches the connector.
    """

    name: str
    kind: str  # "sql"
    dialect: Optional[str]  # "sqlite", "postgres", "mysql"

    def list_tables(self, schema: Optional[str] = None) -> List[str]: ...

    def get_columns(self, table: str) -> List[Dict[str, Any]]:
        """Columns as dicts with name, type, nullable and primary_key."""
        ...

    def get_foreign_keys(self, table: str) -> List[Dict[str, Any]]:
        """Foreign keys as dicts with columns, referred_table and referred_columns."""
        ...

    def profile_counts(self, table: str, ts_col: Optional[str] = None) -> Dict[str, Any]:
        """Row count, plus the min/max of ``ts_col`` when given."""
        ...

    def run_sql(
        self,
        sql: str,
        params: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> pa.Table:
        """
        Execute one read-only query.

        Args:
            sql: Statement with ``:name`` placeholders
            params: Bound parameter values
            timeout_seconds: Deadline after which the database aborts the query

        Raises:
            QueryTimeout: If the deadline expired
        """
        ...

    def read_table(
        self,
        table: str,
        columns: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> pa.Table: ...

    def quote_ident(self, ident: str) -> str: ...

    def close(self) -> None: ...


class BaseConnector:
    """Identity, identifier quoting and close bookkeeping shared by connectors."""

    def __init__(self, name: str, kind: str, dialect: Optional[str] = None):
        self.name = name
        self.kind = kind
        self.dialect = dialect
        self._closed = False

    def quote_ident(self, ident: str) -> str:
        if self.dialect == "mysql":
            return "`" + ident.replace("`", "``") + "`"
        return '"' + ident.replace('"', '""') + '"'

    def close(self) -> None:
        self._closed = True

    def _check_closed(self) -> None:
        if self._closed:
            raise RuntimeError(f"Connector {self.name} is closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
