"""
SQLAlchemy-based read-only connector for SQL databases.

Every pooled connection is switched to read-only mode as soon as it is
opened, and every execution carries its own deadline which the database
enforces, so one slow query can be aborted without touching the others.
"""

from contextlib import contextmanager
from typing import Dict, List, Optional, Any
import time
import uuid

import pandas as pd
import pyarrow as pa
from sqlalchemy import create_engine, event, text, inspect
from sqlalchemy.exc import SQLAlchemyError
import structlog

from ..errors import ToolExecutionError
from .base import BaseConnector
from .registry import register

logger = structlog.get_logger(__name__)

_READ_ONLY_STATEMENTS = {
    "sqlite": "PRAGMA query_only = ON",
    "postgres": "SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY",
    "mysql": "SET SESSION TRANSACTION READ ONLY",
}

# SQLite VM instructions between deadline checks
_PROGRESS_STEPS = 1000


class QueryTimeout(ToolExecutionError):
    reason = "query_timeout"


class SQLAlchemyConnector(BaseConnector):
    """
    Read-only SQL connector using SQLAlchemy.

    Supports SQLite, PostgreSQL and MySQL. Query results are materialised
    through pandas into Arrow tables.
    """

    def __init__(
        self,
        url: str,
        schema: Optional[str] = None,
        dialect: str = "sqlite",
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: int = 30,
        **engine_kwargs
    ):
        """
        Initialize SQLAlchemy connector.

        Args:
            url: Database connection URL
            schema: Default schema name
            dialect: One of sqlite, postgres, mysql
            pool_size: Connection pool size
            max_overflow: Maximum pool overflow
            pool_timeout: Seconds to wait for a pooled connection
            **engine_kwargs: Additional SQLAlchemy engine arguments
        """
        if dialect not in _READ_ONLY_STATEMENTS:
            raise ValueError(f"Unsupported dialect for read-only access: {dialect}")

        super().__init__(name=f"sqlalchemy:{dialect}", kind="sql", dialect=dialect)
        self.url = url
        self.schema = schema

        engine_config: Dict[str, Any] = {"pool_pre_ping": True}
        if dialect == "sqlite":
            engine_config["connect_args"] = {"check_same_thread": False}
        else:
            engine_config.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
            )
        engine_config.update(engine_kwargs)

        try:
            self.engine = create_engine(url, **engine_config)
        except Exception as e:
            logger.error("Failed to create SQLAlchemy engine", error=str(e))
            raise

        event.listen(self.engine, "connect", self._enforce_read_only)
        logger.info(
            "Created read-only SQLAlchemy connector",
            dialect=dialect,
            schema=schema,
            url_scheme=self.engine.url.drivername,
        )

    def _enforce_read_only(self, dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(_READ_ONLY_STATEMENTS[self.dialect])
        finally:
            cursor.close()

    @contextmanager
    def _deadline(self, conn, timeout_seconds: Optional[float]):
        """Install a database-side deadline for the current execution."""
        state = {"expired": False}
        if not timeout_seconds:
            yield state
            return

        if self.dialect == "sqlite":
            raw = conn.connection.dbapi_connection
            expires_at = time.monotonic() + timeout_seconds

            def _check() -> int:
                if time.monotonic() > expires_at:
                    state["expired"] = True
                    return 1
                return 0

            raw.set_progress_handler(_check, _PROGRESS_STEPS)
            try:
                yield state
            finally:
                raw.set_progress_handler(None, 0)
        elif self.dialect == "postgres":
            conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}"))
            yield state
        else:
            conn.execute(text(f"SET SESSION MAX_EXECUTION_TIME = {int(timeout_seconds * 1000)}"))
            yield state

    def list_tables(self, schema: Optional[str] = None) -> List[str]:
        """List available tables in the database."""
        self._check_closed()
        target_schema = schema or self.schema
        try:
            with self.engine.connect() as conn:
                tables = inspect(conn).get_table_names(schema=target_schema)
                logger.debug("Listed tables", schema=target_schema, count=len(tables))
                return tables
        except SQLAlchemyError as e:
            logger.error("Failed to list tables", schema=target_schema, error=str(e))
            raise

    def get_columns(self, table: str) -> List[Dict[str, Any]]:
        """Get normalised column information for a table."""
        self._check_closed()
        try:
            with self.engine.connect() as conn:
                inspector = inspect(conn)
                pk = set(inspector.get_pk_constraint(table, schema=self.schema).get("constrained_columns") or [])
                return [
                    {
                        "name": col["name"],
                        "type": str(col["type"]),
                        "nullable": col.get("nullable", True),
                        "primary_key": col["name"] in pk,
                    }
                    for col in inspector.get_columns(table, schema=self.schema)
                ]
        except SQLAlchemyError as e:
            logger.error("Failed to get columns", table=table, error=str(e))
            raise

    def get_foreign_keys(self, table: str) -> List[Dict[str, Any]]:
        self._check_closed()
        with self.engine.connect() as conn:
            return [
                {
                    "columns": fk.get("constrained_columns", []),
                    "referred_table": fk.get("referred_table"),
                    "referred_columns": fk.get("referred_columns", []),
                }
                for fk in inspect(conn).get_foreign_keys(table, schema=self.schema)
            ]

    def profile_counts(self, table: str, ts_col: Optional[str] = None) -> Dict[str, Any]:
        """Row count and, when a timestamp column is given, its range."""
        self._check_closed()
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text(f"SELECT COUNT(*) FROM {self.quote_ident(table)}")
                ).fetchone()
                total_rows = row[0] if row else 0
                profile: Dict[str, Any] = {"table": table, "total_rows": total_rows}

                if ts_col and total_rows > 0:
                    col = self.quote_ident(ts_col)
                    ts_row = conn.execute(
                        text(f"SELECT MIN({col}), MAX({col}) FROM {self.quote_ident(table)} WHERE {col} IS NOT NULL")
                    ).fetchone()
                    if ts_row and ts_row[0] is not None:
                        profile.update(min_value=ts_row[0], max_value=ts_row[1], column=ts_col)
                return profile
        except SQLAlchemyError as e:
            logger.error("Failed to profile table", table=table, error=str(e))
            raise

    def run_sql(
        self,
        sql: str,
        params: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> pa.Table:
        """Execute a read-only query under a deadline and return an Arrow table."""
        self._check_closed()
        start_time = time.perf_counter()
        sql_preview = sql[:200] + "..." if len(sql) > 200 else sql

        with self.engine.connect() as conn:
            with self._deadline(conn, timeout_seconds) as state:
                try:
                    df = pd.read_sql_query(text(sql), conn, params=params or {})
                except Exception as e:
                    duration = round((time.perf_counter() - start_time) * 1000, 2)
                    if state["expired"]:
                        logger.warning("SQL query hit deadline", timeout_seconds=timeout_seconds, duration_ms=duration)
                        raise QueryTimeout(
                            f"Query exceeded deadline of {timeout_seconds}s",
                            timeout_seconds=timeout_seconds,
                        ) from e
                    logger.error("SQL query failed", error=str(e), duration_ms=duration, sql_preview=sql_preview)
                    raise

        table = self._to_arrow(df)
        logger.info(
            "Executed SQL query",
            rows=len(df),
            columns=len(df.columns),
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            sql_preview=sql_preview,
        )
        return table

    def read_table(
        self,
        table: str,
        columns: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> pa.Table:
        """Read data from a table directly."""
        cols = ", ".join(self.quote_ident(col) for col in columns) if columns else "*"
        sql = f"SELECT {cols} FROM {self.quote_ident(table)}"
        if limit:
            sql += f" LIMIT {int(limit)}"
        return self.run_sql(sql)

    def _to_arrow(self, df: pd.DataFrame) -> pa.Table:
        """Convert pandas DataFrame to Arrow, normalizing unsupported types."""
        try:
            return pa.Table.from_pandas(df, preserve_index=False)
        except (TypeError, pa.ArrowInvalid) as err:
            logger.debug("Retrying pandas to arrow conversion after type normalization", error=str(err))

        normalized = df.copy()
        for col in normalized.columns:
            if normalized[col].dtype == "object":
                normalized[col] = normalized[col].map(
                    lambda val: str(val) if isinstance(val, uuid.UUID) else val
                )
                if normalized[col].dtype == "object":
                    normalized[col] = normalized[col].astype("string")
        return pa.Table.from_pandas(normalized, preserve_index=False)

    def close(self) -> None:
        if not self._closed and hasattr(self, "engine"):
            self.engine.dispose()
            logger.info("Closed SQLAlchemy connector", name=self.name)
        super().close()


@register("postgres", "postgresql")
class PostgreSQLConnector(SQLAlchemyConnector):
    def __init__(self, **kwargs):
        kwargs.setdefault("dialect", "postgres")
        super().__init__(**kwargs)


@register("mysql", "mariadb")
class MySQLConnector(SQLAlchemyConnector):
    def __init__(self, **kwargs):
        kwargs.setdefault("dialect", "mysql")
        super().__init__(**kwargs)


@register("sqlite")
class SQLiteConnector(SQLAlchemyConnector):
    def __init__(self, **kwargs):
        kwargs.setdefault("dialect", "sqlite")
        super().__init__(**kwargs)
