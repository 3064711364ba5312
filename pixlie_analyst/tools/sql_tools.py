"""
Built-in read-only tools over a Hacker News style data source.

Tables: hn_items, entities, entity_relations. Every tool pages its result
the same way and returns ``{columns, rows, row_count, has_more,
next_offset, query_time_ms}``.
"""

import time
from typing import Any, Dict, List, Optional

import pyarrow as pa
import structlog

from ..adapters.base import Connector
from ..errors import ToolExecutionError
from ..models.contracts import ToolCategory, ToolConstraints, ToolDescriptor
from .registry import ToolRegistry
from .schemas import (
    ExploreRelationsParams,
    FilterItemsParams,
    SearchEntitiesParams,
    SearchItemsParams,
    SqlQueryParams,
    TableSchemaParams,
)
from .sql_guard import paginate, validate_select

logger = structlog.get_logger(__name__)

ITEM_COLUMNS = "id, item_type, author, time, title, url, score, descendants, parent"


def arrow_to_rows(table: pa.Table) -> List[List[Any]]:
    columns = [col.to_pylist() for col in table.columns]
    return [list(row) for row in zip(*columns)]


class SQLToolset:
    """Tool handlers bound to one read-only connector."""

    def __init__(self, connector: Connector, max_rows: int = 500, query_timeout_seconds: Optional[float] = 30.0):
        self.connector = connector
        self.max_rows = max_rows
        self.query_timeout_seconds = query_timeout_seconds

    def _page(self, sql: str, params: Dict[str, Any], limit: int, offset: int, **extra: Any) -> Dict[str, Any]:
        limit = min(limit, self.max_rows)
        paged_sql, paged_params = paginate(sql, params, limit, offset)

        started = time.perf_counter()
        table = self.connector.run_sql(paged_sql, paged_params, timeout_seconds=self.query_timeout_seconds)
        query_time_ms = round((time.perf_counter() - started) * 1000, 2)

        rows = arrow_to_rows(table)
        has_more = len(rows) > limit
        rows = rows[:limit]
        result = {
            "columns": list(table.column_names),
            "rows": rows,
            "row_count": len(rows),
            "has_more": has_more,
            "next_offset": offset + len(rows) if has_more else None,
            "query_time_ms": query_time_ms,
        }
        result.update(extra)
        return result

    def sql_query(self, params: SqlQueryParams) -> Dict[str, Any]:
        statement = validate_select(params.sql, params.params)
        return self._page(statement, params.params, params.limit, params.offset)

    def search_items(self, params: SearchItemsParams) -> Dict[str, Any]:
        clauses = ["1 = 1"]
        bound: Dict[str, Any] = {}
        if params.query:
            clauses.append("(title LIKE :pattern OR text LIKE :pattern)")
            bound["pattern"] = f"%{params.query}%"
        if params.author:
            clauses.append("author = :author")
            bound["author"] = params.author
        if params.item_type:
            clauses.append("item_type = :item_type")
            bound["item_type"] = params.item_type
        if params.min_score is not None:
            clauses.append("score >= :min_score")
            bound["min_score"] = params.min_score

        sql = (
            f"SELECT {ITEM_COLUMNS} FROM hn_items WHERE {' AND '.join(clauses)} "
            "ORDER BY score DESC, id"
        )
        return self._page(sql, bound, params.limit, params.offset, filters=params.model_dump(exclude_none=True))

    def filter_items(self, params: FilterItemsParams) -> Dict[str, Any]:
        clauses = ["1 = 1"]
        bound: Dict[str, Any] = {}
        for column, bounds in (("score", params.score_range), ("time", params.time_range)):
            if bounds is None:
                continue
            if bounds.min is not None:
                clauses.append(f"{column} >= :{column}_min")
                bound[f"{column}_min"] = bounds.min
            if bounds.max is not None:
                clauses.append(f"{column} <= :{column}_max")
                bound[f"{column}_max"] = bounds.max
        if params.authors:
            names = []
            for i, author in enumerate(params.authors):
                bound[f"author_{i}"] = author
                names.append(f":author_{i}")
            clauses.append(f"author IN ({', '.join(names)})")
        if params.item_type:
            clauses.append("item_type = :item_type")
            bound["item_type"] = params.item_type

        sql = (
            f"SELECT {ITEM_COLUMNS} FROM hn_items WHERE {' AND '.join(clauses)} "
            "ORDER BY time DESC, id"
        )
        return self._page(sql, bound, params.limit, params.offset)

    def search_entities(self, params: SearchEntitiesParams) -> Dict[str, Any]:
        clauses = ["confidence >= :min_confidence"]
        bound: Dict[str, Any] = {
            "min_confidence": params.min_confidence,
            "min_mentions": params.min_mentions,
        }
        if params.query:
            clauses.append("entity_value LIKE :pattern")
            bound["pattern"] = f"%{params.query}%"
        if params.entity_type:
            clauses.append("entity_type = :entity_type")
            bound["entity_type"] = params.entity_type

        sql = (
            "SELECT MIN(id) AS entity_id, entity_type, entity_value, "
            "COUNT(DISTINCT item_id) AS mentions, MAX(confidence) AS max_confidence "
            f"FROM entities WHERE {' AND '.join(clauses)} "
            "GROUP BY entity_type, entity_value "
            "HAVING COUNT(DISTINCT item_id) >= :min_mentions "
            "ORDER BY mentions DESC, entity_value"
        )
        return self._page(sql, bound, params.limit, params.offset)

    def explore_relations(self, params: ExploreRelationsParams) -> Dict[str, Any]:
        clauses = ["r.confidence >= :min_confidence"]
        bound: Dict[str, Any] = {"min_confidence": params.min_confidence}
        if params.relation_type:
            clauses.append("r.relation_type = :relation_type")
            bound["relation_type"] = params.relation_type
        if params.entity_id is not None:
            clauses.append("(s.id = :entity_id OR o.id = :entity_id)")
            bound["entity_id"] = params.entity_id
        if params.entity_name:
            clauses.append("(s.entity_value = :entity_name OR o.entity_value = :entity_name)")
            bound["entity_name"] = params.entity_name

        sql = (
            "SELECT r.id AS relation_id, r.relation_type, r.confidence, "
            "s.id AS subject_id, s.entity_value AS subject_value, s.entity_type AS subject_type, "
            "o.id AS object_id, o.entity_value AS object_value, o.entity_type AS object_type "
            "FROM entity_relations r "
            "JOIN entities s ON s.id = r.subject_entity_id "
            "JOIN entities o ON o.id = r.object_entity_id "
            f"WHERE {' AND '.join(clauses)} "
            "ORDER BY r.confidence DESC, r.id"
        )
        return self._page(sql, bound, params.limit, params.offset)

    def table_schema(self, params: TableSchemaParams) -> Dict[str, Any]:
        tables = self.connector.list_tables()
        if params.table:
            if params.table not in tables:
                raise ToolExecutionError(f"Unknown table: {params.table}", available=tables)
            tables = [params.table]

        described = []
        for table in tables:
            entry: Dict[str, Any] = {
                "table": table,
                "columns": self.connector.get_columns(table),
                "row_count": self.connector.profile_counts(table)["total_rows"],
                "foreign_keys": self.connector.get_foreign_keys(table),
            }
            described.append(entry)
        return {"tables": described, "table_count": len(described)}


def build_default_registry(
    connector: Connector,
    max_rows: int = 500,
    tool_timeout_seconds: float = 30.0,
    max_result_bytes: int = 256 * 1024,
) -> ToolRegistry:
    """
    Register every built-in tool against ``connector`` and freeze the registry.

    The database-side deadline matches the tool timeout, so a query that
    outlives its tool call is aborted by the database as well.
    """
    toolset = SQLToolset(connector, max_rows=max_rows, query_timeout_seconds=tool_timeout_seconds)
    registry = ToolRegistry(default_timeout_seconds=tool_timeout_seconds, max_result_bytes=max_result_bytes)
    constraints = ToolConstraints(
        read_only=True,
        max_rows=max_rows,
        timeout_seconds=tool_timeout_seconds,
        max_result_bytes=max_result_bytes,
    )

    registry.register(
        ToolDescriptor(
            name="sql_query",
            description=(
                "Run one read-only SELECT/WITH query against the data source. "
                "Bind every literal value as a :name parameter. Results are paginated."
            ),
            category=ToolCategory.DATA_QUERY,
            constraints=constraints,
            examples=[{
                "sql": "SELECT COUNT(DISTINCT author) AS authors FROM hn_items WHERE score >= :min_score",
                "params": {"min_score": 100},
            }],
        ),
        toolset.sql_query,
        SqlQueryParams,
    )
    registry.register(
        ToolDescriptor(
            name="search_items",
            description="Search Hacker News items by text, author, type and minimum score.",
            category=ToolCategory.DATA_QUERY,
            constraints=constraints,
            examples=[{"query": "rust", "item_type": "story", "min_score": 50, "limit": 20}],
        ),
        toolset.search_items,
        SearchItemsParams,
    )
    registry.register(
        ToolDescriptor(
            name="filter_items",
            description="Filter Hacker News items by score range, time range and authors.",
            category=ToolCategory.DATA_QUERY,
            constraints=constraints,
            examples=[{"score_range": {"min": 100}, "authors": ["pg", "dang"]}],
        ),
        toolset.filter_items,
        FilterItemsParams,
    )
    registry.register(
        ToolDescriptor(
            name="search_entities",
            description="Find extracted entities (people, companies, technologies) and how often they are mentioned.",
            category=ToolCategory.ENTITY_ANALYSIS,
            constraints=constraints,
            examples=[{"entity_type": "company", "min_mentions": 2}],
        ),
        toolset.search_entities,
        SearchEntitiesParams,
    )
    registry.register(
        ToolDescriptor(
            name="explore_relations",
            description="Explore relations between extracted entities, optionally around one entity.",
            category=ToolCategory.RELATION_EXPLORATION,
            constraints=constraints,
            examples=[{"entity_name": "OpenAI", "relation_type": "founded"}],
        ),
        toolset.explore_relations,
        ExploreRelationsParams,
    )
    registry.register(
        ToolDescriptor(
            name="table_schema",
            description="Describe the tables, columns and row counts of the data source.",
            category=ToolCategory.SCHEMA,
            constraints=constraints,
        ),
        toolset.table_schema,
        TableSchemaParams,
    )

    registry.freeze()
    logger.info("Built default tool registry", tools=len(registry), connector=connector.name)
    return registry
