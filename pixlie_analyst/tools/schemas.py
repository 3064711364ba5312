"""
Parameter models of the built-in analysis tools.

Each model is both the validator applied before a handler runs and the
source of the JSON Schema exported to LLM providers.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


ItemType = Literal["story", "comment", "job", "poll", "pollopt"]


class _ToolParams(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PagedParams(_ToolParams):
    limit: int = Field(100, ge=1, le=10000, description="Maximum rows to return")
    offset: int = Field(0, ge=0, description="Rows to skip, for pagination")


class SqlQueryParams(PagedParams):
    sql: str = Field(
        ...,
        min_length=1,
        description="A single read-only SELECT or WITH statement; values must be bound as :name placeholders",
    )
    params: Dict[str, Any] = Field(default_factory=dict, description="Values for the :name placeholders")


class SearchItemsParams(PagedParams):
    query: Optional[str] = Field(None, description="Text matched against item title and body")
    author: Optional[str] = Field(None, description="Exact author username")
    item_type: Optional[ItemType] = Field(None, description="Item type filter")
    min_score: Optional[int] = Field(None, description="Minimum score")


class IntRange(_ToolParams):
    min: Optional[int] = None
    max: Optional[int] = None

    @model_validator(mode="after")
    def _ordered(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("range min must not exceed max")
        return self


class FilterItemsParams(PagedParams):
    score_range: Optional[IntRange] = Field(None, description="Inclusive score bounds")
    time_range: Optional[IntRange] = Field(None, description="Inclusive unix timestamp bounds")
    authors: List[str] = Field(default_factory=list, description="Only items by these authors")
    item_type: Optional[ItemType] = None


class SearchEntitiesParams(PagedParams):
    query: Optional[str] = Field(None, description="Text matched against the entity value")
    entity_type: Optional[str] = Field(None, description="Entity type such as person, company, technology")
    min_confidence: float = Field(0.0, ge=0.0, le=1.0)
    min_mentions: int = Field(1, ge=1, description="Minimum number of distinct items mentioning the entity")


class ExploreRelationsParams(PagedParams):
    relation_type: Optional[str] = Field(None, description="Relation type such as works_at, founded")
    entity_id: Optional[int] = Field(None, description="Entity id on either side of the relation")
    entity_name: Optional[str] = Field(None, description="Entity value on either side of the relation")
    min_confidence: float = Field(0.0, ge=0.0, le=1.0)


class TableSchemaParams(_ToolParams):
    table: Optional[str] = Field(None, description="Describe only this table")
