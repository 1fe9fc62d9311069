"""
Pydantic models for query descriptors.

A QueryDescriptor is the declarative, immutable description of one data
operation. The query builder produces it; a RequestExecutor consumes it.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


Operation = Literal["select", "insert", "update", "delete"]
FilterOp = Literal["eq", "neq", "lt", "lte", "gt", "gte", "in", "like", "ilike", "is"]
Cardinality = Literal["many", "one", "maybe_one"]
CountMode = Literal["exact", "planned", "estimated"]

# Operations a filter is allowed to narrow
FILTERABLE_OPERATIONS: frozenset[str] = frozenset(["select", "update", "delete"])

Row = Dict[str, Any]


class NormalizedFilter(BaseModel):
    """
    Normalized filter representation.

    .eq("is_published", True)
    -> NormalizedFilter(field="is_published", op="eq", value=True)
    """
    model_config = ConfigDict(frozen=True)

    field: str
    op: FilterOp
    value: Any

    def as_list(self) -> list[Any]:
        return [self.field, self.op, self.value]


class NormalizedOrder(BaseModel):
    """
    Normalized order representation.

    .order("created_at", desc=True)
    -> NormalizedOrder(field="created_at", dir="desc")
    """
    model_config = ConfigDict(frozen=True)

    field: str
    dir: Literal["asc", "desc"] = "asc"
    nulls_first: Optional[bool] = None

    def as_list(self) -> list[str]:
        return [self.field, self.dir]


class QueryDescriptor(BaseModel):
    """
    Declarative description of a single data operation.

    Example:
    {
        "table": "posts",
        "operation": "select",
        "filters": [["is_published", "eq", True]],
        "order": [["created_at", "desc"]]
    }
    """
    model_config = ConfigDict(frozen=True)

    table: str
    operation: Operation = "select"
    filters: Tuple[NormalizedFilter, ...] = ()
    order: Tuple[NormalizedOrder, ...] = ()
    projection: Optional[Tuple[str, ...]] = None  # None = all columns
    payload: Optional[Union[Row, List[Row]]] = None  # insert/update only
    limit: Optional[int] = None
    offset: Optional[int] = None
    cardinality: Cardinality = "many"
    count: Optional[CountMode] = None
    returning: bool = True  # Return affected rows for insert/update/delete
    on_conflict: Optional[Tuple[str, ...]] = None  # Set for upsert

    @property
    def is_read(self) -> bool:
        return self.operation == "select"

    @property
    def is_upsert(self) -> bool:
        return self.operation == "insert" and self.on_conflict is not None

    def summary(self) -> dict[str, Any]:
        """Compact plain-data view, used for logging and equality checks."""
        result: dict[str, Any] = {
            "table": self.table,
            "op": self.operation,
            "filters": [f.as_list() for f in self.filters],
            "order": [o.as_list() for o in self.order],
        }
        if self.projection is not None:
            result["select"] = list(self.projection)
        if self.limit is not None:
            result["limit"] = self.limit
        if self.offset is not None:
            result["offset"] = self.offset
        return result


class ExecutorResult(BaseModel):
    """
    What a RequestExecutor returns.

    rows are passed through to the caller untouched.
    """
    rows: List[Row] = Field(default_factory=list)
    count: Optional[int] = None


class QueryResult(BaseModel):
    """
    Result of executing a query.

    data is a list of rows, or a single row / None for single() and
    maybe_single() queries.
    """
    data: Union[List[Row], Row, None] = None
    count: Optional[int] = None
