"""
Fluent, immutable query builder.

Every chained call returns a new builder wrapping a new QueryDescriptor;
nothing touches the network until the builder is awaited / executed.

Usage:
    result = await (
        client.table("posts")
        .select("id, title, author(name)")
        .eq("is_published", True)
        .order("created_at", desc=True)
        .limit(10)
    )
    result.data  # [{"id": 1, ...}, ...]
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from ..auth.session import SessionManager
from ..core.errors import AuthError, AuthErrorReason, QueryError, QueryErrorReason
from ..core.query_types import (
    FILTERABLE_OPERATIONS,
    CountMode,
    ExecutorResult,
    NormalizedFilter,
    NormalizedOrder,
    QueryDescriptor,
    QueryResult,
)
from .executor import RequestExecutor

logger = logging.getLogger(__name__)

_UNSET: Any = object()

Payload = Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]


def split_columns(columns: str) -> list[str]:
    """
    Split a projection string on top-level commas.

    Example:
        "id, title, author(name, email)" -> ["id", "title", "author(name,email)"]
    """
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    quoted = False
    for char in columns:
        if char == '"':
            quoted = not quoted
        elif not quoted:
            if char.isspace():
                continue
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
            elif char == "," and depth == 0:
                if current:
                    parts.append("".join(current))
                current = []
                continue
        current.append(char)
    if current:
        parts.append("".join(current))
    if depth != 0 or quoted:
        raise ValueError(f"Unbalanced projection: {columns!r}")
    return parts


def _normalize_payload(payload: Payload) -> Union[dict[str, Any], list[dict[str, Any]]]:
    if isinstance(payload, Mapping):
        if not payload:
            raise ValueError("Payload must not be empty")
        return dict(payload)
    rows = [dict(row) for row in payload]
    if not rows:
        raise ValueError("Payload must contain at least one row")
    return rows


class QueryBuilder:
    """
    Builder over a QueryDescriptor.

    The operation kind is fixed by the first of select/insert/upsert/update/
    delete; a builder with no explicit operation executes as select *.
    """

    def __init__(
        self,
        descriptor: QueryDescriptor,
        executor: RequestExecutor,
        auth: SessionManager,
        *,
        timeout: Optional[float] = None,
        operation_chosen: bool = False,
    ):
        self._descriptor = descriptor
        self.executor = executor
        self.auth = auth
        self.timeout = timeout
        self._operation_chosen = operation_chosen

    @property
    def descriptor(self) -> QueryDescriptor:
        """The descriptor this builder would execute."""
        return self._descriptor

    def __repr__(self) -> str:
        return f"<QueryBuilder {self._descriptor.summary()}>"

    def _derive(self, *, operation_chosen: Optional[bool] = None, **changes: Any) -> QueryBuilder:
        return QueryBuilder(
            self._descriptor.model_copy(update=changes),
            self.executor,
            self.auth,
            timeout=self.timeout,
            operation_chosen=self._operation_chosen if operation_chosen is None else operation_chosen,
        )

    def _choose(self, operation: str, **changes: Any) -> QueryBuilder:
        if self._operation_chosen:
            raise ValueError(
                f"Query on {self._descriptor.table!r} already has operation "
                f"{self._descriptor.operation!r}; cannot switch to {operation!r}"
            )
        if operation == "insert" and self._descriptor.filters:
            raise ValueError("Filters cannot be applied to insert")
        return self._derive(operation=operation, operation_chosen=True, **changes)

    # === Operations ===

    def select(self, *columns: str) -> QueryBuilder:
        """
        Choose the columns to return.

        On an insert/update/delete this sets the columns returned for the
        affected rows instead of changing the operation.
        """
        parts: list[str] = []
        for column in columns:
            parts.extend(split_columns(column))
        projection = None if not parts or parts == ["*"] else tuple(parts)

        if self._operation_chosen and self._descriptor.operation != "select":
            return self._derive(projection=projection, returning=True)
        if self._operation_chosen:
            return self._derive(projection=projection)
        return self._choose("select", projection=projection)

    def insert(self, payload: Payload, *, returning: bool = True) -> QueryBuilder:
        return self._choose("insert", payload=_normalize_payload(payload), returning=returning)

    def upsert(
        self,
        payload: Payload,
        *,
        on_conflict: Union[str, Iterable[str], None] = None,
        returning: bool = True,
    ) -> QueryBuilder:
        """Insert, merging rows that collide on on_conflict (default: primary key)."""
        if on_conflict is None:
            conflict: tuple[str, ...] = ()
        elif isinstance(on_conflict, str):
            conflict = tuple(split_columns(on_conflict))
        else:
            conflict = tuple(on_conflict)
        return self._choose(
            "insert",
            payload=_normalize_payload(payload),
            returning=returning,
            on_conflict=conflict,
        )

    def update(self, payload: Mapping[str, Any], *, returning: bool = True) -> QueryBuilder:
        if not isinstance(payload, Mapping):
            raise ValueError("update() takes a single mapping of column -> value")
        return self._choose("update", payload=_normalize_payload(payload), returning=returning)

    def delete(self, *, returning: bool = True) -> QueryBuilder:
        return self._choose("delete", returning=returning)

    # === Filters ===

    def filter(self, column: str, op: str, value: Any) -> QueryBuilder:
        """
        Add a filter. Filters on the same column are ANDed.

        Raises:
            ValueError: On insert queries or unknown operators
        """
        if self._operation_chosen and self._descriptor.operation not in FILTERABLE_OPERATIONS:
            raise ValueError("Filters cannot be applied to insert")
        new_filter = NormalizedFilter(field=column, op=op, value=value)
        return self._derive(filters=self._descriptor.filters + (new_filter,))

    def eq(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, "neq", value)

    def lt(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, "lt", value)

    def lte(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, "lte", value)

    def gt(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, "gt", value)

    def gte(self, column: str, value: Any) -> QueryBuilder:
        return self.filter(column, "gte", value)

    def in_(self, column: str, values: Iterable[Any]) -> QueryBuilder:
        if isinstance(values, (str, bytes)):
            raise ValueError("in_() takes an iterable of values, not a string")
        return self.filter(column, "in", list(values))

    def like(self, column: str, pattern: str) -> QueryBuilder:
        return self.filter(column, "like", pattern)

    def ilike(self, column: str, pattern: str) -> QueryBuilder:
        return self.filter(column, "ilike", pattern)

    def is_(self, column: str, value: Optional[bool]) -> QueryBuilder:
        """Null / boolean identity check (IS NULL, IS TRUE, IS FALSE)."""
        if value not in (None, True, False):
            raise ValueError("is_() accepts only None, True or False")
        return self.filter(column, "is", value)

    def match(self, query: Mapping[str, Any]) -> QueryBuilder:
        """Add an eq filter per key/value pair."""
        builder = self
        for column, value in query.items():
            builder = builder.eq(column, value)
        return builder

    # === Modifiers ===

    def order(self, column: str, *, desc: bool = False, nulls_first: Optional[bool] = None) -> QueryBuilder:
        new_order = NormalizedOrder(field=column, dir="desc" if desc else "asc", nulls_first=nulls_first)
        return self._derive(order=self._descriptor.order + (new_order,))

    def limit(self, count: int) -> QueryBuilder:
        if count < 0:
            raise ValueError("limit must be >= 0")
        return self._derive(limit=count)

    def offset(self, count: int) -> QueryBuilder:
        if count < 0:
            raise ValueError("offset must be >= 0")
        return self._derive(offset=count)

    def range(self, start: int, end: int) -> QueryBuilder:
        """Rows start..end inclusive (zero-based)."""
        if start < 0 or end < start:
            raise ValueError(f"Invalid range {start}..{end}")
        return self._derive(offset=start, limit=end - start + 1)

    def single(self) -> QueryBuilder:
        """Expect exactly one row; data becomes that row."""
        return self._derive(cardinality="one")

    def maybe_single(self) -> QueryBuilder:
        """Expect zero or one row; data becomes the row or None."""
        return self._derive(cardinality="maybe_one")

    def count(self, mode: CountMode = "exact") -> QueryBuilder:
        """Ask the backend for the total number of matching rows."""
        if mode not in ("exact", "planned", "estimated"):
            raise ValueError(f"Unknown count mode: {mode!r}")
        return self._derive(count=mode)

    # === Execution ===

    def __await__(self):
        return self.execute().__await__()

    async def execute(self, timeout: Optional[float] = _UNSET) -> QueryResult:
        """
        Send the descriptor through the executor.

        Args:
            timeout: Seconds before giving up (default: builder timeout, None = wait forever)

        Returns:
            QueryResult with the executor's rows

        Raises:
            QueryError: TRANSPORT_ERROR on timeout, CANCELLED if the call is cancelled
        """
        timeout = self.timeout if timeout is _UNSET else timeout
        descriptor = self._descriptor
        try:
            return await asyncio.wait_for(self._run(descriptor), timeout)
        except QueryError as e:
            if e.operation is None:
                e.operation = descriptor.operation
            raise
        except asyncio.TimeoutError as e:
            raise QueryError(
                QueryErrorReason.TRANSPORT_ERROR,
                f"Query on {descriptor.table!r} timed out after {timeout}s",
                operation=descriptor.operation,
            ) from e
        except asyncio.CancelledError as e:
            logger.debug(f"Query on {descriptor.table!r} cancelled")
            raise QueryError(
                QueryErrorReason.CANCELLED,
                f"Query on {descriptor.table!r} was cancelled",
                operation=descriptor.operation,
            ) from e

    async def _headers(self) -> dict[str, str]:
        try:
            return await self.auth.auth_headers()
        except AuthError as e:
            if e.reason is AuthErrorReason.ENDPOINT_UNAVAILABLE:
                raise QueryError(QueryErrorReason.TRANSPORT_ERROR, str(e)) from e
            raise QueryError(QueryErrorReason.NOT_AUTHORIZED, str(e)) from e

    async def _send(self, descriptor: QueryDescriptor, headers: dict[str, str]) -> ExecutorResult:
        try:
            return await self.executor.execute(descriptor, headers)
        except QueryError:
            raise
        except Exception as e:
            raise QueryError(QueryErrorReason.TRANSPORT_ERROR, str(e)) from e

    async def _run(self, descriptor: QueryDescriptor) -> QueryResult:
        logger.debug(f"Executing {descriptor.summary()}")
        try:
            result = await self._send(descriptor, await self._headers())
        except QueryError as e:
            if not (e.token_expired and self.auth.is_authenticated):
                raise
            logger.info(f"Access token expired during query on {descriptor.table!r}, refreshing")
            try:
                await self.auth.refresh()
            except AuthError as auth_error:
                raise QueryError(
                    QueryErrorReason.NOT_AUTHORIZED,
                    f"Token refresh failed: {auth_error}",
                ) from auth_error
            result = await self._send(descriptor, await self._headers())

        return self._shape(descriptor, result)

    def _shape(self, descriptor: QueryDescriptor, result: ExecutorResult) -> QueryResult:
        rows = result.rows
        if descriptor.cardinality == "many":
            return QueryResult.model_construct(data=rows, count=result.count)

        if len(rows) > 1 or (descriptor.cardinality == "one" and not rows):
            expected = "exactly one" if descriptor.cardinality == "one" else "at most one"
            raise QueryError(
                QueryErrorReason.NOT_FOUND,
                f"Expected {expected} row from {descriptor.table!r}, got {len(rows)}",
            )
        return QueryResult.model_construct(data=rows[0] if rows else None, count=result.count)
