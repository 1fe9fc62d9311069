"""
Request executors - turn a QueryDescriptor into rows.

RequestExecutor is the collaborator interface the query builder submits
descriptors to. HttpRequestExecutor is the default implementation; it
speaks the REST dialect of the data API:

    GET    {rest_url}/{table}?select=...&col=op.value&order=...   select
    POST   {rest_url}/{table}                                     insert / upsert
    PATCH  {rest_url}/{table}?col=op.value                        update
    DELETE {rest_url}/{table}?col=op.value                        delete
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from ..core.errors import QueryError, QueryErrorReason
from ..core.query_types import ExecutorResult, NormalizedFilter, QueryDescriptor

logger = logging.getLogger(__name__)

HTTP_METHODS: dict[str, str] = {
    "select": "GET",
    "insert": "POST",
    "update": "PATCH",
    "delete": "DELETE",
}

# Characters that force quoting inside in.(...) lists
_RESERVED_CHARS = set(',.:()"')


class RequestExecutor(ABC):
    """Interface for executing query descriptors against the data backend."""

    @abstractmethod
    async def execute(self, descriptor: QueryDescriptor, headers: dict[str, str]) -> ExecutorResult:
        """
        Execute a descriptor.

        Args:
            descriptor: What to run
            headers: Auth headers (apikey + bearer) for this call

        Returns:
            ExecutorResult with rows and optional total count

        Raises:
            QueryError: On any failure
        """
        ...

    async def close(self) -> None:
        pass


def format_value(value: Any) -> str:
    """Render a scalar filter value for a query string."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _format_list_item(value: Any) -> str:
    text = format_value(value)
    if isinstance(value, str) and (any(c in _RESERVED_CHARS for c in text) or " " in text):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def encode_filter(filter_: NormalizedFilter) -> tuple[str, str]:
    """
    Encode a filter as a (column, "op.value") query parameter.

    Examples:
        ("age", "gte", 18)          -> ("age", "gte.18")
        ("id", "in", [1, 2])        -> ("id", "in.(1,2)")
        ("deleted_at", "is", None)  -> ("deleted_at", "is.null")
    """
    if filter_.op == "in":
        items = ",".join(_format_list_item(v) for v in filter_.value)
        return filter_.field, f"in.({items})"
    return filter_.field, f"{filter_.op}.{format_value(filter_.value)}"


def build_params(descriptor: QueryDescriptor) -> list[tuple[str, str]]:
    """Build the ordered query-string parameters for a descriptor."""
    params: list[tuple[str, str]] = []

    if descriptor.operation == "select" or descriptor.returning:
        if descriptor.projection is not None:
            params.append(("select", ",".join(descriptor.projection)))
        elif descriptor.operation == "select":
            params.append(("select", "*"))

    params.extend(encode_filter(f) for f in descriptor.filters)

    if descriptor.order:
        parts = []
        for order in descriptor.order:
            part = f"{order.field}.{order.dir}"
            if order.nulls_first is not None:
                part += ".nullsfirst" if order.nulls_first else ".nullslast"
            parts.append(part)
        params.append(("order", ",".join(parts)))

    if descriptor.limit is not None:
        params.append(("limit", str(descriptor.limit)))
    if descriptor.offset is not None:
        params.append(("offset", str(descriptor.offset)))
    if descriptor.on_conflict:
        params.append(("on_conflict", ",".join(descriptor.on_conflict)))

    return params


def build_prefer(descriptor: QueryDescriptor) -> Optional[str]:
    """Build the Prefer header (return / count / upsert resolution)."""
    prefs = []
    if descriptor.operation != "select":
        prefs.append("return=representation" if descriptor.returning else "return=minimal")
    if descriptor.is_upsert:
        prefs.append("resolution=merge-duplicates")
    if descriptor.count:
        prefs.append(f"count={descriptor.count}")
    return ",".join(prefs) if prefs else None


def parse_content_range(value: Optional[str]) -> Optional[int]:
    """Extract the total from a Content-Range header ("0-9/42" -> 42)."""
    if not value or "/" not in value:
        return None
    total = value.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


def error_from_response(response: httpx.Response) -> QueryError:
    """Translate an error response into a typed QueryError."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    code = str(body.get("code") or "")
    message = str(body.get("message") or body.get("msg") or response.text or response.reason_phrase)
    status = response.status_code

    if status == 401:
        expired = code == "PGRST301" or "expired" in message.lower()
        return QueryError(QueryErrorReason.NOT_AUTHORIZED, message, token_expired=expired, status_code=status)
    if status == 403 or code == "42501":
        return QueryError(QueryErrorReason.NOT_AUTHORIZED, message, status_code=status)
    if status in (404, 406) or code in ("PGRST116", "42P01"):
        return QueryError(QueryErrorReason.NOT_FOUND, message, status_code=status)
    if status == 409 or code.startswith("23"):
        return QueryError(QueryErrorReason.CONSTRAINT_VIOLATION, message, status_code=status)
    return QueryError(QueryErrorReason.TRANSPORT_ERROR, f"{status}: {message}", status_code=status)


class HttpRequestExecutor(RequestExecutor):
    """
    HTTP executor for the REST data API.

    Usage:
        executor = HttpRequestExecutor("https://project.example.co/rest/v1")
        result = await executor.execute(descriptor, {"apikey": key, "Authorization": "Bearer ..."})
    """

    def __init__(
        self,
        rest_url: str,
        *,
        schema: str = "public",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize executor.

        Args:
            rest_url: Base URL of the REST API (e.g., "https://x.example.co/rest/v1")
            schema: Database schema sent as Accept-Profile / Content-Profile
            timeout: HTTP request timeout in seconds
            http_client: Optional shared HTTP client
        """
        self.rest_url = rest_url.rstrip("/")
        self.schema = schema
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self, descriptor: QueryDescriptor, headers: dict[str, str]) -> dict[str, str]:
        result = dict(headers)
        profile = "Accept-Profile" if descriptor.is_read else "Content-Profile"
        result[profile] = self.schema
        prefer = build_prefer(descriptor)
        if prefer:
            result["Prefer"] = prefer
        return result

    async def execute(self, descriptor: QueryDescriptor, headers: dict[str, str]) -> ExecutorResult:
        client = await self._get_client()

        method = HTTP_METHODS[descriptor.operation]
        url = f"{self.rest_url}/{descriptor.table}"
        params = build_params(descriptor)

        logger.debug(f"{method} {url} params={params}")

        try:
            response = await client.request(
                method,
                url,
                params=params,
                json=descriptor.payload if descriptor.operation in ("insert", "update") else None,
                headers=self._headers(descriptor, headers),
            )
        except httpx.RequestError as e:
            raise QueryError(QueryErrorReason.TRANSPORT_ERROR, str(e)) from e

        if not response.is_success:
            raise error_from_response(response)

        rows: list[dict[str, Any]] = []
        if response.content:
            try:
                data = response.json()
            except ValueError as e:
                raise QueryError(QueryErrorReason.TRANSPORT_ERROR, f"Invalid JSON response: {e}") from e
            if isinstance(data, list):
                rows = data
            elif isinstance(data, dict):
                rows = [data]

        return ExecutorResult(
            rows=rows,
            count=parse_content_range(response.headers.get("Content-Range")),
        )
