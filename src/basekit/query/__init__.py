"""
Query module - descriptor builder and executors.
"""

from __future__ import annotations

from .builder import QueryBuilder, split_columns
from .executor import (
    HttpRequestExecutor,
    RequestExecutor,
    build_params,
    build_prefer,
    encode_filter,
)

__all__ = [
    "QueryBuilder",
    "split_columns",
    "RequestExecutor",
    "HttpRequestExecutor",
    "build_params",
    "build_prefer",
    "encode_filter",
]
