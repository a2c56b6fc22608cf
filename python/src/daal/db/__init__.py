"""
Data access abstraction layer.

One filter vocabulary and one result envelope over four backends:
Supabase, generic HTTP/REST, an offline mock store, and parameterized SQL.
Controlled by DB_PROVIDER environment variable (default: supabase).
"""

from .errors import AuthError, BackendError, DaalError, NetworkError, NotFoundError, ValidationError
from .factory import create_adapter, get_adapter, reset_adapter
from .filters import (
    Eq,
    FilterCondition,
    FilterSpec,
    Gt,
    Gte,
    Ilike,
    In,
    IsNull,
    Like,
    Lt,
    Lte,
    Neq,
    matches,
    parse_filters,
)
from .protocol import APIResponse, BackendAdapter, OrderBy, QueryOptions
from .storage import FileStorage, InMemoryStorage, StoragePort

__all__ = [
    "APIResponse",
    "BackendAdapter",
    "OrderBy",
    "QueryOptions",
    "create_adapter",
    "get_adapter",
    "reset_adapter",
    "FilterCondition",
    "FilterSpec",
    "Eq",
    "Neq",
    "Gt",
    "Gte",
    "Lt",
    "Lte",
    "Like",
    "Ilike",
    "In",
    "IsNull",
    "matches",
    "parse_filters",
    "StoragePort",
    "InMemoryStorage",
    "FileStorage",
    "DaalError",
    "ValidationError",
    "AuthError",
    "NotFoundError",
    "NetworkError",
    "BackendError",
]
