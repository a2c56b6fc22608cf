"""
Data Access Protocol

Defines the result envelope, the query options, and the structural interfaces
every backend adapter implements. Uses Python Protocols for structural
subtyping (duck typing); adapters do not need to inherit from these classes,
although the bundled ones share BaseAdapter.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .errors import ValidationError
from .filters import FilterSpec, parse_filters


@dataclass
class APIResponse:
    """
    Uniform result envelope returned by every adapter operation.

    Exactly one of `data`/`error` is meaningful: `data` when `success` is
    True, `error` when it is False.
    """

    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "APIResponse":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "APIResponse":
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        """Wire shape: {success, data?} on success, {success, error?} on failure."""
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error}


@dataclass(frozen=True)
class OrderBy:
    column: str
    ascending: bool = True


@dataclass
class QueryOptions:
    """Options for the general-purpose `query` operation."""

    select: str | Sequence[str] = "*"
    filters: Mapping[str, Any] | None = None
    order_by: OrderBy | None = None
    limit: int | None = None
    offset: int | None = None
    single: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.order_by, str):
            self.order_by = OrderBy(self.order_by)

    def validate(self) -> FilterSpec:
        """Check pagination bounds and return the parsed filters."""
        if self.limit is not None and (not isinstance(self.limit, int) or self.limit <= 0):
            raise ValidationError(f"limit must be a positive integer, got {self.limit!r}")
        if self.offset is not None and (not isinstance(self.offset, int) or self.offset < 0):
            raise ValidationError(f"offset must be a non-negative integer, got {self.offset!r}")
        return parse_filters(self.filters)


@runtime_checkable
class TableQueryBuilder(Protocol):
    """Fluent query builder of the embedded client (mirrors supabase-py / postgrest-py)."""

    # Column selection
    def select(self, *columns: str, count: str | None = None, head: bool | None = None) -> "TableQueryBuilder": ...

    # Mutation
    def insert(self, data: dict[str, Any] | list[dict[str, Any]]) -> "TableQueryBuilder": ...
    def update(self, data: dict[str, Any]) -> "TableQueryBuilder": ...
    def delete(self) -> "TableQueryBuilder": ...
    def upsert(self, data: dict[str, Any] | list[dict[str, Any]]) -> "TableQueryBuilder": ...

    # Filters
    def eq(self, column: str, value: Any) -> "TableQueryBuilder": ...
    def neq(self, column: str, value: Any) -> "TableQueryBuilder": ...
    def gt(self, column: str, value: Any) -> "TableQueryBuilder": ...
    def gte(self, column: str, value: Any) -> "TableQueryBuilder": ...
    def lt(self, column: str, value: Any) -> "TableQueryBuilder": ...
    def lte(self, column: str, value: Any) -> "TableQueryBuilder": ...
    def like(self, column: str, pattern: str) -> "TableQueryBuilder": ...
    def ilike(self, column: str, pattern: str) -> "TableQueryBuilder": ...
    def in_(self, column: str, values: list[Any]) -> "TableQueryBuilder": ...
    def is_(self, column: str, value: Any) -> "TableQueryBuilder": ...

    # Ordering / pagination
    def order(self, column: str, *, desc: bool = False) -> "TableQueryBuilder": ...
    def limit(self, size: int) -> "TableQueryBuilder": ...
    def range(self, start: int, end: int) -> "TableQueryBuilder": ...
    def maybe_single(self) -> "TableQueryBuilder": ...

    # Execution
    def execute(self) -> Any: ...


@runtime_checkable
class EmbeddedClient(Protocol):
    """Schema-bound remote client (supabase.Client satisfies this)."""

    auth: Any

    def table(self, name: str) -> TableQueryBuilder: ...
    def rpc(self, fn: str, params: dict[str, Any]) -> Any: ...


@runtime_checkable
class BackendAdapter(Protocol):
    """
    Unified data access contract.

    Implemented by SupabaseAdapter, HttpAdapter, MockAdapter and
    PostgresAdapter. Every method is a coroutine returning an APIResponse and
    never raises for backend failures.
    """

    async def select(
        self, table: str, columns: str | Sequence[str] = "*", filters: Mapping[str, Any] | None = None
    ) -> APIResponse: ...
    async def select_one(
        self, table: str, columns: str | Sequence[str] = "*", filters: Mapping[str, Any] | None = None
    ) -> APIResponse: ...
    async def insert(self, table: str, data: dict[str, Any] | list[dict[str, Any]]) -> APIResponse: ...
    async def insert_many(self, table: str, rows: list[dict[str, Any]]) -> APIResponse: ...
    async def update(self, table: str, filters: Mapping[str, Any], patch: dict[str, Any]) -> APIResponse: ...
    async def delete(self, table: str, filters: Mapping[str, Any]) -> APIResponse: ...
    async def upsert(self, table: str, data: dict[str, Any] | list[dict[str, Any]]) -> APIResponse: ...
    async def count(self, table: str, filters: Mapping[str, Any] | None = None) -> APIResponse: ...
    async def rpc(self, name: str, params: dict[str, Any] | None = None) -> APIResponse: ...
    async def query(self, table: str, options: QueryOptions) -> APIResponse: ...

    async def sign_in(self, email: str, password: str) -> APIResponse: ...
    async def sign_up(self, email: str, password: str) -> APIResponse: ...
    async def sign_out(self) -> APIResponse: ...
    async def get_current_user(self) -> APIResponse: ...
    async def is_authenticated(self) -> APIResponse: ...
