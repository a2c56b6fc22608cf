"""
Supabase Database Adapter

Delegates every operation onto the supabase-py client's chained query
builder and normalizes its responses into APIResponse.
Active when DB_PROVIDER=supabase (default).

supabase-py is synchronous; builder execution runs on a worker thread.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from typing import Any

from supabase import AuthApiError, AuthInvalidCredentialsError, AuthRetryableError

from ..config.logfire_config import get_logger
from .base import BaseAdapter, as_rows, column_clause, envelope, to_record
from .errors import AuthError, BackendError, DaalError, NetworkError, ValidationError
from .filters import (
    Eq,
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
    parse_filters,
    substring_pattern,
)
from .protocol import EmbeddedClient, QueryOptions, TableQueryBuilder

logger = get_logger(__name__)

# PostgREST codes for expired/invalid JWTs and permission denied
_AUTH_ERROR_CODES = {"PGRST301", "PGRST302", "42501"}

_FILTER_METHODS: dict[type, str] = {
    Eq: "eq",
    Neq: "neq",
    Gt: "gt",
    Gte: "gte",
    Lt: "lt",
    Lte: "lte",
}


def _apply_filters(builder: TableQueryBuilder, spec: FilterSpec) -> TableQueryBuilder:
    """Chain one builder filter call per condition."""
    for column, condition in spec.items():
        if isinstance(condition, IsNull):
            builder = builder.is_(column, "null")
        elif isinstance(condition, In):
            builder = builder.in_(column, list(condition.values))
        elif isinstance(condition, Like):
            builder = builder.like(column, substring_pattern(condition.pattern))
        elif isinstance(condition, Ilike):
            builder = builder.ilike(column, substring_pattern(condition.pattern))
        else:
            method = getattr(builder, _FILTER_METHODS[type(condition)])
            builder = method(column, condition.value)
    return builder


def _error_message(exc: Exception) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or type(exc).__name__


class SupabaseAdapter(BaseAdapter):
    """
    Supabase-backed implementation of BackendAdapter.
    Wraps a supabase-py Client instance and delegates all operations.
    """

    name = "supabase"

    def __init__(self, client: EmbeddedClient, email_redirect_to: str | None = None) -> None:
        super().__init__()
        self._client = client
        self._email_redirect_to = email_redirect_to

    async def _execute(self, builder: Any) -> Any:
        return await asyncio.to_thread(builder.execute)

    def _classify_error(self, exc: Exception) -> DaalError:
        if isinstance(exc, DaalError):
            return exc
        code = getattr(exc, "code", None)
        status = getattr(exc, "status", None)
        if code in _AUTH_ERROR_CODES or status == 401:
            return AuthError(_error_message(exc))
        return BackendError(_error_message(exc))

    # --- Queries ---

    @envelope("select")
    async def select(
        self, table: str, columns: str | Sequence[str] = "*", filters: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        spec = parse_filters(filters)
        builder = _apply_filters(self._client.table(table).select(column_clause(columns)), spec)
        response = await self._execute(builder)
        return response.data or []

    @envelope("select_one")
    async def select_one(
        self, table: str, columns: str | Sequence[str] = "*", filters: Mapping[str, Any] | None = None
    ) -> dict[str, Any] | None:
        spec = parse_filters(filters)
        builder = _apply_filters(self._client.table(table).select(column_clause(columns)), spec)
        # maybe_single() raises on more than one row; take the first like the other backends
        response = await self._execute(builder.limit(1).maybe_single())
        if response is None:
            return None
        return response.data or None

    @envelope("query")
    async def query(self, table: str, options: QueryOptions) -> Any:
        spec = options.validate()
        builder = _apply_filters(self._client.table(table).select(column_clause(options.select)), spec)
        if options.order_by is not None:
            builder = builder.order(options.order_by.column, desc=not options.order_by.ascending)
        limit = 1 if options.single else options.limit
        # range() sets both offset and limit params
        if options.offset:
            size = limit if limit is not None else 1000
            builder = builder.range(options.offset, options.offset + size - 1)
        elif limit is not None:
            builder = builder.limit(limit)
        if options.single:
            response = await self._execute(builder.maybe_single())
            return response.data if response is not None else None
        response = await self._execute(builder)
        return response.data or []

    @envelope("count")
    async def count(self, table: str, filters: Mapping[str, Any] | None = None) -> int:
        spec = parse_filters(filters)
        builder = _apply_filters(self._client.table(table).select("*", count="exact", head=True), spec)
        response = await self._execute(builder)
        return response.count or 0

    # --- Mutations ---

    @envelope("insert")
    async def insert(self, table: str, data: dict[str, Any] | list[dict[str, Any]]) -> Any:
        rows = as_rows(data)
        response = await self._execute(self._client.table(table).insert(rows))
        written = response.data or []
        if isinstance(data, Mapping):
            return written[0] if written else None
        return written

    @envelope("insert_many")
    async def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if isinstance(rows, Mapping):
            raise ValidationError("insert_many expects a list of records")
        response = await self._execute(self._client.table(table).insert(as_rows(rows)))
        return response.data or []

    @envelope("update")
    async def update(
        self, table: str, filters: Mapping[str, Any], patch: dict[str, Any]
    ) -> list[dict[str, Any]]:
        spec = parse_filters(filters)
        builder = _apply_filters(self._client.table(table).update(patch), spec)
        response = await self._execute(builder)
        return response.data or []

    @envelope("delete")
    async def delete(self, table: str, filters: Mapping[str, Any]) -> list[dict[str, Any]]:
        spec = parse_filters(filters)
        builder = _apply_filters(self._client.table(table).delete(), spec)
        response = await self._execute(builder)
        return response.data or []

    @envelope("upsert")
    async def upsert(self, table: str, data: dict[str, Any] | list[dict[str, Any]]) -> Any:
        response = await self._execute(self._client.table(table).upsert(as_rows(data)))
        written = response.data or []
        if isinstance(data, Mapping):
            return written[0] if written else None
        return written

    # --- RPC ---

    @envelope("rpc")
    async def rpc(self, name: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._execute(self._client.rpc(name, params or {}))
        return response.data

    # --- Authentication ---

    async def _auth_call(self, fn: Any, *args: Any) -> Any:
        """Run a blocking auth call; credential rejections leave any session intact."""
        try:
            return await asyncio.to_thread(fn, *args)
        except AuthRetryableError as e:
            raise NetworkError(_error_message(e), status=getattr(e, "status", None)) from e
        except (AuthApiError, AuthInvalidCredentialsError) as e:
            raise AuthError(_error_message(e), revoke=False) from e

    @envelope("sign_in")
    async def sign_in(self, email: str, password: str) -> dict[str, Any]:
        response = await self._auth_call(
            self._client.auth.sign_in_with_password, {"email": email, "password": password}
        )
        user = to_record(getattr(response, "user", None))
        session = getattr(response, "session", None)
        if user is None or session is None:
            raise AuthError("Invalid email or password", revoke=False)
        self._start_session(session.access_token, user)
        return user

    @envelope("sign_up")
    async def sign_up(self, email: str, password: str) -> dict[str, Any] | None:
        credentials: dict[str, Any] = {"email": email, "password": password}
        if self._email_redirect_to:
            credentials["options"] = {"email_redirect_to": self._email_redirect_to}
        response = await self._auth_call(self._client.auth.sign_up, credentials)
        user = to_record(getattr(response, "user", None))
        session = getattr(response, "session", None)
        # No session until the email is confirmed when confirmation is enabled
        if user is not None and session is not None:
            self._start_session(session.access_token, user)
        return user

    @envelope("sign_out")
    async def sign_out(self) -> None:
        try:
            await asyncio.to_thread(self._client.auth.sign_out)
        finally:
            self._end_session()
        return None

    @envelope("get_current_user")
    async def get_current_user(self) -> dict[str, Any]:
        session = self._require_session()
        response = await asyncio.to_thread(self._client.auth.get_user)
        user = to_record(getattr(response, "user", None))
        if user is None:
            raise AuthError("Session is no longer valid")
        session.principal = user
        return user

    @envelope("is_authenticated")
    async def is_authenticated(self) -> bool:
        return self._session is not None
