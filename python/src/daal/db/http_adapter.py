"""
HTTP Database Adapter

Generic REST implementation of BackendAdapter:

    GET    /{table}?col=value          select / select_one (&limit=1)
    GET    /{table}/count?col=value    count
    POST   /{table}                    insert / insert_many / upsert
    PUT    /{table}?col=value          update
    DELETE /{table}?col=value          delete
    POST   /rpc/{fn}                   rpc
    POST   /auth/login | /auth/register | /auth/logout, GET /auth/me

Filters travel as a flat query string, which can only express equality.
Operator conditions (gte, like, in, null checks, …) are rejected instead of
being sent without their operator; the server-side convention for them has
not been agreed.

The bearer token is kept in a StoragePort under `auth_token` and is evicted
whenever the server answers 401.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from http import HTTPStatus
from typing import Any
from urllib.parse import quote, urlencode

import requests

from ..config.logfire_config import get_logger
from .base import BaseAdapter, column_names, envelope, to_record
from .errors import AuthError, BackendError, NetworkError, ValidationError
from .filters import Eq, FilterSpec, parse_filters
from .protocol import QueryOptions
from .storage import InMemoryStorage, StoragePort

logger = get_logger(__name__)

TOKEN_KEY = "auth_token"


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_query_params(spec: FilterSpec) -> list[tuple[str, str]]:
    """Flatten a FilterSpec into `key=value` pairs. Only equality survives."""
    params: list[tuple[str, str]] = []
    for column, condition in spec.items():
        if not isinstance(condition, Eq):
            raise ValidationError(
                f"Filter operator '{condition.op}' on column '{column}' cannot be expressed "
                "as an HTTP query parameter"
            )
        params.append((column, _encode_value(condition.value)))
    return params


class HttpAdapter(BaseAdapter):
    """REST-over-HTTP implementation of BackendAdapter using requests."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        storage: StoragePort | None = None,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__()
        if not base_url:
            raise ValueError("HttpAdapter requires a base URL")
        self._base_url = base_url.rstrip("/")
        self._storage = storage if storage is not None else InMemoryStorage()
        self._http = session if session is not None else requests.Session()
        self._timeout = timeout

    # --- Token handling ---

    def _restore_session(self) -> None:
        if self._session is not None:
            return
        token = self._storage.get(TOKEN_KEY)
        if isinstance(token, str) and token:
            self._start_session(token, {})

    def _end_session(self) -> None:
        super()._end_session()
        self._storage.delete(TOKEN_KEY)

    def _store_token(self, token: str, user: dict[str, Any]) -> None:
        self._storage.set(TOKEN_KEY, token)
        self._start_session(token, user or {})

    # --- Transport ---

    def _url(self, path: str, params: Sequence[tuple[str, str]] | None = None) -> str:
        url = f"{self._base_url}{path}"
        if params:
            url += "?" + urlencode(list(params), safe=",")
        return url

    def _send(self, method: str, url: str, body: Any = None, headers: dict[str, str] | None = None):
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        if self._session is not None and self._session.token:
            request_headers["Authorization"] = f"Bearer {self._session.token}"
        return self._http.request(
            method,
            url,
            json=body,
            headers=request_headers,
            timeout=self._timeout,
        )

    async def _call(
        self,
        method: str,
        path: str,
        params: Sequence[tuple[str, str]] | None = None,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        self._restore_session()
        url = self._url(path, params)
        logger.debug(f"HTTP {method} {url}")
        try:
            response = await asyncio.to_thread(self._send, method, url, body, headers)
        except requests.RequestException as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e

        status = response.status_code
        reason = response.reason or self._reason(status)
        if status == 401:
            raise AuthError(f"HTTP 401: {reason}")
        if not 200 <= status < 300:
            raise NetworkError(f"HTTP {status}: {reason}", status=status)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"Invalid JSON in response from {url}") from e

    @staticmethod
    def _reason(status: int) -> str:
        try:
            return HTTPStatus(status).phrase
        except ValueError:
            return "Unknown Status"

    @staticmethod
    def _table_path(table: str) -> str:
        if not table:
            raise ValidationError("Table name is required")
        return "/" + quote(table, safe="")

    @staticmethod
    def _select_params(columns: str | Sequence[str] | None) -> list[tuple[str, str]]:
        names = column_names(columns)
        return [] if names is None else [("select", ",".join(names))]

    # --- Queries ---

    @envelope("select")
    async def select(
        self, table: str, columns: str | Sequence[str] = "*", filters: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        params = build_query_params(parse_filters(filters)) + self._select_params(columns)
        data = await self._call("GET", self._table_path(table), params)
        return data or []

    @envelope("select_one")
    async def select_one(
        self, table: str, columns: str | Sequence[str] = "*", filters: Mapping[str, Any] | None = None
    ) -> dict[str, Any] | None:
        params = build_query_params(parse_filters(filters)) + [("limit", "1")] + self._select_params(columns)
        data = await self._call("GET", self._table_path(table), params)
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    @envelope("query")
    async def query(self, table: str, options: QueryOptions) -> Any:
        params = build_query_params(options.validate()) + self._select_params(options.select)
        if options.order_by is not None:
            direction = "asc" if options.order_by.ascending else "desc"
            params.append(("order", f"{options.order_by.column}.{direction}"))
        limit = 1 if options.single and options.limit is None else options.limit
        if limit is not None:
            params.append(("limit", str(limit)))
        if options.offset:
            params.append(("offset", str(options.offset)))
        data = await self._call("GET", self._table_path(table), params) or []
        if options.single:
            return data[0] if data else None
        return data

    @envelope("count")
    async def count(self, table: str, filters: Mapping[str, Any] | None = None) -> int:
        params = build_query_params(parse_filters(filters))
        data = await self._call("GET", f"{self._table_path(table)}/count", params)
        if isinstance(data, Mapping):
            return int(data.get("count") or 0)
        return int(data or 0)

    # --- Mutations ---

    @envelope("insert")
    async def insert(self, table: str, data: dict[str, Any] | list[dict[str, Any]]) -> Any:
        return await self._call("POST", self._table_path(table), body=data)

    @envelope("insert_many")
    async def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if isinstance(rows, Mapping):
            raise ValidationError("insert_many expects a list of records")
        return await self._call("POST", self._table_path(table), body=list(rows)) or []

    @envelope("update")
    async def update(
        self, table: str, filters: Mapping[str, Any], patch: dict[str, Any]
    ) -> list[dict[str, Any]]:
        params = build_query_params(parse_filters(filters))
        return await self._call("PUT", self._table_path(table), params, body=patch) or []

    @envelope("delete")
    async def delete(self, table: str, filters: Mapping[str, Any]) -> list[dict[str, Any]]:
        params = build_query_params(parse_filters(filters))
        return await self._call("DELETE", self._table_path(table), params) or []

    @envelope("upsert")
    async def upsert(self, table: str, data: dict[str, Any] | list[dict[str, Any]]) -> Any:
        return await self._call(
            "POST",
            self._table_path(table),
            body=data,
            headers={"Prefer": "resolution=merge-duplicates"},
        )

    # --- RPC ---

    @envelope("rpc")
    async def rpc(self, name: str, params: dict[str, Any] | None = None) -> Any:
        if not name:
            raise ValidationError("RPC function name is required")
        return await self._call("POST", f"/rpc/{quote(name, safe='')}", body=params or {})

    # --- Authentication ---

    @envelope("sign_in")
    async def sign_in(self, email: str, password: str) -> dict[str, Any]:
        result = await self._call("POST", "/auth/login", body={"email": email, "password": password})
        if not isinstance(result, Mapping) or not result.get("token"):
            raise AuthError("Login response did not include a token", revoke=False)
        user = to_record(result.get("user")) or {}
        self._store_token(result["token"], user)
        return user

    @envelope("sign_up")
    async def sign_up(self, email: str, password: str) -> Any:
        result = await self._call("POST", "/auth/register", body={"email": email, "password": password})
        if isinstance(result, Mapping) and result.get("token"):
            user = to_record(result.get("user")) or {}
            self._store_token(result["token"], user)
            return user
        return result

    @envelope("sign_out")
    async def sign_out(self) -> None:
        try:
            await self._call("POST", "/auth/logout")
        finally:
            self._end_session()
        return None

    @envelope("get_current_user")
    async def get_current_user(self) -> Any:
        self._restore_session()
        session = self._require_session()
        user = await self._call("GET", "/auth/me")
        session.principal = user or {}
        return user

    @envelope("is_authenticated")
    async def is_authenticated(self) -> bool:
        self._restore_session()
        return self._session is not None
