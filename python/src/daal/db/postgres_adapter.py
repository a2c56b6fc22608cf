"""
PostgreSQL Database Adapter

Builds one parameterized SQL statement per call (`$1, $2, …` placeholders
plus a parallel argument list) and hands it to a QueryExecutor.
PsycopgExecutor is the runtime executor (psycopg2 connection pool); tests
substitute a recording executor.

Active when DB_PROVIDER=postgres + POSTGRES_DSN is set.
"""

from __future__ import annotations

import asyncio
import re
import secrets
from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

import psycopg2
import psycopg2.errors
import psycopg2.extras
import psycopg2.pool

from ..config.logfire_config import get_logger
from .base import BaseAdapter, as_rows, column_names, envelope
from .errors import AuthError, NetworkError, ValidationError
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
from .protocol import QueryOptions

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
_PLACEHOLDER = re.compile(r"\$(\d+)")

_COMPARISONS: dict[type, str] = {Eq: "=", Neq: "!=", Gt: ">", Gte: ">=", Lt: "<", Lte: "<="}


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _ident(name: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise ValidationError(f"Invalid SQL identifier: {name!r}")
    return name


def _adapt_value(v: Any) -> Any:
    """Convert Python objects to psycopg2-compatible types."""
    if isinstance(v, (dict, list)):
        return psycopg2.extras.Json(v)
    return v


def _columns_sql(columns: str | Sequence[str] | None) -> str:
    names = column_names(columns)
    if names is None:
        return "*"
    return ", ".join(_ident(c) for c in names)


def _build_where(spec: FilterSpec, start: int = 1) -> tuple[str, list[Any]]:
    """Build a WHERE clause whose placeholders are numbered from `start`."""
    if not spec:
        return "", []
    clauses: list[str] = []
    params: list[Any] = []
    n = start
    for column, condition in spec.items():
        col = _ident(column)
        if isinstance(condition, IsNull):
            clauses.append(f"{col} IS NULL")
        elif isinstance(condition, In):
            clauses.append(f"{col} = ANY(${n})")
            params.append(list(condition.values))
            n += 1
        elif isinstance(condition, Like):
            clauses.append(f"{col} LIKE ${n}")
            params.append(substring_pattern(condition.pattern))
            n += 1
        elif isinstance(condition, Ilike):
            clauses.append(f"{col} ILIKE ${n}")
            params.append(substring_pattern(condition.pattern))
            n += 1
        else:
            clauses.append(f"{col} {_COMPARISONS[type(condition)]} ${n}")
            params.append(_adapt_value(condition.value))
            n += 1
    return "WHERE " + " AND ".join(clauses), params


def _join(*parts: str) -> str:
    return " ".join(p for p in parts if p)


class SqlStatementBuilder:
    """Pure SQL text + argument builder. One statement per call."""

    def __init__(self, conflict_column: str = "id") -> None:
        self.conflict_column = _ident(conflict_column)

    def select(
        self,
        table: str,
        columns: str | Sequence[str] | None,
        spec: FilterSpec,
        order_by: tuple[str, bool] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> tuple[str, list[Any]]:
        where, params = _build_where(spec)
        sql = _join(f"SELECT {_columns_sql(columns)} FROM {_ident(table)}", where)
        if order_by is not None:
            column, ascending = order_by
            sql += f" ORDER BY {_ident(column)} {'ASC' if ascending else 'DESC'}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        if offset:
            sql += f" OFFSET {int(offset)}"
        return sql, params

    def insert(self, table: str, rows: list[dict[str, Any]]) -> tuple[str, list[Any]]:
        cols = self._row_columns(rows)
        values_sql, params = self._values(rows, cols)
        col_sql = ", ".join(cols)
        return f"INSERT INTO {_ident(table)} ({col_sql}) VALUES {values_sql} RETURNING *", params

    def upsert(self, table: str, rows: list[dict[str, Any]]) -> tuple[str, list[Any]]:
        cols = self._row_columns(rows)
        values_sql, params = self._values(rows, cols)
        col_sql = ", ".join(cols)
        # Build SET clause (exclude conflict column and created_at)
        exclude_cols = {self.conflict_column, "created_at"}
        update_parts = [f"{c} = EXCLUDED.{c}" for c in cols if c not in exclude_cols]
        if update_parts:
            conflict_sql = f"ON CONFLICT ({self.conflict_column}) DO UPDATE SET {', '.join(update_parts)}"
        else:
            conflict_sql = "ON CONFLICT DO NOTHING"
        sql = f"INSERT INTO {_ident(table)} ({col_sql}) VALUES {values_sql} {conflict_sql} RETURNING *"
        return sql, params

    def update(self, table: str, spec: FilterSpec, patch: Mapping[str, Any]) -> tuple[str, list[Any]]:
        if not spec:
            raise ValidationError("Update requires WHERE conditions")
        if not patch:
            raise ValidationError("Update requires at least one column to set")
        set_parts = [f"{_ident(k)} = ${i}" for i, k in enumerate(patch, start=1)]
        set_params = [_adapt_value(v) for v in patch.values()]
        # WHERE placeholders continue after the SET clause's
        where, where_params = _build_where(spec, start=len(set_params) + 1)
        sql = f"UPDATE {_ident(table)} SET {', '.join(set_parts)} {where} RETURNING *"
        return sql, set_params + where_params

    def delete(self, table: str, spec: FilterSpec) -> tuple[str, list[Any]]:
        if not spec:
            raise ValidationError("Delete requires WHERE conditions")
        where, params = _build_where(spec)
        return f"DELETE FROM {_ident(table)} {where} RETURNING *", params

    def count(self, table: str, spec: FilterSpec) -> tuple[str, list[Any]]:
        where, params = _build_where(spec)
        return _join(f"SELECT COUNT(*) FROM {_ident(table)}", where), params

    def rpc(self, name: str, params: Mapping[str, Any]) -> tuple[str, list[Any]]:
        named = ", ".join(f"{_ident(k)} => ${i}" for i, k in enumerate(params, start=1))
        return f"SELECT {_ident(name)}({named}) AS result", [_adapt_value(v) for v in params.values()]

    # --- internals ---

    @staticmethod
    def _row_columns(rows: list[dict[str, Any]]) -> list[str]:
        if not rows or not rows[0]:
            raise ValidationError("No data provided for insert")
        cols = list(rows[0].keys())
        for row in rows[1:]:
            if set(row) != set(cols):
                raise ValidationError("All inserted records must have the same columns")
        return [_ident(c) for c in cols]

    @staticmethod
    def _values(rows: list[dict[str, Any]], cols: list[str]) -> tuple[str, list[Any]]:
        groups: list[str] = []
        params: list[Any] = []
        n = 1
        for row in rows:
            placeholders = []
            for col in cols:
                placeholders.append(f"${n}")
                params.append(_adapt_value(row[col]))
                n += 1
            groups.append("(" + ", ".join(placeholders) + ")")
        return ", ".join(groups), params


# ---------------------------------------------------------------------------
# Query execution
# ---------------------------------------------------------------------------


@runtime_checkable
class QueryExecutor(Protocol):
    """Runs one SQL statement with positional `$n` arguments and returns rows."""

    async def execute(self, sql: str, args: list[Any]) -> list[dict[str, Any]]: ...


def to_pyformat(sql: str, args: list[Any]) -> tuple[str, list[Any]]:
    """Rewrite `$n` placeholders to psycopg2's `%s`, reordering args to match."""
    order = [int(m) for m in _PLACEHOLDER.findall(sql)]
    if any(i < 1 or i > len(args) for i in order):
        raise ValidationError(f"Placeholder out of range for {len(args)} argument(s)")
    text = _PLACEHOLDER.sub("%s", sql.replace("%", "%%"))
    return text, [args[i - 1] for i in order]


class PsycopgExecutor:
    """
    psycopg2-backed QueryExecutor with a threaded connection pool.
    Each statement runs in its own transaction on a worker thread.
    """

    def __init__(self, dsn: str, min_conn: int = 1, max_conn: int = 10) -> None:
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(min_conn, max_conn, dsn=dsn)
            logger.info("PsycopgExecutor initialized (pool min=%d max=%d)", min_conn, max_conn)
        except Exception as e:
            raise RuntimeError(f"Failed to connect to PostgreSQL: {e}") from e

    async def execute(self, sql: str, args: list[Any]) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._execute_sync, sql, args)

    def _execute_sync(self, sql: str, args: list[Any]) -> list[dict[str, Any]]:
        text, params = to_pyformat(sql, args)
        try:
            conn = self._pool.getconn()
        except psycopg2.OperationalError as e:
            raise NetworkError(f"PostgreSQL connection failed: {e}") from e
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                logger.debug("PostgreSQL execute: %s | params=%s", text, params)
                cur.execute(text, params)
                conn.commit()
                rows = cur.fetchall() if cur.description else []
                return [dict(r) for r in rows]
        except (psycopg2.errors.InsufficientPrivilege, psycopg2.errors.InvalidAuthorizationSpecification) as e:
            conn.rollback()
            raise AuthError(str(e).strip()) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def close(self) -> None:
        """Close all connections in the pool."""
        self._pool.closeall()
        logger.info("PsycopgExecutor pool closed")


# ---------------------------------------------------------------------------
# Main adapter class
# ---------------------------------------------------------------------------


class PostgresAdapter(BaseAdapter):
    """
    SQL implementation of BackendAdapter.

    update() and delete() refuse to run without filter conditions so a
    missing filter can never touch the whole table.
    """

    name = "postgres"

    def __init__(
        self,
        executor: QueryExecutor,
        auth_table: str = "users",
        conflict_column: str = "id",
    ) -> None:
        super().__init__()
        self._executor = executor
        self._auth_table = _ident(auth_table)
        self._builder = SqlStatementBuilder(conflict_column=conflict_column)

    async def _run(self, sql: str, args: list[Any]) -> list[dict[str, Any]]:
        logger.debug("SQL: %s | args=%s", sql, args)
        return await self._executor.execute(sql, args)

    @envelope("select")
    async def select(
        self, table: str, columns: str | Sequence[str] = "*", filters: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        sql, args = self._builder.select(table, columns, parse_filters(filters))
        return await self._run(sql, args) or []

    @envelope("select_one")
    async def select_one(
        self, table: str, columns: str | Sequence[str] = "*", filters: Mapping[str, Any] | None = None
    ) -> dict[str, Any] | None:
        sql, args = self._builder.select(table, columns, parse_filters(filters), limit=1)
        rows = await self._run(sql, args)
        return rows[0] if rows else None

    @envelope("query")
    async def query(self, table: str, options: QueryOptions) -> Any:
        spec = options.validate()
        order = (options.order_by.column, options.order_by.ascending) if options.order_by else None
        limit = 1 if options.single and options.limit is None else options.limit
        sql, args = self._builder.select(
            table, options.select, spec, order_by=order, limit=limit, offset=options.offset
        )
        rows = await self._run(sql, args) or []
        if options.single:
            return rows[0] if rows else None
        return rows

    @envelope("insert")
    async def insert(self, table: str, data: dict[str, Any] | list[dict[str, Any]]) -> Any:
        sql, args = self._builder.insert(table, as_rows(data))
        rows = await self._run(sql, args) or []
        if isinstance(data, Mapping):
            return rows[0] if rows else None
        return rows

    @envelope("insert_many")
    async def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if isinstance(rows, Mapping):
            raise ValidationError("insert_many expects a list of records")
        sql, args = self._builder.insert(table, as_rows(rows))
        return await self._run(sql, args) or []

    @envelope("update")
    async def update(
        self, table: str, filters: Mapping[str, Any], patch: dict[str, Any]
    ) -> list[dict[str, Any]]:
        sql, args = self._builder.update(table, parse_filters(filters), patch)
        return await self._run(sql, args) or []

    @envelope("delete")
    async def delete(self, table: str, filters: Mapping[str, Any]) -> list[dict[str, Any]]:
        sql, args = self._builder.delete(table, parse_filters(filters))
        return await self._run(sql, args) or []

    @envelope("upsert")
    async def upsert(self, table: str, data: dict[str, Any] | list[dict[str, Any]]) -> Any:
        sql, args = self._builder.upsert(table, as_rows(data))
        rows = await self._run(sql, args) or []
        if isinstance(data, Mapping):
            return rows[0] if rows else None
        return rows

    @envelope("count")
    async def count(self, table: str, filters: Mapping[str, Any] | None = None) -> int:
        sql, args = self._builder.count(table, parse_filters(filters))
        rows = await self._run(sql, args)
        if not rows:
            return 0
        return int(next(iter(rows[0].values())))

    @envelope("rpc")
    async def rpc(self, name: str, params: dict[str, Any] | None = None) -> Any:
        sql, args = self._builder.rpc(name, params or {})
        rows = await self._run(sql, args)
        return rows[0].get("result") if rows else None

    # --- Authentication (pgcrypto) ---

    @staticmethod
    def _principal(row: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in row.items() if k != "password"}

    @envelope("sign_in")
    async def sign_in(self, email: str, password: str) -> dict[str, Any]:
        sql = f"SELECT * FROM {self._auth_table} WHERE email = $1 AND password = crypt($2, password)"
        rows = await self._run(sql, [email, password])
        if not rows:
            raise AuthError("Invalid credentials", revoke=False)
        principal = self._principal(rows[0])
        self._start_session(secrets.token_urlsafe(32), principal)
        return principal

    @envelope("sign_up")
    async def sign_up(self, email: str, password: str) -> dict[str, Any]:
        if not email or not password:
            raise ValidationError("Email and password are required")
        sql = (
            f"INSERT INTO {self._auth_table} (email, password) "
            "VALUES ($1, crypt($2, gen_salt('bf'))) RETURNING *"
        )
        rows = await self._run(sql, [email, password])
        if not rows:
            raise AuthError("Sign up did not return a user", revoke=False)
        principal = self._principal(rows[0])
        self._start_session(secrets.token_urlsafe(32), principal)
        return principal

    @envelope("sign_out")
    async def sign_out(self) -> None:
        self._end_session()
        return None

    @envelope("get_current_user")
    async def get_current_user(self) -> dict[str, Any]:
        return dict(self._require_session().principal)

    @envelope("is_authenticated")
    async def is_authenticated(self) -> bool:
        return self._session is not None
