"""
Mock Database Adapter

Offline, deterministic backend for tests and demos. Tables live in memory as
lists of records and are persisted as one JSON snapshot through a StoragePort
after every mutation. The current session is mirrored to storage so it
survives a restart.

Every mutation rewrites the whole snapshot. Two adapters (or processes)
sharing one storage backend will overwrite each other's changes; only use a
shared store from a single writer.
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from ..config.logfire_config import get_logger
from .base import BaseAdapter, as_rows, column_names, envelope
from .errors import AuthError, NotFoundError, ValidationError
from .filters import FilterSpec, matches, parse_filters
from .protocol import QueryOptions
from .storage import InMemoryStorage, StoragePort

logger = get_logger(__name__)

DATABASE_KEY = "mock_database"
SESSION_KEY = "mock_current_user"

# Simulated network delay in seconds, per operation kind
DEFAULT_LATENCY = {"read": 0.05, "write": 0.1, "auth": 0.2}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _advance(previous: Any) -> str:
    """Return a timestamp strictly later than `previous`."""
    now = _utcnow()
    if isinstance(previous, str):
        try:
            prev = datetime.fromisoformat(previous)
            if prev.tzinfo is None:
                prev = prev.replace(tzinfo=timezone.utc)
            if now <= prev:
                now = prev + timedelta(microseconds=1)
        except ValueError:
            pass
    return now.isoformat()


def _default_tables() -> dict[str, list[dict[str, Any]]]:
    now = _utcnow().isoformat()
    return {
        "users": [
            {"id": 1, "email": "admin@example.com", "name": "Admin User", "created_at": now, "updated_at": now},
            {"id": 2, "email": "user@example.com", "name": "Regular User", "created_at": now, "updated_at": now},
        ],
        "auth_users": [
            {"id": 1, "email": "admin@example.com", "password": "password123"},
            {"id": 2, "email": "user@example.com", "password": "password123"},
        ],
    }


class MockAdapter(BaseAdapter):
    """In-memory implementation of BackendAdapter backed by a persisted snapshot."""

    name = "mock"

    def __init__(self, storage: StoragePort | None = None, latency: float | None = None) -> None:
        super().__init__()
        self._storage = storage if storage is not None else InMemoryStorage()
        self._latency = latency
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._last_id = 0
        self._load()
        self._seed_defaults()

    # --- Persistence ---

    def _load(self) -> None:
        stored = self._storage.get(DATABASE_KEY)
        if stored is None:
            return
        if not isinstance(stored, dict):
            logger.warning("Failed to load mock database from storage; starting empty")
            return
        self._tables = {name: list(rows) for name, rows in stored.items() if isinstance(rows, list)}
        logger.debug(f"Mock database loaded | tables={sorted(self._tables)}")

    def _seed_defaults(self) -> None:
        defaults = _default_tables()
        changed = False
        for table, rows in defaults.items():
            if table not in self._tables:
                self._tables[table] = rows
                changed = True
        if changed:
            self._save()

    def _save(self) -> None:
        self._storage.set(DATABASE_KEY, self._tables)

    async def _delay(self, kind: str) -> None:
        seconds = self._latency if self._latency is not None else DEFAULT_LATENCY[kind]
        await asyncio.sleep(seconds)

    def _generate_id(self) -> int:
        # Millisecond clock plus random suffix, kept monotonic per instance.
        candidate = int(time.time() * 1000) * 1000 + random.randint(0, 999)
        self._last_id = max(candidate, self._last_id + 1)
        return self._last_id

    def _table(self, table: str) -> list[dict[str, Any]]:
        if table not in self._tables:
            raise NotFoundError(f"Table {table} does not exist")
        return self._tables[table]

    def _filtered(self, table: str, spec: FilterSpec) -> list[dict[str, Any]]:
        return [r for r in self._tables.get(table, []) if matches(r, spec)]

    @staticmethod
    def _project(record: dict[str, Any], columns: str | Sequence[str]) -> dict[str, Any]:
        names = column_names(columns)
        if names is None:
            return dict(record)
        return {c: record[c] for c in names if c in record}

    def _new_record(self, row: dict[str, Any]) -> dict[str, Any]:
        now = _utcnow().isoformat()
        record = dict(row)
        record["id"] = row["id"] if row.get("id") is not None else self._generate_id()
        record["created_at"] = row.get("created_at") or now
        record["updated_at"] = row.get("updated_at") or now
        return record

    # --- Queries ---

    @envelope("select")
    async def select(
        self, table: str, columns: str | Sequence[str] = "*", filters: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        await self._delay("read")
        spec = parse_filters(filters)
        return [self._project(r, columns) for r in self._filtered(table, spec)]

    @envelope("select_one")
    async def select_one(
        self, table: str, columns: str | Sequence[str] = "*", filters: Mapping[str, Any] | None = None
    ) -> dict[str, Any] | None:
        await self._delay("read")
        spec = parse_filters(filters)
        rows = self._filtered(table, spec)
        return self._project(rows[0], columns) if rows else None

    @envelope("query")
    async def query(self, table: str, options: QueryOptions) -> Any:
        await self._delay("read")
        spec = options.validate()
        rows = self._filtered(table, spec)
        if options.order_by is not None:
            col = options.order_by.column
            present = [r for r in rows if r.get(col) is not None]
            missing = [r for r in rows if r.get(col) is None]
            present.sort(key=lambda r: r[col], reverse=not options.order_by.ascending)
            rows = present + missing
        start = options.offset or 0
        end = start + options.limit if options.limit is not None else None
        rows = [self._project(r, options.select) for r in rows[start:end]]
        if options.single:
            return rows[0] if rows else None
        return rows

    @envelope("count")
    async def count(self, table: str, filters: Mapping[str, Any] | None = None) -> int:
        await self._delay("read")
        return len(self._filtered(table, parse_filters(filters)))

    # --- Mutations ---

    def _insert_rows(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        target = self._tables.setdefault(table, [])
        inserted = [self._new_record(row) for row in rows]
        target.extend(inserted)
        self._save()
        return [dict(r) for r in inserted]

    @envelope("insert")
    async def insert(self, table: str, data: dict[str, Any] | list[dict[str, Any]]) -> Any:
        await self._delay("write")
        inserted = self._insert_rows(table, as_rows(data))
        return inserted[0] if isinstance(data, Mapping) else inserted

    @envelope("insert_many")
    async def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        await self._delay("write")
        if isinstance(rows, Mapping):
            raise ValidationError("insert_many expects a list of records")
        return self._insert_rows(table, as_rows(rows))

    @envelope("update")
    async def update(
        self, table: str, filters: Mapping[str, Any], patch: dict[str, Any]
    ) -> list[dict[str, Any]]:
        await self._delay("write")
        spec = parse_filters(filters)
        records = self._table(table)
        updated: list[dict[str, Any]] = []
        for i, record in enumerate(records):
            if matches(record, spec):
                new_record = {**record, **patch, "updated_at": _advance(record.get("updated_at"))}
                records[i] = new_record
                updated.append(dict(new_record))
        self._save()
        return updated

    @envelope("delete")
    async def delete(self, table: str, filters: Mapping[str, Any]) -> list[dict[str, Any]]:
        await self._delay("write")
        spec = parse_filters(filters)
        records = self._table(table)
        kept: list[dict[str, Any]] = []
        removed: list[dict[str, Any]] = []
        for record in records:
            (removed if matches(record, spec) else kept).append(record)
        self._tables[table] = kept
        self._save()
        return removed

    @envelope("upsert")
    async def upsert(self, table: str, data: dict[str, Any] | list[dict[str, Any]]) -> Any:
        await self._delay("write")
        records = self._tables.setdefault(table, [])
        written: list[dict[str, Any]] = []
        for row in as_rows(data):
            index = next(
                (i for i, r in enumerate(records) if "id" in row and r.get("id") == row["id"]),
                None,
            )
            if index is None:
                record = self._new_record(row)
                records.append(record)
            else:
                record = {**records[index], **row, "updated_at": _advance(records[index].get("updated_at"))}
                records[index] = record
            written.append(dict(record))
        self._save()
        return written[0] if isinstance(data, Mapping) else written

    # --- RPC ---

    @envelope("rpc")
    async def rpc(self, name: str, params: dict[str, Any] | None = None) -> Any:
        await self._delay("write")
        self._restore_session()

        if name == "get_user_profile":
            return dict(self._session.principal) if self._session else None

        if name == "update_user_profile":
            session = self._require_session()
            session.principal = {**session.principal, **(params or {})}
            for i, row in enumerate(self._tables.get("users", [])):
                if row.get("id") == session.principal.get("id"):
                    self._tables["users"][i] = {
                        **row,
                        **(params or {}),
                        "updated_at": _advance(row.get("updated_at")),
                    }
            self._save()
            self._mirror_session()
            return dict(session.principal)

        logger.warning(f"Mock RPC function '{name}' not implemented")
        return None

    # --- Authentication ---

    def _mirror_session(self) -> None:
        if self._session is not None:
            self._storage.set(SESSION_KEY, {"token": self._session.token, "user": self._session.principal})

    def _restore_session(self) -> None:
        if self._session is not None:
            return
        stored = self._storage.get(SESSION_KEY)
        if isinstance(stored, dict) and isinstance(stored.get("user"), dict):
            self._start_session(stored.get("token") or "", stored["user"])

    def _end_session(self) -> None:
        super()._end_session()
        self._storage.delete(SESSION_KEY)

    @envelope("sign_in")
    async def sign_in(self, email: str, password: str) -> dict[str, Any]:
        await self._delay("auth")
        auth_user = next(
            (
                u
                for u in self._tables.get("auth_users", [])
                if u.get("email") == email and u.get("password") == password
            ),
            None,
        )
        if auth_user is None:
            raise AuthError("Invalid email or password", revoke=False)

        profile = next((u for u in self._tables.get("users", []) if u.get("email") == email), None)
        principal = dict(profile) if profile else {"id": auth_user["id"], "email": auth_user["email"]}
        self._start_session(f"mock-token-{principal['id']}", principal)
        self._mirror_session()
        return dict(principal)

    @envelope("sign_up")
    async def sign_up(self, email: str, password: str) -> dict[str, Any]:
        await self._delay("auth")
        if not email or not password:
            raise ValidationError("Email and password are required")
        auth_users = self._tables.setdefault("auth_users", [])
        if any(u.get("email") == email for u in auth_users):
            raise ValidationError("User already exists")

        user_id = self._generate_id()
        now = _utcnow().isoformat()
        profile = {
            "id": user_id,
            "email": email,
            "name": email.split("@")[0],
            "created_at": now,
            "updated_at": now,
        }
        auth_users.append({"id": user_id, "email": email, "password": password})
        self._tables.setdefault("users", []).append(profile)
        self._save()

        self._start_session(f"mock-token-{user_id}", dict(profile))
        self._mirror_session()
        return dict(profile)

    @envelope("sign_out")
    async def sign_out(self) -> None:
        await self._delay("auth")
        self._end_session()
        return None

    @envelope("get_current_user")
    async def get_current_user(self) -> dict[str, Any]:
        await self._delay("read")
        self._restore_session()
        return dict(self._require_session().principal)

    @envelope("is_authenticated")
    async def is_authenticated(self) -> bool:
        await self._delay("read")
        self._restore_session()
        return self._session is not None

    # --- Utilities ---

    def clear_database(self) -> None:
        """Drop every table and re-seed the default data."""
        self._tables = {}
        self._storage.delete(DATABASE_KEY)
        self._seed_defaults()

    def export_database(self) -> str:
        return json.dumps(self._tables, indent=2, default=str)

    def import_database(self, data: str) -> None:
        try:
            tables = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Failed to import database: {e}") from e
        if not isinstance(tables, dict) or not all(isinstance(v, list) for v in tables.values()):
            raise ValidationError("Failed to import database: expected an object of table lists")
        self._tables = tables
        self._save()
