"""Pytest configuration and fixtures."""

import json
import re
from http import HTTPStatus
from types import SimpleNamespace
from urllib.parse import parse_qsl, urlsplit

import pytest
import requests
from supabase import AuthApiError

from daal.db.http_adapter import HttpAdapter
from daal.db.mock_adapter import MockAdapter
from daal.db.postgres_adapter import PostgresAdapter
from daal.db.storage import InMemoryStorage
from daal.db.supabase_adapter import SupabaseAdapter


# ---------------------------------------------------------------------------
# Fake supabase-py client
# ---------------------------------------------------------------------------


def like_to_regex(pattern, flags=0):
    """Translate a SQL LIKE pattern (backslash escapes) into a compiled regex."""
    out = []
    chars = iter(pattern)
    for ch in chars:
        if ch == "\\":
            out.append(re.escape(next(chars, "\\")))
        elif ch == "%":
            out.append(".*")
        elif ch == "_":
            out.append(".")
        else:
            out.append(re.escape(ch))
    return re.compile("^" + "".join(out) + "$", flags | re.DOTALL)


def _sql_compare(op, value, operand):
    if value is None or operand is None:
        return False
    try:
        if op == "eq":
            return value == operand
        if op == "neq":
            return value != operand
        if op == "gt":
            return value > operand
        if op == "gte":
            return value >= operand
        if op == "lt":
            return value < operand
        if op == "lte":
            return value <= operand
    except TypeError:
        return False
    raise AssertionError(f"unexpected op {op}")


class APIError(Exception):
    """Mimics postgrest.exceptions.APIError."""

    def __init__(self, message, code=None):
        super().__init__(message)
        self.message = message
        self.code = code


class FakeQuery:
    def __init__(self, client, table):
        self._client = client
        self._table = table
        self._op = "select"
        self._payload = None
        self._filters = []
        self._count = None
        self._head = False
        self._order = None
        self._limit = None
        self._range = None
        self._single = False

    def _record(self, name, *args, **kwargs):
        self._client.calls.append((self._table, name, args, kwargs))
        return self

    def select(self, *columns, count=None, head=None):
        self._columns = ",".join(columns) if columns else "*"
        self._count = count
        self._head = bool(head)
        return self._record("select", *columns, count=count, head=head)

    def insert(self, rows):
        self._op, self._payload = "insert", rows
        return self._record("insert", rows)

    def upsert(self, rows):
        self._op, self._payload = "upsert", rows
        return self._record("upsert", rows)

    def update(self, patch):
        self._op, self._payload = "update", patch
        return self._record("update", patch)

    def delete(self):
        self._op = "delete"
        return self._record("delete")

    def _filter(self, op, column, value):
        self._filters.append((op, column, value))
        return self._record(op, column, value)

    def eq(self, column, value):
        return self._filter("eq", column, value)

    def neq(self, column, value):
        return self._filter("neq", column, value)

    def gt(self, column, value):
        return self._filter("gt", column, value)

    def gte(self, column, value):
        return self._filter("gte", column, value)

    def lt(self, column, value):
        return self._filter("lt", column, value)

    def lte(self, column, value):
        return self._filter("lte", column, value)

    def like(self, column, pattern):
        return self._filter("like", column, pattern)

    def ilike(self, column, pattern):
        return self._filter("ilike", column, pattern)

    def in_(self, column, values):
        return self._filter("in", column, values)

    def is_(self, column, value):
        return self._filter("is", column, value)

    def order(self, column, *, desc=False):
        self._order = (column, desc)
        return self._record("order", column, desc=desc)

    def limit(self, size):
        # postgrest-py range() also sets the limit param; both would send it twice
        assert self._range is None, "limit() after range()"
        self._limit = size
        return self._record("limit", size)

    def range(self, start, end):
        assert self._limit is None, "range() after limit()"
        self._range = (start, end)
        return self._record("range", start, end)

    def maybe_single(self):
        self._single = True
        return self._record("maybe_single")

    def _match(self, row):
        for op, column, value in self._filters:
            current = row.get(column)
            if op == "is":
                ok = current is None
            elif op == "in":
                ok = current is not None and current in value
            elif op == "like":
                ok = current is not None and bool(like_to_regex(value).match(str(current)))
            elif op == "ilike":
                ok = current is not None and bool(like_to_regex(value, re.IGNORECASE).match(str(current)))
            else:
                ok = _sql_compare(op, current, value)
            if not ok:
                return False
        return True

    def execute(self):
        if self._client.fail_with is not None:
            raise self._client.fail_with
        rows = self._client.tables.setdefault(self._table, [])
        if self._op == "insert":
            written = [dict(r) for r in self._payload]
            for r in written:
                r.setdefault("id", len(rows) + 1)
            rows.extend(written)
            return SimpleNamespace(data=[dict(r) for r in written], count=None)
        if self._op == "upsert":
            written = []
            for r in self._payload:
                existing = next((x for x in rows if "id" in r and x.get("id") == r["id"]), None)
                if existing is None:
                    existing = dict(r)
                    rows.append(existing)
                else:
                    existing.update(r)
                written.append(dict(existing))
            return SimpleNamespace(data=written, count=None)
        matched = [r for r in rows if self._match(r)]
        if self._op == "update":
            for r in matched:
                r.update(self._payload)
            return SimpleNamespace(data=[dict(r) for r in matched], count=None)
        if self._op == "delete":
            self._client.tables[self._table] = [r for r in rows if not self._match(r)]
            return SimpleNamespace(data=[dict(r) for r in matched], count=None)

        if self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda r: r[column], reverse=desc)
        if self._range:
            matched = matched[self._range[0] : self._range[1] + 1]
        if self._limit is not None:
            matched = matched[: self._limit]
        if self._columns != "*":
            names = [c.strip() for c in self._columns.split(",")]
            matched = [{c: r[c] for c in names if c in r} for r in matched]
        else:
            matched = [dict(r) for r in matched]
        if self._head:
            return SimpleNamespace(data=[], count=len(matched))
        if self._single:
            if not matched:
                return None
            if len(matched) > 1:
                raise APIError("Cannot coerce the result to a single JSON object", code="406")
            return SimpleNamespace(data=matched[0], count=None)
        return SimpleNamespace(data=matched, count=None)


class FakeRpc:
    def __init__(self, client, name, params):
        self._client = client
        self._name = name
        self._params = params

    def execute(self):
        self._client.calls.append(("rpc", self._name, (self._params,), {}))
        handler = self._client.rpc_handlers.get(self._name)
        if handler is None:
            raise APIError(f"Could not find the function public.{self._name}", code="PGRST202")
        return SimpleNamespace(data=handler(**self._params), count=None)


class FakeAuth:
    def __init__(self):
        self.accounts = {"ada@example.com": "secret"}
        self.current = None
        self.auto_confirm = True

    def _user(self, email):
        return {"id": f"uid-{email}", "email": email}

    def sign_in_with_password(self, credentials):
        email, password = credentials["email"], credentials["password"]
        if self.accounts.get(email) != password:
            raise AuthApiError("Invalid login credentials", 400, "invalid_credentials")
        self.current = self._user(email)
        return SimpleNamespace(user=self.current, session=SimpleNamespace(access_token=f"jwt-{email}"))

    def sign_up(self, credentials):
        email = credentials["email"]
        if email in self.accounts:
            raise AuthApiError("User already registered", 422, "user_already_exists")
        self.accounts[email] = credentials["password"]
        user = self._user(email)
        if not self.auto_confirm:
            return SimpleNamespace(user=user, session=None)
        self.current = user
        return SimpleNamespace(user=user, session=SimpleNamespace(access_token=f"jwt-{email}"))

    def sign_out(self):
        self.current = None

    def get_user(self):
        if self.current is None:
            raise AuthApiError("invalid JWT", 401, "bad_jwt")
        return SimpleNamespace(user=self.current)


class FakeSupabaseClient:
    def __init__(self, tables=None):
        self.tables = {name: [dict(r) for r in rows] for name, rows in (tables or {}).items()}
        self.calls = []
        self.fail_with = None
        self.rpc_handlers = {}
        self.auth = FakeAuth()

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return FakeRpc(self, name, params)


# ---------------------------------------------------------------------------
# Fake requests session
# ---------------------------------------------------------------------------


def make_response(status, body=None, reason=None):
    response = requests.Response()
    response.status_code = status
    response.reason = reason if reason is not None else HTTPStatus(status).phrase
    response._content = json.dumps(body).encode("utf-8") if body is not None else b""
    response.headers["Content-Type"] = "application/json"
    response.encoding = "utf-8"
    return response


class FakeHttpSession:
    """Records requests; answers via `handler(method, url, body)` or a queue of responses."""

    def __init__(self, handler=None):
        self.handler = handler
        self.queue = []
        self.requests = []

    def respond(self, status, body=None, reason=None):
        self.queue.append(make_response(status, body, reason))

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append(SimpleNamespace(method=method, url=url, json=json, headers=headers or {}))
        if self.queue:
            return self.queue.pop(0)
        if self.handler is not None:
            return self.handler(method, url, json)
        return make_response(200, [])

    @property
    def last(self):
        return self.requests[-1]


class FakeRestServer:
    """Minimal REST table server for the HTTP adapter: equality filters only."""

    def __init__(self, base_url, tables):
        self.base_url = base_url
        self.tables = {name: [dict(r) for r in rows] for name, rows in tables.items()}

    @staticmethod
    def _encode(value):
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def __call__(self, method, url, body):
        parts = urlsplit(url)
        path = parts.path.strip("/").split("/")
        params = [(k, v) for k, v in parse_qsl(parts.query) if k not in ("limit", "select")]
        limit = dict(parse_qsl(parts.query)).get("limit")
        rows = self.tables.get(path[0], [])
        matched = [r for r in rows if all(self._encode(r.get(k)) == v for k, v in params)]
        if len(path) == 2 and path[1] == "count":
            return make_response(200, {"count": len(matched)})
        if method == "GET":
            if limit is not None:
                matched = matched[: int(limit)]
            return make_response(200, matched)
        return make_response(405)


# ---------------------------------------------------------------------------
# Recording SQL executor
# ---------------------------------------------------------------------------


class RecordingExecutor:
    def __init__(self, rows=None):
        self.calls = []
        self.rows = rows if rows is not None else []
        self.error = None

    async def execute(self, sql, args):
        self.calls.append((sql, list(args)))
        if self.error is not None:
            raise self.error
        if callable(self.rows):
            return self.rows(sql, args)
        return [dict(r) for r in self.rows]

    @property
    def last(self):
        return self.calls[-1]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

BASE_URL = "https://api.example.test"


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def mock_adapter(storage):
    return MockAdapter(storage=storage, latency=0)


@pytest.fixture
def supabase_client():
    return FakeSupabaseClient()


@pytest.fixture
def supabase_adapter(supabase_client):
    return SupabaseAdapter(supabase_client)


@pytest.fixture
def http_session():
    return FakeHttpSession()


@pytest.fixture
def http_adapter(http_session, storage):
    return HttpAdapter(BASE_URL, storage=storage, session=http_session)


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def postgres_adapter(executor):
    return PostgresAdapter(executor)
