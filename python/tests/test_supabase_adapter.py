"""Tests for SupabaseAdapter against a fake supabase-py client."""

import pytest
from supabase import AuthRetryableError

from daal.db.protocol import APIResponse, BackendAdapter, EmbeddedClient, OrderBy, QueryOptions
from daal.db.supabase_adapter import SupabaseAdapter

from conftest import APIError, FakeSupabaseClient


@pytest.fixture
def client():
    return FakeSupabaseClient(
        {
            "users": [
                {"id": 1, "name": "Ann", "age": 30, "team": "a"},
                {"id": 2, "name": "Bob", "age": 17, "team": "b"},
                {"id": 3, "name": "Cy_", "age": 45, "team": "a"},
            ]
        }
    )


@pytest.fixture
def adapter(client):
    return SupabaseAdapter(client)


def test_fake_client_satisfies_embedded_protocol(client):
    assert isinstance(client, EmbeddedClient)


def test_satisfies_protocol(adapter):
    assert isinstance(adapter, BackendAdapter)


def _calls(client, table="users"):
    return [(name, args) for t, name, args, _ in client.calls if t == table]


class TestQueries:
    async def test_select_translates_each_condition(self, adapter, client):
        result = await adapter.select(
            "users",
            "id, name",
            {"age": {"gte": 18}, "name": {"like": "_"}, "team": ["a"], "deleted_at": None},
        )

        assert result.data == [{"id": 3, "name": "Cy_"}]
        assert _calls(client) == [
            ("select", ("id, name",)),
            ("gte", ("age", 18)),
            ("like", ("name", "%\\_%")),
            ("in", ("team", ["a"])),
            ("is", ("deleted_at", "null")),
        ]

    async def test_select_all(self, adapter):
        result = await adapter.select("users")
        assert [r["id"] for r in result.data] == [1, 2, 3]

    async def test_select_one(self, adapter, client):
        found = await adapter.select_one("users", "*", {"id": 2})
        missing = await adapter.select_one("users", "*", {"id": 99})

        assert found.data["name"] == "Bob"
        assert missing == APIResponse(success=True, data=None)
        assert ("maybe_single", ()) in _calls(client)

    async def test_query(self, adapter, client):
        options = QueryOptions(filters={"team": "a"}, order_by=OrderBy("age", ascending=False), limit=1, offset=1)

        result = await adapter.query("users", options)

        assert [r["id"] for r in result.data] == [1]
        calls = _calls(client)
        assert ("order", ("age",)) in calls
        assert ("range", (1, 1)) in calls

    async def test_select_one_with_several_matches_takes_first(self, adapter, client):
        result = await adapter.select_one("users", "*", {"team": "a"})

        assert result.success
        assert result.data["id"] == 1
        calls = _calls(client)
        assert calls[-2:] == [("limit", (1,)), ("maybe_single", ())]

    async def test_query_single_limits_to_one_row(self, adapter, client):
        result = await adapter.query("users", QueryOptions(filters={"team": "a"}, single=True))

        assert result.data["id"] == 1
        assert ("limit", (1,)) in _calls(client)

    async def test_query_offset_without_limit_uses_range_only(self, adapter, client):
        result = await adapter.query("users", QueryOptions(offset=1))

        assert [r["id"] for r in result.data] == [2, 3]
        calls = _calls(client)
        assert ("range", (1, 1000)) in calls
        assert not any(name == "limit" for name, _ in calls)

    async def test_count_uses_head_request(self, adapter, client):
        result = await adapter.count("users", {"team": "a"})

        assert result == APIResponse(success=True, data=2)
        _, name, _, kwargs = client.calls[0]
        assert name == "select"
        assert kwargs == {"count": "exact", "head": True}


class TestMutations:
    async def test_insert_single_returns_record(self, adapter, client):
        result = await adapter.insert("users", {"name": "Dee"})

        assert result.data["name"] == "Dee"
        assert _calls(client)[0] == ("insert", ([{"name": "Dee"}],))

    async def test_insert_many(self, adapter):
        result = await adapter.insert_many("users", [{"name": "E"}, {"name": "F"}])
        assert [r["name"] for r in result.data] == ["E", "F"]

    async def test_update_chains_filters_after_patch(self, adapter, client):
        result = await adapter.update("users", {"team": "a"}, {"team": "c"})

        assert sorted(r["id"] for r in result.data) == [1, 3]
        assert _calls(client) == [("update", ({"team": "c"},)), ("eq", ("team", "a"))]

    async def test_delete(self, adapter, client):
        result = await adapter.delete("users", {"age": {"lt": 18}})

        assert [r["id"] for r in result.data] == [2]
        assert [r["id"] for r in client.tables["users"]] == [1, 3]

    async def test_upsert(self, adapter, client):
        result = await adapter.upsert("users", {"id": 1, "name": "Annie"})

        assert result.data["name"] == "Annie"
        assert result.data["age"] == 30

    async def test_rpc(self, adapter, client):
        client.rpc_handlers["add"] = lambda a, b: a + b
        result = await adapter.rpc("add", {"a": 2, "b": 3})
        assert result == APIResponse(success=True, data=5)

    async def test_rpc_unknown_function(self, adapter):
        result = await adapter.rpc("missing")
        assert result == APIResponse(success=False, error="Could not find the function public.missing")


class TestErrors:
    async def test_backend_error_message(self, adapter, client):
        client.fail_with = APIError('relation "public.ghosts" does not exist', code="42P01")
        result = await adapter.select("ghosts")
        assert result == APIResponse(success=False, error='relation "public.ghosts" does not exist')

    async def test_expired_jwt_ends_session(self, adapter, client):
        await adapter.sign_in("ada@example.com", "secret")
        client.fail_with = APIError("JWT expired", code="PGRST301")

        result = await adapter.select("users")

        assert result.error == "JWT expired"
        assert (await adapter.is_authenticated()).data is False


class TestAuth:
    async def test_sign_in(self, adapter):
        result = await adapter.sign_in("ada@example.com", "secret")

        assert result.data == {"id": "uid-ada@example.com", "email": "ada@example.com"}
        assert adapter.session.token == "jwt-ada@example.com"
        assert (await adapter.is_authenticated()).data is True

    async def test_sign_in_rejected_keeps_session(self, adapter):
        await adapter.sign_in("ada@example.com", "secret")

        result = await adapter.sign_in("ada@example.com", "wrong")

        assert result == APIResponse(success=False, error="Invalid login credentials")
        assert (await adapter.is_authenticated()).data is True

    async def test_auth_outage_is_network_error_and_keeps_session(self, adapter, client, monkeypatch):
        await adapter.sign_in("ada@example.com", "secret")

        def unavailable(credentials):
            raise AuthRetryableError("Service unavailable", 503)

        monkeypatch.setattr(client.auth, "sign_in_with_password", unavailable)

        result = await adapter.sign_in("ada@example.com", "secret")

        assert result == APIResponse(success=False, error="Service unavailable")
        assert (await adapter.is_authenticated()).data is True

    async def test_sign_up_with_confirmation_pending(self, client):
        client.auth.auto_confirm = False
        adapter = SupabaseAdapter(client, email_redirect_to="https://app.example.test")

        result = await adapter.sign_up("new@example.com", "pw")

        assert result.data["email"] == "new@example.com"
        assert (await adapter.is_authenticated()).data is False

    async def test_sign_up_starts_session(self, adapter):
        await adapter.sign_up("new@example.com", "pw")
        assert (await adapter.is_authenticated()).data is True

    async def test_sign_up_duplicate(self, adapter):
        result = await adapter.sign_up("ada@example.com", "pw")
        assert result.error == "User already registered"

    async def test_get_current_user(self, adapter):
        await adapter.sign_in("ada@example.com", "secret")
        result = await adapter.get_current_user()
        assert result.data["email"] == "ada@example.com"

    async def test_get_current_user_requires_session(self, adapter):
        assert await adapter.get_current_user() == APIResponse(success=False, error="Not authenticated")

    async def test_rejected_token_ends_session(self, adapter, client):
        await adapter.sign_in("ada@example.com", "secret")
        client.auth.current = None

        result = await adapter.get_current_user()

        assert result.error == "invalid JWT"
        assert (await adapter.is_authenticated()).data is False

    async def test_sign_out(self, adapter, client):
        await adapter.sign_in("ada@example.com", "secret")

        result = await adapter.sign_out()

        assert result.success
        assert client.auth.current is None
        assert (await adapter.is_authenticated()).data is False
