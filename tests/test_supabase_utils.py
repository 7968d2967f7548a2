from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

import config
import supabase_utils
from supabase_utils import SupabaseTokenStore
from token_tracker import AlreadyTrackedError, DependencyError


class _FakeQuery:
    """Records the PostgREST builder chain and returns canned rows on execute()."""

    def __init__(self, client):
        self.client = client
        self.calls = []

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return method

    def execute(self):
        if self.client.error is not None:
            raise self.client.error
        return SimpleNamespace(data=self.client.data)


class _FakeClient:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error
        self.queries = []

    def table(self, name):
        query = _FakeQuery(self)
        self.queries.append((name, query))
        return query


class _UniqueViolation(Exception):
    code = "23505"


def test_select_due_filters_on_all_three_columns():
    client = _FakeClient(data=[{"address": "a"}])
    store = SupabaseTokenStore(client, table="tokens")
    now = datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))

    assert store.select_due(now) == [{"address": "a"}]

    name, query = client.queries[0]
    assert name == "tokens"
    or_call = [c for c in query.calls if c[0] == "or_"][0]
    assert or_call[1][0] == (
        "next_15m.lte.2024-05-01T12:00:00.000000Z,"
        "next_30m.lte.2024-05-01T12:00:00.000000Z,"
        "next_1h.lte.2024-05-01T12:00:00.000000Z"
    )


def test_select_all_orders_newest_first():
    client = _FakeClient(data=None)
    store = SupabaseTokenStore(client)
    assert store.select_all() == []
    query = client.queries[0][1]
    assert ("order", ("created_at",), {"desc": True}) in query.calls


def test_select_by_address_returns_first_row_or_none():
    store = SupabaseTokenStore(_FakeClient(data=[{"address": "x"}]))
    assert store.select_by_address("x") == {"address": "x"}
    assert SupabaseTokenStore(_FakeClient(data=[])).select_by_address("x") is None


def test_update_targets_address():
    client = _FakeClient(data=[{"address": "x"}])
    SupabaseTokenStore(client).update("x", {"next_15m": None})
    query = client.queries[0][1]
    assert ("update", ({"next_15m": None},), {}) in query.calls
    assert ("eq", ("address", "x"), {}) in query.calls


def test_insert_unique_violation_is_already_tracked():
    store = SupabaseTokenStore(_FakeClient(error=_UniqueViolation("duplicate key")))
    with pytest.raises(AlreadyTrackedError):
        store.insert({"address": "x"})


def test_insert_other_errors_propagate():
    store = SupabaseTokenStore(_FakeClient(error=ConnectionError("down")))
    with pytest.raises(ConnectionError):
        store.insert({"address": "x"})


def test_client_requires_credentials(monkeypatch):
    monkeypatch.setattr(config, "SUPABASE_URL", None)
    monkeypatch.setattr(config, "SUPABASE_KEY", None)
    with pytest.raises(RuntimeError):
        supabase_utils.get_supabase_client()


def test_update_matching_no_rows_raises():
    # PostgREST returns an empty list when RLS hides the row or it was deleted
    store = SupabaseTokenStore(_FakeClient(data=[]))
    with pytest.raises(DependencyError):
        store.update("x", {"next_15m": None})
