"""
Tests for the PostgREST store with requests stubbed at the Session level.
"""

import json
from unittest.mock import MagicMock

import pytest
import requests

from sharecal.errors import NotFound, StoreAuthError, StoreError, StoreUnavailable
from sharecal.event_storage import RECIPIENT
from sharecal.rest_store import PostgrestEventStore


def response(status: int = 200, body=None):
    r = MagicMock()
    r.status_code = status
    r.content = json.dumps(body).encode() if body is not None else b""
    r.text = json.dumps(body) if body is not None else ""
    r.json.return_value = body
    return r


@pytest.fixture
def session():
    s = MagicMock()
    s.headers = {}
    s.request.return_value = response(body=[])
    return s


@pytest.fixture
def rest_store(session):
    store = PostgrestEventStore("https://demo.supabase.co/", "anon-key",
                                access_token="user-jwt", session=session)
    yield store
    store._executor.shutdown(wait=False)


def test_auth_headers(rest_store, session):
    assert session.headers["apikey"] == "anon-key"
    assert session.headers["Authorization"] == "Bearer user-jwt"
    assert rest_store.base_url == "https://demo.supabase.co/rest/v1"


class TestReads:

    @pytest.mark.asyncio
    async def test_fetch_own_events_filters_by_owner(self, rest_store, session):
        session.request.return_value = response(body=[{"id": "event_1", "user_id": "u1"}])

        rows = await rest_store.fetch_own_events("u1")

        assert rows == [{"id": "event_1", "user_id": "u1"}]
        args, kwargs = session.request.call_args
        assert args == ("GET", "https://demo.supabase.co/rest/v1/events")
        assert kwargs["params"]["user_id"] == "eq.u1"
        assert kwargs["timeout"] == 10.0

    @pytest.mark.asyncio
    async def test_fetch_shared_events_by_role_and_status(self, rest_store, session):
        await rest_store.fetch_shared_events("u2", RECIPIENT, ["pending", "accepted"])

        _, kwargs = session.request.call_args
        assert kwargs["params"]["shared_with"] == "eq.u2"
        assert kwargs["params"]["status"] == 'in.("pending","accepted")'

    @pytest.mark.asyncio
    async def test_get_event_missing_is_none(self, rest_store):
        assert await rest_store.get_event("event_x") is None

    @pytest.mark.asyncio
    async def test_no_profiles_requested_no_call(self, rest_store, session):
        assert await rest_store.get_profiles([]) == []
        session.request.assert_not_called()


class TestWrites:

    @pytest.mark.asyncio
    async def test_update_missing_row_is_not_found(self, rest_store, session):
        session.request.return_value = response(body=[])
        with pytest.raises(NotFound):
            await rest_store.update_event("event_1", {"id": "event_1", "title": "x"})

        _, kwargs = session.request.call_args
        assert "id" not in kwargs["json"]
        assert kwargs["headers"]["Prefer"] == "return=representation"

    @pytest.mark.asyncio
    async def test_upsert_merges_duplicates(self, rest_store, session):
        row = {"id": "accepted_event_1_u2", "title": "Standup"}
        session.request.return_value = response(status=201, body=[row])

        assert await rest_store.upsert_event(row) == row
        _, kwargs = session.request.call_args
        assert kwargs["headers"]["Prefer"].startswith("resolution=merge-duplicates")

    @pytest.mark.asyncio
    async def test_cascade_deletes_shares_before_event(self, rest_store, session):
        session.request.side_effect = [
            response(body=[{"id": "s1"}, {"id": "s2"}]),
            response(body=[{"id": "event_1"}]),
        ]

        assert await rest_store.delete_event_cascade("event_1") == 2

        calls = session.request.call_args_list
        assert calls[0].args[1].endswith("/shared_events")
        assert calls[0].kwargs["params"] == {"original_event_id": "eq.event_1"}
        assert calls[1].args[1].endswith("/events")


class TestErrors:

    @pytest.mark.asyncio
    async def test_unauthorized(self, rest_store, session):
        session.request.return_value = response(status=401, body={"message": "JWT expired"})
        with pytest.raises(StoreAuthError):
            await rest_store.fetch_own_events("u1")

    @pytest.mark.asyncio
    async def test_server_error(self, rest_store, session):
        session.request.return_value = response(status=500, body={"message": "boom"})
        with pytest.raises(StoreError) as excinfo:
            await rest_store.insert_shared_events([{"id": "s1"}])
        assert not isinstance(excinfo.value, StoreUnavailable)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc", [requests.ConnectionError("refused"), requests.Timeout("slow")])
    async def test_network_failures_are_unavailable(self, rest_store, session, exc):
        session.request.side_effect = exc
        with pytest.raises(StoreUnavailable):
            await rest_store.get_shared_event("s1")
