# test_transport.py
#
#
# Imports
import json
from datetime import datetime, timezone
#
# Third-Party Imports
import httpx
import pytest
#
# Local Imports
from unforgotten_sync.app.core.Sync.exceptions import NetworkError, RemoteError, TransportError
from unforgotten_sync.app.core.Sync.transport import HttpRemoteClient, remote_table
from conftest import ACCOUNT_ID, appointment_record
#
#######################################################################################################################
#
# Functions:

BASE_URL = "https://backend.test"

def _client(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpRemoteClient(BASE_URL, api_key="anon-key", client=http, **kwargs)

def test_remote_table_names():
    assert remote_table("appointment") == "appointments"
    assert remote_table("account_member") == "account_members"
    with pytest.raises(ValueError):
        remote_table("spaceship")

@pytest.mark.asyncio
async def test_list_sends_scope_cursor_and_auth():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(200, json=[appointment_record("a-1")])

    client = _client(handler, access_token="user-jwt")
    records = await client.list("appointment", ACCOUNT_ID, since=datetime(2024, 5, 1, 12, tzinfo=timezone.utc))

    assert [r['id'] for r in records] == ["a-1"]
    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/rest/v1/appointments"
    assert request.url.params["account_id"] == f"eq.{ACCOUNT_ID}"
    assert request.url.params["updated_at"] == "gt.2024-05-01T12:00:00.000Z"
    assert request.url.params["order"] == "updated_at.asc"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["authorization"] == "Bearer user-jwt"

@pytest.mark.asyncio
async def test_account_list_scoped_by_id_without_cursor():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    await _client(handler).list("account", ACCOUNT_ID)

    params = seen[0].url.params
    assert params["id"] == f"eq.{ACCOUNT_ID}"
    assert "updated_at" not in params
    assert seen[0].headers["authorization"] == "Bearer anon-key"

@pytest.mark.asyncio
async def test_create_returns_server_representation():
    def handler(request):
        body = json.loads(request.content)
        assert request.headers["prefer"] == "return=representation"
        return httpx.Response(201, json=[dict(body, server_column="x")])

    stored = await _client(handler).create("appointment", appointment_record("a-1"))
    assert stored["server_column"] == "x"

@pytest.mark.asyncio
async def test_update_matching_nothing_is_not_found():
    def handler(request):
        assert request.method == "PATCH"
        assert request.url.params["id"] == "eq.a-1"
        return httpx.Response(200, json=[])

    with pytest.raises(RemoteError) as exc_info:
        await _client(handler).update("appointment", "a-1", appointment_record("a-1"))
    assert exc_info.value.is_not_found

@pytest.mark.asyncio
async def test_conflict_status_surfaces():
    def handler(request):
        return httpx.Response(409, json={"message": "duplicate key"})

    with pytest.raises(RemoteError) as exc_info:
        await _client(handler).create("appointment", appointment_record("a-1"))
    assert exc_info.value.status_code == 409
    assert exc_info.value.entity_id == "a-1"

@pytest.mark.asyncio
async def test_delete_of_missing_row_is_success():
    def handler(request):
        return httpx.Response(404)

    assert await _client(handler).delete("appointment", "a-1") is None

@pytest.mark.asyncio
async def test_delete_other_errors_raise():
    def handler(request):
        return httpx.Response(500, text="boom")

    with pytest.raises(RemoteError):
        await _client(handler).delete("appointment", "a-1")

@pytest.mark.asyncio
async def test_connection_failure_is_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkError):
        await _client(handler).list("appointment", ACCOUNT_ID)

@pytest.mark.asyncio
async def test_malformed_body_is_transport_error():
    def handler(request):
        return httpx.Response(200, content=b"<html>")

    with pytest.raises(TransportError):
        await _client(handler).list("appointment", ACCOUNT_ID)

    def object_handler(request):
        return httpx.Response(200, json={"not": "a list"})

    with pytest.raises(TransportError):
        await _client(object_handler).list("appointment", ACCOUNT_ID)

@pytest.mark.asyncio
async def test_list_versions_asks_only_for_id_and_stamp():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[{"id": "a-1", "updated_at": "2024-05-01T12:00:00.000Z"}])

    versions = await _client(handler).list_versions("appointment", ACCOUNT_ID)

    assert versions == [{"id": "a-1", "updated_at": "2024-05-01T12:00:00.000Z"}]
    assert seen[0].url.params["select"] == "id,updated_at"
    assert seen[0].url.params["account_id"] == f"eq.{ACCOUNT_ID}"

@pytest.mark.asyncio
async def test_fetch_by_ids_in_chunks(monkeypatch):
    monkeypatch.setattr("unforgotten_sync.app.core.Sync.transport.FETCH_CHUNK_SIZE", 2)
    seen = []

    def handler(request):
        seen.append(request.url.params["id"])
        return httpx.Response(200, json=[appointment_record("a-1")] if len(seen) == 1 else [])

    records = await _client(handler).fetch("appointment", ACCOUNT_ID, ["a-1", "a-2", "a-3"])

    assert [r['id'] for r in records] == ["a-1"]
    assert seen == ["in.(a-1,a-2)", "in.(a-3)"]

@pytest.mark.asyncio
async def test_conditional_update_filters_on_stamp():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    with pytest.raises(RemoteError) as exc_info:
        await _client(handler).update("appointment", "a-1", appointment_record("a-1"),
                                      if_older_than=datetime(2024, 5, 1, 12, tzinfo=timezone.utc))
    assert exc_info.value.is_not_found
    assert seen[0].url.params["updated_at"] == "lt.2024-05-01T12:00:00.000Z"

@pytest.mark.asyncio
async def test_connection_rows_stamped_by_created_at():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[{"id": "c-1"}])

    client = _client(handler)
    await client.list("profile_connection", ACCOUNT_ID, since=datetime(2024, 5, 1, 12, tzinfo=timezone.utc))
    await client.update("profile_connection", "c-1", {"relationship_type": "friend"},
                        if_older_than=datetime(2024, 5, 1, 12, tzinfo=timezone.utc))

    assert seen[0].url.params["created_at"] == "gt.2024-05-01T12:00:00.000Z"
    assert seen[0].url.params["order"] == "created_at.asc"
    assert "updated_at" not in seen[1].url.params

@pytest.mark.asyncio
async def test_important_accounts_scoped_through_profiles():
    seen = []

    def handler(request):
        seen.append(request)
        if request.method == "POST":
            body = json.loads(request.content)
            assert "account_id" not in body
            return httpx.Response(201, json=[body])
        return httpx.Response(200, json=[])

    client = _client(handler)
    await client.list_versions("important_account", ACCOUNT_ID)
    stored = await client.create("important_account", {"id": "ia-1", "profile_id": "p-1",
                                                       "account_id": ACCOUNT_ID, "account_name": "Bank"})

    params = seen[0].url.params
    assert params["select"] == "id,updated_at,profiles!inner(account_id)"
    assert params["profiles.account_id"] == f"eq.{ACCOUNT_ID}"
    assert "account_id" not in params
    assert stored["account_id"] == ACCOUNT_ID

@pytest.mark.asyncio
async def test_aclose_leaves_injected_client_open():
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])))
    client = HttpRemoteClient(BASE_URL, client=http)
    await client.aclose()
    assert not http.is_closed
    await http.aclose()

#
# End of test_transport.py
#######################################################################################################################
