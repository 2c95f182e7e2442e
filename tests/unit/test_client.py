"""Unit tests for the table store client.

Uses respx to mock httpx calls so no real network access is required.
"""

import httpx
import pytest
import respx
from mcp.server.fastmcp.exceptions import ToolError

BASE_URL = "http://store.test/rest/v1"


def make_client(**kwargs):
    """Helper: build a StoreClient over a fresh httpx client."""
    from grc_importer.client import StoreClient

    return StoreClient(base_url=BASE_URL, api_key="secret", http_client=httpx.AsyncClient(), **kwargs)


# --- StoreClient.select ---


@respx.mock
async def test_select_returns_rows_and_sends_headers():
    """select should return parsed rows and send apikey and Bearer headers."""
    route = respx.get(f"{BASE_URL}/compliance_frameworks").mock(
        return_value=httpx.Response(200, json=[{"id": "f1", "code": "ISO"}])
    )

    result = await make_client().select("compliance_frameworks")

    assert result == [{"id": "f1", "code": "ISO"}]
    request = route.calls.last.request
    assert request.headers["apikey"] == "secret"
    assert request.headers["Authorization"] == "Bearer secret"


@respx.mock
async def test_select_builds_postgrest_filters():
    """select should translate filters, ilike, order and limit into query params."""
    route = respx.get(f"{BASE_URL}/controls").mock(return_value=httpx.Response(200, json=[]))

    await make_client().select(
        "controls",
        columns="id,title",
        filters={"is_deleted": False, "control_set_id": "cs1", "owner_id": None},
        ilike={"title": "*access*"},
        order="created_at.desc",
        limit=20,
    )

    params = route.calls.last.request.url.params
    assert params["select"] == "id,title"
    assert params["is_deleted"] == "is.false"
    assert params["control_set_id"] == "eq.cs1"
    assert params["owner_id"] == "is.null"
    assert params["title"] == "ilike.*access*"
    assert params["order"] == "created_at.desc"
    assert params["limit"] == "20"


@respx.mock
async def test_select_error_uses_store_message():
    """select should raise a ToolError carrying the store's message."""
    respx.get(f"{BASE_URL}/risks").mock(
        return_value=httpx.Response(400, json={"message": "column risks.nope does not exist"})
    )

    with pytest.raises(ToolError, match="does not exist"):
        await make_client().select("risks")


@respx.mock
async def test_select_retries_on_network_error(monkeypatch):
    """select should retry transient network errors before succeeding."""
    import grc_importer.client as client_module

    async def no_sleep(_seconds):
        return None

    monkeypatch.setattr(client_module.asyncio, "sleep", no_sleep)
    route = respx.get(f"{BASE_URL}/risks").mock(
        side_effect=[httpx.ConnectError("down"), httpx.Response(200, json=[{"id": "r1"}])]
    )

    result = await make_client(max_retries=3).select("risks")

    assert result == [{"id": "r1"}]
    assert route.call_count == 2


@respx.mock
async def test_select_gives_up_after_max_retries(monkeypatch):
    """select should raise PersistenceError once retries are exhausted."""
    import grc_importer.client as client_module
    from grc_importer.errors import PersistenceError

    async def no_sleep(_seconds):
        return None

    monkeypatch.setattr(client_module.asyncio, "sleep", no_sleep)
    respx.get(f"{BASE_URL}/risks").mock(side_effect=httpx.ConnectError("down"))

    with pytest.raises(PersistenceError, match="Network error"):
        await make_client(max_retries=2).select("risks")


@respx.mock
async def test_select_one_returns_none_when_empty():
    """select_one should return None when nothing matches."""
    respx.get(f"{BASE_URL}/users").mock(return_value=httpx.Response(200, json=[]))

    assert await make_client().select_one("users", filters={"id": 1}) is None


# --- StoreClient writes ---


@respx.mock
async def test_insert_returns_stored_row():
    """insert should ask for the representation and return the stored row."""
    route = respx.post(f"{BASE_URL}/risks").mock(
        return_value=httpx.Response(201, json=[{"id": "r9", "title": "Data loss"}])
    )

    row = await make_client().insert("risks", {"title": "Data loss"})

    assert row == {"id": "r9", "title": "Data loss"}
    assert route.calls.last.request.headers["Prefer"] == "return=representation"


@respx.mock
async def test_upsert_sends_conflict_key():
    """upsert should merge duplicates on the explicit conflict key."""
    route = respx.post(f"{BASE_URL}/compliance_requirements").mock(
        return_value=httpx.Response(201, json=[{"id": "q1"}])
    )

    row = await make_client().upsert(
        "compliance_requirements",
        {"framework_id": "f1", "requirement_code": "R1"},
        on_conflict=["framework_id", "requirement_code"],
    )

    request = route.calls.last.request
    assert row == {"id": "q1"}
    assert request.url.params["on_conflict"] == "framework_id,requirement_code"
    assert "resolution=merge-duplicates" in request.headers["Prefer"]


async def test_upsert_without_conflict_key_raises():
    """upsert should refuse to run without a conflict key."""
    from grc_importer.errors import PersistenceError

    with pytest.raises(PersistenceError, match="conflict key"):
        await make_client().upsert("compliance_requirements", {"requirement_code": "R1"}, on_conflict=[])


@respx.mock
async def test_update_filters_by_id():
    """update should PATCH only rows matching the filters."""
    route = respx.patch(f"{BASE_URL}/compliance_frameworks").mock(
        return_value=httpx.Response(200, json=[{"id": "f1", "name": "New"}])
    )

    rows = await make_client().update("compliance_frameworks", {"id": "f1"}, {"name": "New"})

    assert rows == [{"id": "f1", "name": "New"}]
    assert route.calls.last.request.url.params["id"] == "eq.f1"


async def test_update_without_filters_raises():
    """update should refuse an unfiltered write."""
    from grc_importer.errors import PersistenceError

    with pytest.raises(PersistenceError, match="unfiltered"):
        await make_client().update("compliance_frameworks", {}, {"name": "x"})


@respx.mock
async def test_delete_with_empty_body_returns_empty_list():
    """delete should tolerate a 204 response without content."""
    respx.delete(f"{BASE_URL}/requirement_risks_map").mock(return_value=httpx.Response(204))

    assert await make_client().delete("requirement_risks_map", {"id": "m1"}) == []


@respx.mock
async def test_insert_network_error_is_not_retried():
    """Writes should fail on the first network error."""
    from grc_importer.errors import PersistenceError

    route = respx.post(f"{BASE_URL}/risks").mock(side_effect=httpx.ConnectError("down"))

    with pytest.raises(PersistenceError):
        await make_client(max_retries=3).insert("risks", {"title": "x"})
    assert route.call_count == 1


@respx.mock
async def test_non_json_success_body_raises_persistence_error():
    """A 2xx response whose body is not JSON should surface as PersistenceError."""
    from grc_importer.errors import PersistenceError

    respx.post(f"{BASE_URL}/compliance_requirements").mock(
        return_value=httpx.Response(200, text="<html>gateway</html>")
    )

    with pytest.raises(PersistenceError, match="non-JSON"):
        await make_client().upsert(
            "compliance_requirements", {"requirement_code": "R1"}, on_conflict=["requirement_code"]
        )


# --- get_client ---


async def test_get_client_returns_singleton(monkeypatch):
    """get_client should build the client once from settings."""
    import grc_importer.client as client_module

    monkeypatch.setenv("GRC_IMPORTER_API_KEY", "k")
    monkeypatch.setenv("GRC_IMPORTER_STORE_URL", "http://store.test/rest/v1/")
    monkeypatch.setattr(client_module, "_client", None)

    first = await client_module.get_client()
    second = await client_module.get_client()

    assert first is second
    assert first.base_url == "http://store.test/rest/v1"
    await first.close()
    monkeypatch.setattr(client_module, "_client", None)
