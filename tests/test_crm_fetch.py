import httpx
import pytest

from program_search.crm_fetch import _http_client, fetch_all, fetch_property_definitions
from program_search.errors import UpstreamError


def _client(handler) -> httpx.AsyncClient:
    return _http_client("test-token", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_fetch_all_follows_paging_cursor():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        after = request.url.params.get("after")
        if after is None:
            return httpx.Response(
                200,
                json={"results": [{"id": "1"}, {"id": "2"}], "paging": {"next": {"after": "2"}}},
            )
        return httpx.Response(200, json={"results": [{"id": "3"}]})

    async with _client(handler) as client:
        records = await fetch_all(client, "2-50911446", ["program_name", "recordtype_name"])

    assert [r["id"] for r in records] == ["1", "2", "3"]
    assert len(seen) == 2
    first = seen[0]
    assert first.url.path == "/crm/v3/objects/2-50911446"
    assert first.url.params["limit"] == "100"
    assert first.url.params["properties"] == "program_name,recordtype_name"
    assert first.headers["Authorization"] == "Bearer test-token"
    assert seen[1].url.params["after"] == "2"


@pytest.mark.asyncio
async def test_fetch_all_raises_on_error_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="expired token")

    async with _client(handler) as client:
        with pytest.raises(UpstreamError) as exc_info:
            await fetch_all(client, "companies", ["name"])

    err = exc_info.value
    assert err.status_code == 401
    assert "401" in str(err)
    assert "expired token" in str(err)


@pytest.mark.asyncio
async def test_fetch_all_wraps_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(UpstreamError) as exc_info:
            await fetch_all(client, "companies", ["name"])
    assert exc_info.value.status_code is None


@pytest.mark.asyncio
async def test_fetch_all_empty_results():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"results": []})

    async with _client(handler) as client:
        assert await fetch_all(client, "companies", ["name"]) == []


@pytest.mark.asyncio
async def test_fetch_property_definitions():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/crm/v3/properties/2-50911450"
        return httpx.Response(200, json={"results": [{"name": "weeks", "type": "number"}]})

    async with _client(handler) as client:
        defs = await fetch_property_definitions(client, "2-50911450")
    assert defs == [{"name": "weeks", "type": "number"}]
