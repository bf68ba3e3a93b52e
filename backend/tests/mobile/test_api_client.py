import json

import httpx
import pytest

from fieldtrack.mobile.api_client import RemoteApiClient, RemoteApiError


def _client(handler, **kwargs):
    return RemoteApiClient(base_url="http://api.test", transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.asyncio
async def test_request_sends_json_and_auth_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": 12})

    client = _client(handler, token="tok-123")
    data = await client.request("post", "/leads", json={"description": "Fence"}, idempotency_key="key-1")

    assert data == {"id": 12}
    assert seen["method"] == "POST"
    assert seen["path"] == "/leads"
    assert seen["body"] == {"description": "Fence"}
    assert seen["headers"]["Authorization"] == "Bearer tok-123"
    assert seen["headers"]["Idempotency-Key"] == "key-1"


@pytest.mark.asyncio
async def test_no_idempotency_header_by_default():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        return httpx.Response(204)

    assert await _client(handler).request("POST", "/leads", json={}) is None
    assert "Idempotency-Key" not in seen["headers"]
    assert "Authorization" not in seen["headers"]


@pytest.mark.asyncio
async def test_server_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "maintenance"})

    with pytest.raises(RemoteApiError) as excinfo:
        await _client(handler).request("GET", "/jobs")

    assert excinfo.value.status_code == 503
    assert excinfo.value.transient is True
    assert "maintenance" in str(excinfo.value)


@pytest.mark.asyncio
async def test_validation_error_is_permanent():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "description required"})

    with pytest.raises(RemoteApiError) as excinfo:
        await _client(handler).request("POST", "/leads", json={})

    assert excinfo.value.status_code == 400
    assert excinfo.value.transient is False


@pytest.mark.asyncio
async def test_network_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RemoteApiError) as excinfo:
        await _client(handler).request("GET", "/jobs")

    assert excinfo.value.status_code is None
    assert excinfo.value.transient is True


@pytest.mark.asyncio
async def test_get_collection_accepts_list_or_items_envelope():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/jobs":
            return httpx.Response(200, json=[{"id": 1}])
        if request.url.path == "/users":
            return httpx.Response(200, json={"items": [{"id": 2}]})
        return httpx.Response(200, json={"unexpected": True})

    client = _client(handler)
    assert await client.get_collection("/jobs") == [{"id": 1}]
    assert await client.get_collection("/users") == [{"id": 2}]
    with pytest.raises(RemoteApiError):
        await client.get_collection("/tasks")
