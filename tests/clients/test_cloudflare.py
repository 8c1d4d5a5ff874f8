import json

import httpx
import pytest
import respx

from launchpad.clients import CloudflareClient
from launchpad.errors import LaunchpadError, RemoteServiceError
from launchpad.resilience import RetryPolicy

API_URL = "https://cloudflare.test/client/v4"
KV_PATH = "/accounts/acct-1/storage/kv/namespaces/ns-1/values"


@pytest.fixture
async def client():
    client = CloudflareClient(
        API_URL,
        "cf-token",
        account_id="acct-1",
        zone_id="zone-1",
        kv_namespace_id="ns-1",
        retry=RetryPolicy(max_retries=0, base_delay=0, jitter=0),
    )
    yield client
    await client.close()


@pytest.mark.asyncio
async def test_put_mapping_writes_plain_text(client):
    async with respx.mock(base_url=API_URL) as respx_mock:
        route = respx_mock.put(f"{KV_PATH}/todo-app").mock(
            return_value=httpx.Response(200, json={"success": True, "errors": []})
        )

        await client.put_mapping("todo-app", "https://todo.up.railway.app")

        request = route.calls.last.request
        assert request.content == b"https://todo.up.railway.app"
        assert request.headers["Content-Type"] == "text/plain"
        assert request.headers["Authorization"] == "Bearer cf-token"


@pytest.mark.asyncio
async def test_kv_calls_skipped_when_unconfigured():
    client = CloudflareClient(API_URL, "cf-token")

    async with respx.mock(base_url=API_URL) as respx_mock:
        await client.put_mapping("todo-app", "https://todo.up.railway.app")
        assert await client.get_mapping("todo-app") is None

        assert not respx_mock.calls


@pytest.mark.asyncio
async def test_get_mapping(client):
    async with respx.mock(base_url=API_URL) as respx_mock:
        respx_mock.get(f"{KV_PATH}/todo-app").mock(return_value=httpx.Response(200, text="https://todo.up.railway.app"))
        respx_mock.get(f"{KV_PATH}/missing").mock(return_value=httpx.Response(404, json={"success": False}))

        assert await client.get_mapping("todo-app") == "https://todo.up.railway.app"
        assert await client.get_mapping("missing") is None


@pytest.mark.asyncio
async def test_delete_mapping_tolerates_missing_key(client):
    async with respx.mock(base_url=API_URL) as respx_mock:
        route = respx_mock.delete(f"{KV_PATH}/todo-app").mock(return_value=httpx.Response(404))

        await client.delete_mapping("todo-app")

        assert route.called


@pytest.mark.asyncio
async def test_create_dns_record(client):
    async with respx.mock(base_url=API_URL) as respx_mock:
        route = respx_mock.post("/zones/zone-1/dns_records").mock(
            return_value=httpx.Response(200, json={"success": True, "result": {"id": "rec-1"}})
        )

        record = await client.create_dns_record("CNAME", "shop.example.com", "todo-app.imagia.net")

        body = json.loads(route.calls.last.request.content)

    assert record == {"id": "rec-1"}
    assert body["proxied"] is True
    assert body["ttl"] == 1


@pytest.mark.asyncio
async def test_api_error_envelope_raises(client):
    async with respx.mock(base_url=API_URL) as respx_mock:
        respx_mock.post("/zones/zone-1/custom_hostnames").mock(
            return_value=httpx.Response(
                200, json={"success": False, "errors": [{"code": 1406, "message": "Duplicate custom hostname"}]}
            )
        )

        with pytest.raises(RemoteServiceError, match="Duplicate custom hostname"):
            await client.create_custom_hostname("shop.example.com")


@pytest.mark.asyncio
async def test_zone_operations_require_zone_id():
    client = CloudflareClient(API_URL, "cf-token", account_id="acct-1", kv_namespace_id="ns-1")

    with pytest.raises(LaunchpadError, match="CLOUDFLARE_ZONE_ID"):
        await client.create_dns_record("CNAME", "shop.example.com", "todo-app.imagia.net")
