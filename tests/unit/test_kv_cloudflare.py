"""
Unit tests for the Cloudflare KV backend.

Runs the store against a fake v4 API served by aiohttp's TestServer.

Tests cover:
- Value read/write/delete and 404 handling
- Listing with cursor and empty-cursor completion
- Minimum list limit
- Error mapping
- Authentication on owned and injected sessions
"""

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from backend.routelog_server.kv.base import KvConnectionError, KvError, KvKeyError
from backend.routelog_server.kv.cloudflare import MIN_LIST_LIMIT, CloudflareKVStore

ACCOUNT = "acct"
NAMESPACE = "ns"
TOKEN = "cf-token"


class FakeCloudflareApi:
    """Just enough of the Workers KV API for the store."""

    def __init__(self):
        self.data = {}
        self.list_limits = []
        self.auth_headers = []
        self.fail_status = None

    def app(self):
        app = web.Application()
        base = f"/client/v4/accounts/{ACCOUNT}/storage/kv/namespaces/{NAMESPACE}"
        app.router.add_get(base + "/values/{key}", self.get_value)
        app.router.add_put(base + "/values/{key}", self.put_value)
        app.router.add_delete(base + "/values/{key}", self.delete_value)
        app.router.add_get(base + "/keys", self.list_keys)
        return app

    def _failure(self):
        return web.json_response(
            {"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]},
            status=self.fail_status,
        )

    async def get_value(self, request):
        self.auth_headers.append(request.headers.get("Authorization"))
        if self.fail_status:
            return self._failure()
        key = request.match_info["key"]
        if key not in self.data:
            return web.json_response(
                {"success": False, "errors": [{"code": 10009, "message": "key not found"}]},
                status=404,
            )
        return web.Response(text=self.data[key])

    async def put_value(self, request):
        if self.fail_status:
            return self._failure()
        key = request.match_info["key"]
        if request.content_type.startswith("multipart/"):
            form = await request.post()
            self.data[key] = form["value"]
        else:
            self.data[key] = await request.text()
        return web.json_response({"success": True, "errors": [], "result": None})

    async def delete_value(self, request):
        self.data.pop(request.match_info["key"], None)
        return web.json_response({"success": True, "errors": [], "result": None})

    async def list_keys(self, request):
        limit = int(request.query["limit"])
        self.list_limits.append(limit)
        prefix = request.query.get("prefix", "")
        after = request.query.get("cursor", "")

        keys = sorted(k for k in self.data if k.startswith(prefix) and k > after)
        page = keys[:limit]
        cursor = page[-1] if len(keys) > limit else ""
        return web.json_response(
            {
                "success": True,
                "errors": [],
                "result": [{"name": k} for k in page],
                "result_info": {"count": len(page), "cursor": cursor},
            }
        )


@pytest.fixture
def api():
    return FakeCloudflareApi()


@pytest_asyncio.fixture
async def store(api):
    """Store pointed at a running fake API."""
    server = TestServer(api.app())
    await server.start_server()
    store = CloudflareKVStore(
        ACCOUNT, NAMESPACE, api_token=TOKEN, base_url=str(server.make_url("/client/v4"))
    )
    yield store
    await store.close()
    await server.close()


class TestCloudflareKVStore:
    """Tests for CloudflareKVStore."""

    @pytest.mark.asyncio
    async def test_get_absent_returns_none(self, store):
        """404 reads as an absent key."""
        assert await store.get("user:nobody") is None

    @pytest.mark.asyncio
    async def test_put_get(self, store, api):
        """Raw values round-trip and the bearer token is sent."""
        await store.put("user:alice", '{"token":"t-1"}')

        assert api.data["user:alice"] == '{"token":"t-1"}'
        assert await store.get("user:alice") == '{"token":"t-1"}'
        assert api.auth_headers[-1] == f"Bearer {TOKEN}"

    @pytest.mark.asyncio
    async def test_injected_session_sends_token(self, api):
        """A caller-provided session still authenticates every request."""
        server = TestServer(api.app())
        await server.start_server()
        async with aiohttp.ClientSession() as session:
            store = CloudflareKVStore(
                ACCOUNT,
                NAMESPACE,
                api_token=TOKEN,
                base_url=str(server.make_url("/client/v4")),
                session=session,
            )
            await store.get("user:alice")
            await store.close()

            assert not session.closed
        await server.close()

        assert api.auth_headers == [f"Bearer {TOKEN}"]

    @pytest.mark.asyncio
    async def test_key_is_url_encoded(self, store, api):
        """Keys with reserved characters survive the path."""
        await store.put("deleted:user:a b:1700000000000", "{}")

        assert "deleted:user:a b:1700000000000" in api.data

    @pytest.mark.asyncio
    async def test_put_with_metadata_uses_form(self, store, api):
        """Metadata switches the upload to multipart."""
        await store.put("k", "v", metadata={"owner": "alice"})

        assert api.data["k"] == "v"

    @pytest.mark.asyncio
    async def test_delete(self, store, api):
        """Delete removes the key."""
        api.data["k"] = "v"
        await store.delete("k")

        assert "k" not in api.data

    @pytest.mark.asyncio
    async def test_list_pages(self, store, api):
        """Cursor pages end when result_info.cursor is empty."""
        for i in range(15):
            api.data[f"user:u{i:02d}"] = "{}"

        first = await store.list(prefix="user:", limit=10)
        second = await store.list(prefix="user:", cursor=first.cursor, limit=10)

        assert len(first.keys) == 10
        assert not first.is_last
        assert second.keys == [f"user:u{i:02d}" for i in range(10, 15)]
        assert second.list_complete
        assert second.cursor is None

    @pytest.mark.asyncio
    async def test_list_limit_raised_to_minimum(self, store, api):
        """Limits below the API minimum are raised."""
        await store.list(limit=2)

        assert api.list_limits == [MIN_LIST_LIMIT]

    @pytest.mark.asyncio
    async def test_api_error_raises(self, store, api):
        """Non-success statuses raise with the API message."""
        api.fail_status = 403

        with pytest.raises(KvKeyError, match="Authentication error"):
            await store.get("k")
        with pytest.raises(KvError):
            await store.put("k", "v")


class TestCloudflareConnectionErrors:
    """Tests for transport failures."""

    @pytest.mark.asyncio
    async def test_unreachable_api(self):
        """Connection failures map to KvConnectionError."""
        store = CloudflareKVStore(
            ACCOUNT, NAMESPACE, api_token=TOKEN, base_url="http://127.0.0.1:1/client/v4"
        )
        try:
            with pytest.raises(KvConnectionError):
                await store.get("k")
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        """Closing twice is harmless."""
        store = CloudflareKVStore(ACCOUNT, NAMESPACE, api_token=TOKEN)
        await store.close()
        await store.close()
