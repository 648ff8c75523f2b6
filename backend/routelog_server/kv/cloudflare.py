"""
Cloudflare Workers KV backend over the Cloudflare REST API.

This is the hosted backend the route-log application was first deployed
on. It talks to the v4 API with an aiohttp client session:

    GET    /accounts/{account}/storage/kv/namespaces/{ns}/values/{key}
    PUT    /accounts/{account}/storage/kv/namespaces/{ns}/values/{key}
    DELETE /accounts/{account}/storage/kv/namespaces/{ns}/values/{key}
    GET    /accounts/{account}/storage/kv/namespaces/{ns}/keys?prefix=&cursor=&limit=

Invariants:
    - Reads are eventually consistent (edge caches up to ~60s)
    - The API ends a listing with an empty cursor in result_info
    - Key names are URL-encoded in value paths

How to change safely:
    - The API caps list pages at 1000 and rejects limits below 10
    - Test against a fake server (see tests) before changing request shapes
    - Never log the API token
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from urllib.parse import quote

import aiohttp

from .base import MAX_PAGE_SIZE, KvConnectionError, KvError, KvKeyError, KvTimeoutError, ListPage

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.cloudflare.com/client/v4"

# Smallest page the list endpoint accepts
MIN_LIST_LIMIT = 10


class CloudflareKVStore:
    """KeyValueStore backed by a Cloudflare Workers KV namespace.

    Attributes:
        account_id: Cloudflare account identifier
        namespace_id: KV namespace identifier
        base_url: API base URL (overridable for tests)

    Example:
        >>> store = CloudflareKVStore("acct", "ns", api_token="...")
        >>> await store.put("user:alice", "{}")
        >>> await store.close()
    """

    def __init__(
        self,
        account_id: str,
        namespace_id: str,
        api_token: str,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout_seconds: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            account_id: Cloudflare account ID
            namespace_id: KV namespace ID
            api_token: API token with Workers KV Storage read/write permission
            base_url: API base URL
            timeout_seconds: Total timeout per request
            session: Optional externally managed client session
        """
        self.account_id = account_id
        self.namespace_id = namespace_id
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._api_token = api_token
        self._session = session
        self._owns_session = session is None

    @property
    def namespace_url(self) -> str:
        return (
            f"{self.base_url}/accounts/{self.account_id}"
            f"/storage/kv/namespaces/{self.namespace_id}"
        )

    def _value_url(self, key: str) -> str:
        return f"{self.namespace_url}/values/{quote(key, safe='')}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
            self._owns_session = True
        return self._session

    async def _request(self, method: str, url: str, **kwargs: Any) -> tuple[int, bytes]:
        """Issue a request and return (status, body).

        Raises:
            KvConnectionError: If the API is unreachable
            KvTimeoutError: If the request times out
        """
        # Every request carries the token, whichever session sends it
        headers = {**kwargs.pop("headers", {}), "Authorization": f"Bearer {self._api_token}"}
        try:
            async with self._get_session().request(method, url, headers=headers, **kwargs) as response:
                body = await response.read()
                return response.status, body
        except asyncio.TimeoutError as e:
            raise KvTimeoutError(f"Cloudflare KV {method} timed out: {url}") from e
        except aiohttp.ClientConnectionError as e:
            raise KvConnectionError(f"Failed to reach Cloudflare KV API: {e}") from e

    @staticmethod
    def _api_error(body: bytes) -> str:
        try:
            errors = json.loads(body.decode("utf-8")).get("errors") or []
            return "; ".join(f"{e.get('code')}: {e.get('message')}" for e in errors) or "unknown"
        except (ValueError, AttributeError, UnicodeDecodeError):
            return body[:200].decode("utf-8", errors="replace")

    async def get(self, key: str) -> str | None:
        """Read a value."""
        status, body = await self._request("GET", self._value_url(key))
        if status == 404:
            return None
        if status != 200:
            raise KvKeyError(
                f"Cloudflare KV read failed ({status}): {self._api_error(body)}", key=key
            )
        return body.decode("utf-8")

    async def put(
        self,
        key: str,
        value: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Write a value."""
        if metadata is None:
            kwargs: dict[str, Any] = {
                "data": value.encode("utf-8"),
                "headers": {"Content-Type": "text/plain; charset=utf-8"},
            }
        else:
            # The API only accepts metadata as multipart form-data
            with aiohttp.MultipartWriter("form-data") as form:
                part = form.append(value)
                part.set_content_disposition("form-data", name="value")
                part = form.append(json.dumps(metadata))
                part.set_content_disposition("form-data", name="metadata")
            kwargs = {"data": form}

        status, body = await self._request("PUT", self._value_url(key), **kwargs)
        if status != 200:
            raise KvKeyError(
                f"Cloudflare KV write failed ({status}): {self._api_error(body)}", key=key
            )

    async def delete(self, key: str) -> None:
        """Delete a key."""
        status, body = await self._request("DELETE", self._value_url(key))
        if status not in (200, 404):
            raise KvKeyError(
                f"Cloudflare KV delete failed ({status}): {self._api_error(body)}", key=key
            )

    async def list(
        self,
        prefix: str = "",
        cursor: str | None = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> ListPage:
        """List one page of keys.

        Limits below MIN_LIST_LIMIT are raised to it; the API rejects them.
        """
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise KvError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {limit}")

        params = {"limit": str(max(limit, MIN_LIST_LIMIT))}
        if prefix:
            params["prefix"] = prefix
        if cursor:
            params["cursor"] = cursor

        status, body = await self._request("GET", f"{self.namespace_url}/keys", params=params)
        if status != 200:
            raise KvError(f"Cloudflare KV list failed ({status}): {self._api_error(body)}")

        try:
            payload = json.loads(body.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise KvError(f"Cloudflare KV list returned invalid JSON: {e}") from e

        if not payload.get("success", False):
            raise KvError(f"Cloudflare KV list failed: {self._api_error(body)}")

        keys = [item["name"] for item in payload.get("result", [])]
        next_cursor = (payload.get("result_info") or {}).get("cursor") or None
        return ListPage(keys=keys, cursor=next_cursor, list_complete=next_cursor is None)

    async def close(self) -> None:
        """Close the client session if this store created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
