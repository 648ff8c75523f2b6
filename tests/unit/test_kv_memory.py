"""
Unit tests for the in-memory key-value store.

Tests cover:
- Basic get/put/delete operations
- Prefix listing and cursor pagination
- Completion signal variants and overlapping pages
- Testing helpers (failure injection, call counts)
"""

import pytest

from backend.routelog_server.kv.base import KeyValueStore, KvError, KvKeyError
from backend.routelog_server.kv.memory import InMemoryKeyValueStore


class TestInMemoryKeyValueStore:
    """Tests for InMemoryKeyValueStore."""

    @pytest.fixture
    def store(self):
        """Create a fresh store."""
        return InMemoryKeyValueStore()

    def test_implements_protocol(self, store):
        """Store satisfies the KeyValueStore protocol."""
        assert isinstance(store, KeyValueStore)

    @pytest.mark.asyncio
    async def test_get_absent_returns_none(self, store):
        """Absent keys read as None."""
        assert await store.get("user:nobody") is None

    @pytest.mark.asyncio
    async def test_put_get_roundtrip(self, store):
        """A written value is read back unchanged."""
        await store.put("user:alice", '{"token":"t-1"}')

        assert await store.get("user:alice") == '{"token":"t-1"}'

    @pytest.mark.asyncio
    async def test_put_replaces_value(self, store):
        """Put overwrites the whole value."""
        await store.put("k", "one")
        await store.put("k", "two")

        assert await store.get("k") == "two"
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_put_rejects_non_string(self, store):
        """Values must be strings."""
        with pytest.raises(TypeError):
            await store.put("k", b"bytes")

    @pytest.mark.asyncio
    async def test_put_records_metadata(self, store):
        """Metadata is kept per key."""
        await store.put("k", "v", metadata={"owner": "alice"})

        assert store.get_metadata("k") == {"owner": "alice"}

    @pytest.mark.asyncio
    async def test_delete(self, store):
        """Delete removes the key; deleting again is not an error."""
        await store.put("k", "v")
        await store.delete("k")
        await store.delete("k")

        assert await store.get("k") is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_list_filters_by_prefix(self, store):
        """Only keys under the prefix are listed, in order."""
        for key in ("user:bob", "logs:t-1", "user:alice", "userx"):
            await store.put(key, "{}")

        page = await store.list(prefix="user:")

        assert page.keys == ["user:alice", "user:bob"]
        assert page.is_last

    @pytest.mark.asyncio
    async def test_list_paginates(self, store):
        """A full page carries a cursor to the rest."""
        for i in range(5):
            await store.put(f"k{i}", "v")

        first = await store.list(limit=2)
        second = await store.list(cursor=first.cursor, limit=2)
        third = await store.list(cursor=second.cursor, limit=2)

        assert first.keys == ["k0", "k1"]
        assert not first.is_last
        assert second.keys == ["k2", "k3"]
        assert third.keys == ["k4"]
        assert third.is_last

    @pytest.mark.asyncio
    async def test_list_empty_store(self, store):
        """Listing an empty store is one empty final page."""
        page = await store.list()

        assert page.keys == []
        assert page.is_last

    @pytest.mark.asyncio
    async def test_list_rejects_bad_limit(self, store):
        """Limits outside 1..1000 are rejected."""
        with pytest.raises(KvError):
            await store.list(limit=0)
        with pytest.raises(KvError):
            await store.list(limit=1001)

    @pytest.mark.asyncio
    async def test_list_rejects_bad_cursor(self, store):
        """An undecodable cursor is a store error."""
        with pytest.raises(KvError):
            await store.list(cursor="!!not-base64!!")


class TestCompletionSignals:
    """Backends end listings in different ways."""

    @pytest.mark.asyncio
    async def test_flag_only_keeps_cursor(self):
        """'flag' mode sets list_complete but still returns a cursor."""
        store = InMemoryKeyValueStore({"a": "1"}, completion_signal="flag")

        page = await store.list()

        assert page.list_complete
        assert page.cursor is not None
        assert page.is_last

    @pytest.mark.asyncio
    async def test_cursor_only_never_sets_flag(self):
        """'cursor' mode drops the cursor without setting list_complete."""
        store = InMemoryKeyValueStore({"a": "1"}, completion_signal="cursor")

        page = await store.list()

        assert not page.list_complete
        assert page.cursor is None
        assert page.is_last

    def test_unknown_signal_rejected(self):
        """Only known completion signals are accepted."""
        with pytest.raises(ValueError):
            InMemoryKeyValueStore(completion_signal="never")

    @pytest.mark.asyncio
    async def test_overlap_repeats_last_key(self):
        """Overlapping pages start with the previous page's last key."""
        store = InMemoryKeyValueStore({f"k{i}": "v" for i in range(4)}, overlap_pages=True)

        first = await store.list(limit=2)
        second = await store.list(cursor=first.cursor, limit=2)

        assert first.keys == ["k0", "k1"]
        assert second.keys == ["k1", "k2"]

    @pytest.mark.asyncio
    async def test_overlap_requires_two_keys_per_page(self):
        """A one-key overlapping page could never advance."""
        store = InMemoryKeyValueStore({"a": "1"}, overlap_pages=True)

        with pytest.raises(KvError):
            await store.list(limit=1)


class TestTestingHelpers:
    """Tests for failure injection and counters."""

    @pytest.mark.asyncio
    async def test_fail_key(self):
        """A failing key raises KvKeyError on every read."""
        store = InMemoryKeyValueStore({"bad": "x"})
        store.fail_key("bad")

        for _ in range(2):
            with pytest.raises(KvKeyError) as exc_info:
                await store.get("bad")
            assert exc_info.value.key == "bad"

    @pytest.mark.asyncio
    async def test_inject_failure_is_one_shot(self):
        """An injected failure fires once."""
        store = InMemoryKeyValueStore()
        store.inject_failure("put", KvError("boom"))

        with pytest.raises(KvError, match="boom"):
            await store.put("k", "v")
        await store.put("k", "v")

        assert await store.get("k") == "v"

    @pytest.mark.asyncio
    async def test_call_counts(self):
        """Every operation is counted."""
        store = InMemoryKeyValueStore()
        await store.put("k", "v")
        await store.get("k")
        await store.get("k")
        await store.list()

        assert store.call_counts["put"] == 1
        assert store.call_counts["get"] == 2
        assert store.call_counts["list"] == 1
