"""
In-memory key-value store implementation for testing.

This module provides a simple in-memory KV backend for:
- Unit tests
- Integration tests
- Local development without external dependencies

Invariants:
    - All data is lost on process exit
    - Listing order and cursor semantics match the hosted backends
    - Safe for concurrent access from multiple coroutines

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with KeyValueStore protocol
    - Add knobs here to reproduce backend quirks seen in production
"""

from __future__ import annotations

import asyncio
import base64
import bisect
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from .base import MAX_PAGE_SIZE, KvError, KvKeyError, ListPage

logger = logging.getLogger(__name__)

# How the final page of a listing is signalled
COMPLETION_SIGNALS = ("both", "flag", "cursor")


class InMemoryKeyValueStore:
    """In-memory implementation of KeyValueStore for testing.

    Attributes:
        completion_signal: How the last page is marked
            - "both": list_complete=True and no cursor
            - "flag": list_complete=True but a cursor is still returned
            - "cursor": list_complete never set, cursor omitted on last page
        overlap_pages: Repeat the previous page's last key at the start of
            the next page (reproduces duplicate keys across page boundaries)

    Example:
        >>> store = InMemoryKeyValueStore()
        >>> await store.put("user:alice", "{}")
        >>> page = await store.list(prefix="user:")
        >>> page.keys
        ['user:alice']
    """

    def __init__(
        self,
        initial: Optional[Dict[str, str]] = None,
        completion_signal: str = "both",
        overlap_pages: bool = False,
    ) -> None:
        """Initialize in-memory store.

        Args:
            initial: Optional key/value pairs to preload
            completion_signal: One of COMPLETION_SIGNALS
            overlap_pages: Whether pages overlap by one key
        """
        if completion_signal not in COMPLETION_SIGNALS:
            raise ValueError(
                f"completion_signal must be one of {COMPLETION_SIGNALS}, got {completion_signal!r}"
            )
        self.completion_signal = completion_signal
        self.overlap_pages = overlap_pages
        self._data: Dict[str, str] = dict(initial or {})
        self._metadata: Dict[str, Dict[str, Any]] = {}
        self._sorted_keys: List[str] = sorted(self._data)
        self._lock = asyncio.Lock()
        self._failing_keys: Set[str] = set()
        self._pending_failures: Dict[str, List[Exception]] = defaultdict(list)
        self.call_counts: Dict[str, int] = defaultdict(int)

    async def get(self, key: str) -> Optional[str]:
        """Read a value."""
        self._record_call("get")
        if key in self._failing_keys:
            raise KvKeyError(f"Injected read failure for key {key}", key=key)
        return self._data.get(key)

    async def put(
        self,
        key: str,
        value: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Write a value."""
        self._record_call("put")
        if not isinstance(value, str):
            raise TypeError(f"Values must be str, got {type(value).__name__}")

        async with self._lock:
            if key not in self._data:
                bisect.insort(self._sorted_keys, key)
            self._data[key] = value
            if metadata is not None:
                self._metadata[key] = dict(metadata)

        logger.debug("Key written to in-memory KV", extra={"key": key, "size": len(value)})

    async def delete(self, key: str) -> None:
        """Delete a key."""
        self._record_call("delete")
        async with self._lock:
            if key in self._data:
                del self._data[key]
                self._metadata.pop(key, None)
                index = bisect.bisect_left(self._sorted_keys, key)
                del self._sorted_keys[index]

    async def list(
        self,
        prefix: str = "",
        cursor: Optional[str] = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> ListPage:
        """List one page of keys.

        The cursor encodes the last key returned, so keys written between
        pages are picked up if they sort after the cursor position.
        """
        self._record_call("list")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise KvError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {limit}")
        if self.overlap_pages and limit < 2:
            raise KvError("overlap_pages requires limit >= 2")

        async with self._lock:
            if cursor:
                after = self._decode_cursor(cursor)
                start = bisect.bisect_right(self._sorted_keys, after)
                if self.overlap_pages and start > 0:
                    start -= 1
            else:
                start = bisect.bisect_left(self._sorted_keys, prefix)

            keys: List[str] = []
            index = start
            while index < len(self._sorted_keys) and len(keys) < limit:
                key = self._sorted_keys[index]
                if not key.startswith(prefix):
                    break
                keys.append(key)
                index += 1

            has_more = (
                index < len(self._sorted_keys)
                and self._sorted_keys[index].startswith(prefix)
            )

        next_cursor = self._encode_cursor(keys[-1]) if keys else None
        if has_more:
            return ListPage(keys=keys, cursor=next_cursor, list_complete=False)
        if self.completion_signal == "flag":
            return ListPage(keys=keys, cursor=next_cursor, list_complete=True)
        if self.completion_signal == "cursor":
            return ListPage(keys=keys, cursor=None, list_complete=False)
        return ListPage(keys=keys, cursor=None, list_complete=True)

    async def close(self) -> None:
        """Close (no-op for in-memory)."""
        logger.debug("InMemoryKeyValueStore closed")

    @staticmethod
    def _encode_cursor(key: str) -> str:
        return base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii")

    @staticmethod
    def _decode_cursor(cursor: str) -> str:
        try:
            return base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise KvError(f"Invalid list cursor: {cursor!r}") from e

    def _record_call(self, operation: str) -> None:
        self.call_counts[operation] += 1
        pending = self._pending_failures.get(operation)
        if pending:
            raise pending.pop(0)

    # Testing helpers

    def snapshot(self) -> Dict[str, str]:
        """Copy of all stored data (testing helper)."""
        return dict(self._data)

    def get_metadata(self, key: str) -> Optional[Dict[str, Any]]:
        """Metadata attached to a key (testing helper)."""
        return self._metadata.get(key)

    def fail_key(self, key: str) -> None:
        """Make every get() of this key raise KvKeyError (testing helper)."""
        self._failing_keys.add(key)

    def inject_failure(self, operation: str, exception: Exception) -> None:
        """Raise exception on the next call of operation (testing helper).

        Args:
            operation: One of "get", "put", "delete", "list"
            exception: Exception to raise
        """
        self._pending_failures[operation].append(exception)

    def __len__(self) -> int:
        return len(self._data)
