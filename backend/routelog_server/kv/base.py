"""
Base protocol and types for the key-value store abstraction.

This module defines the KeyValueStore protocol that all backends must
implement, along with the list page type and the store error hierarchy.

Invariants:
    - get() returns None for an absent key, never raises for absence
    - put() replaces the whole value; there are no partial updates
    - list() returns keys in ascending lexicographic order within a page
    - A page signals completion via list_complete, an absent cursor, or both

How to change safely:
    - Protocol changes require updating all implementations
    - Callers must not assume read-your-writes across list() then get()
    - Keep MAX_PAGE_SIZE in line with the hosted backend's limit
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)
import logging

if TYPE_CHECKING:
    from ..config import KvConfig

logger = logging.getLogger(__name__)

# Hosted KV rejects list requests above this limit
MAX_PAGE_SIZE = 1000


class KvError(Exception):
    """Base exception for key-value store operations."""
    pass


class KvConnectionError(KvError):
    """Connection to the key-value backend failed."""
    pass


class KvTimeoutError(KvError):
    """Key-value operation timed out."""
    pass


class KvKeyError(KvError):
    """Backend rejected an operation on a specific key."""

    def __init__(self, message: str, key: str) -> None:
        super().__init__(message)
        self.key = key


@dataclass
class ListPage:
    """One page of a prefix listing.

    Attributes:
        keys: Key names on this page, ascending
        cursor: Continuation cursor, None when the backend has no more pages
        list_complete: Explicit completion flag reported by the backend

    Backends differ in how they end a listing: some set list_complete,
    some drop the cursor, some do both. Consumers must treat either
    signal as terminal.
    """
    keys: List[str] = field(default_factory=list)
    cursor: Optional[str] = None
    list_complete: bool = False

    @property
    def is_last(self) -> bool:
        """Whether this page ends the listing."""
        return self.list_complete or not self.cursor


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol for key-value store backends.

    Consistency contract:
        - Eventually consistent; no multi-key transactions
        - Writes to a single key are serialized by the backend
        - A key may appear or disappear between list() and get()

    Example:
        >>> store = SqliteKeyValueStore("/var/lib/routelog/kv.db")
        >>> await store.put("user:alice", '{"token": "..."}')
        >>> page = await store.list(prefix="user:")
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Read a value.

        Args:
            key: Key name

        Returns:
            The stored value, or None if the key does not exist

        Raises:
            KvError: On backend failure
        """
        ...

    @abstractmethod
    async def put(
        self,
        key: str,
        value: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Write a value, replacing any existing one.

        Args:
            key: Key name
            value: Value to store
            metadata: Optional backend metadata attached to the key

        Raises:
            KvError: On backend failure
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a key. Deleting an absent key is not an error.

        Raises:
            KvError: On backend failure
        """
        ...

    @abstractmethod
    async def list(
        self,
        prefix: str = "",
        cursor: Optional[str] = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> ListPage:
        """List one page of keys under a prefix.

        Args:
            prefix: Key prefix to match ("" matches every key)
            cursor: Cursor from the previous page, None for the first page
            limit: Maximum keys on this page

        Returns:
            ListPage with keys and continuation state

        Raises:
            KvError: On backend failure
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


def create_kv_store(config: "KvConfig") -> KeyValueStore:
    """Factory function to create a key-value store from configuration.

    Args:
        config: Key-value store configuration

    Returns:
        Appropriate KeyValueStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import KvBackend
    from .cloudflare import CloudflareKVStore
    from .memory import InMemoryKeyValueStore
    from .sqlite import SqliteKeyValueStore

    if config.backend == KvBackend.SQLITE:
        return SqliteKeyValueStore(config.sqlite_path)
    elif config.backend == KvBackend.CLOUDFLARE:
        return CloudflareKVStore(
            account_id=config.cf_account_id,
            namespace_id=config.cf_namespace_id,
            api_token=config.cf_api_token,
            base_url=config.cf_api_base_url,
            timeout_seconds=config.request_timeout_seconds,
        )
    elif config.backend == KvBackend.MEMORY:
        logger.warning("Using in-memory key-value store; data is lost on exit")
        return InMemoryKeyValueStore()
    else:
        raise ValueError(f"Unsupported KV backend: {config.backend}")
