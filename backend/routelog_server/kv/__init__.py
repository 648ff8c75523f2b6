"""
Key-value store abstraction for the route-log server.

This module provides a pluggable KV backend interface supporting:
- SQLite (single-node deployments, local development)
- Cloudflare Workers KV (hosted)
- In-memory (for testing)

Accounts, log collections and deletion snapshots all live in one
namespace, distinguished by key prefix (user:, logs:, deleted:).

Invariants:
    - No multi-key transactions; callers tolerate partial completion
    - Listing is cursor-paginated with at most MAX_PAGE_SIZE keys per page
    - Absent keys read as None

How to change safely:
    - New backends must implement the KeyValueStore protocol
    - Run the shared backend tests against every implementation
"""

from .base import (
    MAX_PAGE_SIZE,
    KeyValueStore,
    KvConnectionError,
    KvError,
    KvKeyError,
    KvTimeoutError,
    ListPage,
    create_kv_store,
)
from .cloudflare import CloudflareKVStore
from .memory import InMemoryKeyValueStore
from .sqlite import SqliteKeyValueStore

__all__ = [
    # Protocol and types
    "KeyValueStore",
    "ListPage",
    "MAX_PAGE_SIZE",
    "KvError",
    "KvConnectionError",
    "KvTimeoutError",
    "KvKeyError",
    # Factory
    "create_kv_store",
    # Implementations
    "SqliteKeyValueStore",
    "CloudflareKVStore",
    "InMemoryKeyValueStore",
]
