"""
SQLite-backed key-value store for the route-log server.

Stores every key in a single table so the whole namespace can be listed
in key order with keyset pagination. This is the default backend for
single-node deployments and local development.

Invariants:
    - One row per key; put() is an upsert
    - Listing is ordered by key; cursors encode the last key returned
    - All writes go through one connection guarded by an asyncio lock

How to change safely:
    - Schema migrations must be backward compatible
    - Bump SCHEMA_VERSION and add an idempotent migration step
    - Keep cursor encoding stable; clients may hold cursors across restarts

Table schema:
    kv:
        - key TEXT PRIMARY KEY
        - value TEXT NOT NULL
        - metadata_json TEXT (nullable)
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

from .base import MAX_PAGE_SIZE, KvConnectionError, KvError, ListPage

logger = logging.getLogger(__name__)


class SqliteKeyValueStore:
    """Key-value store persisted in a SQLite file.

    Thread safety:
        A single connection is shared by all coroutines; writes are
        serialized with an asyncio lock and SQLite runs in autocommit mode.

    Example:
        >>> store = SqliteKeyValueStore("/var/lib/routelog/kv.db")
        >>> await store.put("user:alice", '{"token": "t-1"}')
        >>> await store.get("user:alice")
        '{"token": "t-1"}'
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            path: Database file path (":memory:" for a private in-process database)
            wal_mode: Enable SQLite WAL journal mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.path = path
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

    def _connection(self) -> sqlite3.Connection:
        """Open the connection and create the schema on first use."""
        if self._conn is not None:
            return self._conn

        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                self.path,
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit
            )
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode and self.path != ":memory:":
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            self._create_schema(conn)
        except sqlite3.Error as e:
            raise KvConnectionError(f"Failed to open SQLite KV store at {self.path}: {e}") from e

        self._conn = conn
        logger.info("Opened SQLite KV store", extra={"path": self.path})
        return conn

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                metadata_json TEXT,
                updated_at INTEGER NOT NULL
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def get(self, key: str) -> str | None:
        """Read a value."""
        try:
            row = self._connection().execute(
                "SELECT value FROM kv WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise KvError(f"Failed to read key {key}: {e}") from e
        return row[0] if row else None

    async def put(
        self,
        key: str,
        value: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Write a value, replacing any existing one."""
        metadata_json = json.dumps(metadata) if metadata is not None else None
        async with self._lock:
            try:
                self._connection().execute(
                    """
                    INSERT INTO kv (key, value, metadata_json, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        metadata_json = excluded.metadata_json,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, metadata_json, int(time.time() * 1000)),
                )
            except sqlite3.Error as e:
                raise KvError(f"Failed to write key {key}: {e}") from e

    async def delete(self, key: str) -> None:
        """Delete a key."""
        async with self._lock:
            try:
                self._connection().execute("DELETE FROM kv WHERE key = ?", (key,))
            except sqlite3.Error as e:
                raise KvError(f"Failed to delete key {key}: {e}") from e

    async def list(
        self,
        prefix: str = "",
        cursor: str | None = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> ListPage:
        """List one page of keys under a prefix."""
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise KvError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {limit}")

        after = self._decode_cursor(cursor) if cursor else None
        query = "SELECT key FROM kv WHERE key >= ? AND substr(key, 1, ?) = ?"
        params: list[Any] = [prefix, len(prefix), prefix]
        if after is not None:
            query += " AND key > ?"
            params.append(after)
        # Fetch one extra row to learn whether another page exists
        query += " ORDER BY key LIMIT ?"
        params.append(limit + 1)

        try:
            rows = self._connection().execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise KvError(f"Failed to list prefix {prefix!r}: {e}") from e

        keys = [row[0] for row in rows[:limit]]
        if len(rows) > limit:
            return ListPage(keys=keys, cursor=self._encode_cursor(keys[-1]), list_complete=False)
        return ListPage(keys=keys, cursor=None, list_complete=True)

    async def close(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    async def count(self) -> int:
        """Number of stored keys."""
        row = self._connection().execute("SELECT COUNT(*) FROM kv").fetchone()
        return row[0]

    @staticmethod
    def _encode_cursor(key: str) -> str:
        return base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii")

    @staticmethod
    def _decode_cursor(cursor: str) -> str:
        try:
            return base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise KvError(f"Invalid list cursor: {cursor!r}") from e
