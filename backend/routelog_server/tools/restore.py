"""
Restore CLI tool for the route-log server.

This tool restores a soft-deleted account from its snapshots, or lists
the snapshots available for an account.

Usage:
    routelog-restore --username <name> [--snapshot-key <key>] [--list]

The key-value backend is selected with the same environment variables as
the server (KV_BACKEND, KV_SQLITE_PATH, CF_*).

Invariants:
    - Restore is idempotent (can be re-run safely)
    - Snapshots are never removed by a restore
    - All operations are logged

How to change safely:
    - Keep exit codes stable; runbooks check them
    - Add new modes additively
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass

from ..config import KvConfig
from ..kv import KeyValueStore, create_kv_store
from ..lifecycle.snapshots import SnapshotManager, SnapshotRef

logger = logging.getLogger(__name__)


@dataclass
class RestoreResult:
    """Result of restore operation.

    Attributes:
        success: Whether restore succeeded
        username: Account restored
        snapshot_key: Snapshot requested (None means latest)
        duration_ms: Total restore duration
        error: Error message if failed
    """

    success: bool
    username: str
    snapshot_key: str | None
    duration_ms: int
    error: str | None = None


class RestoreTool:
    """Tool for restoring accounts from snapshots.

    Example:
        >>> tool = RestoreTool(store)
        >>> result = await tool.restore("alice")
        >>> result.success
        True
    """

    def __init__(
        self,
        store: KeyValueStore,
        page_size: int = 1000,
        max_pages: int | None = None,
    ) -> None:
        """Initialize the restore tool.

        Args:
            store: Key-value store holding the snapshots
            page_size: Keys per list call
            max_pages: Optional ceiling on list calls per enumeration
        """
        self.store = store
        self.manager = SnapshotManager(store, page_size=page_size, max_pages=max_pages)

    async def list_snapshots(self, username: str) -> list[SnapshotRef]:
        """Account snapshots for a user, newest first."""
        return await self.manager.list_snapshots(username=username)

    async def restore(self, username: str, snapshot_key: str | None = None) -> RestoreResult:
        """Execute the restore operation.

        Returns:
            RestoreResult indicating success/failure
        """
        start_time = time.time()
        logger.info(f"Starting restore for {username}")

        try:
            ok = await self.manager.restore(username, snapshot_key)
            error = None if ok else "no matching snapshot"
        except Exception as e:
            logger.error(f"Restore failed: {e}", exc_info=True)
            ok = False
            error = str(e)

        return RestoreResult(
            success=ok,
            username=username,
            snapshot_key=snapshot_key,
            duration_ms=int((time.time() - start_time) * 1000),
            error=error,
        )


async def _run(args: argparse.Namespace) -> int:
    config = KvConfig.from_env()
    store = create_kv_store(config)
    tool = RestoreTool(store, page_size=config.page_size, max_pages=config.max_pages)

    try:
        if args.list:
            refs = await tool.list_snapshots(args.username)
            if not refs:
                print(f"No snapshots for {args.username}")
                return 1
            for ref in refs:
                print(f"{ref.key}  ({time.strftime('%Y-%m-%d %H:%M:%S', time.gmtime(ref.timestamp_ms / 1000))} UTC)")
            return 0

        result = await tool.restore(args.username, args.snapshot_key)
    finally:
        await store.close()

    if result.success:
        print("Restore completed successfully")
        print(f"  Username: {result.username}")
        print(f"  Snapshot: {result.snapshot_key or 'latest'}")
        print(f"  Duration: {result.duration_ms}ms")
        return 0

    print(f"Restore failed: {result.error}")
    return 1


def main() -> None:
    """CLI entry point for restore tool."""
    parser = argparse.ArgumentParser(
        description="Restore a soft-deleted route-log account from its snapshots"
    )
    parser.add_argument("--username", required=True, help="Account to restore")
    parser.add_argument("--snapshot-key", help="Specific snapshot key (default: latest)")
    parser.add_argument("--list", action="store_true", help="List snapshots and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
