"""
Export CLI tool for the route-log server.

Dumps every key in the key-value store to a local JSON file, streaming
entries as they are read, or runs a backup to the object store.

Usage:
    routelog-export --output backup.json [--skip-unreadable]
    routelog-export --upload

Invariants:
    - The output file is written to a temporary name and renamed on success
    - Without --skip-unreadable, one unreadable key fails the export
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from ..config import ServerConfig
from ..kv import KeyValueStore, create_kv_store
from ..lifecycle.backup import BackupScheduler
from ..lifecycle.snapshots import SnapshotManager
from ..objects import create_object_store

logger = logging.getLogger(__name__)


async def export_to_file(
    manager: SnapshotManager,
    output: Path,
    skip_unreadable: bool = False,
) -> list[str]:
    """Stream the export into output.

    Returns:
        Keys skipped as unreadable
    """
    skipped: list[str] = []
    tmp_path = output.with_name(output.name + ".tmp")
    output.parent.mkdir(parents=True, exist_ok=True)

    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            async for chunk in manager.iter_export_chunks(skip_unreadable, skipped):
                f.write(chunk)
        os.replace(tmp_path, output)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()

    return skipped


async def _run(args: argparse.Namespace) -> int:
    config = ServerConfig.from_env()
    store: KeyValueStore = create_kv_store(config.kv)
    manager = SnapshotManager(store, page_size=config.kv.page_size, max_pages=config.kv.max_pages)

    try:
        if args.upload:
            object_store = create_object_store(config.backup, config.s3)
            scheduler = BackupScheduler(manager, object_store, skip_unreadable=args.skip_unreadable)
            try:
                result = await scheduler.backup_now()
            finally:
                await object_store.close()
            print(f"Backup written as {result.name} ({result.key_count} keys)")
            skipped = result.skipped_keys
        else:
            skipped = await export_to_file(manager, Path(args.output), args.skip_unreadable)
            print(f"Export written to {args.output}")
    except Exception as e:
        logger.error(f"Export failed: {e}", exc_info=True)
        print(f"Export failed: {e}")
        return 1
    finally:
        await store.close()

    for key in skipped:
        print(f"  skipped unreadable key: {key}")
    return 0


def main() -> None:
    """CLI entry point for export tool."""
    parser = argparse.ArgumentParser(description="Export the route-log key-value store")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--output", help="Local file to write the JSON export to")
    target.add_argument("--upload", action="store_true", help="Write today's backup to the object store")
    parser.add_argument(
        "--skip-unreadable", action="store_true", help="Skip keys that fail to read"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
