"""
Daily backup of the key-value store to object storage.

The BackupScheduler runs as a background loop that wakes once a day at a
configured UTC time, exports every key, and writes the bundle to the
object store:

    <backup_prefix>logs-<YYYY-MM-DD>.json

The date is the UTC date of the trigger instant. A second backup on the
same day overwrites the first, so manual and scheduled runs converge to
one object per day.

Invariants:
    - The scheduled path never raises; failures are logged and the loop
      waits for the next trigger
    - Manual backups (backup_now) propagate failures to the caller
    - A bundle is uploaded only after the export completed

How to change safely:
    - Keep the object name stable; operators restore by date
    - Test the schedule arithmetic around midnight before changing it
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from ..objects.base import ObjectStore
from .snapshots import SnapshotManager

logger = logging.getLogger(__name__)

BACKUP_CONTENT_TYPE = "application/json"


def backup_name(trigger_time: datetime) -> str:
    """Object name for a backup triggered at trigger_time."""
    return f"logs-{trigger_time.astimezone(timezone.utc):%Y-%m-%d}.json"


@dataclass
class BackupResult:
    """Outcome of one backup.

    Attributes:
        name: Object name written
        key_count: Keys in the bundle
        size_bytes: Serialized size
        skipped_keys: Keys skipped as unreadable
        duration_ms: Export plus upload time
    """

    name: str
    key_count: int
    size_bytes: int
    skipped_keys: list[str]
    duration_ms: int


class BackupScheduler:
    """Exports the store to object storage once a day.

    Attributes:
        snapshots: SnapshotManager providing the export
        object_store: Backup sink
        hour_utc: Hour of day the backup fires
        minute_utc: Minute of the hour the backup fires
        skip_unreadable: Skip keys that fail to read

    Example:
        >>> scheduler = BackupScheduler(manager, S3ObjectStore(s3_config))
        >>> await scheduler.start()  # Runs until stopped
    """

    def __init__(
        self,
        snapshots: SnapshotManager,
        object_store: ObjectStore,
        hour_utc: int = 3,
        minute_utc: int = 0,
        skip_unreadable: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the scheduler.

        Args:
            snapshots: SnapshotManager instance
            object_store: ObjectStore instance
            hour_utc: Hour of day (UTC)
            minute_utc: Minute of hour (UTC)
            skip_unreadable: Skip unreadable keys instead of failing the backup
            clock: Source of the current time in Unix seconds
        """
        self.snapshots = snapshots
        self.object_store = object_store
        self.hour_utc = hour_utc
        self.minute_utc = minute_utc
        self.skip_unreadable = skip_unreadable
        self._clock = clock

        self._running = False
        self._backup_count = 0
        self._failure_count = 0
        self._last_backup: str | None = None

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def start(self) -> None:
        """Start the daily backup loop."""
        if self._running:
            logger.warning("Backup scheduler already running")
            return

        self._running = True
        logger.info(
            "Starting backup scheduler",
            extra={"backup_time_utc": f"{self.hour_utc:02d}:{self.minute_utc:02d}"},
        )

        try:
            while self._running:
                delay = self.seconds_until_next_run(self._now())
                logger.debug(f"Next backup in {delay:.0f}s")
                await asyncio.sleep(delay)
                if not self._running:
                    break
                await self.run_scheduled_backup()

        except asyncio.CancelledError:
            logger.info("Backup scheduler cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the backup loop."""
        self._running = False
        logger.info("Stopping backup scheduler")

    def seconds_until_next_run(self, now: datetime) -> float:
        """Seconds from now until the next hour_utc:minute_utc.

        A trigger time equal to now is pushed to the next day so one
        wake-up never runs twice.
        """
        now = now.astimezone(timezone.utc)
        target = now.replace(hour=self.hour_utc, minute=self.minute_utc, second=0, microsecond=0)
        if target <= now:
            target += timedelta(days=1)
        return (target - now).total_seconds()

    async def backup_now(self, trigger_time: datetime | None = None) -> BackupResult:
        """Export the store and upload it, raising on failure.

        Args:
            trigger_time: Instant that names the bundle (defaults to now)

        Returns:
            BackupResult describing the written object

        Raises:
            KvError: If the export fails
            ObjectStoreError: If the upload fails
        """
        start = time.monotonic()
        name = backup_name(trigger_time or self._now())

        bundle = await self.snapshots.export_bundle(skip_unreadable=self.skip_unreadable)
        body = bundle.to_json(indent=2).encode("utf-8")
        await self.object_store.put(name, body, BACKUP_CONTENT_TYPE)

        self._backup_count += 1
        self._last_backup = name
        result = BackupResult(
            name=name,
            key_count=bundle.key_count,
            size_bytes=len(body),
            skipped_keys=bundle.skipped_keys,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

        logger.info(
            "Backup written",
            extra={
                "backup_name": name,
                "keys": result.key_count,
                "size_bytes": result.size_bytes,
                "skipped": len(result.skipped_keys),
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def run_scheduled_backup(self, trigger_time: datetime | None = None) -> None:
        """Run one scheduled backup; failures are logged, never raised."""
        try:
            await self.backup_now(trigger_time)
        except Exception as e:
            self._failure_count += 1
            logger.error(f"Scheduled backup failed: {e}", exc_info=True)

    @property
    def stats(self) -> dict[str, Any]:
        """Get backup scheduler statistics."""
        return {
            "running": self._running,
            "backup_count": self._backup_count,
            "failure_count": self._failure_count,
            "last_backup": self._last_backup,
        }
