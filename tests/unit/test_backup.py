"""
Unit tests for the daily backup and the object stores.

Tests cover:
- Backup naming and same-day overwrite
- Manual vs scheduled failure handling
- Schedule arithmetic
- The scheduler loop
- S3 and in-memory object stores
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError

from backend.routelog_server.config import S3Config
from backend.routelog_server.kv.base import KvConnectionError
from backend.routelog_server.kv.memory import InMemoryKeyValueStore
from backend.routelog_server.lifecycle.backup import (
    BACKUP_CONTENT_TYPE,
    BackupScheduler,
    backup_name,
)
from backend.routelog_server.lifecycle.snapshots import SnapshotManager
from backend.routelog_server.objects.base import ObjectStoreError
from backend.routelog_server.objects.memory import InMemoryObjectStore
from backend.routelog_server.objects.s3 import S3ObjectStore

MORNING = datetime(2024, 6, 1, 3, 0, tzinfo=timezone.utc)
EVENING = datetime(2024, 6, 1, 21, 30, tzinfo=timezone.utc)


class FakeS3Client:
    """Records put_object calls."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def put_object(self, **kwargs):
        if self.error:
            raise self.error
        self.calls.append(kwargs)
        return {"ETag": '"etag"'}


@pytest.fixture
def store():
    return InMemoryKeyValueStore({"user:alice": '{"token":"t-1"}', "logs:t-1": "[]"})


@pytest.fixture
def sink():
    return InMemoryObjectStore()


@pytest.fixture
def scheduler(store, sink):
    return BackupScheduler(SnapshotManager(store), sink)


class TestBackupName:
    """Tests for backup object naming."""

    def test_uses_utc_date(self):
        """Names carry the UTC date of the trigger."""
        assert backup_name(MORNING) == "logs-2024-06-01.json"

    def test_converts_to_utc(self):
        """An evening trigger west of UTC names the next UTC day."""
        eastern = timezone(timedelta(hours=-5))
        trigger = datetime(2024, 6, 1, 20, 0, tzinfo=eastern)

        assert backup_name(trigger) == "logs-2024-06-02.json"


class TestBackupNow:
    """Tests for manual backups."""

    @pytest.mark.asyncio
    async def test_writes_full_export(self, scheduler, sink):
        """The blob holds every key as indented JSON."""
        result = await scheduler.backup_now(MORNING)

        assert result.name == "logs-2024-06-01.json"
        assert result.key_count == 2
        stored = sink.objects["logs-2024-06-01.json"]
        assert stored.content_type == BACKUP_CONTENT_TYPE
        assert json.loads(stored.body) == {"user:alice": '{"token":"t-1"}', "logs:t-1": "[]"}
        assert result.size_bytes == len(stored.body)
        assert stored.body.startswith(b"{\n  ")

    @pytest.mark.asyncio
    async def test_same_day_overwrites(self, scheduler, sink, store):
        """Two runs on one date leave one blob with the second run's data."""
        await scheduler.run_scheduled_backup(MORNING)
        await store.put("user:bob", "{}")
        await scheduler.run_scheduled_backup(EVENING)

        assert sink.names() == ["logs-2024-06-01.json"]
        assert "user:bob" in json.loads(sink.read("logs-2024-06-01.json"))
        assert sink.objects["logs-2024-06-01.json"].write_count == 2

    @pytest.mark.asyncio
    async def test_export_failure_propagates(self, scheduler, store, sink):
        """Manual backups raise and upload nothing."""
        store.inject_failure("list", KvConnectionError("down"))

        with pytest.raises(KvConnectionError):
            await scheduler.backup_now(MORNING)

        assert sink.names() == []

    @pytest.mark.asyncio
    async def test_upload_failure_propagates(self, scheduler, sink):
        """Object store errors reach the caller."""
        sink.inject_failure(ObjectStoreError("denied"))

        with pytest.raises(ObjectStoreError):
            await scheduler.backup_now(MORNING)

    @pytest.mark.asyncio
    async def test_skip_unreadable(self, store, sink):
        """Skip mode backs up the readable keys."""
        store.fail_key("logs:t-1")
        scheduler = BackupScheduler(SnapshotManager(store), sink, skip_unreadable=True)

        result = await scheduler.backup_now(MORNING)

        assert result.skipped_keys == ["logs:t-1"]
        assert list(json.loads(sink.read(result.name))) == ["user:alice"]

    @pytest.mark.asyncio
    async def test_defaults_to_clock_date(self, store, sink):
        """Without a trigger time the clock names the blob."""
        scheduler = BackupScheduler(
            SnapshotManager(store), sink, clock=lambda: EVENING.timestamp()
        )

        result = await scheduler.backup_now()

        assert result.name == "logs-2024-06-01.json"


class TestScheduledBackup:
    """Tests for the scheduled path."""

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self, scheduler, store, sink):
        """Scheduled failures are counted and logged, not raised."""
        store.inject_failure("list", KvConnectionError("down"))

        await scheduler.run_scheduled_backup(MORNING)

        assert sink.names() == []
        assert scheduler.stats["failure_count"] == 1
        assert scheduler.stats["backup_count"] == 0

    @pytest.mark.asyncio
    async def test_stats(self, scheduler):
        """Stats track the last successful backup."""
        await scheduler.run_scheduled_backup(MORNING)

        stats = scheduler.stats
        assert stats["backup_count"] == 1
        assert stats["last_backup"] == "logs-2024-06-01.json"
        assert stats["running"] is False

    @pytest.mark.parametrize(
        "now,expected",
        [
            (datetime(2024, 6, 1, 2, 0, tzinfo=timezone.utc), 3600),
            (datetime(2024, 6, 1, 3, 0, tzinfo=timezone.utc), 86400),
            (datetime(2024, 6, 1, 4, 0, tzinfo=timezone.utc), 23 * 3600),
            (datetime(2024, 6, 1, 2, 59, 59, 500000, tzinfo=timezone.utc), 0.5),
        ],
    )
    def test_seconds_until_next_run(self, scheduler, now, expected):
        """The next trigger is the next 03:00 UTC strictly after now."""
        assert scheduler.seconds_until_next_run(now) == expected

    def test_custom_minute(self, store, sink):
        """Minute of the hour is honoured."""
        scheduler = BackupScheduler(SnapshotManager(store), sink, hour_utc=0, minute_utc=30)

        now = datetime(2024, 6, 1, 23, 45, tzinfo=timezone.utc)
        assert scheduler.seconds_until_next_run(now) == 45 * 60

    @pytest.mark.asyncio
    async def test_loop_runs_backup_after_sleep(self, scheduler, sink, monkeypatch):
        """The loop sleeps until the trigger, backs up, and stops on request."""
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)
            if len(delays) >= 2:
                await scheduler.stop()

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)

        await scheduler.start()

        assert len(delays) == 2
        assert len(sink.names()) == 1
        assert scheduler.stats["running"] is False

    @pytest.mark.asyncio
    async def test_loop_survives_failures(self, scheduler, store, sink, monkeypatch):
        """A failed scheduled run does not end the loop."""
        store.inject_failure("list", KvConnectionError("down"))
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)
            if len(delays) >= 3:
                await scheduler.stop()

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)

        await scheduler.start()

        assert scheduler.stats["failure_count"] == 1
        assert scheduler.stats["backup_count"] == 1


class TestS3ObjectStore:
    """Tests for S3ObjectStore with a fake client."""

    @pytest.mark.asyncio
    async def test_put_object(self):
        """Uploads go to bucket/prefix+name with the content type."""
        client = FakeS3Client()
        store = S3ObjectStore(S3Config(bucket="backups", backup_prefix="routelog/"), client=client)

        await store.put("logs-2024-06-01.json", b"{}", "application/json")

        assert client.calls == [
            {
                "Bucket": "backups",
                "Key": "routelog/logs-2024-06-01.json",
                "Body": b"{}",
                "ContentType": "application/json",
            }
        ]

    @pytest.mark.asyncio
    async def test_client_error_wrapped(self):
        """botocore errors become ObjectStoreError."""
        error = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        store = S3ObjectStore(S3Config(bucket="backups"), client=FakeS3Client(error))

        with pytest.raises(ObjectStoreError) as exc_info:
            await store.put("logs-2024-06-01.json", b"{}", "application/json")

        assert exc_info.value.name == "logs-2024-06-01.json"

    @pytest.mark.asyncio
    async def test_close_with_injected_client(self):
        """Closing a store with an injected client drops it."""
        store = S3ObjectStore(S3Config(), client=FakeS3Client())

        await store.close()

        assert store._s3_client is None


class TestInMemoryObjectStore:
    """Tests for InMemoryObjectStore."""

    @pytest.mark.asyncio
    async def test_rejects_text_body(self):
        """Bodies must be bytes."""
        with pytest.raises(ObjectStoreError):
            await InMemoryObjectStore().put("x", "text", "text/plain")
