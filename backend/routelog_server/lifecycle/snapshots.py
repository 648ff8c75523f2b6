"""
Soft-delete, restore and export for route-log accounts.

Deleting an account never removes data. The live records are copied to
immutable snapshot keys first, then flagged in place:

    user:<username>                      live account (JSON object)
    logs:<token>                         live log collection (raw client body)
    deleted:user:<username>:<unix_ms>    account snapshot
    deleted:logs:<token>:<unix_ms>       log collection snapshot

Restore copies a snapshot back over the live key. Snapshots are kept, so
a restore can be repeated or redone from an older point in time.

Invariants:
    - Soft-delete writes the snapshot before touching the live record
    - Snapshot timestamps per subject are unique and strictly increasing
    - Account and logs snapshots of one soft-delete share a timestamp
    - Snapshot values are byte-for-byte copies of the live value
    - Export enumerates the whole namespace through the pager

How to change safely:
    - Steps must stay individually idempotent; there are no transactions
      and a failed soft-delete is retried from the top
    - Keep timestamps at millisecond resolution (13 digits) so key order
      matches chronological order
    - New account fields must not be required by restore
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..kv.base import MAX_PAGE_SIZE, KeyValueStore, KvError
from .pager import iter_keys

logger = logging.getLogger(__name__)

USER_PREFIX = "user:"
LOGS_PREFIX = "logs:"
SNAPSHOT_PREFIX = "deleted:"

# Flags written into live records by soft-delete
ACCOUNT_DELETED_FIELDS = ("deleted", "deletedAt")
LOGS_DELETED_FIELDS = ("__deleted", "__deletedAt")


class MalformedRecordError(Exception):
    """A live account record is not a JSON object."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Malformed record at {key}: {reason}")
        self.key = key


class SnapshotKind(Enum):
    """Kinds of snapshotted records."""

    USER = "user"
    LOGS = "logs"


def user_key(username: str) -> str:
    return f"{USER_PREFIX}{username}"


def logs_key(token: str) -> str:
    return f"{LOGS_PREFIX}{token}"


def snapshot_prefix(kind: SnapshotKind, subject: str) -> str:
    return f"{SNAPSHOT_PREFIX}{kind.value}:{subject}:"


def snapshot_key(kind: SnapshotKind, subject: str, timestamp_ms: int) -> str:
    return f"{snapshot_prefix(kind, subject)}{timestamp_ms}"


def encode_json(value: Any) -> str:
    """Compact JSON, matching what the web client writes."""
    return json.dumps(value, separators=(",", ":"))


@dataclass(frozen=True)
class SnapshotRef:
    """A parsed snapshot key.

    Attributes:
        key: Full snapshot key
        kind: Record kind
        subject: Username (user) or session token (logs)
        timestamp_ms: Creation instant in Unix ms
    """

    key: str
    kind: SnapshotKind
    subject: str
    timestamp_ms: int

    @classmethod
    def parse(cls, key: str) -> SnapshotRef | None:
        """Parse a snapshot key, returning None if it is not one.

        The subject may itself contain ':'; the timestamp is everything
        after the last ':' and must be all digits.
        """
        if not key.startswith(SNAPSHOT_PREFIX):
            return None
        kind_str, _, remainder = key[len(SNAPSHOT_PREFIX):].partition(":")
        subject, _, ts = remainder.rpartition(":")
        if not subject or not ts.isdigit():
            return None
        try:
            kind = SnapshotKind(kind_str)
        except ValueError:
            return None
        return cls(key=key, kind=kind, subject=subject, timestamp_ms=int(ts))

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "kind": self.kind.value,
            "subject": self.subject,
            "timestamp_ms": self.timestamp_ms,
        }


@dataclass
class ExportBundle:
    """A point-in-time dump of the key-value namespace.

    Attributes:
        entries: Key to raw value
        exported_at: When enumeration started (UTC)
        skipped_keys: Keys that could not be read (skip mode only)
    """

    entries: dict[str, str]
    exported_at: datetime
    skipped_keys: list[str] = field(default_factory=list)

    @property
    def key_count(self) -> int:
        return len(self.entries)

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.entries, indent=indent)


class SnapshotManager:
    """Owns the soft-delete, restore and export semantics.

    Attributes:
        store: Key-value store holding live records and snapshots
        page_size: Keys requested per list call
        max_pages: Optional ceiling on list calls per enumeration

    Example:
        >>> manager = SnapshotManager(store)
        >>> await manager.soft_delete("alice")
        True
        >>> await manager.restore("alice")
        True
    """

    def __init__(
        self,
        store: KeyValueStore,
        page_size: int = MAX_PAGE_SIZE,
        max_pages: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Key-value store
            page_size: Keys per list call
            max_pages: Ceiling on list calls per enumeration
            clock: Source of the current time in Unix seconds
        """
        self.store = store
        self.page_size = page_size
        self.max_pages = max_pages
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _now_iso(self) -> str:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def _iter_keys(self, prefix: str) -> AsyncIterator[str]:
        return iter_keys(self.store, prefix, self.page_size, self.max_pages)

    # ------------------------------------------------------------------
    # Snapshot lookup
    # ------------------------------------------------------------------

    async def snapshots_for(self, kind: SnapshotKind, subject: str) -> list[SnapshotRef]:
        """All snapshots of one subject, oldest first."""
        refs = []
        async for key in self._iter_keys(snapshot_prefix(kind, subject)):
            ref = SnapshotRef.parse(key)
            # The prefix for "bob" also matches snapshots of "bob:x"
            if ref is not None and ref.kind == kind and ref.subject == subject:
                refs.append(ref)
        return sorted(refs, key=lambda r: r.timestamp_ms)

    async def latest_snapshot(self, kind: SnapshotKind, subject: str) -> SnapshotRef | None:
        """Most recent snapshot of a subject, or None."""
        refs = await self.snapshots_for(kind, subject)
        return refs[-1] if refs else None

    async def list_snapshots(
        self,
        username: str | None = None,
        kind: SnapshotKind | None = None,
    ) -> list[SnapshotRef]:
        """List snapshots, newest first within each subject.

        Args:
            username: Only this user's account snapshots
            kind: Only snapshots of this kind (ignored when username is given)
        """
        if username is not None:
            refs = await self.snapshots_for(SnapshotKind.USER, username)
            return list(reversed(refs))

        prefix = f"{SNAPSHOT_PREFIX}{kind.value}:" if kind else SNAPSHOT_PREFIX
        refs = []
        async for key in self._iter_keys(prefix):
            ref = SnapshotRef.parse(key)
            if ref is not None:
                refs.append(ref)
        return sorted(refs, key=lambda r: (r.kind.value, r.subject, -r.timestamp_ms))

    async def _next_timestamp(self, username: str, token: str | None) -> int:
        """Pick a snapshot timestamp later than every existing one for the subjects."""
        ts = self._now_ms()
        subjects = [(SnapshotKind.USER, username)]
        if token:
            subjects.append((SnapshotKind.LOGS, token))

        for kind, subject in subjects:
            latest = await self.latest_snapshot(kind, subject)
            if latest is not None and latest.timestamp_ms >= ts:
                ts = latest.timestamp_ms + 1

        # A concurrent soft-delete may have claimed ts after we listed
        while any([await self.store.get(snapshot_key(k, s, ts)) is not None for k, s in subjects]):
            ts += 1
        return ts

    # ------------------------------------------------------------------
    # Soft-delete
    # ------------------------------------------------------------------

    def _parse_account(self, key: str, raw: str) -> dict[str, Any]:
        try:
            record = json.loads(raw)
        except ValueError as e:
            raise MalformedRecordError(key, f"invalid JSON ({e})") from e
        if not isinstance(record, dict):
            raise MalformedRecordError(key, f"expected object, got {type(record).__name__}")
        return record

    async def soft_delete(self, username: str) -> bool:
        """Snapshot an account and its logs, then flag both as deleted.

        Args:
            username: Account to delete

        Returns:
            True on success, False if no live account exists

        Raises:
            MalformedRecordError: If the live account is not a JSON object
            KvError: On store failure (steps already written are kept)
        """
        live_key = user_key(username)
        raw = await self.store.get(live_key)
        if raw is None:
            logger.info("Soft-delete skipped, no live account", extra={"username": username})
            return False

        account = self._parse_account(live_key, raw)
        token = account.get("token") if isinstance(account.get("token"), str) else None
        ts = await self._next_timestamp(username, token)

        account_snapshot = snapshot_key(SnapshotKind.USER, username, ts)
        await self.store.put(account_snapshot, raw)

        account["deleted"] = True
        account["deletedAt"] = self._now_iso()
        await self.store.put(live_key, encode_json(account))

        logs_snapshot = await self._snapshot_logs(token, ts) if token else None

        logger.info(
            "Account soft-deleted",
            extra={
                "username": username,
                "snapshot_ts": ts,
                "account_snapshot": account_snapshot,
                "logs_snapshot": logs_snapshot,
            },
        )
        return True

    async def _snapshot_logs(self, token: str, ts: int) -> str | None:
        """Snapshot a log collection and annotate the live copy.

        Returns:
            The snapshot key, or None if the account has no logs
        """
        live_key = logs_key(token)
        raw = await self.store.get(live_key)
        if raw is None:
            return None

        key = snapshot_key(SnapshotKind.LOGS, token, ts)
        await self.store.put(key, raw)

        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.debug("Logs payload is not JSON, left unannotated", extra={"logs_key": live_key})
            return key

        if isinstance(parsed, dict):
            parsed["__deleted"] = True
            parsed["__deletedAt"] = self._now_iso()
            await self.store.put(live_key, encode_json(parsed))
        else:
            logger.debug(
                "Logs payload is not an object, left unannotated",
                extra={"logs_key": live_key, "payload_type": type(parsed).__name__},
            )
        return key

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    @staticmethod
    def _strip_fields(raw: str, fields: tuple[str, ...]) -> str:
        """Drop deletion flags from a JSON object; other values pass through unchanged."""
        try:
            parsed = json.loads(raw)
        except ValueError:
            return raw
        if not isinstance(parsed, dict) or not any(f in parsed for f in fields):
            return raw
        for f in fields:
            parsed.pop(f, None)
        return encode_json(parsed)

    async def restore(self, username: str, snapshot_key: str | None = None) -> bool:
        """Restore an account (and its logs) from a snapshot.

        Args:
            username: Account to restore
            snapshot_key: Specific account snapshot; defaults to the latest

        Returns:
            True on success, False if no usable snapshot was found

        Raises:
            KvError: On store failure
        """
        if snapshot_key is not None:
            ref = SnapshotRef.parse(snapshot_key)
            if ref is None or ref.kind != SnapshotKind.USER or ref.subject != username:
                logger.warning(
                    "Restore rejected, key is not an account snapshot for this user",
                    extra={"username": username, "snapshot_key": snapshot_key},
                )
                return False
        else:
            ref = await self.latest_snapshot(SnapshotKind.USER, username)
            if ref is None:
                logger.info("Restore skipped, no snapshots", extra={"username": username})
                return False

        raw = await self.store.get(ref.key)
        if raw is None:
            logger.warning(
                "Restore failed, snapshot not found",
                extra={"username": username, "snapshot_key": ref.key},
            )
            return False

        restored = self._strip_fields(raw, ACCOUNT_DELETED_FIELDS)
        await self.store.put(user_key(username), restored)

        logs_ref = None
        token = self._token_of(restored)
        if token:
            logs_ref = await self._restore_logs(token, ref.timestamp_ms)

        logger.info(
            "Account restored",
            extra={
                "username": username,
                "snapshot_key": ref.key,
                "logs_snapshot": logs_ref.key if logs_ref else None,
            },
        )
        return True

    @staticmethod
    def _token_of(raw: str) -> str | None:
        try:
            record = json.loads(raw)
        except ValueError:
            return None
        if isinstance(record, dict) and isinstance(record.get("token"), str):
            return record["token"]
        return None

    async def _restore_logs(self, token: str, paired_ts: int) -> SnapshotRef | None:
        """Restore the logs snapshot taken with the account snapshot, else the latest one."""
        paired = snapshot_key(SnapshotKind.LOGS, token, paired_ts)
        raw = await self.store.get(paired)
        ref = SnapshotRef.parse(paired)

        if raw is None:
            ref = await self.latest_snapshot(SnapshotKind.LOGS, token)
            if ref is None:
                return None
            raw = await self.store.get(ref.key)
            if raw is None:
                return None

        await self.store.put(logs_key(token), self._strip_fields(raw, LOGS_DELETED_FIELDS))
        return ref

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def _iter_entries(
        self,
        skip_unreadable: bool,
        skipped: list[str],
    ) -> AsyncIterator[tuple[str, str]]:
        async for key in self._iter_keys(""):
            try:
                value = await self.store.get(key)
            except KvError as e:
                if not skip_unreadable:
                    raise
                logger.warning(f"Skipping unreadable key during export: {e}", extra={"key": key})
                skipped.append(key)
                continue

            if value is None:
                # Deleted between list and get
                logger.debug("Key vanished during export", extra={"key": key})
                continue
            yield key, value

    async def export_bundle(self, skip_unreadable: bool = False) -> ExportBundle:
        """Read every key in the store.

        Args:
            skip_unreadable: Record and skip keys whose read fails instead
                of aborting the export

        Raises:
            KvError: On listing failure, or any read failure unless skipping
        """
        exported_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        skipped: list[str] = []
        entries = {key: value async for key, value in self._iter_entries(skip_unreadable, skipped)}

        logger.info(
            "Export completed",
            extra={"keys": len(entries), "skipped": len(skipped)},
        )
        return ExportBundle(entries=entries, exported_at=exported_at, skipped_keys=skipped)

    async def export(self) -> dict[str, str]:
        """Full-store dump; any unreadable key aborts the export."""
        bundle = await self.export_bundle()
        return bundle.entries

    async def iter_export_chunks(
        self,
        skip_unreadable: bool = False,
        skipped: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Stream the export as JSON text, one entry per chunk.

        The concatenated chunks equal ExportBundle.to_json(indent=2).

        Args:
            skip_unreadable: See export_bundle
            skipped: Optional list that collects skipped keys
        """
        skipped = skipped if skipped is not None else []
        yield "{"
        first = True
        async for key, value in self._iter_entries(skip_unreadable, skipped):
            separator = "\n" if first else ",\n"
            first = False
            yield f"{separator}  {json.dumps(key)}: {json.dumps(value)}"
        yield "}" if first else "\n}"
