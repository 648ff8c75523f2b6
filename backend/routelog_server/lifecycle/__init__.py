"""
Data lifecycle for the route-log server.

This module handles everything that keeps account data recoverable:
- Exhaustive key enumeration across list pages (pager)
- Soft-delete with timestamped snapshots, and restore (snapshots)
- Full-store export and the daily backup to object storage (backup)

Invariants:
    - Nothing in this package hard-deletes a key
    - Snapshots are immutable once written
    - Exports never drop a key that was listed and readable
"""

from .backup import BackupResult, BackupScheduler, backup_name
from .pager import PaginationError, PaginationLimitExceeded, collect_keys, iter_keys
from .snapshots import (
    ExportBundle,
    MalformedRecordError,
    SnapshotKind,
    SnapshotManager,
    SnapshotRef,
)

__all__ = [
    "BackupScheduler",
    "BackupResult",
    "backup_name",
    "iter_keys",
    "collect_keys",
    "PaginationError",
    "PaginationLimitExceeded",
    "SnapshotManager",
    "SnapshotRef",
    "SnapshotKind",
    "ExportBundle",
    "MalformedRecordError",
]
