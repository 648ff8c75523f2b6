"""
Route-log Server - account and log storage with a recoverable data lifecycle.

This package implements the backend of a route-logging application on top of:
- A hosted key-value store holding accounts and per-account log collections
- An object store used as the sink for daily backups

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Client    │────▶│  HTTP API   │────▶│ AccountService  │
    │  (browser)  │     │  (aiohttp)  │     │                 │
    └─────────────┘     └──────┬──────┘     └────────┬────────┘
                               │  admin              │ delete-account
                               ▼                     ▼
                        ┌─────────────────────────────────────────┐
                        │            SnapshotManager              │
                        │   soft-delete / restore / export        │
                        └────────────────────┬────────────────────┘
                                             │
                        ┌────────────────────┼────────────────────┐
                        │                    │                    │
                        ▼                    ▼                    ▼
                   ┌─────────┐         ┌──────────┐        ┌──────────┐
                   │  Pager  │────────▶│ KV store │        │ Backup   │
                   └─────────┘         │(SQLite/CF)│       │Scheduler │
                                       └──────────┘        └────┬─────┘
                                                                ▼
                                                          ┌──────────┐
                                                          │ S3 / R2  │
                                                          │(backups) │
                                                          └──────────┘

Invariants:
    - Accounts are never hard-deleted; soft-delete snapshots then flags
    - Snapshots are immutable and keyed by a strictly increasing timestamp
    - Exports enumerate every key across all list pages
    - Scheduled backups never raise into the event loop

How to change safely:
    - Keep the persisted key layout stable (user:, logs:, deleted:)
    - New record fields must be optional; old snapshots must stay restorable
    - Test restore against snapshots written by older versions

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
