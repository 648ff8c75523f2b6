"""
Operator tools for the route-log server.

This module provides CLI tools for:
- Restoring soft-deleted accounts from snapshots (restore)
- Exporting the key-value store to a file or the backup bucket (export)
"""
