"""
Route-log server test suite.

This package contains:
- unit/: Unit tests (in-memory and SQLite backends, fake remote APIs)
- integration/: Integration tests (HTTP API over in-memory stores)
"""
