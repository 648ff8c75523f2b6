"""
API layer for the route-log server.

This module provides the JSON REST API used by the web client and by
operators (admin endpoints for snapshots, restore and backups).

Invariants:
    - Handlers contain no storage logic; they call the services
    - Errors are returned as {"error": ..., "error_code": ...}
"""

from .http_server import ApiContext, create_http_app, run_http_server

__all__ = [
    "ApiContext",
    "create_http_app",
    "run_http_server",
]
