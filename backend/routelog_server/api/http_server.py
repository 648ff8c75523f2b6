"""
HTTP server implementation for the route-log API.

This module exposes the account, log and admin operations over a JSON
REST API consumed by the web client and by operators.

Public endpoints:
    POST /api/signup, /api/login, /api/change-password,
         /api/reset-password, /api/delete-account
    GET|POST /logs            (Authorization: <session token>)
    GET  /v1/health

Admin endpoints (adminToken query parameter or X-Admin-Token header):
    GET|POST /admin/users
    GET  /admin/deleted
    POST /admin/restore
    GET  /admin/export, POST /admin/backup-now

Invariants:
    - Account deletion is always a soft-delete
    - Admin endpoints are refused when no admin token is configured
    - Every response carries CORS headers for allowed origins

How to change safely:
    - Keep paths and field names stable; the web client is deployed separately
    - Add endpoints additively
"""

from __future__ import annotations

import asyncio
import functools
import hmac
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from .._version import __version__
from ..accounts.service import AccountError, AccountService
from ..config import DEFAULT_CORS_ORIGINS
from ..lifecycle.backup import BackupScheduler
from ..lifecycle.snapshots import SnapshotManager

logger = logging.getLogger(__name__)

# HTTP status for each AccountError code
ERROR_STATUS = {
    "INVALID_REQUEST": 400,
    "USERNAME_TAKEN": 400,
    "NOT_FOUND": 404,
    "UNAUTHORIZED": 403,
    "ACCOUNT_DELETED": 403,
}


@dataclass
class ApiContext:
    """Services the HTTP handlers call into."""

    accounts: AccountService
    snapshots: SnapshotManager
    backups: BackupScheduler
    admin_token: str | None = None


def create_http_app(
    ctx: ApiContext,
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS,
) -> web.Application:
    """Create the aiohttp application.

    Args:
        ctx: Services backing the handlers
        cors_origins: Origins allowed by CORS ("*" allows any)

    Returns:
        aiohttp Application instance
    """
    app = web.Application()

    def route(handler: Callable) -> Callable:
        return functools.partial(handler, ctx=ctx)

    app.router.add_post("/api/signup", route(handle_signup))
    app.router.add_post("/api/login", route(handle_login))
    app.router.add_post("/api/change-password", route(handle_change_password))
    app.router.add_post("/api/reset-password", route(handle_reset_password))
    app.router.add_post("/api/delete-account", route(handle_delete_account))
    app.router.add_get("/logs", route(handle_get_logs))
    app.router.add_post("/logs", route(handle_save_logs))
    app.router.add_get("/v1/health", route(handle_health))
    app.router.add_get("/admin/users", route(handle_admin_list_users))
    app.router.add_post("/admin/users", route(handle_admin_user_action))
    app.router.add_get("/admin/deleted", route(handle_admin_deleted))
    app.router.add_post("/admin/restore", route(handle_admin_restore))
    app.router.add_get("/admin/export", route(handle_admin_backup))
    app.router.add_post("/admin/backup-now", route(handle_admin_backup))

    # Add CORS middleware
    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response(status=204)
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = web.Response(
                    status=e.status, reason=e.reason, text=e.text, content_type=e.content_type
                )

        origin = request.headers.get("Origin")
        if origin and ("*" in cors_origins or origin in cors_origins):
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        response.headers["Access-Control-Max-Age"] = "86400"

        return response

    # Add error handler
    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except AccountError as e:
            return error_response(e.message, e.code, ERROR_STATUS.get(e.code, 400))
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return error_response(str(e), "INTERNAL", 500)

    app.middlewares.append(cors_middleware)
    app.middlewares.append(error_middleware)

    return app


def error_response(message: str, code: str, status: int) -> web.Response:
    return web.json_response({"error": message, "error_code": code}, status=status)


def message_response(message: str, **extra: Any) -> web.Response:
    return web.json_response({"message": message, **extra})


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body; anything else reads as {}."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def require_admin(request: web.Request, ctx: ApiContext) -> None:
    """Check the admin token.

    Raises:
        web.HTTPServiceUnavailable: If no admin token is configured
        web.HTTPForbidden: If the token is missing or wrong
    """
    if not ctx.admin_token:
        raise web.HTTPServiceUnavailable(
            text=json.dumps({"error": "Admin endpoints are disabled", "error_code": "DISABLED"}),
            content_type="application/json",
        )

    supplied = request.query.get("adminToken") or request.headers.get("X-Admin-Token") or ""
    if not hmac.compare_digest(supplied.encode("utf-8"), ctx.admin_token.encode("utf-8")):
        raise web.HTTPForbidden(
            text=json.dumps({"error": "Unauthorized", "error_code": "UNAUTHORIZED"}),
            content_type="application/json",
        )


def require_token(request: web.Request) -> str:
    """Session token from the Authorization header.

    Raises:
        web.HTTPUnauthorized: If the header is missing
    """
    token = request.headers.get("Authorization")
    if not token:
        raise web.HTTPUnauthorized(
            text=json.dumps({"error": "Missing token", "error_code": "MISSING_TOKEN"}),
            content_type="application/json",
        )
    return token


async def handle_signup(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /api/signup - Create an account."""
    body = await read_json(request)
    credentials = await ctx.accounts.signup(body.get("username"), body.get("password"))
    return web.json_response({"token": credentials.token, "resetKey": credentials.reset_key})


async def handle_login(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /api/login - Exchange a password for the session token."""
    body = await read_json(request)
    token = await ctx.accounts.login(body.get("username"), body.get("password"))
    return web.json_response({"token": token})


async def handle_change_password(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /api/change-password."""
    body = await read_json(request)
    await ctx.accounts.change_password(
        body.get("username"),
        request.headers.get("Authorization"),
        body.get("currentPassword"),
        body.get("newPassword"),
    )
    return message_response("Password changed")


async def handle_reset_password(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /api/reset-password - Reset with the signup reset key."""
    body = await read_json(request)
    await ctx.accounts.reset_password(
        body.get("username"), body.get("resetKey"), body.get("newPassword")
    )
    return message_response("Password reset")


async def handle_delete_account(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /api/delete-account - Soft-delete the caller's account."""
    body = await read_json(request)
    await ctx.accounts.delete_account(
        body.get("username"), request.headers.get("Authorization"), body.get("password")
    )
    return message_response("Account soft-deleted (recycle bin)")


async def handle_get_logs(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /logs - Raw log collection for the session token."""
    token = require_token(request)
    logs = await ctx.accounts.load_logs(token)
    return web.Response(text=logs, content_type="application/json")


async def handle_save_logs(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /logs - Replace the log collection."""
    token = require_token(request)
    await ctx.accounts.save_logs(token, await request.text())
    return message_response("Logs saved")


async def handle_health(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /v1/health - Health check."""
    return web.json_response(
        {"healthy": True, "version": __version__, "backup": ctx.backups.stats}
    )


async def handle_admin_list_users(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /admin/users - All registered usernames."""
    require_admin(request, ctx)
    return web.json_response(await ctx.accounts.list_usernames())


async def handle_admin_user_action(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /admin/users - delete or reset-password on a user."""
    require_admin(request, ctx)
    body = await read_json(request)
    action = body.get("action")
    username = body.get("username")

    if not username or await ctx.accounts.get_account(username) is None:
        return error_response("User not found", "NOT_FOUND", 404)

    if action == "delete":
        await ctx.snapshots.soft_delete(username)
        return message_response("User soft-deleted (snapshot kept)")

    if action == "reset-password":
        if not body.get("tempPassword"):
            return error_response("Missing tempPassword", "INVALID_REQUEST", 400)
        await ctx.accounts.admin_reset_password(username, body["tempPassword"])
        return message_response("Password reset")

    return error_response("Unknown action", "INVALID_REQUEST", 400)


async def handle_admin_deleted(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /admin/deleted - List snapshot keys."""
    require_admin(request, ctx)
    refs = await ctx.snapshots.list_snapshots(username=request.query.get("username"))
    return web.json_response([ref.key for ref in refs])


async def handle_admin_restore(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /admin/restore - Restore a user from a snapshot."""
    require_admin(request, ctx)
    body = await read_json(request)
    username = body.get("username")
    if not username:
        return error_response("Missing username", "INVALID_REQUEST", 400)

    if not await ctx.snapshots.restore(username, body.get("deletedKey") or None):
        return error_response("Restore failed or snapshot not found", "NOT_FOUND", 404)
    return message_response("Restore successful")


async def handle_admin_backup(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /admin/export and POST /admin/backup-now."""
    require_admin(request, ctx)
    result = await ctx.backups.backup_now()
    return message_response(
        f"Backup written as {result.name}",
        name=result.name,
        keys=result.key_count,
        skipped_keys=result.skipped_keys,
    )


async def run_http_server(
    app: web.Application,
    host: str = "0.0.0.0",
    port: int = 8080,
) -> None:
    """Run the HTTP server until cancelled.

    Args:
        app: Application from create_http_app
        host: Host to bind to
        port: Port to listen on
    """
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"HTTP server running on http://{host}:{port}")

    # Keep running until cancelled
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await runner.cleanup()
