"""
Entry point for the route-log server.

Startup order:
    1. Configuration from the environment (fails fast on bad values)
    2. Key-value store and backup sink clients
    3. SnapshotManager, AccountService and BackupScheduler
    4. HTTP API, plus the daily backup loop when enabled

Usage:
    routelog-server

    KV_BACKEND=cloudflare CF_ACCOUNT_ID=... CF_KV_NAMESPACE_ID=... \\
    CF_API_TOKEN=... S3_BUCKET=... ADMIN_TOKEN=... routelog-server

Invariants:
    - Stores are open before the first request is accepted
    - SIGTERM/SIGINT cancel the HTTP and backup tasks before stores close
    - A backup in flight at shutdown is abandoned, never half-uploaded

How to change safely:
    - New background loops go into Server.start() and must honour cancellation
    - Keep store shutdown last; handlers may still be draining
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any

import json_log_formatter

from .accounts import AccountService
from .api import ApiContext, create_http_app, run_http_server
from .config import ObservabilityConfig, ServerConfig
from .kv import KeyValueStore, create_kv_store
from .lifecycle import BackupScheduler, SnapshotManager
from .objects import ObjectStore, create_object_store

logger = logging.getLogger(__name__)

TEXT_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Chatty third-party loggers capped at WARNING
NOISY_LOGGERS = ("aiohttp.access", "botocore", "aiobotocore")


class RouteLogJSONFormatter(json_log_formatter.JSONFormatter):
    """JSON lines with level and logger name next to the extra= fields."""

    def json_record(self, message: str, extra: dict[str, Any], record: logging.LogRecord) -> dict[str, Any]:
        extra = super().json_record(message, extra, record)
        extra["level"] = record.levelname
        extra["logger"] = record.name
        return extra


def setup_logging(observability: ObservabilityConfig) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        observability: Log level and format (json or text)
    """
    if observability.log_format == "json":
        formatter: logging.Formatter = RouteLogJSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_LOG_FORMAT)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, observability.log_level.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class Server:
    """Owns the store clients and the long-running tasks.

    Example:
        >>> server = Server(ServerConfig.from_env())
        >>> await server.start()   # returns after request_shutdown()
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.kv: KeyValueStore | None = None
        self.object_store: ObjectStore | None = None
        self.backups: BackupScheduler | None = None
        self._tasks: list[asyncio.Task] = []
        self._shutdown = asyncio.Event()

    def build(self) -> ApiContext:
        """Open store clients and wire the services that use them."""
        self.kv = create_kv_store(self.config.kv)
        self.object_store = create_object_store(self.config.backup, self.config.s3)

        snapshots = SnapshotManager(
            self.kv,
            page_size=self.config.kv.page_size,
            max_pages=self.config.kv.max_pages,
        )
        self.backups = BackupScheduler(
            snapshots,
            self.object_store,
            hour_utc=self.config.backup.hour_utc,
            minute_utc=self.config.backup.minute_utc,
            skip_unreadable=self.config.backup.skip_unreadable,
        )
        return ApiContext(
            accounts=AccountService(self.kv, snapshots),
            snapshots=snapshots,
            backups=self.backups,
            admin_token=self.config.admin.admin_token,
        )

    async def start(self) -> None:
        """Serve until request_shutdown() is called.

        Raises:
            Exception: Whatever a background task died with
        """
        self.config.log_config()
        ctx = self.build()
        app = create_http_app(ctx, cors_origins=self.config.http.cors_origins)

        self._tasks.append(
            asyncio.create_task(
                run_http_server(app, self.config.http.host, self.config.http.port),
                name="http",
            )
        )
        if self.config.backup.enabled:
            self._tasks.append(asyncio.create_task(self.backups.start(), name="backup"))
        else:
            logger.info("Daily backup disabled (BACKUP_ENABLED=false)")

        shutdown = asyncio.create_task(self._shutdown.wait(), name="shutdown")
        done, _ = await asyncio.wait(
            [shutdown, *self._tasks], return_when=asyncio.FIRST_COMPLETED
        )
        shutdown.cancel()

        for task in done:
            if task is not shutdown and not task.cancelled() and task.exception():
                logger.error(f"Task {task.get_name()} failed", exc_info=task.exception())
                raise task.exception()

    async def stop(self) -> None:
        """Cancel background tasks, then close store clients."""
        if self.backups is not None:
            await self.backups.stop()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.object_store is not None:
            await self.object_store.close()
            self.object_store = None
        if self.kv is not None:
            await self.kv.close()
            self.kv = None

        logger.info("Route-log server stopped")

    def request_shutdown(self) -> None:
        self._shutdown.set()


async def serve(config: ServerConfig) -> None:
    """Run a Server with signal-driven shutdown."""
    server = Server(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, server.request_shutdown)

    logger.info("Starting route-log server")
    try:
        await server.start()
    finally:
        await server.stop()


def main() -> None:
    """Console entry point (routelog-server)."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(config.observability)
    asyncio.run(serve(config))


if __name__ == "__main__":
    main()
