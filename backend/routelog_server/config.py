"""
Configuration management for the route-log server.

The server, the restore CLI and the export CLI read the same environment
variables, one frozen dataclass per concern:

    KvConfig             KV_BACKEND, KV_SQLITE_PATH, KV_PAGE_SIZE, CF_*
    S3Config             S3_BUCKET, S3_REGION, S3_ENDPOINT, AWS_* keys
    BackupConfig         BACKUP_*, OBJECT_STORE_BACKEND
    HttpConfig           HTTP_HOST, HTTP_PORT, CORS_ORIGINS
    AdminConfig          ADMIN_TOKEN
    ObservabilityConfig  LOG_LEVEL, LOG_FORMAT

Invariants:
    - Defaults run a local SQLite-backed server with no extra setup
    - API tokens and keys are excluded from repr() and log_config()

How to change safely:
    - New variables need a default that keeps existing deployments working
    - Document every new setting in its config class docstring
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .kv.base import MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

# Origins the production web client is served from
DEFAULT_CORS_ORIGINS = (
    "https://gorouteyourself.com",
    "https://betaroute.brocksville.com",
    "https://logs.gorouteyourself.com",
)


class KvBackend(Enum):
    """Supported key-value store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"
    CLOUDFLARE = "cloudflare"


class ObjectStoreBackend(Enum):
    """Supported backup sinks."""

    S3 = "s3"
    MEMORY = "memory"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    return int(value) if value else None


@dataclass(frozen=True)
class KvConfig:
    """Key-value store configuration.

    Attributes:
        backend: Which backend to use
        sqlite_path: Database file for the SQLite backend
        page_size: Keys requested per list call
        max_pages: Ceiling on list calls per enumeration (None = unbounded)
        cf_account_id: Cloudflare account ID
        cf_namespace_id: Cloudflare KV namespace ID
        cf_api_token: Cloudflare API token (secret)
        cf_api_base_url: Cloudflare API base URL
        request_timeout_seconds: Per-request timeout for remote backends
    """

    backend: KvBackend = KvBackend.SQLITE
    sqlite_path: str = "/var/lib/routelog/kv.db"
    page_size: int = MAX_PAGE_SIZE
    max_pages: int | None = None
    cf_account_id: str | None = None
    cf_namespace_id: str | None = None
    cf_api_token: str | None = field(default=None, repr=False)
    cf_api_base_url: str = "https://api.cloudflare.com/client/v4"
    request_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> KvConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If KV_BACKEND is not a known backend
        """
        backend_str = os.getenv("KV_BACKEND", "sqlite").lower()
        try:
            backend = KvBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid KV_BACKEND '{backend_str}'. Must be one of: memory, sqlite, cloudflare"
            )

        return cls(
            backend=backend,
            sqlite_path=os.getenv("KV_SQLITE_PATH", "/var/lib/routelog/kv.db"),
            page_size=int(os.getenv("KV_PAGE_SIZE", str(MAX_PAGE_SIZE))),
            max_pages=_env_optional_int("KV_MAX_PAGES"),
            cf_account_id=os.getenv("CF_ACCOUNT_ID"),
            cf_namespace_id=os.getenv("CF_KV_NAMESPACE_ID"),
            cf_api_token=os.getenv("CF_API_TOKEN"),
            cf_api_base_url=os.getenv("CF_API_BASE_URL", "https://api.cloudflare.com/client/v4"),
            request_timeout_seconds=float(os.getenv("KV_REQUEST_TIMEOUT_SECONDS", "30")),
        )


@dataclass(frozen=True)
class S3Config:
    """Where daily backup bundles are written.

    Attributes:
        bucket: Bucket holding logs-<date>.json bundles
        region: Region name ("auto" on Cloudflare R2)
        endpoint_url: Non-AWS endpoint (R2, MinIO); None means AWS
        backup_prefix: Key prefix for bundles, e.g. "routelog/"
        access_key_id: Static key; None falls back to the default credential chain
        secret_access_key: Secret for access_key_id
    """

    bucket: str = "routelog-backups"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    backup_prefix: str = ""
    access_key_id: str | None = field(default=None, repr=False)
    secret_access_key: str | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> S3Config:
        """Read S3_* variables; credentials come from the standard AWS_* names."""
        env = os.environ
        return cls(
            bucket=env.get("S3_BUCKET", "routelog-backups"),
            region=env.get("S3_REGION") or env.get("AWS_REGION", "us-east-1"),
            endpoint_url=env.get("S3_ENDPOINT") or None,
            backup_prefix=env.get("S3_BACKUP_PREFIX", ""),
            access_key_id=env.get("AWS_ACCESS_KEY_ID") or None,
            secret_access_key=env.get("AWS_SECRET_ACCESS_KEY") or None,
        )


@dataclass(frozen=True)
class BackupConfig:
    """Scheduled backup configuration.

    Attributes:
        enabled: Whether the daily backup loop runs
        hour_utc: Hour of day (UTC) the backup fires
        minute_utc: Minute of the hour the backup fires
        skip_unreadable: Skip keys that fail to read instead of aborting
        object_store_backend: Backup sink
    """

    enabled: bool = True
    hour_utc: int = 3
    minute_utc: int = 0
    skip_unreadable: bool = False
    object_store_backend: ObjectStoreBackend = ObjectStoreBackend.S3

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If OBJECT_STORE_BACKEND is not a known backend
        """
        backend_str = os.getenv("OBJECT_STORE_BACKEND", "s3").lower()
        try:
            backend = ObjectStoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid OBJECT_STORE_BACKEND '{backend_str}'. Must be one of: s3, memory"
            )

        return cls(
            enabled=_env_bool("BACKUP_ENABLED", "true"),
            hour_utc=int(os.getenv("BACKUP_HOUR_UTC", "3")),
            minute_utc=int(os.getenv("BACKUP_MINUTE_UTC", "0")),
            skip_unreadable=_env_bool("BACKUP_SKIP_UNREADABLE", "false"),
            object_store_backend=backend,
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
        cors_origins: Origins allowed to call the API from a browser
    """

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip())
            if origins
            else DEFAULT_CORS_ORIGINS,
        )


@dataclass(frozen=True)
class AdminConfig:
    """Admin endpoint configuration.

    Attributes:
        admin_token: Shared secret for /admin endpoints (None disables them)
    """

    admin_token: str | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> AdminConfig:
        """Load configuration from environment variables."""
        return cls(admin_token=os.getenv("ADMIN_TOKEN") or None)


@dataclass(frozen=True)
class ObservabilityConfig:
    """How the server logs.

    Attributes:
        log_level: Root logger level name
        log_format: "json" for one JSON object per line, "text" for humans
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Read LOG_LEVEL and LOG_FORMAT."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
        )


@dataclass
class ServerConfig:
    """Every section the server needs, validated together.

    Cross-section rules (backend needs credentials, sink needs a bucket)
    live in validate().

    Attributes:
        kv: Key-value store configuration
        s3: S3 configuration
        backup: Scheduled backup configuration
        http: HTTP server configuration
        admin: Admin endpoint configuration
        observability: Logging configuration
    """

    kv: KvConfig = field(default_factory=KvConfig)
    s3: S3Config = field(default_factory=S3Config)
    backup: BackupConfig = field(default_factory=BackupConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Read and validate every section.

        Raises:
            ValueError: On an unknown backend or an out-of-range value
        """
        config = cls(
            kv=KvConfig.from_env(),
            s3=S3Config.from_env(),
            backup=BackupConfig.from_env(),
            http=HttpConfig.from_env(),
            admin=AdminConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Check ranges and cross-section requirements.

        Raises:
            ValueError: Naming the first offending environment variable
        """
        if not 1 <= self.kv.page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"KV_PAGE_SIZE must be between 1 and {MAX_PAGE_SIZE}")
        if self.kv.max_pages is not None and self.kv.max_pages < 1:
            raise ValueError("KV_MAX_PAGES must be a positive integer")

        if self.kv.backend == KvBackend.CLOUDFLARE:
            missing = [
                name
                for name, value in (
                    ("CF_ACCOUNT_ID", self.kv.cf_account_id),
                    ("CF_KV_NAMESPACE_ID", self.kv.cf_namespace_id),
                    ("CF_API_TOKEN", self.kv.cf_api_token),
                )
                if not value
            ]
            if missing:
                raise ValueError(
                    f"{', '.join(missing)} required when KV_BACKEND=cloudflare"
                )

        if self.backup.object_store_backend == ObjectStoreBackend.S3 and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when OBJECT_STORE_BACKEND=s3")

        if not 0 <= self.backup.hour_utc <= 23:
            raise ValueError("BACKUP_HOUR_UTC must be between 0 and 23")
        if not 0 <= self.backup.minute_utc <= 59:
            raise ValueError("BACKUP_MINUTE_UTC must be between 0 and 59")

        if not self.admin.admin_token:
            logger.warning("ADMIN_TOKEN is not set; /admin endpoints will reject all requests")

    def log_config(self) -> None:
        """Log the effective settings. Tokens and secret keys are never included."""
        logger.info(
            "Server configuration loaded",
            extra={
                "kv_backend": self.kv.backend.value,
                "kv_sqlite_path": self.kv.sqlite_path
                if self.kv.backend == KvBackend.SQLITE
                else None,
                "kv_namespace": self.kv.cf_namespace_id
                if self.kv.backend == KvBackend.CLOUDFLARE
                else None,
                "kv_page_size": self.kv.page_size,
                "object_store_backend": self.backup.object_store_backend.value,
                "s3_bucket": self.s3.bucket,
                "backup_enabled": self.backup.enabled,
                "backup_time_utc": f"{self.backup.hour_utc:02d}:{self.backup.minute_utc:02d}",
                "http_bind": f"{self.http.host}:{self.http.port}",
                "admin_enabled": bool(self.admin.admin_token),
                "log_level": self.observability.log_level,
            },
        )
