"""
Unit tests for environment configuration.

Tests cover:
- Defaults
- Environment parsing
- Validation errors
- Factories driven by configuration
"""

import pytest

from backend.routelog_server.config import (
    DEFAULT_CORS_ORIGINS,
    AdminConfig,
    BackupConfig,
    HttpConfig,
    KvBackend,
    KvConfig,
    ObjectStoreBackend,
    ServerConfig,
)
from backend.routelog_server.kv import (
    CloudflareKVStore,
    InMemoryKeyValueStore,
    SqliteKeyValueStore,
    create_kv_store,
)
from backend.routelog_server.objects import (
    InMemoryObjectStore,
    S3ObjectStore,
    create_object_store,
)

ENV_VARS = [
    "KV_BACKEND",
    "KV_SQLITE_PATH",
    "KV_PAGE_SIZE",
    "KV_MAX_PAGES",
    "CF_ACCOUNT_ID",
    "CF_KV_NAMESPACE_ID",
    "CF_API_TOKEN",
    "S3_BUCKET",
    "OBJECT_STORE_BACKEND",
    "BACKUP_ENABLED",
    "BACKUP_HOUR_UTC",
    "BACKUP_MINUTE_UTC",
    "BACKUP_SKIP_UNREADABLE",
    "CORS_ORIGINS",
    "ADMIN_TOKEN",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test from an empty configuration environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    """Tests for default configuration."""

    def test_server_defaults(self):
        """Defaults describe a local SQLite deployment."""
        config = ServerConfig.from_env()

        assert config.kv.backend == KvBackend.SQLITE
        assert config.kv.page_size == 1000
        assert config.kv.max_pages is None
        assert config.backup.enabled is True
        assert (config.backup.hour_utc, config.backup.minute_utc) == (3, 0)
        assert config.backup.skip_unreadable is False
        assert config.backup.object_store_backend == ObjectStoreBackend.S3
        assert config.http.cors_origins == DEFAULT_CORS_ORIGINS
        assert config.admin.admin_token is None

    def test_admin_token_not_in_repr(self, monkeypatch):
        """The admin token never appears in repr output."""
        monkeypatch.setenv("ADMIN_TOKEN", "s3cret")

        assert "s3cret" not in repr(AdminConfig.from_env())


class TestFromEnv:
    """Tests for environment parsing."""

    def test_kv_settings(self, monkeypatch):
        """KV variables are parsed."""
        monkeypatch.setenv("KV_BACKEND", "MEMORY")
        monkeypatch.setenv("KV_PAGE_SIZE", "50")
        monkeypatch.setenv("KV_MAX_PAGES", "20")

        config = KvConfig.from_env()

        assert config.backend == KvBackend.MEMORY
        assert config.page_size == 50
        assert config.max_pages == 20

    def test_unknown_kv_backend(self, monkeypatch):
        """Unknown backends are rejected with the valid choices."""
        monkeypatch.setenv("KV_BACKEND", "redis")

        with pytest.raises(ValueError, match="KV_BACKEND"):
            KvConfig.from_env()

    def test_backup_settings(self, monkeypatch):
        """Backup variables are parsed."""
        monkeypatch.setenv("BACKUP_ENABLED", "false")
        monkeypatch.setenv("BACKUP_HOUR_UTC", "23")
        monkeypatch.setenv("BACKUP_MINUTE_UTC", "15")
        monkeypatch.setenv("BACKUP_SKIP_UNREADABLE", "true")
        monkeypatch.setenv("OBJECT_STORE_BACKEND", "memory")

        config = BackupConfig.from_env()

        assert config.enabled is False
        assert (config.hour_utc, config.minute_utc) == (23, 15)
        assert config.skip_unreadable is True
        assert config.object_store_backend == ObjectStoreBackend.MEMORY

    def test_cors_origins(self, monkeypatch):
        """CORS origins are comma separated and trimmed."""
        monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example,")

        assert HttpConfig.from_env().cors_origins == ("https://a.example", "https://b.example")


class TestValidation:
    """Tests for ServerConfig.validate."""

    @pytest.mark.parametrize(
        "name,value",
        [
            ("KV_PAGE_SIZE", "0"),
            ("KV_PAGE_SIZE", "1001"),
            ("KV_MAX_PAGES", "-1"),
            ("BACKUP_HOUR_UTC", "24"),
            ("BACKUP_MINUTE_UTC", "60"),
        ],
    )
    def test_out_of_range(self, monkeypatch, name, value):
        """Out-of-range numbers fail validation."""
        monkeypatch.setenv(name, value)

        with pytest.raises(ValueError, match=name):
            ServerConfig.from_env()

    def test_cloudflare_requires_credentials(self, monkeypatch):
        """The Cloudflare backend needs account, namespace and token."""
        monkeypatch.setenv("KV_BACKEND", "cloudflare")
        monkeypatch.setenv("CF_ACCOUNT_ID", "acct")

        with pytest.raises(ValueError, match="CF_KV_NAMESPACE_ID, CF_API_TOKEN"):
            ServerConfig.from_env()

    def test_s3_requires_bucket(self, monkeypatch):
        """An empty bucket is refused for the S3 sink."""
        monkeypatch.setenv("S3_BUCKET", "")

        with pytest.raises(ValueError, match="S3_BUCKET"):
            ServerConfig.from_env()


class TestFactories:
    """Tests for configuration-driven factories."""

    def test_kv_backends(self, tmp_path):
        """Each backend value builds its store."""
        assert isinstance(create_kv_store(KvConfig(backend=KvBackend.MEMORY)), InMemoryKeyValueStore)
        assert isinstance(
            create_kv_store(KvConfig(backend=KvBackend.SQLITE, sqlite_path=str(tmp_path / "kv.db"))),
            SqliteKeyValueStore,
        )
        assert isinstance(
            create_kv_store(
                KvConfig(
                    backend=KvBackend.CLOUDFLARE,
                    cf_account_id="a",
                    cf_namespace_id="n",
                    cf_api_token="t",
                )
            ),
            CloudflareKVStore,
        )

    def test_object_store_backends(self):
        """Each sink value builds its store."""
        config = ServerConfig()

        assert isinstance(create_object_store(config.backup, config.s3), S3ObjectStore)
        assert isinstance(
            create_object_store(
                BackupConfig(object_store_backend=ObjectStoreBackend.MEMORY), config.s3
            ),
            InMemoryObjectStore,
        )
