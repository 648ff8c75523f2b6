"""
S3-compatible object store for backup bundles.

Works against AWS S3, Cloudflare R2 and MinIO; the latter two are selected
by setting an endpoint URL.

Object layout:
    s3://<bucket>/<backup_prefix>logs-<YYYY-MM-DD>.json

Invariants:
    - put_object overwrites; same-day backups converge to one object
    - The client is created lazily and reused until close()

How to change safely:
    - Keep object names stable; restore tooling lists by name
    - Test against MinIO before changing client options
"""

from __future__ import annotations

import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from .base import ObjectStoreError

logger = logging.getLogger(__name__)


class S3ObjectStore:
    """Writes backup blobs to an S3 bucket.

    Attributes:
        s3_config: S3 configuration (bucket, region, endpoint, credentials)

    Example:
        >>> store = S3ObjectStore(S3Config.from_env())
        >>> await store.put("logs-2024-06-01.json", body, "application/json")
        >>> await store.close()
    """

    def __init__(self, s3_config: Any, client: Any = None) -> None:
        """Initialize the store.

        Args:
            s3_config: S3Config instance
            client: Optional pre-built aiobotocore S3 client
        """
        self.s3_config = s3_config
        self._s3_client = client
        self._s3_ctx = None
        self._session = None

    async def _init_s3_client(self) -> None:
        """Initialize S3 client."""
        self._session = get_session()

        client_kwargs = {
            "region_name": self.s3_config.region,
        }

        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_ctx is not None and self._s3_client is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_ctx = None
        self._s3_client = None

    def object_key(self, name: str) -> str:
        """Full object key for a blob name."""
        return f"{self.s3_config.backup_prefix}{name}"

    async def put(self, name: str, body: bytes, content_type: str) -> None:
        """Upload a blob, overwriting any existing object with the same name."""
        if self._s3_client is None:
            await self._init_s3_client()

        key = self.object_key(name)
        try:
            await self._s3_client.put_object(
                Bucket=self.s3_config.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise ObjectStoreError(f"Failed to upload s3://{self.s3_config.bucket}/{key}: {e}", name) from e

        logger.info(
            "Uploaded object",
            extra={
                "bucket": self.s3_config.bucket,
                "s3_key": key,
                "size_bytes": len(body),
            },
        )
