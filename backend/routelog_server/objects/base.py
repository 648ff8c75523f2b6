"""
Object store protocol for backup blobs.

The object store is used only as a write sink for export bundles, so the
protocol is a single put() plus client lifecycle.

Invariants:
    - put() overwrites an existing object with the same name
    - put() returns only after the backend acknowledged the write

How to change safely:
    - Keep the protocol minimal; read paths belong to operator tooling
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import BackupConfig, S3Config

logger = logging.getLogger(__name__)


class ObjectStoreError(Exception):
    """Object store write or connection failure."""

    def __init__(self, message: str, name: str | None = None) -> None:
        super().__init__(message)
        self.name = name


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for durable blob storage."""

    @abstractmethod
    async def put(self, name: str, body: bytes, content_type: str) -> None:
        """Store a blob, replacing any existing blob with the same name.

        Args:
            name: Object name
            body: Object content
            content_type: MIME type recorded with the object

        Raises:
            ObjectStoreError: On backend failure
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


def create_object_store(backup_config: "BackupConfig", s3_config: "S3Config") -> ObjectStore:
    """Factory function to create the backup sink from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import ObjectStoreBackend
    from .memory import InMemoryObjectStore
    from .s3 import S3ObjectStore

    if backup_config.object_store_backend == ObjectStoreBackend.S3:
        return S3ObjectStore(s3_config)
    elif backup_config.object_store_backend == ObjectStoreBackend.MEMORY:
        logger.warning("Using in-memory object store; backups are lost on exit")
        return InMemoryObjectStore()
    else:
        raise ValueError(f"Unsupported object store backend: {backup_config.object_store_backend}")
