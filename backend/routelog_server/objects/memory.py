"""
In-memory object store for tests and local development.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .base import ObjectStoreError

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    """A blob held by InMemoryObjectStore."""

    body: bytes
    content_type: str
    write_count: int = 1


class InMemoryObjectStore:
    """Test double for the backup sink.

    Example:
        >>> sink = InMemoryObjectStore()
        >>> await sink.put("logs-2024-01-01.json", b"{}", "application/json")
        >>> sink.names()
        ['logs-2024-01-01.json']
    """

    def __init__(self) -> None:
        self.objects: dict[str, StoredObject] = {}
        self._pending_failures: list[Exception] = []

    async def put(self, name: str, body: bytes, content_type: str) -> None:
        if self._pending_failures:
            raise self._pending_failures.pop(0)
        if not isinstance(body, (bytes, bytearray)):
            raise ObjectStoreError(f"Object body must be bytes, got {type(body).__name__}", name)

        existing = self.objects.get(name)
        write_count = existing.write_count + 1 if existing else 1
        self.objects[name] = StoredObject(bytes(body), content_type, write_count)
        logger.debug("Object written to in-memory store", extra={"object_name": name, "size": len(body)})

    async def close(self) -> None:
        pass

    # Testing helpers

    def names(self) -> list[str]:
        return sorted(self.objects)

    def read(self, name: str) -> bytes:
        return self.objects[name].body

    def inject_failure(self, exception: Exception) -> None:
        """Raise exception on the next put() (testing helper)."""
        self._pending_failures.append(exception)
