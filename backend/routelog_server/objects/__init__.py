"""
Object storage for the route-log server.

Used as the sink for daily export bundles. Backends:
- S3-compatible (AWS S3, Cloudflare R2, MinIO)
- In-memory (for testing)

Invariants:
    - Bundles are written whole; a same-name write replaces the object
"""

from .base import ObjectStore, ObjectStoreError, create_object_store
from .memory import InMemoryObjectStore
from .s3 import S3ObjectStore

__all__ = [
    "ObjectStore",
    "ObjectStoreError",
    "create_object_store",
    "S3ObjectStore",
    "InMemoryObjectStore",
]
