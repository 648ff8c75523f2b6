"""
Exhaustive prefix enumeration over a paginated key-value store.

Backends cap list pages (1000 keys on the hosted store), so anything that
needs every key under a prefix goes through iter_keys().

Invariants:
    - Every key present for the whole enumeration is yielded exactly once
    - Either list_complete or an absent cursor ends the enumeration
    - A cursor returned twice in one enumeration is a backend fault, never looped on
    - A max_pages ceiling raises instead of truncating

How to change safely:
    - Never swallow store errors here; callers own recovery policy
    - Keep deduplication; some backends overlap page boundaries
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from ..kv.base import MAX_PAGE_SIZE, KeyValueStore, KvError

logger = logging.getLogger(__name__)


class PaginationError(KvError):
    """The store returned a listing that cannot make progress."""

    pass


class PaginationLimitExceeded(PaginationError):
    """Enumeration needed more pages than the caller allowed."""

    def __init__(self, prefix: str, max_pages: int) -> None:
        super().__init__(f"Listing prefix {prefix!r} exceeded {max_pages} pages")
        self.prefix = prefix
        self.max_pages = max_pages


async def iter_keys(
    store: KeyValueStore,
    prefix: str = "",
    page_size: int = MAX_PAGE_SIZE,
    max_pages: int | None = None,
) -> AsyncIterator[str]:
    """Yield every key under prefix, across all list pages.

    Args:
        store: Key-value store to enumerate
        prefix: Key prefix ("" enumerates the whole store)
        page_size: Keys requested per list call (1..MAX_PAGE_SIZE)
        max_pages: Optional ceiling on list calls

    Yields:
        Key names, each at most once

    Raises:
        ValueError: If page_size is out of range
        PaginationError: If the store returns any cursor twice
        PaginationLimitExceeded: If more than max_pages pages are needed
        KvError: Propagated unchanged from the store
    """
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}")

    seen: set[str] = set()
    seen_cursors: set[str] = set()
    cursor: str | None = None
    pages = 0

    while True:
        if max_pages is not None and pages >= max_pages:
            raise PaginationLimitExceeded(prefix, max_pages)

        page = await store.list(prefix=prefix, cursor=cursor, limit=page_size)
        pages += 1

        for key in page.keys:
            if key not in seen:
                seen.add(key)
                yield key

        if page.is_last:
            break
        if page.cursor in seen_cursors:
            raise PaginationError(f"Store repeated list cursor for prefix {prefix!r}")
        seen_cursors.add(page.cursor)
        cursor = page.cursor

    logger.debug(
        "Enumerated prefix",
        extra={"prefix": prefix, "pages": pages, "keys": len(seen)},
    )


async def collect_keys(
    store: KeyValueStore,
    prefix: str = "",
    page_size: int = MAX_PAGE_SIZE,
    max_pages: int | None = None,
) -> list[str]:
    """Return every key under prefix as a list (see iter_keys)."""
    return [key async for key in iter_keys(store, prefix, page_size, max_pages)]
