"""Query helpers that work around record store limits.

``fetch_all`` walks offset pages until a short page comes back.
``iter_records_by_ids`` splits an id list into chunks no larger than the
store's "in" filter cap and looks each chunk up in turn.

Neither helper gives snapshot isolation: records created or deleted while
a walk is in progress may be missed or seen twice (duplicates are dropped).
"""
import logging
from typing import AsyncIterator, Iterator, Optional, Sequence, TypeVar

from filehub.config import settings
from filehub.exceptions import StoreUnavailableError
from filehub.services.record_store import Filter, RecordStore, is_in

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def fetch_all(
    store: RecordStore,
    collection: str,
    filters: Sequence[Filter] = (),
    *,
    page_size: Optional[int] = None,
    order_by: Optional[str] = None,
    descending: bool = False,
) -> list:
    """Return every record matching ``filters``, page by page.

    Args:
        store: Record store to query.
        collection: Collection name.
        filters: Filters applied to every page.
        page_size: Records per call, defaults to settings.PAGE_SIZE.
        order_by: Optional sort field, otherwise the store's stable default.

    Returns:
        All matching records, first occurrence wins when an id repeats.

    Raises:
        ValueError: page_size is smaller than 1.
        StoreUnavailableError: a page lookup failed.
    """
    page_size = page_size or settings.PAGE_SIZE
    if page_size < 1:
        raise ValueError(f"page_size must be >= 1, got {page_size}")

    results = []
    seen: set[str] = set()
    offset = 0
    while True:
        page = await store.list(
            collection, filters, offset=offset, limit=page_size,
            order_by=order_by, descending=descending,
        )
        for record in page:
            if record.id in seen:
                continue
            seen.add(record.id)
            results.append(record)
        if len(page) < page_size:
            break
        offset += page_size

    logger.debug("fetch_all %s: %d records in %d page(s)", collection, len(results), offset // page_size + 1)
    return results


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def unique_ids(ids: Sequence[str]) -> list[str]:
    """Drop repeated ids, keeping first-seen order."""
    return list(dict.fromkeys(ids))


async def iter_records_by_ids(
    store: RecordStore,
    collection: str,
    ids: Sequence[str],
    *,
    chunk_size: Optional[int] = None,
) -> AsyncIterator[list]:
    """Look records up by id, one "in" query per chunk.

    A chunk whose lookup fails is logged and yields nothing; the caller
    carries on with the remaining chunks. Ids with no record are skipped.
    """
    chunk_size = min(chunk_size or store.query_array_limit, store.query_array_limit)
    for chunk in chunked(unique_ids(ids), chunk_size):
        try:
            records = await store.list(collection, [is_in("id", chunk)], offset=0, limit=len(chunk))
        except StoreUnavailableError as e:
            logger.warning("Lookup of %d %s ids failed, skipping chunk: %s", len(chunk), collection, e)
            continue
        yield records
