import logging
from typing import Callable, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 1000


def fetch_all(
    query_fn: Callable[[int, int], List[T]],
    page_size: int = DEFAULT_PAGE_SIZE,
    label: str = "query",
    raise_errors: bool = False,
) -> List[T]:
    """
    Drain a capped query by repeatedly asking for rows [offset, offset + page_size - 1].

    Stops on a short page, an empty page, or a failing call. By default the
    rows collected before a failure are returned and the failure is logged;
    with raise_errors=True the failure propagates instead.
    """
    if page_size < 1:
        raise ValueError("page_size must be >= 1")
    rows: List[T] = []
    offset = 0
    while True:
        try:
            page = query_fn(offset, offset + page_size - 1)
        except Exception as exc:
            if raise_errors:
                raise
            logger.error("[Paginate] %s failed at offset %d: %s", label, offset, exc)
            break
        if not page:
            break
        rows.extend(page)
        if len(page) < page_size:
            break
        offset += page_size
    logger.debug("[Paginate] %s fetched %d rows", label, len(rows))
    return rows
