"""Page-by-page collection of list endpoints with bounded retries."""

import logging
from collections.abc import Callable
from typing import TypeVar

from agent_monitor.errors import FetchError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PAGES = 100
PER_PAGE = 100


def fetch_all_pages(
    fetch_page: Callable[[int], list[T]],
    *,
    max_pages: int = MAX_PAGES,
    retry_attempts: int = 3,
) -> list[T]:
    """Call ``fetch_page(1)``, ``fetch_page(2)``, ... until a page comes back empty.

    At most ``max_pages`` pages are requested; hitting the ceiling logs a
    warning and returns what was collected. Transient failures are retried
    immediately, up to ``retry_attempts`` attempts per page. Client errors
    and rate-limit refusals propagate on the first attempt.
    """
    items: list[T] = []
    for page in range(1, max_pages + 1):
        batch = _fetch_with_retry(fetch_page, page, retry_attempts)
        if not batch:
            return items
        items.extend(batch)
    logger.warning(
        "Stopped paging after %d pages (%d items); results may be incomplete",
        max_pages, len(items),
    )
    return items


def _fetch_with_retry(fetch_page: Callable[[int], list[T]], page: int, attempts: int) -> list[T]:
    attempt = 1
    while True:
        try:
            return fetch_page(page)
        except RateLimitError:
            raise
        except FetchError as e:
            if not e.transient or attempt >= attempts:
                raise
            logger.info("Retrying page %d after transient error (attempt %d/%d): %s",
                        page, attempt, attempts, e)
            attempt += 1
