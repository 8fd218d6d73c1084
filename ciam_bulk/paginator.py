"""
Lazy traversal of a paginated directory listing.

The paginator hides continuation tokens behind a generator: callers iterate
over entries while only one page is held in memory. Between pages it calls an
optional page-boundary hook, the single place where a workflow may pause,
checkpoint or adjust the next request.
"""

import logging
from typing import Callable, Iterator, List, Optional

from ciam_bulk.directory.base import DirectoryClientBase
from ciam_bulk.models import DirectoryEntry, DirectoryPage, PageRequest
from ciam_bulk.throttle import CancelToken, ThrottlePolicy, NoDelay

logger = logging.getLogger(__name__)

PageHook = Callable[[PageRequest], Optional[PageRequest]]
EntryCallback = Callable[[DirectoryEntry], bool]


class DirectoryPaginator:
    """
    Iterates over every entry of a directory listing, one page at a time.

    Args:
        client: Directory client providing ``list_entries``/``get_next_page``
        select: Fields requested for each entry
        filter: Backend-specific filter expression
        order_by: Backend-specific ordering
        page_size: Requested page size
        throttle: Policy used when a pending request asks for a delay
        cancel_token: Checked at every page boundary
    """

    def __init__(self, client: DirectoryClientBase, select: Optional[List[str]] = None,
                 filter: Optional[str] = None, order_by: Optional[str] = None,
                 page_size: Optional[int] = None, throttle: Optional[ThrottlePolicy] = None,
                 cancel_token: Optional[CancelToken] = None):
        self.client = client
        self.select = select
        self.filter = filter
        self.order_by = order_by
        self.page_size = page_size
        self.throttle = throttle or NoDelay()
        self.cancel_token = cancel_token

        self.pages_fetched = 0
        self.entries_delivered = 0

    def pages(self, on_page_boundary: Optional[PageHook] = None) -> Iterator[DirectoryPage]:
        """
        Yield pages of the listing in order, starting a fresh traversal.

        The hook runs after the consumer has finished with a page (when the
        generator is resumed) and only if another page exists.
        """
        self.pages_fetched = 0
        self.entries_delivered = 0

        page = self.client.list_entries(
            select=self.select, filter=self.filter, order_by=self.order_by, page_size=self.page_size
        )
        while True:
            self.pages_fetched += 1
            logger.debug(f"Fetched page {self.pages_fetched} with {len(page.entries)} entries")
            yield page

            pending = page.next_request
            if pending is None:
                logger.debug(f"Listing complete after {self.pages_fetched} pages")
                return

            if on_page_boundary is not None:
                adjusted = on_page_boundary(pending)
                if adjusted is not None:
                    pending = adjusted

            if self.cancel_token is not None:
                self.cancel_token.raise_if_cancelled()
            if pending.delay_seconds > 0:
                self.throttle.wait(self.cancel_token, seconds=pending.delay_seconds)
                if self.cancel_token is not None:
                    self.cancel_token.raise_if_cancelled()

            page = self.client.get_next_page(pending)

    def entries(self, on_page_boundary: Optional[PageHook] = None) -> Iterator[DirectoryEntry]:
        """Yield every entry of the listing exactly once, in page order."""
        for page in self.pages(on_page_boundary):
            for entry in page.entries:
                self.entries_delivered += 1
                yield entry

    def __iter__(self) -> Iterator[DirectoryEntry]:
        return self.entries()

    def iterate(self, on_entry: EntryCallback, on_page_boundary: Optional[PageHook] = None) -> int:
        """
        Deliver entries to a callback until the listing ends or the callback returns False.

        Stopping early closes the underlying generator, so no further pages
        are requested and the page hook is not called again.

        Returns:
            Number of entries delivered
        """
        delivered = 0
        generator = self.entries(on_page_boundary)
        try:
            for entry in generator:
                delivered += 1
                if not on_entry(entry):
                    logger.debug(f"Traversal stopped early after {delivered} entries")
                    break
        finally:
            generator.close()
        return delivered
