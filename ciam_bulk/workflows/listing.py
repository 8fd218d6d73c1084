"""
Full directory listing with periodic snapshot checkpoints.
"""

import logging
from typing import Dict, Optional

from ciam_bulk.directory.base import DirectoryClientBase
from ciam_bulk.models import DirectoryEntry, PageRequest, RunStats
from ciam_bulk.snapshot import SnapshotStore
from ciam_bulk.throttle import CancelToken, OperationCancelled, ThrottlePolicy
from ciam_bulk.workflows.base import BulkWorkflow

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_EVERY_PAGES = 50


class ListAndSnapshotWorkflow(BulkWorkflow):
    """
    Lists the whole directory into a display name to identifier mapping.

    Every ``snapshot_every_pages`` pages the mapping collected so far is
    written as a checkpoint; the complete file is written at the end.
    """

    name = 'list'

    def __init__(self, client: DirectoryClientBase, store: SnapshotStore,
                 snapshot_every_pages: int = DEFAULT_SNAPSHOT_EVERY_PAGES,
                 throttle: Optional[ThrottlePolicy] = None, page_size: Optional[int] = None,
                 page_delay_seconds: float = 0.0, cancel_token: Optional[CancelToken] = None):
        super().__init__(client, throttle=throttle, page_size=page_size,
                         page_delay_seconds=page_delay_seconds, cancel_token=cancel_token)
        if snapshot_every_pages < 1:
            raise ValueError(f"snapshot_every_pages must be at least 1, got {snapshot_every_pages}")
        self.store = store
        self.snapshot_every_pages = snapshot_every_pages

    def run(self) -> Dict[str, str]:
        """
        List every entry and write the snapshot.

        Returns:
            Mapping of display name to identifier

        Raises:
            TransportError: If the listing fails
            OperationCancelled: If the run was cancelled (a checkpoint of the
                entries seen so far is written first)
        """
        stats = RunStats()
        self.last_stats = stats
        mapping: Dict[str, str] = {}
        paginator = self._paginator(select=['id', 'displayName', 'identities'])
        apply_page_delay = self._page_delay_hook(stats)

        def on_entry(entry: DirectoryEntry) -> bool:
            self._check_cancelled()
            if not entry.display_name:
                stats.skipped += 1
                return True
            if entry.display_name in mapping:
                stats.duplicates += 1
                logger.debug(f"Duplicate display name '{entry.display_name}' ({entry.identifier}), keeping first")
                return True
            mapping[entry.display_name] = entry.identifier
            stats.matched += 1
            return True

        def on_page_boundary(request: PageRequest) -> PageRequest:
            request = apply_page_delay(request)
            if stats.pages % self.snapshot_every_pages == 0:
                self.store.save_checkpoint(mapping)
                logger.info(f"Listed {len(mapping)} entries over {stats.pages} pages "
                            f"in {stats.elapsed_seconds:.1f}s")
            return request

        try:
            paginator.iterate(on_entry, on_page_boundary)
        except OperationCancelled:
            self.store.save_checkpoint(mapping)
            self._log_summary(stats)
            raise

        stats.pages = paginator.pages_fetched
        self.store.save_complete(mapping)
        if stats.duplicates:
            logger.warning(f"{stats.duplicates} entries share a display name with an earlier entry")
        logger.info(f"Listed {len(mapping)} entries over {stats.pages} pages in {stats.elapsed_seconds:.1f}s")
        self._log_summary(stats)
        return mapping
