"""
Deletion of every test identity in the directory.
"""

import logging
from enum import Enum
from typing import Optional

from ciam_bulk.batching import BatchAccumulator, DEFAULT_BATCH_CAPACITY
from ciam_bulk.directory.base import DirectoryClientBase, TransportError
from ciam_bulk.logging_setup import audit_logger
from ciam_bulk.models import DirectoryEntry, RunStats
from ciam_bulk.throttle import CancelToken, OperationCancelled, ThrottlePolicy
from ciam_bulk.workflows.base import BulkWorkflow

logger = logging.getLogger(__name__)


class DeleteMode(Enum):
    """How matching entries are deleted."""
    BATCHED = 'batched'
    IMMEDIATE = 'immediate'


class BulkDeleteWorkflow(BulkWorkflow):
    """
    Walks the whole directory and deletes entries whose display name starts
    with the test-identity prefix.

    BATCHED mode groups deletes into batch calls; IMMEDIATE mode sends one
    delete per entry as soon as it is seen, for small directories or when
    batch deletes are not wanted.
    """

    name = 'delete'

    def __init__(self, client: DirectoryClientBase, prefix: str, mode: DeleteMode = DeleteMode.BATCHED,
                 batch_size: int = DEFAULT_BATCH_CAPACITY, throttle: Optional[ThrottlePolicy] = None,
                 page_size: Optional[int] = None, page_delay_seconds: float = 0.0,
                 cancel_token: Optional[CancelToken] = None):
        super().__init__(client, throttle=throttle, page_size=page_size,
                         page_delay_seconds=page_delay_seconds, cancel_token=cancel_token)
        if not prefix:
            raise ValueError("A non-empty prefix is required to select test identities")
        self.prefix = prefix
        self.mode = mode
        self.batch_size = batch_size

    def run(self) -> RunStats:
        """
        Delete all test identities.

        Raises:
            TransportError: If the listing fails
            OperationCancelled: If the run was cancelled
        """
        stats = RunStats()
        self.last_stats = stats
        accumulator = BatchAccumulator(self.client.submit_batch, self.batch_size)
        paginator = self._paginator(select=['id', 'displayName'])

        logger.info(f"Deleting entries with prefix '{self.prefix}' ({self.mode.value} mode)")

        def on_entry(entry: DirectoryEntry) -> bool:
            self._check_cancelled()
            if not entry.has_prefix(self.prefix):
                return True

            stats.matched += 1
            if self.mode == DeleteMode.IMMEDIATE:
                self._delete_now(entry, stats)
                return True

            accumulator.enqueue(self.client.delete_operation(entry.identifier, label=entry.display_name))
            stats.submitted += 1
            if accumulator.is_full():
                self._flush_batch(accumulator, stats, 'delete')
                logger.info(f"Submitted {stats.submitted} deletes in {stats.elapsed_seconds:.1f}s")
                self.throttle.wait(self.cancel_token)
            return True

        try:
            paginator.iterate(on_entry, self._page_delay_hook(stats))
            self._drain(accumulator, stats, 'delete')
        except OperationCancelled:
            self._discard(accumulator, stats)
            self._log_summary(stats)
            raise

        self._log_summary(stats)
        return stats

    def _delete_now(self, entry: DirectoryEntry, stats: RunStats):
        stats.submitted += 1
        try:
            self.client.delete_entry(entry.identifier)
        except TransportError as e:
            stats.failed += 1
            logger.error(f"Failed to delete '{entry.display_name}' ({entry.identifier}): {e}")
            audit_logger.log_delete(entry.identifier, False)
            return
        stats.succeeded += 1
        audit_logger.log_delete(entry.identifier, True)
        if stats.succeeded % 100 == 0:
            logger.info(f"Deleted {stats.succeeded} entries in {stats.elapsed_seconds:.1f}s")
