"""
Adding test identities to security groups.
"""

import logging
from typing import Iterable, List, Optional

from ciam_bulk.directory.base import DirectoryClientBase, TransportError
from ciam_bulk.logging_setup import audit_logger
from ciam_bulk.models import DirectoryEntry, RunStats
from ciam_bulk.throttle import CancelToken, OperationCancelled, ThrottlePolicy, FixedDelay
from ciam_bulk.workflows.base import BulkWorkflow

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 20
DEFAULT_CHUNK_DELAY_SECONDS = 1.0


class GroupMembershipWorkflow(BulkWorkflow):
    """
    Adds every test identity to each of the given groups.

    Matching entries are collected into chunks of member references; each
    full chunk becomes one membership update per group, followed by a pause.
    The last, partial chunk is sent at the end of the listing so that every
    matching identity ends up in every group.
    """

    name = 'add-to-groups'

    def __init__(self, client: DirectoryClientBase, prefix: str, chunk_size: int = DEFAULT_CHUNK_SIZE,
                 throttle: Optional[ThrottlePolicy] = None, page_size: Optional[int] = None,
                 page_delay_seconds: float = 0.0, cancel_token: Optional[CancelToken] = None):
        super().__init__(client, throttle=throttle or FixedDelay(DEFAULT_CHUNK_DELAY_SECONDS),
                         page_size=page_size, page_delay_seconds=page_delay_seconds,
                         cancel_token=cancel_token)
        if not prefix:
            raise ValueError("A non-empty prefix is required to select test identities")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")
        self.prefix = prefix
        self.chunk_size = chunk_size

    def run(self, group_ids: Iterable[str]) -> RunStats:
        """
        Add all test identities to every group in ``group_ids``.

        Raises:
            TransportError: If the listing fails
            OperationCancelled: If the run was cancelled
        """
        groups = list(dict.fromkeys(group_id.strip() for group_id in group_ids if group_id.strip()))
        stats = RunStats()
        self.last_stats = stats
        if not groups:
            logger.warning("No group IDs given, nothing to do")
            return stats

        chunk: List[str] = []
        paginator = self._paginator(select=['id', 'displayName'])
        logger.info(f"Adding entries with prefix '{self.prefix}' to {len(groups)} groups")

        def on_entry(entry: DirectoryEntry) -> bool:
            self._check_cancelled()
            if not entry.has_prefix(self.prefix):
                return True

            stats.matched += 1
            chunk.append(self.client.member_reference(entry.identifier))
            if len(chunk) >= self.chunk_size:
                self._flush_chunk(chunk, groups, stats)
                logger.info(f"Added {stats.matched} identities to groups in {stats.elapsed_seconds:.1f}s")
                self.throttle.wait(self.cancel_token)
            return True

        try:
            paginator.iterate(on_entry, self._page_delay_hook(stats))
            if chunk:
                self._flush_chunk(chunk, groups, stats)
        except OperationCancelled:
            stats.discarded += len(chunk)
            if chunk:
                logger.warning(f"{self.name}: discarded {len(chunk)} pending member references after cancellation")
            self._log_summary(stats)
            raise

        self._log_summary(stats)
        return stats

    def _flush_chunk(self, chunk: List[str], groups: List[str], stats: RunStats):
        """Send one membership update per group for the chunk, then clear it."""
        for group_id in groups:
            stats.submitted += len(chunk)
            try:
                self.client.update_group_members(group_id, list(chunk))
            except TransportError as e:
                stats.failed += len(chunk)
                stats.failed_batches += 1
                logger.error(f"Failed to add {len(chunk)} members to group {group_id} after "
                             f"{stats.elapsed_seconds:.1f}s: {e}")
                audit_logger.log_membership_update(group_id, len(chunk), False)
                continue
            stats.succeeded += len(chunk)
            stats.batches += 1
            audit_logger.log_membership_update(group_id, len(chunk), True)
        chunk.clear()
