"""
Bulk creation of synthetic test identities over a sequence range.
"""

import logging
from typing import Dict, Optional

from ciam_bulk.batching import BatchAccumulator, DEFAULT_BATCH_CAPACITY
from ciam_bulk.directory.base import DirectoryClientBase
from ciam_bulk.identities import IdentityFactory, BuildStatus
from ciam_bulk.models import RunStats
from ciam_bulk.snapshot import SnapshotStore
from ciam_bulk.throttle import CancelToken, OperationCancelled, ThrottlePolicy
from ciam_bulk.workflows.base import BulkWorkflow

logger = logging.getLogger(__name__)


class BulkCreateWorkflow(BulkWorkflow):
    """
    Creates test identities for every sequence number in ``[from_seq, to_seq)``.

    With ``skip_existing`` the run first loads a snapshot and leaves out every
    display name already in it, so an interrupted run can be repeated over the
    same range without creating duplicates. Identities created by such a run
    are merged back into the snapshot when it finishes.
    """

    name = 'create'

    def __init__(self, client: DirectoryClientBase, factory: IdentityFactory,
                 store: Optional[SnapshotStore] = None, batch_size: int = DEFAULT_BATCH_CAPACITY,
                 throttle: Optional[ThrottlePolicy] = None, cancel_token: Optional[CancelToken] = None):
        super().__init__(client, throttle=throttle, cancel_token=cancel_token)
        self.factory = factory
        self.store = store
        self.batch_size = batch_size

    def run(self, from_seq: int, to_seq: int, skip_existing: bool = False,
            snapshot_path: Optional[str] = None, existing: Optional[Dict[str, str]] = None) -> RunStats:
        """
        Create identities for the half-open range ``[from_seq, to_seq)``.

        Identities created before a cancellation are merged into the snapshot
        too, so repeating the range skips them.

        Args:
            from_seq: First sequence number
            to_seq: One past the last sequence number
            skip_existing: Skip display names present in the snapshot
            snapshot_path: Snapshot file to consult; defaults to the store's
                complete file, falling back to its checkpoint shards
            existing: Snapshot mapping already loaded by the caller; read
                from the store when omitted

        Returns:
            Statistics of the run

        Raises:
            SnapshotNotFoundError: If ``skip_existing`` and no snapshot exists
            SnapshotFormatError: If the snapshot cannot be parsed
            OperationCancelled: If the run was cancelled
        """
        if from_seq > to_seq:
            raise ValueError(f"Invalid range [{from_seq}, {to_seq})")

        if not skip_existing:
            existing = None
        elif self.store is None:
            raise ValueError("skip_existing requires a snapshot store")
        elif existing is None:
            existing = self.store.load_latest(snapshot_path)

        stats = RunStats()
        self.last_stats = stats
        accumulator = BatchAccumulator(self.client.submit_batch, self.batch_size)

        logger.info(f"Creating test identities for sequence range [{from_seq}, {to_seq})"
                    f"{' skipping existing' if skip_existing else ''}")

        try:
            for sequence in range(from_seq, to_seq):
                self._check_cancelled()

                result = self.factory.build(sequence, existing)
                if result.status == BuildStatus.SKIPPED:
                    stats.skipped += 1
                    continue
                if result.status == BuildStatus.FAILED:
                    stats.invalid += 1
                    logger.error(f"Skipping sequence {sequence}: {result.error}")
                    continue

                accumulator.enqueue(
                    self.client.create_operation(result.spec.to_payload(), label=result.display_name)
                )
                stats.submitted += 1

                if accumulator.is_full():
                    self._flush_batch(accumulator, stats, 'create')
                    logger.info(f"Submitted {stats.submitted} identities in "
                                f"{stats.elapsed_seconds:.1f}s (through sequence {sequence})")
                    self.throttle.wait(self.cancel_token)

            self._drain(accumulator, stats, 'create')
        except OperationCancelled:
            self._discard(accumulator, stats)
            self._merge_created(existing, stats, snapshot_path)
            self._log_summary(stats)
            raise

        logger.info(f"Submitted {stats.submitted} identities in {stats.elapsed_seconds:.1f}s, "
                    f"{stats.skipped} skipped as existing")

        self._merge_created(existing, stats, snapshot_path)
        self._log_summary(stats)
        return stats

    def _merge_created(self, existing: Optional[Dict[str, str]], stats: RunStats,
                       snapshot_path: Optional[str]):
        if existing is None or not stats.created:
            return
        merged = dict(existing)
        merged.update(stats.created)
        path = snapshot_path or self.store.complete_path
        self.store.save(path, merged)
        logger.info(f"Merged {len(stats.created)} created identities into {path}")
