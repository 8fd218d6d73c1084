"""
Shared plumbing for the bulk workflows.

Each workflow run owns its own accumulator, paginator and RunStats; nothing is
shared between runs except the snapshot files on disk.
"""

import logging
from typing import List, Optional

from ciam_bulk.batching import BatchAccumulator
from ciam_bulk.directory.base import DirectoryClientBase, TransportError
from ciam_bulk.logging_setup import audit_logger
from ciam_bulk.models import BatchResult, PageRequest, RunStats
from ciam_bulk.paginator import DirectoryPaginator, PageHook
from ciam_bulk.retry import is_retryable_error
from ciam_bulk.throttle import CancelToken, ThrottlePolicy, NoDelay

logger = logging.getLogger(__name__)

MAX_LOGGED_FAILURES = 3


class BulkWorkflow:
    """
    Base class for workflows driving a directory client.

    Args:
        client: Directory client
        throttle: Pause policy applied between write calls
        page_size: Requested listing page size
        page_delay_seconds: Pause before each listing page after the first
        cancel_token: Cooperative cancellation flag
    """

    name = 'bulk'

    def __init__(self, client: DirectoryClientBase, throttle: Optional[ThrottlePolicy] = None,
                 page_size: Optional[int] = None, page_delay_seconds: float = 0.0,
                 cancel_token: Optional[CancelToken] = None):
        self.client = client
        self.throttle = throttle or NoDelay()
        self.page_size = page_size
        self.page_delay_seconds = page_delay_seconds
        self.cancel_token = cancel_token or CancelToken()
        self.last_stats: Optional[RunStats] = None

    def _check_cancelled(self):
        self.cancel_token.raise_if_cancelled()

    def _paginator(self, select: Optional[List[str]] = None) -> DirectoryPaginator:
        return DirectoryPaginator(
            self.client,
            select=select,
            page_size=self.page_size,
            throttle=self.throttle,
            cancel_token=self.cancel_token
        )

    def _page_delay_hook(self, stats: RunStats) -> PageHook:
        """Hook counting completed pages and applying the configured page delay."""
        def on_page_boundary(request: PageRequest) -> PageRequest:
            stats.pages += 1
            if self.page_delay_seconds > request.delay_seconds:
                request.delay_seconds = self.page_delay_seconds
            return request
        return on_page_boundary

    def _flush_batch(self, accumulator: BatchAccumulator, stats: RunStats, kind: str) -> Optional[BatchResult]:
        """
        Flush one batch, absorbing transport failures.

        A failed batch is logged and its operations counted as failed; the run
        carries on with the next batch.
        """
        size = min(len(accumulator), accumulator.capacity)
        if size == 0:
            return None

        try:
            result = accumulator.flush()
        except TransportError as e:
            stats.failed_batches += 1
            stats.failed += size
            hint = " (transient, the range can be re-run later)" if is_retryable_error(e) else ""
            logger.error(f"{self.name}: batch of {size} {kind} operations failed after "
                         f"{stats.elapsed_seconds:.1f}s: {e}{hint}")
            audit_logger.log_batch_error(self.name, kind, size, e)
            return None

        stats.record_batch(result)
        audit_logger.log_batch(self.name, kind, len(result), result.succeeded, result.failed)

        failures = [op_result for op_result in result.results if not op_result.success]
        for op_result in failures[:MAX_LOGGED_FAILURES]:
            logger.warning(f"{self.name}: {kind} '{op_result.operation.label}' failed "
                           f"with status {op_result.status}: {op_result.error}")
        if len(failures) > MAX_LOGGED_FAILURES:
            logger.warning(f"{self.name}: {len(failures) - MAX_LOGGED_FAILURES} more failures in this batch")
        return result

    def _drain(self, accumulator: BatchAccumulator, stats: RunStats, kind: str):
        """Flush everything still buffered at end of stream."""
        while not accumulator.is_empty():
            self._flush_batch(accumulator, stats, kind)

    def _discard(self, accumulator: BatchAccumulator, stats: RunStats):
        stats.discarded += accumulator.discard()
        if stats.discarded:
            logger.warning(f"{self.name}: discarded {stats.discarded} buffered operations after cancellation")

    def _log_summary(self, stats: RunStats):
        """Log final run statistics."""
        summary = stats.summary()
        runtime = summary['runtime_seconds']
        runtime_str = f"{runtime:.2f} seconds"
        if runtime > 60:
            runtime_str = f"{int(runtime // 60)}m {runtime % 60:.1f}s"

        logger.info(f"=== {self.name} summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        for key, value in summary.items():
            if key != 'runtime_seconds' and value:
                logger.info(f"  {key.replace('_', ' ').capitalize()}: {value}")
