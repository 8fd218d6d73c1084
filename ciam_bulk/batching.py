"""
Fixed-capacity accumulator that groups single write operations into batches.

The directory service accepts at most 20 requests per batch call. Workflows
enqueue operations one at a time, check ``is_full()`` after each enqueue and
call ``flush()`` themselves; the accumulator never submits on its own.
"""

import logging
from typing import Callable, List, Sequence

from ciam_bulk.models import BatchedOperation, BatchResult

logger = logging.getLogger(__name__)

DEFAULT_BATCH_CAPACITY = 20


class BatchAccumulator:
    """
    Buffers write operations and submits them in bounded batches.

    Args:
        submit: Callable sending one batch to the directory and returning its
            per-operation results (normally ``client.submit_batch``)
        capacity: Maximum number of operations per submitted batch
    """

    def __init__(self, submit: Callable[[Sequence[BatchedOperation]], BatchResult],
                 capacity: int = DEFAULT_BATCH_CAPACITY):
        if capacity < 1:
            raise ValueError(f"Batch capacity must be at least 1, got {capacity}")
        self.submit = submit
        self.capacity = capacity
        self._buffer: List[BatchedOperation] = []

    def enqueue(self, operation: BatchedOperation):
        """Add an operation to the buffer. Never blocks and never flushes."""
        self._buffer.append(operation)

    def is_full(self) -> bool:
        return len(self._buffer) >= self.capacity

    def is_empty(self) -> bool:
        return not self._buffer

    def __len__(self) -> int:
        return len(self._buffer)

    def flush(self) -> BatchResult:
        """
        Submit up to ``capacity`` buffered operations as one batch.

        The operations leave the buffer before the remote call, so if the
        submission raises they are dropped and the accumulator stays usable.

        Returns:
            Per-operation results of the batch (empty if nothing was buffered)
        """
        if not self._buffer:
            return BatchResult()

        batch = self._buffer[:self.capacity]
        del self._buffer[:self.capacity]

        logger.debug(f"Submitting batch of {len(batch)} operations "
                     f"({len(self._buffer)} still buffered)")
        result = self.submit(batch)
        if result.failed:
            logger.warning(f"Batch completed with {result.failed} of {len(batch)} operations failed")
        return result

    def drain(self) -> List[BatchResult]:
        """Flush until the buffer is empty; used at end of stream."""
        results = []
        while self._buffer:
            results.append(self.flush())
        return results

    def discard(self) -> int:
        """Drop all buffered operations without submitting them."""
        count = len(self._buffer)
        self._buffer.clear()
        return count
