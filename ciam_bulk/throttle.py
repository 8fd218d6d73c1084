"""
Throttling and cancellation primitives for the bulk workflows.

The directory service throttles clients that send too many requests in a short
period. The workflows stay under its limits with fixed pauses between batches
and between listing pages; those pauses are expressed as policy objects so
they can be configured per workflow and replaced in tests.
"""

import time
import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class OperationCancelled(Exception):
    """Raised when a run is interrupted through its CancelToken."""
    pass


class CancelToken:
    """Cooperative cancellation flag shared between the console and a running workflow."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = ''

    def cancel(self, reason: str = 'cancelled by operator'):
        if not self._event.is_set():
            self.reason = reason
            logger.warning(f"Cancellation requested: {reason}")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True early if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelled(self.reason or 'cancelled')


class ThrottlePolicy:
    """Base throttle policy: no delay."""

    def delay_for(self, attempt: int = 1) -> float:
        return 0.0

    def wait(self, cancel_token: Optional[CancelToken] = None, seconds: Optional[float] = None):
        """
        Pause before the next remote call.

        Args:
            cancel_token: Token whose cancellation ends the pause early
            seconds: Explicit delay overriding the policy's own delay
        """
        delay = self.delay_for() if seconds is None else seconds
        if delay <= 0:
            return
        logger.debug(f"Throttling for {delay:.2f} seconds")
        if cancel_token is not None:
            cancel_token.wait(delay)
        else:
            time.sleep(delay)


class NoDelay(ThrottlePolicy):
    """Never pauses."""
    pass


class FixedDelay(ThrottlePolicy):
    """
    Pause a constant number of seconds between calls.

    The delay never changes with the service's responses.
    """

    def __init__(self, seconds: float):
        if seconds < 0:
            raise ValueError(f"Delay must be non-negative, got {seconds}")
        self.seconds = seconds

    def delay_for(self, attempt: int = 1) -> float:
        return self.seconds

    def __repr__(self):
        return f"FixedDelay({self.seconds})"


def throttle_from_seconds(seconds: float) -> ThrottlePolicy:
    """Build the policy for a configured delay value."""
    if not seconds:
        return NoDelay()
    return FixedDelay(float(seconds))
