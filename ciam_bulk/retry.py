"""
Retry helpers for connection setup and token acquisition.

Batch submissions are never retried: a failed batch is logged and the run
moves on. Retries only cover the calls a run cannot start without, such as
obtaining an access token or binding to an LDAP server.
"""

import time
import logging
from typing import Callable, Any, Dict, Tuple, Type, Optional

logger = logging.getLogger(__name__)

THROTTLING_STATUS_CODES = (429, 503)


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts, including the first call
        delay: Initial delay between retries
        backoff: Delay multiplier applied after each retry
        exceptions: Exception types to catch and retry on
        on_retry: Optional callback for retry events
        sleep: Sleep function, replaceable in tests

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    if kwargs is None:
        kwargs = {}

    last_exception = None
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except exceptions as e:
            last_exception = e

            if attempt == max_attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}")
            logger.debug(f"Retrying in {current_delay:.1f} seconds...")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def retry_settings(error_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Translate the ``error_handling`` config section into ``retry_call`` keyword arguments.
    """
    return {
        'max_attempts': int(error_config.get('max_retries', 3)) + 1,
        'delay': float(error_config.get('retry_wait_seconds', 5)),
        'backoff': float(error_config.get('retry_backoff', 1.0)),
    }


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception indicates a transient failure.

    Used to word log messages when a batch fails: throttling and server errors
    usually mean the operator can re-run the same range later.
    """
    if isinstance(exception, (ConnectionError, TimeoutError, RetryableError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if status_code is not None:
        if status_code in THROTTLING_STATUS_CODES or 500 <= status_code < 600:
            return True

    error_msg = str(exception).lower()
    transient_patterns = [
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'temporary failure',
        'service unavailable',
        'too many requests',
    ]
    return any(pattern in error_msg for pattern in transient_patterns)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
