"""
Retry utilities for handling transient directory failures.

Only reads are retried: a membership mutation that fails is reported for that
member and the run moves on.
"""

import time
import logging
from typing import Callable, Any, Optional

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exception: Exception to check

    Returns:
        True if the exception type marks a transient failure
    """
    return isinstance(exception, (RetryableError, ConnectionError, TimeoutError))


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    should_retry: Callable[[Exception], bool] = is_retryable_error,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function, retrying while its failures look transient.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts, including the first call
        delay: Initial delay between retries in seconds
        backoff: Delay multiplier applied after each retry
        should_retry: Predicate deciding whether an exception is worth another attempt
        on_retry: Optional callback invoked with (attempt, exception) before sleeping

    Returns:
        Function result

    Raises:
        The original exception when it is not retryable;
        MaxRetriesExceeded when every attempt failed with a retryable error
    """
    if kwargs is None:
        kwargs = {}

    max_attempts = max(1, max_attempts)
    current_delay = delay

    for attempt in range(1, max_attempts + 1):
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                logger.info(f"Operation succeeded on attempt {attempt}")
            return result
        except Exception as e:
            if not should_retry(e):
                raise
            if attempt == max_attempts:
                raise MaxRetriesExceeded(max_attempts, e) from e

            logger.debug(f"Attempt {attempt} failed with {type(e).__name__}: {e}; "
                         f"retrying in {current_delay:.1f} seconds")
            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(current_delay)
            current_delay *= backoff


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
