"""
Retry helpers for transient directory and identity store failures.

Only errors that look transient (network failures, timeouts, throttling and
server-side HTTP errors) are worth retrying; everything else is raised on the
first attempt by callers that pass a narrow ``exceptions`` tuple or use
``is_retryable_error`` as a filter.
"""

import time
import logging
from typing import Callable, Any, Dict, Tuple, Type, Optional

from ldap3.core.exceptions import LDAPSocketOpenError, LDAPSocketReceiveError, LDAPSessionTerminatedByServerError

logger = logging.getLogger(__name__)


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


TRANSIENT_LDAP_ERRORS = (
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
    LDAPSessionTerminatedByServerError,
)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts, including the first call
        delay: Initial delay between retries in seconds
        backoff: Delay multiplier applied after each retry
        exceptions: Exception types to catch
        should_retry: Optional predicate; a caught exception for which it
            returns False is re-raised immediately
        on_retry: Optional callback invoked before each retry

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all attempts fail
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
            if should_retry is not None and not should_retry(e):
                raise

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

            time.sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def retry_with_config(func: Callable, error_config: Dict[str, Any], operation_name: str,
                      exceptions: Tuple[Type[Exception], ...] = (Exception,)) -> Any:
    """
    Call func with the retry settings of the ``error_handling`` config section.

    Only errors accepted by ``is_retryable_error`` are retried.
    """
    return retry_call(
        func,
        max_attempts=error_config.get('max_retries', 3) + 1,
        delay=error_config.get('retry_wait_seconds', 5),
        backoff=error_config.get('retry_backoff', 1.0),
        exceptions=exceptions,
        should_retry=is_retryable_error,
        on_retry=create_retry_callback(operation_name)
    )


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exception: Exception to check

    Returns:
        True if the exception indicates a transient failure
    """
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True

    if isinstance(exception, TRANSIENT_LDAP_ERRORS):
        return True

    # 429 and 5xx responses from the identity store
    status_code = getattr(exception, 'status_code', None)
    if isinstance(status_code, int) and (status_code == 429 or 500 <= status_code < 600):
        return True

    error_msg = str(exception).lower()
    transient_patterns = [
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'network is unreachable',
        'temporary failure',
        'service unavailable',
        'server is busy',
    ]

    return any(pattern in error_msg for pattern in transient_patterns)


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
