"""Decorator utilities for cross-cutting concerns."""
import time
import logging
import functools
from typing import Any, Callable, Optional, TypeVar, cast

# Setup logging
logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


class RetriesExhausted(Exception):
    """Raised by call_with_retry when every attempt failed."""

    def __init__(self, last_error: Exception, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"{attempts} attempt(s) failed: {last_error}")


def log_execution_time(func: F) -> F:
    """Decorator to log function execution time.

    Args:
        func: The function to decorate

    Returns:
        Decorated function that logs execution time
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()
        try:
            result = func(*args, **kwargs)
            duration = time.time() - start_time
            logger.info(f"{func.__name__} completed in {duration:.2f}s")
            return result
        except Exception as e:
            duration = time.time() - start_time
            logger.error(f"{func.__name__} failed after {duration:.2f}s: {str(e)}")
            raise
    return cast(F, wrapper)


def call_with_retry(func: Callable[[], Any], max_attempts: int = 3, delay: float = 1.0,
                    backoff: float = 2.0, exceptions: tuple = (Exception,),
                    sleep: Callable[[float], None] = time.sleep,
                    description: Optional[str] = None,
                    retry_logger: Optional[logging.Logger] = None) -> Any:
    """Call ``func`` and retry on ``exceptions`` with exponential backoff.

    Args:
        func: Zero-argument callable to invoke
        max_attempts: Total number of attempts, including the first one
        delay: Delay before the first retry in seconds
        backoff: Backoff multiplier (e.g., 2.0 means delay doubles each retry)
        exceptions: Tuple of exceptions that trigger a retry
        sleep: Function used to wait between attempts
        description: Name used in log messages
        retry_logger: Logger for retry messages (defaults to module logger)

    Returns:
        Whatever ``func`` returns

    Raises:
        RetriesExhausted: after ``max_attempts`` failures; wraps the last error
    """
    retry_logger = retry_logger or logger
    description = description or getattr(func, "__name__", "call")
    attempt = 1
    current_delay = delay

    while True:
        try:
            return func()
        except exceptions as e:
            if attempt >= max_attempts:
                retry_logger.error(f"All {max_attempts} attempts failed for {description}: {str(e)}")
                raise RetriesExhausted(e, attempt) from e

            retry_logger.warning(
                f"Attempt {attempt}/{max_attempts} for {description} failed: {str(e)}. "
                f"Retrying in {current_delay:.2f}s"
            )

            sleep(current_delay)
            attempt += 1
            current_delay *= backoff


def retry(max_attempts: int = 3, delay: float = 1.0, backoff: float = 2.0,
          exceptions: tuple = (Exception,), logger_name: Optional[str] = None):
    """Decorator for retrying functions with exponential backoff.

    The last error is re-raised unchanged once all attempts are used.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries in seconds
        backoff: Backoff multiplier (e.g., 2.0 means delay doubles each retry)
        exceptions: Tuple of exceptions to catch for retry
        logger_name: Optional logger name (defaults to module logger)

    Returns:
        Decorator function
    """
    retry_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return call_with_retry(
                    functools.partial(func, *args, **kwargs),
                    max_attempts=max_attempts,
                    delay=delay,
                    backoff=backoff,
                    exceptions=exceptions,
                    description=func.__name__,
                    retry_logger=retry_logger,
                )
            except RetriesExhausted as e:
                raise e.last_error

        return cast(F, wrapper)

    return decorator
