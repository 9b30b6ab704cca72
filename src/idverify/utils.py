"""
Utility functions and decorators for the IDVERIFY system.

This module provides general-purpose helpers used across the verification
core: a timing decorator, a retry decorator with exponential backoff,
identifier generation and a few numeric helpers.
"""

import time
import uuid
import functools
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar
import structlog

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Type variable for generic decorators
F = TypeVar("F", bound=Callable[..., Any])


def timer(func: F) -> F:
    """
    Decorator to measure and log function execution time.

    Parameters
    ----------
    func : Callable
        Function to be timed.

    Returns
    -------
    Callable
        Wrapped function with timing capability.

    Examples
    --------
    >>> @timer
    ... def slow_function():
    ...     time.sleep(1)
    ...     return "done"
    >>> result = slow_function()  # Logs execution time
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()

        try:
            result = func(*args, **kwargs)
            execution_time = (time.perf_counter() - start_time) * 1000

            logger.debug(
                "Function execution completed",
                function_name=func.__name__,
                module=func.__module__,
                execution_time_ms=execution_time,
                success=True,
            )

            return result

        except Exception as e:
            execution_time = (time.perf_counter() - start_time) * 1000

            logger.error(
                "Function execution failed",
                function_name=func.__name__,
                module=func.__module__,
                execution_time_ms=execution_time,
                error=str(e),
                error_type=type(e).__name__,
                success=False,
            )

            raise

    return wrapper


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> Callable[[F], F]:
    """
    Decorator to retry function execution on failure.

    Parameters
    ----------
    max_attempts : int, default=3
        Maximum number of attempts.
    delay : float, default=1.0
        Initial delay between retries in seconds.
    backoff : float, default=2.0
        Backoff multiplier for delay.
    exceptions : tuple, default=(Exception,)
        Tuple of exception types to catch and retry.
    sleep : Callable[[float], None], default=time.sleep
        Function used to wait between attempts.

    Returns
    -------
    Callable
        Decorator function.

    Examples
    --------
    >>> @retry(max_attempts=3, delay=0.5)
    ... def unreliable_function():
    ...     pass
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            current_delay = delay
            last_exception = None

            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)

                except exceptions as e:
                    last_exception = e

                    if attempt < max_attempts - 1:  # Don't sleep on last attempt
                        logger.warning(
                            f"Function {func.__name__} failed, retrying",
                            attempt=attempt + 1,
                            max_attempts=max_attempts,
                            delay_seconds=current_delay,
                            error=str(e),
                        )

                        sleep(current_delay)
                        current_delay *= backoff
                    else:
                        logger.error(
                            f"Function {func.__name__} failed after all retries",
                            total_attempts=max_attempts,
                            final_error=str(e),
                        )

            raise last_exception

        return wrapper

    return decorator


def generate_session_id() -> str:
    """
    Generate a unique session identifier.

    Returns
    -------
    str
        32 character hexadecimal identifier.
    """
    return str(uuid.uuid4()).replace("-", "")


def generate_record_id() -> str:
    """Generate a unique audit record identifier."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Perform safe division with default value for zero denominator.

    Examples
    --------
    >>> safe_divide(10, 2)
    5.0
    >>> safe_divide(10, 0)
    0.0
    """
    if denominator == 0:
        return default
    return numerator / denominator


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))
