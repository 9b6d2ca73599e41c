"""
Agent Discovery Transport Retry Module

Retry with exponential backoff for the raw requests issued by data source
clients (GraphQL POSTs, ``eth_getLogs`` calls). The search engine itself never
retries; a chain that keeps failing is reported as failed for that page.

Classes:
    RetryConfig: Retry configuration data class

Functions:
    calculate_delay: Calculate retry delay
    is_retryable: Determine if an exception is retryable
    retry_async: Asynchronous retry decorator

Predefined Configs:
    DEFAULT_RETRY_CONFIG: 3 attempts, 0.5s base delay
    NO_RETRY_CONFIG: attempt only once

Example:
    >>> from agent_discovery.retry import retry_async, RetryConfig
    >>> @retry_async(config=RetryConfig(max_attempts=2), operation_name="subgraph_post")
    ... async def post():
    ...     ...
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from functools import wraps
from typing import Callable, Optional, Tuple, Type, TypeVar

import httpx

from .exceptions import NetworkError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry configuration data class.

    Attributes:
        max_attempts: Maximum number of attempts (including the first attempt)
        base_delay: Base delay time (seconds)
        max_delay: Maximum delay time (seconds)
        exponential_base: Exponential backoff base
        jitter: Whether to add random jitter
        jitter_factor: Jitter factor (0-1)
        retryable_exceptions: Exception types that trigger a retry
        retry_on_status_codes: HTTP status codes that trigger a retry

    Note:
        - Delay formula: base_delay * (exponential_base ^ (attempt - 2))
        - Jitter range: delay ± (delay * jitter_factor)
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.1
    retryable_exceptions: Tuple[Type[BaseException], ...] = field(
        default_factory=lambda: (
            NetworkError,
            httpx.TransportError,
            ConnectionError,
        )
    )
    retry_on_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504)


DEFAULT_RETRY_CONFIG = RetryConfig()
"""Default retry config: 3 attempts, 0.5s base delay, exponential backoff"""

NO_RETRY_CONFIG = RetryConfig(max_attempts=1)
"""No retry config: attempt only once"""


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate the delay before the Nth attempt.

    Args:
        attempt: Attempt number (starts from 1)
        config: Retry configuration

    Returns:
        Delay in seconds, 0 for the first attempt

    Example:
        >>> config = RetryConfig(base_delay=1.0, exponential_base=2.0, jitter=False)
        >>> calculate_delay(1, config)
        0.0
        >>> calculate_delay(3, config)
        2.0
    """
    if attempt <= 1:
        return 0.0

    delay = min(config.base_delay * (config.exponential_base ** (attempt - 2)), config.max_delay)

    if config.jitter:
        jitter_range = delay * config.jitter_factor
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0.0, delay)


def is_retryable(exception: BaseException, config: RetryConfig) -> bool:
    """
    Determine if an exception is retryable.

    HTTP status errors are retried only for the configured status codes, so a
    400 from a malformed query fails fast.

    Args:
        exception: Caught exception
        config: Retry configuration

    Returns:
        Whether to retry
    """
    response = getattr(exception, "response", None)
    if response is not None and hasattr(response, "status_code"):
        return response.status_code in config.retry_on_status_codes

    return isinstance(exception, config.retryable_exceptions)


def retry_async(
    config: Optional[RetryConfig] = None,
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Asynchronous retry decorator.

    Retries the decorated coroutine function until it succeeds, raises a
    non-retryable exception, or the attempts run out.

    Args:
        config: Retry configuration, defaults to DEFAULT_RETRY_CONFIG
        operation_name: Operation name, used for logging

    Returns:
        Decorator function

    Raises:
        RetryExhaustedError: Retries exhausted
        Exception: Non-retryable exceptions are raised directly

    Note:
        Cancellation is never retried; ``asyncio.CancelledError`` passes
        straight through.
    """
    if config is None:
        config = DEFAULT_RETRY_CONFIG

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            for attempt in range(1, config.max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not is_retryable(e, config):
                        logger.debug("Non-retryable exception in %s: %s", op_name, type(e).__name__)
                        raise

                    if attempt >= config.max_attempts:
                        logger.warning(
                            "Retry exhausted for %s after %d attempts: %s",
                            op_name,
                            attempt,
                            str(e),
                        )
                        raise RetryExhaustedError(op_name, attempt, e) from e

                    delay = calculate_delay(attempt + 1, config)
                    logger.info(
                        "Retrying %s (attempt %d/%d) after %.2fs: %s",
                        op_name,
                        attempt,
                        config.max_attempts,
                        delay,
                        str(e),
                    )
                    await asyncio.sleep(delay)

            raise RetryExhaustedError(op_name, config.max_attempts)

        return wrapper

    return decorator
