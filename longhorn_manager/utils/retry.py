"""
Retry utilities for Kubernetes API calls.

Short, bounded in-process retries for transient API failures (timeouts,
throttling, 5xx). Not-found and conflict responses are never retried here:
they carry meaning for the reconciler, and conflicts must reach the work
queue's retry policy instead of being replayed against a stale object.
"""
from typing import Callable

from kubernetes_asyncio.client import ApiException
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from longhorn_manager.config.logging import get_logger

logger = get_logger(__name__)

# HTTP status codes that are retryable
RETRYABLE_STATUS_CODES = {
    408,  # Request Timeout
    429,  # Too Many Requests (rate limiting)
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
}


def is_retryable_k8s_error(exception: BaseException) -> bool:
    """
    Determine if a Kubernetes API exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    if not isinstance(exception, ApiException):
        return False
    return exception.status in RETRYABLE_STATUS_CODES


def is_not_found(exception: BaseException) -> bool:
    return isinstance(exception, ApiException) and exception.status == 404


def is_conflict(exception: BaseException) -> bool:
    return isinstance(exception, ApiException) and exception.status == 409


def _log_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "k8s_api_call_failed_retrying",
        function=getattr(retry_state.fn, "__name__", None),
        attempt=retry_state.attempt_number,
        error_type=type(exc).__name__ if exc else None,
        status_code=getattr(exc, "status", None),
        error=str(exc) if exc else None,
    )


def retry_on_k8s_error(
    max_attempts: int = 3,
    initial_delay: float = 0.2,
    max_delay: float = 2.0,
) -> Callable:
    """
    Decorator to retry transient Kubernetes API failures with exponential backoff.

    Args:
        max_attempts: Total attempts including the first call (default: 3)
        initial_delay: Initial delay between retries in seconds (default: 0.2)
        max_delay: Maximum delay between retries in seconds (default: 2.0)

    Returns:
        Decorated coroutine function

    Example:
        @retry_on_k8s_error(max_attempts=5)
        async def get_replica(self, name: str):
            ...
    """
    return retry(
        retry=retry_if_exception(is_retryable_k8s_error),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=initial_delay, max=max_delay),
        before_sleep=_log_retry,
        reraise=True,
    )
