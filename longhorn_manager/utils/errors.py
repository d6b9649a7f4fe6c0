"""
Process-wide error reporting.

Errors that the controller gives up on (keys dropped after exhausting their
retries, unexpected failures at a worker boundary) are reported here. The
reporter never raises, so calling it can never take down a worker.
"""
from typing import Optional

import sentry_sdk

from longhorn_manager.config.logging import get_logger
from longhorn_manager.services import metrics

logger = get_logger(__name__)


def handle_error(error: BaseException, key: Optional[str] = None) -> None:
    """
    Report an error that is not going to be retried.

    Args:
        error: The exception to report
        key: Work queue key the error belongs to, if any
    """
    try:
        metrics.errors_reported_total.labels(error_type=type(error).__name__).inc()
        logger.error(
            "controller_error",
            key=key,
            error_type=type(error).__name__,
            error=str(error),
            exc_info=error,
        )
        # No-op unless sentry_sdk.init() was called
        sentry_sdk.capture_exception(error)
    except Exception as e:  # noqa: BLE001
        logger.error("error_reporter_failed", key=key, error=str(e))
