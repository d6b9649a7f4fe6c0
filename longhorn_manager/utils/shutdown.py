"""
Process-wide stop event for graceful controller termination.

uvicorn owns SIGINT/SIGTERM; its lifespan shutdown calls request_shutdown(),
which stops the informers, stops new dequeues and releases the cache sync
barrier.
"""
import asyncio
from typing import Optional

from longhorn_manager.config.logging import get_logger

logger = get_logger(__name__)


class ShutdownHandler:
    """Owner of the stop event shared by the informers and the controller."""

    def __init__(self):
        self.shutdown_event: Optional[asyncio.Event] = None

    def setup(self) -> asyncio.Event:
        """Create a fresh stop event on the running loop and return it."""
        self.shutdown_event = asyncio.Event()
        return self.shutdown_event

    def request_shutdown(self, reason: str = "requested") -> None:
        if self.shutdown_event is None:
            self.shutdown_event = asyncio.Event()
        if not self.shutdown_event.is_set():
            logger.info("shutdown_requested", reason=reason)
        self.shutdown_event.set()

    def is_shutting_down(self) -> bool:
        """Check if shutdown has been requested."""
        return bool(self.shutdown_event and self.shutdown_event.is_set())


# Global instance
shutdown_handler = ShutdownHandler()
