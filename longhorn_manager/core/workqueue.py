"""
Rate limited work queue for replica reconciliation.

This module implements an in-process asyncio work queue with the semantics
controllers rely on: a key is processed by at most one worker at a time, and
failed keys are re-added with per-key exponential backoff.

Features:
- Deduplication of pending keys
- Single-flight: a key re-added while in flight is delivered after done()
- Delayed adds and rate limited re-adds
- Per-key failure tracking (num_requeues / forget)
- Shutdown that wakes every blocked consumer

Usage:
    >>> from longhorn_manager.core.workqueue import RateLimitingQueue
    >>>
    >>> queue = RateLimitingQueue(name="longhorn-replica")
    >>> queue.add("longhorn-system/replica-a")
    >>>
    >>> key, shutdown = await queue.get()
    >>> try:
    ...     await sync(key)
    ...     queue.forget(key)
    ... finally:
    ...     queue.done(key)
"""
import asyncio
import time
from collections import deque
from typing import Callable, Deque, Dict, Hashable, List, Optional, Set, Tuple

import structlog

from longhorn_manager.services import metrics

logger = structlog.get_logger(__name__)


class ItemExponentialFailureRateLimiter:
    """
    Per-item exponential backoff: base_delay * 2^failures, capped at max_delay.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        exp = self._failures.get(item, 0)
        self._failures[item] = exp + 1

        # 2^63 is already far past any sane ceiling
        if exp > 62:
            return self.max_delay
        return min(self.base_delay * (2 ** exp), self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        self._failures.pop(item, None)


class BucketRateLimiter:
    """
    Overall token bucket shared by all items.

    Each call reserves one token and returns how long the caller has to wait
    for it.
    """

    def __init__(self, qps: float = 10.0, burst: int = 100, clock: Callable[[], float] = time.monotonic):
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()

    def when(self, item: Hashable) -> float:
        now = self._clock()
        self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
        self._last = now
        self._tokens -= 1
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self.qps

    def num_requeues(self, item: Hashable) -> int:
        return 0

    def forget(self, item: Hashable) -> None:
        return None


class MaxOfRateLimiter:
    """Combine limiters, using the longest delay any of them asks for."""

    def __init__(self, *limiters):
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> MaxOfRateLimiter:
    """Per-item exponential backoff bounded by an overall token bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(qps, burst),
    )


class RateLimitingQueue:
    """
    Deduplicating, single-flight work queue with delayed and rate limited adds.

    All methods except get() are synchronous so they can be called from
    event handlers and timer callbacks; they must run on the event loop
    that owns the queue.
    """

    def __init__(self, rate_limiter=None, name: str = ""):
        self.name = name
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

        self._queue: Deque[Hashable] = deque()
        # Keys that need processing (queued, or re-added while in flight)
        self._dirty: Set[Hashable] = set()
        # Keys currently handed out to a worker
        self._processing: Set[Hashable] = set()
        self._waiters: Deque[asyncio.Future] = deque()
        self._timers: Set[asyncio.TimerHandle] = set()
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        """Mark item as needing processing."""
        if self._shutting_down:
            return
        if item in self._dirty:
            return

        metrics.queue_adds_total.inc()
        self._dirty.add(item)
        if item in self._processing:
            # Delivered again once the current worker calls done()
            return

        self._queue.append(item)
        metrics.queue_depth.set(len(self._queue))
        self._wake_one()

    async def get(self) -> Tuple[Optional[Hashable], bool]:
        """
        Block until an item is available.

        Returns:
            (item, shutdown); item is None once the queue is shutting down
        """
        while not self._queue and not self._shutting_down:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                elif self._queue:
                    # We were woken for an item we will never take
                    self._wake_one()
                raise

        if self._shutting_down:
            return None, True

        item = self._queue.popleft()
        metrics.queue_depth.set(len(self._queue))
        self._processing.add(item)
        self._dirty.discard(item)
        return item, False

    def done(self, item: Hashable) -> None:
        """Mark item as no longer in flight, redelivering it if it was re-added."""
        self._processing.discard(item)
        if item in self._dirty and not self._shutting_down:
            self._queue.append(item)
            metrics.queue_depth.set(len(self._queue))
            self._wake_one()

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add item once delay seconds have passed."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._timers.discard(handle)
            self.add(item)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def add_rate_limited(self, item: Hashable) -> None:
        """Add item after the rate limiter says it is ok."""
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        """Stop tracking failures for item."""
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        """Stop accepting items and release every blocked get()."""
        if self._shutting_down:
            return
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
        logger.info("work_queue_shut_down", queue=self.name, pending=len(self._queue))

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def pending(self) -> List[Hashable]:
        """Snapshot of queued (not in flight) items, in delivery order."""
        return list(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    def _wake_one(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
