"""
Work Queue - per-key deduplicating queue with retry backoff.

Guarantees a key is never handed to two workers at once. A key added
while it is being processed is marked dirty and handed out again once the
worker calls done(). Failed keys are requeued with exponential backoff and
jitter, tracked per key.
"""

import asyncio
import logging
import random
from collections import deque
from typing import Callable, Deque, Dict, Generic, Optional, Set, Tuple, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")


def backoff_delay(
    failures: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Exponential backoff capped at max_delay, with ±jitter_factor jitter.

    Args:
        failures: Consecutive failures before this retry (0 for the first)
        base_delay: Delay for the first retry in seconds
        max_delay: Upper bound before jitter in seconds
        jitter_factor: Relative jitter, 0.1 = ±10%
        rand: Source of uniform [0, 1) values

    Returns:
        Delay in seconds, never negative
    """
    delay = min(base_delay * (2 ** min(failures, 10)), max_delay)
    delay *= 1 + (rand() * 2 - 1) * jitter_factor
    return max(delay, 0.0)


class WorkQueue(Generic[K]):
    """Asyncio work queue keyed by resource identity."""

    def __init__(
        self,
        base_delay: float = 5.0,
        max_delay: float = 300.0,
        jitter_factor: float = 0.1,
        rand: Callable[[], float] = random.random,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self._rand = rand

        self._queue: Deque[K] = deque()
        self._dirty: Set[K] = set()
        self._processing: Set[K] = set()
        self._failures: Dict[K, int] = {}
        self._delayed: Dict[K, Tuple[float, asyncio.TimerHandle]] = {}
        self._waiters: Deque[asyncio.Future] = deque()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def is_processing(self, key: K) -> bool:
        return key in self._processing

    def is_backing_off(self, key: K) -> bool:
        """Return True if a failed key is waiting out its retry delay."""
        return key in self._delayed and key in self._failures

    def _wakeup(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    def add(self, key: K) -> None:
        """Queue a key; duplicates of a queued key collapse into one."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._wakeup()

    def add_after(self, key: K, delay: float) -> None:
        """Queue a key after a delay, keeping the earliest pending deadline."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        pending = self._delayed.get(key)
        if pending is not None:
            if pending[0] <= deadline:
                return
            pending[1].cancel()

        handle = loop.call_at(deadline, self._fire, key)
        self._delayed[key] = (deadline, handle)

    def _fire(self, key: K) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: K) -> float:
        """
        Requeue a failed key with per-key exponential backoff.

        Returns:
            The delay in seconds before the key is handed out again
        """
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = backoff_delay(
            failures,
            self.base_delay,
            self.max_delay,
            self.jitter_factor,
            self._rand,
        )
        self.add_after(key, delay)
        return delay

    def forget(self, key: K) -> None:
        """Reset the failure count of a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Optional[K]:
        """
        Wait for the next key and mark it as processing.

        Returns:
            The key, or None once the queue is shut down
        """
        while not self._queue:
            if self._shutting_down:
                return None
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                if waiter.done() and not waiter.cancelled():
                    self._wakeup()
                raise

        key = self._queue.popleft()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: K) -> None:
        """Mark a key as processed; requeue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._wakeup()

    def shutdown(self) -> None:
        """Stop handing out keys and release all waiting workers."""
        self._shutting_down = True
        for _, handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        self._queue.clear()
        self._dirty.clear()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
