# src/secret_mirror/workqueue.py
"""
A deduplicating, rate-limited work queue for asyncio workers.

The queue hands out opaque string keys and guarantees that a key is never
held by two workers at once. A key added while it is being processed is
marked dirty and handed out again once the current holder calls `done`, so
no update is lost. Failed keys are re-added after a delay computed by a
pluggable `RateLimiter`.

All state transitions run on the event loop thread and never await, which
makes each public method atomic with respect to the workers. Callers on
other threads must go through `loop.call_soon_threadsafe`.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Optional, Set, Tuple

from secret_mirror.ratelimit import ExponentialBackoffRateLimiter, RateLimiter

logger: logging.Logger = logging.getLogger(__name__)


class WorkQueue:
    """
    A work queue of string keys with dirty/processing tracking.

    Attributes:
        name (str): A label used in log messages.
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        name: str = "",
    ) -> None:
        """
        Initialize an empty queue.

        Args:
            rate_limiter (RateLimiter, optional): Retry policy for
                `add_rate_limited`. Defaults to per-key exponential backoff.
            name (str): A label used in log messages.
        """
        self.name: str = name
        self._rate_limiter: RateLimiter = (
            rate_limiter or ExponentialBackoffRateLimiter()
        )
        self._queue: Deque[str] = deque()
        # Keys that need processing: everything pending, plus keys re-added
        # while a worker holds them.
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._getters: Deque[asyncio.Future[None]] = deque()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._shutting_down: bool = False

    def __len__(self) -> int:
        """Return the number of keys ready to be handed out."""
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        """Whether `shut_down` has been called."""
        return self._shutting_down

    def _wakeup_next(self) -> None:
        while self._getters:
            waiter: asyncio.Future[None] = self._getters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                break

    def add(self, key: str) -> None:
        """
        Mark `key` as needing processing.

        Adding a key that is already pending is a no-op. Adding a key that a
        worker currently holds defers it until that worker calls `done`.

        Args:
            key (str): The key to enqueue.
        """
        if self._shutting_down:
            logger.debug(f"Queue {self.name!r} is shutting down, ignoring {key!r}.")
            return
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._wakeup_next()

    async def get(self) -> Tuple[Optional[str], bool]:
        """
        Wait for a key and check it out for processing.

        Once the queue is shut down, keys still pending are handed out until
        none remain; after that every call returns immediately.

        Returns:
            Tuple[Optional[str], bool]: The key and `False`, or `None` and
                `True` when the queue is shut down and drained.
        """
        while not self._queue and not self._shutting_down:
            getter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._getters.append(getter)
            try:
                await getter
            except asyncio.CancelledError:
                getter.cancel()
                try:
                    self._getters.remove(getter)
                except ValueError:
                    pass
                # A wakeup meant for this getter goes to the next one.
                if self._queue and not getter.cancelled():
                    self._wakeup_next()
                raise

        if not self._queue:
            return None, True

        key: str = self._queue.popleft()
        self._processing.add(key)
        self._dirty.discard(key)
        return key, False

    def done(self, key: str) -> None:
        """
        Release `key` after processing.

        If the key was added again while it was being processed it goes back
        to the pending queue.

        Args:
            key (str): A key previously returned by `get`.
        """
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.append(key)
            self._wakeup_next()

    def forget(self, key: str) -> None:
        """
        Reset the retry history of `key`.

        Args:
            key (str): The key whose requeue count should be cleared.
        """
        self._rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        """
        Report how many times `key` has been requeued since it was last forgotten.

        Args:
            key (str): The key to look up.

        Returns:
            int: The requeue count.
        """
        return self._rate_limiter.num_requeues(key)

    def add_rate_limited(self, key: str) -> None:
        """
        Re-add `key` once the rate limiter allows it.

        This never suspends the caller; the delay runs on an event loop timer.

        Args:
            key (str): The key to requeue.
        """
        self.add_after(key, self._rate_limiter.when(key))

    def add_after(self, key: str, delay: float) -> None:
        """
        Add `key` after `delay` seconds.

        Only one timer is kept per key; if one is already scheduled to fire
        sooner, the new request is dropped.

        Args:
            key (str): The key to enqueue.
            delay (float): The delay in seconds. Non-positive adds immediately.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        ready_at: float = loop.time() + delay
        existing: Optional[asyncio.TimerHandle] = self._timers.get(key)
        if existing is not None:
            if existing.when() <= ready_at:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(ready_at, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def shut_down(self) -> None:
        """
        Stop accepting new keys and release every waiting `get`.

        Scheduled retries are cancelled. Calling this more than once is a no-op.
        """
        if self._shutting_down:
            return
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        while self._getters:
            waiter: asyncio.Future[None] = self._getters.popleft()
            if not waiter.done():
                waiter.set_result(None)
        logger.debug(f"Queue {self.name!r} shut down with {len(self._queue)} pending.")
