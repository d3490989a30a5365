# src/secret_mirror/ratelimit.py
"""
Retry policies for the work queue.

A rate limiter decides how long a key must wait before it is handed out
again after a failed sync. The queue only ever calls `when`, `forget` and
`num_requeues`, so limiters can be combined freely.
"""

import threading
import time
from typing import Callable, Dict, Protocol, Tuple

# Failure counts beyond this always hit the cap; it keeps 2**n finite.
_MAX_EXPONENT: int = 62


class RateLimiter(Protocol):
    """The interface the work queue expects from a retry policy."""

    def when(self, key: str) -> float:
        """Record a failure for `key` and return the delay in seconds."""
        ...

    def forget(self, key: str) -> None:
        """Stop tracking `key`; its next failure starts from scratch."""
        ...

    def num_requeues(self, key: str) -> int:
        """Return how many times `key` has been requeued."""
        ...


class ExponentialBackoffRateLimiter:
    """
    Per-key exponential backoff: `base_delay * 2**failures`, capped.

    With the defaults the successive delays are 5ms, 10ms, 20ms, ... and
    reach the cap of 1000s after roughly 18 failures.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        """
        Initialize the limiter.

        Args:
            base_delay (float): Delay after the first failure, in seconds.
            max_delay (float): Upper bound for any single delay, in seconds.
        """
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError(
                f"invalid backoff bounds: base={base_delay}, max={max_delay}"
            )
        self._base_delay: float = base_delay
        self._max_delay: float = max_delay
        self._failures: Dict[str, int] = {}
        self._lock: threading.Lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            exponent: int = self._failures.get(key, 0)
            self._failures[key] = exponent + 1

        if exponent > _MAX_EXPONENT:
            return self._max_delay
        return min(self._base_delay * (2**exponent), self._max_delay)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)


class TokenBucketRateLimiter:
    """
    An overall rate limit shared by every key.

    Tokens refill at `qps` per second up to `burst`. Each call to `when`
    reserves one token; if none is available the returned delay is the time
    until the reservation is covered. It never tracks individual keys.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the bucket, full.

        Args:
            qps (float): Sustained refill rate in tokens per second.
            burst (int): Bucket capacity.
            clock (Callable[[], float]): Monotonic time source, for tests.
        """
        if qps <= 0 or burst < 1:
            raise ValueError(f"invalid token bucket: qps={qps}, burst={burst}")
        self._qps: float = qps
        self._burst: int = burst
        self._clock: Callable[[], float] = clock
        self._tokens: float = float(burst)
        self._last: float = clock()
        self._lock: threading.Lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            now: float = self._clock()
            refill: float = max(0.0, now - self._last) * self._qps
            self._tokens = min(float(self._burst), self._tokens + refill) - 1.0
            self._last = now
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self._qps

    def forget(self, key: str) -> None:
        pass

    def num_requeues(self, key: str) -> int:
        return 0


class MaxOfRateLimiter:
    """Combines limiters, always applying the most conservative one."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("MaxOfRateLimiter needs at least one limiter")
        self._limiters: Tuple[RateLimiter, ...] = limiters

    def when(self, key: str) -> float:
        # Every limiter must observe the failure, so no short-circuiting.
        return max([limiter.when(key) for limiter in self._limiters])

    def forget(self, key: str) -> None:
        for limiter in self._limiters:
            limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return max(limiter.num_requeues(key) for limiter in self._limiters)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> MaxOfRateLimiter:
    """
    Build the retry policy used by the mirror controller.

    Per-key exponential backoff bounds how hard a single broken secret is
    retried, while the token bucket bounds the overall retry rate.

    Returns:
        MaxOfRateLimiter: The combined limiter.
    """
    return MaxOfRateLimiter(
        ExponentialBackoffRateLimiter(base_delay, max_delay),
        TokenBucketRateLimiter(qps, burst),
    )
