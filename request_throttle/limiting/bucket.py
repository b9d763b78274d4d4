"""
Token bucket used to model request capacity.

The bucket holds a fractional number of tokens that drips back in
continuously, proportional to the elapsed time.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable


class TokenBucket:
    """
    Continuously refilling token bucket.

    A bucket with ``capacity == 0`` is unlimited: every withdrawal succeeds
    and no refill is computed. A bucket with ``refill_rate == 0`` is always
    topped up to capacity on refill.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        refill_period: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._capacity = float(capacity)
        self._refill_rate = float(refill_rate)
        self._refill_period = float(refill_period)
        self._clock = clock
        self._lock = threading.Lock()

        # Buckets start full
        self._content = self._capacity
        self._last_refill = clock()

    @property
    def capacity(self) -> float:
        return self._capacity

    @property
    def refill_rate(self) -> float:
        return self._refill_rate

    @property
    def refill_period(self) -> float:
        return self._refill_period

    @property
    def content(self) -> float:
        """Token count as of the last refill computation."""
        return self._content

    @property
    def last_refill(self) -> float:
        return self._last_refill

    @property
    def unlimited(self) -> bool:
        return not self._capacity

    def try_withdraw(self, count: float = 1) -> bool:
        """
        Remove ``count`` tokens if the bucket holds them.

        Args:
            count: Number of tokens to remove

        Returns:
            True if the tokens were removed, False otherwise (no mutation)
        """
        if self.unlimited:
            return True

        # Can never be satisfied, however long we wait
        if count > self._capacity:
            return False

        with self._lock:
            self._refill_locked()

            if count > self._content:
                return False

            self._content -= count
            return True

    def refill(self) -> None:
        """Credit the tokens accumulated since the last refill."""
        with self._lock:
            self._refill_locked()

    def _refill_locked(self) -> None:
        if not self._refill_rate:
            self._content = self._capacity
            return

        now = self._clock()
        # Clock anomalies never remove tokens
        elapsed = max(now - self._last_refill, 0.0)
        self._last_refill = max(now, self._last_refill)

        drip = elapsed * (self._refill_rate / self._refill_period)
        self._content = min(self._content + drip, self._capacity)

    def __repr__(self) -> str:
        return (
            f"TokenBucket(capacity={self._capacity}, "
            f"refill_rate={self._refill_rate}, "
            f"refill_period={self._refill_period}, "
            f"content={self._content:.3f})"
        )
