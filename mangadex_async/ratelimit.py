import asyncio
import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

from .errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass
class RateBudget:
    limit: int
    window_duration: float
    window_start: float
    remaining_calls: int


class RateLimiter:
    """Fixed-window admission control for outgoing API calls.

    A call is charged only once its wait is over, so a caller cancelled while
    waiting never touches the budget. ``refund()`` gives back a charge for a
    call that was admitted but never sent.
    """

    def __init__(self, limit: int, window: float, *,
                 time_fn: Optional[Callable[[], float]] = None,
                 sleep_fn: Optional[Callable[[float], Awaitable[None]]] = None):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")
        self.time_fn = time_fn or time.monotonic
        self.sleep_fn = sleep_fn or asyncio.sleep
        self._lock = threading.Lock()
        self._budget = RateBudget(limit=limit, window_duration=float(window),
                                  window_start=self.time_fn(), remaining_calls=limit)

    def _roll(self, now: float) -> None:
        b = self._budget
        if now >= b.window_start + b.window_duration:
            b.window_start = now
            b.remaining_calls = b.limit

    def _take(self) -> Tuple[float, float]:
        with self._lock:
            now = self.time_fn()
            self._roll(now)
            b = self._budget
            if b.remaining_calls > 0:
                b.remaining_calls -= 1
                return 0.0, now
            return max(b.window_start + b.window_duration - now, 0.0), now

    def try_acquire(self) -> float:
        """Charge one call; return 0.0 on success or the seconds until reset."""
        return self._take()[0]

    async def acquire(self, blocking: bool = True) -> float:
        """Wait for and charge one call, returning the time it was charged at."""
        while True:
            wait, now = self._take()
            if wait <= 0.0:
                return now
            if not blocking:
                raise RateLimited(f"local rate budget exhausted, resets in {wait:.2f}s",
                                  retry_after=wait, status=0)
            logger.debug("rate budget exhausted, waiting %.2fs", wait)
            await self.sleep_fn(wait)

    def refund(self, charged_at: Optional[float] = None) -> None:
        with self._lock:
            b = self._budget
            if charged_at is not None and charged_at < b.window_start:
                return
            b.remaining_calls = min(b.limit, b.remaining_calls + 1)

    def snapshot(self) -> RateBudget:
        with self._lock:
            self._roll(self.time_fn())
            return dataclasses.replace(self._budget)
