"""RateLimiter: Sliding-window limiter for outbound price requests.

The limiter keeps the timestamps of the requests it admitted. A new request is
admitted only while fewer than ``max_requests`` timestamps fall inside the
trailing ``window_seconds``. Otherwise the caller sleeps until the oldest
timestamp leaves the window.

Only the coroutine awaiting ``acquire()`` is suspended. Other pipeline stages
keep running.

.. code-block:: python

    limiter = RateLimiter(max_requests=60, window_seconds=60.0)
    await limiter.acquire()
    response = await fetcher.fetch(address)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Bounds request throughput over a sliding time window.

    :ivar max_requests: Maximum requests admitted per window.
    :ivar window_seconds: Length of the sliding window.
    """

    DEFAULT_MAX_REQUESTS = 60
    DEFAULT_WINDOW_SECONDS = 60.0

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the limiter.

        :param max_requests: Maximum requests admitted per window.
        :param window_seconds: Window length in seconds.
        :param clock: Monotonic time source.
        :param sleep: Coroutine used to wait for a free slot.
        :raises ValueError: If limits are not positive.
        """
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def in_window(self) -> int:
        """Count requests admitted within the current window."""
        self._evict(self._clock())
        return len(self._timestamps)

    def time_until_available(self) -> float:
        """Seconds until a slot frees up (0 if one is free now)."""
        now = self._clock()
        self._evict(now)
        if len(self._timestamps) < self.max_requests:
            return 0.0
        return max(0.0, self._timestamps[0] + self.window_seconds - now)

    async def acquire(self) -> float:
        """Wait for a free slot and claim it.

        :returns: Total seconds spent waiting.
        """
        waited = 0.0
        while True:
            async with self._lock:
                wait = self.time_until_available()
                if wait <= 0:
                    self._timestamps.append(self._clock())
                    return waited
            logger.debug(f"Rate limit reached, waiting {wait:.2f}s for a slot")
            await self._sleep(wait)
            waited += wait

    def reset(self) -> None:
        """Forget all admitted requests."""
        self._timestamps.clear()
