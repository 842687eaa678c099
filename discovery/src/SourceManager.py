"""SourceManager: Centralized retry policy for feeds and the price oracle.

Every outbound dependency (each upstream feed, and the price oracle as a
whole) is tracked here instead of carrying its own retry logic. When a source
fails it enters a backoff period. The backoff doubles with each consecutive
failure up to a cap and can carry random jitter so that several sources do not
retry in lockstep. A successful call resets the counter.

A server-provided retry hint (for example a ``Retry-After`` header on a 429)
extends the backoff when it is longer than the computed one.

.. code-block:: python

    >>> manager = SourceManager(["top-gainers", "new"])
    >>> manager.record_failure("new")
    5.0
    >>> manager.record_failure("new")
    10.0
    >>> manager.get_active_sources()
    ['top-gainers']
    >>> manager.record_success("new")
    >>> manager.get_source_status("new").consecutive_failures
    0
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass


@dataclass
class SourceStatus:
    """Tracks the health of a single source.

    :ivar consecutive_failures: Number of consecutive failures.
    :ivar backoff_until: Unix timestamp when the backoff period ends.
    :ivar total_failures: Total failures since tracking began.
    :ivar total_successes: Total successes since tracking began.
    :ivar last_error: Message of the most recent failure.
    """

    consecutive_failures: int = 0
    backoff_until: float = 0.0
    total_failures: int = 0
    total_successes: int = 0
    last_error: str | None = None


class SourceManager:
    """Tracks source health and applies exponential backoff with jitter.

    Backoff after the n-th consecutive failure is
    ``min(base * 2**(n-1), max) * (1 + uniform(0, jitter))``.

    :ivar sources: Tracked source names, in registration order.
    :ivar base_backoff_seconds: Backoff after the first failure.
    :ivar max_backoff_seconds: Cap on the exponential growth.
    :ivar jitter: Upper bound of the random fraction added to each backoff.
    """

    DEFAULT_BASE_BACKOFF_SECONDS = 5.0
    DEFAULT_MAX_BACKOFF_SECONDS = 300.0  # 5 minutes

    def __init__(
        self,
        sources: list[str],
        base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
        jitter: float = 0.0,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the source manager.

        :param sources: Source names to track.
        :param base_backoff_seconds: Backoff after the first failure.
        :param max_backoff_seconds: Cap on the exponential growth.
        :param jitter: Random fraction (0 disables jitter).
        :param rng: Random generator, injectable for reproducible jitter.
        """
        self.sources = list(sources)
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._status: dict[str, SourceStatus] = {s: SourceStatus() for s in sources}

    def _ensure(self, source: str) -> SourceStatus:
        if source not in self._status:
            self.sources.append(source)
            self._status[source] = SourceStatus()
        return self._status[source]

    def record_failure(
        self,
        source: str,
        error: str | None = None,
        retry_after: float | None = None,
    ) -> float:
        """Record a failure and start the backoff period.

        :param source: Source name that failed.
        :param error: Optional failure description.
        :param retry_after: Optional server retry hint in seconds.
        :returns: The backoff duration in seconds.
        """
        status = self._ensure(source)
        status.consecutive_failures += 1
        status.total_failures += 1
        status.last_error = error

        backoff_seconds = min(
            self.base_backoff_seconds * (2 ** (status.consecutive_failures - 1)),
            self.max_backoff_seconds,
        )
        if self.jitter > 0:
            backoff_seconds *= 1 + self._rng.uniform(0, self.jitter)
        if retry_after is not None and retry_after > backoff_seconds:
            backoff_seconds = retry_after

        status.backoff_until = time.time() + backoff_seconds
        return backoff_seconds

    def record_success(self, source: str) -> None:
        """Record a successful call, clearing the backoff.

        :param source: Source name that succeeded.
        """
        status = self._ensure(source)
        status.consecutive_failures = 0
        status.backoff_until = 0.0
        status.total_successes += 1
        status.last_error = None

    def get_active_sources(self) -> list[str]:
        """Get sources that are not currently in backoff.

        :returns: Source names available for fetching.
        """
        now = time.time()
        return [s for s in self.sources if now >= self._status[s].backoff_until]

    def is_source_active(self, source: str) -> bool:
        """Check whether a source may be called now.

        Unknown sources are considered active: they have never failed.

        :param source: Source name to check.
        :returns: False only while the source is in backoff.
        """
        status = self._status.get(source)
        if status is None:
            return True
        return time.time() >= status.backoff_until

    def get_backoff_remaining(self, source: str) -> float:
        """Get remaining backoff time for a source.

        :param source: Source name to check.
        :returns: Seconds remaining in backoff, or 0 if not in backoff.
        """
        if source not in self._status:
            return 0.0
        remaining = self._status[source].backoff_until - time.time()
        return max(0.0, remaining)

    def get_source_status(self, source: str) -> SourceStatus | None:
        """Get the status of a specific source, or None if untracked."""
        return self._status.get(source)
