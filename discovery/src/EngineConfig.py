"""EngineConfig: Tunable constants for the discovery engine.

The scoring and search weights were tuned empirically and have no derivation
beyond observed behaviour. They are kept as overridable defaults rather than
hard-coded truths.

.. code-block:: python

    >>> config = EngineConfig()
    >>> config.batch_size
    3
    >>> config.with_overrides(batch_size=5).batch_size
    5
"""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class EngineConfig:
    """Configuration for ranking, search, enrichment and polling.

    All durations are in seconds.

    :ivar cap_delta_weight: Weight of the 24h market cap delta in the score.
    :ivar volume_weight: Weight of the 24h volume in the score.
    :ivar holders_weight: Weight of the unique holder count in the score.
    :ivar cache_ttl: Freshness window of enrichment cache entries.
    :ivar cache_retention: How long a stale entry survives failed refreshes.
    :ivar rate_limit_max: Max outbound price requests per window.
    :ivar rate_limit_window: Sliding window length for the rate limiter.
    :ivar batch_size: Addresses fetched concurrently per enrichment batch.
    :ivar poll_interval: Seconds between pipeline cycles.
    :ivar refresh_interval: Seconds between background price refreshes.
    :ivar fetch_timeout: Timeout for a single outbound request.
    :ivar count_per_source: Page size requested from each feed.
    :ivar visible_count: Top-ranked entities enriched each cycle.
    :ivar similarity_threshold: Minimum fuzzy similarity that scores.
    :ivar search_limit: Default number of search results.
    :ivar min_query_length: Queries shorter than this return nothing.
    :ivar backoff_base: First backoff after a failure.
    :ivar backoff_max: Cap for exponential backoff.
    :ivar backoff_jitter: Random fraction added to each backoff.
    """

    cap_delta_weight: float = 1.5
    volume_weight: float = 0.001
    holders_weight: float = 2.0
    cache_ttl: float = 30.0
    cache_retention: float = 300.0
    rate_limit_max: int = 60
    rate_limit_window: float = 60.0
    batch_size: int = 3
    poll_interval: float = 10.0
    refresh_interval: float = 10.0
    fetch_timeout: float = 8.0
    count_per_source: int = 20
    visible_count: int = 20
    similarity_threshold: float = 0.7
    search_limit: int = 15
    min_query_length: int = 2
    backoff_base: float = 5.0
    backoff_max: float = 300.0
    backoff_jitter: float = 0.1

    def __post_init__(self) -> None:
        positive = {
            "cache_ttl": self.cache_ttl,
            "cache_retention": self.cache_retention,
            "rate_limit_max": self.rate_limit_max,
            "rate_limit_window": self.rate_limit_window,
            "batch_size": self.batch_size,
            "poll_interval": self.poll_interval,
            "refresh_interval": self.refresh_interval,
            "fetch_timeout": self.fetch_timeout,
            "count_per_source": self.count_per_source,
            "visible_count": self.visible_count,
            "search_limit": self.search_limit,
            "backoff_base": self.backoff_base,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive")
        if self.cache_retention < self.cache_ttl:
            raise ValueError("cache_retention must not be shorter than cache_ttl")
        if not 0 <= self.similarity_threshold <= 1:
            raise ValueError("similarity_threshold must be within [0, 1]")
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must not be smaller than backoff_base")
        if self.backoff_jitter < 0:
            raise ValueError("backoff_jitter must not be negative")

    def with_overrides(self, **changes: object) -> EngineConfig:
        """Return a copy with the given fields replaced.

        :param changes: Field names and their new values.
        :returns: New validated EngineConfig.
        :raises TypeError: If a field name is unknown.
        """
        return replace(self, **changes)
