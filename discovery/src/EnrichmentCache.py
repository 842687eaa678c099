"""EnrichmentCache: Stale-while-revalidate price cache for displayed entities.

Architecture:
    - One ``CacheEntry(data, fetched_at)`` per lower-cased address, replaced
      wholesale on every successful fetch
    - Entries younger than ``ttl`` are served without a network call
    - Older entries are served immediately while a background task refetches
      them; only addresses with no entry at all are waited for
    - Fetches run in batches of ``batch_size``, each request gated by the
      RateLimiter
    - A 429 from the oracle sets ``rate_limited``, puts the oracle into
      backoff via SourceManager and leaves cached data untouched
    - Other failures keep the previous entry; only an entry older than
      ``retention`` is evicted when its refresh fails
    - A newer call for an overlapping address set cancels the older call's
      in-flight fetch task, so a superseded response never lands in the cache
    - Listeners are notified only when price, 24h volume or 24h change
      actually differ from the cached value
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable

from .Entity import PriceData
from .fetchers import FetcherHTTPError
from .RateLimiter import RateLimiter
from .Status import ErrorKind

if TYPE_CHECKING:
    from .fetchers import BasePriceFetcher
    from .SourceManager import SourceManager

logger = logging.getLogger(__name__)

ORACLE_SOURCE = "price-oracle"

PriceListener = Callable[[dict[str, PriceData]], None]


@dataclass(frozen=True)
class CacheEntry:
    """Cached oracle data for one address.

    :ivar data: Last successfully fetched price data.
    :ivar fetched_at: Clock reading when the data was stored.
    """

    data: PriceData
    fetched_at: float


@dataclass
class _FetchOutcome:
    changed: dict[str, PriceData]
    errors: set[ErrorKind]
    rate_limited: bool


class EnrichmentCache:
    """Batched, rate-limited, stale-while-revalidate cache of price data.

    :ivar fetcher: Price oracle client.
    :ivar ttl: Seconds an entry stays fresh.
    :ivar retention: Seconds a stale entry survives failed refreshes.
    :ivar batch_size: Addresses fetched concurrently per batch.
    :ivar fetch_timeout: Timeout for a single oracle request.
    :ivar rate_limiter: Sliding-window limiter shared by all requests.
    :ivar source_manager: Backoff tracker for the oracle, if any.
    :ivar rate_limited: True if the last completed fetch was throttled.
    :ivar last_errors: Error kinds seen by the last completed fetch.
    :ivar batches_issued: Total batches sent to the oracle.
    :ivar requests_issued: Total requests sent to the oracle.
    """

    DEFAULT_TTL = 30.0
    DEFAULT_RETENTION = 300.0  # 5 minutes
    DEFAULT_BATCH_SIZE = 3
    DEFAULT_FETCH_TIMEOUT = 8.0

    def __init__(
        self,
        fetcher: BasePriceFetcher,
        *,
        ttl: float = DEFAULT_TTL,
        retention: float = DEFAULT_RETENTION,
        batch_size: int = DEFAULT_BATCH_SIZE,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        rate_limiter: RateLimiter | None = None,
        source_manager: SourceManager | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        :param fetcher: Price oracle client.
        :param ttl: Freshness window in seconds (default: 30).
        :param retention: Eviction window for failing entries (default: 300).
        :param batch_size: Addresses per batch (default: 3).
        :param fetch_timeout: Per-request timeout (default: 8).
        :param rate_limiter: Limiter to use (default: 60 requests / 60s).
        :param source_manager: Optional oracle backoff tracker.
        :param clock: Monotonic time source.
        :raises ValueError: If sizes or windows are not positive.
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if retention < ttl:
            raise ValueError("retention must not be shorter than ttl")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.fetcher = fetcher
        self.ttl = ttl
        self.retention = retention
        self.batch_size = batch_size
        self.fetch_timeout = fetch_timeout
        self.rate_limiter = rate_limiter or RateLimiter(clock=clock)
        self.source_manager = source_manager
        self._clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._inflight: list[tuple[frozenset[str], asyncio.Task]] = []
        self._displayed: list[str] = []
        self._listeners: list[PriceListener] = []
        self._refresh_task: asyncio.Task | None = None

        self.rate_limited = False
        self.last_errors: set[ErrorKind] = set()
        self.batches_issued = 0
        self.requests_issued = 0

    # Reads

    def __len__(self) -> int:
        return len(self._entries)

    def get_entry(self, address: str) -> CacheEntry | None:
        return self._entries.get(address.lower())

    def is_fresh(self, address: str) -> bool:
        """Check whether an address has an entry younger than the TTL."""
        entry = self._entries.get(address.lower())
        return entry is not None and self._clock() - entry.fetched_at < self.ttl

    def snapshot(self, addresses: Iterable[str]) -> dict[str, PriceData]:
        """Return cached data (fresh or stale) without any network call."""
        result: dict[str, PriceData] = {}
        for address in _normalize(addresses):
            entry = self._entries.get(address)
            if entry is not None:
                result[address] = entry.data
        return result

    @property
    def displayed(self) -> list[str]:
        """Addresses covered by the most recent ``get_prices`` call."""
        return list(self._displayed)

    # Change notification

    def subscribe(self, listener: PriceListener) -> Callable[[], None]:
        """Register a listener for changed price data.

        :param listener: Called with ``{address: PriceData}`` of changed entries.
        :returns: Callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, changed: dict[str, PriceData]) -> None:
        for listener in list(self._listeners):
            try:
                listener(dict(changed))
            except Exception:
                logger.exception("Price listener raised")

    # Fetching

    async def get_prices(
        self, addresses: Iterable[str], *, wait: bool = False
    ) -> dict[str, PriceData]:
        """Return price data for the given addresses.

        Fresh entries are returned without a network call. Addresses with no
        entry are fetched before returning. Stale entries are returned as they
        are while a background task revalidates them, unless ``wait`` is set.
        If a newer overlapping call supersedes this one, this call returns
        whatever is cached.

        :param addresses: Chain addresses, any casing.
        :param wait: Also wait for stale entries to be refetched.
        :returns: Mapping of lower-cased address to PriceData.
        """
        normalized = _normalize(addresses)
        self._displayed = normalized

        missing = [a for a in normalized if a not in self._entries]
        stale = [a for a in normalized if a in self._entries and not self.is_fresh(a)]
        if not missing and not stale:
            logger.debug(f"All {len(normalized)} addresses served from cache")
            return self.snapshot(normalized)

        logger.debug(
            f"{len(normalized) - len(missing) - len(stale)}/{len(normalized)} addresses "
            f"fresh, {len(stale)} stale, {len(missing)} missing"
        )
        covering = frozenset(normalized)
        self._supersede(covering)
        if wait:
            await self._join(self._start_fetch(covering, missing + stale))
            return self.snapshot(normalized)

        if stale:
            self._start_fetch(covering, stale)
        if missing:
            await self._join(self._start_fetch(covering, missing))
        return self.snapshot(normalized)

    async def refresh(self) -> dict[str, PriceData]:
        """Re-issue ``get_prices`` for the displayed address set.

        Skipped while another fetch is in flight.

        :returns: Current data for the displayed addresses.
        """
        if not self._displayed:
            return {}
        if self._inflight:
            logger.debug("Fetch in flight, skipping background refresh")
            return self.snapshot(self._displayed)
        return await self.get_prices(self._displayed, wait=True)

    @property
    def in_flight(self) -> int:
        """Number of fetch tasks currently running."""
        return len(self._inflight)

    def start(self, interval: float = 10.0) -> None:
        """Start periodic background refresh on the running loop."""
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop(interval))

    async def stop(self) -> None:
        """Stop background refresh and cancel in-flight fetches."""
        tasks = [task for _, task in self._inflight]
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
            self._refresh_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.refresh()

    def _supersede(self, covering: frozenset[str]) -> None:
        for other, task in list(self._inflight):
            if other & covering and not task.done():
                logger.debug(f"Superseding in-flight fetch of {len(other)} addresses")
                task.cancel()

    def _start_fetch(self, covering: frozenset[str], addresses: list[str]) -> asyncio.Task:
        task = asyncio.create_task(self._fetch_batches(addresses))
        record = (covering, task)
        self._inflight.append(record)
        task.add_done_callback(lambda _: self._finish_fetch(record))
        return task

    async def _join(self, task: asyncio.Task) -> None:
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise

    def _finish_fetch(self, record: tuple[frozenset[str], asyncio.Task]) -> None:
        self._inflight.remove(record)
        task = record[1]
        if task.cancelled():
            logger.debug("Fetch superseded by a newer request, serving cached data")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[{ORACLE_SOURCE}] Price fetch failed: {error}")
            return

        outcome = task.result()
        self.rate_limited = outcome.rate_limited
        self.last_errors = outcome.errors
        if outcome.changed:
            self._notify(outcome.changed)

    async def _fetch_batches(self, addresses: list[str]) -> _FetchOutcome:
        outcome = _FetchOutcome(changed={}, errors=set(), rate_limited=False)

        for start in range(0, len(addresses), self.batch_size):
            if self.source_manager and not self.source_manager.is_source_active(ORACLE_SOURCE):
                remaining = self.source_manager.get_backoff_remaining(ORACLE_SOURCE)
                logger.info(
                    f"Price oracle in backoff for {remaining:.1f}s, serving cached data"
                )
                outcome.rate_limited = True
                outcome.errors.add(ErrorKind.ENRICHMENT_RATE_LIMITED)
                break

            batch = addresses[start:start + self.batch_size]
            self.batches_issued += 1
            logger.debug(f"Issuing price batch of {len(batch)}: {batch}")
            await asyncio.gather(*(self._fetch_one(a, outcome) for a in batch))

        return outcome

    async def _fetch_one(self, address: str, outcome: _FetchOutcome) -> None:
        await self.rate_limiter.acquire()
        self.requests_issued += 1
        try:
            data = await asyncio.wait_for(
                self.fetcher.fetch(address),
                timeout=self.fetch_timeout,
            )
        except FetcherHTTPError as e:
            if e.is_rate_limited:
                logger.warning(f"[{ORACLE_SOURCE}] Rate limited fetching {address}")
                outcome.rate_limited = True
                outcome.errors.add(ErrorKind.ENRICHMENT_RATE_LIMITED)
                if self.source_manager:
                    self.source_manager.record_failure(
                        ORACLE_SOURCE, error=str(e), retry_after=e.retry_after
                    )
                return
            logger.warning(f"[{ORACLE_SOURCE}] Error fetching {address}: {e}")
            self._on_failure(address, outcome)
            return
        except asyncio.TimeoutError:
            logger.warning(f"[{ORACLE_SOURCE}] Timeout fetching {address}")
            self._on_failure(address, outcome)
            return
        except Exception as e:
            logger.warning(f"[{ORACLE_SOURCE}] Error fetching {address}: {e}")
            self._on_failure(address, outcome)
            return

        # A sibling's 429 in this fetch keeps the oracle in backoff
        if self.source_manager and not outcome.rate_limited:
            self.source_manager.record_success(ORACLE_SOURCE)
        if data is None:
            return
        if self._store(address, data):
            outcome.changed[address] = data

    def _store(self, address: str, data: PriceData) -> bool:
        previous = self._entries.get(address)
        self._entries[address] = CacheEntry(data=data, fetched_at=self._clock())
        return data.differs_from(previous.data if previous else None)

    def _on_failure(self, address: str, outcome: _FetchOutcome) -> None:
        outcome.errors.add(ErrorKind.ENRICHMENT_FAILED)
        entry = self._entries.get(address)
        if entry is not None and self._clock() - entry.fetched_at > self.retention:
            logger.info(
                f"Evicting {address}: no successful refresh for "
                f"{self._clock() - entry.fetched_at:.0f}s"
            )
            del self._entries[address]


def _normalize(addresses: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for address in addresses:
        key = (address or "").strip().lower()
        if key:
            seen.setdefault(key, None)
    return list(seen)
