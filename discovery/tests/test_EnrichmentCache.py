"""Unit tests for EnrichmentCache."""

import asyncio

import pytest

from discovery.src.EnrichmentCache import ORACLE_SOURCE, EnrichmentCache
from discovery.src.Entity import PriceData
from discovery.src.fetchers import BasePriceFetcher, FetcherError, FetcherHTTPError
from discovery.src.RateLimiter import RateLimiter
from discovery.src.SourceManager import SourceManager
from discovery.src.Status import ErrorKind


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakePriceFetcher(BasePriceFetcher):
    """In-memory oracle with per-address prices, errors and gates."""

    name = "fake"

    def __init__(self) -> None:
        super().__init__()
        self.prices: dict[str, float | None] = {}
        self.errors: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, address: str) -> PriceData | None:
        self.calls.append(address)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            if address in self.gates:
                await self.gates[address].wait()
            if address in self.errors:
                raise self.errors[address]
            price = self.prices.get(address, 1.0)
            if price is None:
                return None
            return PriceData(address=address, price_usd=price, volume_24h=10.0, price_change_24h=0.5)
        finally:
            self.active -= 1


def make_cache(fetcher: FakePriceFetcher, clock: FakeClock, **kwargs) -> EnrichmentCache:
    kwargs.setdefault("rate_limiter", RateLimiter(60, 60.0, clock=clock))
    return EnrichmentCache(fetcher, clock=clock, **kwargs)


class TestEnrichmentCacheInit:
    """Test EnrichmentCache initialization."""

    def test_defaults(self) -> None:
        """Defaults should be 30s TTL, 5 min retention, batches of 3."""
        cache = EnrichmentCache(FakePriceFetcher())
        assert cache.ttl == 30.0
        assert cache.retention == 300.0
        assert cache.batch_size == 3
        assert cache.rate_limiter.max_requests == 60

    def test_invalid_values(self) -> None:
        """Invalid sizes and windows should raise ValueError."""
        with pytest.raises(ValueError, match="ttl must be positive"):
            EnrichmentCache(FakePriceFetcher(), ttl=0)
        with pytest.raises(ValueError, match="retention"):
            EnrichmentCache(FakePriceFetcher(), ttl=60, retention=30)
        with pytest.raises(ValueError, match="batch_size"):
            EnrichmentCache(FakePriceFetcher(), batch_size=0)


class TestEnrichmentCacheFreshness:
    """Test TTL behaviour."""

    def test_fresh_entries_skip_network(self) -> None:
        """A second call within the TTL should issue no requests."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        cache = make_cache(fetcher, clock)

        first = asyncio.run(cache.get_prices(["0xaa"]))
        clock.now += 29.0
        second = asyncio.run(cache.get_prices(["0xAA"]))

        assert fetcher.calls == ["0xaa"]
        assert first == second
        assert second["0xaa"].price_usd == 1.0

    def test_stale_entries_refetched(self) -> None:
        """Entries past the TTL should be fetched again."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        cache = make_cache(fetcher, clock)

        asyncio.run(cache.get_prices(["0xaa"]))
        clock.now += 30.0
        fetcher.prices["0xaa"] = 2.0
        result = asyncio.run(cache.get_prices(["0xaa"], wait=True))

        assert fetcher.calls == ["0xaa", "0xaa"]
        assert result["0xaa"].price_usd == 2.0
        assert cache.get_entry("0xaa").fetched_at == clock.now

    def test_stale_served_without_waiting(self) -> None:
        """A stale entry should be returned at once and revalidated behind it."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        cache = make_cache(fetcher, clock)

        async def run() -> tuple[dict, float]:
            await cache.get_prices(["0xaa"])
            clock.now += 31.0
            fetcher.prices["0xaa"] = 2.0
            gate = asyncio.Event()
            fetcher.gates["0xaa"] = gate

            served = await asyncio.wait_for(cache.get_prices(["0xaa"]), 1.0)
            assert cache.in_flight == 1

            gate.set()
            while cache.in_flight:
                await asyncio.sleep(0)
            return served, cache.get_entry("0xaa").data.price_usd

        served, revalidated = asyncio.run(run())

        assert served["0xaa"].price_usd == 1.0
        assert revalidated == 2.0
        assert fetcher.calls == ["0xaa", "0xaa"]

    def test_missing_waited_stale_in_background(self) -> None:
        """Only addresses with no entry should hold up the call."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        cache = make_cache(fetcher, clock)

        async def run() -> tuple[dict, int]:
            await cache.get_prices(["0xaa"])
            clock.now += 31.0
            fetcher.gates["0xaa"] = asyncio.Event()

            served = await asyncio.wait_for(cache.get_prices(["0xaa", "0xbb"]), 1.0)
            pending = cache.in_flight
            await cache.stop()
            return served, pending

        served, pending = asyncio.run(run())

        assert set(served) == {"0xaa", "0xbb"}
        assert served["0xaa"].price_usd == 1.0
        assert pending == 1

    def test_input_deduplicated(self) -> None:
        """Duplicate and mixed-case addresses should be fetched once."""
        fetcher = FakePriceFetcher()
        cache = make_cache(fetcher, FakeClock())
        result = asyncio.run(cache.get_prices(["0xAA", "0xaa", " 0xaa ", ""]))
        assert fetcher.calls == ["0xaa"]
        assert list(result) == ["0xaa"]

    def test_unknown_token_not_cached(self) -> None:
        """A None result should not be cached."""
        fetcher = FakePriceFetcher()
        fetcher.prices["0xaa"] = None
        cache = make_cache(fetcher, FakeClock())

        assert asyncio.run(cache.get_prices(["0xaa"])) == {}
        asyncio.run(cache.get_prices(["0xaa"]))
        assert fetcher.calls == ["0xaa", "0xaa"]


class TestEnrichmentCacheBatching:
    """Test batching and rate limiting."""

    def test_ten_addresses_four_batches(self) -> None:
        """Ten addresses with batch size 3 should issue exactly four batches."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        limiter = RateLimiter(60, 60.0, clock=clock)
        cache = make_cache(fetcher, clock, batch_size=3, rate_limiter=limiter)
        addresses = [f"0x{i:02x}" for i in range(10)]

        result = asyncio.run(cache.get_prices(addresses))

        assert cache.batches_issued == 4
        assert cache.requests_issued == 10
        assert fetcher.max_active <= 3
        assert limiter.in_window() == 10
        assert sorted(result) == addresses

    def test_rate_limiter_gates_requests(self) -> None:
        """Requests beyond the limit should wait for the window to slide."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            clock.now += seconds

        limiter = RateLimiter(2, 10.0, clock=clock, sleep=fake_sleep)
        cache = make_cache(fetcher, clock, ttl=100.0, retention=200.0, rate_limiter=limiter)

        asyncio.run(cache.get_prices(["0x01", "0x02", "0x03"]))

        assert len(fetcher.calls) == 3
        assert sleeps == [pytest.approx(10.0)]


class TestEnrichmentCacheFailures:
    """Test stale-while-revalidate under failure."""

    def test_rate_limited_serves_cached(self) -> None:
        """A 429 for every address should keep cached values and set the flag."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        cache = make_cache(fetcher, clock)
        addresses = ["0xaa", "0xbb", "0xcc"]

        before = asyncio.run(cache.get_prices(addresses))
        assert not cache.rate_limited

        clock.now += 60.0
        for address in addresses:
            fetcher.errors[address] = FetcherHTTPError(429, "Too Many Requests")
        after = asyncio.run(cache.get_prices(addresses, wait=True))

        assert after == before
        assert cache.rate_limited
        assert ErrorKind.ENRICHMENT_RATE_LIMITED in cache.last_errors

    def test_rate_limit_backs_off_oracle(self) -> None:
        """After a 429 the remaining batches should be skipped."""
        fetcher = FakePriceFetcher()
        manager = SourceManager([ORACLE_SOURCE], base_backoff_seconds=30.0)
        cache = make_cache(fetcher, FakeClock(), batch_size=2, source_manager=manager)
        fetcher.errors["0x01"] = FetcherHTTPError(429, "slow", retry_after=90.0)

        asyncio.run(cache.get_prices(["0x01", "0x02", "0x03", "0x04"]))

        assert cache.batches_issued == 1
        assert sorted(fetcher.calls) == ["0x01", "0x02"]
        assert not manager.is_source_active(ORACLE_SOURCE)
        assert manager.get_backoff_remaining(ORACLE_SOURCE) > 30.0
        assert cache.rate_limited

    def test_failure_keeps_previous_entry(self) -> None:
        """Network errors and timeouts should leave the cache untouched."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        cache = make_cache(fetcher, clock, fetch_timeout=0.05)

        asyncio.run(cache.get_prices(["0xaa", "0xbb"]))
        entry = cache.get_entry("0xaa")

        clock.now += 60.0
        fetcher.errors["0xaa"] = FetcherError("connection reset")
        fetcher.gates["0xbb"] = asyncio.Event()
        result = asyncio.run(cache.get_prices(["0xaa", "0xbb"], wait=True))

        assert cache.get_entry("0xaa") is entry
        assert set(result) == {"0xaa", "0xbb"}
        assert cache.last_errors == {ErrorKind.ENRICHMENT_FAILED}
        assert not cache.rate_limited

    def test_no_negative_caching(self) -> None:
        """A failed first fetch should leave no entry behind."""
        fetcher = FakePriceFetcher()
        fetcher.errors["0xaa"] = FetcherError("down")
        cache = make_cache(fetcher, FakeClock())

        assert asyncio.run(cache.get_prices(["0xaa"])) == {}
        assert cache.get_entry("0xaa") is None

    def test_evicted_after_retention(self) -> None:
        """An entry failing past the retention window should be evicted."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        cache = make_cache(fetcher, clock, ttl=30.0, retention=300.0)

        asyncio.run(cache.get_prices(["0xaa"]))
        fetcher.errors["0xaa"] = FetcherError("down")

        clock.now += 200.0
        assert "0xaa" in asyncio.run(cache.get_prices(["0xaa"], wait=True))

        clock.now += 150.0
        assert asyncio.run(cache.get_prices(["0xaa"], wait=True)) == {}
        assert len(cache) == 0


class TestEnrichmentCacheNotifications:
    """Test change notifications."""

    def test_notifies_only_on_change(self) -> None:
        """Listeners should see new and changed data, never unchanged data."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        cache = make_cache(fetcher, clock)
        received: list[dict[str, PriceData]] = []
        cache.subscribe(received.append)

        asyncio.run(cache.get_prices(["0xaa", "0xbb"]))
        assert len(received) == 1
        assert set(received[0]) == {"0xaa", "0xbb"}

        clock.now += 31.0
        asyncio.run(cache.get_prices(["0xaa", "0xbb"], wait=True))
        assert len(received) == 1

        clock.now += 31.0
        fetcher.prices["0xbb"] = 3.0
        asyncio.run(cache.get_prices(["0xaa", "0xbb"], wait=True))
        assert len(received) == 2
        assert set(received[1]) == {"0xbb"}

    def test_unsubscribe(self) -> None:
        """Unsubscribed listeners should not be called."""
        cache = make_cache(FakePriceFetcher(), FakeClock())
        received: list[dict[str, PriceData]] = []
        unsubscribe = cache.subscribe(received.append)
        unsubscribe()

        asyncio.run(cache.get_prices(["0xaa"]))
        assert received == []

    def test_listener_errors_isolated(self) -> None:
        """A raising listener should not stop the others."""
        cache = make_cache(FakePriceFetcher(), FakeClock())
        received: list[dict[str, PriceData]] = []

        def broken(_: dict[str, PriceData]) -> None:
            raise RuntimeError("boom")

        cache.subscribe(broken)
        cache.subscribe(received.append)
        asyncio.run(cache.get_prices(["0xaa"]))
        assert len(received) == 1


class TestEnrichmentCacheCancellation:
    """Test supersession of in-flight fetches."""

    def test_overlapping_call_cancels_previous(self) -> None:
        """A superseded fetch should return cached data and never write."""
        fetcher = FakePriceFetcher()
        cache = make_cache(fetcher, FakeClock())

        async def run() -> tuple[dict, dict]:
            gate = asyncio.Event()
            fetcher.gates["0xaa"] = gate
            first = asyncio.create_task(cache.get_prices(["0xaa", "0xbb"]))
            while cache.get_entry("0xbb") is None:
                await asyncio.sleep(0)

            second = await cache.get_prices(["0xbb", "0xcc"])
            gate.set()
            return await first, second

        first, second = asyncio.run(run())

        assert set(first) == {"0xbb"}
        assert set(second) == {"0xbb", "0xcc"}
        assert cache.get_entry("0xaa") is None

    def test_disjoint_calls_run_side_by_side(self) -> None:
        """Calls for disjoint address sets should not cancel each other."""
        fetcher = FakePriceFetcher()
        cache = make_cache(fetcher, FakeClock())

        async def run() -> list[dict]:
            return await asyncio.gather(
                cache.get_prices(["0xaa"]),
                cache.get_prices(["0xbb"]),
            )

        first, second = asyncio.run(run())
        assert set(first) == {"0xaa"}
        assert set(second) == {"0xbb"}

    def test_cancelled_caller_cancels_fetch(self) -> None:
        """Cancelling the caller should abort its fetch."""
        fetcher = FakePriceFetcher()
        cache = make_cache(fetcher, FakeClock())

        async def run() -> None:
            fetcher.gates["0xaa"] = asyncio.Event()
            task = asyncio.create_task(cache.get_prices(["0xaa"]))
            while not fetcher.calls:
                await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            fetcher.gates["0xaa"].set()
            await asyncio.sleep(0)

        asyncio.run(run())
        assert cache.get_entry("0xaa") is None
        assert fetcher.active == 0


class TestEnrichmentCacheRefresh:
    """Test background refresh."""

    def test_refresh_without_displayed(self) -> None:
        """Refresh before any request should do nothing."""
        fetcher = FakePriceFetcher()
        cache = make_cache(fetcher, FakeClock())
        assert asyncio.run(cache.refresh()) == {}
        assert fetcher.calls == []

    def test_refresh_refetches_displayed(self) -> None:
        """Refresh should re-request the last displayed set once stale."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        cache = make_cache(fetcher, clock)

        asyncio.run(cache.get_prices(["0xaa", "0xbb"]))
        assert cache.displayed == ["0xaa", "0xbb"]

        asyncio.run(cache.refresh())
        assert len(fetcher.calls) == 2

        clock.now += 31.0
        asyncio.run(cache.refresh())
        assert len(fetcher.calls) == 4

    def test_start_and_stop(self) -> None:
        """The periodic loop should refresh stale entries until stopped."""
        fetcher = FakePriceFetcher()
        clock = FakeClock()
        cache = make_cache(fetcher, clock)

        async def run() -> None:
            await cache.get_prices(["0xaa"])
            clock.now += 31.0
            cache.start(interval=0.01)
            await asyncio.sleep(0.05)
            await cache.stop()

        asyncio.run(run())
        assert fetcher.calls == ["0xaa", "0xaa"]
