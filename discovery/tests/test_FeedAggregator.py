"""Unit tests for FeedAggregator."""

import asyncio

from discovery.src.Entity import Entity
from discovery.src.FeedAggregator import AggregationResult, FeedAggregator, SourceFailure, merge_entities
from discovery.src.fetchers import BaseFeed, FeedPage, FetcherError, FetcherHTTPError, PageInfo
from discovery.src.SourceManager import SourceManager
from discovery.src.Status import ErrorKind


class StaticFeed(BaseFeed):
    """In-memory feed returning fixed records after an optional delay."""

    def __init__(
        self,
        name: str,
        records: list[dict] | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
        next_cursor: str | None = None,
    ) -> None:
        super().__init__()
        self._name = name
        self.records = records or []
        self.delay = delay
        self.error = error
        self.next_cursor = next_cursor
        self.calls: list[tuple[int, str | None]] = []

    @property
    def feed_name(self) -> str:
        return self._name

    async def fetch_page(self, count: int, cursor: str | None = None) -> FeedPage:
        self.calls.append((count, cursor))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return FeedPage.from_records(self.records[:count], next_cursor=self.next_cursor)


class TestMergeEntities:
    """Test address deduplication."""

    def test_last_write_wins(self) -> None:
        """Later pages should replace earlier records wholesale."""
        first = FeedPage.from_records([{"address": "0xAA", "volume24h": "100", "name": "Old"}])
        second = FeedPage.from_records([{"address": "0xaa", "volume24h": "500"}])

        merged = merge_entities([first, second])

        assert len(merged) == 1
        assert merged[0].volume_24h == 500.0
        assert merged[0].name == ""

    def test_distinct_addresses_kept(self) -> None:
        """Different addresses should all survive."""
        page = FeedPage.from_records([{"address": "0xaa"}, {"address": "0xbb"}, {"address": "0xAA"}])
        assert sorted(e.address for e in merge_entities([page])) == ["0xaa", "0xbb"]


class TestAggregationResult:
    """Test failure summaries."""

    def test_error_kinds(self) -> None:
        """Errors should reflect partial and total failure."""
        assert AggregationResult(sources=["a"]).error is None
        partial = AggregationResult(sources=["a", "b"], failures=[SourceFailure("a", "x")])
        assert partial.error == ErrorKind.SOURCE_UNAVAILABLE
        assert not partial.all_failed
        total = AggregationResult(
            sources=["a", "b"],
            failures=[SourceFailure("a", "x"), SourceFailure("b", "y")],
        )
        assert total.all_failed
        assert total.error == ErrorKind.ALL_SOURCES_FAILED

    def test_no_sources_is_not_failure(self) -> None:
        """An empty source list should not count as all failed."""
        assert not AggregationResult().all_failed


class TestFeedAggregator:
    """Test concurrent aggregation."""

    def test_dedup_scenario(self) -> None:
        """The later-completing feed should win an address collision."""
        fast = StaticFeed("gainers", [{"address": "0xAA", "volume24h": "100"}])
        slow = StaticFeed("volume", [{"address": "0xaa", "volume24h": "500"}], delay=0.01)

        result = asyncio.run(FeedAggregator().aggregate([slow, fast], count_per_source=20))

        assert [e.address for e in result.entities] == ["0xaa"]
        assert result.entities[0].volume_24h == 500.0
        assert result.failures == []
        assert result.error is None

    def test_at_most_one_per_address(self) -> None:
        """Output should hold one record per lower-cased address."""
        feeds = [
            StaticFeed(f"feed-{i}", [{"address": f"0x{j:02X}"} for j in range(i, i + 5)])
            for i in range(4)
        ]
        result = asyncio.run(FeedAggregator().aggregate(feeds, count_per_source=20))
        addresses = [e.address for e in result.entities]
        assert len(addresses) == len(set(addresses)) == 8

    def test_count_and_cursor_forwarded(self) -> None:
        """Page size and per-feed cursors should reach the feeds."""
        a = StaticFeed("a", next_cursor="a2")
        b = StaticFeed("b")
        result = asyncio.run(
            FeedAggregator().aggregate([a, b], count_per_source=7, cursors={"a": "a1"})
        )
        assert a.calls == [(7, "a1")]
        assert b.calls == [(7, None)]
        assert result.page_info == {
            "a": PageInfo(end_cursor="a2", has_next_page=True),
            "b": PageInfo(),
        }

    def test_partial_failure(self) -> None:
        """One failing feed should only remove its own contribution."""
        good = StaticFeed("good", [{"address": "0xaa"}])
        bad = StaticFeed("bad", error=FetcherError("down"))

        result = asyncio.run(FeedAggregator().aggregate([good, bad], count_per_source=20))

        assert [e.address for e in result.entities] == ["0xaa"]
        assert [f.source for f in result.failures] == ["bad"]
        assert result.error == ErrorKind.SOURCE_UNAVAILABLE

    def test_all_failed(self) -> None:
        """Every feed failing should yield an empty, flagged result."""
        feeds = [StaticFeed("a", error=FetcherError("x")), StaticFeed("b", error=ValueError("y"))]
        result = asyncio.run(FeedAggregator().aggregate(feeds, count_per_source=20))

        assert result.entities == []
        assert result.all_failed
        assert result.error == ErrorKind.ALL_SOURCES_FAILED

    def test_timeout(self) -> None:
        """A feed exceeding the timeout should be reported as timed out."""
        slow = StaticFeed("slow", [{"address": "0xaa"}], delay=1.0)
        fast = StaticFeed("fast", [{"address": "0xbb"}])

        result = asyncio.run(
            FeedAggregator(fetch_timeout=0.05).aggregate([slow, fast], count_per_source=20)
        )

        assert [e.address for e in result.entities] == ["0xbb"]
        assert result.failures == [SourceFailure("slow", "timeout", timed_out=True)]

    def test_backoff_skips_feed(self) -> None:
        """Feeds in backoff should not be called."""
        manager = SourceManager(["a", "b"], base_backoff_seconds=60.0)
        a = StaticFeed("a", error=FetcherHTTPError(429, "slow", retry_after=120.0))
        b = StaticFeed("b", [{"address": "0xbb"}])
        aggregator = FeedAggregator(source_manager=manager)

        asyncio.run(aggregator.aggregate([a, b], count_per_source=5))
        assert manager.get_backoff_remaining("a") > 60.0

        result = asyncio.run(aggregator.aggregate([a, b], count_per_source=5))

        assert len(a.calls) == 1
        assert len(b.calls) == 2
        assert result.failures[0].source == "a"
        assert result.failures[0].skipped
        assert manager.get_source_status("b").total_successes == 2

    def test_no_sources(self) -> None:
        """No feeds should give an empty, non-failed result."""
        result = asyncio.run(FeedAggregator().aggregate([], count_per_source=5))
        assert result.entities == []
        assert not result.all_failed
