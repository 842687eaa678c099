"""FeedAggregator: Concurrent multi-feed fetching with deduplication.

Architecture:
    - Fetches every feed concurrently, each bounded by ``fetch_timeout``
    - Processes pages in completion order
    - Converts per-feed failures into ``SourceFailure`` records instead of
      raising, so one failing feed only empties its own contribution
    - Deduplicates by lower-cased address; the later page in completion
      order wins a collision (last-write-wins, no field merge)

.. code-block:: python

    >>> aggregator = FeedAggregator()
    >>> result = await aggregator.aggregate([gainers, volume], count_per_source=20)
    >>> result.all_failed
    False
    >>> len({e.address for e in result.entities}) == len(result.entities)
    True
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .Entity import Entity
from .fetchers import FeedPage, FetcherHTTPError, PageInfo
from .Status import ErrorKind

if TYPE_CHECKING:
    from .fetchers import BaseFeed
    from .SourceManager import SourceManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceFailure:
    """A feed that contributed nothing to an aggregation pass.

    :ivar source: Feed name.
    :ivar message: Failure description.
    :ivar timed_out: True if the feed exceeded the fetch timeout.
    :ivar skipped: True if the feed was in backoff and not called.
    :ivar kind: Error kind reported for this feed.
    """

    source: str
    message: str
    timed_out: bool = False
    skipped: bool = False
    kind: ErrorKind = ErrorKind.SOURCE_UNAVAILABLE


@dataclass
class AggregationResult:
    """Outcome of an aggregation pass.

    :ivar entities: Deduplicated entities, in no guaranteed order.
    :ivar failures: One record per feed that failed or was skipped.
    :ivar page_info: Continuation state per successful feed.
    :ivar sources: Names of all feeds that were requested.
    """

    entities: list[Entity] = field(default_factory=list)
    failures: list[SourceFailure] = field(default_factory=list)
    page_info: dict[str, PageInfo] = field(default_factory=dict)
    sources: list[str] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        """True if feeds were requested and every one of them failed."""
        return bool(self.sources) and len(self.failures) == len(self.sources)

    @property
    def error(self) -> ErrorKind | None:
        """Most severe error kind of this pass, if any."""
        if self.all_failed:
            return ErrorKind.ALL_SOURCES_FAILED
        if self.failures:
            return ErrorKind.SOURCE_UNAVAILABLE
        return None


def merge_entities(pages: list[FeedPage]) -> list[Entity]:
    """Merge pages into one list with at most one entity per address.

    Pages must be given in fetch-completion order. On collision the later
    record replaces the earlier one wholesale.

    :param pages: Feed pages in completion order.
    :returns: Deduplicated entities.
    """
    merged: dict[str, Entity] = {}
    for page in pages:
        for entity in page.entities:
            merged[entity.address.lower()] = entity
    return list(merged.values())


class FeedAggregator:
    """Fetches upstream feeds concurrently and merges their entities.

    :ivar fetch_timeout: Timeout for a single feed request in seconds.
    :ivar source_manager: Optional backoff tracker; feeds in backoff are skipped.
    """

    DEFAULT_FETCH_TIMEOUT = 10.0

    def __init__(
        self,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        source_manager: SourceManager | None = None,
    ) -> None:
        """Initialize the aggregator.

        :param fetch_timeout: Timeout for a single feed request (default: 10.0).
        :param source_manager: Optional per-feed backoff tracker.
        """
        self.fetch_timeout = fetch_timeout
        self.source_manager = source_manager

    async def aggregate(
        self,
        sources: list[BaseFeed],
        count_per_source: int,
        cursors: dict[str, str | None] | None = None,
    ) -> AggregationResult:
        """Fetch all feeds and return the deduplicated entity set.

        Never raises for feed failures. If every feed fails the result is
        empty and ``result.error`` is ``ALL_SOURCES_FAILED``.

        :param sources: Feeds to query.
        :param count_per_source: Page size requested from each feed.
        :param cursors: Optional continuation cursor per feed name.
        :returns: AggregationResult with entities, failures and page info.
        """
        pages, result = await self.fetch_all(sources, count_per_source, cursors)
        result.entities = merge_entities(pages)

        if result.all_failed:
            logger.warning(f"All {len(result.sources)} feeds failed")
        else:
            logger.info(
                f"Aggregated {len(result.entities)} unique entities from "
                f"{len(pages)}/{len(result.sources)} feeds"
            )
        return result

    async def fetch_all(
        self,
        sources: list[BaseFeed],
        count_per_source: int,
        cursors: dict[str, str | None] | None = None,
    ) -> tuple[list[FeedPage], AggregationResult]:
        """Fetch every feed concurrently.

        :param sources: Feeds to query.
        :param count_per_source: Page size requested from each feed.
        :param cursors: Optional continuation cursor per feed name.
        :returns: Pages in completion order, and a result carrying failures
            and page info (entities not yet merged).
        """
        cursors = cursors or {}
        result = AggregationResult(sources=[s.feed_name for s in sources])
        if not sources:
            return [], result

        tasks = []
        for source in sources:
            name = source.feed_name
            if self.source_manager and not self.source_manager.is_source_active(name):
                remaining = self.source_manager.get_backoff_remaining(name)
                logger.debug(f"[{name}] In backoff for {remaining:.1f}s, skipping")
                result.failures.append(
                    SourceFailure(name, f"in backoff for {remaining:.1f}s", skipped=True)
                )
                continue
            tasks.append(
                asyncio.create_task(
                    self._fetch_source(source, count_per_source, cursors.get(name))
                )
            )

        pages: list[FeedPage] = []
        try:
            for next_done in asyncio.as_completed(tasks):
                name, page, failure = await next_done
                if failure is not None:
                    result.failures.append(failure)
                    continue
                pages.append(page)
                result.page_info[name] = page.page_info
        finally:
            # Abandoned fetches must not outlive a cancelled pass
            for task in tasks:
                if not task.done():
                    task.cancel()

        return pages, result

    async def _fetch_source(
        self,
        source: BaseFeed,
        count: int,
        cursor: str | None,
    ) -> tuple[str, FeedPage | None, SourceFailure | None]:
        """Fetch one feed with timeout, converting errors into a failure.

        :param source: Feed to query.
        :param count: Page size.
        :param cursor: Continuation cursor.
        :returns: Tuple of (feed name, page or None, failure or None).
        """
        name = source.feed_name
        try:
            page = await asyncio.wait_for(
                source.fetch_page(count, cursor),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{name}] Feed fetch timeout after {self.fetch_timeout}s")
            self._record_failure(name, "timeout")
            return name, None, SourceFailure(name, "timeout", timed_out=True)
        except Exception as e:
            logger.warning(f"[{name}] Feed fetch error: {e}")
            retry_after = e.retry_after if isinstance(e, FetcherHTTPError) else None
            self._record_failure(name, str(e), retry_after)
            return name, None, SourceFailure(name, str(e))

        if self.source_manager:
            self.source_manager.record_success(name)
        return name, page, None

    def _record_failure(
        self, name: str, message: str, retry_after: float | None = None
    ) -> None:
        if self.source_manager:
            backoff = self.source_manager.record_failure(
                name, error=message, retry_after=retry_after
            )
            logger.debug(f"[{name}] Backing off for {backoff:.1f}s")
