"""DiscoveryEngine: Orchestrates feed aggregation, ranking, search and enrichment.

Each polling cycle runs the stages in strict sequence:

    Idle -> Fetching -> Aggregating -> Scoring -> Enriching -> Diffing -> Idle

Architecture:
    - Feeds are fetched concurrently by FeedAggregator; failing feeds enter
      backoff via the shared SourceManager
    - If every feed fails, the last good entity set keeps being served and
      ``status.all_sources_failed`` is raised
    - Aggregating, Scoring and Diffing are pure; an exception there is wrapped
      in PipelineError, logged, and halts only the current cycle
    - The top ``visible_count`` ranked entities are enriched through the
      EnrichmentCache; oracle failures serve stale prices
    - Subscribers receive one FeedDelta stream carrying entity changes from
      cycles and price changes from background refresh
    - ``refresh()`` cancels an in-flight cycle before starting a new one, and
      a new ``search()`` cancels the previous search's address lookup
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable, Iterable

from web3 import Web3

from .EngineConfig import EngineConfig
from .EnrichmentCache import ORACLE_SOURCE, EnrichmentCache
from .Entity import Entity, PriceData, ScoredEntity
from .FeedAggregator import FeedAggregator, merge_entities
from .FeedStabilizer import FeedDelta, FeedStabilizer
from .fetchers import HTTPClientMixin, PageInfo
from .RateLimiter import RateLimiter
from .Scorer import Scorer, ScoringWeights
from .SearchIndex import EXACT_POINTS, POPULAR_TOKENS, PopularToken, SearchIndex
from .SourceManager import SourceManager
from .Status import EngineStatus, ErrorKind, PipelineError, PipelineStage

if TYPE_CHECKING:
    from .fetchers import BaseFeed, BasePriceFetcher

logger = logging.getLogger(__name__)

DeltaListener = Callable[[FeedDelta], None]


class DiscoveryEngine:
    """Token discovery engine exposing ranked, searchable, enriched entities.

    All shared state (enrichment cache, search index, snapshots) is owned by
    the instance, so several engines can run side by side.

    :ivar feeds: Upstream feeds queried each cycle.
    :ivar config: Engine configuration.
    :ivar lookup: Optional feed used for direct address lookups.
    :ivar source_manager: Backoff tracker shared by feeds and the oracle.
    :ivar aggregator: Concurrent feed fetcher.
    :ivar scorer: Composite score ranking.
    :ivar index: Free-text search index.
    :ivar cache: Price enrichment cache.
    :ivar stabilizer: Delta computation against the last snapshot.
    :ivar status: Health of the latest cycle.
    """

    def __init__(
        self,
        feeds: list[BaseFeed],
        price_fetcher: BasePriceFetcher,
        config: EngineConfig | None = None,
        lookup: BaseFeed | None = None,
        popular: Iterable[PopularToken] = POPULAR_TOKENS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        """Initialize the engine.

        :param feeds: Upstream feeds to aggregate.
        :param price_fetcher: Price oracle client.
        :param config: Engine configuration (default: ``EngineConfig()``).
        :param lookup: Optional feed for direct address lookups.
        :param popular: Allow-list appended to the search corpus.
        :param clock: Monotonic time source for the cache and rate limiter.
        :param sleep: Sleep used by the rate limiter.
        :raises ValueError: If two feeds share a name.
        """
        self.config = config or EngineConfig()
        names = [feed.feed_name for feed in feeds]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate feed names: {duplicates}")

        self.feeds = list(feeds)
        self.lookup = lookup
        self.popular = tuple(popular)

        self.source_manager = SourceManager(
            sources=[*names, ORACLE_SOURCE],
            base_backoff_seconds=self.config.backoff_base,
            max_backoff_seconds=self.config.backoff_max,
            jitter=self.config.backoff_jitter,
        )
        self.aggregator = FeedAggregator(
            fetch_timeout=self.config.fetch_timeout,
            source_manager=self.source_manager,
        )
        self.scorer = Scorer(
            ScoringWeights(
                cap_delta=self.config.cap_delta_weight,
                volume=self.config.volume_weight,
                holders=self.config.holders_weight,
            )
        )
        self.index = SearchIndex(
            similarity_threshold=self.config.similarity_threshold,
            popular=self.popular,
        )
        self.cache = EnrichmentCache(
            price_fetcher,
            ttl=self.config.cache_ttl,
            retention=self.config.cache_retention,
            batch_size=self.config.batch_size,
            fetch_timeout=self.config.fetch_timeout,
            rate_limiter=RateLimiter(
                self.config.rate_limit_max,
                self.config.rate_limit_window,
                clock=clock,
                sleep=sleep,
            ),
            source_manager=self.source_manager,
            clock=clock,
        )
        self.stabilizer = FeedStabilizer()
        self.status = EngineStatus()

        self._entities: list[Entity] = []
        self._ranked: list[ScoredEntity] = []
        self._page_info: dict[str, PageInfo] = {}
        self._listeners: list[DeltaListener] = []
        self._pending_prices: dict[str, PriceData] = {}
        self._collecting = False
        self._cycle_task: asyncio.Task | None = None
        self._lookup_task: asyncio.Task | None = None

        self.cache.subscribe(self._on_prices)
        self.index.rebuild(self._search_corpus([]))

        logger.info(
            f"DiscoveryEngine initialized: feeds={names}, "
            f"poll_interval={self.config.poll_interval}s, "
            f"visible_count={self.config.visible_count}"
        )

    # Read operations

    def get_ranked(self, limit: int | None = None) -> list[ScoredEntity]:
        """Return the latest ranking.

        :param limit: Number of top entities (default: all).
        :returns: Ranked entities, best first.
        """
        ranked = self._ranked
        if limit is None:
            return list(ranked)
        return ranked[:max(0, limit)]

    async def get_enriched(self, addresses: Iterable[str]) -> dict[str, PriceData]:
        """Return price data, waiting only for addresses with no cached entry.

        Stale entries are served as they are and revalidated in the background.
        """
        return await self.cache.get_prices(addresses)

    async def search(self, query: str, limit: int | None = None) -> list[ScoredEntity]:
        """Search the indexed entities.

        Queries shorter than ``min_query_length`` return an empty list. A query
        that is a well-formed address not present in the index is resolved
        through the lookup feed, if one is configured.

        :param query: Free-text query, symbol or address.
        :param limit: Maximum results (default: ``config.search_limit``).
        :returns: Matching entities, best first, with ``match_score`` set.
        """
        limit = self.config.search_limit if limit is None else limit
        self._cancel_lookup()

        text = query.strip()
        if len(text) < self.config.min_query_length:
            logger.debug(f"Ignoring query {query!r}: {ErrorKind.INVALID_QUERY.value}")
            return []

        results = self.index.search(text, limit)
        if self.lookup is None or not Web3.is_address(text) or self.index.get(text):
            return results

        entity = await self._lookup_address(text)
        if entity is None:
            return results
        found = ScoredEntity(
            entity=entity,
            score=self.scorer.compute(entity),
            match_score=EXACT_POINTS,
        )
        return [found, *(r for r in results if r.address != found.address)][:limit]

    # Change notification

    def subscribe(self, listener: DeltaListener) -> Callable[[], None]:
        """Register a listener for FeedDelta notifications.

        :param listener: Called with each non-empty delta.
        :returns: Callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, delta: FeedDelta) -> None:
        if delta.is_empty:
            return
        for listener in list(self._listeners):
            try:
                listener(delta)
            except Exception:
                logger.exception("Delta listener raised")

    def _on_prices(self, changed: dict[str, PriceData]) -> None:
        if self._collecting:
            self._pending_prices.update(changed)
        else:
            self._publish(FeedDelta(prices=changed))

    # Pipeline

    async def refresh(self) -> FeedDelta | None:
        """Run a cycle now, cancelling any cycle still in flight.

        :returns: The published delta, or None if the cycle was superseded
            or halted.
        """
        previous = self._cycle_task
        if previous is not None and not previous.done():
            logger.info("Cancelling in-flight cycle")
            previous.cancel()
            await asyncio.wait({previous})

        task = asyncio.create_task(self.run_cycle())
        self._cycle_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task.cancelled():
            return None
        return task.result()

    async def run_cycle(self, cursors: dict[str, str | None] | None = None) -> FeedDelta | None:
        """Run one Fetching -> Diffing cycle.

        :param cursors: Optional continuation cursor per feed name.
        :returns: The delta published to subscribers, or None if the cycle
            halted in a pure stage.
        """
        self._collecting = True
        self._pending_prices = {}
        errors: set[ErrorKind] = set()
        try:
            return await self._run_stages(cursors, errors)
        except PipelineError as e:
            logger.exception(f"Cycle halted: {e}")
            self.status.pipeline_error = str(e)
            return None
        finally:
            self._collecting = False
            self.status.stage = PipelineStage.IDLE

    async def _run_stages(
        self,
        cursors: dict[str, str | None] | None,
        errors: set[ErrorKind],
    ) -> FeedDelta:
        # Fetching
        self.status.stage = PipelineStage.FETCHING
        pages, result = await self.aggregator.fetch_all(
            self.feeds, self.config.count_per_source, cursors
        )
        if result.error is not None:
            errors.add(result.error)

        # Aggregating
        if result.all_failed:
            logger.warning(
                f"All {len(result.sources)} feeds failed, serving last known "
                f"{len(self._entities)} entities"
            )
            entities = self._entities
            page_info = self._page_info
        else:
            entities = self._pure(PipelineStage.AGGREGATING, merge_entities, pages)
            page_info = result.page_info
            logger.info(
                f"Aggregated {len(entities)} unique entities from "
                f"{len(pages)}/{len(result.sources)} feeds"
            )
        self._pure(
            PipelineStage.AGGREGATING,
            self.index.rebuild,
            self._search_corpus(entities),
        )

        # Scoring
        ranked = self._pure(PipelineStage.SCORING, self.scorer.score, entities)
        self._entities = entities
        self._ranked = ranked
        self._page_info = page_info

        # Enriching
        self.status.stage = PipelineStage.ENRICHING
        visible = [s.address for s in ranked[:self.config.visible_count]]
        await self.cache.get_prices(visible, wait=True)
        errors |= self.cache.last_errors

        # Diffing
        delta = self._pure(PipelineStage.DIFFING, self.stabilizer.update, ranked, page_info)
        delta = replace(delta, prices=dict(self._pending_prices))
        self._pending_prices = {}

        self.status.all_sources_failed = result.all_failed
        self.status.rate_limited = self.cache.rate_limited
        self.status.errors = errors
        self.status.failed_sources = [f.source for f in result.failures]
        self.status.backoff = self._backoff_state()
        self.status.pipeline_error = None
        self.status.cycles += 1
        self.status.last_cycle_at = time.time()

        self._publish(delta)
        return delta

    def _pure(self, stage: PipelineStage, fn: Callable[..., Any], *args: Any) -> Any:
        self.status.stage = stage
        try:
            return fn(*args)
        except Exception as e:
            raise PipelineError(stage, e) from e

    def _backoff_state(self) -> dict[str, float]:
        active = set(self.source_manager.get_active_sources())
        return {
            name: self.source_manager.get_backoff_remaining(name)
            for name in self.source_manager.sources
            if name not in active
        }

    def _search_corpus(self, entities: list[Entity]) -> list[Entity]:
        known = {e.address.lower() for e in entities}
        extra = [
            token.to_entity()
            for token in self.popular
            if token.address.lower() not in known
        ]
        return [*entities, *extra]

    # Address lookup

    def _cancel_lookup(self) -> None:
        task = self._lookup_task
        if task is not None and not task.done():
            logger.debug("Cancelling superseded address lookup")
            task.cancel()
        self._lookup_task = None

    async def _lookup_address(self, address: str) -> Entity | None:
        task = asyncio.create_task(self.lookup.fetch_entity(address.lower()))
        self._lookup_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._lookup_task is task:
                self._lookup_task = None

        if task.cancelled():
            return None
        error = task.exception()
        if error is not None:
            logger.warning(f"[{self.lookup.feed_name}] Address lookup failed: {error}")
            return None
        return task.result()

    # Loop

    async def run(self) -> None:
        """Poll the feeds every ``poll_interval`` seconds until cancelled.

        Background price refresh runs alongside. The shared HTTP client is
        closed on exit.
        """
        logger.info(f"Starting discovery loop with {len(self.feeds)} feeds")
        self.cache.start(self.config.refresh_interval)
        try:
            while True:
                await self.refresh()
                await asyncio.sleep(self.config.poll_interval)
        finally:
            self._cancel_lookup()
            await self.cache.stop()
            await HTTPClientMixin.close_shared_client()
