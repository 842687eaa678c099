"""
Token Discovery Engine - Ranking, Search and Enrichment Module

This module turns paginated upstream coin feeds into a ranked, searchable,
price-enriched entity set:
- Entity: Normalized asset record, scored entity and price data
- FeedAggregator: Concurrent feed fetching with address deduplication
- Scorer: Composite trending score
- SearchIndex: Blended exact/substring/fuzzy/term search
- EnrichmentCache: Rate-limited stale-while-revalidate price cache
- FeedStabilizer: Minimal deltas between snapshots
- DiscoveryEngine: Main orchestrator for the polling pipeline
- fetchers: Upstream feed and price oracle clients
"""

from .DiscoveryEngine import DiscoveryEngine
from .EngineConfig import EngineConfig
from .EnrichmentCache import EnrichmentCache
from .Entity import Entity, PriceData, ScoredEntity
from .FeedAggregator import AggregationResult, FeedAggregator, SourceFailure
from .FeedStabilizer import FeedDelta, FeedStabilizer, diff
from .RateLimiter import RateLimiter
from .Scorer import Scorer, ScoringWeights
from .SearchIndex import SearchIndex, build_index, search
from .SourceManager import SourceManager, SourceStatus
from .Status import EngineStatus, ErrorKind, PipelineError, PipelineStage

__all__ = [
    "AggregationResult",
    "DiscoveryEngine",
    "EngineConfig",
    "EngineStatus",
    "EnrichmentCache",
    "Entity",
    "ErrorKind",
    "FeedAggregator",
    "FeedDelta",
    "FeedStabilizer",
    "PipelineError",
    "PipelineStage",
    "PriceData",
    "RateLimiter",
    "ScoredEntity",
    "Scorer",
    "ScoringWeights",
    "SearchIndex",
    "SourceFailure",
    "SourceManager",
    "SourceStatus",
    "build_index",
    "diff",
    "search",
]
