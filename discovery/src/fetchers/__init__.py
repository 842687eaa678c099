"""
Clients for upstream entity feeds and the price oracle.

Usage:
    from discovery.src.fetchers import get_feed, get_available_feeds

    # Get list of available feeds
    available = get_available_feeds()
    # ['last-traded', 'last-traded-unique', 'most-valuable', 'new', 'top-gainers', 'top-volume-24h']

    # Create a feed instance and fetch a page
    feed = get_feed("top-gainers")
    page = await feed.fetch_page(20)

    # Price oracle client
    prices = DexScreenerFetcher(chain_id="base")
    data = await prices.fetch("0x...")
"""

# Import base classes and utilities
from .base import (
    FEED_REGISTRY,
    BaseFeed,
    BasePriceFetcher,
    CallableFeed,
    FeedPage,
    FetcherConfigError,
    FetcherError,
    FetcherHTTPError,
    HTTPClientMixin,
    PageInfo,
    get_available_feeds,
    get_feed,
    register_feed,
)

# Import all implementations to trigger registration
from .dexscreener import DexScreenerFetcher
from .zora import (
    LastTradedFeed,
    LastTradedUniqueFeed,
    MostValuableFeed,
    NewCoinsFeed,
    TopGainersFeed,
    TopVolumeFeed,
    ZoraExploreFeed,
)

__all__ = [
    # Base classes
    "BaseFeed",
    "BasePriceFetcher",
    "CallableFeed",
    "FeedPage",
    "PageInfo",
    "FetcherError",
    "FetcherConfigError",
    "FetcherHTTPError",
    "HTTPClientMixin",
    # Registry functions
    "register_feed",
    "get_feed",
    "get_available_feeds",
    "FEED_REGISTRY",
    # Implementations
    "DexScreenerFetcher",
    "ZoraExploreFeed",
    "TopGainersFeed",
    "TopVolumeFeed",
    "MostValuableFeed",
    "NewCoinsFeed",
    "LastTradedFeed",
    "LastTradedUniqueFeed",
]
