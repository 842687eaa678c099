#!/usr/bin/env python3
"""Token Discovery Engine.

Polls upstream coin feeds, ranks the merged entities by a composite trending
score, enriches the top of the ranking with DEX price data and logs every
change delta.

Configure via CLI flags or environment variables.
"""

import argparse
import asyncio
import logging
import os
import sys

from .src.DiscoveryEngine import DiscoveryEngine
from .src.EngineConfig import EngineConfig
from .src.FeedStabilizer import FeedDelta
from .src.fetchers import DexScreenerFetcher, FetcherConfigError, get_available_feeds, get_feed

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_feeds(feeds_str: str) -> list[str]:
    """Parse a comma-separated feed list, dropping blanks and duplicates.

    :param feeds_str: Comma-separated feed names.
    :returns: Lower-cased feed names in order of first appearance.
    """
    feeds: list[str] = []
    for item in feeds_str.split(","):
        name = item.strip().lower()
        if name and name not in feeds:
            feeds.append(name)
    return feeds


def log_delta(engine: DiscoveryEngine, delta: FeedDelta, top: int) -> None:
    """Log a delta and the current top of the ranking."""
    if delta.changed:
        logger.info(
            f"{len(delta.changed)} entities changed"
            + (", page info changed" if delta.page_info_changed else "")
        )
        for rank, scored in enumerate(engine.get_ranked(top), start=1):
            entity = scored.entity
            logger.info(
                f"  #{rank:<3} {entity.symbol or '?':<12} {entity.address}  "
                f"score={scored.score:,.1f}"
            )
    for address, price in delta.prices.items():
        logger.info(
            f"  price {address}: ${price.price_usd} "
            f"(24h {price.price_change_24h}%, vol {price.volume_24h})"
        )
    if engine.status.degraded:
        logger.warning(
            f"Degraded: {sorted(e.value for e in engine.status.errors)}"
            + (f", failed feeds: {engine.status.failed_sources}"
               if engine.status.failed_sources else "")
        )
    for name, remaining in engine.status.backoff.items():
        status = engine.source_manager.get_source_status(name)
        logger.warning(
            f"[{name}] In backoff for {remaining:.1f}s "
            f"after {status.consecutive_failures} failures: {status.last_error}"
        )


def main() -> None:
    """Main entry point for the discovery engine CLI."""
    available_feeds = get_available_feeds()

    parser = argparse.ArgumentParser(
        description="Token Discovery Engine: ranked, searchable coin feeds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available feeds:
  {', '.join(available_feeds)}

Examples:
  # Default feeds, log the top 10
  python -m discovery.main --top 10

  # Faster polling against two feeds
  python -m discovery.main --feeds top-gainers,new --poll-interval 5

Environment variables (CLI args take precedence):
  FEEDS, COUNT_PER_SOURCE, POLL_INTERVAL, CACHE_TTL, RATE_LIMIT_MAX,
  RATE_LIMIT_WINDOW, BATCH_SIZE, FETCH_TIMEOUT, CHAIN_ID, DEX_CHAIN,
  API_KEY_ZORA, TOP
""",
    )

    parser.add_argument(
        "--feeds",
        type=str,
        help=f"Comma-separated feeds. Available: {', '.join(available_feeds)}",
        default=os.environ.get("FEEDS") or "top-gainers,top-volume-24h,new,most-valuable",
    )

    parser.add_argument(
        "--count-per-source",
        dest="count_per_source",
        type=int,
        help="Entities requested from each feed (default: 20)",
        default=int(os.environ.get("COUNT_PER_SOURCE") or "20"),
    )

    parser.add_argument(
        "--poll-interval",
        dest="poll_interval",
        type=float,
        help="Seconds between pipeline cycles (default: 10)",
        default=float(os.environ.get("POLL_INTERVAL") or "10"),
    )

    parser.add_argument(
        "--cache-ttl",
        dest="cache_ttl",
        type=float,
        help="Seconds a price stays fresh (default: 30)",
        default=float(os.environ.get("CACHE_TTL") or "30"),
    )

    parser.add_argument(
        "--rate-limit-max",
        dest="rate_limit_max",
        type=int,
        help="Max price requests per window (default: 60)",
        default=int(os.environ.get("RATE_LIMIT_MAX") or "60"),
    )

    parser.add_argument(
        "--rate-limit-window",
        dest="rate_limit_window",
        type=float,
        help="Rate limit window in seconds (default: 60)",
        default=float(os.environ.get("RATE_LIMIT_WINDOW") or "60"),
    )

    parser.add_argument(
        "--batch-size",
        dest="batch_size",
        type=int,
        help="Price requests issued concurrently (default: 3)",
        default=int(os.environ.get("BATCH_SIZE") or "3"),
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Timeout for individual requests in seconds (default: 8.0)",
        default=float(os.environ.get("FETCH_TIMEOUT") or "8.0"),
    )

    parser.add_argument(
        "--chain-id",
        dest="chain_id",
        type=int,
        help="Keep only coins on this chain, 0 to disable (default: 8453, Base)",
        default=int(os.environ.get("CHAIN_ID") or "8453"),
    )

    parser.add_argument(
        "--dex-chain",
        dest="dex_chain",
        type=str,
        help="DexScreener chain slug for price lookups (default: base)",
        default=os.environ.get("DEX_CHAIN") or "base",
    )

    parser.add_argument(
        "--api-key",
        dest="api_key",
        type=str,
        help="Zora API key",
        default=os.environ.get("API_KEY_ZORA"),
    )

    parser.add_argument(
        "--top",
        type=int,
        help="Ranked entities logged after each change (default: 10)",
        default=int(os.environ.get("TOP") or "10"),
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    feeds = parse_feeds(args.feeds)
    if not feeds:
        parser.error("At least one feed must be specified")

    invalid_feeds = [f for f in feeds if f not in available_feeds]
    if invalid_feeds:
        parser.error(
            f"Unknown feeds: {invalid_feeds}. "
            f"Available: {', '.join(available_feeds)}"
        )

    try:
        config = EngineConfig(
            count_per_source=args.count_per_source,
            poll_interval=args.poll_interval,
            cache_ttl=args.cache_ttl,
            rate_limit_max=args.rate_limit_max,
            rate_limit_window=args.rate_limit_window,
            batch_size=args.batch_size,
            fetch_timeout=args.fetch_timeout,
        )
    except ValueError as e:
        parser.error(str(e))

    chain_id = args.chain_id or None

    # Log configuration
    logger.info("=" * 60)
    logger.info("Token Discovery Engine")
    logger.info("=" * 60)
    logger.info(f"Feeds:             {', '.join(feeds)}")
    logger.info(f"Per Feed:          {config.count_per_source}")
    logger.info(f"Chain:             {chain_id or 'any'} (prices: {args.dex_chain})")
    logger.info(f"Poll Interval:     {config.poll_interval}s")
    logger.info(f"Cache TTL:         {config.cache_ttl}s")
    logger.info(
        f"Rate Limit:        {config.rate_limit_max} / {config.rate_limit_window}s, "
        f"batches of {config.batch_size}"
    )
    logger.info(f"Fetch Timeout:     {config.fetch_timeout}s")
    if args.api_key:
        logger.info("API Key:           zora")
    logger.info("=" * 60)

    try:
        feed_instances = [
            get_feed(name, api_key=args.api_key, timeout=config.fetch_timeout, chain_id=chain_id)
            for name in feeds
        ]
        engine = DiscoveryEngine(
            feeds=feed_instances,
            price_fetcher=DexScreenerFetcher(timeout=config.fetch_timeout, chain_id=args.dex_chain),
            config=config,
            lookup=feed_instances[0],
        )
        engine.subscribe(lambda delta: log_delta(engine, delta, args.top))
        asyncio.run(engine.run())
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except FetcherConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
