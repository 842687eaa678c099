"""Zora coins explore feeds.

Endpoint: https://api-sdk.zora.engineering/explore?listType={LIST}&count={n}&after={cursor}
Lookup:   https://api-sdk.zora.engineering/coin?address={address}&chain={chainId}
Auth:     optional ``api-key`` header

Response shape::

    {"exploreList": {"edges": [{"node": {...}}], "pageInfo": {"endCursor": "..."}}}

Each list type is registered as its own feed so that the aggregator can fetch
them concurrently and report failures per feed.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from ..Entity import Entity
from .base import BaseFeed, FeedPage, FetcherError, register_feed

logger = logging.getLogger(__name__)

BASE_CHAIN_ID = 8453


class ZoraExploreFeed(BaseFeed):
    """Base class for Zora explore list feeds.

    :cvar list_type: Value of the ``listType`` query parameter.
    :ivar chain_id: Records from other chains are dropped (None disables).
    """

    BASE_URL = "https://api-sdk.zora.engineering"
    list_type: ClassVar[str] = ""

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
        chain_id: int | None = BASE_CHAIN_ID,
    ):
        super().__init__(api_key=api_key, timeout=timeout)
        self.chain_id = chain_id

    def _headers(self) -> dict[str, str] | None:
        if not self.has_api_key:
            return None
        return {"api-key": self.api_key}

    async def fetch_page(self, count: int, cursor: str | None = None) -> FeedPage:
        """Fetch one explore page.

        :param count: Number of coins requested.
        :param cursor: ``endCursor`` of the previous page.
        :returns: FeedPage with normalized entities.
        :raises FetcherError: On network or HTTP failure, or a malformed body.
        """
        params: dict[str, Any] = {"listType": self.list_type, "count": count}
        if cursor:
            params["after"] = cursor

        response = await self._get(
            f"{self.BASE_URL}/explore", params=params, headers=self._headers()
        )
        try:
            data = response.json()
        except ValueError as e:
            raise FetcherError(f"[{self.name}] Invalid JSON response: {e}") from e

        explore = (data or {}).get("exploreList") or {}
        edges = explore.get("edges") or []
        records = [edge.get("node") for edge in edges if isinstance(edge, dict)]
        page_info = explore.get("pageInfo") or {}
        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage", True) else None

        page = FeedPage.from_records(records, next_cursor=next_cursor, chain_id=self.chain_id)
        logger.debug(
            f"[{self.name}] Fetched {len(page.entities)} entities "
            f"({page.rejected} rejected)"
        )
        return page

    async def fetch_entity(self, address: str) -> Entity | None:
        """Look up a single coin by address.

        :param address: Chain address.
        :returns: Entity, or None if the coin is unknown or the lookup fails.
        """
        params: dict[str, Any] = {"address": address}
        if self.chain_id is not None:
            params["chain"] = self.chain_id
        try:
            response = await self._get(
                f"{self.BASE_URL}/coin", params=params, headers=self._headers()
            )
            token = (response.json() or {}).get("zora20Token")
        except FetcherError as e:
            logger.warning(f"[{self.name}] Lookup of {address} failed: {e}")
            return None
        except ValueError as e:
            logger.warning(f"[{self.name}] Failed to parse lookup response: {e}")
            return None

        if not token:
            return None
        try:
            return Entity.from_raw(token)
        except ValueError as e:
            logger.warning(f"[{self.name}] Malformed coin record for {address}: {e}")
            return None


@register_feed
class TopGainersFeed(ZoraExploreFeed):
    """Coins with the largest 24h market cap gain."""

    name = "top-gainers"
    list_type = "TOP_GAINERS"


@register_feed
class TopVolumeFeed(ZoraExploreFeed):
    """Coins with the highest 24h trading volume."""

    name = "top-volume-24h"
    list_type = "TOP_VOLUME_24H"


@register_feed
class MostValuableFeed(ZoraExploreFeed):
    """Coins with the highest market cap."""

    name = "most-valuable"
    list_type = "MOST_VALUABLE"


@register_feed
class NewCoinsFeed(ZoraExploreFeed):
    """Most recently created coins."""

    name = "new"
    list_type = "NEW"


@register_feed
class LastTradedFeed(ZoraExploreFeed):
    """Coins ordered by most recent trade."""

    name = "last-traded"
    list_type = "LAST_TRADED"


@register_feed
class LastTradedUniqueFeed(ZoraExploreFeed):
    """Coins ordered by most recent trade from a distinct trader."""

    name = "last-traded-unique"
    list_type = "LAST_TRADED_UNIQUE"
