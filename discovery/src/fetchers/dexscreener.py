"""DexScreener price fetcher.

Endpoint: https://api.dexscreener.com/tokens/v1/{chainId}/{tokenAddress}
Rate Limit: 60 requests/min (HTTP 429 when exceeded)

The response is a list of trading pairs that include the token. The pair with
the deepest USD liquidity is taken as the token's price source.
"""

from __future__ import annotations

import logging
from typing import Any

from ..Entity import PriceData, parse_number
from .base import BasePriceFetcher, FetcherError

logger = logging.getLogger(__name__)


def _optional_number(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return parse_number(value)


def select_pair(pairs: list[dict[str, Any]], address: str) -> dict[str, Any] | None:
    """Pick the most liquid pair whose base token is ``address``.

    Falls back to all pairs when none lists the token as base.

    :param pairs: Pair records from the API.
    :param address: Lower-cased token address.
    :returns: The selected pair, or None if the list is empty.
    """
    candidates = [p for p in pairs if isinstance(p, dict)]
    as_base = [
        p
        for p in candidates
        if str((p.get("baseToken") or {}).get("address") or "").lower() == address
    ]
    pool = as_base or candidates
    if not pool:
        return None
    return max(
        pool,
        key=lambda p: parse_number((p.get("liquidity") or {}).get("usd")),
    )


def price_from_pair(address: str, pair: dict[str, Any]) -> PriceData:
    """Convert a DexScreener pair record into PriceData."""
    return PriceData(
        address=address,
        price_usd=_optional_number(pair.get("priceUsd")),
        volume_24h=_optional_number((pair.get("volume") or {}).get("h24")),
        price_change_24h=_optional_number((pair.get("priceChange") or {}).get("h24")),
        liquidity_usd=_optional_number((pair.get("liquidity") or {}).get("usd")),
        fdv=_optional_number(pair.get("fdv")),
        pair_address=pair.get("pairAddress"),
        dex_id=pair.get("dexId"),
    )


class DexScreenerFetcher(BasePriceFetcher):
    """Fetcher for DexScreener token pair data.

    :ivar chain_id: DexScreener chain slug (e.g., "base").
    """

    name = "dexscreener"
    BASE_URL = "https://api.dexscreener.com"

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
        chain_id: str = "base",
    ):
        super().__init__(api_key=api_key, timeout=timeout)
        self.chain_id = chain_id

    async def fetch(self, address: str) -> PriceData | None:
        """Fetch price data for a token address.

        HTTP and network errors propagate so the cache can tell a 429 apart
        from other failures.

        :param address: Lower-cased token address.
        :returns: PriceData, or None if no pair trades the token.
        :raises FetcherError: On network/HTTP failure or a malformed body.
        """
        response = await self._get(f"{self.BASE_URL}/tokens/v1/{self.chain_id}/{address}")
        try:
            data = response.json()
        except ValueError as e:
            raise FetcherError(f"[dexscreener] Invalid JSON response: {e}") from e

        # Older endpoints wrap the list as {"pairs": [...]}
        if isinstance(data, dict):
            data = data.get("pairs") or []
        if not isinstance(data, list):
            logger.warning(f"[dexscreener] Unexpected response format for {address}")
            return None

        pair = select_pair(data, address)
        if pair is None:
            logger.debug(f"[dexscreener] No pairs for {address}")
            return None
        return price_from_pair(address, pair)
