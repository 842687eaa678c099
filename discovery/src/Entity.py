"""Entity: Normalized record for a tradable on-chain asset.

Upstream feeds return loosely shaped records (camelCase keys, numbers encoded
as strings, optional nested media). ``Entity.from_raw`` is the single place
where those records are coerced into one schema with explicit defaults, so
every downstream component (Scorer, SearchIndex, FeedStabilizer) can rely on
well-typed input.

The address is the identity of an entity. It is stored lower-cased, so two
records that differ only in address casing compare as the same key.

.. code-block:: python

    >>> entity = Entity.from_raw({"address": "0xAA", "volume24h": "500"})
    >>> entity.address
    '0xaa'
    >>> entity.volume_24h
    500.0
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def parse_number(value: Any) -> float:
    """Parse a numeric field, treating missing or malformed values as 0.

    :param value: Raw value (str, int, float or None).
    :returns: Finite float, or 0.0 if the value cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return number


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or unix timestamp into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _image_from_raw(raw: dict[str, Any]) -> str | None:
    image = raw.get("imageUri") or raw.get("image")
    if image:
        return str(image)
    media = raw.get("mediaContent")
    if not isinstance(media, dict):
        return None
    preview = media.get("previewImage")
    if isinstance(preview, dict) and preview.get("medium"):
        return str(preview["medium"])
    return None


@dataclass(frozen=True)
class Entity:
    """A tradable asset as seen by the ranking engine.

    :ivar id: Stable identifier from the upstream feed (defaults to address).
    :ivar address: Lower-cased chain address, the deduplication key.
    :ivar name: Display name (may be empty).
    :ivar symbol: Ticker symbol (may be empty).
    :ivar created_at: Creation time, if the feed reports one.
    :ivar market_cap: Market capitalisation in USD.
    :ivar volume_24h: Trading volume over the last 24 hours.
    :ivar market_cap_delta_24h: Absolute market cap change over 24 hours.
    :ivar unique_holders: Number of distinct holders.
    :ivar image_uri: Optional preview image URL.
    """

    id: str
    address: str
    name: str = ""
    symbol: str = ""
    created_at: datetime | None = None
    market_cap: float = 0.0
    volume_24h: float = 0.0
    market_cap_delta_24h: float = 0.0
    unique_holders: int = 0
    image_uri: str | None = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> Entity:
        """Build an Entity from an upstream feed record.

        :param raw: Feed record using the upstream camelCase field names.
        :returns: Normalized Entity.
        :raises ValueError: If the record has no usable address.
        """
        if not isinstance(raw, dict):
            raise ValueError(f"Expected a mapping, got {type(raw).__name__}")

        address = str(raw.get("address") or "").strip().lower()
        if not address:
            raise ValueError("Entity record has no address")

        return cls(
            id=str(raw.get("id") or address),
            address=address,
            name=str(raw.get("name") or ""),
            symbol=str(raw.get("symbol") or ""),
            created_at=parse_timestamp(raw.get("createdAt")),
            market_cap=parse_number(raw.get("marketCap")),
            volume_24h=parse_number(raw.get("volume24h")),
            market_cap_delta_24h=parse_number(raw.get("marketCapDelta24h")),
            unique_holders=int(parse_number(raw.get("uniqueHolders"))),
            image_uri=_image_from_raw(raw),
        )


@dataclass(frozen=True)
class ScoredEntity:
    """An Entity paired with its ranking score.

    Created fresh on every scoring or search pass and never mutated.

    :ivar entity: The scored entity.
    :ivar score: Composite trending score.
    :ivar match_score: Search relevance, set only for search results.
    """

    entity: Entity
    score: float
    match_score: int | None = None

    @property
    def address(self) -> str:
        """Address of the scored entity."""
        return self.entity.address


@dataclass(frozen=True)
class PriceData:
    """Price snapshot for one address as reported by the price oracle.

    :ivar address: Lower-cased token address.
    :ivar price_usd: Latest USD price.
    :ivar volume_24h: 24h trading volume of the selected pair.
    :ivar price_change_24h: 24h price change in percent.
    :ivar liquidity_usd: Pool liquidity in USD.
    :ivar fdv: Fully diluted valuation.
    :ivar pair_address: Address of the selected trading pair.
    :ivar dex_id: Exchange identifier of the selected pair.
    """

    address: str
    price_usd: float | None = None
    volume_24h: float | None = None
    price_change_24h: float | None = None
    liquidity_usd: float | None = None
    fdv: float | None = None
    pair_address: str | None = None
    dex_id: str | None = None

    def differs_from(self, other: PriceData | None) -> bool:
        """Check whether any presentation-relevant field changed.

        Only price, 24h volume and 24h change are compared.

        :param other: Previous snapshot, or None if there was none.
        :returns: True if the snapshots differ.
        """
        if other is None:
            return True
        return (
            self.price_usd != other.price_usd
            or self.volume_24h != other.volume_24h
            or self.price_change_24h != other.price_change_24h
        )
