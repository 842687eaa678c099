"""Base clients for upstream feeds and the price oracle.

Two kinds of outbound collaborators exist:

- **Feeds** (``BaseFeed``) return pages of entities ranked by some external
  criterion, plus an opaque cursor for continuation.
- **Price fetchers** (``BasePriceFetcher``) return price data for a single
  chain address.

Both share one ``httpx.AsyncClient`` to avoid connection overhead, and both
raise ``FetcherError`` subclasses so that callers can tell rate limiting
(HTTP 429) apart from other failures.

.. code-block:: python

    @register_feed
    class MyFeed(BaseFeed):
        name = "my-feed"

        async def fetch_page(self, count: int, cursor: str | None = None) -> FeedPage:
            response = await self._get("https://api.example.com/list", params={"n": count})
            return FeedPage.from_records(response.json()["items"])
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar

import httpx

from ..Entity import Entity, PriceData

logger = logging.getLogger(__name__)


class FetcherError(Exception):
    """Base exception for outbound request errors."""

    pass


class FetcherConfigError(FetcherError):
    """Raised when client configuration is invalid (e.g., unknown feed)."""

    pass


class FetcherHTTPError(FetcherError):
    """Raised when an HTTP request returns a non-2xx status.

    :ivar status_code: HTTP status code from the failed request.
    :ivar retry_after: Seconds suggested by a ``Retry-After`` header, if any.
    """

    def __init__(self, status_code: int, message: str, retry_after: float | None = None):
        """Initialize the HTTP error.

        :param status_code: HTTP status code.
        :param message: Error message from response.
        :param retry_after: Optional retry hint in seconds.
        """
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(f"HTTP {status_code}: {message}")

    @property
    def is_rate_limited(self) -> bool:
        """True if the server throttled the request."""
        return self.status_code == 429


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class HTTPClientMixin:
    """Shared ``httpx.AsyncClient`` management and GET helper.

    :cvar DEFAULT_TIMEOUT: Default HTTP request timeout in seconds.
    :ivar api_key: Optional API key for authenticated endpoints.
    :ivar timeout: Request timeout in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    DEFAULT_TIMEOUT = 10.0

    api_key: str | None
    timeout: float

    @property
    def has_api_key(self) -> bool:
        """Check if this client has an API key configured."""
        return self.api_key is not None and len(self.api_key) > 0

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        :returns: Shared httpx.AsyncClient instance.
        """
        if (
            HTTPClientMixin._shared_client is None
            or HTTPClientMixin._shared_client.is_closed
        ):
            HTTPClientMixin._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return HTTPClientMixin._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = HTTPClientMixin._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        HTTPClientMixin._shared_client = None

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request using the shared client.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises FetcherHTTPError: On non-2xx response.
        :raises FetcherError: On network/timeout errors.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise FetcherError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise FetcherError(f"Request failed: {e}") from e

        if not response.is_success:
            logger.debug(
                "HTTP GET %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
            raise FetcherHTTPError(
                response.status_code,
                response.text[:200],
                retry_after=_parse_retry_after(response),
            )
        return response


@dataclass(frozen=True)
class PageInfo:
    """Continuation state of one feed.

    :ivar end_cursor: Opaque cursor for the next page.
    :ivar has_next_page: Whether the feed reported more results.
    """

    end_cursor: str | None = None
    has_next_page: bool = False


@dataclass(frozen=True)
class FeedPage:
    """One page of entities returned by a feed.

    :ivar entities: Normalized entities, in feed order.
    :ivar next_cursor: Cursor for the following page, if any.
    :ivar rejected: Number of raw records dropped during normalization.
    """

    entities: list[Entity] = field(default_factory=list)
    next_cursor: str | None = None
    rejected: int = 0

    @property
    def page_info(self) -> PageInfo:
        return PageInfo(
            end_cursor=self.next_cursor,
            has_next_page=bool(self.next_cursor),
        )

    @classmethod
    def from_records(
        cls,
        records: list[Any],
        next_cursor: str | None = None,
        chain_id: int | None = None,
    ) -> FeedPage:
        """Normalize raw records into a page, dropping malformed ones.

        :param records: Raw feed records.
        :param next_cursor: Continuation cursor.
        :param chain_id: If set, records reporting another ``chainId`` are dropped.
        :returns: FeedPage with the valid entities.
        """
        entities: list[Entity] = []
        rejected = 0
        for record in records:
            if (
                chain_id is not None
                and isinstance(record, dict)
                and record.get("chainId") is not None
                and record.get("chainId") != chain_id
            ):
                rejected += 1
                continue
            try:
                entities.append(Entity.from_raw(record))
            except ValueError as e:
                rejected += 1
                logger.debug(f"Dropping malformed feed record: {e}")
        return cls(entities=entities, next_cursor=next_cursor or None, rejected=rejected)


class BaseFeed(HTTPClientMixin, ABC):
    """Abstract base class for paginated upstream feeds.

    :cvar name: Unique feed name (e.g., "top-gainers").
    """

    name: ClassVar[str] = ""

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        """Initialize the feed.

        :param api_key: Optional API key.
        :param timeout: Request timeout in seconds (default: 10).
        """
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    @property
    def feed_name(self) -> str:
        """Name used for logging and failure reporting."""
        return self.name

    @abstractmethod
    async def fetch_page(self, count: int, cursor: str | None = None) -> FeedPage:
        """Fetch one page of entities.

        :param count: Number of entities requested.
        :param cursor: Continuation cursor from a previous page.
        :returns: FeedPage with entities and the next cursor.
        :raises FetcherError: On network or HTTP failure.
        """
        pass

    async def fetch_entity(self, address: str) -> Entity | None:
        """Look up a single entity by address.

        Feeds without a direct lookup endpoint return None.

        :param address: Chain address.
        :returns: Entity or None if not found.
        """
        return None


FetchFunction = Callable[[str, int, str | None], Awaitable[dict[str, Any]]]


class CallableFeed(BaseFeed):
    """Adapts an authenticated ``fetch(feed_name, count, cursor)`` function.

    The function must return ``{"entities": [...], "nextCursor": "..."}`` where
    entities are raw records or ``Entity`` instances.
    """

    def __init__(self, feed_name: str, fetch: FetchFunction, chain_id: int | None = None):
        """Initialize the adapter.

        :param feed_name: Name passed through to the fetch function.
        :param fetch: Coroutine function performing the query.
        :param chain_id: Optional chain filter.
        """
        super().__init__()
        self._feed_name = feed_name
        self._fetch = fetch
        self.chain_id = chain_id

    @property
    def feed_name(self) -> str:
        return self._feed_name

    async def fetch_page(self, count: int, cursor: str | None = None) -> FeedPage:
        result = await self._fetch(self._feed_name, count, cursor)
        records = result.get("entities") or []
        ready = [r for r in records if isinstance(r, Entity)]
        page = FeedPage.from_records(
            [r for r in records if not isinstance(r, Entity)],
            next_cursor=result.get("nextCursor"),
            chain_id=self.chain_id,
        )
        if not ready:
            return page
        return FeedPage(
            entities=ready + page.entities,
            next_cursor=page.next_cursor,
            rejected=page.rejected,
        )


class BasePriceFetcher(HTTPClientMixin, ABC):
    """Abstract base class for price oracle clients.

    :cvar name: Unique fetcher name (e.g., "dexscreener").
    """

    name: ClassVar[str] = ""

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    @abstractmethod
    async def fetch(self, address: str) -> PriceData | None:
        """Fetch price data for one chain address.

        :param address: Lower-cased token address.
        :returns: PriceData, or None if the oracle knows no pair for it.
        :raises FetcherHTTPError: On non-2xx response (429 when throttled).
        :raises FetcherError: On network/timeout errors.
        """
        pass


# Registry of available feeds (populated by subclass imports)
FEED_REGISTRY: dict[str, type[BaseFeed]] = {}


def register_feed(cls: type[BaseFeed]) -> type[BaseFeed]:
    """Decorator to register a feed class in the global registry.

    :param cls: Feed class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If the feed has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Feed {cls.__name__} must define a 'name' class variable")
    FEED_REGISTRY[cls.name] = cls
    return cls


def get_feed(name: str, api_key: str | None = None, **kwargs: Any) -> BaseFeed:
    """Get a feed instance by name.

    :param name: Feed name (e.g., "top-gainers").
    :param api_key: Optional API key.
    :param kwargs: Extra constructor arguments (e.g., ``chain_id``).
    :returns: Feed instance.
    :raises FetcherConfigError: If the feed name is unknown.
    """
    if name not in FEED_REGISTRY:
        available = ", ".join(sorted(FEED_REGISTRY.keys()))
        raise FetcherConfigError(f"Unknown feed '{name}'. Available: {available}")
    return FEED_REGISTRY[name](api_key=api_key, **kwargs)


def get_available_feeds() -> list[str]:
    """Get sorted list of registered feed names."""
    return sorted(FEED_REGISTRY.keys())
