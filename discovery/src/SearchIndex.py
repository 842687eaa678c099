"""SearchIndex: Free-text search over entities with blended scoring.

No single heuristic is reliable against short, noisy queries (symbols,
partial names, raw addresses), so each entity's relevance is the sum of
several independent signals:

    ===================  =============================================  ======
    Signal               Condition                                      Points
    ===================  =============================================  ======
    Exact                normalized name == q                           +100
                         normalized symbol == q                         +100
                         address == query (case-insensitive)            +100
    Substring            name contains q, or q contains name            +50
                         symbol contains q, or q contains symbol        +50
                         address contains query                         +30
    Fuzzy                similarity(name, query) > threshold            sim*40
                         similarity(symbol, query) > threshold          sim*40
    Term overlap         per (query term, indexed term) pair:
                         query term inside indexed term                 +10
                         indexed term inside query term                 +5
    Popularity           address on the popular allow-list              +20
    ===================  =============================================  ======

Signals are cumulative: an exact match also counts as a substring match and a
perfect fuzzy match. Entities scoring 0 are dropped, so popular entries are
always returned.

.. code-block:: python

    >>> index = build_index(entities)
    >>> [r.entity.symbol for r in search(index, "eth", limit=2)]
    ['ETH', 'ETHX']
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Iterable

from .Entity import Entity, ScoredEntity

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_WHITESPACE = re.compile(r"\s+")

DEFAULT_LIMIT = 15
DEFAULT_SIMILARITY_THRESHOLD = 0.7

EXACT_POINTS = 100
SUBSTRING_POINTS = 50
ADDRESS_SUBSTRING_POINTS = 30
FUZZY_POINTS = 40
TERM_IN_INDEXED_POINTS = 10
INDEXED_IN_TERM_POINTS = 5
POPULAR_POINTS = 20


@dataclass(frozen=True)
class PopularToken:
    """A well-known asset that always appears in search.

    :ivar name: Display name.
    :ivar symbol: Ticker symbol.
    :ivar address: Canonical address (lower-cased on use).
    :ivar aliases: Extra search terms.
    """

    name: str
    symbol: str
    address: str
    aliases: tuple[str, ...] = ()

    def to_entity(self) -> Entity:
        address = self.address.lower()
        return Entity(id=address, address=address, name=self.name, symbol=self.symbol)


POPULAR_TOKENS: tuple[PopularToken, ...] = (
    PopularToken(
        "Ethereum",
        "ETH",
        "0x0000000000000000000000000000000000000000",
        ("ether", "crypto", "blockchain"),
    ),
    PopularToken(
        "USDC",
        "USDC",
        "0xA0b86a33E6441b8c4C8C8C8C8C8C8C8C8C8C8C8C",
        ("usd coin", "stablecoin", "dollar", "usd"),
    ),
    PopularToken(
        "USDT",
        "USDT",
        "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        ("tether", "stablecoin", "dollar", "usd"),
    ),
    PopularToken(
        "Bitcoin",
        "BTC",
        "0x0000000000000000000000000000000000000001",
        ("crypto", "digital gold"),
    ),
)


def normalize_string(value: str) -> str:
    """Lower-case and strip every non-alphanumeric character."""
    return _NON_ALNUM.sub("", value.lower())


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute each cost 1)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(
                min(
                    current[j - 1] + 1,
                    previous[j] + 1,
                    previous[j - 1] + (char_a != char_b),
                )
            )
        previous = current
    return previous[-1]


def calculate_similarity(a: str, b: str) -> float:
    """Similarity ratio in [0, 1] between two strings after normalization.

    Equal strings score 1.0 and containment scores 0.8. Otherwise the score
    is ``1 - distance / max_len``. An empty side scores 0.0, so entities
    without a name or symbol do not match everything.
    """
    first = normalize_string(a)
    second = normalize_string(b)
    if not first or not second:
        return 0.0
    if first == second:
        return 1.0
    if first in second or second in first:
        return 0.8
    return 1 - levenshtein_distance(first, second) / max(len(first), len(second))


def tokenize(value: str) -> list[str]:
    """Split a lower-cased string on whitespace, dropping empty parts."""
    return [part for part in _WHITESPACE.split(value.lower()) if part]


@dataclass(frozen=True)
class SearchIndexEntry:
    """Cached search data for one entity.

    :ivar entity: The indexed entity.
    :ivar normalized_name: Name with non-alphanumerics stripped.
    :ivar normalized_symbol: Symbol with non-alphanumerics stripped.
    :ivar search_terms: Lower-cased tokens for term-overlap scoring.
    """

    entity: Entity
    normalized_name: str
    normalized_symbol: str
    search_terms: frozenset[str]

    @classmethod
    def from_entity(cls, entity: Entity, aliases: Iterable[str] = ()) -> SearchIndexEntry:
        name = entity.name.lower()
        symbol = entity.symbol.lower()
        terms = {
            name,
            symbol,
            entity.address.lower(),
            _WHITESPACE.sub("", name),
            _WHITESPACE.sub("", symbol),
            *tokenize(name),
            *tokenize(symbol),
            *(alias.lower() for alias in aliases),
        }
        terms.discard("")
        return cls(
            entity=entity,
            normalized_name=normalize_string(entity.name),
            normalized_symbol=normalize_string(entity.symbol),
            search_terms=frozenset(terms),
        )

    def is_current_for(self, entity: Entity) -> bool:
        """Check whether this entry can be reused for ``entity``."""
        return (
            self.entity.name == entity.name
            and self.entity.symbol == entity.symbol
            and self.entity.address == entity.address
        )


class SearchIndex:
    """Search index with per-entity entry reuse.

    Entries are rebuilt only when an entity's name, symbol or address
    changes. ``rebuild`` swaps in a new mapping in one assignment, so readers
    never see a half-built index.

    :ivar similarity_threshold: Minimum fuzzy similarity that scores.
    :ivar popular_addresses: Lower-cased addresses receiving the popularity boost.
    """

    def __init__(
        self,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        popular: Iterable[PopularToken] = POPULAR_TOKENS,
    ) -> None:
        self.similarity_threshold = similarity_threshold
        popular = tuple(popular)
        self.popular_addresses = frozenset(t.address.lower() for t in popular)
        self._aliases = {t.address.lower(): t.aliases for t in popular}
        self._entries: dict[str, SearchIndexEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[SearchIndexEntry]:
        return list(self._entries.values())

    def get(self, address: str) -> SearchIndexEntry | None:
        return self._entries.get(address.lower())

    def rebuild(self, entities: Iterable[Entity]) -> int:
        """Replace the indexed set, reusing entries that are still current.

        :param entities: The new entity set.
        :returns: Number of entries that had to be (re)built.
        """
        previous = self._entries
        entries: dict[str, SearchIndexEntry] = {}
        built = 0
        for entity in entities:
            key = entity.address.lower()
            existing = previous.get(key)
            if existing is not None and existing.is_current_for(entity):
                if existing.entity is not entity:
                    existing = SearchIndexEntry(
                        entity=entity,
                        normalized_name=existing.normalized_name,
                        normalized_symbol=existing.normalized_symbol,
                        search_terms=existing.search_terms,
                    )
                entries[key] = existing
                continue
            entries[key] = SearchIndexEntry.from_entity(entity, self._aliases.get(key, ()))
            built += 1
        self._entries = entries
        return built

    def score_entry(self, entry: SearchIndexEntry, query: str) -> int:
        """Compute the blended relevance score of one entry.

        :param entry: Indexed entity.
        :param query: Raw user query.
        :returns: Sum of all applicable signal points.
        """
        q = normalize_string(query)
        raw_query = query.lower().strip()
        address = entry.entity.address.lower()
        name = entry.normalized_name
        symbol = entry.normalized_symbol
        score = 0

        # Exact matches
        if q and name == q:
            score += EXACT_POINTS
        if q and symbol == q:
            score += EXACT_POINTS
        if raw_query and address == raw_query:
            score += EXACT_POINTS

        # Substring matches
        if q and name and (q in name or name in q):
            score += SUBSTRING_POINTS
        if q and symbol and (q in symbol or symbol in q):
            score += SUBSTRING_POINTS
        if raw_query and raw_query in address:
            score += ADDRESS_SUBSTRING_POINTS

        # Fuzzy matches
        for field_value in (entry.entity.name, entry.entity.symbol):
            similarity = calculate_similarity(field_value, query)
            if similarity > self.similarity_threshold:
                score += math.floor(similarity * FUZZY_POINTS)

        # Term overlap
        for term in tokenize(query):
            for indexed in entry.search_terms:
                if term in indexed:
                    score += TERM_IN_INDEXED_POINTS
                if indexed in term:
                    score += INDEXED_IN_TERM_POINTS

        if address in self.popular_addresses:
            score += POPULAR_POINTS

        return score

    def search(self, query: str, limit: int = DEFAULT_LIMIT) -> list[ScoredEntity]:
        """Rank indexed entities against a query.

        :param query: Raw user query.
        :param limit: Maximum number of results.
        :returns: Matching entities, best first, each with ``match_score`` set.
        """
        if not query.strip() or limit <= 0:
            return []

        entries = self._entries
        results = []
        for entry in entries.values():
            match_score = self.score_entry(entry, query)
            if match_score > 0:
                results.append(
                    ScoredEntity(
                        entity=entry.entity,
                        score=float(match_score),
                        match_score=match_score,
                    )
                )
        results.sort(key=lambda r: (-r.score, r.address))
        return results[:limit]


def build_index(
    entities: Iterable[Entity],
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> SearchIndex:
    """Build a fresh search index.

    :param entities: Entities to index.
    :param similarity_threshold: Minimum fuzzy similarity that scores.
    :returns: Populated SearchIndex.
    """
    index = SearchIndex(similarity_threshold=similarity_threshold)
    index.rebuild(entities)
    return index


def search(index: SearchIndex, query: str, limit: int = DEFAULT_LIMIT) -> list[ScoredEntity]:
    """Answer a free-text query against ``index``."""
    return index.search(query, limit)
