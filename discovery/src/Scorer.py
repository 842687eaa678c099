"""Scorer: Composite trending score over aggregated entities.

Algorithm:
    1. For each entity compute
       ``delta * cap_delta_weight + volume * volume_weight + holders * holders_weight``
       (missing numeric fields count as 0)
    2. Sort descending by score, breaking ties by ascending address
    3. Truncate to the requested top-N, after sorting

Scoring is pure: identical input always yields identical ordering.

.. code-block:: python

    >>> scorer = Scorer()
    >>> ranked = scorer.score([a, b, c], limit=2)
    >>> [s.address for s in ranked]
    ['0xb...', '0xa...']
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .Entity import Entity, ScoredEntity


@dataclass(frozen=True)
class ScoringWeights:
    """Weights of the composite score.

    :ivar cap_delta: Weight of the absolute 24h market cap change.
    :ivar volume: Weight of the 24h volume.
    :ivar holders: Weight of the unique holder count.
    """

    cap_delta: float = 1.5
    volume: float = 0.001
    holders: float = 2.0


class Scorer:
    """Ranks entities by a weighted sum of market signals.

    :ivar weights: Weights applied to each signal.

    .. code-block:: python

        >>> scorer = Scorer(ScoringWeights(cap_delta=1.0, volume=0.0, holders=0.0))
        >>> scorer.compute(Entity(id="a", address="0xa", market_cap_delta_24h=12.0))
        12.0
    """

    def __init__(self, weights: ScoringWeights | None = None) -> None:
        """Initialize the scorer.

        :param weights: Signal weights (default: 1.5 / 0.001 / 2).
        """
        self.weights = weights or ScoringWeights()

    def compute(self, entity: Entity) -> float:
        """Compute the composite score of a single entity."""
        return (
            (entity.market_cap_delta_24h or 0.0) * self.weights.cap_delta
            + (entity.volume_24h or 0.0) * self.weights.volume
            + (entity.unique_holders or 0) * self.weights.holders
        )

    def score(
        self,
        entities: Iterable[Entity],
        limit: int | None = None,
    ) -> list[ScoredEntity]:
        """Score and rank entities.

        The full set is always scored and sorted before truncation; callers
        must not pre-filter.

        :param entities: Entities to rank.
        :param limit: Optional number of top results to keep.
        :returns: New ScoredEntity list, best first.
        :raises ValueError: If limit is negative.
        """
        if limit is not None and limit < 0:
            raise ValueError("limit must not be negative")

        scored = [ScoredEntity(entity=e, score=self.compute(e)) for e in entities]
        scored.sort(key=lambda s: (-s.score, s.address))

        if limit is not None:
            return scored[:limit]
        return scored
