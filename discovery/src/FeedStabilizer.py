"""FeedStabilizer: Minimal deltas between successive ranked snapshots.

Only the volatile market fields are compared. An entity whose volatile
fields are identical to the previous snapshot is left out of the delta, so
subscribers never re-render unchanged rows.

Rules:
    - Entities absent from the previous snapshot are always included
    - A length mismatch between snapshots marks every entity as changed
    - ``diff(x, x)`` is always empty
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from .Entity import Entity, PriceData, ScoredEntity
from .fetchers import PageInfo

logger = logging.getLogger(__name__)

VOLATILE_FIELDS = ("market_cap", "volume_24h", "market_cap_delta_24h", "unique_holders")


@dataclass(frozen=True)
class FeedDelta:
    """Change notification emitted to subscribers.

    :ivar changed: Entities that are new or whose volatile fields changed.
    :ivar page_info_changed: True if any feed's continuation state changed.
    :ivar prices: Enrichment data that changed since the last notification.
    """

    changed: list[Entity] = field(default_factory=list)
    page_info_changed: bool = False
    prices: dict[str, PriceData] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.changed and not self.page_info_changed and not self.prices


def _volatile(entity: Entity) -> tuple:
    return tuple(getattr(entity, name) for name in VOLATILE_FIELDS)


def diff(
    previous: Sequence[Entity],
    current: Sequence[Entity],
    previous_page_info: Mapping[str, PageInfo] | None = None,
    current_page_info: Mapping[str, PageInfo] | None = None,
) -> FeedDelta:
    """Compute the delta between two snapshots.

    :param previous: Last published snapshot.
    :param current: New snapshot.
    :param previous_page_info: Page info published with ``previous``.
    :param current_page_info: Page info accompanying ``current``.
    :returns: FeedDelta with the changed entities in ``current`` order.
    """
    page_info_changed = dict(previous_page_info or {}) != dict(current_page_info or {})

    if len(previous) != len(current):
        return FeedDelta(changed=list(current), page_info_changed=page_info_changed)

    known = {entity.address.lower(): _volatile(entity) for entity in previous}
    changed = [
        entity
        for entity in current
        if known.get(entity.address.lower()) != _volatile(entity)
    ]
    return FeedDelta(changed=changed, page_info_changed=page_info_changed)


class FeedStabilizer:
    """Holds the last published snapshot and diffs each new one against it.

    :ivar snapshot: Last published ranked entities.
    :ivar page_info: Page info published with the snapshot.
    """

    def __init__(self) -> None:
        self.snapshot: list[ScoredEntity] = []
        self.page_info: dict[str, PageInfo] = {}

    def update(
        self,
        ranked: Sequence[ScoredEntity],
        page_info: Mapping[str, PageInfo] | None = None,
    ) -> FeedDelta:
        """Diff ``ranked`` against the held snapshot, then replace it.

        :param ranked: New ranked snapshot.
        :param page_info: Page info of the new snapshot.
        :returns: The delta to publish (may be empty).
        """
        page_info = dict(page_info or {})
        delta = diff(
            [s.entity for s in self.snapshot],
            [s.entity for s in ranked],
            self.page_info,
            page_info,
        )
        self.snapshot = list(ranked)
        self.page_info = page_info
        logger.debug(
            f"Snapshot of {len(ranked)} entities, {len(delta.changed)} changed, "
            f"page info changed: {delta.page_info_changed}"
        )
        return delta
