"""Pipeline stages, degraded-state signals and the pipeline error.

Network and partial failures never surface as exceptions to the read
operations. They are reported through ``ErrorKind`` values on an
``EngineStatus`` instead. ``PipelineError`` is reserved for the pure stages,
where a failure means a programming error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(str, Enum):
    """Degraded-state signals reported by the engine."""

    SOURCE_UNAVAILABLE = "source_unavailable"
    ALL_SOURCES_FAILED = "all_sources_failed"
    ENRICHMENT_RATE_LIMITED = "enrichment_rate_limited"
    ENRICHMENT_FAILED = "enrichment_failed"
    INVALID_QUERY = "invalid_query"


class PipelineStage(str, Enum):
    """Stages of one polling cycle, in execution order."""

    IDLE = "idle"
    FETCHING = "fetching"
    AGGREGATING = "aggregating"
    SCORING = "scoring"
    ENRICHING = "enriching"
    DIFFING = "diffing"


class PipelineError(Exception):
    """Raised when a pure, in-memory stage fails during a cycle.

    :ivar stage: The stage that failed.
    """

    def __init__(self, stage: PipelineStage, cause: BaseException):
        self.stage = stage
        super().__init__(f"Pipeline stage '{stage.value}' failed: {cause}")


@dataclass
class EngineStatus:
    """Snapshot of the engine's health after the latest cycle.

    :ivar stage: Current pipeline stage.
    :ivar all_sources_failed: True if every feed failed in the last cycle.
    :ivar rate_limited: True if the price oracle throttled the last fetch.
    :ivar errors: Error kinds observed in the last cycle.
    :ivar failed_sources: Feed names that failed in the last cycle.
    :ivar backoff: Seconds of backoff left per source still in backoff.
    :ivar cycles: Number of completed cycles.
    :ivar last_cycle_at: Unix timestamp of the last completed cycle.
    :ivar pipeline_error: Message of the last halted cycle, if any.
    """

    stage: PipelineStage = PipelineStage.IDLE
    all_sources_failed: bool = False
    rate_limited: bool = False
    errors: set[ErrorKind] = field(default_factory=set)
    failed_sources: list[str] = field(default_factory=list)
    backoff: dict[str, float] = field(default_factory=dict)
    cycles: int = 0
    last_cycle_at: float | None = None
    pipeline_error: str | None = None

    @property
    def degraded(self) -> bool:
        """Check if the last cycle served anything less than fresh data."""
        return bool(self.errors)
