"""Gap and download progress models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List

from .series import SeriesIdentity, calculate_expected_candles


class GapKind(str, Enum):
    """Where a gap sits relative to the stored data."""

    RECENT = "recent"
    INTERNAL = "internal"
    HISTORICAL = "historical"


@dataclass(frozen=True)
class Gap:
    """Half-open range [start, end) of missing candle timestamps (Unix seconds)."""

    start: int
    end: int
    kind: GapKind = GapKind.INTERNAL

    @property
    def duration(self) -> int:
        return max(self.end - self.start, 0)

    def expected_candles(self, interval_seconds: int) -> int:
        return calculate_expected_candles(interval_seconds, self.duration)


@dataclass
class DownloadProgress:
    """State of one in-flight series synchronization.

    The active gap is [current_start, target_end]; target_end moves backward
    after every page until it reaches current_start.
    """

    series: SeriesIdentity
    current_count: int
    estimated_total: int
    current_start: int
    target_end: int
    current_kind: GapKind = GapKind.INTERNAL
    gaps_remaining: List[Gap] = field(default_factory=list)
    paused: bool = False
    batches_completed: int = 0

    @property
    def series_id(self) -> str:
        return self.series.series_id

    @property
    def gap_closed(self) -> bool:
        return self.target_end <= self.current_start
