"""Result models for synchronization operations."""

from dataclasses import dataclass, field
from typing import List, Optional

from .candle import Candle


@dataclass
class MergeResult:
    """Outcome of merging candles into a store."""

    added: int = 0
    replaced: int = 0
    skipped: int = 0


@dataclass
class BatchResult:
    """Result of one page request for the active gap.

    A failed request carries an error and leaves the download progress as it was.
    """

    candles: List[Candle] = field(default_factory=list)
    raw_count: int = 0
    next_boundary: int = 0
    reached_start: bool = False
    error: Optional[str] = None
    retryable: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class SaveResult:
    """Result of a checkpoint write for one series."""

    series_id: str
    success: bool
    candles_saved: int
    path: Optional[str] = None
    errors: Optional[List[str]] = None
    execution_time_ms: int = 0

    def __post_init__(self):
        """Initialize errors list if None."""
        if self.errors is None:
            self.errors = []


@dataclass
class SyncResult:
    """Result of a full synchronization of one series."""

    series_id: str
    candles_before: int
    candles_after: int
    gaps_found: int
    status: str  # "success", "up_to_date", "stalled", "error"
    execution_time_ms: int
    errors: Optional[List[str]] = None

    def __post_init__(self):
        """Initialize errors list if None."""
        if self.errors is None:
            self.errors = []

    @property
    def candles_added(self) -> int:
        return max(self.candles_after - self.candles_before, 0)


@dataclass
class UpdateResult:
    """Result of a realtime update for one series."""

    series_id: str
    status: str  # "appended", "updated", "no_new_data", "error"
    candle: Optional[Candle] = None
    candles_added: int = 0
    errors: Optional[List[str]] = None

    def __post_init__(self):
        """Initialize errors list if None."""
        if self.errors is None:
            self.errors = []
