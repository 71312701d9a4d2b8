"""Time-ordered candle store with lazily recomputed caches."""

import bisect
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..models.candle import Candle, CandleValidationError, validate_candle
from ..models.results import MergeResult

logger = logging.getLogger(__name__)

# Per-range price cache is dropped wholesale past this many entries.
MAX_RANGE_CACHE_ENTRIES = 100


class CandleStore:
    """Ordered candles for a single series.

    Timestamps are strictly increasing with no duplicates. All mutation goes
    through merge/update_or_append/replace_all, which invalidate the derived
    caches; readers recompute them on demand.
    """

    def __init__(self, candles: Optional[Iterable[Candle]] = None):
        self._candles: List[Candle] = []
        self._timestamps: List[int] = []
        self._price_range: Optional[Tuple[float, float]] = None
        self._range_prices: Dict[Tuple[int, int], Optional[Tuple[float, float]]] = {}
        self._time_range: Optional[Tuple[int, int]] = None
        self._gap_spans: Dict[int, List[Tuple[int, int]]] = {}
        if candles:
            self.merge(candles)

    def __len__(self) -> int:
        return len(self._candles)

    @property
    def is_empty(self) -> bool:
        return not self._candles

    @property
    def candles(self) -> List[Candle]:
        """Copy of the stored candles, oldest first."""
        return list(self._candles)

    def timestamps(self) -> List[int]:
        return list(self._timestamps)

    def latest(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    @property
    def oldest_timestamp(self) -> Optional[int]:
        bounds = self.time_range()
        return bounds[0] if bounds else None

    @property
    def newest_timestamp(self) -> Optional[int]:
        bounds = self.time_range()
        return bounds[1] if bounds else None

    def _invalidate(self) -> None:
        self._price_range = None
        self._range_prices.clear()
        self._time_range = None
        self._gap_spans.clear()

    def merge(self, incoming: Iterable[Candle]) -> MergeResult:
        """Merge candles into the store.

        Incoming candles may be unsorted and may overlap stored ones. A candle
        whose timestamp already exists replaces the stored one; invalid candles
        are skipped with a warning.

        Args:
            incoming: Candles to merge

        Returns:
            MergeResult with counts of added, replaced and skipped candles
        """
        result = MergeResult()

        by_timestamp: Dict[int, Candle] = {}
        for candle in incoming:
            try:
                validate_candle(candle)
            except CandleValidationError as e:
                logger.warning(f"Skipping invalid candle: {e}")
                result.skipped += 1
                continue
            by_timestamp[candle.timestamp] = candle

        if not by_timestamp:
            return result

        batch = [by_timestamp[ts] for ts in sorted(by_timestamp)]

        if not self._candles or batch[0].timestamp > self._timestamps[-1]:
            self._candles.extend(batch)
            self._timestamps.extend(c.timestamp for c in batch)
            result.added = len(batch)
        elif batch[-1].timestamp < self._timestamps[0]:
            self._candles[:0] = batch
            self._timestamps[:0] = [c.timestamp for c in batch]
            result.added = len(batch)
        else:
            for candle in batch:
                idx = bisect.bisect_left(self._timestamps, candle.timestamp)
                if idx < len(self._timestamps) and self._timestamps[idx] == candle.timestamp:
                    self._candles[idx] = candle
                    result.replaced += 1
                else:
                    self._candles.insert(idx, candle)
                    self._timestamps.insert(idx, candle.timestamp)
                    result.added += 1

        self._invalidate()
        return result

    def update_or_append(self, candle: Candle) -> bool:
        """Apply a realtime candle.

        Returns:
            True if an existing candle was replaced, False if one was added
            or the candle was rejected
        """
        if self._candles and candle.timestamp == self._timestamps[-1]:
            try:
                validate_candle(candle)
            except CandleValidationError as e:
                logger.warning(f"Rejected realtime candle: {e}")
                return False
            self._candles[-1] = candle
            self._invalidate()
            return True

        return self.merge([candle]).replaced > 0

    def replace_all(self, candles: Iterable[Candle]) -> MergeResult:
        """Drop the current contents and load a fresh set of candles."""
        self._candles = []
        self._timestamps = []
        self._invalidate()
        return self.merge(candles)

    def time_range(self) -> Optional[Tuple[int, int]]:
        """Oldest and newest timestamps, or None when empty."""
        if self._time_range is None and self._candles:
            self._time_range = (self._timestamps[0], self._timestamps[-1])
        return self._time_range

    def price_range(self) -> Optional[Tuple[float, float]]:
        """Lowest low and highest high over the whole store."""
        if self._price_range is None and self._candles:
            self._price_range = _price_extrema(self._candles)
        return self._price_range

    def price_range_for(self, start: int, end: int) -> Optional[Tuple[float, float]]:
        """Price extrema for candles with start <= timestamp <= end."""
        key = (start, end)
        if key in self._range_prices:
            return self._range_prices[key]

        visible = self.visible_candles(start, end)
        extrema = _price_extrema(visible) if visible else None

        if len(self._range_prices) >= MAX_RANGE_CACHE_ENTRIES:
            self._range_prices.clear()
        self._range_prices[key] = extrema
        return extrema

    def gap_spans(self, threshold: int) -> List[Tuple[int, int]]:
        """Neighbouring timestamps more than threshold apart, oldest first.

        Cached per threshold until the next mutation.
        """
        spans = self._gap_spans.get(threshold)
        if spans is None:
            spans = spans_over_threshold(self._timestamps, threshold)
            self._gap_spans[threshold] = spans
        return spans

    def visible_candles(self, start: int, end: int) -> List[Candle]:
        """Candles with start <= timestamp <= end."""
        if start > end:
            return []
        lo = bisect.bisect_left(self._timestamps, start)
        hi = bisect.bisect_right(self._timestamps, end)
        return self._candles[lo:hi]


def spans_over_threshold(timestamps: Sequence[int], threshold: int) -> List[Tuple[int, int]]:
    return [
        (prev_ts, next_ts)
        for prev_ts, next_ts in zip(timestamps, timestamps[1:])
        if next_ts - prev_ts > threshold
    ]


def _price_extrema(candles: List[Candle]) -> Tuple[float, float]:
    return min(c.low for c in candles), max(c.high for c in candles)
