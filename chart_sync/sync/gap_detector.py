"""Classify missing candle ranges for a series."""

import logging
from typing import List, Optional, Sequence, Tuple

from ..models.progress import Gap, GapKind
from ..models.series import interval_to_seconds
from ..store.candle_store import CandleStore

logger = logging.getLogger(__name__)

MIN_RECENT_GAP_SECONDS = 300
# Realtime catch-up never reaches further back than this many intervals.
MAX_CATCHUP_INTERVALS = 100


def recent_gap_threshold(interval_seconds: int) -> int:
    """Staleness allowed before the newest candle counts as a gap."""
    return max(interval_seconds + interval_seconds // 10, MIN_RECENT_GAP_SECONDS)


def internal_gap_threshold(interval_seconds: int) -> int:
    return int(interval_seconds * 1.5)


def store_internal_gaps(store: CandleStore, interval_seconds: int) -> List[Gap]:
    """Holes between consecutive stored candles, oldest first.

    Each gap spans [last_known_before, first_known_after). The spans come
    from the store's cache, so an unchanged store is not rescanned.
    """
    spans = store.gap_spans(internal_gap_threshold(interval_seconds))
    return [Gap(prev_ts, next_ts, GapKind.INTERNAL) for prev_ts, next_ts in spans]


def estimate_total(gaps: Sequence[Gap], interval_seconds: int) -> int:
    """Expected number of candles needed to fill the gaps."""
    return sum(gap.expected_candles(interval_seconds) for gap in gaps)


def compute_fetch_since(last_timestamp: int, now: int, interval_seconds: int) -> Tuple[int, bool]:
    """Pick the start of a forward catch-up fetch.

    Returns:
        (since, capped): since is last_timestamp when less than two intervals
        have passed, otherwise now minus MAX_CATCHUP_INTERVALS intervals, with
        capped set to True
    """
    if now - last_timestamp < 2 * interval_seconds:
        return last_timestamp, False
    return now - MAX_CATCHUP_INTERVALS * interval_seconds, True


class GapDetector:
    """Turns a store's extent into an ordered list of gaps to download."""

    def __init__(self, scan_internal: bool = True):
        self.scan_internal = scan_internal

    def detect(
        self,
        store: CandleStore,
        interval: str,
        now: int,
        history_start: Optional[int] = None,
    ) -> List[Gap]:
        """Detect missing ranges, most recent first.

        Args:
            store: Candle store for the series
            interval: Interval code of the series
            now: Current Unix time in seconds
            history_start: Oldest timestamp worth fetching, or None when the
                series' history is known to be complete

        Returns:
            Recent gap, then internal gaps newest first, then the historical
            extension gap. Empty when the series is complete.
        """
        interval_seconds = interval_to_seconds(interval)

        if store.is_empty:
            return [Gap(history_start or 0, now, GapKind.HISTORICAL)]

        oldest, newest = store.time_range()
        gaps: List[Gap] = []

        if now - newest > recent_gap_threshold(interval_seconds):
            gaps.append(Gap(newest, now, GapKind.RECENT))

        if self.scan_internal:
            internal = store_internal_gaps(store, interval_seconds)
            gaps.extend(reversed(internal))

        if history_start is not None and history_start < oldest:
            gaps.append(Gap(history_start, oldest, GapKind.HISTORICAL))

        if gaps:
            logger.debug(
                f"Detected {len(gaps)} gap(s): "
                + ", ".join(f"{g.kind.value}[{g.start}, {g.end})" for g in gaps)
            )
        return gaps
