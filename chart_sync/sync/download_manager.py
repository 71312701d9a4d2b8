"""Per-series download progress registry."""

import logging
from typing import Dict, List, Optional

from ..models.progress import DownloadProgress, Gap
from ..models.series import SeriesIdentity

logger = logging.getLogger(__name__)


class DownloadManager:
    """Holds at most one DownloadProgress per series.

    Operations on a series without a record are no-ops that return False or
    None instead of raising.
    """

    def __init__(self):
        self._downloads: Dict[str, DownloadProgress] = {}

    def start(
        self,
        series: SeriesIdentity,
        gaps: List[Gap],
        estimated_total: int,
        current_count: int = 0,
    ) -> bool:
        """Create a progress record seeded with the first gap.

        Returns:
            False if the series is already downloading or there is nothing to fetch
        """
        if series.series_id in self._downloads:
            logger.debug(f"Download already active for {series}")
            return False
        if not gaps:
            return False

        first, rest = gaps[0], list(gaps[1:])
        self._downloads[series.series_id] = DownloadProgress(
            series=series,
            current_count=current_count,
            estimated_total=estimated_total,
            current_start=first.start,
            target_end=first.end,
            current_kind=first.kind,
            gaps_remaining=rest,
        )
        logger.info(
            f"Started download for {series}: {len(gaps)} gap(s), ~{estimated_total} candles"
        )
        return True

    def get_progress(self, series_id: str) -> Optional[DownloadProgress]:
        return self._downloads.get(series_id)

    def all_downloads(self) -> List[DownloadProgress]:
        return list(self._downloads.values())

    def is_downloading(self, series_id: str) -> bool:
        return series_id in self._downloads

    def is_paused(self, series_id: str) -> bool:
        progress = self._downloads.get(series_id)
        return progress is not None and progress.paused

    def count(self) -> int:
        return len(self._downloads)

    def update_progress(self, series_id: str, current_count: int, next_end: int) -> bool:
        """Record a completed page and move the trailing boundary."""
        progress = self._downloads.get(series_id)
        if progress is None:
            return False
        progress.current_count = current_count
        progress.target_end = next_end
        progress.batches_completed += 1
        return True

    def advance_gap(self, series_id: str) -> Optional[Gap]:
        """Make the next queued gap active.

        Returns:
            The new active gap, or None when no gaps remain
        """
        progress = self._downloads.get(series_id)
        if progress is None or not progress.gaps_remaining:
            return None
        gap = progress.gaps_remaining.pop(0)
        progress.current_start = gap.start
        progress.target_end = gap.end
        progress.current_kind = gap.kind
        return gap

    def pause(self, series_id: str) -> bool:
        progress = self._downloads.get(series_id)
        if progress is None:
            return False
        progress.paused = True
        logger.info(f"⏸️  Paused download for {series_id}")
        return True

    def resume(self, series_id: str) -> bool:
        progress = self._downloads.get(series_id)
        if progress is None:
            return False
        progress.paused = False
        logger.info(f"▶️  Resumed download for {series_id}")
        return True

    def finish(self, series_id: str) -> bool:
        return self._downloads.pop(series_id, None) is not None

    def stop(self, series_id: str) -> bool:
        stopped = self._downloads.pop(series_id, None) is not None
        if stopped:
            logger.info(f"🛑 Stopped download for {series_id}")
        return stopped
