"""Backward pagination over a single gap."""

import logging
from typing import Optional

from ..models.progress import DownloadProgress
from ..models.results import BatchResult
from ..sources.base import MAX_PAGE_SIZE, MarketDataProvider, ParseError, ProviderError

logger = logging.getLogger(__name__)


class BatchPaginationDriver:
    """Walks the active gap of a download from its newest edge to its oldest.

    The provider only answers "up to N candles ending at T", so each call asks
    for one page ending at the progress' target_end and derives the next
    boundary from the oldest raw candle returned.
    """

    def __init__(self, provider: MarketDataProvider, page_size: int = MAX_PAGE_SIZE):
        self.provider = provider
        self.page_size = page_size

    async def fetch_batch(self, progress: DownloadProgress) -> Optional[BatchResult]:
        """Fetch the next page for the active gap.

        Args:
            progress: Progress record of the series; read, never modified

        Returns:
            BatchResult, or None if the download is paused (no request is made)
        """
        if progress.paused:
            return None

        series = progress.series
        gap_start = progress.current_start
        current_end = progress.target_end

        try:
            raw = await self.provider.fetch_page(
                series.symbol, series.interval, end_time=current_end, limit=self.page_size
            )
        except ParseError as e:
            logger.warning(f"Discarding unreadable page for {series}: {e}")
            return BatchResult(next_boundary=gap_start)
        except ProviderError as e:
            logger.error(f"❌ Page request failed for {series} at {current_end}: {e}")
            return BatchResult(
                next_boundary=current_end, error=str(e), retryable=e.retryable
            )
        except Exception as e:
            logger.error(f"❌ Unexpected error fetching {series}: {e}", exc_info=True)
            return BatchResult(next_boundary=current_end, error=str(e), retryable=False)

        if not raw:
            logger.info(f"Empty page for {series} ending at {current_end}, closing gap")
            return BatchResult(next_boundary=gap_start, reached_start=True)

        oldest_in_batch = raw[0].timestamp
        candles = [c for c in raw if gap_start <= c.timestamp <= current_end]

        # A page newer than the requested end could never move the boundary back.
        if (
            oldest_in_batch <= gap_start
            or len(raw) < self.page_size
            or oldest_in_batch > current_end
        ):
            next_boundary = gap_start
        else:
            next_boundary = oldest_in_batch - 1

        logger.debug(
            f"{series}: {len(raw)} raw / {len(candles)} in gap, next boundary {next_boundary}"
        )
        return BatchResult(
            candles=candles,
            raw_count=len(raw),
            next_boundary=next_boundary,
            reached_start=next_boundary == gap_start,
        )
