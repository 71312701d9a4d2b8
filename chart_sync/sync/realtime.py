"""Polling updates that keep active series current."""

import asyncio
import logging
import time
from typing import Dict, Iterable, Optional, Tuple

from ..models.results import UpdateResult
from ..models.series import SeriesIdentity
from ..sources.base import MarketDataProvider, ProviderError
from ..store.candle_store import CandleStore
from .gap_detector import compute_fetch_since, store_internal_gaps

logger = logging.getLogger(__name__)


class RealtimeUpdater:
    """Fetches the newest candle for each active series."""

    def __init__(self, provider: MarketDataProvider):
        """Initialize realtime updater.

        Args:
            provider: Provider used for latest-candle and catch-up requests
        """
        self.provider = provider

    async def update_series(self, series: SeriesIdentity, store: CandleStore) -> UpdateResult:
        """Apply the provider's latest candle to a store."""
        try:
            candle = await self.provider.fetch_latest(series.symbol, series.interval)
        except ProviderError as e:
            logger.warning(f"Realtime update failed for {series}: {e}")
            return UpdateResult(series_id=series.series_id, status="error", errors=[str(e)])

        if candle is None:
            return UpdateResult(series_id=series.series_id, status="no_new_data")

        before = len(store)
        replaced = store.update_or_append(candle)
        if replaced:
            status = "updated"
        elif len(store) > before:
            status = "appended"
        else:
            status = "no_new_data"

        logger.debug(f"{series}: {status} candle at {candle.timestamp}")
        return UpdateResult(
            series_id=series.series_id,
            status=status,
            candle=candle,
            candles_added=len(store) - before,
        )

    async def update_all(
        self, entries: Iterable[Tuple[SeriesIdentity, CandleStore]]
    ) -> Dict[str, UpdateResult]:
        """Update every series concurrently; failures stay per series."""
        entries = list(entries)
        results = await asyncio.gather(
            *(self.update_series(series, store) for series, store in entries),
            return_exceptions=True,
        )

        by_series: Dict[str, UpdateResult] = {}
        for (series, _), result in zip(entries, results):
            if isinstance(result, BaseException):
                logger.error(f"Realtime update crashed for {series}: {result}")
                result = UpdateResult(
                    series_id=series.series_id, status="error", errors=[str(result)]
                )
            by_series[series.series_id] = result
        return by_series

    async def complete_missing_data(
        self, series: SeriesIdentity, store: CandleStore, now: Optional[int] = None
    ) -> UpdateResult:
        """Catch a store up after a pause in polling.

        Fetches forward from the newest candle (at most a bounded window back
        from now), then fills interior holes one page per hole.
        """
        if now is None:
            now = int(time.time())
        if store.is_empty:
            return UpdateResult(series_id=series.series_id, status="no_new_data")

        interval_seconds = series.interval_seconds
        before = len(store)
        errors = []

        since, capped = compute_fetch_since(store.newest_timestamp, now, interval_seconds)
        if capped:
            logger.warning(f"{series} is far behind, catching up from {since} only")

        try:
            fresh = await self.provider.fetch_page(series.symbol, series.interval, start_time=since)
            store.merge(fresh)
        except ProviderError as e:
            errors.append(f"Catch-up fetch failed: {e}")
            logger.warning(f"{series}: {errors[-1]}")

        for gap in reversed(store_internal_gaps(store, interval_seconds)):
            try:
                candles = await self.provider.fetch_range(
                    series.symbol, series.interval, gap.start, gap.end
                )
                store.merge(candles)
            except ProviderError as e:
                errors.append(f"Gap [{gap.start}, {gap.end}) failed: {e}")
                logger.warning(f"{series}: {errors[-1]}")

        added = len(store) - before
        if errors and not added:
            status = "error"
        else:
            status = "appended" if added else "no_new_data"
        return UpdateResult(
            series_id=series.series_id,
            status=status,
            candle=store.latest(),
            candles_added=added,
            errors=errors,
        )
