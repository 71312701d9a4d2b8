"""Synchronization engine: gap detection, batched backfill and checkpoints."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from ..config import SyncConfig
from ..models.progress import DownloadProgress, GapKind
from ..models.results import BatchResult, SaveResult, SyncResult, UpdateResult
from ..models.series import SeriesIdentity
from ..sources.base import MarketDataProvider, ProviderError
from ..storage.candle_repository import CandleRepository
from ..storage.checkpointer import Checkpointer
from ..store.candle_store import CandleStore
from .batch_driver import BatchPaginationDriver
from .download_manager import DownloadManager
from .gap_detector import GapDetector, estimate_total
from .realtime import RealtimeUpdater
from .signals import SignalBus, SignalKind, SyncSignal

logger = logging.getLogger(__name__)


class SyncEngine:
    """Keeps local candle stores consistent with the remote provider.

    Every series synchronizes in its own asyncio task. Pages within a gap are
    strictly sequential; different series interleave freely.
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        repository: CandleRepository,
        config: Optional[SyncConfig] = None,
        signals: Optional[SignalBus] = None,
        detector: Optional[GapDetector] = None,
    ) -> None:
        """Initialize sync engine.

        Args:
            provider: Remote market data provider
            repository: Storage for series files
            config: Synchronization settings
            signals: Bus receiving progress, completion and save signals
            detector: Gap detector (defaults to scanning internal gaps)
        """
        self.config = config or SyncConfig()
        self.provider = provider
        self.repository = repository
        self.signals = signals or SignalBus()
        self.detector = detector or GapDetector()
        self.downloads = DownloadManager()
        self.driver = BatchPaginationDriver(provider, page_size=self.config.page_limit)
        self.checkpointer = Checkpointer(repository, self.signals, self.config.save_every)
        self.realtime = RealtimeUpdater(provider)

        self._series: Dict[str, SeriesIdentity] = {}
        self._stores: Dict[str, CandleStore] = {}
        self._history_exhausted: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._last_errors: Dict[str, str] = {}

    # Series registry

    def _register(self, series: SeriesIdentity) -> CandleStore:
        self._series.setdefault(series.series_id, series)
        return self._stores.setdefault(series.series_id, CandleStore())

    def register_series(self, series_id: str) -> CandleStore:
        """Store for a series, created empty on first use."""
        return self._register(SeriesIdentity.parse(series_id))

    async def load_series(self, series_id: str) -> CandleStore:
        """Load (or reload) a series from disk.

        Raises:
            InvalidSeriesIdError: If the series key is malformed
            PersistenceError: If an existing file cannot be read
        """
        series = SeriesIdentity.parse(series_id)
        snapshot = await asyncio.to_thread(self.repository.load, series)
        store = self._register(series)
        store.replace_all(snapshot.candles)
        if snapshot.history_exhausted:
            self._history_exhausted.add(series.series_id)
        else:
            self._history_exhausted.discard(series.series_id)
        return store

    def get_store(self, series_id: str) -> Optional[CandleStore]:
        return self._stores.get(series_id)

    def series(self) -> List[SeriesIdentity]:
        return list(self._series.values())

    def is_history_exhausted(self, series_id: str) -> bool:
        return series_id in self._history_exhausted

    def last_error(self, series_id: str) -> Optional[str]:
        return self._last_errors.get(series_id)

    # Synchronization

    async def synchronize(self, series_id: str, now: Optional[int] = None) -> bool:
        """Start filling the gaps of a series in the background.

        Returns:
            True if a download was started; False if one is already active
            or the series has no gaps (sync-complete is signalled at once)
        """
        series = SeriesIdentity.parse(series_id)
        key = series.series_id
        if self.downloads.is_downloading(key):
            logger.info(f"Synchronization already running for {key}")
            return False

        store = self._register(series)
        if now is None:
            now = int(time.time())

        history_start = await self._history_start(series, store)
        gaps = self.detector.detect(store, series.interval, now, history_start)

        if not gaps:
            logger.info(f"✅ {key} is up to date ({len(store)} candles)")
            self.signals.emit(
                SyncSignal(kind=SignalKind.SYNC_COMPLETE, series_id=key, count=len(store))
            )
            return False

        estimated = estimate_total(gaps, series.interval_seconds)
        if not self.downloads.start(series, gaps, estimated):
            return False

        self._last_errors.pop(key, None)
        self._spawn(key)
        return True

    async def _history_start(self, series: SeriesIdentity, store: CandleStore) -> Optional[int]:
        """Oldest timestamp worth fetching, or None when history is complete."""
        key = series.series_id
        if key in self._history_exhausted:
            return None

        if self.config.history_start is not None:
            floor = self.config.history_start
        else:
            try:
                floor = await self.provider.fetch_earliest_timestamp(
                    series.symbol, series.interval
                )
            except ProviderError as e:
                logger.warning(f"Could not probe history start for {key}: {e}")
                floor = None
            if floor is None:
                floor = 0

        if not store.is_empty and floor >= store.oldest_timestamp:
            if self.config.history_start is None:
                self._history_exhausted.add(key)
            return None
        return floor

    def _spawn(self, key: str) -> None:
        task = self._tasks.get(key)
        if task is not None and not task.done():
            return
        self._tasks[key] = asyncio.create_task(self._run(key), name=f"sync-{key}")

    async def _run(self, key: str) -> None:
        """Batch loop for one series; retries retryable failures, then stalls."""
        retries = 0
        try:
            while True:
                result = await self.step(key)
                if result is None:
                    break
                if result.error is None:
                    retries = 0
                    continue

                if result.retryable and retries < self.config.max_retries:
                    retries += 1
                    logger.warning(
                        f"Retrying {key} from {self._boundary(key)} "
                        f"({retries}/{self.config.max_retries})"
                    )
                    await asyncio.sleep(self.config.retry_delay_seconds * retries)
                    continue

                self._last_errors[key] = result.error
                logger.error(f"❌ Synchronization of {key} stalled: {result.error}")
                break
        except Exception as e:
            self._last_errors[key] = str(e)
            logger.error(f"❌ Batch loop for {key} crashed: {e}", exc_info=True)
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]

    def _boundary(self, key: str) -> Optional[int]:
        progress = self.downloads.get_progress(key)
        return progress.target_end if progress else None

    async def step(self, series_id: str) -> Optional[BatchResult]:
        """Issue one page request for a series and apply its result.

        Returns:
            The batch result, or None when the series is idle or paused
        """
        progress = self.downloads.get_progress(series_id)
        if progress is None or progress.paused:
            return None

        if self.config.batch_delay_seconds > 0:
            await asyncio.sleep(self.config.batch_delay_seconds)

        progress = self.downloads.get_progress(series_id)
        if progress is None:
            return None

        result = await self.driver.fetch_batch(progress)
        if result is None:
            return None

        await self.handle_batch_result(series_id, result, expected=progress)
        return result

    async def handle_batch_result(
        self,
        series_id: str,
        result: BatchResult,
        expected: Optional[DownloadProgress] = None,
    ) -> bool:
        """Apply a page result to the store and advance the download.

        Results for a series that was stopped (or restarted) while the request
        was in flight are discarded.

        Returns:
            True if the result was applied
        """
        progress = self.downloads.get_progress(series_id)
        if progress is None or (expected is not None and progress is not expected):
            logger.info(f"Discarding page for {series_id}: download no longer active")
            return False

        if result.error is not None:
            self.signals.emit(
                SyncSignal(
                    kind=SignalKind.BATCH_PROGRESS,
                    series_id=series_id,
                    count=progress.current_count,
                    estimated_total=progress.estimated_total,
                    error=result.error,
                )
            )
            return False

        store = self._stores[series_id]
        merge = store.merge(result.candles)
        gap_kind = progress.current_kind
        downloaded = progress.current_count + merge.added
        self.downloads.update_progress(series_id, downloaded, result.next_boundary)

        logger.info(
            f"📥 {series_id} batch {progress.batches_completed}: +{merge.added} "
            f"({downloaded}/{progress.estimated_total})"
        )
        self.signals.emit(
            SyncSignal(
                kind=SignalKind.BATCH_PROGRESS,
                series_id=series_id,
                count=downloaded,
                estimated_total=progress.estimated_total,
            )
        )

        if not progress.gap_closed:
            if self.checkpointer.should_save(progress.batches_completed):
                await self._checkpoint(series_id)
            return True

        if (
            gap_kind == GapKind.HISTORICAL
            and result.reached_start
            and self.config.history_start is None
        ):
            self._history_exhausted.add(series_id)
            logger.info(f"Reached the start of history for {series_id}")

        if self.downloads.advance_gap(series_id) is None:
            await self._finish(series_id)
        else:
            await self._checkpoint(series_id)
        return True

    async def _checkpoint(self, key: str) -> SaveResult:
        return await self.checkpointer.save_series(
            self._series[key], self._stores[key], key in self._history_exhausted
        )

    async def _finish(self, key: str) -> None:
        self.downloads.finish(key)
        await self._checkpoint(key)
        count = len(self._stores[key])
        logger.info(f"✅ Synchronization complete for {key}: {count} candles")
        self.signals.emit(SyncSignal(kind=SignalKind.SYNC_COMPLETE, series_id=key, count=count))

    # Controls

    def pause(self, series_id: str) -> bool:
        return self.downloads.pause(series_id)

    def resume(self, series_id: str) -> bool:
        """Unpause a download and restart its batch loop if it is not running.

        Must be called from the event loop thread.
        """
        if not self.downloads.resume(series_id):
            return False
        self._last_errors.pop(series_id, None)
        self._spawn(series_id)
        return True

    def stop(self, series_id: str) -> bool:
        """Drop the download record; an in-flight page is discarded when it lands."""
        return self.downloads.stop(series_id)

    async def wait(self, series_id: str) -> None:
        """Wait for the batch loop of a series to exit."""
        task = self._tasks.get(series_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> List[SaveResult]:
        """Stop all downloads, cancel their loops and save every loaded series."""
        for progress in self.downloads.all_downloads():
            self.downloads.stop(progress.series_id)

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        return await self.save_all()

    async def save_all(self) -> List[SaveResult]:
        return await self.checkpointer.save(
            (series, self._stores[key], key in self._history_exhausted)
            for key, series in self._series.items()
        )

    # Realtime

    async def update_realtime(self) -> Dict[str, UpdateResult]:
        """Apply the latest candle to every loaded series."""
        entries = [(series, self._stores[key]) for key, series in self._series.items()]
        if not entries:
            return {}
        return await self.realtime.update_all(entries)

    async def complete_missing_data(
        self, series_id: str, now: Optional[int] = None
    ) -> UpdateResult:
        series = SeriesIdentity.parse(series_id)
        store = self._register(series)
        return await self.realtime.complete_missing_data(series, store, now)

    # Batch jobs

    async def sync_series(self, series_id: str, now: Optional[int] = None) -> SyncResult:
        """Load, synchronize and wait for one series."""
        op_start = datetime.now(timezone.utc)
        key = series_id
        before = 0

        try:
            series = SeriesIdentity.parse(series_id)
            key = series.series_id
            if key not in self._stores:
                await self.load_series(key)
            before = len(self._stores[key])

            if self.downloads.is_downloading(key):
                # Join the download that is already running.
                started = True
                self._spawn(key)
            else:
                started = await self.synchronize(key, now)
            gaps_found = 0
            if started:
                progress = self.downloads.get_progress(key)
                gaps_found = 1 + len(progress.gaps_remaining) if progress else 1
                await self.wait(key)

            errors = []
            if self.downloads.is_downloading(key):
                status = "stalled"
                errors.append(self._last_errors.get(key, "download did not finish"))
                self.downloads.stop(key)
                await self._checkpoint(key)
            else:
                status = "success" if started else "up_to_date"

            duration_ms = int((datetime.now(timezone.utc) - op_start).total_seconds() * 1000)
            return SyncResult(
                series_id=key,
                candles_before=before,
                candles_after=len(self._stores[key]),
                gaps_found=gaps_found,
                status=status,
                execution_time_ms=duration_ms,
                errors=errors,
            )

        except Exception as e:
            logger.error(f"Synchronization failed for {key}: {e}", exc_info=True)
            duration_ms = int((datetime.now(timezone.utc) - op_start).total_seconds() * 1000)
            store = self._stores.get(key)
            return SyncResult(
                series_id=key,
                candles_before=before,
                candles_after=len(store) if store is not None else before,
                gaps_found=0,
                status="error",
                execution_time_ms=duration_ms,
                errors=[str(e)],
            )

    async def sync_multiple_series(self, series_ids: List[str]) -> Dict[str, Any]:
        """Synchronize several series concurrently and summarize the run."""
        logger.info(f"Starting synchronization for {len(series_ids)} series: {series_ids}")

        results: Dict[str, Any] = {
            "job_name": "chart_sync",
            "status": "success",
            "series_processed": 0,
            "candles_added": 0,
            "errors": [],
            "execution_time_ms": 0,
        }
        start_time = datetime.now(timezone.utc)

        outcomes = await asyncio.gather(*(self.sync_series(s) for s in series_ids))
        for outcome in outcomes:
            if outcome.status in ("success", "up_to_date"):
                results["series_processed"] += 1
                results["candles_added"] += outcome.candles_added
                logger.info(f"✅ {outcome.series_id}: +{outcome.candles_added} candles")
            else:
                error_msg = f"Failed to synchronize {outcome.series_id}: {outcome.status}"
                if outcome.errors:
                    error_msg += f" ({'; '.join(outcome.errors)})"
                results["errors"].append(error_msg)
                logger.error(error_msg)

        end_time = datetime.now(timezone.utc)
        results["execution_time_ms"] = int((end_time - start_time).total_seconds() * 1000)
        if results["errors"]:
            results["status"] = "completed_with_errors"

        logger.info(
            f"Synchronization completed: {results['series_processed']} series, "
            f"{results['candles_added']} candles"
        )
        return results
