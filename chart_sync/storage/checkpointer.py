"""Throttled checkpoints of candle stores to disk."""

import asyncio
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from ..models.results import SaveResult
from ..models.series import SeriesIdentity
from ..store.candle_store import CandleStore
from ..sync.signals import SignalBus, SignalKind, SyncSignal
from .candle_repository import CandleRepository, PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_SAVE_EVERY = 10

CheckpointEntry = Tuple[SeriesIdentity, CandleStore, bool]


class Checkpointer:
    """Decides when to write series snapshots and writes them off the event loop."""

    def __init__(
        self,
        repository: CandleRepository,
        signals: Optional[SignalBus] = None,
        save_every: int = DEFAULT_SAVE_EVERY,
    ):
        """Initialize checkpointer.

        Args:
            repository: Storage backend for series files
            signals: Bus receiving one save-complete signal per series
            save_every: Save on every N-th completed page
        """
        self.repository = repository
        self.signals = signals
        self.save_every = max(save_every, 1)

    def should_save(self, batch_number: int, gap_closed: bool = False) -> bool:
        """Throttle policy: every save_every-th page, or when a gap completes."""
        if gap_closed:
            return True
        return batch_number > 0 and batch_number % self.save_every == 0

    async def save_series(
        self, series: SeriesIdentity, store: CandleStore, history_exhausted: bool = False
    ) -> SaveResult:
        """Save one series; failures are returned, never raised."""
        start_time = datetime.now()
        candles = store.candles
        errors: List[str] = []

        try:
            path = await asyncio.to_thread(
                self.repository.save, series, candles, history_exhausted
            )
            execution_time = int((datetime.now() - start_time).total_seconds() * 1000)
            logger.info(f"💾 Saved {len(candles)} candles for {series} to {path}")
            result = SaveResult(
                series_id=series.series_id,
                success=True,
                candles_saved=len(candles),
                path=str(path),
                execution_time_ms=execution_time,
            )
        except PersistenceError as e:
            errors.append(str(e))
            logger.error(f"❌ Failed to save {series}: {e}")
            result = self._failed(series, errors, start_time)
        except Exception as e:
            errors.append(f"Unexpected error saving {series}: {e}")
            logger.error(errors[-1], exc_info=True)
            result = self._failed(series, errors, start_time)

        if self.signals:
            self.signals.emit(
                SyncSignal(
                    kind=SignalKind.SAVE_COMPLETE,
                    series_id=series.series_id,
                    count=result.candles_saved if result.success else None,
                    error=None if result.success else "; ".join(result.errors),
                )
            )
        return result

    async def save(self, entries: Iterable[CheckpointEntry]) -> List[SaveResult]:
        """Save several series concurrently; each result is independent."""
        return list(
            await asyncio.gather(
                *(self.save_series(series, store, exhausted) for series, store, exhausted in entries)
            )
        )

    @staticmethod
    def _failed(series: SeriesIdentity, errors: List[str], start_time: datetime) -> SaveResult:
        execution_time = int((datetime.now() - start_time).total_seconds() * 1000)
        return SaveResult(
            series_id=series.series_id,
            success=False,
            candles_saved=0,
            errors=errors,
            execution_time_ms=execution_time,
        )
