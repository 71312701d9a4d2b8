"""Shared test fixtures and utilities."""

from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from chart_sync.config import SyncConfig
from chart_sync.models.candle import Candle
from chart_sync.sources.base import MAX_PAGE_SIZE, MarketDataProvider
from chart_sync.storage.candle_repository import CandleRepository
from chart_sync.sync.signals import SignalBus

HOUR = 3600
# 2023-11-14 22:00:00 UTC, aligned to the hour.
T = 1_700_000_000 - (1_700_000_000 % HOUR)


def make_candle(timestamp: int, price: float = 100.0, volume: float = 1.0) -> Candle:
    """Helper to create a simple candle around a price."""
    return Candle(
        timestamp=timestamp,
        open=price,
        high=price + 1.0,
        low=price - 1.0,
        close=price + 0.5,
        volume=volume,
    )


def make_candles(end: int, count: int, interval: int = HOUR, price: float = 100.0) -> List[Candle]:
    """Helper to create `count` consecutive candles, the last one at `end`."""
    start = end - (count - 1) * interval
    return [make_candle(start + i * interval, price + i) for i in range(count)]


class FakeProvider(MarketDataProvider):
    """In-memory provider that pages through a fixed candle history.

    Mimics the exchange: backward pages return the newest `limit` candles at or
    before end_time, forward pages the oldest `limit` candles from start_time.
    """

    name = "Binance"

    def __init__(
        self,
        history: Optional[List[Candle]] = None,
        latest: Optional[Candle] = None,
        report_earliest: bool = True,
    ):
        """Initialize fake provider.

        Args:
            history: Candles the provider knows about
            latest: Candle returned by fetch_latest (defaults to the newest)
            report_earliest: Whether fetch_earliest_timestamp answers
        """
        self.history = sorted(history or [], key=lambda c: c.timestamp)
        self.latest = latest
        self.report_earliest = report_earliest
        self.errors: List[Exception] = []
        self.calls: List[dict] = []
        self.on_fetch = None

    async def fetch_page(
        self,
        symbol,
        interval,
        start_time=None,
        end_time=None,
        limit=MAX_PAGE_SIZE,
    ):
        self.calls.append(
            {
                "symbol": symbol,
                "interval": interval,
                "start_time": start_time,
                "end_time": end_time,
                "limit": limit,
            }
        )
        if self.on_fetch is not None:
            self.on_fetch()
        if self.errors:
            raise self.errors.pop(0)

        candles = self.history
        if start_time is not None:
            candles = [c for c in candles if c.timestamp >= start_time]
            if end_time is not None:
                candles = [c for c in candles if c.timestamp <= end_time]
            return candles[:limit]
        if end_time is not None:
            candles = [c for c in candles if c.timestamp <= end_time]
        return candles[-limit:]

    async def fetch_latest(self, symbol, interval):
        if self.latest is not None:
            return self.latest
        return self.history[-1] if self.history else None

    async def fetch_earliest_timestamp(self, symbol, interval):
        if not self.report_earliest or not self.history:
            return None
        return self.history[0].timestamp

    async def ping(self):
        return True

    async def fetch_account(self):
        return {"balances": []}


@pytest.fixture
def sync_config(tmp_path):
    """Config with no inter-page or retry delays."""
    return SyncConfig(
        data_dir=str(tmp_path),
        batch_delay_ms=0,
        retry_delay_seconds=0,
        max_retries=3,
    )


@pytest.fixture
def repository(tmp_path):
    return CandleRepository(tmp_path)


@pytest.fixture
def signal_log():
    """SignalBus plus the list of every signal it emitted."""
    bus = SignalBus()
    received = []
    original_emit = bus.emit

    def record(signal):
        received.append(signal)
        original_emit(signal)

    bus.emit = record
    return bus, received


@pytest.fixture
def mock_repository():
    """Repository whose writes always succeed without touching disk."""
    repo = MagicMock(spec=CandleRepository)
    repo.save.return_value = "data/Binance/BTCUSDT/1h.json"
    return repo
