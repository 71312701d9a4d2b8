"""Canonical candle model and validation."""

import math
import time
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field

# Candles stamped further than this into the future are rejected.
MAX_FUTURE_SKEW_SECONDS = 3600


class CandleValidationError(ValueError):
    """Raised when a candle carries impossible values."""

    pass


@dataclass(frozen=True)
class Candle:
    """OHLCV candle keyed by its open time in Unix seconds.

    High and low are widened to cover open and close on construction.
    """

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def __post_init__(self):
        """Normalize high/low so that low <= min(open, close) <= max(open, close) <= high."""
        object.__setattr__(self, "high", max(self.high, self.open, self.close))
        object.__setattr__(self, "low", min(self.low, self.open, self.close))

    @property
    def timestamp_ms(self) -> int:
        return self.timestamp * 1000


def validate_candle(candle: Candle, now: Optional[int] = None) -> None:
    """Validate a candle before it enters a store.

    Args:
        candle: Candle to check
        now: Current Unix time in seconds (defaults to the wall clock)

    Raises:
        CandleValidationError: If the timestamp or any price is invalid
    """
    if now is None:
        now = int(time.time())

    if candle.timestamp <= 0:
        raise CandleValidationError(f"Non-positive timestamp: {candle.timestamp}")
    if candle.timestamp > now + MAX_FUTURE_SKEW_SECONDS:
        raise CandleValidationError(f"Timestamp too far in the future: {candle.timestamp}")

    for name in ("open", "high", "low", "close"):
        value = getattr(candle, name)
        if not math.isfinite(value):
            raise CandleValidationError(f"Non-finite {name} price at {candle.timestamp}")
        if value <= 0:
            raise CandleValidationError(f"Non-positive {name} price at {candle.timestamp}: {value}")

    if not math.isfinite(candle.volume) or candle.volume < 0:
        raise CandleValidationError(f"Invalid volume at {candle.timestamp}: {candle.volume}")


class CandleRecord(BaseModel):
    """Validated candle record as exchanged with Binance and stored on disk.

    Times are in milliseconds; prices may arrive as numeric strings.
    """

    time: int = Field(..., gt=0, description="Open time in milliseconds")
    open: float = Field(..., gt=0, allow_inf_nan=False, description="Open price")
    high: float = Field(..., gt=0, allow_inf_nan=False, description="High price")
    low: float = Field(..., gt=0, allow_inf_nan=False, description="Low price")
    close: float = Field(..., gt=0, allow_inf_nan=False, description="Close price")
    volume: float = Field(0.0, ge=0, allow_inf_nan=False, description="Base volume")

    def to_candle(self) -> Candle:
        """Convert to an in-memory candle (seconds, normalized)."""
        return Candle(
            timestamp=self.time // 1000,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
        )
