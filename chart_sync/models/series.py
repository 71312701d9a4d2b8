"""Series identity and interval helpers."""

from dataclasses import dataclass
from enum import Enum


class InvalidSeriesIdError(ValueError):
    """Raised when a series key is not in SYMBOL_interval form."""

    pass


class Interval(str, Enum):
    """Binance kline intervals."""

    ONE_MINUTE = "1m"
    THREE_MINUTE = "3m"
    FIVE_MINUTE = "5m"
    FIFTEEN_MINUTE = "15m"
    THIRTY_MINUTE = "30m"
    ONE_HOUR = "1h"
    TWO_HOUR = "2h"
    FOUR_HOUR = "4h"
    SIX_HOUR = "6h"
    EIGHT_HOUR = "8h"
    TWELVE_HOUR = "12h"
    ONE_DAY = "1d"
    THREE_DAY = "3d"
    ONE_WEEK = "1w"
    ONE_MONTH = "1M"


INTERVAL_SECONDS = {
    "1m": 60,
    "3m": 180,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "2h": 7200,
    "4h": 14400,
    "6h": 21600,
    "8h": 28800,
    "12h": 43200,
    "1d": 86400,
    "3d": 259200,
    "1w": 604800,
    "1M": 2592000,
}


def interval_to_seconds(interval) -> int:
    """Convert an interval code to seconds.

    Unknown codes fall back to one hour.
    """
    if hasattr(interval, "value"):
        interval = interval.value
    return INTERVAL_SECONDS.get(interval, 3600)


def calculate_expected_candles(interval_seconds: int, period_seconds: int) -> int:
    """Number of candles expected in a period for the given cadence."""
    if interval_seconds <= 0 or period_seconds <= 0:
        return 0
    return period_seconds // interval_seconds


def interval_filename(interval: str) -> str:
    """Map an interval code to the file stem used on disk.

    "1m" and "1M" would collide on case-insensitive filesystems, so minutes
    become "Nmin" and the month interval becomes "1month".
    """
    if interval == "1M":
        return "1month"
    if interval.endswith("m"):
        return f"{interval[:-1]}min"
    return interval


def interval_from_filename(stem: str) -> str:
    """Inverse of interval_filename."""
    if stem == "1month":
        return "1M"
    if stem.endswith("min"):
        return f"{stem[:-3]}m"
    return stem


def is_binance_format(name: str) -> bool:
    """Check whether a series name looks like SYMBOL_interval."""
    if name.count("_") != 1:
        return False
    return not name.startswith("_") and not name.endswith("_")


def _normalize_interval(raw: str) -> str:
    # Exact match first so that "1M" (month) is not folded into "1m".
    for candidate in (raw, raw.lower()):
        try:
            return Interval(candidate).value
        except ValueError:
            continue
    raise InvalidSeriesIdError(f"Unknown interval: {raw}")


@dataclass(frozen=True)
class SeriesIdentity:
    """A (symbol, interval) pair with its stable key."""

    symbol: str
    interval: str

    @property
    def series_id(self) -> str:
        return f"{self.symbol}_{self.interval}"

    @property
    def interval_seconds(self) -> int:
        return interval_to_seconds(self.interval)

    @classmethod
    def parse(cls, series_id: str) -> "SeriesIdentity":
        """Parse a series key such as "btcusdt_1h".

        Args:
            series_id: Key in SYMBOL_interval form

        Returns:
            SeriesIdentity with an upper-cased symbol

        Raises:
            InvalidSeriesIdError: If the key is malformed or the interval unknown
        """
        if not series_id or not is_binance_format(series_id.strip()):
            raise InvalidSeriesIdError(f"Invalid series id: {series_id!r}")
        symbol, interval = series_id.strip().split("_")
        return cls(symbol=symbol.upper(), interval=_normalize_interval(interval))

    def __str__(self) -> str:
        return self.series_id
