"""Base classes and errors for market data providers."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models.candle import Candle
from ..models.series import InvalidSeriesIdError

# Binance rejects kline requests above this limit.
MAX_PAGE_SIZE = 1000

__all__ = [
    "MAX_PAGE_SIZE",
    "ApiError",
    "InvalidSeriesIdError",
    "MarketDataProvider",
    "NetworkError",
    "ParseError",
    "ProviderError",
]


class ProviderError(Exception):
    """Base exception for provider errors."""

    retryable = False


class NetworkError(ProviderError):
    """Connection failure or timeout; the same request can be re-issued."""

    retryable = True


class ApiError(ProviderError):
    """Non-success HTTP response from the provider."""

    def __init__(self, status: Optional[int], message: str):
        super().__init__(f"API error {status}: {message}" if status else f"API error: {message}")
        self.status = status
        self.message = message

    @property
    def retryable(self) -> bool:
        """Server errors, throttling and timeouts are retryable; other 4xx are not."""
        if self.status is None:
            return True
        if self.status in (408, 429):
            return True
        return not 400 <= self.status < 500


class ParseError(ProviderError):
    """Provider response could not be decoded."""

    pass


class MarketDataProvider(ABC):
    """Remote source of paginated candle data."""

    name = "provider"

    @abstractmethod
    async def fetch_page(
        self,
        symbol: str,
        interval: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> List[Candle]:
        """Fetch one page of candles.

        Args:
            symbol: Exchange symbol (e.g., "BTCUSDT")
            interval: Interval code (e.g., "1h")
            start_time: Earliest open time in Unix seconds (forward pagination)
            end_time: Latest open time in Unix seconds (backward pagination)
            limit: Maximum number of candles, at most MAX_PAGE_SIZE

        Returns:
            Candles ordered oldest to newest

        Raises:
            ProviderError: If the request fails or the response is unreadable
        """
        pass

    @abstractmethod
    async def fetch_latest(self, symbol: str, interval: str) -> Optional[Candle]:
        """Fetch the most recent (possibly still open) candle."""
        pass

    @abstractmethod
    async def fetch_earliest_timestamp(self, symbol: str, interval: str) -> Optional[int]:
        """Open time of the first candle the provider has, in Unix seconds."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Connectivity probe."""
        pass

    @abstractmethod
    async def fetch_account(self) -> Dict[str, Any]:
        """Authenticated account-balance query."""
        pass

    async def fetch_range(
        self, symbol: str, interval: str, start_time: int, end_time: int
    ) -> List[Candle]:
        """Fetch candles between two open times, one page at most."""
        return await self.fetch_page(
            symbol, interval, start_time=start_time, end_time=end_time, limit=MAX_PAGE_SIZE
        )
