"""Binance spot REST API provider."""

import asyncio
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests
from pydantic import ValidationError

from ..models.candle import Candle, CandleRecord
from .base import MAX_PAGE_SIZE, ApiError, MarketDataProvider, NetworkError, ParseError, ProviderError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.binance.com/api/v3"
DEFAULT_TIMEOUT_SECONDS = 10


def parse_klines(payload: Any) -> List[Candle]:
    """Parse a /klines response body into candles.

    Rows look like [open_time_ms, "open", "high", "low", "close", "volume", ...].
    Malformed rows are skipped with a warning.

    Raises:
        ParseError: If the body is not a list of rows
    """
    if not isinstance(payload, list):
        raise ParseError(f"Expected a list of klines, got {type(payload).__name__}")

    candles = []
    for row in payload:
        if not isinstance(row, (list, tuple)) or len(row) < 6:
            logger.warning(f"Skipping malformed kline: {row!r}")
            continue
        try:
            record = CandleRecord(
                time=row[0],
                open=row[1],
                high=row[2],
                low=row[3],
                close=row[4],
                volume=row[5],
            )
        except ValidationError as e:
            logger.warning(f"Skipping invalid kline at {row[0]}: {e.error_count()} error(s)")
            continue
        candles.append(record.to_candle())
    return candles


class BinanceProvider(MarketDataProvider):
    """Binance spot market data over the public REST API."""

    name = "Binance"

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        base_url: str = DEFAULT_BASE_URL,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
    ):
        """Initialize Binance provider.

        Args:
            api_key: Optional API key, sent as X-MBX-APIKEY
            api_secret: Optional API secret used to sign account queries
            base_url: REST base URL
            timeout: Request timeout in seconds
        """
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {"X-MBX-APIKEY": api_key} if api_key else {}

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Issue a GET request and decode the JSON body.

        Raises:
            NetworkError: On connection failures and timeouts
            ApiError: On non-2xx responses
            ParseError: If the body is not valid JSON
        """
        url = f"{self.base_url}{path}"
        try:
            response = requests.get(url, headers=self.headers, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Binance request to {path} failed: {e}")
            raise NetworkError(f"Request to {path} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise ApiError(response.status_code, _error_message(response))

        try:
            return response.json()
        except ValueError as e:
            raise ParseError(f"Invalid JSON from {path}: {e}") from e

    def _fetch_klines(
        self,
        symbol: str,
        interval: str,
        start_time: Optional[int],
        end_time: Optional[int],
        limit: int,
    ) -> List[Candle]:
        params: Dict[str, Any] = {
            "symbol": symbol.upper(),
            "interval": interval,
            "limit": max(1, min(limit, MAX_PAGE_SIZE)),
        }
        if start_time is not None:
            params["startTime"] = start_time * 1000
        if end_time is not None:
            params["endTime"] = end_time * 1000

        logger.debug(f"Fetching klines {params}")
        candles = parse_klines(self._get("/klines", params))
        logger.debug(f"Fetched {len(candles)} klines for {symbol} {interval}")
        return candles

    async def fetch_page(
        self,
        symbol: str,
        interval: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> List[Candle]:
        return await asyncio.to_thread(
            self._fetch_klines, symbol, interval, start_time, end_time, limit
        )

    async def fetch_latest(self, symbol: str, interval: str) -> Optional[Candle]:
        candles = await self.fetch_page(symbol, interval, limit=1)
        return candles[-1] if candles else None

    async def fetch_earliest_timestamp(self, symbol: str, interval: str) -> Optional[int]:
        candles = await self.fetch_page(symbol, interval, start_time=0, limit=1)
        return candles[0].timestamp if candles else None

    async def ping(self) -> bool:
        """Check connectivity to the REST API."""
        try:
            await asyncio.to_thread(self._get, "/ping")
        except ProviderError as e:
            logger.warning(f"Binance ping failed: {e}")
            return False
        return True

    async def fetch_account(self) -> Dict[str, Any]:
        """Fetch account balances (signed request).

        Raises:
            ProviderError: If no credentials are configured or the request fails
        """
        if not self.api_key or not self.api_secret:
            raise ProviderError("API key and secret are required for account queries")
        return await asyncio.to_thread(self._get, "/account", self._signed_params({}))

    def _signed_params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        signed = dict(params)
        signed["timestamp"] = int(time.time() * 1000)
        query = urlencode(signed)
        signed["signature"] = hmac.new(
            self.api_secret.encode(), query.encode(), hashlib.sha256
        ).hexdigest()
        return signed


def _error_message(response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or "unknown error"
    if isinstance(body, dict) and "msg" in body:
        return str(body["msg"])
    return str(body)
