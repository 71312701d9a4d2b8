"""Configuration management."""

import os
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import List, Optional

from dateutil import parser

from .models.series import InvalidSeriesIdError, SeriesIdentity
from .sources.base import MAX_PAGE_SIZE
from .sources.binance import DEFAULT_BASE_URL


class ProviderType(str, Enum):
    """Supported market data providers."""

    BINANCE = "binance"


@dataclass
class ProviderConfig:
    """Credentials and endpoint of the active provider."""

    provider_type: ProviderType = ProviderType.BINANCE
    api_token: str = ""
    api_secret: str = ""
    base_url: str = DEFAULT_BASE_URL

    def has_credentials(self) -> bool:
        return bool(self.api_token and self.api_secret)

    def validate(self) -> None:
        """Validate configuration."""
        if bool(self.api_token) != bool(self.api_secret):
            raise ValueError("BINANCE_API_KEY and BINANCE_API_SECRET must be set together")
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid provider base URL: {self.base_url}")


@dataclass
class SyncConfig:
    """Synchronization settings from environment variables."""

    data_dir: str = "data"
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    series: List[str] = field(default_factory=list)
    page_limit: int = MAX_PAGE_SIZE
    batch_delay_ms: int = 100
    save_every: int = 10
    max_retries: int = 3
    retry_delay_seconds: float = 2.0
    history_start: Optional[int] = None
    realtime_poll_seconds: int = 60

    @property
    def batch_delay_seconds(self) -> float:
        return self.batch_delay_ms / 1000

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Load configuration from the environment.

        Raises:
            ValueError: If a numeric or time value cannot be parsed
        """
        provider = ProviderConfig(
            provider_type=ProviderType(os.getenv("SYNC_PROVIDER", "binance").lower()),
            api_token=os.getenv("BINANCE_API_KEY", ""),
            api_secret=os.getenv("BINANCE_API_SECRET", ""),
            base_url=os.getenv("BINANCE_BASE_URL", DEFAULT_BASE_URL),
        )

        series = [s.strip() for s in os.getenv("SYNC_SERIES", "").split(",") if s.strip()]

        history_start = None
        raw_history_start = os.getenv("SYNC_HISTORY_START")
        if raw_history_start:
            history_start = parse_timestamp(raw_history_start)

        try:
            return cls(
                data_dir=os.getenv("DATA_DIR", "data"),
                provider=provider,
                series=series,
                page_limit=int(os.getenv("SYNC_PAGE_LIMIT", str(MAX_PAGE_SIZE))),
                batch_delay_ms=int(os.getenv("SYNC_BATCH_DELAY_MS", "100")),
                save_every=int(os.getenv("SYNC_SAVE_EVERY", "10")),
                max_retries=int(os.getenv("SYNC_MAX_RETRIES", "3")),
                retry_delay_seconds=float(os.getenv("SYNC_RETRY_DELAY_SECONDS", "2.0")),
                history_start=history_start,
                realtime_poll_seconds=int(os.getenv("REALTIME_POLL_SECONDS", "60")),
            )
        except ValueError as e:
            raise ValueError(f"Invalid numeric setting: {e}") from e

    def validate(self) -> None:
        """Validate configuration."""
        self.provider.validate()
        if not 1 <= self.page_limit <= MAX_PAGE_SIZE:
            raise ValueError(f"SYNC_PAGE_LIMIT must be between 1 and {MAX_PAGE_SIZE}")
        if self.batch_delay_ms < 0:
            raise ValueError("SYNC_BATCH_DELAY_MS must not be negative")
        if self.save_every < 1:
            raise ValueError("SYNC_SAVE_EVERY must be at least 1")
        if self.max_retries < 0:
            raise ValueError("SYNC_MAX_RETRIES must not be negative")
        if self.realtime_poll_seconds < 1:
            raise ValueError("REALTIME_POLL_SECONDS must be at least 1")
        for series_id in self.series:
            try:
                SeriesIdentity.parse(series_id)
            except InvalidSeriesIdError as e:
                raise ValueError(f"SYNC_SERIES contains an invalid entry: {e}") from e


def parse_timestamp(value: str) -> int:
    """Parse an ISO-8601 (or Unix seconds) string to Unix seconds, UTC by default."""
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        parsed = parser.isoparse(value)
    except (ValueError, TypeError):
        parsed = parser.parse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())
