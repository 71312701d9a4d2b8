#!/usr/bin/env python3
"""Batch job entry point: backfill configured series and exit."""

import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load .env file if it exists
env_path = Path(__file__).parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Imports after logging setup (required for proper logging configuration)
from chart_sync.config import ProviderType, SyncConfig  # noqa: E402
from chart_sync.sources.binance import BinanceProvider  # noqa: E402
from chart_sync.storage.candle_repository import CandleRepository  # noqa: E402
from chart_sync.sync.engine import SyncEngine  # noqa: E402


def build_engine(config: SyncConfig) -> SyncEngine:
    """Wire provider, storage and engine from configuration."""
    if config.provider.provider_type != ProviderType.BINANCE:
        raise ValueError(f"Unsupported provider: {config.provider.provider_type}")

    provider = BinanceProvider(
        api_key=config.provider.api_token,
        api_secret=config.provider.api_secret,
        base_url=config.provider.base_url,
    )
    repository = CandleRepository(config.data_dir, provider_name=provider.name)
    return SyncEngine(provider, repository, config)


async def main():
    """Synchronize every configured series, then save and exit."""
    logger.info("🚀 Starting chart synchronization job...")

    try:
        try:
            config = SyncConfig.from_env()
            config.validate()
        except ValueError as config_error:
            error_msg = (
                f"❌ CRITICAL: Configuration invalid: {config_error}\n"
                f"Required environment variables:\n"
                f"  - SYNC_SERIES (e.g. BTCUSDT_1h,ETHUSDT_4h)\n"
                f"Optional: DATA_DIR, BINANCE_API_KEY, BINANCE_API_SECRET, SYNC_HISTORY_START"
            )
            logger.error(error_msg)
            raise ValueError(error_msg) from config_error

        logger.info("✅ Configuration loaded")
        logger.info(f"   - Data directory: {config.data_dir}")
        logger.info(f"   - Provider: {config.provider.provider_type.value}")
        logger.info(f"   - Series: {config.series}")
        if config.provider.has_credentials():
            logger.info("   - Credentials: configured")
        else:
            logger.info("   - Credentials: none (public market data only)")
        if config.history_start is not None:
            logger.info(f"   - History start: {config.history_start}")

        engine = build_engine(config)

        series_ids = config.series or [s.series_id for s in engine.repository.list_series()]
        if not series_ids:
            raise ValueError("No series configured and none found on disk. Set SYNC_SERIES.")

        if not await engine.provider.ping():
            raise ConnectionError(f"Cannot reach {config.provider.base_url}")
        logger.info("✅ Provider reachable")

        result = await engine.sync_multiple_series(series_ids)
        await engine.shutdown()

        logger.info(f"✅ Synchronization finished: {result}")
        sys.exit(0 if result["status"] == "success" else 1)

    except Exception as e:
        logger.error(f"❌ Job failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
