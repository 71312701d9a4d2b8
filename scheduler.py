#!/usr/bin/env python3
"""Realtime service: keeps loaded series current by polling the provider."""

import asyncio
import logging
import signal
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
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

# Imports after logging setup (required for proper logging configuration)
from chart_sync.config import SyncConfig  # noqa: E402
from sync_job import build_engine  # noqa: E402

# Polls between forced saves of every series.
SAVE_EVERY_POLLS = 10


async def run(config: SyncConfig, shutdown: asyncio.Event) -> None:
    """Load series, catch them up, then poll until shutdown is set."""
    engine = build_engine(config)

    series_ids = config.series or [s.series_id for s in engine.repository.list_series()]
    if not series_ids:
        raise ValueError("No series configured. Set SYNC_SERIES.")

    for series_id in series_ids:
        await engine.load_series(series_id)
        catch_up = await engine.complete_missing_data(series_id)
        logger.info(f"   - {series_id}: +{catch_up.candles_added} candles on start-up")

    logger.info(f"📡 Polling every {config.realtime_poll_seconds}s. Press Ctrl+C to stop")

    polls = 0
    try:
        while not shutdown.is_set():
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=config.realtime_poll_seconds)
                break
            except asyncio.TimeoutError:
                pass

            try:
                results = await engine.update_realtime()
                failed = [r for r in results.values() if r.status == "error"]
                logger.info(f"🔄 Updated {len(results) - len(failed)} series, {len(failed)} failed")
            except Exception as e:
                logger.error(f"Error in polling loop: {e}", exc_info=True)

            polls += 1
            if polls % SAVE_EVERY_POLLS == 0:
                await engine.save_all()
    finally:
        await engine.shutdown()


async def main():
    """Main polling service."""
    logger.info("🚀 Starting realtime chart service...")

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        config = SyncConfig.from_env()
        config.validate()
        await run(config, shutdown)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        logger.info("✅ Service stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n✅ Scheduler stopped")
