"""JSON file storage for candle series."""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

from pydantic import ValidationError

from ..models.candle import Candle, CandleRecord
from ..models.series import (
    INTERVAL_SECONDS,
    SeriesIdentity,
    interval_filename,
    interval_from_filename,
)

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a series cannot be read from or written to disk."""

    pass


@dataclass
class SeriesSnapshot:
    """Contents of one series file."""

    series: SeriesIdentity
    candles: List[Candle] = field(default_factory=list)
    history_exhausted: bool = False
    skipped: int = 0


class CandleRepository:
    """Stores one JSON file per series under {data_dir}/{provider}/{SYMBOL}/.

    File layout:
        {"symbol": "BTCUSDT", "interval": "1h", "history_exhausted": false,
         "candles": [{"time": <ms>, "open": .., "high": .., "low": ..,
                      "close": .., "volume": ..}, ...]}
    """

    def __init__(self, data_dir: Union[str, Path] = "data", provider_name: str = "Binance"):
        self.data_dir = Path(data_dir)
        self.provider_name = provider_name

    def path_for(self, series: SeriesIdentity) -> Path:
        return (
            self.data_dir
            / self.provider_name
            / series.symbol
            / f"{interval_filename(series.interval)}.json"
        )

    def exists(self, series: SeriesIdentity) -> bool:
        return self.path_for(series).exists()

    def list_series(self) -> List[SeriesIdentity]:
        """Series with a file on disk, sorted by key."""
        root = self.data_dir / self.provider_name
        if not root.exists():
            return []

        found = []
        for path in root.glob("*/*.json"):
            interval = interval_from_filename(path.stem)
            if interval not in INTERVAL_SECONDS:
                logger.debug(f"Ignoring unrecognized file {path}")
                continue
            found.append(SeriesIdentity(symbol=path.parent.name, interval=interval))
        return sorted(found, key=lambda s: s.series_id)

    def load(self, series: SeriesIdentity) -> SeriesSnapshot:
        """Load a series from disk.

        A missing file yields an empty snapshot. Records failing validation are
        dropped with a warning.

        Raises:
            PersistenceError: If the file exists but cannot be read or decoded
        """
        path = self.path_for(series)
        if not path.exists():
            return SeriesSnapshot(series=series)

        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Invalid JSON in {path}: {e}") from e
        except OSError as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceError(f"Unexpected top-level value in {path}")

        # Older files use "klines"/"open_time".
        raw_records = data.get("candles", data.get("klines", []))
        candles, skipped = _parse_records(raw_records)
        if skipped:
            logger.warning(f"Dropped {skipped} invalid candle(s) while loading {path}")

        logger.info(f"Loaded {len(candles)} candles for {series} from {path}")
        return SeriesSnapshot(
            series=series,
            candles=candles,
            history_exhausted=bool(data.get("history_exhausted", False)),
            skipped=skipped,
        )

    def save(
        self,
        series: SeriesIdentity,
        candles: Iterable[Candle],
        history_exhausted: bool = False,
    ) -> Path:
        """Write a series atomically (temp file, fsync, rename).

        Returns:
            Path of the written file

        Raises:
            PersistenceError: If the file cannot be written
        """
        path = self.path_for(series)
        payload = {
            "symbol": series.symbol,
            "interval": series.interval,
            "history_exhausted": history_exhausted,
            "candles": [_to_record(c) for c in candles],
        }

        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp", delete=False
            ) as tmp:
                tmp_name = tmp.name
                json.dump(payload, tmp)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"Failed to write {path}: {e}") from e

        logger.debug(f"Wrote {len(payload['candles'])} candles to {path}")
        return path


def _to_record(candle: Candle) -> Dict[str, Any]:
    return {
        "time": candle.timestamp_ms,
        "open": candle.open,
        "high": candle.high,
        "low": candle.low,
        "close": candle.close,
        "volume": candle.volume,
    }


def _parse_records(raw_records: Any):
    if not isinstance(raw_records, list):
        return [], 0

    candles = []
    skipped = 0
    for item in raw_records:
        if not isinstance(item, dict):
            skipped += 1
            continue
        if "time" not in item and "open_time" in item:
            item = {**item, "time": item["open_time"]}
        try:
            candles.append(CandleRecord.model_validate(item).to_candle())
        except ValidationError as e:
            logger.debug(f"Invalid record {item!r}: {e}")
            skipped += 1
    return candles, skipped
