"""Parquet cache for raw historical candles."""

from __future__ import annotations

import logging
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq

from mtabot.config import settings
from mtabot.core.types import Candle

logger = logging.getLogger(__name__)

SCHEMA = pa.schema([
    ("open_time", pa.int64()),
    ("close_time", pa.int64()),
    ("open", pa.float64()),
    ("high", pa.float64()),
    ("low", pa.float64()),
    ("close", pa.float64()),
    ("volume", pa.float64()),
])


def cache_path(symbol: str, timeframe: str, base: str | Path | None = None) -> Path:
    """Generate the cache file path for a symbol/timeframe pair."""
    root = Path(base) if base is not None else Path(settings.cache_path)
    return root / f"{symbol.upper()}_{timeframe}.parquet"


def cache_exists(symbol: str, timeframe: str, base: str | Path | None = None) -> bool:
    return cache_path(symbol, timeframe, base).exists()


def read_candles(symbol: str, timeframe: str, base: str | Path | None = None) -> list[Candle]:
    """Read cached candles, oldest first. Returns [] if there is no cache."""
    path = cache_path(symbol, timeframe, base)
    if not path.exists():
        return []

    rows = pq.read_table(path).to_pylist()
    candles = [
        Candle(
            open_time=row["open_time"],
            close_time=row["close_time"],
            open=row["open"],
            high=row["high"],
            low=row["low"],
            close=row["close"],
            volume=row["volume"],
        )
        for row in rows
    ]
    logger.debug("Read %d candles from %s", len(candles), path)
    return candles


def write_candles(
    symbol: str,
    timeframe: str,
    candles: list[Candle],
    base: str | Path | None = None,
) -> None:
    """Write candles to a Parquet file, overwriting any existing data."""
    if not candles:
        return

    path = cache_path(symbol, timeframe, base)
    path.parent.mkdir(parents=True, exist_ok=True)

    arrays = {
        "open_time": pa.array([c.open_time for c in candles], type=pa.int64()),
        "close_time": pa.array([c.close_time for c in candles], type=pa.int64()),
        "open": pa.array([c.open for c in candles], type=pa.float64()),
        "high": pa.array([c.high for c in candles], type=pa.float64()),
        "low": pa.array([c.low for c in candles], type=pa.float64()),
        "close": pa.array([c.close for c in candles], type=pa.float64()),
        "volume": pa.array([c.volume for c in candles], type=pa.float64()),
    }
    table = pa.table(arrays, schema=SCHEMA)
    pq.write_table(table, path)
    logger.debug("Wrote %d candles to %s", len(candles), path)


def merge_candles(existing: list[Candle], new: list[Candle]) -> list[Candle]:
    """Merge two candle lists, deduplicating by open time. Newer data wins."""
    by_open_time: dict[int, Candle] = {}
    for c in existing:
        by_open_time[c.open_time] = c
    for c in new:
        by_open_time[c.open_time] = c
    return sorted(by_open_time.values(), key=lambda c: c.open_time)


def trim_candles(candles: list[Candle], limit: int) -> list[Candle]:
    """Keep only the newest ``limit`` candles."""
    return candles[-limit:] if limit > 0 else []
