"""Timeframe utilities: supported intervals and their durations."""

from __future__ import annotations

# Ordered from lowest to highest resolution (Binance kline intervals)
TIMEFRAME_ORDER = ("1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "1w")

_TF_MINUTES: dict[str, int] = {
    "1m": 1,
    "3m": 3,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "2h": 120,
    "4h": 240,
    "6h": 360,
    "8h": 480,
    "12h": 720,
    "1d": 1440,
    "1w": 10080,
}


def get_timeframe_minutes(tf: str) -> int:
    """Return the number of minutes in a timeframe."""
    if tf not in _TF_MINUTES:
        raise ValueError(f"Unknown timeframe: {tf}")
    return _TF_MINUTES[tf]


def timeframe_ms(tf: str) -> int:
    """Return the duration of a timeframe in milliseconds."""
    return get_timeframe_minutes(tf) * 60_000
