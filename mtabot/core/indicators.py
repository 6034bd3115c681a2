"""Technical indicators computed over a rolling candle window.

All functions are pure and return ``None`` when the window is shorter than
the indicator needs. Only the latest value is returned since the bot never
looks at indicator history.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from mtabot.core.types import BollingerBands, Candle, Indicators


@dataclass(frozen=True, slots=True)
class IndicatorPeriods:
    """Lookback periods for the indicator set."""

    rsi: int = 14
    ema: int = 200
    bb: int = 20
    bb_std_dev: float = 2.0
    sma_volume: int = 20

    @property
    def min_candles(self) -> int:
        """History length after which a series is considered ready."""
        return max(self.rsi, self.ema, self.bb, self.sma_volume)


def sma(values: Sequence[float], period: int) -> float | None:
    """Simple moving average of the last ``period`` values."""
    if period < 1 or len(values) < period:
        return None
    window = values[-period:]
    return sum(window) / period


def ema(values: Sequence[float], period: int) -> float | None:
    """Exponential moving average seeded with the SMA of the first ``period`` values."""
    if period < 1 or len(values) < period:
        return None
    k = 2 / (period + 1)
    current = sum(values[:period]) / period
    for value in values[period:]:
        current = (value - current) * k + current
    return current


def rsi(values: Sequence[float], period: int) -> float | None:
    """Wilder's RSI. Needs ``period + 1`` closes to produce the first value."""
    if period < 1 or len(values) < period + 1:
        return None

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        change = values[i] - values[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period

    for i in range(period + 1, len(values)):
        change = values[i] - values[i - 1]
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def bollinger_bands(values: Sequence[float], period: int, std_dev: float = 2.0) -> BollingerBands | None:
    """Bollinger Bands on the last ``period`` values using population standard deviation."""
    middle = sma(values, period)
    if middle is None:
        return None
    window = values[-period:]
    variance = sum((v - middle) ** 2 for v in window) / period
    width = std_dev * math.sqrt(variance)
    return BollingerBands(upper=middle + width, middle=middle, lower=middle - width)


def calculate_indicators(candles: Sequence[Candle], periods: IndicatorPeriods) -> Indicators:
    """Compute the full indicator set over the candle window."""
    closes = [c.close for c in candles]
    volumes = [c.volume for c in candles]
    return Indicators(
        rsi=rsi(closes, periods.rsi),
        ema=ema(closes, periods.ema),
        bb=bollinger_bands(closes, periods.bb, periods.bb_std_dev),
        sma_volume=sma(volumes, periods.sma_volume),
    )


def is_usable(value: float | None) -> bool:
    """True if an indicator value is present and finite."""
    return value is not None and math.isfinite(value)
