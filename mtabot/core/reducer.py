"""Stream reducer: folds kline events into the candle store and publishes notifications."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from mtabot.core.indicators import IndicatorPeriods, calculate_indicators
from mtabot.core.series import CandleStore, TimeframeSeries
from mtabot.core.types import Candle, Indicators

logger = logging.getLogger(__name__)

IndicatorCalculator = Callable[[Sequence[Candle], IndicatorPeriods], Indicators]


@dataclass(frozen=True, slots=True)
class CandleProcessed:
    """Published when a final candle lands on a ready series."""

    symbol: str
    timeframe: str
    candle: Candle
    indicators: Indicators


class StreamReducer:
    """Applies inbound candle events to a :class:`CandleStore`.

    ``on_event`` is synchronous and runs to completion, so every event's
    read-modify-write on a series finishes before the next event is seen.
    Downstream consumers read :class:`CandleProcessed` messages from
    ``notifications``.

    Usage:
        reducer = StreamReducer(store, periods)
        reducer.on_event("BTCUSDT", "1m", candle)
        message = await reducer.notifications.get()
    """

    def __init__(
        self,
        store: CandleStore,
        periods: IndicatorPeriods,
        calculator: IndicatorCalculator = calculate_indicators,
        notifications: asyncio.Queue[CandleProcessed] | None = None,
    ) -> None:
        self.store = store
        self.periods = periods
        self._calculator = calculator
        if notifications is None:
            notifications = asyncio.Queue()
        self.notifications: asyncio.Queue[CandleProcessed] = notifications

    @property
    def min_candles(self) -> int:
        return self.periods.min_candles

    def on_event(self, symbol: str, timeframe: str, candle: Candle) -> bool:
        """Apply one kline event. Returns True if a notification was published."""
        series = self.store.get_or_create(symbol, timeframe)

        if not candle.is_final:
            series.last_price = candle.close
            return False

        if not series.append(candle):
            logger.debug(
                "Ignoring duplicate candle %s %s open_time=%d",
                symbol,
                timeframe,
                candle.open_time,
            )
            return False

        series.indicators = self._calculator(series.candles, self.periods)
        series.last_price = candle.close

        if not series.check_ready(self.min_candles):
            logger.debug(
                "Series %s %s not ready (%d/%d candles), deferring",
                symbol,
                timeframe,
                len(series),
                self.min_candles,
            )
            return False

        self.notifications.put_nowait(
            CandleProcessed(
                symbol=symbol,
                timeframe=timeframe,
                candle=candle,
                indicators=series.indicators,
            )
        )
        return True

    def load_history(self, symbol: str, timeframe: str, candles: Iterable[Candle]) -> TimeframeSeries:
        """Bulk-load historical candles, recompute indicators, and update readiness.

        No notification is published for historical candles.
        """
        series = self.store.get_or_create(symbol, timeframe)
        series.replace(candles)
        series.indicators = self._calculator(series.candles, self.periods)
        series.check_ready(self.min_candles)
        logger.info(
            "Loaded %d historical candles for %s %s (ready=%s)",
            len(series),
            symbol,
            timeframe,
            series.is_ready,
        )
        return series
