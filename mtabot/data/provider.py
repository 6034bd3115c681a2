"""Abstract base classes for market data providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

from mtabot.core.types import Candle

# Called with (symbol, timeframe, candle) for every kline event, partial or final
CandleCallback = Callable[[str, str, Candle], object]


class StreamProvider(ABC):
    """Live kline stream for many symbols and timeframes."""

    @abstractmethod
    async def subscribe(
        self,
        symbols: list[str],
        timeframes: list[str],
        callback: CandleCallback,
    ) -> None:
        """Stream klines until :meth:`unsubscribe` is called."""

    @abstractmethod
    async def resubscribe(self, symbols: list[str]) -> None:
        """Replace the subscribed symbol set, keeping timeframes and callback."""

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Close all connections."""


class HistoryProvider(ABC):
    """Source of recent closed candles used to warm up the series."""

    @abstractmethod
    async def get_recent_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        """Return up to ``limit`` most recent closed candles, oldest first."""

    async def close(self) -> None:
        """Release network resources. No-op by default."""

    async def load_history(
        self,
        symbol: str,
        timeframe: str,
        limit: int,
        refresh: bool = True,
    ) -> list[Candle]:
        """Warm-up candles. Providers without a cache always fetch."""
        return await self.get_recent_candles(symbol, timeframe, limit)

    async def save_history(self, symbol: str, timeframe: str, candles: list[Candle], limit: int) -> None:
        """Persist candles seen live so the next warm-up starts from them. No-op by default."""
