"""Explicit bot state store shared by the reducer, decision engine, and position manager."""

from __future__ import annotations

from dataclasses import dataclass, field

from mtabot.core.series import CandleStore, TimeframeSeries
from mtabot.core.types import ExecutionReport, Position, TradingMode


@dataclass
class BotState:
    """Owns all mutable runtime state of one bot instance.

    Components receive the same instance instead of reaching for module
    globals, so several bots (or tests) can run side by side.
    """

    candles: CandleStore = field(default_factory=CandleStore)
    positions: dict[str, Position] = field(default_factory=dict)
    # Latest fill per symbol reported by the user data stream
    fills: dict[str, ExecutionReport] = field(default_factory=dict)
    available_balance: float | None = None
    mode: TradingMode = "FULL_TRADING"

    def position(self, symbol: str) -> Position:
        """Return the symbol's position, creating a flat one if missing."""
        pos = self.positions.get(symbol)
        if pos is None:
            pos = Position()
            self.positions[symbol] = pos
        return pos

    def open_positions(self) -> dict[str, Position]:
        return {symbol: pos for symbol, pos in self.positions.items() if pos.is_open}

    def series(self, symbol: str, timeframe: str) -> TimeframeSeries | None:
        return self.candles.get(symbol, timeframe)

    def last_price(self, symbol: str, timeframe: str) -> float | None:
        series = self.candles.get(symbol, timeframe)
        return series.last_price if series is not None else None

    def pop_fill(self, symbol: str) -> ExecutionReport | None:
        """Take the most recent fill for a symbol, if one was reported."""
        return self.fills.pop(symbol, None)
