"""Core data structures shared by the trading bot."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from mtabot.config import StrategyConfig

Side = Literal["LONG", "SHORT"]
PositionSide = Literal["NONE", "LONG", "SHORT"]
StrategyName = Literal["TrendFollowing", "MeanReversion", "Breakout", "AI_Prediction"]
CloseReason = Literal["TRAILING_STOP_HIT", "MAX_DURATION_REACHED", "AI_EXIT_SIGNAL", "INVALIDATION"]
# Exits triggered on the exchange side rather than by the position manager
ExchangeExitReason = Literal["STOP_LOSS", "TAKE_PROFIT", "EXTERNAL"]
TradingMode = Literal["FULL_TRADING", "MANAGEMENT_ONLY"]


@dataclass(frozen=True, slots=True)
class Candle:
    """OHLCV kline. Timestamps are epoch milliseconds."""

    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    is_final: bool = True


@dataclass(frozen=True, slots=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True, slots=True)
class Indicators:
    """Latest indicator values for one series. ``None`` means not enough history."""

    rsi: float | None = None
    ema: float | None = None
    bb: BollingerBands | None = None
    sma_volume: float | None = None


@dataclass(slots=True)
class Position:
    """Per-symbol position record. ``side == "NONE"`` means flat."""

    side: PositionSide = "NONE"
    entry_price: float = 0.0
    quantity: float = 0.0
    entry_fee: float = 0.0
    active_strategy: StrategyName | None = None
    active_strategy_config: StrategyConfig | None = None
    open_time: int | None = None
    max_duration_ms: int | None = None
    trailing_active: bool = False
    trailing_stop_price: float | None = None
    stop_order_id: str | None = None
    take_order_id: str | None = None

    @property
    def is_open(self) -> bool:
        return self.side != "NONE"

    def pnl_percent(self, price: float) -> float:
        """Unrealized PnL in percent of entry price, signed for the position side."""
        if not self.is_open or self.entry_price <= 0:
            return 0.0
        change = (price - self.entry_price) / self.entry_price * 100
        return -change if self.side == "SHORT" else change


@dataclass(frozen=True, slots=True)
class Signal:
    """Entry signal accepted by the decision engine."""

    side: Side
    strategy: StrategyName
    config: StrategyConfig
    ai_confirmed: bool = False


@dataclass(frozen=True, slots=True)
class Prediction:
    action: Literal["LONG", "SHORT", "HOLD"]
    confidence: float


@dataclass(frozen=True, slots=True)
class ExitPrediction:
    action: Literal["CLOSE"]
    reason: str
    confidence: float


@dataclass(frozen=True, slots=True)
class ExecutionReport:
    """Result of an order sent to the exchange."""

    order_id: str
    executed_qty: float
    avg_price: float
    fee: float | None = None


@dataclass(frozen=True, slots=True)
class ClosedTrade:
    """A position that has been closed."""

    symbol: str
    side: Side
    strategy: StrategyName | None
    entry_price: float
    exit_price: float
    quantity: float
    entry_fee: float
    exit_fee: float
    reason: CloseReason | ExchangeExitReason
    closed_at: int

    @property
    def gross_pnl(self) -> float:
        diff = self.exit_price - self.entry_price
        if self.side == "SHORT":
            diff = -diff
        return diff * self.quantity

    @property
    def pnl(self) -> float:
        """Net PnL after entry and exit fees."""
        return self.gross_pnl - self.entry_fee - self.exit_fee

    @property
    def pnl_percent(self) -> float:
        notional = self.entry_price * self.quantity
        return (self.pnl / notional) * 100 if notional > 0 else 0.0
