"""Position manager: trailing stop, time limit, AI exit, and invalidation for open positions."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Literal

from mtabot.core.indicators import is_usable
from mtabot.core.state import BotState
from mtabot.core.types import CloseReason, ClosedTrade, ExecutionReport, Position, Side
from mtabot.errors import ExecutionError
from mtabot.execution.executor import Executor
from mtabot.predictor.base import Predictor

logger = logging.getLogger(__name__)

ClosePrecedence = Literal["last_wins", "first_wins"]


def _now_ms() -> int:
    return int(time.time() * 1000)


class PositionManager:
    """Runs one management cycle per primary-timeframe candle for an open position.

    Checks run in a fixed order: trailing stop, max duration, AI exit,
    rule invalidation. With ``last_wins`` precedence every check runs and a
    later reason overwrites an earlier one, so a duration timeout masks a
    trailing-stop hit and invalidation masks an AI exit. With
    ``first_wins`` the AI-exit and invalidation checks are skipped once a
    reason is set. Trailing bookkeeping always runs.

    Args:
        state: Shared bot state; positions are mutated only here and in the bot's open path.
        executor: Sends the closing order.
        predictor: Consulted for AI_Prediction positions.
        primary_timeframe: Trigger timeframe, source of the last price.
        confirmation_timeframe: Slowest watched timeframe.
        precedence: How to resolve several close reasons in one cycle.
        predictor_enabled: Whether the predictor may be consulted at all.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        state: BotState,
        executor: Executor,
        predictor: Predictor,
        primary_timeframe: str,
        confirmation_timeframe: str,
        precedence: ClosePrecedence = "last_wins",
        predictor_enabled: bool = False,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.state = state
        self.executor = executor
        self.predictor = predictor
        self.primary_timeframe = primary_timeframe
        self.confirmation_timeframe = confirmation_timeframe
        self.precedence = precedence
        self.predictor_enabled = predictor_enabled
        self.clock = clock
        self._closing: set[str] = set()

    def is_closing(self, symbol: str) -> bool:
        return symbol in self._closing

    # --- Checks ---

    def trailing_reference(self, symbol: str, position: Position) -> float | None:
        """Indicator the trailing stop follows for the position's strategy."""
        if position.active_strategy == "TrendFollowing":
            series = self.state.series(symbol, self.confirmation_timeframe)
            return series.indicators.ema if series is not None else None

        series = self.state.series(symbol, self.primary_timeframe)
        bb = series.indicators.bb if series is not None else None
        if bb is None:
            return None
        if position.active_strategy == "MeanReversion":
            return bb.middle
        if position.active_strategy == "Breakout":
            return bb.lower if position.side == "LONG" else bb.upper
        return None

    def update_trailing(self, symbol: str, position: Position, price: float) -> bool:
        """Activate or ratchet the trailing stop. Returns True if price crossed it."""
        reference = self.trailing_reference(symbol, position)
        if not is_usable(reference):
            return False

        long = position.side == "LONG"
        if not position.trailing_active or position.trailing_stop_price is None:
            position.trailing_active = True
            position.trailing_stop_price = reference
            logger.info("[%s] Trailing stop activated at %.6f (%s)", symbol, reference, position.active_strategy)
        elif (long and reference > position.trailing_stop_price) or (
            not long and reference < position.trailing_stop_price
        ):
            position.trailing_stop_price = reference
            logger.info("[%s] Trailing stop moved to %.6f", symbol, reference)

        stop = position.trailing_stop_price
        return price <= stop if long else price >= stop

    def is_invalidated(self, symbol: str, position: Position, price: float) -> bool:
        """True when the entry thesis of the position's strategy no longer holds."""
        long = position.side == "LONG"
        if position.active_strategy == "TrendFollowing":
            series = self.state.series(symbol, self.confirmation_timeframe)
            ema = series.indicators.ema if series is not None else None
            if not is_usable(ema):
                return False
            return price < ema if long else price > ema

        series = self.state.series(symbol, self.primary_timeframe)
        bb = series.indicators.bb if series is not None else None
        if bb is None:
            return False
        if position.active_strategy == "MeanReversion":
            return price > bb.middle if long else price < bb.middle
        if position.active_strategy == "Breakout":
            return price < bb.middle if long else price > bb.middle
        return False

    async def _ai_exit(self, symbol: str, position: Position) -> bool:
        if not (self.predictor_enabled and self.predictor.is_ready()):
            return False
        series = self.state.series(symbol, self.primary_timeframe)
        candles = series.candles if series is not None else []
        try:
            exit_prediction = await self.predictor.predict_exit(symbol, self.primary_timeframe, candles, position)
        except Exception:
            logger.exception("[%s] Exit prediction failed", symbol)
            return False
        if exit_prediction is not None and exit_prediction.action == "CLOSE":
            logger.info(
                "[%s] Predictor recommends exit: %s (confidence %.2f%%)",
                symbol,
                exit_prediction.reason,
                exit_prediction.confidence,
            )
            return True
        return False

    async def evaluate(self, symbol: str) -> CloseReason | None:
        """Run the check sequence and return the close reason, if any.

        Mutates only the trailing-stop fields of the position.
        """
        position = self.state.position(symbol)
        price = self.state.last_price(symbol, self.primary_timeframe)
        if not position.is_open or price is None:
            return None

        config = position.active_strategy_config
        use_invalidation = config.use_invalidation_exit if config is not None else False
        first_wins = self.precedence == "first_wins"
        reason: CloseReason | None = None

        if self.update_trailing(symbol, position, price):
            reason = "TRAILING_STOP_HIT"

        if position.open_time is not None and position.max_duration_ms:
            if self.clock() - position.open_time >= position.max_duration_ms:
                reason = "MAX_DURATION_REACHED"

        if not (first_wins and reason) and position.active_strategy == "AI_Prediction" and use_invalidation:
            if await self._ai_exit(symbol, position):
                reason = "AI_EXIT_SIGNAL"

        if not (first_wins and reason) and position.active_strategy != "AI_Prediction" and use_invalidation:
            if self.is_invalidated(symbol, position, price):
                reason = "INVALIDATION"

        return reason

    # --- Lifecycle ---

    async def manage(self, symbol: str) -> ClosedTrade | None:
        """One management cycle: evaluate, then close or log status."""
        if symbol in self._closing:
            logger.debug("[%s] Close already in progress, skipping cycle", symbol)
            return None

        reason = await self.evaluate(symbol)
        position = self.state.position(symbol)
        if reason is not None:
            logger.warning(
                "[%s] Closing %s %.6f (%s), reason %s, orders %s/%s",
                symbol,
                position.side,
                position.quantity,
                position.active_strategy,
                reason,
                position.stop_order_id or "-",
                position.take_order_id or "-",
            )
            return await self.close(symbol, reason)

        if position.is_open:
            price = self.state.last_price(symbol, self.primary_timeframe) or position.entry_price
            logger.info(
                "[%s] Holding %s %.6f @ %.6f, price %.6f, PnL %.2f%%, trailing %s",
                symbol,
                position.side,
                position.quantity,
                position.entry_price,
                price,
                position.pnl_percent(price),
                f"{position.trailing_stop_price:.6f}" if position.trailing_stop_price is not None else "-",
            )
        return None

    def _exit_fill(self, symbol: str, report: ExecutionReport) -> tuple[float, float]:
        """Exit price and fee: execution feed, then the order response, then last price."""
        fill = self.state.fills.get(symbol)
        if fill is not None and fill.order_id == report.order_id and fill.avg_price > 0:
            self.state.pop_fill(symbol)
            return fill.avg_price, fill.fee or 0.0
        if report.avg_price > 0:
            return report.avg_price, report.fee or 0.0
        return self.state.last_price(symbol, self.primary_timeframe) or 0.0, 0.0

    async def close(self, symbol: str, reason: CloseReason) -> ClosedTrade | None:
        """Close the position with a reduce-only market order.

        On failure the position stays open and None is returned.
        """
        position = self.state.position(symbol)
        if not position.is_open:
            return None
        if symbol in self._closing:
            return None

        side: Side = position.side  # type: ignore[assignment]
        self._closing.add(symbol)
        try:
            report = await self.executor.close_position(symbol, side, position.quantity)
        except ExecutionError as e:
            logger.error("[%s] Close order failed (%s), position kept open: %s", symbol, reason, e)
            return None
        finally:
            self._closing.discard(symbol)

        exit_price, exit_fee = self._exit_fill(symbol, report)
        trade = ClosedTrade(
            symbol=symbol,
            side=side,
            strategy=position.active_strategy,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=position.quantity,
            entry_fee=position.entry_fee,
            exit_fee=exit_fee,
            reason=reason,
            closed_at=self.clock(),
        )
        self.state.positions[symbol] = Position()

        try:
            await self.executor.cancel_orders(symbol)
        except ExecutionError as e:
            logger.warning("[%s] Failed to cancel protective orders: %s", symbol, e)

        logger.warning(
            "[%s] Closed %s %.6f @ %.6f (%s), fee %.6f, PnL %.4f",
            symbol,
            trade.side,
            trade.quantity,
            trade.exit_price,
            reason,
            trade.exit_fee,
            trade.pnl,
        )
        return trade
