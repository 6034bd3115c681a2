"""Paper executor — simulated order execution for dry runs."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass

from mtabot.core.types import ExchangeExitReason, ExecutionReport, Side
from mtabot.errors import ExecutionError
from mtabot.execution.executor import ExchangePosition, Executor

logger = logging.getLogger(__name__)

PriceSource = Callable[[str], "float | None"]


@dataclass(slots=True)
class _PaperPosition:
    side: Side
    quantity: float
    entry_price: float


class PaperExecutor(Executor):
    """Simulates order execution against the last known market price.

    - Market orders fill instantly at ``price_source(symbol)`` and pay the
      taker fee.
    - Stop and take-profit orders rest until :meth:`check_protective_orders`
      sees a price that crosses them.
    - Balance is margin-based: opening locks ``notional / leverage`` and
      closing releases it with the realized PnL.
    """

    def __init__(
        self,
        price_source: PriceSource,
        initial_balance: float = 1_000.0,
        taker_fee_percent: float = 0.04,
        leverage: int = 1,
        quantity_precision: int = 3,
    ) -> None:
        self.price_source = price_source
        self.balance = initial_balance
        self.taker_fee_percent = taker_fee_percent
        self.leverage = leverage
        self.quantity_precision = quantity_precision
        self.positions: dict[str, _PaperPosition] = {}
        self.stops: dict[str, tuple[str, float]] = {}
        self.takes: dict[str, tuple[str, float]] = {}
        self._ids = itertools.count(1)

    async def setup_symbol(self, symbol: str, leverage: int) -> None:
        self.leverage = leverage

    async def place_market_order(self, symbol: str, side: Side, quantity: float) -> ExecutionReport:
        price = self._price(symbol)
        if quantity <= 0:
            raise ExecutionError(f"Invalid quantity {quantity} for {symbol}")
        if symbol in self.positions:
            raise ExecutionError(f"Paper executor already holds a position for {symbol}")

        margin = quantity * price / self.leverage
        fee = self._fee(quantity, price)
        if margin + fee > self.balance:
            raise ExecutionError(
                f"Insufficient paper balance (need {margin + fee:.2f}, have {self.balance:.2f})"
            )

        self.balance -= margin + fee
        self.positions[symbol] = _PaperPosition(side, quantity, price)
        report = ExecutionReport(order_id=self._next_id(), executed_qty=quantity, avg_price=price, fee=fee)
        logger.info("Paper %s %s %.6f @ %.4f (fee %.4f)", side, symbol, quantity, price, fee)
        return report

    async def place_stop_order(self, symbol: str, side: Side, stop_price: float) -> str:
        order_id = self._next_id()
        self.stops[symbol] = (order_id, stop_price)
        return order_id

    async def place_take_profit_order(self, symbol: str, side: Side, stop_price: float) -> str:
        order_id = self._next_id()
        self.takes[symbol] = (order_id, stop_price)
        return order_id

    async def close_position(self, symbol: str, position_side: Side, quantity: float) -> ExecutionReport:
        return self._close(symbol, self._price(symbol))

    async def cancel_orders(self, symbol: str) -> None:
        self.stops.pop(symbol, None)
        self.takes.pop(symbol, None)

    async def get_available_balance(self, asset: str) -> float:
        return self.balance

    async def get_open_positions(self) -> list[ExchangePosition]:
        return [
            ExchangePosition(symbol=symbol, side=p.side, quantity=p.quantity, entry_price=p.entry_price)
            for symbol, p in self.positions.items()
        ]

    async def get_quantity_precision(self, symbol: str) -> int:
        return self.quantity_precision

    async def check_protective_orders(
        self,
        symbol: str,
        price: float,
    ) -> tuple[ExchangeExitReason, ExecutionReport] | None:
        """Fill a resting stop or take-profit order crossed by ``price``.

        If a gap crosses both, the stop is filled first.
        """
        position = self.positions.get(symbol)
        if position is None:
            return None

        stop = self.stops.get(symbol)
        take = self.takes.get(symbol)
        long = position.side == "LONG"

        if stop is not None and (price <= stop[1] if long else price >= stop[1]):
            report = self._close(symbol, stop[1])
            return "STOP_LOSS", report
        if take is not None and (price >= take[1] if long else price <= take[1]):
            report = self._close(symbol, take[1])
            return "TAKE_PROFIT", report
        return None

    # --- Private helpers ---

    def _close(self, symbol: str, price: float) -> ExecutionReport:
        position = self.positions.pop(symbol, None)
        if position is None:
            raise ExecutionError(f"No paper position to close for {symbol}")
        self.stops.pop(symbol, None)
        self.takes.pop(symbol, None)

        diff = price - position.entry_price
        pnl = diff * position.quantity if position.side == "LONG" else -diff * position.quantity
        fee = self._fee(position.quantity, price)
        margin = position.quantity * position.entry_price / self.leverage
        self.balance += margin + pnl - fee

        logger.info(
            "Paper close %s %s %.6f @ %.4f (PnL %.4f, fee %.4f)",
            position.side,
            symbol,
            position.quantity,
            price,
            pnl,
            fee,
        )
        return ExecutionReport(order_id=self._next_id(), executed_qty=position.quantity, avg_price=price, fee=fee)

    def _price(self, symbol: str) -> float:
        price = self.price_source(symbol)
        if price is None or price <= 0:
            raise ExecutionError(f"No market price available for {symbol}")
        return price

    def _fee(self, quantity: float, price: float) -> float:
        return quantity * price * self.taker_fee_percent / 100

    def _next_id(self) -> str:
        return f"paper-{next(self._ids)}"
