"""Executor ABC — defines the interface for order execution and account queries."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from mtabot.core.types import ExchangeExitReason, ExecutionReport, Side


@dataclass(frozen=True, slots=True)
class ExchangePosition:
    """Open position as reported by the exchange."""

    symbol: str
    side: Side
    quantity: float
    entry_price: float


class Executor(ABC):
    """Base class for order executors (live exchange, paper).

    Every method raises :class:`mtabot.errors.ExecutionError` on failure.
    Callers never retry automatically.
    """

    async def setup_symbol(self, symbol: str, leverage: int) -> None:
        """Prepare margin mode and leverage for a symbol. No-op by default."""

    @abstractmethod
    async def place_market_order(self, symbol: str, side: Side, quantity: float) -> ExecutionReport:
        """Open (or add to) a position with a market order."""

    @abstractmethod
    async def place_stop_order(self, symbol: str, side: Side, stop_price: float) -> str:
        """Place a stop-market order closing the position. ``side`` is the order side."""

    @abstractmethod
    async def place_take_profit_order(self, symbol: str, side: Side, stop_price: float) -> str:
        """Place a take-profit-market order closing the position. ``side`` is the order side."""

    @abstractmethod
    async def close_position(self, symbol: str, position_side: Side, quantity: float) -> ExecutionReport:
        """Send an opposing reduce-only market order for ``quantity``."""

    @abstractmethod
    async def cancel_orders(self, symbol: str) -> None:
        """Cancel all resting orders for a symbol."""

    @abstractmethod
    async def get_available_balance(self, asset: str) -> float:
        """Return the free balance of ``asset``."""

    @abstractmethod
    async def get_open_positions(self) -> list[ExchangePosition]:
        """Return all non-zero positions held on the exchange."""

    @abstractmethod
    async def get_quantity_precision(self, symbol: str) -> int:
        """Number of decimals allowed for order quantities."""

    async def check_protective_orders(
        self,
        symbol: str,
        price: float,
    ) -> tuple[ExchangeExitReason, ExecutionReport] | None:
        """Report a stop-loss/take-profit fill observed at ``price``.

        Live exchanges fill these orders themselves and report them on the
        user data stream, so the default reports nothing.
        """
        return None

    async def close(self) -> None:
        """Release network resources. No-op by default."""


def opposite(side: Side) -> Side:
    return "SHORT" if side == "LONG" else "LONG"
