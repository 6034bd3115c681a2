"""Trading mode controller: full trading vs. managing open positions only."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from mtabot.core.state import BotState
from mtabot.core.types import TradingMode
from mtabot.errors import ExecutionError
from mtabot.execution.executor import Executor

logger = logging.getLogger(__name__)

# Called with (old_mode, new_mode) after the state has been updated
ModeChangeCallback = Callable[[TradingMode, TradingMode], Awaitable[None]]


class ModeController:
    """Switches between FULL_TRADING and MANAGEMENT_ONLY by available balance.

    A balance below ``min_balance`` stops new entries while open positions
    keep being managed. A failed balance query leaves the mode unchanged.
    """

    def __init__(
        self,
        state: BotState,
        executor: Executor,
        quote_asset: str = "USDT",
        min_balance: float = 10.0,
        on_mode_change: ModeChangeCallback | None = None,
    ) -> None:
        self.state = state
        self.executor = executor
        self.quote_asset = quote_asset
        self.min_balance = min_balance
        self.on_mode_change = on_mode_change

    @property
    def mode(self) -> TradingMode:
        return self.state.mode

    def mode_for(self, balance: float) -> TradingMode:
        return "MANAGEMENT_ONLY" if balance < self.min_balance else "FULL_TRADING"

    async def check(self) -> TradingMode:
        """Query the balance and update the mode. Returns the current mode."""
        try:
            balance = await self.executor.get_available_balance(self.quote_asset)
        except ExecutionError as e:
            logger.error("Balance check failed, staying in %s: %s", self.state.mode, e)
            return self.state.mode

        self.state.available_balance = balance
        new_mode = self.mode_for(balance)
        old_mode = self.state.mode
        if new_mode == old_mode:
            return old_mode

        self.state.mode = new_mode
        if new_mode == "MANAGEMENT_ONLY":
            logger.warning(
                "Balance %.2f %s below minimum %.2f, switching to MANAGEMENT_ONLY",
                balance,
                self.quote_asset,
                self.min_balance,
            )
        else:
            logger.info("Balance %.2f %s restored, switching to FULL_TRADING", balance, self.quote_asset)

        if self.on_mode_change is not None:
            await self.on_mode_change(old_mode, new_mode)
        return new_mode
