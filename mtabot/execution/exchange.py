"""Live executor for Binance USDⓈ-M futures via ccxt."""

from __future__ import annotations

import logging
import math
from typing import Any

import ccxt.async_support as ccxt

from mtabot.config import Settings, settings
from mtabot.core.types import ExecutionReport, Side
from mtabot.errors import ExecutionError
from mtabot.execution.executor import ExchangePosition, Executor, opposite

logger = logging.getLogger(__name__)

# Binance error code when the margin type is already the requested one
MARGIN_TYPE_UNCHANGED = -4046


def _create_exchange(config: Settings) -> ccxt.binanceusdm:
    """Create an async ccxt Binance futures client from settings."""
    exchange = ccxt.binanceusdm(
        {
            "apiKey": config.api_key,
            "secret": config.api_secret,
            "enableRateLimit": True,
        }
    )
    if config.testnet:
        exchange.set_sandbox_mode(True)
    return exchange


def _order_side(side: Side) -> str:
    return "buy" if side == "LONG" else "sell"


def _order_fee(order: dict[str, Any]) -> float | None:
    fees = order.get("fees") or ([order["fee"]] if order.get("fee") else [])
    costs = [float(f["cost"]) for f in fees if f and f.get("cost") is not None]
    return sum(costs) if costs else None


def _report(order: dict[str, Any], fallback_qty: float) -> ExecutionReport:
    filled = order.get("filled")
    average = order.get("average") or order.get("price") or 0.0
    return ExecutionReport(
        order_id=str(order.get("id", "")),
        executed_qty=float(filled) if filled else fallback_qty,
        avg_price=float(average),
        fee=_order_fee(order),
    )


def _precision_decimals(value: Any) -> int:
    """Convert a ccxt precision (decimal count or tick size) to a decimal count."""
    if value is None:
        return 0
    value = float(value)
    if value <= 0:
        return 0
    if value >= 1 and value.is_integer():
        return int(value)
    return max(0, round(-math.log10(value)))


class CcxtExecutor(Executor):
    """Sends orders to Binance USDⓈ-M futures.

    Symbols are exchange ids such as ``BTCUSDT``; they are mapped to ccxt
    unified symbols after markets are loaded. Every ccxt error is re-raised
    as :class:`ExecutionError`.
    """

    def __init__(self, exchange: ccxt.Exchange | None = None, config: Settings | None = None) -> None:
        self._exchange = exchange
        self.config = config or settings
        self._markets_loaded = False

    async def _get_exchange(self) -> ccxt.Exchange:
        if self._exchange is None:
            self._exchange = _create_exchange(self.config)
        if not self._markets_loaded:
            try:
                await self._exchange.load_markets()
            except ccxt.BaseError as e:
                raise ExecutionError(f"Failed to load markets: {e}") from e
            self._markets_loaded = True
        return self._exchange

    async def close(self) -> None:
        if self._exchange is not None:
            await self._exchange.close()
            self._exchange = None
            self._markets_loaded = False

    async def _market(self, symbol: str) -> dict[str, Any]:
        exchange = await self._get_exchange()
        matches = exchange.markets_by_id.get(symbol) if exchange.markets_by_id else None
        if matches:
            return matches[0] if isinstance(matches, list) else matches
        try:
            return exchange.market(symbol)
        except ccxt.BaseError as e:
            raise ExecutionError(f"Unknown market {symbol}") from e

    async def _unified(self, symbol: str) -> str:
        return (await self._market(symbol))["symbol"]

    async def setup_symbol(self, symbol: str, leverage: int) -> None:
        """Switch the symbol to isolated margin and set its leverage."""
        exchange = await self._get_exchange()
        unified = await self._unified(symbol)
        try:
            await exchange.set_margin_mode("isolated", unified)
        except ccxt.BaseError as e:
            if str(MARGIN_TYPE_UNCHANGED) not in str(e):
                raise ExecutionError(f"Failed to set isolated margin for {symbol}: {e}") from e
            logger.debug("%s already in isolated margin mode", symbol)
        try:
            await exchange.set_leverage(leverage, unified)
        except ccxt.BaseError as e:
            raise ExecutionError(f"Failed to set leverage for {symbol}: {e}") from e
        logger.info("Configured %s: isolated margin, leverage %dx", symbol, leverage)

    async def place_market_order(self, symbol: str, side: Side, quantity: float) -> ExecutionReport:
        exchange = await self._get_exchange()
        unified = await self._unified(symbol)
        try:
            order = await exchange.create_order(unified, "market", _order_side(side), quantity)
        except ccxt.BaseError as e:
            raise ExecutionError(f"Market order failed for {symbol}: {e}") from e
        return _report(order, quantity)

    async def _place_conditional(self, symbol: str, order_type: str, side: Side, stop_price: float) -> str:
        exchange = await self._get_exchange()
        unified = await self._unified(symbol)
        try:
            order = await exchange.create_order(
                unified,
                order_type,
                _order_side(side),
                None,
                None,
                {"stopPrice": float(exchange.price_to_precision(unified, stop_price)), "closePosition": True},
            )
        except ccxt.BaseError as e:
            raise ExecutionError(f"{order_type} order failed for {symbol}: {e}") from e
        return str(order.get("id", ""))

    async def place_stop_order(self, symbol: str, side: Side, stop_price: float) -> str:
        return await self._place_conditional(symbol, "STOP_MARKET", side, stop_price)

    async def place_take_profit_order(self, symbol: str, side: Side, stop_price: float) -> str:
        return await self._place_conditional(symbol, "TAKE_PROFIT_MARKET", side, stop_price)

    async def close_position(self, symbol: str, position_side: Side, quantity: float) -> ExecutionReport:
        exchange = await self._get_exchange()
        unified = await self._unified(symbol)
        try:
            order = await exchange.create_order(
                unified,
                "market",
                _order_side(opposite(position_side)),
                quantity,
                None,
                {"reduceOnly": True},
            )
        except ccxt.BaseError as e:
            raise ExecutionError(f"Close order failed for {symbol}: {e}") from e
        return _report(order, quantity)

    async def cancel_orders(self, symbol: str) -> None:
        exchange = await self._get_exchange()
        unified = await self._unified(symbol)
        try:
            await exchange.cancel_all_orders(unified)
        except ccxt.BaseError as e:
            raise ExecutionError(f"Failed to cancel orders for {symbol}: {e}") from e

    async def get_available_balance(self, asset: str) -> float:
        exchange = await self._get_exchange()
        try:
            balance = await exchange.fetch_balance()
        except ccxt.BaseError as e:
            raise ExecutionError(f"Failed to fetch balance: {e}") from e
        free = balance.get(asset, {}).get("free")
        return float(free) if free is not None else 0.0

    async def get_open_positions(self) -> list[ExchangePosition]:
        exchange = await self._get_exchange()
        try:
            raw_positions = await exchange.fetch_positions()
        except ccxt.BaseError as e:
            raise ExecutionError(f"Failed to fetch positions: {e}") from e

        positions: list[ExchangePosition] = []
        for p in raw_positions:
            contracts = float(p.get("contracts") or 0.0)
            if contracts == 0:
                continue
            info = p.get("info") or {}
            positions.append(
                ExchangePosition(
                    symbol=info.get("symbol") or p["symbol"],
                    side="LONG" if p.get("side") == "long" else "SHORT",
                    quantity=abs(contracts),
                    entry_price=float(p.get("entryPrice") or 0.0),
                )
            )
        return positions

    async def get_quantity_precision(self, symbol: str) -> int:
        market = await self._market(symbol)
        info_precision = (market.get("info") or {}).get("quantityPrecision")
        if info_precision is not None:
            return int(info_precision)
        return _precision_decimals((market.get("precision") or {}).get("amount"))

    # --- User data stream listen key ---

    async def create_listen_key(self) -> str:
        exchange = await self._get_exchange()
        try:
            response = await exchange.fapiPrivatePostListenKey()
        except ccxt.BaseError as e:
            raise ExecutionError(f"Failed to create listen key: {e}") from e
        return response["listenKey"]

    async def keepalive_listen_key(self) -> None:
        exchange = await self._get_exchange()
        try:
            await exchange.fapiPrivatePutListenKey()
        except ccxt.BaseError as e:
            raise ExecutionError(f"Failed to keep listen key alive: {e}") from e
