"""Tests for the ccxt executor with a mocked Binance futures client."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import ccxt.async_support as ccxt
import pytest

from mtabot.config import Settings
from mtabot.errors import ExecutionError
from mtabot.execution.exchange import (
    CcxtExecutor,
    _create_exchange,
    _order_fee,
    _precision_decimals,
    _report,
)

UNIFIED = "BTC/USDT:USDT"

# --- Helpers ---


def _make_exchange(market: dict | None = None) -> MagicMock:
    exchange = MagicMock()
    exchange.load_markets = AsyncMock()
    exchange.close = AsyncMock()
    exchange.markets_by_id = {
        "BTCUSDT": [market or {"symbol": UNIFIED, "info": {"quantityPrecision": 3}, "precision": {"amount": 0.001}}]
    }
    exchange.price_to_precision = MagicMock(side_effect=lambda symbol, price: f"{price:.1f}")
    exchange.create_order = AsyncMock(
        return_value={"id": 123, "filled": 0.01, "average": 27000.0, "fee": {"cost": 0.108}}
    )
    exchange.cancel_all_orders = AsyncMock()
    exchange.set_margin_mode = AsyncMock()
    exchange.set_leverage = AsyncMock()
    exchange.fetch_balance = AsyncMock(return_value={"USDT": {"free": 55.5, "total": 60.0}})
    exchange.fetch_positions = AsyncMock(return_value=[])
    exchange.fapiPrivatePostListenKey = AsyncMock(return_value={"listenKey": "abc123"})
    exchange.fapiPrivatePutListenKey = AsyncMock(return_value={})
    return exchange


class TestHelpers:
    def test_order_fee_single(self):
        assert _order_fee({"fee": {"cost": 0.5, "currency": "USDT"}}) == 0.5

    def test_order_fee_list(self):
        assert _order_fee({"fees": [{"cost": 0.25}, {"cost": 0.5}, {"cost": None}]}) == pytest.approx(0.75)

    def test_order_fee_missing(self):
        assert _order_fee({"fee": None}) is None

    def test_report_falls_back_to_requested_qty(self):
        report = _report({"id": "9", "filled": None, "average": None, "price": 101.0}, 0.2)
        assert report.order_id == "9"
        assert report.executed_qty == 0.2
        assert report.avg_price == 101.0
        assert report.fee is None

    @pytest.mark.parametrize(
        ("precision", "expected"),
        [(3, 3), (0, 0), (None, 0), (0.001, 3), (1e-05, 5), (1.0, 1), (0.5, 0)],
    )
    def test_precision_decimals(self, precision, expected):
        assert _precision_decimals(precision) == expected

    def test_create_exchange_uses_credentials(self):
        exchange = _create_exchange(Settings(api_key="key-1", api_secret="secret-1", testnet=False))
        assert isinstance(exchange, ccxt.binanceusdm)
        assert exchange.apiKey == "key-1"
        assert exchange.secret == "secret-1"


class TestOrders:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_market_order(self):
        exchange = _make_exchange()
        executor = CcxtExecutor(exchange=exchange)

        report = await executor.place_market_order("BTCUSDT", "LONG", 0.01)

        exchange.create_order.assert_awaited_once_with(UNIFIED, "market", "buy", 0.01)
        assert report.order_id == "123"
        assert report.executed_qty == 0.01
        assert report.avg_price == 27000.0
        assert report.fee == 0.108
        exchange.load_markets.assert_awaited_once()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_stop_order_rounds_price(self):
        exchange = _make_exchange()
        exchange.create_order.return_value = {"id": "sl-1"}
        executor = CcxtExecutor(exchange=exchange)

        order_id = await executor.place_stop_order("BTCUSDT", "SHORT", 26730.04)

        assert order_id == "sl-1"
        exchange.create_order.assert_awaited_once_with(
            UNIFIED,
            "STOP_MARKET",
            "sell",
            None,
            None,
            {"stopPrice": 26730.0, "closePosition": True},
        )

    @pytest.mark.asyncio(loop_scope="function")
    async def test_take_profit_order(self):
        exchange = _make_exchange()
        exchange.create_order.return_value = {"id": "tp-1"}
        executor = CcxtExecutor(exchange=exchange)

        assert await executor.place_take_profit_order("BTCUSDT", "SHORT", 27540.0) == "tp-1"
        assert exchange.create_order.await_args.args[1] == "TAKE_PROFIT_MARKET"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_close_position_is_reduce_only(self):
        exchange = _make_exchange()
        executor = CcxtExecutor(exchange=exchange)

        await executor.close_position("BTCUSDT", "SHORT", 0.01)

        exchange.create_order.assert_awaited_once_with(UNIFIED, "market", "buy", 0.01, None, {"reduceOnly": True})

    @pytest.mark.asyncio(loop_scope="function")
    async def test_order_error_wrapped(self):
        exchange = _make_exchange()
        exchange.create_order.side_effect = ccxt.InsufficientFunds("margin is insufficient")
        executor = CcxtExecutor(exchange=exchange)

        with pytest.raises(ExecutionError, match="Market order failed"):
            await executor.place_market_order("BTCUSDT", "LONG", 0.01)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_cancel_orders(self):
        exchange = _make_exchange()
        await CcxtExecutor(exchange=exchange).cancel_orders("BTCUSDT")
        exchange.cancel_all_orders.assert_awaited_once_with(UNIFIED)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_market_load_failure(self):
        exchange = _make_exchange()
        exchange.load_markets.side_effect = ccxt.NetworkError("timeout")
        with pytest.raises(ExecutionError, match="Failed to load markets"):
            await CcxtExecutor(exchange=exchange).cancel_orders("BTCUSDT")

    @pytest.mark.asyncio(loop_scope="function")
    async def test_unknown_market(self):
        exchange = _make_exchange()
        exchange.market = MagicMock(side_effect=ccxt.BadSymbol("nope"))
        with pytest.raises(ExecutionError, match="Unknown market"):
            await CcxtExecutor(exchange=exchange).cancel_orders("DOGEUSDT")


class TestAccount:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_setup_symbol(self):
        exchange = _make_exchange()
        await CcxtExecutor(exchange=exchange).setup_symbol("BTCUSDT", 10)
        exchange.set_margin_mode.assert_awaited_once_with("isolated", UNIFIED)
        exchange.set_leverage.assert_awaited_once_with(10, UNIFIED)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_setup_symbol_margin_unchanged(self):
        exchange = _make_exchange()
        exchange.set_margin_mode.side_effect = ccxt.ExchangeError('{"code":-4046,"msg":"No need to change"}')
        await CcxtExecutor(exchange=exchange).setup_symbol("BTCUSDT", 5)
        exchange.set_leverage.assert_awaited_once_with(5, UNIFIED)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_setup_symbol_margin_error(self):
        exchange = _make_exchange()
        exchange.set_margin_mode.side_effect = ccxt.ExchangeError("account restricted")
        with pytest.raises(ExecutionError, match="isolated margin"):
            await CcxtExecutor(exchange=exchange).setup_symbol("BTCUSDT", 5)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_available_balance(self):
        executor = CcxtExecutor(exchange=_make_exchange())
        assert await executor.get_available_balance("USDT") == 55.5
        assert await executor.get_available_balance("BNB") == 0.0

    @pytest.mark.asyncio(loop_scope="function")
    async def test_open_positions(self):
        exchange = _make_exchange()
        exchange.fetch_positions.return_value = [
            {
                "symbol": UNIFIED,
                "side": "short",
                "contracts": -0.02,
                "entryPrice": 27100.0,
                "info": {"symbol": "BTCUSDT"},
            },
            {"symbol": "ETH/USDT:USDT", "side": "long", "contracts": 0, "entryPrice": 0, "info": {}},
        ]
        positions = await CcxtExecutor(exchange=exchange).get_open_positions()

        assert len(positions) == 1
        assert positions[0].symbol == "BTCUSDT"
        assert positions[0].side == "SHORT"
        assert positions[0].quantity == 0.02
        assert positions[0].entry_price == 27100.0

    @pytest.mark.asyncio(loop_scope="function")
    async def test_quantity_precision_from_info(self):
        assert await CcxtExecutor(exchange=_make_exchange()).get_quantity_precision("BTCUSDT") == 3

    @pytest.mark.asyncio(loop_scope="function")
    async def test_quantity_precision_from_tick(self):
        exchange = _make_exchange({"symbol": UNIFIED, "info": {}, "precision": {"amount": 0.01}})
        assert await CcxtExecutor(exchange=exchange).get_quantity_precision("BTCUSDT") == 2

    @pytest.mark.asyncio(loop_scope="function")
    async def test_listen_key(self):
        exchange = _make_exchange()
        executor = CcxtExecutor(exchange=exchange)
        assert await executor.create_listen_key() == "abc123"
        await executor.keepalive_listen_key()
        exchange.fapiPrivatePutListenKey.assert_awaited_once()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_close_releases_client(self):
        exchange = _make_exchange()
        executor = CcxtExecutor(exchange=exchange)
        await executor.close()
        exchange.close.assert_awaited_once()
