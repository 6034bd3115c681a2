"""Tests for the user data stream: fills, balance updates, and exchange-side closes."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from mtabot.core.state import BotState
from mtabot.core.types import ExecutionReport
from mtabot.data.user_stream import BINANCE_FUTURES_USER_WS, UserDataStream, parse_order_update
from mtabot.errors import ExecutionError
from mtabot.execution.exchange import CcxtExecutor

# --- Helpers ---


def _make_mock_ws(messages: list[str]) -> AsyncMock:
    mock_ws = AsyncMock()
    side_effects: list[object] = list(messages) + [StopAsyncIteration()]
    mock_ws.__aiter__ = lambda self: self
    mock_ws.__anext__ = AsyncMock(side_effect=side_effects)
    mock_ws.close = AsyncMock()
    return mock_ws


def _make_connect_cm(mock_ws: AsyncMock) -> AsyncMock:
    cm = AsyncMock()
    cm.__aenter__ = AsyncMock(return_value=mock_ws)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


def _order_update(status: str = "FILLED", order_id: int = 42) -> dict:
    return {
        "e": "ORDER_TRADE_UPDATE",
        "o": {"s": "BTCUSDT", "i": order_id, "X": status, "z": "0.010", "ap": "27010.5", "n": "0.108"},
    }


def _account_update(balance: str = "812.4", amount: str = "0") -> dict:
    return {
        "e": "ACCOUNT_UPDATE",
        "a": {
            "B": [{"a": "USDT", "wb": balance, "cw": "900.0"}, {"a": "BNB", "wb": "1.0", "cw": "1.0"}],
            "P": [{"s": "BTCUSDT", "pa": amount, "ep": "0.0"}],
        },
    }


def _make_stream(on_position_update: AsyncMock | None = None) -> UserDataStream:
    executor = AsyncMock(spec=CcxtExecutor)
    executor.create_listen_key.return_value = "listen-key-1"
    return UserDataStream(executor, BotState(), on_position_update=on_position_update)


class TestParseOrderUpdate:
    def test_filled(self):
        symbol, report = parse_order_update(_order_update())
        assert symbol == "BTCUSDT"
        assert report == ExecutionReport("42", 0.01, 27010.5, 0.108)

    def test_not_filled(self):
        assert parse_order_update(_order_update(status="NEW")) is None
        assert parse_order_update(_order_update(status="PARTIALLY_FILLED")) is None

    def test_malformed(self):
        data = _order_update()
        data["o"]["ap"] = "n/a"
        assert parse_order_update(data) is None
        assert parse_order_update({"e": "ORDER_TRADE_UPDATE"}) is None


class TestHandleEvent:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_fill_recorded(self):
        stream = _make_stream()
        await stream.handle_event(_order_update())
        assert stream.state.fills["BTCUSDT"].order_id == "42"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_account_update(self):
        callback = AsyncMock()
        stream = _make_stream(callback)

        await stream.handle_event(_account_update(balance="812.4", amount="-0.010"))

        assert stream.state.available_balance == 812.4
        callback.assert_awaited_once_with("BTCUSDT", -0.01)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_account_update_without_callback(self):
        stream = _make_stream()
        await stream.handle_event(_account_update())
        assert stream.state.available_balance == 812.4

    @pytest.mark.asyncio(loop_scope="function")
    async def test_balance_uses_wallet_balance_not_cross_wallet(self):
        stream = _make_stream()
        await stream.handle_event(_account_update(balance="150.0"))
        assert stream.state.available_balance == 150.0

    @pytest.mark.asyncio(loop_scope="function")
    async def test_listen_key_expired_closes_socket(self):
        stream = _make_stream()
        stream._ws = AsyncMock()
        ws = stream._ws
        await stream.handle_event({"e": "listenKeyExpired"})
        ws.close.assert_awaited_once()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_unknown_event_ignored(self):
        stream = _make_stream()
        await stream.handle_event({"e": "MARGIN_CALL"})
        assert stream.state.fills == {}


class TestRun:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_processes_events_until_stopped(self):
        callback = AsyncMock()
        stream = _make_stream(callback)
        mock_ws = _make_mock_ws([
            "not json",
            json.dumps(["unexpected"]),
            json.dumps(_order_update()),
            json.dumps(_account_update(amount="0")),
        ])

        async def stop_on_sleep(duration: float) -> None:
            stream._running = False

        with (
            patch(
                "mtabot.data.user_stream.websockets.connect",
                return_value=_make_connect_cm(mock_ws),
            ) as mock_connect,
            patch("mtabot.data.user_stream.asyncio.sleep", side_effect=stop_on_sleep),
        ):
            await stream.run()
            await stream.stop()

        mock_connect.assert_called_once_with(f"{BINANCE_FUTURES_USER_WS}/listen-key-1")
        assert "BTCUSDT" in stream.state.fills
        callback.assert_awaited_once_with("BTCUSDT", 0.0)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_listen_key_failure_retries(self):
        stream = _make_stream()
        stream.executor.create_listen_key.side_effect = ExecutionError("unauthorized")
        sleeps: list[float] = []

        async def record_sleep(duration: float) -> None:
            sleeps.append(duration)
            if len(sleeps) == 2:
                stream._running = False

        with (
            patch("mtabot.data.user_stream.websockets.connect") as mock_connect,
            patch("mtabot.data.user_stream.asyncio.sleep", side_effect=record_sleep),
        ):
            await stream.run()
            await stream.stop()

        assert sleeps == [10.0, 10.0]
        mock_connect.assert_not_called()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_handler_error_does_not_stop_stream(self):
        callback = AsyncMock(side_effect=[RuntimeError("boom"), None])
        stream = _make_stream(callback)
        mock_ws = _make_mock_ws([json.dumps(_account_update()), json.dumps(_account_update())])

        async def stop_on_sleep(duration: float) -> None:
            stream._running = False

        with (
            patch("mtabot.data.user_stream.websockets.connect", return_value=_make_connect_cm(mock_ws)),
            patch("mtabot.data.user_stream.asyncio.sleep", side_effect=stop_on_sleep),
        ):
            await stream.run()
            await stream.stop()

        assert callback.await_count == 2
