"""Tests for the live data provider: stream names, kline parsing, reconnection."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mtabot.core.types import Candle
from mtabot.data.live import (
    BINANCE_FUTURES_WS,
    LiveDataProvider,
    _build_stream_names,
    _build_ws_url,
    _chunk_streams,
    _parse_kline_message,
)

_real_sleep = asyncio.sleep

# --- Helper to create a mock async-iterable WebSocket ---


def _make_mock_ws(messages: list[str]) -> AsyncMock:
    """Create a mock WebSocket that yields the given messages in order.

    After all messages are consumed, raises StopAsyncIteration to end the
    async-for loop in ``_listen()``.
    """
    mock_ws = AsyncMock()
    side_effects: list[object] = list(messages) + [StopAsyncIteration()]
    mock_ws.__aiter__ = lambda self: self
    mock_ws.__anext__ = AsyncMock(side_effect=side_effects)
    mock_ws.close = AsyncMock()
    return mock_ws


def _make_connect_cm(mock_ws: AsyncMock) -> AsyncMock:
    """Wrap a mock WebSocket in an async context manager for websockets.connect."""
    cm = AsyncMock()
    cm.__aenter__ = AsyncMock(return_value=mock_ws)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


def _kline_event(
    symbol: str = "BTCUSDT",
    interval: str = "1m",
    open_time: int = 1704067200000,
    close: float = 42200.0,
    is_closed: bool = True,
) -> dict:
    return {
        "e": "kline",
        "E": open_time + 1000,
        "s": symbol,
        "k": {
            "t": open_time,
            "T": open_time + 59999,
            "s": symbol,
            "i": interval,
            "o": "42000.0",
            "c": str(close),
            "h": "42500.0",
            "l": "41500.0",
            "v": "150.0",
            "x": is_closed,
        },
    }


def _combined(event: dict) -> str:
    stream = f"{event['s'].lower()}@kline_{event['k']['i']}"
    return json.dumps({"stream": stream, "data": event})


def _stopper(provider: LiveDataProvider):
    """asyncio.sleep replacement that ends the subscription on the first reconnect wait."""
    durations: list[float] = []

    async def stop_on_sleep(duration: float) -> None:
        durations.append(duration)
        provider._running = False
        provider._stopped.set()

    return stop_on_sleep, durations


class TestStreamNames:
    def test_every_pair(self):
        names = _build_stream_names(["BTCUSDT", "ETHUSDT"], ["1m", "1h"])
        assert names == ["btcusdt@kline_1m", "btcusdt@kline_1h", "ethusdt@kline_1m", "ethusdt@kline_1h"]

    def test_unsupported_timeframe_raises(self):
        with pytest.raises(ValueError, match="Unsupported timeframe"):
            _build_stream_names(["BTCUSDT"], ["7m"])

    def test_chunking(self):
        streams = [f"s{i}@kline_1m" for i in range(5)]
        assert _chunk_streams(streams, size=2) == [streams[0:2], streams[2:4], streams[4:5]]

    def test_build_ws_url(self):
        url = _build_ws_url(["btcusdt@kline_1m", "btcusdt@kline_1h"])
        assert url == f"{BINANCE_FUTURES_WS}/stream?streams=btcusdt@kline_1m/btcusdt@kline_1h"


class TestParseKlineMessage:
    def test_final_candle(self):
        symbol, tf, candle = _parse_kline_message(_kline_event(interval="5m"))
        assert symbol == "BTCUSDT"
        assert tf == "5m"
        assert candle == Candle(1704067200000, 1704067259999, 42000.0, 42500.0, 41500.0, 42200.0, 150.0, True)

    def test_partial_candle(self):
        _, _, candle = _parse_kline_message(_kline_event(is_closed=False))
        assert candle.is_final is False

    def test_non_kline_event(self):
        assert _parse_kline_message({"e": "aggTrade"}) is None

    def test_missing_kline_payload(self):
        assert _parse_kline_message({"e": "kline", "s": "BTCUSDT"}) is None

    def test_unknown_interval(self):
        assert _parse_kline_message(_kline_event(interval="7m")) is None

    def test_malformed_price(self):
        event = _kline_event()
        event["k"]["c"] = "not-a-number"
        assert _parse_kline_message(event) is None

    def test_missing_field(self):
        event = _kline_event()
        del event["k"]["v"]
        assert _parse_kline_message(event) is None


class TestLiveDataProvider:
    def test_not_connected_initially(self):
        assert LiveDataProvider().is_connected is False

    @pytest.mark.asyncio(loop_scope="function")
    async def test_delivers_partial_and_final_events(self):
        mock_ws = _make_mock_ws([
            _combined(_kline_event(close=1.0, is_closed=False)),
            _combined(_kline_event(close=2.0, is_closed=True)),
            _combined(_kline_event(interval="1h", close=3.0, is_closed=False)),
        ])
        provider = LiveDataProvider()
        callback = MagicMock()
        stop_on_sleep, _ = _stopper(provider)

        with (
            patch("mtabot.data.live.websockets.connect", return_value=_make_connect_cm(mock_ws)) as mock_connect,
            patch("mtabot.data.live.asyncio.sleep", side_effect=stop_on_sleep),
        ):
            await provider.subscribe(["BTCUSDT"], ["1m", "1h"], callback)

        assert callback.call_count == 3
        symbols_tfs = [(c.args[0], c.args[1]) for c in callback.call_args_list]
        assert symbols_tfs == [("BTCUSDT", "1m"), ("BTCUSDT", "1m"), ("BTCUSDT", "1h")]
        assert [c.args[2].is_final for c in callback.call_args_list] == [False, True, False]
        mock_connect.assert_called_once_with(
            f"{BINANCE_FUTURES_WS}/stream?streams=btcusdt@kline_1m/btcusdt@kline_1h"
        )

    @pytest.mark.asyncio(loop_scope="function")
    async def test_skips_bad_messages(self):
        mock_ws = _make_mock_ws([
            "not json",
            json.dumps([1, 2, 3]),
            json.dumps({"stream": "x", "data": "oops"}),
            json.dumps({"result": None, "id": 1}),
            _combined(_kline_event()),
        ])
        provider = LiveDataProvider()
        callback = MagicMock()
        stop_on_sleep, _ = _stopper(provider)

        with (
            patch("mtabot.data.live.websockets.connect", return_value=_make_connect_cm(mock_ws)),
            patch("mtabot.data.live.asyncio.sleep", side_effect=stop_on_sleep),
        ):
            await provider.subscribe(["BTCUSDT"], ["1m"], callback)

        callback.assert_called_once()

    @pytest.mark.asyncio(loop_scope="function")
    async def test_callback_error_does_not_crash_provider(self):
        mock_ws = _make_mock_ws([_combined(_kline_event(close=1.0)), _combined(_kline_event(close=2.0))])
        provider = LiveDataProvider()
        callback = MagicMock(side_effect=[RuntimeError("boom"), None])
        stop_on_sleep, _ = _stopper(provider)

        with (
            patch("mtabot.data.live.websockets.connect", return_value=_make_connect_cm(mock_ws)),
            patch("mtabot.data.live.asyncio.sleep", side_effect=stop_on_sleep),
        ):
            await provider.subscribe(["BTCUSDT"], ["1m"], callback)

        assert callback.call_count == 2

    @pytest.mark.asyncio(loop_scope="function")
    async def test_reconnect_backoff(self):
        provider = LiveDataProvider()
        durations: list[float] = []

        async def mock_sleep(duration: float) -> None:
            durations.append(duration)
            if len(durations) == 8:
                provider._running = False
                provider._stopped.set()

        with (
            patch("mtabot.data.live.websockets.connect", side_effect=OSError("refused")),
            patch("mtabot.data.live.asyncio.sleep", side_effect=mock_sleep),
        ):
            await provider.subscribe(["BTCUSDT"], ["1m"], MagicMock())

        assert durations == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_one_connection_per_chunk(self):
        provider = LiveDataProvider()
        durations: list[float] = []

        async def stop_after_both(duration: float) -> None:
            durations.append(duration)
            if len(durations) == 2:
                provider._running = False
                provider._stopped.set()
            else:
                await _real_sleep(0)

        with (
            patch("mtabot.data.live._chunk_streams", side_effect=lambda s: _chunk_streams(s, size=2)),
            patch(
                "mtabot.data.live.websockets.connect",
                side_effect=lambda url: _make_connect_cm(_make_mock_ws([])),
            ) as mock_connect,
            patch("mtabot.data.live.asyncio.sleep", side_effect=stop_after_both),
        ):
            await provider.subscribe(["BTCUSDT", "ETHUSDT"], ["1m", "1h"], MagicMock())

        assert mock_connect.call_count == 2

    @pytest.mark.asyncio(loop_scope="function")
    async def test_resubscribe_before_subscribe(self):
        provider = LiveDataProvider()
        await provider.resubscribe(["ETHUSDT"])
        assert provider.symbols == ["ETHUSDT"]

    @pytest.mark.asyncio(loop_scope="function")
    async def test_unsubscribe_safe_when_not_connected(self):
        provider = LiveDataProvider()
        await provider.unsubscribe()
        assert provider.is_connected is False
