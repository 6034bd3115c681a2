"""Live data provider — streams kline events via Binance combined WebSocket streams.

Subscribes every (symbol, timeframe) pair as ``<symbol>@kline_<tf>``, split
into chunks of at most ``MAX_STREAMS_PER_CONNECTION`` streams per connection.
Each connection reconnects forever with capped exponential backoff. Every
kline event, partial or final, is handed to the callback.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging

import websockets
import websockets.exceptions
from websockets.asyncio.client import ClientConnection

from mtabot.core.timeframe import TIMEFRAME_ORDER
from mtabot.core.types import Candle
from mtabot.data.provider import CandleCallback, StreamProvider

logger = logging.getLogger(__name__)

# Binance USDⓈ-M futures WebSocket base URL
BINANCE_FUTURES_WS = "wss://fstream.binance.com"

# Binance allows up to 1024 streams per connection
MAX_STREAMS_PER_CONNECTION = 900

# Reconnect settings
INITIAL_BACKOFF_S = 1.0
MAX_BACKOFF_S = 30.0
BACKOFF_MULTIPLIER = 2.0


def _build_stream_names(symbols: list[str], timeframes: list[str]) -> list[str]:
    """Build kline stream names.

    Example: ['btcusdt@kline_1m', 'btcusdt@kline_1h']
    """
    streams: list[str] = []
    for symbol in symbols:
        for tf in timeframes:
            if tf not in TIMEFRAME_ORDER:
                raise ValueError(f"Unsupported timeframe for Binance WebSocket: {tf}")
            streams.append(f"{symbol.lower()}@kline_{tf}")
    return streams


def _chunk_streams(streams: list[str], size: int = MAX_STREAMS_PER_CONNECTION) -> list[list[str]]:
    return [streams[i : i + size] for i in range(0, len(streams), size)]


def _build_ws_url(streams: list[str], base_url: str = BINANCE_FUTURES_WS) -> str:
    """Build the combined stream URL for one connection."""
    return f"{base_url}/stream?streams={'/'.join(streams)}"


def _parse_kline_message(data: dict) -> tuple[str, str, Candle] | None:
    """Parse a kline event into (symbol, timeframe, candle).

    Returns None for non-kline events and for malformed klines.
    """
    if data.get("e") != "kline":
        return None

    kline = data.get("k")
    if not isinstance(kline, dict):
        logger.warning("Kline event without kline payload, dropping")
        return None

    symbol = data.get("s") or kline.get("s")
    tf = kline.get("i")
    if not symbol or tf not in TIMEFRAME_ORDER:
        logger.warning("Kline event with unknown symbol/interval (%s, %s), dropping", symbol, tf)
        return None

    try:
        candle = Candle(
            open_time=int(kline["t"]),
            close_time=int(kline["T"]),
            open=float(kline["o"]),
            high=float(kline["h"]),
            low=float(kline["l"]),
            close=float(kline["c"]),
            volume=float(kline["v"]),
            is_final=bool(kline.get("x", False)),
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Malformed kline for %s %s: %s, dropping", symbol, tf, e)
        return None

    return str(symbol).upper(), tf, candle


class LiveDataProvider(StreamProvider):
    """Streams kline events from Binance USDⓈ-M futures.

    Usage:
        provider = LiveDataProvider()
        task = asyncio.create_task(
            provider.subscribe(["BTCUSDT", "ETHUSDT"], ["1m", "1h"], reducer.on_event)
        )
        ...
        await provider.resubscribe(["BTCUSDT"])
        await provider.unsubscribe()
    """

    def __init__(self, base_url: str = BINANCE_FUTURES_WS) -> None:
        self.base_url = base_url
        self._running = False
        self._timeframes: list[str] = []
        self._symbols: list[str] = []
        self._callback: CandleCallback | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._connections: set[ClientConnection] = set()
        self._stopped = asyncio.Event()

    @property
    def symbols(self) -> list[str]:
        return list(self._symbols)

    @property
    def is_connected(self) -> bool:
        """Return True if at least one WebSocket is currently open."""
        return self._running and bool(self._connections)

    async def subscribe(
        self,
        symbols: list[str],
        timeframes: list[str],
        callback: CandleCallback,
    ) -> None:
        """Open the stream connections and block until :meth:`unsubscribe`."""
        self._running = True
        self._stopped.clear()
        self._timeframes = list(timeframes)
        self._callback = callback
        self._start(symbols)
        await self._stopped.wait()
        logger.info("Live data provider stopped.")

    async def resubscribe(self, symbols: list[str]) -> None:
        """Reconnect with a new symbol set. Series state is untouched."""
        if not self._running:
            self._symbols = list(symbols)
            return
        logger.info("Resubscribing kline streams for %d symbols", len(symbols))
        await self._stop_tasks()
        self._start(symbols)

    async def unsubscribe(self) -> None:
        """Close every connection and stop listening.

        Safe to call even if not currently subscribed.
        """
        self._running = False
        await self._stop_tasks()
        self._stopped.set()
        logger.info("Unsubscribed from live data.")

    def _start(self, symbols: list[str]) -> None:
        self._symbols = list(symbols)
        streams = _build_stream_names(self._symbols, self._timeframes)
        if not streams:
            logger.warning("No symbols to subscribe, stream idle")
            return
        for chunk in _chunk_streams(streams):
            url = _build_ws_url(chunk, self.base_url)
            self._tasks.append(asyncio.create_task(self._run_connection(url)))
        logger.info(
            "Subscribing to %d kline streams over %d connection(s)",
            len(streams),
            len(self._tasks),
        )

    async def _stop_tasks(self) -> None:
        for ws in list(self._connections):
            try:
                await ws.close()
            except Exception:
                logger.debug("Error closing WebSocket (ignored)", exc_info=True)
        self._connections.clear()

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    async def _run_connection(self, url: str) -> None:
        """Keep one combined-stream connection alive until stopped."""
        backoff = INITIAL_BACKOFF_S
        attempts = 0

        while self._running:
            try:
                async with websockets.connect(url) as ws:
                    self._connections.add(ws)
                    attempts = 0
                    backoff = INITIAL_BACKOFF_S
                    logger.info("WebSocket connected (%s)", url[:120])
                    try:
                        await self._listen(ws)
                    finally:
                        self._connections.discard(ws)

                if not self._running:
                    break
                logger.info("WebSocket stream ended, reconnecting...")

            except websockets.exceptions.ConnectionClosed as e:
                if not self._running:
                    break
                attempts += 1
                logger.warning(
                    "WebSocket connection closed (code=%s, reason=%s). "
                    "Reconnecting in %.1fs (attempt %d)...",
                    e.rcvd.code if e.rcvd is not None else "?",
                    e.rcvd.reason if e.rcvd is not None else "?",
                    backoff,
                    attempts,
                )

            except (OSError, websockets.exceptions.WebSocketException) as e:
                if not self._running:
                    break
                attempts += 1
                logger.warning(
                    "WebSocket error: %s. Reconnecting in %.1fs (attempt %d)...",
                    e,
                    backoff,
                    attempts,
                )

            if self._running:
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_S)

    async def _listen(self, ws: ClientConnection) -> None:
        """Dispatch kline events to the callback."""
        async for raw_message in ws:
            if not self._running:
                break

            try:
                data = json.loads(raw_message)
            except json.JSONDecodeError:
                logger.warning("Received non-JSON WebSocket message, skipping")
                continue

            if not isinstance(data, dict):
                logger.warning("Received unexpected WebSocket payload, skipping")
                continue

            # Combined stream wraps data in {"stream": "...", "data": {...}}
            if "data" in data:
                data = data["data"]
                if not isinstance(data, dict):
                    continue

            result = _parse_kline_message(data)
            if result is None:
                continue

            symbol, tf, candle = result
            if self._callback is None:
                continue
            try:
                self._callback(symbol, tf, candle)
            except Exception:
                logger.exception("Error in candle callback for %s %s", symbol, tf)
