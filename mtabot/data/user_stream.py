"""User data stream — order fills and account updates from Binance futures.

Fills feed the exit price/fee lookup used when positions are opened and
closed. Account updates refresh the available balance and report positions
that the exchange closed on its own (stop-loss, take-profit, liquidation).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable

import websockets
import websockets.exceptions
from websockets.asyncio.client import ClientConnection

from mtabot.core.state import BotState
from mtabot.core.types import ExecutionReport
from mtabot.errors import ExecutionError
from mtabot.execution.exchange import CcxtExecutor

logger = logging.getLogger(__name__)

BINANCE_FUTURES_USER_WS = "wss://fstream.binance.com/ws"

KEEPALIVE_INTERVAL_S = 30 * 60
RECONNECT_DELAY_S = 10.0

# Called with (symbol, signed position amount) on every position update
PositionUpdateCallback = Callable[[str, float], Awaitable[None]]


def parse_order_update(data: dict) -> tuple[str, ExecutionReport] | None:
    """Extract a fill from an ORDER_TRADE_UPDATE event. Only FILLED orders count."""
    order = data.get("o")
    if not isinstance(order, dict) or order.get("X") != "FILLED":
        return None
    try:
        return str(order["s"]), ExecutionReport(
            order_id=str(order["i"]),
            executed_qty=float(order.get("z", 0.0)),
            avg_price=float(order.get("ap", 0.0)),
            fee=float(order.get("n", 0.0)),
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Malformed order update, dropping")
        return None


class UserDataStream:
    """Keeps a listen-key WebSocket open and applies events to ``state``.

    Usage:
        stream = UserDataStream(executor, state, quote_asset="USDT", on_position_update=bot.on_exchange_position)
        task = asyncio.create_task(stream.run())
        ...
        await stream.stop()
    """

    def __init__(
        self,
        executor: CcxtExecutor,
        state: BotState,
        quote_asset: str = "USDT",
        on_position_update: PositionUpdateCallback | None = None,
    ) -> None:
        self.executor = executor
        self.state = state
        self.quote_asset = quote_asset
        self.on_position_update = on_position_update
        self._running = False
        self._ws: ClientConnection | None = None
        self._keepalive_task: asyncio.Task[None] | None = None

    async def run(self) -> None:
        """Connect and listen until :meth:`stop`. Reconnects with a fresh listen key."""
        self._running = True
        self._keepalive_task = asyncio.create_task(self._keepalive())
        while self._running:
            try:
                listen_key = await self.executor.create_listen_key()
                async with websockets.connect(f"{BINANCE_FUTURES_USER_WS}/{listen_key}") as ws:
                    self._ws = ws
                    logger.info("User data stream connected")
                    await self._listen(ws)
            except ExecutionError as e:
                logger.error("User data stream listen key error: %s", e)
            except (OSError, websockets.exceptions.WebSocketException) as e:
                if not self._running:
                    break
                logger.warning("User data stream error: %s", e)
            finally:
                self._ws = None

            if self._running:
                logger.info("Reconnecting user data stream in %.0fs", RECONNECT_DELAY_S)
                await asyncio.sleep(RECONNECT_DELAY_S)

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception:
                logger.debug("Error closing user data WebSocket (ignored)", exc_info=True)
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._keepalive_task
            self._keepalive_task = None

    async def _keepalive(self) -> None:
        while self._running:
            await asyncio.sleep(KEEPALIVE_INTERVAL_S)
            try:
                await self.executor.keepalive_listen_key()
                logger.debug("Listen key kept alive")
            except ExecutionError as e:
                logger.warning("Listen key keepalive failed: %s", e)

    async def _listen(self, ws: ClientConnection) -> None:
        async for raw_message in ws:
            if not self._running:
                break
            try:
                data = json.loads(raw_message)
            except json.JSONDecodeError:
                logger.warning("Received non-JSON user data message, skipping")
                continue
            if not isinstance(data, dict):
                continue
            try:
                await self.handle_event(data)
            except Exception:
                logger.exception("Error handling user data event %s", data.get("e"))

    async def handle_event(self, data: dict) -> None:
        """Apply one user data event to the bot state."""
        event = data.get("e")
        if event == "ORDER_TRADE_UPDATE":
            parsed = parse_order_update(data)
            if parsed is not None:
                symbol, report = parsed
                self.state.fills[symbol] = report
                logger.debug("Fill %s: %.6f @ %.4f", symbol, report.executed_qty, report.avg_price)

        elif event == "ACCOUNT_UPDATE":
            account = data.get("a") or {}
            for balance in account.get("B", []):
                if balance.get("a") == self.quote_asset:
                    self.state.available_balance = float(balance.get("wb", 0.0))
            for position in account.get("P", []):
                symbol = position.get("s")
                if not symbol:
                    continue
                amount = float(position.get("pa", 0.0))
                if self.on_position_update is not None:
                    await self.on_position_update(symbol, amount)

        elif event == "listenKeyExpired":
            logger.warning("Listen key expired, reconnecting")
            if self._ws is not None:
                await self._ws.close()
