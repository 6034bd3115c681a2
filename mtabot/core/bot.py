"""Trading bot orchestrator: warm-up, candle loop, entries, exchange exits, shutdown."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from decimal import ROUND_DOWN, Decimal

from mtabot.alerts.discord import DiscordAlerter
from mtabot.config import Settings, StrategiesConfig
from mtabot.core.decision import DecisionEngine
from mtabot.core.indicators import IndicatorPeriods
from mtabot.core.mode import ModeController
from mtabot.core.position_manager import PositionManager
from mtabot.core.reducer import CandleProcessed, StreamReducer
from mtabot.core.series import CandleStore
from mtabot.core.state import BotState
from mtabot.core.types import (
    ClosedTrade,
    ExchangeExitReason,
    ExecutionReport,
    Position,
    Side,
    Signal,
    TradingMode,
)
from mtabot.data.provider import HistoryProvider, StreamProvider
from mtabot.data.user_stream import UserDataStream
from mtabot.errors import ExecutionError, PositionAlreadyOpenError
from mtabot.execution.executor import Executor, opposite
from mtabot.persistence.models import (
    POSITIONS_KEY,
    UPDATE_STATUS_KEY,
    position_from_dict,
    position_to_dict,
)
from mtabot.persistence.store import KeyValueStore
from mtabot.predictor.base import DisabledPredictor, Predictor

logger = logging.getLogger(__name__)

MS_PER_HOUR = 3_600_000


def _now_ms() -> int:
    return int(time.time() * 1000)


def indicator_periods(strategies: StrategiesConfig) -> IndicatorPeriods:
    """RSI and EMA come from trend following, Bollinger from mean reversion, volume SMA from breakout."""
    return IndicatorPeriods(
        rsi=strategies.trend_following.rsi_period,
        ema=strategies.trend_following.ema_period,
        bb=strategies.mean_reversion.bollinger_period,
        bb_std_dev=strategies.mean_reversion.bollinger_std_dev,
        sma_volume=strategies.breakout.volume_sma_period,
    )


def round_down(value: float, decimals: int) -> float:
    """Truncate ``value`` to ``decimals`` places."""
    step = Decimal(1).scaleb(-decimals)
    return float(Decimal(str(value)).quantize(step, rounding=ROUND_DOWN))


def protective_prices(
    side: Side,
    price: float,
    stop_loss_percent: float,
    take_profit_percent: float,
) -> tuple[float, float]:
    """Stop-loss and take-profit trigger prices for an entry at ``price``."""
    if side == "LONG":
        return price * (1 - stop_loss_percent / 100), price * (1 + take_profit_percent / 100)
    return price * (1 + stop_loss_percent / 100), price * (1 - take_profit_percent / 100)


class TradingBot:
    """Wires the stream reducer, decision engine, and position manager together.

    Every final candle that lands on a ready series is handled by a single
    consumer task, so management and decision cycles never interleave.
    Only the primary (first) timeframe triggers trading; every timeframe
    feeds the predictor and the mode check.

    Usage:
        bot = TradingBot(settings, executor, LiveDataProvider(), store, history=HistoricalDataProvider())
        await bot.run()  # until cancelled; shuts down cleanly

    Attributes:
        user_stream: Optional execution feed started alongside the kline stream.
        closed_trades: Trades closed during this run, oldest first.
    """

    def __init__(
        self,
        settings: Settings,
        executor: Executor,
        stream: StreamProvider,
        store: KeyValueStore,
        history: HistoryProvider | None = None,
        predictor: Predictor | None = None,
        alerter: DiscordAlerter | None = None,
        persist: bool = True,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.settings = settings
        self.executor = executor
        self.stream = stream
        self.store = store
        self.history = history
        self.predictor = predictor or DisabledPredictor()
        self.alerter = alerter
        self.persist = persist
        self.clock = clock
        self.user_stream: UserDataStream | None = None
        self.closed_trades: list[ClosedTrade] = []

        self.primary_timeframe = settings.primary_timeframe
        self.confirmation_timeframe = settings.confirmation_timeframe
        self.periods = indicator_periods(settings.strategies)
        capacity = max(settings.max_candles_to_store, self.periods.min_candles)
        self.state = BotState(candles=CandleStore(capacity))

        self.reducer = StreamReducer(self.state.candles, self.periods)
        predictor_enabled = settings.predictor.enabled
        self.decision = DecisionEngine(
            self.state,
            settings.strategies,
            self.predictor,
            self.primary_timeframe,
            self.confirmation_timeframe,
            predictor_enabled=predictor_enabled,
        )
        self.positions = PositionManager(
            self.state,
            executor,
            self.predictor,
            self.primary_timeframe,
            self.confirmation_timeframe,
            precedence=settings.close_precedence,
            predictor_enabled=predictor_enabled,
            clock=clock,
        )
        self.mode = ModeController(
            self.state,
            executor,
            quote_asset=settings.quote_asset,
            min_balance=settings.min_balance,
            on_mode_change=self._on_mode_change,
        )

        self._precision: dict[str, int] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False
        self._shut_down = False
        self._positions_loaded = False
        self._predictor_loaded = False

    @property
    def symbols(self) -> list[str]:
        return list(self.settings.symbols_to_watch)

    @property
    def timeframes(self) -> list[str]:
        return list(self.settings.timeframes_to_watch)

    # --- Startup ---

    async def start(self) -> None:
        """Prepare state before streaming: positions, symbols, mode, history, predictor."""
        await self.store.initialize()
        if self.persist:
            await self.restore_positions()
        await self.sync_positions()
        self._positions_loaded = True

        for symbol in self.symbols:
            try:
                await self.executor.setup_symbol(symbol, self.settings.leverage)
            except ExecutionError as e:
                logger.error("Failed to configure %s: %s", symbol, e)

        await self.mode.check()
        await self.predictor.load()
        self._predictor_loaded = True
        await self.warm_up()

    async def restore_positions(self) -> None:
        data = await self.store.load(POSITIONS_KEY)
        if not data:
            logger.info("No saved positions")
            return
        for symbol, raw in data.items():
            position = position_from_dict(raw)
            if position.is_open:
                self.state.positions[symbol] = position
                logger.info(
                    "Restored %s %s %.6f @ %.6f (%s)",
                    symbol,
                    position.side,
                    position.quantity,
                    position.entry_price,
                    position.active_strategy or "-",
                )

    async def sync_positions(self) -> None:
        """Reconcile tracked positions with what the exchange actually holds."""
        try:
            exchange_positions = await self.executor.get_open_positions()
        except ExecutionError as e:
            logger.error("Position sync failed, keeping restored positions: %s", e)
            return

        held = {p.symbol: p for p in exchange_positions}
        for symbol, position in list(self.state.open_positions().items()):
            remote = held.get(symbol)
            if remote is None or remote.side != position.side:
                logger.warning("[%s] Saved %s position no longer on the exchange, dropping it", symbol, position.side)
                self.state.positions[symbol] = Position()

        for symbol, remote in held.items():
            position = self.state.position(symbol)
            if position.is_open:
                position.quantity = remote.quantity
                continue
            self.state.positions[symbol] = Position(
                side=remote.side,
                entry_price=remote.entry_price,
                quantity=remote.quantity,
                open_time=self.clock(),
            )
            logger.warning(
                "[%s] Untracked %s position %.6f @ %.6f found on the exchange, managing without a strategy",
                symbol,
                remote.side,
                remote.quantity,
                remote.entry_price,
            )
        await self.save_positions()

    async def warm_up(self) -> None:
        """Load recent history for every watched pair.

        The cache is refreshed from the exchange when the last refresh is
        older than ``history_refresh_hours``, after which the predictor is
        retrained.
        """
        if self.history is None:
            logger.warning("No history provider, series warm up from the live stream only")
            return

        status = await self.store.load(UPDATE_STATUS_KEY) or {}
        last_update = status.get("last_update_ms")
        now = self.clock()
        refresh = last_update is None or now - last_update >= self.settings.history_refresh_hours * MS_PER_HOUR
        logger.info("Warming up %d symbols (refresh=%s)", len(self.symbols), refresh)

        failures = 0
        for symbol in self.symbols:
            for timeframe in self.timeframes:
                try:
                    candles = await self.history.load_history(
                        symbol,
                        timeframe,
                        self.settings.history_limit,
                        refresh=refresh,
                    )
                except Exception:
                    logger.exception("History load failed for %s %s", symbol, timeframe)
                    failures += 1
                    continue
                self.reducer.load_history(symbol, timeframe, candles)
                self.predictor.collect_history(symbol, timeframe, candles)

        if refresh and failures == 0:
            if self.persist:
                await self.store.save(UPDATE_STATUS_KEY, {"last_update_ms": now})
            if self.settings.predictor.enabled:
                await self.predictor.train()

    # --- Run loop ---

    def subscription_symbols(self) -> list[str]:
        if self.state.mode == "MANAGEMENT_ONLY":
            return sorted(self.state.open_positions())
        return self.symbols

    async def run(self) -> None:
        """Start, stream, and process candles until cancelled.

        Shutdown runs however this exits, including cancellation during startup.
        """
        try:
            await self.start()
            await self._stream_until_done()
        finally:
            await self.shutdown()

    async def _stream_until_done(self) -> None:
        self._running = True
        self._tasks = [
            asyncio.create_task(
                self.stream.subscribe(self.subscription_symbols(), self.timeframes, self.reducer.on_event)
            ),
            asyncio.create_task(self._consume()),
            asyncio.create_task(self._balance_loop()),
        ]
        if self.user_stream is not None:
            self._tasks.append(asyncio.create_task(self.user_stream.run()))
        if self.settings.predictor.enabled:
            self._tasks.append(asyncio.create_task(self._training_loop()))

        logger.info(
            "Bot running: %d symbols, timeframes %s, mode %s",
            len(self.symbols),
            ",".join(self.timeframes),
            self.state.mode,
        )
        await asyncio.gather(*self._tasks)

    async def _consume(self) -> None:
        while self._running:
            message = await self.reducer.notifications.get()
            try:
                await self.on_candle_processed(message)
            except Exception:
                logger.exception("Error handling candle for %s %s", message.symbol, message.timeframe)

    async def _balance_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.balance_check_interval_s)
            await self.mode.check()

    async def _training_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.predictor.training_interval_s)
            minimum = self.settings.predictor.min_data_for_training
            enough = all(
                self.predictor.data_count(symbol, timeframe) >= minimum
                for symbol in self.symbols
                for timeframe in self.timeframes
            )
            if not enough:
                logger.info("Not enough data on every timeframe to retrain the predictor yet")
                continue
            try:
                await self.predictor.train()
            except Exception:
                logger.exception("Predictor training failed")

    async def on_candle_processed(self, message: CandleProcessed) -> None:
        """Handle one ready final candle."""
        symbol, timeframe = message.symbol, message.timeframe
        self.predictor.collect(symbol, timeframe, message.candle, message.indicators)
        await self.mode.check()

        if timeframe != self.primary_timeframe:
            return

        if self.state.position(symbol).is_open:
            if await self.check_exchange_exit(symbol):
                return
            trade = await self.positions.manage(symbol)
            if trade is not None:
                await self._record_close(trade)
            return

        if self.state.mode == "MANAGEMENT_ONLY":
            logger.debug("[%s] MANAGEMENT_ONLY, no new entries", symbol)
            return

        signal = await self.decision.decide(symbol, timeframe)
        if signal is not None:
            await self.open_position(symbol, signal)

    # --- Entries ---

    async def _quantity_precision(self, symbol: str) -> int:
        if symbol not in self._precision:
            self._precision[symbol] = await self.executor.get_quantity_precision(symbol)
        return self._precision[symbol]

    async def _available_balance(self) -> float:
        if self.state.available_balance is not None:
            return self.state.available_balance
        balance = await self.executor.get_available_balance(self.settings.quote_asset)
        self.state.available_balance = balance
        return balance

    def _entry_fill(self, symbol: str, report: ExecutionReport, price: float) -> tuple[float, float, float]:
        """Entry price, quantity, and fee, preferring the execution feed."""
        fill = self.state.fills.get(symbol)
        if fill is not None and fill.order_id == report.order_id:
            self.state.pop_fill(symbol)
            report = fill
        entry_price = report.avg_price if report.avg_price > 0 else price
        quantity = report.executed_qty
        fee = report.fee
        if fee is None:
            fee = quantity * entry_price * self.settings.taker_fee_percent / 100
        return entry_price, quantity, fee

    async def open_position(self, symbol: str, signal: Signal) -> Position | None:
        """Open a position for an accepted signal.

        Returns the new position, or None if sizing or any order failed.

        Raises:
            PositionAlreadyOpenError: The symbol already holds a position.
        """
        if self.state.position(symbol).is_open:
            raise PositionAlreadyOpenError(symbol)

        price = self.state.last_price(symbol, self.primary_timeframe)
        if not price:
            logger.warning("[%s] No price available, skipping entry", symbol)
            return None

        try:
            balance = await self._available_balance()
            precision = await self._quantity_precision(symbol)
        except ExecutionError as e:
            logger.error("[%s] Cannot size entry: %s", symbol, e)
            return None

        margin = balance * self.settings.margin_percent_per_trade / 100
        notional = margin * self.settings.leverage
        if notional < self.settings.min_notional:
            logger.warning(
                "[%s] Position value %.2f %s below exchange minimum %.2f, skipping entry",
                symbol,
                notional,
                self.settings.quote_asset,
                self.settings.min_notional,
            )
            return None

        quantity = round_down(notional / price, precision)
        if quantity <= 0:
            logger.warning("[%s] Quantity rounds to zero at precision %d, skipping entry", symbol, precision)
            return None

        logger.info(
            "[%s] Opening %s %.6f via %s%s",
            symbol,
            signal.side,
            quantity,
            signal.strategy,
            " (AI confirmed)" if signal.ai_confirmed else "",
        )
        try:
            report = await self.executor.place_market_order(symbol, signal.side, quantity)
        except ExecutionError as e:
            logger.error("[%s] Entry order failed: %s", symbol, e)
            await self._alert_error(f"{symbol} entry order failed: {e}")
            return None

        entry_price, filled_qty, entry_fee = self._entry_fill(symbol, report, price)
        config = signal.config
        stop_price, take_price = protective_prices(
            signal.side,
            price,
            config.stop_loss_percent,
            config.take_profit_percent,
        )
        try:
            stop_id = await self.executor.place_stop_order(symbol, opposite(signal.side), stop_price)
            take_id = await self.executor.place_take_profit_order(symbol, opposite(signal.side), take_price)
        except ExecutionError as e:
            logger.error("[%s] Protective orders failed, flattening entry: %s", symbol, e)
            await self._abort_entry(symbol, signal.side, filled_qty)
            await self._alert_error(f"{symbol} protective orders failed: {e}")
            return None

        position = Position(
            side=signal.side,
            entry_price=entry_price,
            quantity=filled_qty,
            entry_fee=entry_fee,
            active_strategy=signal.strategy,
            active_strategy_config=config,
            open_time=self.clock(),
            max_duration_ms=config.max_operation_duration_minutes * 60_000,
            stop_order_id=stop_id,
            take_order_id=take_id,
        )
        self.state.positions[symbol] = position
        self.state.available_balance = None
        logger.warning(
            "[%s] Opened %s %.6f @ %.6f (%s), fee %.6f, SL %.6f, TP %.6f",
            symbol,
            position.side,
            position.quantity,
            position.entry_price,
            position.active_strategy,
            position.entry_fee,
            stop_price,
            take_price,
        )
        await self.save_positions()
        if self.alerter is not None:
            await self.alerter.on_position_open(symbol, position)
        return position

    async def _abort_entry(self, symbol: str, side: Side, quantity: float) -> None:
        try:
            await self.executor.cancel_orders(symbol)
            await self.executor.close_position(symbol, side, quantity)
        except ExecutionError as e:
            logger.error("[%s] Failed to flatten unprotected entry, manual action needed: %s", symbol, e)

    # --- Exits ---

    async def check_exchange_exit(self, symbol: str) -> bool:
        """Record a stop-loss or take-profit the executor filled on its own."""
        price = self.state.last_price(symbol, self.primary_timeframe)
        if price is None:
            return False
        try:
            result = await self.executor.check_protective_orders(symbol, price)
        except ExecutionError as e:
            logger.error("[%s] Protective order check failed: %s", symbol, e)
            return False
        if result is None:
            return False
        reason, report = result
        await self._record_exchange_exit(symbol, reason, report)
        return True

    async def on_exchange_position(self, symbol: str, amount: float) -> None:
        """Handle a position update from the execution feed."""
        position = self.state.position(symbol)
        if amount != 0:
            if not position.is_open:
                logger.info("[%s] Exchange reports untracked position amount %.6f", symbol, amount)
            return
        if not position.is_open or self.positions.is_closing(symbol):
            return

        fill = self.state.fills.get(symbol)
        reason: ExchangeExitReason = "EXTERNAL"
        if fill is not None:
            if fill.order_id == position.stop_order_id:
                reason = "STOP_LOSS"
            elif fill.order_id == position.take_order_id:
                reason = "TAKE_PROFIT"
        await self._record_exchange_exit(symbol, reason, self.state.pop_fill(symbol))

    async def _record_exchange_exit(
        self,
        symbol: str,
        reason: ExchangeExitReason,
        report: ExecutionReport | None,
    ) -> None:
        position = self.state.position(symbol)
        if report is not None and report.avg_price > 0:
            exit_price, exit_fee = report.avg_price, report.fee or 0.0
        else:
            exit_price, exit_fee = self.state.last_price(symbol, self.primary_timeframe) or position.entry_price, 0.0

        trade = ClosedTrade(
            symbol=symbol,
            side=position.side,  # type: ignore[arg-type]
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
            logger.warning("[%s] Failed to cancel remaining orders: %s", symbol, e)
        logger.warning(
            "[%s] Position closed on the exchange (%s) @ %.6f, PnL %.4f",
            symbol,
            reason,
            exit_price,
            trade.pnl,
        )
        await self._record_close(trade)

    async def _record_close(self, trade: ClosedTrade) -> None:
        self.closed_trades.append(trade)
        self.state.available_balance = None
        await self.save_positions()
        if self.alerter is not None:
            await self.alerter.on_position_close(trade)

    # --- Mode ---

    async def _on_mode_change(self, old_mode: TradingMode, new_mode: TradingMode) -> None:
        symbols = self.subscription_symbols()
        logger.info("Resubscribing for %s: %s", new_mode, ", ".join(symbols) or "none")
        try:
            await self.stream.resubscribe(symbols)
        except Exception:
            logger.exception("Resubscription after mode change failed")
        if self.alerter is not None:
            await self.alerter.on_mode_change(old_mode, new_mode)

    async def _alert_error(self, message: str) -> None:
        if self.alerter is not None:
            await self.alerter.on_error(message)

    # --- Persistence ---

    async def save_positions(self) -> bool:
        if not self.persist:
            return False
        data = {symbol: position_to_dict(p) for symbol, p in self.state.open_positions().items()}
        saved = await self.store.save(POSITIONS_KEY, data)
        if not saved:
            logger.error("Failed to persist %d open positions", len(data))
        return saved

    # --- Shutdown ---

    async def shutdown(self) -> None:
        """Stop streams and tasks, persist state, and release resources. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True
        self._running = False
        logger.info("Shutting down...")

        await self.stream.unsubscribe()
        if self.user_stream is not None:
            await self.user_stream.stop()

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        if self._positions_loaded:
            await self.save_positions()
        if self.history is not None:
            for series in self.state.candles.series():
                try:
                    await self.history.save_history(
                        series.symbol,
                        series.timeframe,
                        series.candles,
                        self.settings.history_limit,
                    )
                except Exception:
                    logger.exception("Failed to save candles for %s %s", series.symbol, series.timeframe)
        if self.persist and self._predictor_loaded and self.settings.predictor.enabled:
            await self.predictor.save()

        await self.executor.close()
        if self.history is not None:
            await self.history.close()
        await self.store.close()
        if self.alerter is not None:
            await self.alerter.close()
        logger.info("Shutdown complete")
