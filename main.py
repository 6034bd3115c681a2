"""mta-bot — CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from mtabot.config import Settings, load_settings_file, settings, setup_logging
from mtabot.errors import ConfigError

logger = logging.getLogger(__name__)


def _load_settings(args: argparse.Namespace) -> Settings:
    """Settings from ``--config`` if given, else the environment."""
    if args.config is None:
        return settings
    try:
        return load_settings_file(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _build_store(config: Settings):
    from mtabot.persistence.files import JsonFileStore
    from mtabot.persistence.sqlite import SqliteDocumentStore
    from mtabot.persistence.store import FallbackStore

    return FallbackStore(
        SqliteDocumentStore(config.database_path),
        JsonFileStore(config.state_path),
        primary_only=config.primary_store_only,
    )


def _build_predictor(config: Settings, store, read_only: bool = False):
    from mtabot.core.bot import indicator_periods
    from mtabot.predictor.base import DisabledPredictor
    from mtabot.predictor.linear import LinearPredictor

    if not config.predictor.enabled:
        return DisabledPredictor()
    return LinearPredictor(config.predictor, indicator_periods(config.strategies), store=store, read_only=read_only)


def _build_alerter(config: Settings):
    from mtabot.alerts.discord import DiscordAlerter

    if not config.discord_webhook_url:
        return None
    return DiscordAlerter(webhook_url=config.discord_webhook_url)


async def cmd_run(args: argparse.Namespace) -> None:
    """Trade live on Binance USDⓈ-M futures."""
    from mtabot.core.bot import TradingBot
    from mtabot.data.historical import HistoricalDataProvider
    from mtabot.data.live import LiveDataProvider
    from mtabot.data.user_stream import UserDataStream
    from mtabot.execution.exchange import CcxtExecutor

    config = _load_settings(args)
    if not config.api_key or not config.api_secret:
        print("Error: API_KEY and API_SECRET must be set for live trading.")
        sys.exit(1)

    store = _build_store(config)
    executor = CcxtExecutor(config=config)
    bot = TradingBot(
        config,
        executor,
        LiveDataProvider(),
        store,
        history=HistoricalDataProvider(cache_dir=config.cache_path),
        predictor=_build_predictor(config, store),
        alerter=_build_alerter(config),
    )
    bot.user_stream = UserDataStream(
        executor,
        bot.state,
        quote_asset=config.quote_asset,
        on_position_update=bot.on_exchange_position,
    )

    logger.info(
        "Starting live trading: symbols=%s, timeframes=%s, leverage=%dx%s",
        ",".join(config.symbols_to_watch),
        ",".join(config.timeframes_to_watch),
        config.leverage,
        " (testnet)" if config.testnet else "",
    )
    print("Bot running. Press Ctrl+C to stop.")
    await bot.run()


async def cmd_paper(args: argparse.Namespace) -> None:
    """Run the same loop against live data with simulated orders."""
    from mtabot.core.bot import TradingBot
    from mtabot.data.historical import HistoricalDataProvider
    from mtabot.data.live import LiveDataProvider
    from mtabot.execution.paper import PaperExecutor

    config = _load_settings(args)
    store = _build_store(config)
    bot: TradingBot | None = None

    def last_price(symbol: str) -> float | None:
        return bot.state.last_price(symbol, config.primary_timeframe) if bot is not None else None

    executor = PaperExecutor(
        price_source=last_price,
        initial_balance=args.initial_balance,
        taker_fee_percent=config.taker_fee_percent,
        leverage=config.leverage,
    )
    bot = TradingBot(
        config,
        executor,
        LiveDataProvider(),
        store,
        history=HistoricalDataProvider(cache_dir=config.cache_path),
        predictor=_build_predictor(config, store, read_only=True),
        alerter=_build_alerter(config),
        persist=False,
    )

    logger.info("Starting paper trading: balance=%.2f %s", args.initial_balance, config.quote_asset)
    print("Paper trading. Press Ctrl+C to stop.")
    try:
        await bot.run()
    finally:
        trades = bot.closed_trades
        total = sum(t.pnl for t in trades)
        print(f"\nClosed trades: {len(trades)}  Net PnL: {total:+.4f} {config.quote_asset}")
        print(f"Final balance: {executor.balance:.2f} {config.quote_asset}")


async def cmd_fetch_data(args: argparse.Namespace) -> None:
    """Fetch recent candles and refresh the Parquet cache."""
    from mtabot.data import cache
    from mtabot.data.historical import HistoricalDataProvider

    config = _load_settings(args)
    symbols = [args.symbol.upper()] if args.symbol else config.symbols_to_watch
    timeframes = [args.timeframe] if args.timeframe else config.timeframes_to_watch
    limit = args.limit or config.history_limit

    provider = HistoricalDataProvider(cache_dir=config.cache_path)
    try:
        for symbol in symbols:
            for timeframe in timeframes:
                print(f"Fetching {symbol} {timeframe} ({limit} candles)...")
                candles = await provider.load_history(symbol, timeframe, limit, refresh=True)
                print(
                    f"  Candles:     {len(candles):,}"
                    f"\n  Cache file:  {cache.cache_path(symbol, timeframe, config.cache_path)}"
                )
    finally:
        await provider.close()

    logger.info("Fetch data complete for %d symbols x %d timeframes", len(symbols), len(timeframes))


async def cmd_train(args: argparse.Namespace) -> None:
    """Train the linear predictor from cached candles."""
    from mtabot.core.bot import indicator_periods
    from mtabot.data import cache
    from mtabot.predictor.linear import LinearPredictor

    config = _load_settings(args)
    store = _build_store(config)
    await store.initialize()
    try:
        predictor = LinearPredictor(config.predictor, indicator_periods(config.strategies), store=store)
        await predictor.load()
        for symbol in config.symbols_to_watch:
            for timeframe in config.timeframes_to_watch:
                candles = cache.read_candles(symbol, timeframe, config.cache_path)
                if not candles:
                    print(f"No cached candles for {symbol} {timeframe}, run fetch-data first.")
                    continue
                added = predictor.collect_history(symbol, timeframe, candles)
                print(f"{symbol} {timeframe}: {len(candles):,} candles, {added:,} new data points")

        if await predictor.train():
            print("Training complete, model saved.")
        else:
            print("Training skipped: not enough data.")
            sys.exit(1)
    finally:
        await store.close()


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="mtabot",
        description="mta-bot — multi-timeframe Binance USDⓈ-M futures trading bot",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="JSON settings file (default: environment variables and .env)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run
    subparsers.add_parser(
        "run",
        help="Trade live",
        description="Stream live data and trade on Binance USDⓈ-M futures.",
    )

    # paper
    paper = subparsers.add_parser(
        "paper",
        help="Paper trade with live data",
        description="Run the trading loop against live data with simulated order execution.",
    )
    paper.add_argument(
        "--initial-balance",
        type=float,
        default=1_000.0,
        help="Initial simulated balance in the quote asset (default: 1000)",
    )

    # fetch-data
    fd = subparsers.add_parser(
        "fetch-data",
        help="Fetch and cache recent candles",
        description=(
            "Fetch recent closed candles from the exchange and merge them into the Parquet cache. "
            "Defaults to every watched symbol and timeframe."
        ),
    )
    fd.add_argument("--symbol", default=None, help="Single symbol to fetch (default: all watched)")
    fd.add_argument("--timeframe", default=None, help="Single timeframe to fetch (default: all watched)")
    fd.add_argument(
        "--limit",
        type=int,
        default=None,
        help=f"Number of candles to keep (default: {settings.history_limit})",
    )

    # train
    subparsers.add_parser(
        "train",
        help="Train the predictor from cached candles",
        description="Train the linear predictor on the Parquet cache and persist the model.",
    )

    return parser


def main() -> None:
    """Main entry point."""
    setup_logging(settings.log_level)

    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    command_map = {
        "run": cmd_run,
        "paper": cmd_paper,
        "fetch-data": cmd_fetch_data,
        "train": cmd_train,
    }

    handler = command_map[args.command]
    try:
        asyncio.run(handler(args))
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")


if __name__ == "__main__":
    main()
