"""Historical data provider — fetches recent closed candles via ccxt, caches to Parquet."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime

import ccxt.async_support as ccxt

from mtabot.core.timeframe import timeframe_ms
from mtabot.core.types import Candle
from mtabot.data import cache
from mtabot.data.provider import HistoryProvider

logger = logging.getLogger(__name__)

# Max candles per request (Binance futures allows 1500, stay conservative)
MAX_CANDLES_PER_REQUEST = 1000

# Retry budget for rate limits and network errors
MAX_RETRIES = 5
RATE_LIMIT_WAIT_S = 5.0
NETWORK_RETRY_WAIT_S = 3.0


def _create_exchange() -> ccxt.Exchange:
    """Create a public async ccxt client for Binance USDⓈ-M futures."""
    return ccxt.binanceusdm({"enableRateLimit": True})


def _now_ms() -> int:
    return int(time.time() * 1000)


def _row_to_candle(row: list, tf_ms: int) -> Candle:
    open_time = int(row[0])
    return Candle(
        open_time=open_time,
        close_time=open_time + tf_ms - 1,
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


class HistoricalDataProvider(HistoryProvider):
    """Fetches the most recent closed candles for warm-up.

    Usage:
        provider = HistoricalDataProvider()
        candles = await provider.load_history("BTCUSDT", "1m", limit=1130, refresh=True)
        await provider.close()
    """

    def __init__(self, exchange: ccxt.Exchange | None = None, cache_dir: str | None = None) -> None:
        self._exchange = exchange
        self.cache_dir = cache_dir

    async def _get_exchange(self) -> ccxt.Exchange:
        if self._exchange is None:
            self._exchange = _create_exchange()
        return self._exchange

    async def close(self) -> None:
        if self._exchange is not None:
            await self._exchange.close()
            self._exchange = None

    async def get_recent_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        """Fetch up to ``limit`` closed candles ending now, oldest first."""
        tf_ms = timeframe_ms(timeframe)
        now = _now_ms()
        since = now - limit * tf_ms
        return await self._fetch_from_exchange(symbol, timeframe, since, now, limit)

    async def load_history(
        self,
        symbol: str,
        timeframe: str,
        limit: int,
        refresh: bool = True,
    ) -> list[Candle]:
        """Return recent candles from the Parquet cache, refreshing it from the exchange.

        Without ``refresh`` the cache is used as-is unless it is empty.
        """
        cached = cache.read_candles(symbol, timeframe, self.cache_dir)
        if cached and not refresh:
            return cache.trim_candles(cached, limit)

        fetched = await self.get_recent_candles(symbol, timeframe, limit)
        candles = cache.trim_candles(cache.merge_candles(cached, fetched), limit)
        cache.write_candles(symbol, timeframe, candles, self.cache_dir)
        logger.info(
            "History for %s %s: %d cached, %d fetched, %d kept",
            symbol,
            timeframe,
            len(cached),
            len(fetched),
            len(candles),
        )
        return candles

    async def save_history(self, symbol: str, timeframe: str, candles: list[Candle], limit: int) -> None:
        """Merge live candles into the cache, keeping the newest ``limit``."""
        if not candles:
            return
        cached = cache.read_candles(symbol, timeframe, self.cache_dir)
        merged = cache.trim_candles(cache.merge_candles(cached, candles), limit)
        cache.write_candles(symbol, timeframe, merged, self.cache_dir)
        logger.debug("Saved %d candles for %s %s", len(merged), symbol, timeframe)

    async def _fetch_ohlcv(self, symbol: str, timeframe: str, since: int, limit: int) -> list[list]:
        exchange = await self._get_exchange()
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                return await exchange.fetch_ohlcv(symbol, timeframe, since=since, limit=limit)
            except ccxt.RateLimitExceeded:
                logger.warning(
                    "Rate limited, waiting %.0fs (attempt %d/%d)...",
                    RATE_LIMIT_WAIT_S,
                    attempt,
                    MAX_RETRIES,
                )
                await asyncio.sleep(RATE_LIMIT_WAIT_S)
            except ccxt.NetworkError as e:
                logger.warning(
                    "Network error: %s, retrying in %.0fs (attempt %d/%d)...",
                    e,
                    NETWORK_RETRY_WAIT_S,
                    attempt,
                    MAX_RETRIES,
                )
                await asyncio.sleep(NETWORK_RETRY_WAIT_S)
        raise ccxt.NetworkError(f"Giving up on {symbol} {timeframe} after {MAX_RETRIES} attempts")

    async def _fetch_from_exchange(
        self,
        symbol: str,
        timeframe: str,
        start_ms: int,
        end_ms: int,
        limit: int,
    ) -> list[Candle]:
        """Fetch closed candles in [start_ms, end_ms] with pagination."""
        tf_ms = timeframe_ms(timeframe)
        candles: list[Candle] = []
        since = start_ms

        logger.info(
            "Fetching %s %s candles from %s",
            symbol,
            timeframe,
            datetime.fromtimestamp(start_ms / 1000, tz=UTC),
        )

        while since < end_ms and len(candles) < limit:
            ohlcv = await self._fetch_ohlcv(symbol, timeframe, since, MAX_CANDLES_PER_REQUEST)
            if not ohlcv:
                break

            for row in ohlcv:
                candle = _row_to_candle(row, tf_ms)
                # Skip the candle still in progress
                if candle.close_time >= end_ms:
                    continue
                candles.append(candle)

            since = int(ohlcv[-1][0]) + tf_ms

        logger.info("Fetched %d %s %s candles", len(candles), symbol, timeframe)
        return cache.trim_candles(candles, limit)
