"""Per (symbol, timeframe) candle series with dedup, retention cap, and readiness."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Iterator

from mtabot.core.types import Candle, Indicators

logger = logging.getLogger(__name__)

# Floor for the retention cap regardless of indicator periods
DEFAULT_RETENTION = 500


class TimeframeSeries:
    """Ordered, deduplicated, size-bounded sequence of final candles.

    Candles are strictly increasing by ``open_time``. Appending past the cap
    evicts the oldest candle. ``is_ready`` flips to True once the series has
    held enough candles and never flips back.
    """

    def __init__(self, symbol: str, timeframe: str, capacity: int = DEFAULT_RETENTION) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.symbol = symbol
        self.timeframe = timeframe
        self.capacity = capacity
        self.indicators = Indicators()
        self.last_price: float | None = None
        self._candles: deque[Candle] = deque()
        self._open_times: set[int] = set()
        self._ready = False

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self) -> Iterator[Candle]:
        return iter(self._candles)

    def __contains__(self, open_time: object) -> bool:
        return open_time in self._open_times

    @property
    def candles(self) -> list[Candle]:
        """Snapshot of the retained candles, oldest first."""
        return list(self._candles)

    @property
    def last_candle(self) -> Candle | None:
        return self._candles[-1] if self._candles else None

    @property
    def is_ready(self) -> bool:
        return self._ready

    def append(self, candle: Candle) -> bool:
        """Append a final candle. Returns False if it was a duplicate or stale.

        A candle older than the newest retained one is dropped; live updates
        are appended without re-sorting.
        """
        if candle.open_time in self._open_times:
            return False
        last = self.last_candle
        if last is not None and candle.open_time < last.open_time:
            logger.debug(
                "Dropping out-of-order candle %s %s open_time=%d (last=%d)",
                self.symbol,
                self.timeframe,
                candle.open_time,
                last.open_time,
            )
            return False

        self._candles.append(candle)
        self._open_times.add(candle.open_time)
        while len(self._candles) > self.capacity:
            evicted = self._candles.popleft()
            self._open_times.discard(evicted.open_time)
        return True

    def replace(self, candles: Iterable[Candle]) -> None:
        """Replace the contents with a bulk history load.

        Sorts once by open time, drops non-final and duplicate candles, and
        keeps only the newest ``capacity`` entries.
        """
        by_open_time: dict[int, Candle] = {}
        for c in candles:
            if c.is_final and c.open_time not in by_open_time:
                by_open_time[c.open_time] = c
        ordered = sorted(by_open_time.values(), key=lambda c: c.open_time)[-self.capacity :]
        self._candles = deque(ordered)
        self._open_times = {c.open_time for c in ordered}
        if ordered:
            self.last_price = ordered[-1].close

    def check_ready(self, min_candles: int) -> bool:
        """Flip readiness on once enough candles are held. Returns the new state."""
        if not self._ready and len(self._candles) >= min_candles:
            self._ready = True
            logger.info(
                "Series %s %s ready with %d candles",
                self.symbol,
                self.timeframe,
                len(self._candles),
            )
        return self._ready


class CandleStore:
    """All series, keyed by (symbol, timeframe). Series are created lazily."""

    def __init__(self, capacity: int = DEFAULT_RETENTION) -> None:
        self.capacity = capacity
        self._series: dict[tuple[str, str], TimeframeSeries] = {}

    def __len__(self) -> int:
        return len(self._series)

    def __contains__(self, key: object) -> bool:
        return key in self._series

    def get(self, symbol: str, timeframe: str) -> TimeframeSeries | None:
        return self._series.get((symbol, timeframe))

    def get_or_create(self, symbol: str, timeframe: str) -> TimeframeSeries:
        key = (symbol, timeframe)
        series = self._series.get(key)
        if series is None:
            series = TimeframeSeries(symbol, timeframe, self.capacity)
            self._series[key] = series
        return series

    def keys(self) -> list[tuple[str, str]]:
        return list(self._series)

    def series(self) -> list[TimeframeSeries]:
        return list(self._series.values())
