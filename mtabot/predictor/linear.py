"""Online linear predictor trained with stochastic gradient descent.

One weight per feature plus a bias, shared across all symbols. Features are
min-max normalized with ranges kept separately for every (symbol, timeframe)
pair. Labels come from the close three candles ahead.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

from mtabot.config import PredictorConfig
from mtabot.core.indicators import IndicatorPeriods, calculate_indicators, rsi
from mtabot.core.types import Candle, ExitPrediction, Indicators, Position, Prediction
from mtabot.persistence.store import KeyValueStore
from mtabot.predictor.base import Predictor

logger = logging.getLogger(__name__)

FEATURES: Final = (
    "open",
    "high",
    "low",
    "close",
    "volume",
    "rsi",
    "ema",
    "bb_upper",
    "bb_lower",
    "bb_middle",
    "price_change",
    "volume_change",
)

# Labelling
LOOK_AHEAD_CANDLES = 3
PROFIT_THRESHOLD = 0.005
LOSS_THRESHOLD = -0.005

# Score thresholds for entry predictions
LONG_SCORE = 0.5
SHORT_SCORE = -0.5
MAX_CONFIDENCE = 95.0

# Exit rules
PROFIT_TAKE_PERCENT = 1.0
CUT_LOSS_PERCENT = -0.5
EXTREME_RSI_OVERBOUGHT = 80.0
EXTREME_RSI_OVERSOLD = 20.0
PROFIT_TAKE_CONFIDENCE = 90.0
CUT_LOSS_CONFIDENCE = 77.5

MAX_DATA_POINTS = 10_000

# Persistence keys
MODEL_KEY = "ai_model"
STATS_KEY = "ai_stats"
DATA_KEY = "ai_data"


class _Missing:
    """Marker for a feature value that could not be computed."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Final = _Missing()

FeatureValue = float | _Missing


def to_feature(value: float | None) -> FeatureValue:
    """Map None and non-finite numbers to MISSING."""
    if value is None or not math.isfinite(value):
        return MISSING
    return float(value)


def _ratio_change(current: float, previous: float) -> FeatureValue:
    if previous == 0:
        return MISSING
    return to_feature((current - previous) / previous)


@dataclass(frozen=True, slots=True)
class FeatureRange:
    """Observed range of one feature for one (symbol, timeframe)."""

    min: float
    max: float

    def normalize(self, value: FeatureValue) -> float:
        """Scale into [0, 1]. Missing values fall back to the range minimum (0.0)."""
        if value is MISSING or self.max == self.min:
            return 0.0
        return (value - self.min) / (self.max - self.min)  # type: ignore[operator]


FeatureStats = dict[str, FeatureRange]


@dataclass(slots=True)
class DataPoint:
    """Feature values of one processed candle."""

    timestamp: int
    values: dict[str, FeatureValue]

    @property
    def close(self) -> FeatureValue:
        return self.values.get("close", MISSING)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"timestamp": self.timestamp}
        for name in FEATURES:
            value = self.values.get(name, MISSING)
            out[name] = None if value is MISSING else value
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DataPoint:
        return cls(
            timestamp=int(data["timestamp"]),
            values={name: to_feature(data.get(name)) for name in FEATURES},
        )


def build_data_point(
    candle: Candle,
    indicators: Indicators,
    previous: Candle | DataPoint | None = None,
) -> DataPoint:
    """Assemble features from a candle, its indicators, and the candle before it."""
    bb = indicators.bb
    values: dict[str, FeatureValue] = {
        "open": to_feature(candle.open),
        "high": to_feature(candle.high),
        "low": to_feature(candle.low),
        "close": to_feature(candle.close),
        "volume": to_feature(candle.volume),
        "rsi": to_feature(indicators.rsi),
        "ema": to_feature(indicators.ema),
        "bb_upper": to_feature(bb.upper if bb else None),
        "bb_lower": to_feature(bb.lower if bb else None),
        "bb_middle": to_feature(bb.middle if bb else None),
        "price_change": MISSING,
        "volume_change": MISSING,
    }
    if isinstance(previous, Candle):
        values["price_change"] = _ratio_change(candle.close, previous.close)
        values["volume_change"] = _ratio_change(candle.volume, previous.volume)
    elif isinstance(previous, DataPoint):
        prev_close = previous.values.get("close", MISSING)
        prev_volume = previous.values.get("volume", MISSING)
        if prev_close is not MISSING:
            values["price_change"] = _ratio_change(candle.close, prev_close)  # type: ignore[arg-type]
        if prev_volume is not MISSING:
            values["volume_change"] = _ratio_change(candle.volume, prev_volume)  # type: ignore[arg-type]
    return DataPoint(timestamp=candle.close_time, values=values)


def compute_stats(points: Sequence[DataPoint]) -> FeatureStats:
    """Min/max per feature, ignoring missing values. Empty features get [0, 1]."""
    stats: FeatureStats = {}
    for name in FEATURES:
        present = [p.values[name] for p in points if p.values.get(name, MISSING) is not MISSING]
        if present:
            stats[name] = FeatureRange(min=min(present), max=max(present))  # type: ignore[type-var]
        else:
            stats[name] = FeatureRange(min=0.0, max=1.0)
    return stats


def label_for(current_close: float, future_close: float) -> int:
    """+1 / -1 / 0 depending on the forward return."""
    change = (future_close - current_close) / current_close
    if change >= PROFIT_THRESHOLD:
        return 1
    if change <= LOSS_THRESHOLD:
        return -1
    return 0


@dataclass
class LinearModel:
    weights: dict[str, float] = field(default_factory=lambda: dict.fromkeys(FEATURES, 0.0))
    bias: float = 0.0

    def score(self, vector: Sequence[float]) -> float:
        return self.bias + sum(self.weights[name] * x for name, x in zip(FEATURES, vector, strict=True))

    def update(self, vector: Sequence[float], label: int, learning_rate: float) -> float:
        """One SGD step. Returns the prediction error before the update."""
        error = label - self.score(vector)
        self.bias += learning_rate * error
        for name, x in zip(FEATURES, vector, strict=True):
            self.weights[name] += learning_rate * error * x
        return error


def feature_vector(point: DataPoint, stats: FeatureStats) -> list[float]:
    return [stats[name].normalize(point.values.get(name, MISSING)) for name in FEATURES]


class LinearPredictor(Predictor):
    """Perceptron-style predictor with per-pair normalization.

    Usage:
        predictor = LinearPredictor(settings.predictor, periods, store=store)
        await predictor.load()
        predictor.collect(symbol, timeframe, candle, indicators)
        await predictor.train()
        prediction = await predictor.predict(symbol, timeframe, candles)
    """

    def __init__(
        self,
        config: PredictorConfig | None = None,
        periods: IndicatorPeriods | None = None,
        store: KeyValueStore | None = None,
        read_only: bool = False,
    ) -> None:
        self.config = config or PredictorConfig()
        self.periods = periods or IndicatorPeriods()
        self.store = store
        self.read_only = read_only
        self.model = LinearModel()
        self.stats: dict[tuple[str, str], FeatureStats] = {}
        self.data: dict[tuple[str, str], list[DataPoint]] = {}
        self._ready = False

    def is_ready(self) -> bool:
        return self._ready

    # --- Data collection ---

    def data_count(self, symbol: str, timeframe: str) -> int:
        return len(self.data.get((symbol, timeframe), []))

    def add_point(self, symbol: str, timeframe: str, point: DataPoint) -> bool:
        """Insert a point in timestamp order. Returns False for duplicates."""
        points = self.data.setdefault((symbol, timeframe), [])
        if any(p.timestamp == point.timestamp for p in points):
            return False
        points.append(point)
        points.sort(key=lambda p: p.timestamp)
        if len(points) > MAX_DATA_POINTS:
            del points[0]
        return True

    def collect(self, symbol: str, timeframe: str, candle: Candle, indicators: Indicators) -> None:
        points = self.data.get((symbol, timeframe))
        previous = points[-1] if points else None
        if self.add_point(symbol, timeframe, build_data_point(candle, indicators, previous)):
            logger.debug(
                "Collected data point for %s %s (total %d)",
                symbol,
                timeframe,
                self.data_count(symbol, timeframe),
            )

    def collect_history(self, symbol: str, timeframe: str, candles: Sequence[Candle]) -> int:
        """Add points for a historical window, computing indicators as of each candle."""
        added = 0
        for i, candle in enumerate(candles):
            window = candles[max(0, i + 1 - self.periods.min_candles * 2) : i + 1]
            indicators = calculate_indicators(window, self.periods)
            previous = candles[i - 1] if i > 0 else None
            if self.add_point(symbol, timeframe, build_data_point(candle, indicators, previous)):
                added += 1
        if added:
            logger.info("Added %d historical data points for %s %s", added, symbol, timeframe)
        return added

    # --- Training ---

    def _run_epochs(self, data: list[tuple[tuple[str, str], list[DataPoint]]]) -> tuple[int, float]:
        """SGD passes over a snapshot of every pair. Returns (samples, summed squared error)."""
        samples = 0
        loss = 0.0
        for _ in range(self.config.epochs):
            for key, points in data:
                stats = self.stats.get(key)
                if stats is None:
                    continue
                for i in range(len(points) - LOOK_AHEAD_CANDLES):
                    current = points[i].close
                    future = points[i + LOOK_AHEAD_CANDLES].close
                    if current is MISSING or future is MISSING or current == 0:
                        continue
                    label = label_for(current, future)  # type: ignore[arg-type]
                    error = self.model.update(feature_vector(points[i], stats), label, self.config.learning_rate)
                    loss += error * error
                    samples += 1
        return samples, loss

    async def train(self) -> bool:
        """Fit the model on the collected data off the event loop, then persist it."""
        total = sum(len(points) for points in self.data.values())
        if total < self.config.min_data_for_training:
            logger.warning(
                "Not enough data to train (%d/%d points)",
                total,
                self.config.min_data_for_training,
            )
            return False

        for key, points in self.data.items():
            if points:
                self.stats[key] = compute_stats(points)

        snapshot = [(key, list(points)) for key, points in self.data.items()]
        samples, loss = await asyncio.to_thread(self._run_epochs, snapshot)
        if samples == 0:
            logger.warning("No labelled samples available, model unchanged")
            return False

        logger.info(
            "Trained linear model on %d samples over %d epochs (mse=%.6f)",
            samples,
            self.config.epochs,
            loss / samples,
        )
        self._ready = True
        await self.save()
        return True

    # --- Prediction ---

    def _features_for(self, candles: Sequence[Candle]) -> DataPoint:
        indicators = calculate_indicators(candles, self.periods)
        return build_data_point(candles[-1], indicators, candles[-2])

    async def predict(self, symbol: str, timeframe: str, candles: Sequence[Candle]) -> Prediction | None:
        stats = self.stats.get((symbol, timeframe))
        if not self._ready or stats is None or len(candles) < 2:
            return None

        score = self.model.score(feature_vector(self._features_for(candles), stats))
        if score > LONG_SCORE:
            return Prediction("LONG", round(min(MAX_CONFIDENCE, 50 + (score - LONG_SCORE) * 100), 2))
        if score < SHORT_SCORE:
            return Prediction("SHORT", round(min(MAX_CONFIDENCE, 50 + (SHORT_SCORE - score) * 100), 2))
        return Prediction("HOLD", 50.0)

    async def predict_exit(
        self,
        symbol: str,
        timeframe: str,
        candles: Sequence[Candle],
        position: Position,
    ) -> ExitPrediction | None:
        if not self._ready or not position.is_open or len(candles) < 2:
            return None

        pnl = position.pnl_percent(candles[-1].close)
        current_rsi = rsi([c.close for c in candles], self.periods.rsi)
        if current_rsi is None:
            return None

        if position.side == "LONG":
            if pnl >= PROFIT_TAKE_PERCENT and current_rsi > EXTREME_RSI_OVERBOUGHT:
                return ExitPrediction("CLOSE", "AI_PROFIT_TAKE_OVERBOUGHT", PROFIT_TAKE_CONFIDENCE)
            if pnl <= CUT_LOSS_PERCENT and current_rsi < EXTREME_RSI_OVERSOLD:
                return ExitPrediction("CLOSE", "AI_CUT_LOSS_OVERSOLD", CUT_LOSS_CONFIDENCE)
        else:
            if pnl >= PROFIT_TAKE_PERCENT and current_rsi < EXTREME_RSI_OVERSOLD:
                return ExitPrediction("CLOSE", "AI_PROFIT_TAKE_OVERSOLD", PROFIT_TAKE_CONFIDENCE)
            if pnl <= CUT_LOSS_PERCENT and current_rsi > EXTREME_RSI_OVERBOUGHT:
                return ExitPrediction("CLOSE", "AI_CUT_LOSS_OVERBOUGHT", CUT_LOSS_CONFIDENCE)
        return None

    # --- Persistence ---

    async def load(self) -> None:
        """Restore model, stats, and collected data from the store."""
        if self.store is None:
            return

        model = await self.store.load(MODEL_KEY)
        if model:
            weights = model.get("weights", {})
            self.model = LinearModel(
                weights={name: float(weights.get(name, 0.0)) for name in FEATURES},
                bias=float(model.get("bias", 0.0)),
            )
            self._ready = True
            logger.info("Loaded linear model")
        else:
            logger.warning("No saved model found, predictor not ready until trained")

        stats = await self.store.load(STATS_KEY)
        if stats:
            self.stats = {
                (symbol, tf): {name: FeatureRange(**rng) for name, rng in features.items()}
                for symbol, by_tf in stats.items()
                for tf, features in by_tf.items()
            }

        data = await self.store.load(DATA_KEY)
        if data:
            self.data = {
                (symbol, tf): [DataPoint.from_dict(p) for p in points]
                for symbol, by_tf in data.items()
                for tf, points in by_tf.items()
            }
            logger.info("Loaded %d data points", sum(len(p) for p in self.data.values()))

    async def save(self) -> bool:
        """Persist model, stats, and data. Returns False if any write failed.

        A read-only predictor loads from the store but never writes to it.
        """
        if self.store is None or self.read_only:
            return False

        model = {"weights": dict(self.model.weights), "bias": self.model.bias}
        stats: dict[str, dict[str, Any]] = {}
        for (symbol, tf), features in self.stats.items():
            stats.setdefault(symbol, {})[tf] = {
                name: {"min": rng.min, "max": rng.max} for name, rng in features.items()
            }
        data: dict[str, dict[str, Any]] = {}
        for (symbol, tf), points in self.data.items():
            data.setdefault(symbol, {})[tf] = [p.to_dict() for p in points]

        results = [
            await self.store.save(MODEL_KEY, model),
            await self.store.save(STATS_KEY, stats),
            await self.store.save(DATA_KEY, data),
        ]
        if not all(results):
            logger.error("Failed to persist predictor state")
            return False
        return True
