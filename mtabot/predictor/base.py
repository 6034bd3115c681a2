"""Predictor interface consulted by the decision engine and position manager."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from mtabot.core.types import Candle, ExitPrediction, Indicators, Position, Prediction


class Predictor(ABC):
    """Base interface for entry/exit predictors."""

    @abstractmethod
    def is_ready(self) -> bool:
        """Return True once the predictor may be trusted for trading."""

    @abstractmethod
    async def predict(
        self,
        symbol: str,
        timeframe: str,
        candles: Sequence[Candle],
    ) -> Prediction | None:
        """Predict the next move. None means no opinion."""

    @abstractmethod
    async def predict_exit(
        self,
        symbol: str,
        timeframe: str,
        candles: Sequence[Candle],
        position: Position,
    ) -> ExitPrediction | None:
        """Return a CLOSE recommendation for an open position, or None."""

    def collect(self, symbol: str, timeframe: str, candle: Candle, indicators: Indicators) -> None:
        """Record a processed candle for later training. No-op by default."""

    def collect_history(self, symbol: str, timeframe: str, candles: Sequence[Candle]) -> int:
        """Record a historical window. Returns the number of points added."""
        return 0

    def data_count(self, symbol: str, timeframe: str) -> int:
        return 0

    async def train(self) -> bool:
        """Retrain from collected data. Returns True if the model changed."""
        return False

    async def load(self) -> None:
        """Restore persisted predictor state. No-op by default."""

    async def save(self) -> bool:
        """Persist predictor state. Returns False if nothing was written."""
        return False


class DisabledPredictor(Predictor):
    """Predictor that is never ready. Used when AI confirmation is switched off."""

    def is_ready(self) -> bool:
        return False

    async def predict(self, symbol: str, timeframe: str, candles: Sequence[Candle]) -> Prediction | None:
        return None

    async def predict_exit(
        self,
        symbol: str,
        timeframe: str,
        candles: Sequence[Candle],
        position: Position,
    ) -> ExitPrediction | None:
        return None
