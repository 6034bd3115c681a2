"""Decision engine: picks an entry signal from the strategy rules and the predictor."""

from __future__ import annotations

import dataclasses
import logging

from mtabot.config import StrategiesConfig
from mtabot.core.state import BotState
from mtabot.core.types import Prediction, Signal
from mtabot.predictor.base import Predictor
from mtabot.strategy.rules import MarketSnapshot, prioritized_rules

logger = logging.getLogger(__name__)


class DecisionEngine:
    """Evaluates TrendFollowing, MeanReversion, then Breakout.

    The first rule producing a signal decides the cycle. A ready predictor
    acts as a filter: agreement marks the signal AI-confirmed, HOLD or no
    prediction lets it through, disagreement rejects it and ends the cycle
    without trying lower-priority rules. When no rule fires and the
    AI_Prediction strategy is enabled, a LONG or SHORT prediction becomes
    an AI_Prediction signal on its own.

    Only call :meth:`decide` for a symbol with no open position.
    """

    def __init__(
        self,
        state: BotState,
        strategies: StrategiesConfig,
        predictor: Predictor,
        primary_timeframe: str,
        confirmation_timeframe: str,
        predictor_enabled: bool = False,
    ) -> None:
        self.state = state
        self.strategies = strategies
        self.predictor = predictor
        self.primary_timeframe = primary_timeframe
        self.confirmation_timeframe = confirmation_timeframe
        self.predictor_enabled = predictor_enabled

    async def _prediction(self, symbol: str, timeframe: str) -> Prediction | None:
        series = self.state.series(symbol, timeframe)
        candles = series.candles if series is not None else []
        try:
            prediction = await self.predictor.predict(symbol, timeframe, candles)
        except Exception:
            logger.exception("Predictor failed for %s %s, ignoring it this cycle", symbol, timeframe)
            return None
        if prediction is not None:
            logger.info(
                "[%s] Predictor says %s (confidence %.2f%%)",
                symbol,
                prediction.action,
                prediction.confidence,
            )
        return prediction

    async def decide(self, symbol: str, timeframe: str) -> Signal | None:
        """Return the accepted entry signal for this cycle, or None."""
        ai_ready = self.predictor_enabled and self.predictor.is_ready()
        prediction = await self._prediction(symbol, timeframe) if ai_ready else None
        ai_action = prediction.action if prediction is not None else None

        snapshot = MarketSnapshot.from_state(
            self.state,
            symbol,
            self.primary_timeframe,
            self.confirmation_timeframe,
        )

        for name, rule, config in prioritized_rules(self.strategies):
            if not config.enabled:
                continue
            signal = rule(snapshot, config)
            if signal is None:
                continue

            if ai_action is None or ai_action == "HOLD":
                logger.info("[%s] %s %s signal accepted", symbol, name, signal.side)
                return signal
            if ai_action == signal.side:
                logger.info("[%s] %s %s signal accepted, confirmed by predictor", symbol, name, signal.side)
                return dataclasses.replace(signal, ai_confirmed=True)

            logger.warning(
                "[%s] %s %s signal rejected, predictor says %s",
                symbol,
                name,
                signal.side,
                ai_action,
            )
            return None

        ai_config = self.strategies.ai_prediction
        if ai_config.enabled and ai_action in ("LONG", "SHORT"):
            logger.info("[%s] No rule fired, AI_Prediction %s signal accepted", symbol, ai_action)
            return Signal(side=ai_action, strategy="AI_Prediction", config=ai_config, ai_confirmed=True)

        logger.debug("[%s] No entry signal on %s", symbol, timeframe)
        return None
