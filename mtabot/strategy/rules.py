"""Entry rules for the fixed strategy set.

Each rule is a pure function of a :class:`MarketSnapshot` and the strategy's
parameters. A rule returns ``None`` when it has no signal or when any input
it needs is missing.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from mtabot.config import StrategiesConfig, StrategyConfig
from mtabot.core.indicators import is_usable
from mtabot.core.state import BotState
from mtabot.core.types import Indicators, Signal, StrategyName


@dataclass(frozen=True, slots=True)
class MarketSnapshot:
    """What the rules see for one symbol at decision time."""

    price: float | None
    primary: Indicators
    confirmation: Indicators
    volume: float | None = None

    @classmethod
    def from_state(
        cls,
        state: BotState,
        symbol: str,
        primary_tf: str,
        confirmation_tf: str,
    ) -> MarketSnapshot:
        primary = state.series(symbol, primary_tf)
        confirmation = state.series(symbol, confirmation_tf)
        last = primary.last_candle if primary is not None else None
        return cls(
            price=primary.last_price if primary is not None else None,
            primary=primary.indicators if primary is not None else Indicators(),
            confirmation=confirmation.indicators if confirmation is not None else Indicators(),
            volume=last.volume if last is not None else None,
        )


def trend_following(snapshot: MarketSnapshot, config: StrategyConfig) -> Signal | None:
    """Trade pullbacks in the direction of the confirmation-timeframe EMA."""
    price = snapshot.price
    rsi = snapshot.primary.rsi
    ema = snapshot.confirmation.ema
    if not (is_usable(price) and is_usable(rsi) and is_usable(ema)):
        return None

    if price > ema and rsi < config.rsi_oversold:
        return Signal("LONG", "TrendFollowing", config)
    if price < ema and rsi > config.rsi_overbought:
        return Signal("SHORT", "TrendFollowing", config)
    return None


def mean_reversion(snapshot: MarketSnapshot, config: StrategyConfig) -> Signal | None:
    """Fade moves outside the primary Bollinger Bands when RSI is stretched."""
    price = snapshot.price
    rsi = snapshot.primary.rsi
    bb = snapshot.primary.bb
    if bb is None or not (is_usable(price) and is_usable(rsi)):
        return None

    if price < bb.lower and rsi < config.rsi_oversold:
        return Signal("LONG", "MeanReversion", config)
    if price > bb.upper and rsi > config.rsi_overbought:
        return Signal("SHORT", "MeanReversion", config)
    return None


def breakout(snapshot: MarketSnapshot, config: StrategyConfig) -> Signal | None:
    """Follow closes beyond the Bollinger Bands backed by a volume spike."""
    price = snapshot.price
    bb = snapshot.primary.bb
    sma_volume = snapshot.primary.sma_volume
    volume = snapshot.volume
    if bb is None or not (is_usable(price) and is_usable(sma_volume) and is_usable(volume)):
        return None

    if volume <= sma_volume * config.min_volume_spike:
        return None
    if price > bb.upper:
        return Signal("LONG", "Breakout", config)
    if price < bb.lower:
        return Signal("SHORT", "Breakout", config)
    return None


Rule = Callable[[MarketSnapshot, StrategyConfig], "Signal | None"]


def prioritized_rules(strategies: StrategiesConfig) -> list[tuple[StrategyName, Rule, StrategyConfig]]:
    """Rules in evaluation order, each with its configuration."""
    return [
        ("TrendFollowing", trend_following, strategies.trend_following),
        ("MeanReversion", mean_reversion, strategies.mean_reversion),
        ("Breakout", breakout, strategies.breakout),
    ]
