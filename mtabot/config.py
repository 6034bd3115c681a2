"""Application configuration loaded from environment variables, .env, or a JSON file."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mtabot.core.timeframe import TIMEFRAME_ORDER
from mtabot.errors import ConfigError


class StrategyConfig(BaseModel):
    """Parameters for a single entry strategy.

    Instances are frozen so that the copy attached to an open position is a
    snapshot of the parameters in force at entry time.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True

    # Indicator periods
    rsi_period: int = 14
    ema_period: int = 200
    bollinger_period: int = 20
    bollinger_std_dev: float = 2.0
    volume_sma_period: int = 20

    # Entry thresholds
    rsi_oversold: float = 35.0
    rsi_overbought: float = 65.0
    min_volume_spike: float = 1.5

    # Exit management
    take_profit_percent: float = 2.0
    stop_loss_percent: float = 1.0
    # Not read: trailing stops follow the strategy indicator, not a fixed distance
    trailing_stop_percent: float = 0.5
    use_invalidation_exit: bool = True
    max_operation_duration_minutes: int = 60

    @field_validator("rsi_period", "ema_period", "bollinger_period", "volume_sma_period")
    @classmethod
    def validate_period(cls, v: int) -> int:
        if v < 1:
            raise ValueError("indicator periods must be at least 1")
        return v

    @field_validator("take_profit_percent", "stop_loss_percent", "min_volume_spike")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class StrategiesConfig(BaseModel):
    """The fixed strategy set, evaluated in priority order."""

    trend_following: StrategyConfig = StrategyConfig()
    mean_reversion: StrategyConfig = StrategyConfig()
    breakout: StrategyConfig = StrategyConfig()
    ai_prediction: StrategyConfig = StrategyConfig(enabled=False)


class PredictorConfig(BaseModel):
    """Online linear predictor settings."""

    enabled: bool = False
    learning_rate: float = 0.001
    epochs: int = 10
    min_data_for_training: int = 200
    training_interval_s: float = 3600.0


class Settings(BaseSettings):
    """Trading bot configuration.

    Values are loaded from environment variables with fallback to .env file.
    Nested values use ``__`` as delimiter, e.g.
    ``STRATEGIES__BREAKOUT__MIN_VOLUME_SPIKE=2.0``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    # Exchange settings
    api_key: str = ""
    api_secret: str = ""
    testnet: bool = False

    # Universe
    symbols_to_watch: list[str] = ["BTCUSDT"]
    timeframes_to_watch: list[str] = ["1m", "5m", "1h"]

    # Sizing
    leverage: int = 10
    margin_percent_per_trade: float = 10.0
    quote_asset: str = "USDT"
    taker_fee_percent: float = 0.04
    min_notional: float = 5.1

    # Mode control
    min_balance: float = 10.0
    balance_check_interval_s: float = 300.0

    # Candle history
    max_candles_to_store: int = 500
    history_limit: int = 1130
    history_refresh_hours: float = 24.0

    # Strategy set
    strategies: StrategiesConfig = StrategiesConfig()
    predictor: PredictorConfig = PredictorConfig()
    close_precedence: Literal["last_wins", "first_wins"] = "last_wins"

    # Alerts
    discord_webhook_url: str | None = None

    # Paths
    database_path: str = "data/mtabot.db"
    state_path: str = "data/state/"
    cache_path: str = "data/candles/"
    primary_store_only: bool = False

    # Logging
    log_level: str = "INFO"

    @property
    def primary_timeframe(self) -> str:
        return self.timeframes_to_watch[0]

    @property
    def confirmation_timeframe(self) -> str:
        return self.timeframes_to_watch[-1]

    @field_validator("symbols_to_watch")
    @classmethod
    def validate_symbols(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("symbols_to_watch must not be empty")
        return [s.upper() for s in v]

    @field_validator("timeframes_to_watch")
    @classmethod
    def validate_timeframes(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("timeframes_to_watch must not be empty")
        unknown = [tf for tf in v if tf not in TIMEFRAME_ORDER]
        if unknown:
            raise ValueError(f"Unsupported timeframes: {unknown}")
        return v

    @field_validator("leverage")
    @classmethod
    def validate_leverage(cls, v: int) -> int:
        if v < 1:
            raise ValueError("leverage must be at least 1")
        return v

    @field_validator("margin_percent_per_trade")
    @classmethod
    def validate_margin_percent(cls, v: float) -> float:
        if not 0 < v <= 100:
            raise ValueError("margin_percent_per_trade must be in (0, 100]")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_history(self) -> Settings:
        if self.max_candles_to_store < 1:
            raise ValueError("max_candles_to_store must be at least 1")
        return self


def load_settings_file(path: str | Path) -> Settings:
    """Build Settings from a JSON file. File values override the environment.

    Raises:
        ConfigError: The file cannot be read, is not a JSON object, or fails validation.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    try:
        return Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def setup_logging(level: str = "INFO") -> None:
    """Configure logging with console and file handlers.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    log_format = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))

    # Clear existing handlers to avoid duplicates on re-init
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level))
    console_handler.setFormatter(logging.Formatter(log_format, date_format))
    root_logger.addHandler(console_handler)

    # File handler, skipped if data/ is missing
    try:
        file_handler = logging.FileHandler("data/mtabot.log")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(log_format, date_format))
        root_logger.addHandler(file_handler)
    except OSError:
        pass


# Module-level singleton
settings = Settings()
