"""Exception types raised by the trading bot."""

from __future__ import annotations


class MtaBotError(Exception):
    """Base class for bot errors."""


class ExecutionError(MtaBotError):
    """An order or account request to the exchange failed."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class PositionAlreadyOpenError(MtaBotError):
    """Raised when opening a position for a symbol that already has one."""

    def __init__(self, symbol: str) -> None:
        super().__init__(f"Position already open for {symbol}")
        self.symbol = symbol


class ConfigError(MtaBotError):
    """The configuration file is missing, unreadable, or invalid."""
