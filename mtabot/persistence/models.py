"""SQLite schema and document converters for the persistence layer."""

from __future__ import annotations

from typing import Any

from mtabot.config import StrategyConfig
from mtabot.core.types import Position

SCHEMA_VERSION = 1

CREATE_DOCUMENTS_TABLE = """
CREATE TABLE IF NOT EXISTS documents (
    key TEXT PRIMARY KEY,
    data_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

ALL_TABLES = [
    CREATE_DOCUMENTS_TABLE,
]

# Document keys
POSITIONS_KEY = "positions"
UPDATE_STATUS_KEY = "update_status"


def position_to_dict(position: Position) -> dict[str, Any]:
    config = position.active_strategy_config
    return {
        "side": position.side,
        "entry_price": position.entry_price,
        "quantity": position.quantity,
        "entry_fee": position.entry_fee,
        "active_strategy": position.active_strategy,
        "active_strategy_config": config.model_dump() if config is not None else None,
        "open_time": position.open_time,
        "max_duration_ms": position.max_duration_ms,
        "trailing_active": position.trailing_active,
        "trailing_stop_price": position.trailing_stop_price,
        "stop_order_id": position.stop_order_id,
        "take_order_id": position.take_order_id,
    }


def position_from_dict(data: dict[str, Any]) -> Position:
    config = data.get("active_strategy_config")
    return Position(
        side=data.get("side", "NONE"),
        entry_price=float(data.get("entry_price", 0.0)),
        quantity=float(data.get("quantity", 0.0)),
        entry_fee=float(data.get("entry_fee", 0.0)),
        active_strategy=data.get("active_strategy"),
        active_strategy_config=StrategyConfig.model_validate(config) if config else None,
        open_time=data.get("open_time"),
        max_duration_ms=data.get("max_duration_ms"),
        trailing_active=bool(data.get("trailing_active", False)),
        trailing_stop_price=data.get("trailing_stop_price"),
        stop_order_id=data.get("stop_order_id"),
        take_order_id=data.get("take_order_id"),
    )

