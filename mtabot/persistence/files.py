"""JSON file store: one file per key inside a state directory."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any

from mtabot.persistence.store import KeyValueStore

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def key_to_filename(key: str) -> str:
    """Map a document key to a safe file name, e.g. 'raw:BTCUSDT:1m' -> 'raw_BTCUSDT_1m.json'."""
    return _UNSAFE_CHARS.sub("_", key) + ".json"


class JsonFileStore(KeyValueStore):
    """Fallback store writing pretty-printed JSON files."""

    def __init__(self, directory: str | Path = "data/state/") -> None:
        self.directory = Path(directory)

    async def initialize(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.directory / key_to_filename(key)

    async def load(self, key: str) -> Any | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
            return json.loads(text)
        except (OSError, json.JSONDecodeError):
            logger.exception("Failed to read %s", path)
            return None

    async def save(self, key: str, data: Any) -> bool:
        path = self.path_for(key)
        try:
            payload = json.dumps(data, indent=2)
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            await asyncio.to_thread(tmp.write_text, payload, encoding="utf-8")
            tmp.replace(path)
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to write %s", path)
            return False
        return True
