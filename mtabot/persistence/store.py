"""Key-value persistence port and the primary/fallback composition."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Opaque JSON document store keyed by string.

    ``load`` returns None for unknown keys. ``save`` returns False instead
    of raising when the backend rejects the write.
    """

    async def initialize(self) -> None:
        """Open connections or create directories. No-op by default."""

    async def close(self) -> None:
        """Release backend resources. No-op by default."""

    @abstractmethod
    async def load(self, key: str) -> Any | None:
        """Return the stored document, or None."""

    @abstractmethod
    async def save(self, key: str, data: Any) -> bool:
        """Store a JSON-serializable document."""


class FallbackStore(KeyValueStore):
    """Reads and writes through a primary store, falling back to a secondary.

    With ``primary_only`` set the fallback is never consulted, so a broken
    primary surfaces as missing data instead of stale file contents.

    Usage:
        store = FallbackStore(SqliteDocumentStore(db_path), JsonFileStore(state_dir))
        await store.initialize()
        await store.save("positions", {...})
    """

    def __init__(
        self,
        primary: KeyValueStore,
        fallback: KeyValueStore,
        primary_only: bool = False,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.primary_only = primary_only
        self._primary_available = False

    async def initialize(self) -> None:
        try:
            await self.primary.initialize()
            self._primary_available = True
        except Exception:
            logger.exception("Primary store unavailable, using fallback only")
            self._primary_available = False
        if not self.primary_only:
            await self.fallback.initialize()

    async def close(self) -> None:
        if self._primary_available:
            await self.primary.close()
        await self.fallback.close()

    @property
    def primary_available(self) -> bool:
        return self._primary_available

    async def load(self, key: str) -> Any | None:
        if self._primary_available:
            data = await self.primary.load(key)
            if data is not None:
                return data
        if self.primary_only:
            return None
        return await self.fallback.load(key)

    async def save(self, key: str, data: Any) -> bool:
        if self._primary_available and await self.primary.save(key, data):
            return True
        if self.primary_only:
            logger.error("Failed to save '%s' and fallback is disabled", key)
            return False
        logger.warning("Saving '%s' to fallback store", key)
        return await self.fallback.save(key, data)
