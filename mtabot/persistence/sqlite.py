"""Async SQLite document store: one JSON document per key."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from mtabot.persistence.models import ALL_TABLES
from mtabot.persistence.store import KeyValueStore

logger = logging.getLogger(__name__)


class SqliteDocumentStore(KeyValueStore):
    """Key-value documents in SQLite via aiosqlite.

    Lifecycle::

        store = SqliteDocumentStore("data/mtabot.db")
        await store.initialize()   # opens connection + creates tables
        ...                        # load / save
        await store.close()
    """

    def __init__(self, db_path: str | Path = "data/mtabot.db") -> None:
        self._db_path = str(db_path)
        self._conn: aiosqlite.Connection | None = None

    async def _get_conn(self) -> aiosqlite.Connection:
        """Return the active connection, raising if not initialized."""
        if self._conn is None:
            raise RuntimeError("Store not initialized. Call initialize() first.")
        return self._conn

    async def initialize(self) -> None:
        """Open the connection and create all tables if they don't already exist."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        for ddl in ALL_TABLES:
            await self._conn.execute(ddl)
        await self._conn.commit()
        logger.info("Document store initialized at %s", self._db_path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def load(self, key: str) -> Any | None:
        conn = await self._get_conn()
        try:
            cursor = await conn.execute("SELECT data_json FROM documents WHERE key = ?", (key,))
            row = await cursor.fetchone()
        except aiosqlite.Error:
            logger.exception("Failed to load '%s' from %s", key, self._db_path)
            return None

        if row is None:
            return None
        return json.loads(row["data_json"])

    async def save(self, key: str, data: Any) -> bool:
        """INSERT OR REPLACE a document."""
        conn = await self._get_conn()
        try:
            await conn.execute(
                """
                INSERT OR REPLACE INTO documents (key, data_json, updated_at)
                VALUES (?, ?, ?)
                """,
                (key, json.dumps(data), datetime.now(UTC).isoformat()),
            )
            await conn.commit()
        except (aiosqlite.Error, TypeError, ValueError):
            logger.exception("Failed to save '%s' to %s", key, self._db_path)
            return False
        return True

    async def keys(self) -> list[str]:
        conn = await self._get_conn()
        cursor = await conn.execute("SELECT key FROM documents ORDER BY key")
        rows = await cursor.fetchall()
        return [row["key"] for row in rows]

    async def clear_all(self) -> None:
        """Delete every document. Intended for testing."""
        conn = await self._get_conn()
        await conn.execute("DELETE FROM documents")
        await conn.commit()
