"""Key/value persistence backends: SQLite via aiosqlite, and in-memory."""

from __future__ import annotations

import json
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from cloud_session.core.errors import StorageParseError, StorageQuotaError
from cloud_session.log import get_logger
from cloud_session.storage.models import now_ms

logger = get_logger(__name__)

ENVELOPE_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_entries (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);
"""


class KeyValueStore(ABC):
    """Minimal string key/value interface the stores are written against."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Write *value*. Raises StorageQuotaError when the backend is full."""
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        ...


def encode_envelope(data: Any, timestamp: Optional[int] = None) -> str:
    return json.dumps(
        {"data": data, "timestamp": now_ms() if timestamp is None else timestamp,
         "version": ENVELOPE_VERSION}
    )


def decode_envelope(raw: str) -> Any:
    """Return the ``data`` field of a stored envelope or raise StorageParseError."""
    try:
        item = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StorageParseError(f"Unreadable stored value: {e}") from e
    if not isinstance(item, dict) or "data" not in item:
        raise StorageParseError("Stored value is not an envelope")
    return item["data"]


class SQLiteKeyValueStore(KeyValueStore):
    """Async SQLite-backed key/value store."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection and create the schema."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    async def get(self, key: str) -> Optional[str]:
        cursor = await self.conn.execute("SELECT value FROM kv_entries WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        try:
            await self.conn.execute(
                """INSERT INTO kv_entries (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value,
                       updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')""",
                (key, value),
            )
            await self.conn.commit()
        except sqlite3.OperationalError as e:
            if "full" in str(e).lower():
                await self.conn.rollback()
                raise StorageQuotaError(f"Storage full while writing '{key}'") from e
            raise

    async def remove(self, key: str) -> None:
        await self.conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
        await self.conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")


class MemoryKeyValueStore(KeyValueStore):
    """Process-local backend; ``quota_bytes`` caps the total stored size."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self._data: dict[str, str] = {}
        self._quota_bytes = quota_bytes

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self._quota_bytes is not None:
            used = sum(len(v) for k, v in self._data.items() if k != key)
            if used + len(value) > self._quota_bytes:
                raise StorageQuotaError(f"Storage quota exceeded while writing '{key}'")
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)
