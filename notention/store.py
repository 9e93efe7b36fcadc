"""Local SQLite storage for notes, the ontology, keys and sync bookkeeping.

The store exposes simple key/value semantics over named partitions. Each
write is committed immediately so a single key update is crash-consistent.
"""

import json
import logging
import sqlite3
from collections.abc import AsyncIterator
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SCHEMA = """
-- Partitioned key/value table; values are JSON documents
CREATE TABLE IF NOT EXISTS kv_store (
    partition TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (partition, key)
);

CREATE INDEX IF NOT EXISTS idx_kv_partition ON kv_store(partition);
"""


class Partition(str, Enum):
    """Named partitions of the local store."""

    NOTES = "notes"
    ONTOLOGY = "ontology"
    IDENTITY = "identity"
    MESSAGES = "messages"
    MUTATION_QUEUE = "mutation_queue"
    FLAGS = "flags"
    SYNC_STATE = "sync_state"
    TOMBSTONES = "tombstones"
    FOLDERS = "folders"


class LocalStore:
    """SQLite-backed partitioned key/value store."""

    def __init__(self, db_path: str | Path):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser() if str(db_path) != ":memory:" else db_path
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"LocalStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("LocalStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    @staticmethod
    def _key(partition: Partition | str) -> str:
        return partition.value if isinstance(partition, Partition) else partition

    async def get(self, partition: Partition | str, key: str) -> Any | None:
        """Read a value, or None if the key is absent."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT value FROM kv_store WHERE partition = ? AND key = ?",
            (self._key(partition), key),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["value"])

    async def set(self, partition: Partition | str, key: str, value: Any) -> None:
        """Write a single value."""
        await self.set_many(partition, {key: value})

    async def set_many(self, partition: Partition | str, items: dict[str, Any]) -> None:
        """Write several values of one partition in a single transaction."""
        if not items:
            return

        conn = self._ensure_connected()
        now = datetime.now().isoformat()
        rows = [
            (self._key(partition), key, json.dumps(value), now)
            for key, value in items.items()
        ]
        with conn:
            conn.executemany(
                """
                INSERT INTO kv_store (partition, key, value, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(partition, key)
                DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                rows,
            )

    async def delete(self, partition: Partition | str, key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        return await self.delete_many(partition, [key]) > 0

    async def delete_many(self, partition: Partition | str, keys: list[str]) -> int:
        """Remove several keys of one partition in a single transaction."""
        if not keys:
            return 0

        conn = self._ensure_connected()
        placeholders = ",".join("?" * len(keys))
        with conn:
            cursor = conn.execute(
                f"DELETE FROM kv_store WHERE partition = ? AND key IN ({placeholders})",
                (self._key(partition), *keys),
            )
        return cursor.rowcount

    async def items(self, partition: Partition | str) -> list[tuple[str, Any]]:
        """All (key, value) pairs of a partition, ordered by key."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT key, value FROM kv_store WHERE partition = ? ORDER BY key",
            (self._key(partition),),
        )
        return [(row["key"], json.loads(row["value"])) for row in cursor]

    async def iterate(self, partition: Partition | str) -> AsyncIterator[tuple[str, Any]]:
        """Iterate over (key, value) pairs of a partition."""
        for item in await self.items(partition):
            yield item

    async def clear(self, partition: Partition | str | None = None) -> int:
        """Remove every key of a partition, or of all partitions if None."""
        conn = self._ensure_connected()
        with conn:
            if partition is None:
                cursor = conn.execute("DELETE FROM kv_store")
            else:
                cursor = conn.execute(
                    "DELETE FROM kv_store WHERE partition = ?",
                    (self._key(partition),),
                )
        logger.debug(f"Cleared {cursor.rowcount} keys from {partition or 'all partitions'}")
        return cursor.rowcount

    def get_stats(self) -> dict[str, Any]:
        """Key counts per partition and database size."""
        conn = self._ensure_connected()

        cursor = conn.execute(
            "SELECT partition, COUNT(*) FROM kv_store GROUP BY partition"
        )
        stats: dict[str, Any] = {"keys_by_partition": {row[0]: row[1] for row in cursor}}

        if isinstance(self.db_path, Path) and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
