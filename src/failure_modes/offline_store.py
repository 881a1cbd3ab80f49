"""SQLite-backed offline replica of the failure-mode catalogue.

The store keeps one table of failure modes keyed by ``id`` plus a
``failure_mode_tags`` table acting as the multi-valued tag index. A refresh
replaces the whole collection (clear, then bulk insert) inside a single
SQLite transaction; there is no merge and no conflict detection against the
remote table, so the last full refresh wins.

All public methods are coroutines. Blocking SQLite work runs in a worker
thread via ``asyncio.to_thread`` and is serialised on one connection by a
lock. The schema is created on first use (CREATE ... IF NOT EXISTS).
"""

import asyncio
import json
import logging
import sqlite3
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypeVar

from src.failure_modes.models import FailureMode, FailureModeSearchParams
from src.observability.metrics import OFFLINE_STORE_RECORDS
from src.resilience.errors import StorageUnavailable, StorageWriteError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_VERSION = 1
LAST_SYNC_KEY = "last_synced_at"

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS failure_modes (
    id               TEXT PRIMARY KEY,
    category         TEXT NOT NULL,
    mode             TEXT NOT NULL,
    common_causes    TEXT NOT NULL DEFAULT '[]',
    severity_default INTEGER,
    tags             TEXT NOT NULL DEFAULT '[]',
    created_at       TEXT,
    updated_at       TEXT
);
CREATE INDEX IF NOT EXISTS idx_failure_modes_category ON failure_modes(category);
CREATE INDEX IF NOT EXISTS idx_failure_modes_mode ON failure_modes(mode);

CREATE TABLE IF NOT EXISTS failure_mode_tags (
    failure_mode_id TEXT NOT NULL,
    tag             TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_failure_mode_tags_tag ON failure_mode_tags(tag);
CREATE INDEX IF NOT EXISTS idx_failure_mode_tags_mode_id ON failure_mode_tags(failure_mode_id);

CREATE TABLE IF NOT EXISTS sync_state (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def filter_failure_modes(records: list[FailureMode], params: FailureModeSearchParams) -> list[FailureMode]:
    """Apply category filter, text match, (category, mode) ordering and pagination.

    Text search is a case-insensitive substring match against ``mode`` or any
    tag. Pagination only applies when ``offset`` or ``limit`` is set.
    """
    results = records
    if params.category:
        results = [r for r in results if r["category"] == params.category]

    if params.search:
        needle = params.search.lower()
        results = [
            r
            for r in results
            if needle in r["mode"].lower() or any(needle in tag.lower() for tag in r["tags"])
        ]

    results = sorted(results, key=lambda r: (r["category"], r["mode"]))

    if params.offset or params.limit:
        start = params.offset or 0
        end = start + params.limit if params.limit else None
        results = results[start:end]

    return results


def _row_to_failure_mode(row: sqlite3.Row) -> FailureMode:
    return FailureMode(
        id=row["id"],
        category=row["category"],
        mode=row["mode"],
        common_causes=json.loads(row["common_causes"]),
        severity_default=row["severity_default"],
        tags=json.loads(row["tags"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class LocalRecordStore:
    """Persistent local store of failure modes used for offline search."""

    def __init__(self, db_path: str) -> None:
        """
        Args:
            db_path: SQLite file path. Pass ":memory:" for tests. An empty
                     string means offline storage is not supported.
        """
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def is_supported(self) -> bool:
        """Whether a database path is configured for the local store."""
        return bool(self.db_path)

    # --- Lifecycle ---

    async def init(self) -> None:
        """Open the database and create the schema. Idempotent."""
        await asyncio.to_thread(self._init_sync)

    def _init_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            if not self.is_supported():
                msg = "Offline storage not supported (OFFLINE_DB_PATH is empty)"
                raise StorageUnavailable(msg)
            try:
                conn = sqlite3.connect(self.db_path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.executescript(_SCHEMA_SQL)
                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            except sqlite3.Error as exc:
                raise StorageUnavailable("Failed to open offline storage") from exc
            self._conn = conn
            logger.debug("Offline store opened at %s", self.db_path)

    async def close(self) -> None:
        await asyncio.to_thread(self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _connection(self) -> sqlite3.Connection:
        # Callers hold self._lock.
        if self._conn is None:
            raise StorageUnavailable("Offline storage is not open")
        return self._conn

    async def _run(self, fn: Callable[..., T], *args: object) -> T:
        if self._conn is None:
            await self.init()
        return await asyncio.to_thread(fn, *args)

    # --- Writes ---

    async def store_failure_modes(self, records: list[FailureMode]) -> None:
        """Replace the stored collection with ``records``."""
        await self._run(self._store_sync, records)

    def _store_sync(self, records: list[FailureMode]) -> None:
        now = datetime.now(UTC).isoformat()
        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    conn.execute("DELETE FROM failure_mode_tags")
                    conn.execute("DELETE FROM failure_modes")
                    for record in records:
                        tags = list(record.get("tags") or [])
                        conn.execute(
                            """INSERT OR REPLACE INTO failure_modes
                               (id, category, mode, common_causes, severity_default,
                                tags, created_at, updated_at)
                               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                            (
                                record["id"],
                                record["category"],
                                record["mode"],
                                json.dumps(list(record.get("common_causes") or [])),
                                record.get("severity_default"),
                                json.dumps(tags),
                                record.get("created_at"),
                                record.get("updated_at"),
                            ),
                        )
                        conn.execute("DELETE FROM failure_mode_tags WHERE failure_mode_id = ?", (record["id"],))
                        conn.executemany(
                            "INSERT INTO failure_mode_tags (failure_mode_id, tag) VALUES (?, ?)",
                            [(record["id"], tag) for tag in tags],
                        )
                    conn.execute(
                        "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                        (LAST_SYNC_KEY, now),
                    )
            except (sqlite3.Error, KeyError, TypeError) as exc:
                raise StorageWriteError("Failed to store failure mode") from exc

            count = conn.execute("SELECT COUNT(*) FROM failure_modes").fetchone()[0]
        OFFLINE_STORE_RECORDS.set(count)

    async def clear_cache(self) -> None:
        """Remove every stored record."""
        await self._run(self._clear_sync)

    def _clear_sync(self) -> None:
        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    conn.execute("DELETE FROM failure_mode_tags")
                    conn.execute("DELETE FROM failure_modes")
            except sqlite3.Error as exc:
                raise StorageWriteError("Failed to clear cache") from exc
        OFFLINE_STORE_RECORDS.set(0)

    # --- Reads ---

    async def get_failure_modes(self) -> list[FailureMode]:
        """All stored records, in storage order."""
        result: list[FailureMode] = await self._run(self._get_all_sync)
        return result

    def _get_all_sync(self) -> list[FailureMode]:
        with self._lock:
            conn = self._connection()
            try:
                rows = conn.execute("SELECT * FROM failure_modes").fetchall()
            except sqlite3.Error as exc:
                raise StorageUnavailable("Failed to retrieve failure modes") from exc
        return [_row_to_failure_mode(r) for r in rows]

    async def search_failure_modes(self, params: FailureModeSearchParams) -> list[FailureMode]:
        records = await self.get_failure_modes()
        return filter_failure_modes(records, params)

    async def get_failure_mode_categories(self) -> list[str]:
        records = await self.get_failure_modes()
        return sorted({r["category"] for r in records})

    async def count(self) -> int:
        result: int = await self._run(self._count_sync)
        return result

    def _count_sync(self) -> int:
        with self._lock:
            conn = self._connection()
            try:
                row = conn.execute("SELECT COUNT(*) FROM failure_modes").fetchone()
            except sqlite3.Error as exc:
                raise StorageUnavailable("Failed to count failure modes") from exc
        return int(row[0])

    async def get_last_sync(self) -> datetime | None:
        """When the collection was last replaced, or None if never."""
        result: datetime | None = await self._run(self._last_sync_sync)
        return result

    def _last_sync_sync(self) -> datetime | None:
        with self._lock:
            conn = self._connection()
            try:
                row = conn.execute("SELECT value FROM sync_state WHERE key = ?", (LAST_SYNC_KEY,)).fetchone()
            except sqlite3.Error as exc:
                raise StorageUnavailable("Failed to read sync state") from exc
        if row is None:
            return None
        return datetime.fromisoformat(row["value"])
