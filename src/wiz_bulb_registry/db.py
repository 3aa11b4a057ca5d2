"""SQLite connection management and migrations for the bulb store."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar, Union

from .logging import get_logger

Migration = Callable[[sqlite3.Connection], None]

SCHEMA_VERSION_KEY = "schema_version"
BUSY_TIMEOUT_MS = 5000
MEMORY = ":memory:"

T = TypeVar("T")


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _configure_connection(conn: sqlite3.Connection, in_memory: bool) -> None:
    """Apply connection-wide pragmas."""

    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    if not in_memory:
        conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")


def _ensure_meta_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )


def _get_schema_version(conn: sqlite3.Connection) -> int:
    _ensure_meta_table(conn)
    row = conn.execute(
        "SELECT value FROM meta WHERE key = ?", (SCHEMA_VERSION_KEY,)
    ).fetchone()
    if row is None:
        return 0
    try:
        return int(row[0])
    except (TypeError, ValueError):
        return 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        """
        INSERT INTO meta (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (SCHEMA_VERSION_KEY, str(version)),
    )


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS bulbs (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id_kind TEXT NOT NULL CHECK (id_kind IN ('numeric', 'opaque')),
            id_value TEXT NOT NULL,
            name TEXT NOT NULL,
            address TEXT NOT NULL,
            power INTEGER,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            UNIQUE (id_kind, id_value)
        );

        CREATE TRIGGER IF NOT EXISTS trg_bulbs_updated_at
        AFTER UPDATE ON bulbs
        WHEN old.updated_at = new.updated_at
        BEGIN
            UPDATE bulbs SET updated_at = datetime('now') WHERE seq = NEW.seq;
        END;

        CREATE INDEX IF NOT EXISTS idx_bulbs_name ON bulbs (name);
        """
    )


def _migration_manufacturer_id(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        ALTER TABLE bulbs ADD COLUMN mac TEXT;

        CREATE INDEX IF NOT EXISTS idx_bulbs_mac ON bulbs (mac);
        """
    )


MIGRATIONS: List[Tuple[int, Migration]] = [
    (1, _migration_initial_schema),
    (2, _migration_manufacturer_id),
]


def apply_migrations(conn: sqlite3.Connection) -> int:
    """Apply pending migrations on an open connection and return the new version."""

    logger = get_logger("wiz.store.migrations")
    current = _get_schema_version(conn)
    logger.debug("Current schema version", extra={"version": current})
    for version, migration in _pending_migrations(current):
        logger.info("Applying migration", extra={"version": version})
        migration(conn)
        _set_schema_version(conn, version)
        conn.commit()
        current = version
    return current


def _pending_migrations(current_version: int) -> Iterable[Tuple[int, Migration]]:
    for version, migration in MIGRATIONS:
        if version > current_version:
            yield version, migration


class DatabaseManager:
    """Serializes access to a shared SQLite connection.

    Operations run in a worker thread so the event loop keeps servicing other
    tasks, and one lock orders them so the single connection is never used
    from two threads at once.
    """

    def __init__(self, db_path: Union[Path, str]) -> None:
        self.in_memory = str(db_path) == MEMORY
        self.db_path = Path(db_path) if not self.in_memory else None
        self.logger = get_logger("wiz.store.db")
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            conn = self._conn
            self._conn = None
        if conn is not None:
            await asyncio.to_thread(conn.close)

    async def run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run an operation with the shared connection, serialized by a lock."""

        if self._closed:
            raise RuntimeError("Database manager is closed")
        async with self._lock:
            return await asyncio.to_thread(self._run_with_connection, operation)

    def _run_with_connection(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._conn is None:
            if self.db_path is not None:
                _ensure_parent_dir(self.db_path)
                target: Union[Path, str] = self.db_path
            else:
                target = MEMORY
            self._conn = sqlite3.connect(target, check_same_thread=False)
            _configure_connection(self._conn, self.in_memory)
        try:
            return operation(self._conn)
        except sqlite3.Error:
            self._conn.rollback()
            raise
