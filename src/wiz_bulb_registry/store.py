"""Persistent bulb store reachable through a URL."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

from .db import MEMORY, DatabaseManager, apply_migrations
from .logging import get_logger
from .metrics import record_store_failure
from .models import NUMERIC, OPAQUE, BulbRecord, Identifier

SQLITE_PREFIX = "sqlite:///"

T = TypeVar("T")


class StoreError(RuntimeError):
    """Raised when the persistent store cannot complete an operation."""


class DuplicateRecord(StoreError):
    """Raised when a record with the same identifier already exists."""


def _encode_id(identifier: Identifier) -> tuple[str, str]:
    return identifier.kind, str(identifier.value)


def _decode_id(kind: str, value: str) -> Identifier:
    if kind == NUMERIC:
        return Identifier.numeric(int(value))
    if kind == OPAQUE:
        return Identifier.opaque(value)
    raise StoreError(f"Unknown identifier kind in store: {kind!r}")


def _row_to_record(row: sqlite3.Row) -> BulbRecord:
    power = row["power"]
    return BulbRecord(
        id=_decode_id(row["id_kind"], row["id_value"]),
        name=row["name"],
        address=row["address"],
        power=bool(power) if power is not None else None,
        mac=row["mac"],
    )


def parse_store_url(url: str) -> str:
    """Return the SQLite database location named by ``url``.

    ``sqlite:///relative.db`` names a path relative to the working directory,
    ``sqlite:////abs/path.db`` an absolute one and ``sqlite:///:memory:`` a
    private in-memory database.
    """

    if not url.startswith(SQLITE_PREFIX):
        scheme = url.split("://", 1)[0] if "://" in url else url
        raise StoreError(f"Unsupported store URL scheme: {scheme!r}")
    location = url[len(SQLITE_PREFIX):]
    if not location:
        raise StoreError("Store URL does not name a database")
    return location


class BulbStore:
    """SQLite-backed persistence for registered bulbs.

    A single connection is shared by every caller; ``DatabaseManager``
    serializes access to it.
    """

    def __init__(self, location: str) -> None:
        self.location = location
        self.db = DatabaseManager(location if location == MEMORY else Path(location).expanduser())
        self.logger = get_logger("wiz.store")

    async def migrate(self) -> int:
        return await self._run("migrate", apply_migrations)

    async def close(self) -> None:
        await self.db.close()

    async def _run(self, operation_name: str, operation: Callable[[sqlite3.Connection], T]) -> T:
        try:
            return await self.db.run(operation)
        except StoreError:
            record_store_failure(operation_name)
            raise
        except (sqlite3.Error, OSError, RuntimeError) as exc:
            record_store_failure(operation_name)
            self.logger.error(
                "Store operation failed",
                extra={"operation": operation_name, "error": str(exc)},
            )
            raise StoreError(f"{operation_name} failed: {exc}") from exc

    async def create(self, record: BulbRecord) -> Identifier:
        """Persist a record and return its identifier, assigning one if missing."""

        return await self._run("create", lambda conn: self._create(conn, record))

    def _create(self, conn: sqlite3.Connection, record: BulbRecord) -> Identifier:
        identifier = record.id
        if identifier is None:
            row = conn.execute(
                """
                SELECT COALESCE(MAX(CAST(id_value AS INTEGER)), 0) + 1
                FROM bulbs
                WHERE id_kind = 'numeric'
                """
            ).fetchone()
            identifier = Identifier.numeric(max(1, int(row[0])))
        kind, value = _encode_id(identifier)
        try:
            conn.execute(
                """
                INSERT INTO bulbs (id_kind, id_value, name, address, power, mac)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    kind,
                    value,
                    record.name,
                    record.address,
                    int(record.power) if record.power is not None else None,
                    record.mac,
                ),
            )
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise DuplicateRecord(f"Bulb {identifier} already exists") from exc
        conn.commit()
        self.logger.info(
            "Persisted bulb",
            extra={"bulb_id": str(identifier), "name": record.name, "ip": record.address},
        )
        return identifier

    async def list(self) -> List[BulbRecord]:
        return await self._run("list", self._list)

    def _list(self, conn: sqlite3.Connection) -> List[BulbRecord]:
        rows = conn.execute(
            """
            SELECT id_kind, id_value, name, address, power, mac
            FROM bulbs
            ORDER BY seq ASC
            """
        ).fetchall()
        return [_row_to_record(row) for row in rows]

    async def get(self, identifier: Identifier) -> Optional[BulbRecord]:
        return await self._run("get", lambda conn: self._get(conn, identifier))

    def _get(self, conn: sqlite3.Connection, identifier: Identifier) -> Optional[BulbRecord]:
        kind, value = _encode_id(identifier)
        row = conn.execute(
            """
            SELECT id_kind, id_value, name, address, power, mac
            FROM bulbs
            WHERE id_kind = ? AND id_value = ?
            """,
            (kind, value),
        ).fetchone()
        return _row_to_record(row) if row else None

    async def delete(self, identifier: Identifier) -> bool:
        return await self._run("delete", lambda conn: self._delete(conn, identifier))

    def _delete(self, conn: sqlite3.Connection, identifier: Identifier) -> bool:
        kind, value = _encode_id(identifier)
        cursor = conn.execute(
            "DELETE FROM bulbs WHERE id_kind = ? AND id_value = ?",
            (kind, value),
        )
        conn.commit()
        return cursor.rowcount > 0


async def connect(url: str) -> BulbStore:
    """Open the store named by ``url`` and bring its schema up to date."""

    store = BulbStore(parse_store_url(url))
    version = await store.migrate()
    store.logger.info(
        "Connected to bulb store",
        extra={"location": store.location, "schema_version": version},
    )
    return store
