"""Dual-read order storage backed by the normalized tables.

The normalized tables behave as a materialised cache over the legacy meta
rows: :meth:`OrderDataStore.read` prefers a normalized row and, on a miss,
derives the record from legacy attributes and (optionally) writes it through.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from services.legacy_store import LegacyAttributeStore
from services.order_records import LoadResult, OrderRecord, record_class_for
from services.order_schema import ORDER_SCHEMA, TableSchema

LOGGER = logging.getLogger(__name__)

AUTOMATIC_MIGRATION_ENV = "ORDER_TABLE_AUTOMATIC_MIGRATION"
_DISABLED_VALUES = {"0", "false", "no", "off"}

ChangeListener = Callable[[OrderRecord, Mapping[str, Any]], None]


def automatic_migration_enabled() -> bool:
    """Return whether reads write normalized rows on a miss (default: enabled)."""
    raw = os.getenv(AUTOMATIC_MIGRATION_ENV)
    if raw is None or not raw.strip():
        return True
    return raw.strip().lower() not in _DISABLED_VALUES


class OrderEvents:
    """Registry of listeners notified after every real normalized-row write."""

    def __init__(self) -> None:
        self._listeners: List[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> ChangeListener:
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, record: OrderRecord, changes: Mapping[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(record, changes)


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a write; database failures are carried in ``error``."""

    status: str
    changes: Mapping[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def written(self) -> bool:
        return self.status in {"inserted", "updated"}

    @classmethod
    def failed(cls, message: str) -> "WriteResult":
        return cls(status="failed", error=message)


class NormalizedTable:
    """Row-level access to one normalized table."""

    def __init__(self, conn: sqlite3.Connection, schema: TableSchema):
        self.conn = conn
        self.schema = schema

    @property
    def name(self) -> str:
        return self.schema.table_name

    def get_row(self, order_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.conn.execute(
            f"SELECT * FROM {self.name} WHERE order_id = ? LIMIT 1", (order_id,)
        )
        row = cursor.fetchone()
        if row is None:
            return None
        columns = [description[0] for description in cursor.description]
        return dict(zip(columns, row))

    def row_exists(self, order_id: int) -> bool:
        cursor = self.conn.execute(
            f"SELECT COUNT(order_id) FROM {self.name} WHERE order_id = ?", (order_id,)
        )
        return bool(cursor.fetchone()[0])

    def insert(self, order_id: int, values: Mapping[str, Any]) -> int:
        columns = ["order_id", *values.keys()]
        placeholders = ", ".join("?" for _ in columns)
        cursor = self.conn.execute(
            f"INSERT INTO {self.name} ({', '.join(columns)}) VALUES ({placeholders})",
            (order_id, *values.values()),
        )
        return cursor.rowcount

    def update(self, order_id: int, values: Mapping[str, Any]) -> int:
        assignments = ", ".join(f"{column} = ?" for column in values)
        cursor = self.conn.execute(
            f"UPDATE {self.name} SET {assignments} WHERE order_id = ?",
            (*values.values(), order_id),
        )
        return cursor.rowcount

    def delete(self, order_id: int) -> int:
        cursor = self.conn.execute(
            f"DELETE FROM {self.name} WHERE order_id = ?", (order_id,)
        )
        return cursor.rowcount

    def count(self) -> int:
        cursor = self.conn.execute(f"SELECT COUNT(order_id) FROM {self.name}")
        return int(cursor.fetchone()[0])


class OrderDataStore:
    """Reads, writes and migrates records between legacy and normalized storage."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        events: Optional[OrderEvents] = None,
        automatic_migration: Optional[bool] = None,
    ):
        self.conn = conn
        self.events = events or OrderEvents()
        self.legacy = LegacyAttributeStore(conn)
        self._automatic_migration = automatic_migration
        self._tables: Dict[str, NormalizedTable] = {}

    @property
    def automatic_migration(self) -> bool:
        if self._automatic_migration is not None:
            return self._automatic_migration
        return automatic_migration_enabled()

    def table_for(self, record: OrderRecord) -> NormalizedTable:
        schema = record.schema
        table = self._tables.get(schema.table_name)
        if table is None:
            table = NormalizedTable(self.conn, schema)
            self._tables[schema.table_name] = table
        return table

    def get_order_data_from_table(self, record: OrderRecord) -> Dict[str, Any]:
        """Return the decoded normalized row for ``record``, or an empty dict."""
        row = self.table_for(record).get_row(record.id)
        if row is None:
            return {}
        return record.schema.from_columns(row)

    # ------------------------------------------------------------------
    # Dual read
    # ------------------------------------------------------------------
    def read(self, record: OrderRecord, auto_migrate: Optional[bool] = None) -> OrderRecord:
        """Populate ``record`` from its normalized row, falling back to legacy meta."""
        data = self.get_order_data_from_table(record)
        if data:
            record.set_props(data)
            record.apply_changes()
            record.migrated = True
            return record

        self.legacy.hydrate(record)
        record.migrated = False
        if auto_migrate is None:
            auto_migrate = self.automatic_migration
        if not auto_migrate:
            record.apply_changes()
            return record

        result = self.save(record)
        if not result.ok:
            LOGGER.error(
                "Automatic migration of %s %d failed: %s",
                record.order_type,
                record.id,
                result.error,
            )
        record.apply_changes()
        return record

    # ------------------------------------------------------------------
    # Write back
    # ------------------------------------------------------------------
    def save(self, record: OrderRecord) -> WriteResult:
        """Insert or partially update the normalized row for ``record``."""
        table = self.table_for(record)
        payload = record.schema.to_columns(record.get_data())
        try:
            if not table.row_exists(record.id):
                try:
                    inserted = table.insert(record.id, payload)
                except sqlite3.IntegrityError as exc:
                    LOGGER.debug(
                        "Insert into %s for order %d did not happen: %s",
                        table.name,
                        record.id,
                        exc,
                    )
                    return WriteResult(status="skipped")
                if inserted != 1:
                    return WriteResult(status="skipped")
                status = "inserted"
                changes = payload
            else:
                changed = record.get_changes()
                changes = {name: value for name, value in payload.items() if name in changed}
                if not changes:
                    return WriteResult(status="unchanged")
                table.update(record.id, changes)
                status = "updated"
        except sqlite3.Error as exc:
            LOGGER.error("Database error writing order %d to %s: %s", record.id, table.name, exc)
            return WriteResult.failed(str(exc))

        record.apply_changes()
        record.migrated = True
        self.events.emit(record, changes)
        return WriteResult(status=status, changes=changes)

    # ------------------------------------------------------------------
    # Migration in both directions
    # ------------------------------------------------------------------
    def populate_from_legacy(self, record: OrderRecord, delete: bool = False) -> WriteResult:
        """Write the normalized row for ``record`` from its legacy attributes.

        With ``delete`` the mapped meta keys are removed once the row is written.
        """
        try:
            existing = self.get_order_data_from_table(record)
            if existing:
                # Diff the legacy values against what is actually stored.
                record.set_props(existing)
                record.apply_changes()
            self.legacy.hydrate(record)
        except sqlite3.Error as exc:
            return WriteResult.failed(str(exc))

        result = self.save(record)
        if not result.ok:
            return result

        if delete:
            try:
                for meta_key in record.schema.meta_keys:
                    self.legacy.delete_attribute(record.id, meta_key)
            except sqlite3.Error as exc:
                return WriteResult.failed(str(exc))
        return result

    def backfill_legacy(self, record: OrderRecord, delete: bool = False) -> WriteResult:
        """Copy the record's normalized values back into legacy meta rows.

        With ``delete`` the normalized row is removed afterwards.
        """
        attributes = record.schema.to_legacy(record.get_data())
        try:
            for meta_key, meta_value in attributes.items():
                self.legacy.set_attribute(record.id, meta_key, meta_value)
            if delete:
                self.table_for(record).delete(record.id)
                record.migrated = False
        except sqlite3.Error as exc:
            LOGGER.error("Database error backfilling order %d: %s", record.id, exc)
            return WriteResult.failed(str(exc))
        return WriteResult(status="backfilled", changes=attributes)


class OrderRepository:
    """Loads typed records by ID through an :class:`OrderDataStore`."""

    def __init__(self, conn: sqlite3.Connection, data_store: Optional[OrderDataStore] = None):
        self.conn = conn
        self.data_store = data_store or OrderDataStore(conn)

    def get(self, record_id: int, auto_migrate: Optional[bool] = None) -> LoadResult:
        row = self.data_store.legacy.get_entity(record_id)
        if row is None:
            return LoadResult.failure(f"Order {record_id} does not exist")
        record_class = record_class_for(row["order_type"])
        if record_class is None:
            return LoadResult.failure(
                f"Order {record_id} has unsupported type '{row['order_type']}'"
            )
        record = record_class(
            row["id"],
            parent_id=row["parent_id"],
            status=row["status"],
            created_at=row["created_at"],
        )
        try:
            self.data_store.read(record, auto_migrate=auto_migrate)
        except (ValueError, TypeError) as exc:
            return LoadResult.failure(f"Order {record_id} could not be read: {exc}")
        return LoadResult.success(record)

    def get_order_id_by_order_key(self, order_key: str) -> Optional[int]:
        """Find an order by key, preferring normalized rows over legacy meta."""
        cursor = self.conn.execute(
            f"SELECT order_id FROM {ORDER_SCHEMA.table_name} WHERE order_key = ? LIMIT 1",
            (order_key,),
        )
        row = cursor.fetchone()
        if row is not None:
            return int(row[0])

        meta_key = ORDER_SCHEMA.columns["order_key"].meta_key
        cursor = self.conn.execute(
            f"""
            SELECT m.order_id
            FROM order_meta m
            LEFT JOIN {ORDER_SCHEMA.table_name} t ON t.order_id = m.order_id
            WHERE m.meta_key = ? AND m.meta_value = ? AND t.order_id IS NULL
            ORDER BY m.order_id
            LIMIT 1
            """,
            (meta_key, order_key),
        )
        row = cursor.fetchone()
        return int(row[0]) if row is not None else None
