"""Access to the legacy ``orders``/``order_meta`` entity-attribute-value storage."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Optional

from services.order_records import OrderRecord

LOGGER = logging.getLogger(__name__)

_ENTITY_COLUMNS = ("id", "order_type", "parent_id", "status", "created_at")


class LegacyAttributeStore:
    """Reads and writes per-key order meta rows on a shared connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_entity(self, record_id: int) -> Optional[Dict[str, Any]]:
        """Return the primary ``orders`` row for ``record_id``."""
        cursor = self.conn.execute(
            "SELECT id, order_type, parent_id, status, created_at FROM orders WHERE id = ?",
            (record_id,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return dict(zip(_ENTITY_COLUMNS, row))

    def get_attributes(self, record_id: int) -> Dict[str, str]:
        """Return every meta key for ``record_id``; later rows win on duplicates."""
        cursor = self.conn.execute(
            "SELECT meta_key, meta_value FROM order_meta WHERE order_id = ? ORDER BY meta_id",
            (record_id,),
        )
        return {row[0]: row[1] for row in cursor.fetchall()}

    def set_attribute(self, record_id: int, meta_key: str, meta_value: str) -> None:
        cursor = self.conn.execute(
            "UPDATE order_meta SET meta_value = ? WHERE order_id = ? AND meta_key = ?",
            (meta_value, record_id, meta_key),
        )
        if cursor.rowcount:
            return
        self.conn.execute(
            "INSERT INTO order_meta (order_id, meta_key, meta_value) VALUES (?, ?, ?)",
            (record_id, meta_key, meta_value),
        )

    def delete_attribute(self, record_id: int, meta_key: str) -> int:
        cursor = self.conn.execute(
            "DELETE FROM order_meta WHERE order_id = ? AND meta_key = ?",
            (record_id, meta_key),
        )
        return cursor.rowcount

    def hydrate(self, record: OrderRecord) -> OrderRecord:
        """Refresh ``record`` from its legacy attributes.

        Only mapped keys are applied; a corrupt value raises ``ValueError``.
        """
        attributes = self.get_attributes(record.id)
        values = record.schema.from_legacy(attributes)
        LOGGER.debug(
            "Hydrating %s %d from %d legacy attributes",
            record.order_type,
            record.id,
            len(values),
        )
        record.set_props(values)
        return record
