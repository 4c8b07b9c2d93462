"""Batch migration of order data between legacy meta and the normalized tables."""
from __future__ import annotations

import argparse
import logging
import sqlite3
import sys
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple, Type

from dotenv import load_dotenv

from database import get_db_connection, init_db
from services.order_records import OrderRecord, RefundRecord
from services.order_store import OrderDataStore, OrderRepository

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
PROGRESS_LABEL = "Order Data Migration"


class MigrationError(RuntimeError):
    """Raised when a migration run cannot continue."""


class NoProgressError(MigrationError):
    """Raised when consecutive batches are identical and the run would loop forever."""


class ProgressReporter(Protocol):
    """Receives progress updates from a running migration."""

    def start(self, label: str, total: int) -> None:
        ...

    def tick(self) -> None:
        ...

    def finish(self) -> None:
        ...


class NullProgress:
    def start(self, label: str, total: int) -> None:
        pass

    def tick(self) -> None:
        pass

    def finish(self) -> None:
        pass


class ConsoleProgress:
    """Writes a single updating progress line to a stream."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stderr
        self.label = ""
        self.total = 0
        self.current = 0

    def start(self, label: str, total: int) -> None:
        self.label = label
        self.total = total
        self.current = 0
        self._render()

    def tick(self) -> None:
        self.current += 1
        self._render()

    def finish(self) -> None:
        self.stream.write("\n")
        self.stream.flush()

    def _render(self) -> None:
        percent = int(self.current * 100 / self.total) if self.total else 100
        self.stream.write(f"\r{self.label}  {percent:3d}% {self.current}/{self.total}")
        self.stream.flush()


@dataclass(frozen=True)
class MigrationSummary:
    """Structured results returned by :meth:`OrderMigrator.migrate` and ``backfill``."""

    processed: int
    skipped_ids: Tuple[int, ...] = ()
    nothing_to_do: bool = False


def describe_count(count: int, template_one: str, template_many: str) -> str:
    return (template_one if count == 1 else template_many) % count


class OrderMigrator:
    """Walks pending or migrated records in bounded batches on one connection."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        data_store: Optional[OrderDataStore] = None,
        record_classes: Sequence[Type[OrderRecord]] = (OrderRecord, RefundRecord),
        progress: Optional[ProgressReporter] = None,
    ):
        self.conn = conn
        self.data_store = data_store or OrderDataStore(conn)
        self.repository = OrderRepository(conn, self.data_store)
        self.record_classes = tuple(record_classes)
        self.progress = progress or NullProgress()
        self.skipped_ids: List[int] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def _pending_query(self) -> Tuple[str, List[object]]:
        parts = []
        params: List[object] = []
        for record_class in self.record_classes:
            parts.append(
                f"""
                SELECT o.id AS id, o.created_at AS created_at
                FROM orders o
                LEFT JOIN {record_class.schema.table_name} t ON t.order_id = o.id
                WHERE o.order_type = ? AND t.order_id IS NULL
                """
            )
            params.append(record_class.order_type)
        return " UNION ALL ".join(parts), params

    def _migrated_query(self) -> str:
        return " UNION ALL ".join(
            f"SELECT order_id FROM {record_class.schema.table_name}"
            for record_class in self.record_classes
        )

    def count(self) -> int:
        """Return how many records have no normalized row yet."""
        query, params = self._pending_query()
        cursor = self.conn.execute(f"SELECT COUNT(*) FROM ({query})", params)
        return int(cursor.fetchone()[0])

    def count_migrated(self) -> int:
        cursor = self.conn.execute(f"SELECT COUNT(order_id) FROM ({self._migrated_query()})")
        return int(cursor.fetchone()[0])

    def fetch_pending_batch(self, limit: int) -> List[int]:
        """Return up to ``limit`` pending IDs, newest first."""
        query, params = self._pending_query()
        cursor = self.conn.execute(
            f"SELECT id FROM ({query}) ORDER BY created_at DESC, id DESC LIMIT ?",
            [*params, limit],
        )
        return [int(row[0]) for row in cursor.fetchall() if row[0]]

    def fetch_migrated_page(self, offset: int, limit: int) -> List[int]:
        cursor = self.conn.execute(
            f"SELECT order_id FROM ({self._migrated_query()}) ORDER BY order_id LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [int(row[0]) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Legacy -> normalized
    # ------------------------------------------------------------------
    def migrate(self, batch_size: int = DEFAULT_BATCH_SIZE) -> MigrationSummary:
        """Migrate every pending record into the normalized tables."""
        if batch_size < 1:
            raise ValueError("batch_size must be a positive integer")
        self.skipped_ids = []
        try:
            return self._migrate(batch_size)
        except sqlite3.Error as exc:
            LOGGER.error("Database error during migration: %s", exc)
            raise MigrationError(f"A database error occurred: {exc}") from exc

    def _migrate(self, batch_size: int) -> MigrationSummary:
        init_db(self.conn)
        order_count = self.count()
        if not order_count:
            LOGGER.warning("There are no orders to migrate, aborting.")
            return MigrationSummary(processed=0, nothing_to_do=True)

        LOGGER.info(describe_count(
            order_count,
            "There is %d order to be migrated.",
            "There are %d orders to be migrated.",
        ))
        self.progress.start(PROGRESS_LABEL, order_count)
        processed = 0
        order_data = self.fetch_pending_batch(batch_size)

        while [order_id for order_id in order_data if order_id not in self.skipped_ids]:
            for order_id in order_data:
                if order_id in self.skipped_ids:
                    continue
                if self._migrate_one(order_id):
                    processed += 1
                    self.progress.tick()

            # Load up the next batch.
            next_batch = self.fetch_pending_batch(batch_size)
            if next_batch == order_data:
                self.progress.finish()
                LOGGER.error("Batch %s was returned twice; no progress is possible", next_batch)
                raise NoProgressError("Infinite loop detected, aborting.")
            order_data = next_batch

        self.progress.finish()
        if self.skipped_ids:
            LOGGER.warning(
                "Skipped %d order(s) that could not be loaded: %s",
                len(self.skipped_ids),
                ", ".join(str(order_id) for order_id in self.skipped_ids),
            )
        if not processed:
            LOGGER.warning("No orders were migrated.")
        else:
            LOGGER.info(describe_count(
                processed, "%d order was migrated.", "%d orders were migrated."
            ))
        return MigrationSummary(processed=processed, skipped_ids=tuple(self.skipped_ids))

    def _migrate_one(self, order_id: int) -> bool:
        loaded = self.repository.get(order_id, auto_migrate=False)
        if not loaded.ok:
            self._skip(order_id, loaded.reason)
            return False

        try:
            result = self.data_store.populate_from_legacy(loaded.record)
        except (ValueError, TypeError) as exc:
            self._skip(order_id, str(exc))
            return False
        if not result.ok:
            self.conn.rollback()
            raise MigrationError(
                f"A database error occurred while migrating order {order_id}: {result.error}."
            )
        self.conn.commit()
        LOGGER.debug("Order ID %d has been migrated (%s).", order_id, result.status)
        return True

    def _skip(self, order_id: int, reason: str) -> None:
        self.skipped_ids.append(order_id)
        LOGGER.warning("Unable to retrieve order with ID %d, skipping: %s", order_id, reason)

    # ------------------------------------------------------------------
    # Normalized -> legacy
    # ------------------------------------------------------------------
    def backfill(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch: int = 1,
        delete: bool = False,
    ) -> MigrationSummary:
        """Copy normalized rows back into legacy meta, page by page.

        ``batch`` is the 1-based page to start from.  With ``delete`` each
        normalized row is removed once its data has been copied.
        """
        if batch_size < 1 or batch < 1:
            raise ValueError("batch_size and batch must be positive integers")
        try:
            return self._backfill(batch_size, batch, delete)
        except sqlite3.Error as exc:
            LOGGER.error("Database error during backfill: %s", exc)
            raise MigrationError(f"A database error occurred: {exc}") from exc

    def _backfill(self, batch_size: int, batch: int, delete: bool) -> MigrationSummary:
        init_db(self.conn)
        order_count = self.count_migrated()
        if not order_count:
            LOGGER.warning("There are no orders to migrate, aborting.")
            return MigrationSummary(processed=0, nothing_to_do=True)

        self.progress.start(PROGRESS_LABEL, order_count)
        processed = 0
        removed = 0
        skipped: List[int] = []
        starting = (batch - 1) * batch_size
        order_data = self.fetch_migrated_page(starting, batch_size)

        while order_data:
            for order_id in order_data:
                loaded = self.repository.get(order_id, auto_migrate=False)
                if loaded.ok:
                    result = self.data_store.backfill_legacy(loaded.record, delete=delete)
                    if not result.ok:
                        self.conn.rollback()
                        raise MigrationError(
                            f"A database error occurred while backfilling order {order_id}: {result.error}."
                        )
                    if delete:
                        removed += 1
                else:
                    skipped.append(order_id)
                    LOGGER.warning("Unable to retrieve order with ID %d: %s", order_id, loaded.reason)

                processed += 1
                self.progress.tick()

            self.conn.commit()
            # Deleted rows no longer occupy an offset.
            order_data = self.fetch_migrated_page(starting + processed - removed, batch_size)

        self.progress.finish()
        if not processed:
            LOGGER.warning("No orders were migrated.")
        else:
            LOGGER.info(describe_count(
                processed, "%d order was migrated.", "%d orders were migrated."
            ))
        return MigrationSummary(processed=processed, skipped_ids=tuple(skipped))


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{value!r} is not an integer") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError("value must be at least 1")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage the contents of the normalized order tables."
    )
    parser.add_argument(
        "--database",
        help="Path to the SQLite database (default: data/orders_store.db)",
    )
    parser.add_argument("--verbose", action="store_true", help="Log every migrated order")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("count", help="Count orders that have yet to be migrated")

    migrate_parser = subparsers.add_parser(
        "migrate", help="Migrate order data to the normalized tables"
    )
    migrate_parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=DEFAULT_BATCH_SIZE,
        help="The number of orders to process in each batch (default: 100)",
    )

    backfill_parser = subparsers.add_parser(
        "backfill", help="Copy normalized order data back into order meta"
    )
    backfill_parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=DEFAULT_BATCH_SIZE,
        help="The number of orders to process in each batch (default: 100)",
    )
    backfill_parser.add_argument(
        "--batch",
        type=_positive_int,
        default=1,
        help="The batch number to start from (default: 1)",
    )
    backfill_parser.add_argument(
        "--delete",
        action="store_true",
        help="Remove normalized rows once their data has been copied back",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry-point used by ``migrate.py``."""

    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    conn = get_db_connection(args.database)
    try:
        init_db(conn)
        migrator = OrderMigrator(conn, progress=ConsoleProgress())
        if args.command == "count":
            order_count = migrator.count()
            print(describe_count(
                order_count,
                "There is %d order to be migrated.",
                "There are %d orders to be migrated.",
            ))
            return 0

        if args.command == "migrate":
            summary = migrator.migrate(batch_size=args.batch_size)
        else:
            summary = migrator.backfill(
                batch_size=args.batch_size,
                batch=args.batch,
                delete=args.delete,
            )
    except MigrationError as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        conn.close()

    if summary.nothing_to_do:
        print("Warning: There are no orders to migrate, aborting.")
    elif not summary.processed:
        print("Warning: No orders were migrated.")
    else:
        print("Success: " + describe_count(
            summary.processed, "%d order was migrated.", "%d orders were migrated."
        ))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI behavior
    raise SystemExit(main())
