import sqlite3
import logging
from pathlib import Path
from typing import Optional, Union

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from data_paths import ensure_data_root
from services.order_schema import SCHEMAS, TableSchema

DATABASE_FILENAME = 'orders_store.db'


def database_file() -> Path:
    """Return the path of the default SQLite database file."""
    return ensure_data_root() / DATABASE_FILENAME


def get_db_connection(path: Optional[Union[str, Path]] = None):
    """Establishes a connection to the SQLite database."""
    target = str(path) if path is not None else str(database_file())
    conn = sqlite3.connect(target, timeout=30.0, isolation_level='DEFERRED')
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA cache_size=10000;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.row_factory = sqlite3.Row
    return conn


def table_exists(conn: sqlite3.Connection, table_name: str) -> bool:
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table_name,),
    )
    return cursor.fetchone() is not None


def _ensure_normalized_table(cursor: sqlite3.Cursor, schema: TableSchema) -> None:
    """Create a normalized table, adding any columns older installs lack."""
    cursor.execute(schema.create_statement())
    cursor.execute(f"PRAGMA table_info({schema.table_name})")
    existing_columns = {row[1] for row in cursor.fetchall()}
    for definition in schema.columns.values():
        if definition.name not in existing_columns:
            logger.info("Adding column %s.%s", schema.table_name, definition.name)
            cursor.execute(
                f"ALTER TABLE {schema.table_name} ADD COLUMN {definition.name} {definition.sql_type}"
            )


def init_db(conn: Optional[sqlite3.Connection] = None):
    """Initializes the legacy and normalized order tables."""
    owns_connection = conn is None
    if conn is None:
        conn = get_db_connection()
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY NOT NULL,
            order_type TEXT NOT NULL DEFAULT 'shop_order',
            parent_id INTEGER NOT NULL DEFAULT 0,
            status TEXT DEFAULT 'pending',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_orders_type_created ON orders(order_type, created_at)")

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS order_meta (
            meta_id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id INTEGER NOT NULL,
            meta_key TEXT NOT NULL,
            meta_value TEXT,
            FOREIGN KEY (order_id) REFERENCES orders (id) ON DELETE CASCADE
        );
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_order_meta_key ON order_meta(order_id, meta_key)")

    for schema in SCHEMAS.values():
        _ensure_normalized_table(cursor, schema)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_order_table_order_key ON order_table(order_key)")

    conn.commit()
    if owns_connection:
        conn.close()
    logger.info("Database initialized.")

if __name__ == '__main__':
    init_db()
