import sqlite3

from database import init_db, table_exists
from services.order_schema import ORDER_SCHEMA, REFUND_SCHEMA


def test_init_db_backfills_missing_normalized_columns():
    conn = sqlite3.connect(":memory:")
    cursor = conn.cursor()

    cursor.execute(
        """
        CREATE TABLE order_table (
            order_id INTEGER PRIMARY KEY NOT NULL,
            total TEXT,
            currency TEXT
        );
        """
    )
    cursor.execute("INSERT INTO order_table (order_id, total, currency) VALUES (?, ?, ?)", (5, "1.00", "USD"))

    init_db(conn)

    cursor.execute("PRAGMA table_info(order_table)")
    column_names = {row[1] for row in cursor.fetchall()}
    assert set(ORDER_SCHEMA.column_names) <= column_names

    cursor.execute("SELECT total, currency, cart_hash FROM order_table WHERE order_id = 5")
    assert tuple(cursor.fetchone()) == ("1.00", "USD", None)

    conn.close()


def test_init_db_is_idempotent():
    conn = sqlite3.connect(":memory:")

    init_db(conn)
    init_db(conn)

    for table in ("orders", "order_meta", ORDER_SCHEMA.table_name, REFUND_SCHEMA.table_name):
        assert table_exists(conn, table)

    cursor = conn.execute("PRAGMA index_list(order_meta)")
    assert "idx_order_meta_key" in {row[1] for row in cursor.fetchall()}

    conn.close()
