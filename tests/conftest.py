import pathlib
import sqlite3
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from database import init_db


def insert_order(conn, order_id, meta=None, *, order_type='shop_order', created_at='2024-01-01 00:00:00', parent_id=0, status='completed'):
    conn.execute(
        "INSERT INTO orders (id, order_type, parent_id, status, created_at) VALUES (?, ?, ?, ?, ?)",
        (order_id, order_type, parent_id, status, created_at),
    )
    for meta_key, meta_value in (meta or {}).items():
        conn.execute(
            "INSERT INTO order_meta (order_id, meta_key, meta_value) VALUES (?, ?, ?)",
            (order_id, meta_key, meta_value),
        )
    conn.commit()


@pytest.fixture(autouse=True)
def default_automatic_migration(monkeypatch):
    monkeypatch.delenv('ORDER_TABLE_AUTOMATIC_MIGRATION', raising=False)


@pytest.fixture
def conn():
    connection = sqlite3.connect(':memory:')
    connection.row_factory = sqlite3.Row
    init_db(connection)
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture
def make_order(conn):
    def _make_order(order_id, meta=None, **kwargs):
        insert_order(conn, order_id, meta, **kwargs)
        return order_id

    return _make_order
