from dotenv import load_dotenv
from flask import Flask, jsonify

from database import get_db_connection, init_db
from services.migration import OrderMigrator
from services.order_store import OrderDataStore, OrderEvents, OrderRepository

# Load environment variables from .env file
load_dotenv()

# --- App Initialization ---
app = Flask(__name__)
app.config.setdefault('DATABASE_PATH', None)

order_events = OrderEvents()
_db_bootstrapped = False


@order_events.subscribe
def _log_order_update(record, changes):
    app.logger.info(
        "Normalized row for %s %d written (%s)",
        record.order_type,
        record.id,
        ", ".join(sorted(changes)),
    )


def _connect():
    return get_db_connection(app.config.get('DATABASE_PATH'))


@app.before_request
def _ensure_database_initialized():
    """Guarantee the SQLite schema exists before serving any request."""
    global _db_bootstrapped
    if _db_bootstrapped:
        return
    bootstrap_conn = _connect()
    try:
        init_db(bootstrap_conn)
    finally:
        bootstrap_conn.close()
    _db_bootstrapped = True


def _load_record(record_id, expected_type):
    conn = _connect()
    try:
        repository = OrderRepository(conn, OrderDataStore(conn, events=order_events))
        entity = repository.data_store.legacy.get_entity(record_id)
        if entity is not None and entity['order_type'] != expected_type:
            return jsonify({"status": "error", "message": f"Record {record_id} is not a {expected_type}"}), 404
        loaded = repository.get(record_id)
        # Reads may have written the normalized row through.
        conn.commit()
    finally:
        conn.close()

    if not loaded.ok:
        return jsonify({"status": "error", "message": loaded.reason}), 404
    return jsonify(loaded.record.to_dict())


@app.route('/api/orders/<int:order_id>', methods=['GET'])
def get_order(order_id):
    return _load_record(order_id, 'shop_order')


@app.route('/api/refunds/<int:refund_id>', methods=['GET'])
def get_refund(refund_id):
    return _load_record(refund_id, 'shop_order_refund')


@app.route('/api/orders/by-key/<string:order_key>', methods=['GET'])
def get_order_by_key(order_key):
    conn = _connect()
    try:
        order_id = OrderRepository(conn).get_order_id_by_order_key(order_key)
    finally:
        conn.close()
    if order_id is None:
        return jsonify({"status": "error", "message": "Order not found"}), 404
    return _load_record(order_id, 'shop_order')


@app.route('/api/migration/status', methods=['GET'])
def migration_status():
    conn = _connect()
    try:
        migrator = OrderMigrator(conn)
        payload = {
            "pending": migrator.count(),
            "migrated": migrator.count_migrated(),
            "automatic_migration": migrator.data_store.automatic_migration,
        }
    finally:
        conn.close()
    return jsonify(payload)


if __name__ == '__main__':
    app.run(host='127.0.0.1', port=5002)
