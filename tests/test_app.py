import pytest

import app as order_app
from conftest import insert_order
from database import get_db_connection, init_db


@pytest.fixture
def client(tmp_path, monkeypatch):
    database_path = tmp_path / 'orders_store.db'
    connection = get_db_connection(database_path)
    init_db(connection)
    insert_order(connection, 55, {
        '_order_key': 'wc_order_55',
        '_order_total': '19.99',
        '_order_currency': 'USD',
        '_prices_include_tax': 'yes',
    })
    insert_order(connection, 56, {'_refund_amount': '5.00', '_refund_reason': 'Late'}, order_type='shop_order_refund', parent_id=55)
    connection.close()

    monkeypatch.setitem(order_app.app.config, 'DATABASE_PATH', str(database_path))
    monkeypatch.setitem(order_app.app.config, 'TESTING', True)
    monkeypatch.setattr(order_app, '_db_bootstrapped', False)
    with order_app.app.test_client() as test_client:
        yield test_client


def test_get_order_reads_through_and_migrates(client):
    before = client.get('/api/migration/status').get_json()
    assert before['pending'] == 2
    assert before['migrated'] == 0
    assert before['automatic_migration'] is True

    response = client.get('/api/orders/55')

    assert response.status_code == 200
    payload = response.get_json()
    assert payload['total'] == '19.99'
    assert payload['currency'] == 'USD'
    assert payload['prices_include_tax'] is True
    assert payload['migrated'] is True

    after = client.get('/api/migration/status').get_json()
    assert after['pending'] == 1
    assert after['migrated'] == 1


def test_get_refund(client):
    response = client.get('/api/refunds/56')

    assert response.status_code == 200
    payload = response.get_json()
    assert payload['amount'] == '5.00'
    assert payload['reason'] == 'Late'
    assert payload['parent_id'] == 55


def test_wrong_type_and_missing_records_are_not_found(client):
    assert client.get('/api/refunds/55').status_code == 404
    assert client.get('/api/orders/56').status_code == 404
    # Mismatched types are rejected before any write-through.
    assert client.get('/api/migration/status').get_json()['migrated'] == 0
    missing = client.get('/api/orders/999')
    assert missing.status_code == 404
    assert missing.get_json()['status'] == 'error'


def test_lookup_by_order_key(client):
    response = client.get('/api/orders/by-key/wc_order_55')
    assert response.status_code == 200
    assert response.get_json()['id'] == 55
    assert client.get('/api/orders/by-key/unknown').status_code == 404


def test_disabled_automatic_migration_keeps_reads_side_effect_free(client, monkeypatch):
    monkeypatch.setenv('ORDER_TABLE_AUTOMATIC_MIGRATION', 'false')

    payload = client.get('/api/orders/55').get_json()

    assert payload['migrated'] is False
    assert payload['total'] == '19.99'
    assert client.get('/api/migration/status').get_json()['migrated'] == 0
