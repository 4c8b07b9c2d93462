import unittest
from decimal import Decimal

from services.order_records import LoadResult, OrderRecord, RefundRecord, record_class_for


class ChangeJournalTests(unittest.TestCase):
    def setUp(self):
        self.record = OrderRecord(12, status='processing')

    def test_set_cleans_and_journals_previous_value(self):
        self.record.set('total', '19.99')
        self.assertEqual(self.record.get('total'), Decimal('19.99'))
        self.assertEqual(self.record.get_changes(), {'total': Decimal('19.99')})
        self.assertEqual(self.record.journal(), [('total', None)])

    def test_first_old_value_is_kept_across_repeated_changes(self):
        self.record.set('currency', 'USD')
        self.record.apply_changes()
        self.record.set('currency', 'EUR')
        self.record.set('currency', 'GBP')
        self.assertEqual(self.record.journal(), [('currency', 'USD')])

    def test_reverting_to_persisted_value_clears_the_entry(self):
        self.record.set('currency', 'USD')
        self.record.apply_changes()
        self.record.set('currency', 'EUR')
        self.record.set('currency', 'USD')
        self.assertEqual(self.record.get_changes(), {})

    def test_setting_an_equal_value_is_not_a_change(self):
        self.record.set_props({'total': '10.00'})
        self.record.apply_changes()
        self.record.set('total', Decimal('10.00'))
        self.assertEqual(self.record.get_changes(), {})

    def test_unknown_fields_are_rejected(self):
        with self.assertRaises(KeyError):
            self.record.set('refund_reason', 'nope')
        with self.assertRaises(KeyError):
            self.record.get('amount')

    def test_to_dict_serialises_values(self):
        self.record.set_props({'total': '5.50', 'prices_include_tax': 'yes'})
        payload = self.record.to_dict()
        self.assertEqual(payload['id'], 12)
        self.assertEqual(payload['type'], 'shop_order')
        self.assertEqual(payload['status'], 'processing')
        self.assertEqual(payload['total'], '5.50')
        self.assertTrue(payload['prices_include_tax'])
        self.assertFalse(payload['migrated'])


class RecordTypeTests(unittest.TestCase):
    def test_refunds_track_their_own_fields(self):
        refund = RefundRecord(13, parent_id=12)
        refund.set('reason', 'Wrong size')
        self.assertEqual(refund.parent_id, 12)
        self.assertEqual(refund.schema.table_name, 'refund_table')
        self.assertEqual(refund.get_changes(), {'reason': 'Wrong size'})

    def test_record_class_lookup(self):
        self.assertIs(record_class_for('shop_order'), OrderRecord)
        self.assertIs(record_class_for('shop_order_refund'), RefundRecord)
        self.assertIsNone(record_class_for('shop_coupon'))

    def test_load_result(self):
        record = OrderRecord(1)
        self.assertTrue(LoadResult.success(record).ok)
        failure = LoadResult.failure('gone')
        self.assertFalse(failure.ok)
        self.assertEqual(failure.reason, 'gone')


if __name__ == '__main__':
    unittest.main()
