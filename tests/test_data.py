"""Tests for ExpenseSync.data.data."""
import pandas as pd

from ExpenseSync.core.schema import Operation, SyncStatus, Table
from ExpenseSync.data import data
from tests.base import BaseTestCase


class ExpenseDataTest(BaseTestCase):

    def test_add_expense_writes_and_queues(self):
        expense = data.add_expense(1250, 'food', '2025-01-15', description='Lunch')

        stored = self.db.get_expense(expense['id'])
        self.assertEqual(stored['amount'], 1250)
        self.assertEqual(stored['currency'], 'INR')
        self.assertEqual(stored['sync_status'], SyncStatus.Pending)

        action = self.db.find_sync_action(Table.Expenses, expense['id'])
        self.assertEqual(action.operation, Operation.Create)
        self.assertEqual(action.payload['amount'], 1250)
        self.assertNotIn('sync_status', action.payload)

    def test_add_expense_uses_preferred_currency(self):
        data.update_preferences(default_currency='USD')
        expense = data.add_expense(100, 'food', '2025-01-15')
        self.assertEqual(expense['currency'], 'USD')

    def test_add_expense_validation(self):
        with self.assertRaises(TypeError):
            data.add_expense(12.5, 'food', '2025-01-15')
        with self.assertRaises(TypeError):
            data.add_expense(True, 'food', '2025-01-15')
        with self.assertRaises(ValueError):
            data.add_expense(100, 'food', '15/01/2025')
        with self.assertRaises(ValueError):
            data.add_expense(100, 'food', '2025-01-15', currency='GBP')
        with self.assertRaises(ValueError):
            data.add_expense(100, 'food', '2025-01-15', is_recurring=True, recurring_frequency='daily')
        self.assertEqual(self.queue.count(), 0)

    def test_recurring_frequency_is_kept_only_for_recurring(self):
        once = data.add_expense(100, 'food', '2025-01-15', recurring_frequency='monthly')
        monthly = data.add_expense(100, 'food', '2025-01-15', is_recurring=True, recurring_frequency='monthly')
        self.assertIsNone(once['recurring_frequency'])
        self.assertEqual(monthly['recurring_frequency'], 'monthly')

    def test_update_expense(self):
        expense = data.add_expense(100, 'food', '2025-01-15')
        updated = data.update_expense(expense['id'], amount=200)

        self.assertEqual(updated['amount'], 200)
        self.assertGreaterEqual(updated['updated_at'], expense['updated_at'])
        # Still a single create carrying the new amount
        actions = self.queue.pending_actions()
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].operation, Operation.Create)
        self.assertEqual(actions[0].payload['amount'], 200)

    def test_update_missing_expense(self):
        self.assertIsNone(data.update_expense('missing', amount=1))

    def test_update_rejects_unknown_fields(self):
        expense = data.add_expense(100, 'food', '2025-01-15')
        with self.assertRaises(ValueError):
            data.update_expense(expense['id'], server_id='x')

    def test_delete_synced_expense_queues_delete(self):
        self.insert_local_expense('e1', server_id='9', sync_status=SyncStatus.Synced.value)

        self.assertTrue(data.delete_expense('e1'))
        self.assertFalse(data.delete_expense('e1'))

        record = self.db.get_expense('e1')
        self.assertTrue(record['deleted'])
        self.assertEqual(record['sync_status'], SyncStatus.Pending)
        action = self.db.find_sync_action(Table.Expenses, 'e1')
        self.assertEqual(action.operation, Operation.Delete)
        self.assertTrue(action.payload['deleted'])
        self.assertIsNone(data.update_expense('e1', amount=5))

    def test_mutations_work_while_signed_out(self):
        # Nothing in the data layer depends on a session or a configured remote
        expense = data.add_expense(100, 'food', '2025-01-15')
        data.update_expense(expense['id'], description='still offline')
        self.assertEqual(self.queue.count(), 1)
        self.assertEqual(self.remote.calls, [])


class CategoryDataTest(BaseTestCase):

    def test_add_category_is_placed_last(self):
        category = data.add_category('  Pets ', icon='Dog', color='#112233')
        self.assertEqual(category['name'], 'Pets')
        self.assertEqual(data.categories_frame()['id'].iloc[-1], category['id'])
        self.assertEqual(self.db.find_sync_action(Table.Categories, category['id']).operation, Operation.Create)

    def test_add_category_validation(self):
        with self.assertRaises(ValueError):
            data.add_category('   ')
        with self.assertRaises(ValueError):
            data.add_category('Pets', color='red')

    def test_update_and_hide_default_category(self):
        updated = data.update_category('food', is_hidden=True)
        self.assertTrue(updated['is_hidden'])
        self.assertNotIn('food', data.categories_frame(visible_only=True)['id'].tolist())
        self.assertEqual(self.db.find_sync_action(Table.Categories, 'food').payload, {'is_hidden': True})

    def test_reorder_category(self):
        self.assertEqual(data.reorder_category('other', 0)['sort_order'], 0)

    def test_default_category_cannot_be_deleted(self):
        with self.assertRaises(ValueError):
            data.delete_category('food')
        self.assertIsNotNone(self.db.get_category('food'))

    def test_delete_custom_category(self):
        category = data.add_category('Pets')
        self.assertTrue(data.delete_category(category['id']))
        self.assertTrue(self.db.get_category(category['id'])['deleted'])
        # Created and deleted before any sync: nothing to send
        self.assertEqual(self.queue.count(), 0)


class PreferenceDataTest(BaseTestCase):

    def test_update_preferences(self):
        prefs = data.update_preferences(theme='dark', date_format='YYYY-MM-DD')
        self.assertEqual(prefs['theme'], 'dark')
        self.assertEqual(prefs['sync_status'], SyncStatus.Pending)

        action = self.db.find_sync_action(Table.Preferences, prefs['id'])
        self.assertEqual(action.operation, Operation.Update)
        self.assertEqual(action.payload, {'theme': 'dark', 'date_format': 'YYYY-MM-DD'})

    def test_update_preferences_validation(self):
        with self.assertRaises(ValueError):
            data.update_preferences(theme='neon')
        with self.assertRaises(ValueError):
            data.update_preferences(language='en')


class ImportAndListingTest(BaseTestCase):

    def test_bulk_add_expenses(self):
        frame = pd.DataFrame({
            'date': ['2025-01-01', '2025-01-02', '2025-01-03'],
            'amount': [-12.34, 5, 0.5],
            'category': ['food', None, 'shopping'],
        })

        count = data.bulk_add_expenses(frame)

        self.assertEqual(count, 3)
        self.assertEqual(self.queue.count(), 3)
        df = data.expenses_frame().sort_values('date')
        self.assertEqual(df['amount'].tolist(), [1234, 500, 50])
        self.assertEqual(df['category'].tolist(), ['food', 'other', 'shopping'])
        self.assertEqual(set(df['currency']), {'INR'})

    def test_bulk_add_requires_columns(self):
        with self.assertRaises(ValueError):
            data.bulk_add_expenses(pd.DataFrame({'amount': [1]}))
        self.assertEqual(data.bulk_add_expenses(pd.DataFrame(columns=['date', 'amount'])), 0)

    def test_bulk_add_rejects_unparseable_rows(self):
        frame = pd.DataFrame({'date': ['2025-01-01'], 'amount': ['twelve']})
        with self.assertRaises(ValueError):
            data.bulk_add_expenses(frame)
        self.assertEqual(self.queue.count(), 0)

    def test_expenses_frame_date_range(self):
        data.add_expense(100, 'food', '2025-01-10')
        data.add_expense(200, 'food', '2025-02-10')

        df = data.expenses_frame('2025-02-01', '2025-02-28')

        self.assertEqual(df['amount'].tolist(), [200])
        self.assertEqual(list(df.columns), data.EXPENSE_COLUMNS)

    def test_empty_expenses_frame_has_columns(self):
        self.assertEqual(list(data.expenses_frame().columns), data.EXPENSE_COLUMNS)

    def test_category_totals(self):
        data.add_expense(300, 'food', '2025-01-10')
        data.add_expense(100, 'food', '2025-01-11')
        data.add_expense(400, 'shopping', '2025-01-12')
        data.add_expense(1000, 'food', '2025-01-12', currency='USD')

        totals = data.category_totals()

        inr = totals[totals['currency'] == 'INR'].set_index('category')
        self.assertEqual(inr.loc['food', 'total'], 400)
        self.assertEqual(inr.loc['food', 'count'], 2)
        self.assertEqual(inr.loc['food', 'percentage'], 50.0)
        usd = totals[totals['currency'] == 'USD']
        self.assertEqual(usd['percentage'].tolist(), [100.0])
        self.assertEqual(totals['total'].iloc[0], 1000)

    def test_category_totals_empty(self):
        self.assertTrue(data.category_totals().empty)

    def test_format_amount(self):
        self.assertEqual(data.format_amount(123456, 'USD'), '$1,234.56')
        self.assertIn('1,234.56', data.format_amount(123456, 'INR'))

    def test_format_date(self):
        self.assertEqual(data.format_date('2025-01-15'), '15/01/2025')
        self.assertEqual(data.format_date('2025-01-15', 'MM/DD/YYYY'), '01/15/2025')
        data.update_preferences(date_format='YYYY-MM-DD')
        self.assertEqual(data.format_date('2025-01-15'), '2025-01-15')
