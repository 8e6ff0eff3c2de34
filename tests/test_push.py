"""Tests for ExpenseSync.core.push."""
from ExpenseSync.core.push import push_changes
from ExpenseSync.core.queue import MAX_RETRIES
from ExpenseSync.core.schema import Operation, SyncAction, SyncStatus, Table, now_str
from ExpenseSync.data import data
from tests.base import BaseTestCase, mute_ui_signals


class PushTest(BaseTestCase):

    def push(self):
        with mute_ui_signals():
            return push_changes(self.user_id, database=self.db, queue=self.queue, remote=self.remote)

    def test_offline_create_is_pushed(self):
        expense = data.add_expense(1250, 'food', '2025-01-15', description='Lunch')
        self.assertEqual(self.queue.count(), 1)

        result = self.push()

        self.assertTrue(result.success)
        self.assertEqual(result.pushed, 1)
        self.assertEqual(result.failed, 0)
        self.assertEqual(self.queue.count(), 0)

        rows = self.remote.rows('expenses')
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['local_id'], expense['id'])
        self.assertEqual(rows[0]['user_id'], self.user_id)
        self.assertEqual(rows[0]['amount'], 1250)
        self.assertIsNone(rows[0]['deleted_at'])

        local = self.db.get_expense(expense['id'])
        self.assertEqual(local['sync_status'], SyncStatus.Synced)
        self.assertEqual(local['server_id'], str(rows[0]['id']))
        self.assertIsNotNone(local['synced_at'])

    def test_repeated_delivery_does_not_duplicate_rows(self):
        expense = data.add_expense(500, 'food', '2025-01-15')
        action = self.queue.pending_actions()[0]
        self.push()

        # Simulate a false negative: the same action is delivered again
        self.db.add_to_sync_queue(action)
        result = self.push()

        self.assertTrue(result.success)
        rows = self.remote.rows('expenses')
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['local_id'], expense['id'])

    def test_create_then_delete_makes_no_calls(self):
        expense = data.add_expense(500, 'food', '2025-01-15')
        data.delete_expense(expense['id'])
        self.assertEqual(self.queue.count(), 0)

        result = self.push()

        self.assertTrue(result.success)
        self.assertEqual(result.pushed, 0)
        self.assertEqual(self.remote.calls, [])

    def test_delete_sets_remote_tombstone(self):
        expense = data.add_expense(500, 'food', '2025-01-15')
        self.push()

        data.delete_expense(expense['id'])
        result = self.push()

        self.assertTrue(result.success)
        self.assertEqual(result.pushed, 1)
        row = self.remote.rows('expenses')[0]
        self.assertIsNotNone(row['deleted_at'])
        self.assertEqual(self.remote.calls[-1][0], 'update')

        local = self.db.get_expense(expense['id'])
        self.assertTrue(local['deleted'])
        self.assertEqual(local['sync_status'], SyncStatus.Synced)
        self.assertEqual(local['server_id'], str(row['id']))

    def test_update_sends_current_record(self):
        expense = data.add_expense(500, 'food', '2025-01-15', description='before')
        self.push()

        data.update_expense(expense['id'], description='after', amount=900)
        self.push()

        row = self.remote.rows('expenses')[0]
        self.assertEqual(row['description'], 'after')
        self.assertEqual(row['amount'], 900)
        self.assertEqual(row['currency'], 'INR')

    def test_retry_ceiling_reports_permanent_failure(self):
        expense = data.add_expense(500, 'food', '2025-01-15')
        self.remote.fail('upsert', times=MAX_RETRIES)

        for _ in range(MAX_RETRIES - 1):
            result = self.push()
            self.assertFalse(result.success)
            self.assertEqual(result.failed, 0)
            self.assertEqual(result.errors, [])
            self.assertEqual(self.queue.count(), 1)

        result = self.push()
        self.assertFalse(result.success)
        self.assertEqual(result.failed, 1)
        self.assertEqual(result.errors, [f'Failed to sync expenses:{expense["id"]} after max retries'])
        self.assertEqual(self.queue.count(), 0)
        self.assertEqual(self.db.get_expense(expense['id'])['sync_status'], SyncStatus.Error)
        self.assertEqual(self.remote.rows('expenses'), [])

    def test_two_failures_then_success(self):
        data.add_expense(500, 'food', '2025-01-15')
        self.remote.fail('upsert', times=2)

        self.push()
        self.push()
        result = self.push()

        self.assertTrue(result.success)
        self.assertEqual(result.pushed, 1)
        self.assertEqual(result.failed, 0)
        self.assertEqual(result.errors, [])
        self.assertEqual(len(self.remote.rows('expenses')), 1)

    def test_failure_does_not_stop_other_actions(self):
        data.add_expense(500, 'food', '2025-01-15')
        data.add_category('Pets', color='#112233')
        self.remote.fail('upsert', table='expenses')

        result = self.push()

        self.assertFalse(result.success)
        self.assertEqual(result.pushed, 1)
        self.assertEqual(len(self.remote.rows('categories')), 1)
        self.assertEqual(self.queue.count(), 1)

    def test_actions_queued_during_push_wait_for_next_cycle(self):
        data.add_expense(500, 'food', '2025-01-15')

        def add_during_push(method, table):
            if method == 'upsert' and len(self.remote.rows('expenses')) == 0:
                data.add_expense(700, 'food', '2025-01-16')

        self.remote.hooks.append(add_during_push)
        result = self.push()
        self.remote.hooks.clear()

        self.assertEqual(result.pushed, 1)
        self.assertEqual(self.queue.count(), 1)

        result = self.push()
        self.assertEqual(result.pushed, 1)
        self.assertEqual(len(self.remote.rows('expenses')), 2)

    def test_change_during_transmission_stays_queued(self):
        expense = data.add_expense(500, 'food', '2025-01-15')

        def edit_during_push(method, table):
            if method == 'upsert' and len(self.remote.rows('expenses')) == 0:
                data.update_expense(expense['id'], amount=800)

        self.remote.hooks.append(edit_during_push)
        self.push()
        self.remote.hooks.clear()

        actions = self.queue.pending_actions()
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].operation, Operation.Update)
        self.assertEqual(self.db.get_expense(expense['id'])['sync_status'], SyncStatus.Pending)

        self.push()
        self.assertEqual(self.remote.rows('expenses')[0]['amount'], 800)
        self.assertEqual(self.queue.count(), 0)

    def test_category_and_preferences_push(self):
        category = data.add_category('Pets', icon='Dog', color='#112233')
        data.update_preferences(theme='dark', default_currency='USD')

        result = self.push()

        self.assertTrue(result.success)
        self.assertEqual(result.pushed, 2)

        categories = self.remote.rows('categories')
        self.assertEqual(categories[0]['local_id'], category['id'])
        self.assertEqual(categories[0]['name'], 'Pets')

        prefs = self.remote.rows('user_preferences')
        self.assertEqual(len(prefs), 1)
        self.assertEqual(prefs[0]['theme'], 'dark')
        self.assertEqual(prefs[0]['default_currency'], 'USD')
        self.assertEqual(self.db.get_preferences()['sync_status'], SyncStatus.Synced)

    def test_invalid_action_is_retried_then_dropped(self):
        # Queued action whose entity no longer exists and whose payload is incomplete
        self.db.add_to_sync_queue(SyncAction(
            id='broken', table=Table.Expenses, operation=Operation.Create,
            entity_id='ghost', payload={'amount': 1}, timestamp=now_str(),
        ))

        for _ in range(MAX_RETRIES):
            result = self.push()

        self.assertFalse(result.success)
        self.assertEqual(result.failed, 1)
        self.assertIn('expenses:ghost', result.errors[0])
        self.assertEqual(self.queue.count(), 0)
