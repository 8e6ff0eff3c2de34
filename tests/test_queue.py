"""Tests for ExpenseSync.core.queue."""
import threading

from ExpenseSync.core.queue import MAX_RETRIES, SyncQueue
from ExpenseSync.core.schema import Operation, Table
from tests.base import BaseTestCase


class SyncQueueTest(BaseTestCase):

    def _actions(self):
        return self.queue.pending_actions()

    def test_enqueue_appends_new_action(self):
        action = self.queue.enqueue(Table.Expenses, Operation.Create, 'e1', {'amount': 100})
        self.assertIsNotNone(action)

        actions = self._actions()
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].id, action.id)
        self.assertEqual(actions[0].operation, Operation.Create)
        self.assertEqual(actions[0].payload, {'amount': 100})
        self.assertEqual(actions[0].retry_count, 0)

    def test_create_then_delete_leaves_queue_empty(self):
        self.queue.enqueue(Table.Expenses, Operation.Create, 'e1', {'amount': 100})
        result = self.queue.enqueue(Table.Expenses, Operation.Delete, 'e1', {'deleted': True})
        self.assertIsNone(result)
        self.assertEqual(self.queue.count(), 0)

    def test_create_then_update_merges_into_create(self):
        self.queue.enqueue(Table.Expenses, Operation.Create, 'e1', {'amount': 100, 'description': 'a'})
        self.queue.enqueue(Table.Expenses, Operation.Update, 'e1', {'description': 'b'})

        actions = self._actions()
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].operation, Operation.Create)
        self.assertEqual(actions[0].payload, {'amount': 100, 'description': 'b'})

    def test_update_then_update_merges_payload(self):
        self.queue.enqueue(Table.Categories, Operation.Update, 'c1', {'name': 'A'})
        self.queue.enqueue(Table.Categories, Operation.Update, 'c1', {'color': '#ffffff'})

        actions = self._actions()
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].operation, Operation.Update)
        self.assertEqual(actions[0].payload, {'name': 'A', 'color': '#ffffff'})

    def test_update_then_delete_becomes_delete(self):
        self.queue.enqueue(Table.Expenses, Operation.Update, 'e1', {'amount': 5})
        self.queue.enqueue(Table.Expenses, Operation.Delete, 'e1', {'deleted': True})

        actions = self._actions()
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].operation, Operation.Delete)
        self.assertEqual(actions[0].payload, {'deleted': True})

    def test_delete_then_update_is_ignored(self):
        self.queue.enqueue(Table.Expenses, Operation.Delete, 'e1', {'deleted': True})
        self.queue.enqueue(Table.Expenses, Operation.Update, 'e1', {'amount': 5})

        actions = self._actions()
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].operation, Operation.Delete)
        self.assertEqual(actions[0].payload, {'deleted': True})

    def test_create_over_existing_action_is_ignored(self):
        self.queue.enqueue(Table.Expenses, Operation.Update, 'e1', {'amount': 5})
        self.queue.enqueue(Table.Expenses, Operation.Create, 'e1', {'amount': 7})

        actions = self._actions()
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].operation, Operation.Update)
        self.assertEqual(actions[0].payload, {'amount': 5})

    def test_same_id_in_different_tables_is_independent(self):
        self.queue.enqueue(Table.Expenses, Operation.Create, 'x', {})
        self.queue.enqueue(Table.Categories, Operation.Create, 'x', {'name': 'X'})
        self.assertEqual(self.queue.count(), 2)

    def test_delete_over_in_flight_create_is_kept(self):
        action = self.queue.enqueue(Table.Expenses, Operation.Create, 'e1', {'amount': 1})
        self.queue.begin(action)
        try:
            self.queue.enqueue(Table.Expenses, Operation.Delete, 'e1', {'deleted': True})
        finally:
            self.queue.end(action)

        actions = self._actions()
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].operation, Operation.Delete)

    def test_mark_complete_removes_unchanged_action(self):
        action = self.queue.enqueue(Table.Expenses, Operation.Create, 'e1', {'amount': 1})
        self.assertTrue(self.queue.mark_complete(action))
        self.assertEqual(self.queue.count(), 0)

    def test_mark_complete_keeps_action_changed_in_flight(self):
        snapshot = self.queue.enqueue(Table.Expenses, Operation.Create, 'e1', {'amount': 1})
        self.queue.enqueue(Table.Expenses, Operation.Update, 'e1', {'amount': 2})

        self.assertFalse(self.queue.mark_complete(snapshot))

        actions = self._actions()
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].operation, Operation.Update)
        self.assertEqual(actions[0].payload, {'amount': 2})

    def test_merged_timestamps_increase(self):
        first = self.queue.enqueue(Table.Expenses, Operation.Update, 'e1', {'amount': 1})
        first_ts = first.timestamp
        second = self.queue.enqueue(Table.Expenses, Operation.Update, 'e1', {'amount': 2})
        self.assertGreater(second.timestamp, first_ts)

    def test_retry_ceiling(self):
        action = self.queue.enqueue(Table.Expenses, Operation.Create, 'e1', {'amount': 1})

        results = [self.queue.mark_failed(action.id) for _ in range(MAX_RETRIES)]
        self.assertEqual(results, [True] * (MAX_RETRIES - 1) + [False])
        self.assertEqual(self.queue.count(), 0)

    def test_retry_count_is_persisted(self):
        action = self.queue.enqueue(Table.Expenses, Operation.Create, 'e1', {'amount': 1})
        self.queue.mark_failed(action.id)

        reloaded = SyncQueue(self.db, max_retries=MAX_RETRIES)
        self.assertEqual(reloaded.pending_actions()[0].retry_count, 1)

    def test_mark_failed_on_missing_action(self):
        self.assertFalse(self.queue.mark_failed('does-not-exist'))

    def test_queue_is_ordered_by_enqueue_time(self):
        for i in range(5):
            self.queue.enqueue(Table.Expenses, Operation.Create, f'e{i}', {})
        self.assertEqual([a.entity_id for a in self._actions()], [f'e{i}' for i in range(5)])

    def test_clear(self):
        for i in range(3):
            self.queue.enqueue(Table.Expenses, Operation.Create, f'e{i}', {})
        self.queue.clear()
        self.assertEqual(self.queue.count(), 0)
        self.assertFalse(self.queue.has_pending())

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            self.queue.enqueue(Table.SyncQueue, Operation.Create, 'e1', {})
        with self.assertRaises(ValueError):
            self.queue.enqueue(Table.Expenses, 'upsert', 'e1', {})
        with self.assertRaises(ValueError):
            self.queue.enqueue(Table.Expenses, Operation.Create, '', {})

    def test_queue_changed_signal(self):
        counts = []
        self.queue.queueChanged.connect(counts.append)
        self.queue.enqueue(Table.Expenses, Operation.Create, 'e1', {})
        self.queue.enqueue(Table.Expenses, Operation.Delete, 'e1', {})
        self.assertEqual(counts, [1, 0])

    def test_concurrent_enqueues_keep_one_action_per_entity(self):
        entity_ids = [f'e{i}' for i in range(4)]
        errors = []

        def worker(n):
            try:
                for entity_id in entity_ids:
                    self.queue.enqueue(Table.Expenses, Operation.Update, entity_id, {f'field{n}': n})
            except Exception as ex:
                errors.append(ex)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        actions = self._actions()
        self.assertEqual(sorted(a.entity_id for a in actions), entity_ids)
        for action in actions:
            self.assertEqual(len(action.payload), 8)
