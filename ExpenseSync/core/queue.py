"""Outbound sync queue.

The queue holds at most one pending action per ``(table, entity_id)``. New mutations are
merged into an existing action on enqueue, so an entity created and deleted between two
sync cycles never reaches the network:

    ======================  =====================================
    queued, then enqueued   result
    ======================  =====================================
    create, delete          removed
    create, update          create with merged payload
    update, update          update with merged payload
    update, delete          delete with the delete payload
    delete, update          delete (update ignored)
    ======================  =====================================

Actions are persisted in the local store's ``sync_queue`` table, so the queue survives
restarts. Failed actions are retried up to :attr:`SyncQueue.max_retries` times.
"""
import datetime
import logging
import threading
import uuid
from typing import Any, Dict, List, Optional, Set

from PySide6 import QtCore

from . import database as db_module
from .schema import Operation, SyncAction, SYNCABLE_TABLES, Table, is_valid_entity_id, now_str, parse_timestamp
from ..settings import lib

MAX_RETRIES: int = 3


def _next_timestamp(previous: str) -> str:
    """Return the current time, or just after ``previous`` if the clock has not moved past it."""
    now = datetime.datetime.now(datetime.timezone.utc)
    floor = parse_timestamp(previous) + datetime.timedelta(microseconds=1)
    return max(now, floor).isoformat(timespec='microseconds')


class SyncQueue(QtCore.QObject):
    """Merge-on-enqueue queue of pending remote mutations.

    Signals:
        queueChanged (int): Emitted with the new queue length after it changes.
    """
    queueChanged = QtCore.Signal(int)

    def __init__(
            self,
            database: Optional['db_module.DatabaseAPI'] = None,
            max_retries: Optional[int] = None,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent=parent)
        self._database = database
        self._max_retries = max_retries
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def database(self) -> 'db_module.DatabaseAPI':
        return self._database if self._database is not None else db_module.get_database()

    @property
    def max_retries(self) -> int:
        if self._max_retries is not None:
            return self._max_retries
        try:
            return int(lib.settings.get_section('sync').get('max_retries', MAX_RETRIES))
        except Exception as ex:
            logging.debug(f'Using default retry ceiling: {ex}')
            return MAX_RETRIES

    def _emit_changed(self) -> None:
        self.queueChanged.emit(self.database.count_sync_queue())

    def enqueue(
            self,
            table: Table,
            operation: Operation,
            entity_id: str,
            payload: Dict[str, Any]
    ) -> Optional[SyncAction]:
        """Queue a mutation, merging it into any action already queued for the entity.

        Args:
            table: One of the syncable tables.
            operation: The mutation kind.
            entity_id: Local id of the entity.
            payload: Snapshot of the changed entity fields.

        Returns:
            The queued action after merging, or None when the entity no longer has a
            queued action.

        Raises:
            ValueError: If the table, operation or entity id is invalid.
        """
        table = Table(table)
        operation = Operation(operation)
        if table not in SYNCABLE_TABLES:
            raise ValueError(f'"{table}" is not a syncable table.')
        if not is_valid_entity_id(entity_id):
            raise ValueError(f'Invalid entity id: {entity_id!r}')

        payload = dict(payload or {})
        db = self.database

        with db.transaction():
            existing = db.find_sync_action(table, entity_id)
            result = self._merge(db, existing, table, operation, entity_id, payload)

        self._emit_changed()
        return result

    def _merge(
            self,
            db: 'db_module.DatabaseAPI',
            existing: Optional[SyncAction],
            table: Table,
            operation: Operation,
            entity_id: str,
            payload: Dict[str, Any]
    ) -> Optional[SyncAction]:
        if existing is None:
            action = SyncAction(
                id=str(uuid.uuid4()),
                table=table,
                operation=operation,
                entity_id=entity_id,
                payload=payload,
                timestamp=now_str(),
                retry_count=0,
            )
            db.add_to_sync_queue(action)
            logging.debug(f'Queued {operation} for {table}:{entity_id}')
            return action

        if operation == Operation.Delete:
            if existing.operation == Operation.Create and not self.is_in_flight(existing.id):
                db.remove_from_sync_queue(existing.id)
                logging.debug(f'Dropped unsent create for {table}:{entity_id}')
                return None

            # A create being transmitted may still land remotely; follow it with a delete
            existing.operation = Operation.Delete
            existing.payload = payload
            existing.timestamp = _next_timestamp(existing.timestamp)
            db.update_sync_queue_item(
                existing.id, operation=existing.operation, payload=existing.payload, timestamp=existing.timestamp
            )
            logging.debug(f'Replaced queued action for {table}:{entity_id} with delete')
            return existing

        if operation == Operation.Update and existing.operation != Operation.Delete:
            existing.payload = {**existing.payload, **payload}
            existing.timestamp = _next_timestamp(existing.timestamp)
            db.update_sync_queue_item(existing.id, payload=existing.payload, timestamp=existing.timestamp)
            logging.debug(f'Merged update into queued {existing.operation} for {table}:{entity_id}')
            return existing

        logging.debug(f'Ignored {operation} for {table}:{entity_id}, {existing.operation} already queued')
        return existing

    def pending_actions(self) -> List[SyncAction]:
        """Return a snapshot of the queue, oldest first."""
        return self.database.get_sync_queue()

    def begin(self, action: SyncAction) -> None:
        """Mark an action as being transmitted."""
        with self._lock:
            self._in_flight.add(action.id)

    def end(self, action: SyncAction) -> None:
        with self._lock:
            self._in_flight.discard(action.id)

    def is_in_flight(self, action_id: str) -> bool:
        with self._lock:
            return action_id in self._in_flight

    def mark_complete(self, action: SyncAction) -> bool:
        """Remove a transmitted action.

        If the action was modified while it was being transmitted it stays queued so
        the newer change is sent on the next push. A create that was merged with an
        update this way is turned into an update.

        Returns:
            True if the action was removed.
        """
        db = self.database
        with db.transaction():
            removed = db.remove_from_sync_queue(action.id, timestamp=action.timestamp)
            if not removed:
                current = db.get_sync_action(action.id)
                if current is not None and current.operation == Operation.Create:
                    db.update_sync_queue_item(current.id, operation=Operation.Update)
                logging.debug(f'Kept {action.table}:{action.entity_id}, it changed during transmission')
        self._emit_changed()
        return removed

    def mark_failed(self, action_id: str) -> bool:
        """Record a failed transmission.

        Returns:
            True if the action stays queued for another attempt, False if it was dropped
            after reaching the retry ceiling (or no longer exists).
        """
        db = self.database
        with db.transaction():
            action = db.get_sync_action(action_id)
            if action is None:
                return False

            retry_count = action.retry_count + 1
            if retry_count >= self.max_retries:
                db.remove_from_sync_queue(action_id)
                logging.warning(
                    f'Dropped {action.operation} for {action.table}:{action.entity_id} '
                    f'after {retry_count} failed attempts'
                )
                retained = False
            else:
                db.update_sync_queue_item(action_id, retry_count=retry_count)
                logging.debug(f'{action.table}:{action.entity_id} failed, attempt {retry_count}/{self.max_retries}')
                retained = True

        self._emit_changed()
        return retained

    def count(self) -> int:
        return self.database.count_sync_queue()

    def has_pending(self) -> bool:
        return self.count() > 0

    def clear(self) -> None:
        """Remove every queued action."""
        removed = self.database.clear_sync_queue()
        logging.debug(f'Cleared {removed} queued action(s)')
        self._emit_changed()


sync_queue: Optional[SyncQueue] = None


def get_queue() -> SyncQueue:
    """Return the shared queue, creating it on first use."""
    global sync_queue
    if sync_queue is None:
        sync_queue = SyncQueue()
    return sync_queue


def reset_queue() -> None:
    global sync_queue
    if sync_queue is not None:
        sync_queue.deleteLater()
    sync_queue = None
