"""
Local SQLite store for entities and sync bookkeeping.

This module provides the on-device store the rest of the application treats as the
source of truth: expenses, categories and preferences, plus the two sync-internal
tables (the outbound ``sync_queue`` and the ``sync_meta`` checkpoint).

The store has an explicit lifecycle (:meth:`DatabaseAPI.open` / :meth:`DatabaseAPI.close`)
and notifies observers after every committed mutation through
:attr:`DatabaseAPI.tableChanged` or :meth:`DatabaseAPI.subscribe`. It has no network
access.
"""

import contextlib
import json
import logging
import pathlib
import sqlite3
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from PySide6 import QtCore

from .schema import (
    Operation,
    SyncAction,
    SyncMeta,
    SyncStatus,
    SYNCABLE_TABLES,
    Table,
    now_str,
)
from ..settings import lib
from ..status import status
from ..ui.actions import signals

SCHEMA: Dict[Table, Dict[str, str]] = {
    Table.Expenses: {
        'id': 'TEXT PRIMARY KEY',
        'amount': 'INTEGER NOT NULL',
        'currency': 'TEXT NOT NULL',
        'category': 'TEXT NOT NULL',
        'description': "TEXT NOT NULL DEFAULT ''",
        'date': 'TEXT NOT NULL',
        'is_recurring': 'INTEGER NOT NULL DEFAULT 0',
        'recurring_frequency': 'TEXT',
        'created_at': 'TEXT NOT NULL',
        'updated_at': 'TEXT NOT NULL',
        'deleted': 'INTEGER NOT NULL DEFAULT 0',
        'sync_status': 'TEXT',
        'server_id': 'TEXT',
        'synced_at': 'TEXT',
    },
    Table.Categories: {
        'id': 'TEXT PRIMARY KEY',
        'name': 'TEXT NOT NULL',
        'icon': 'TEXT',
        'color': 'TEXT',
        'is_default': 'INTEGER NOT NULL DEFAULT 0',
        'is_hidden': 'INTEGER NOT NULL DEFAULT 0',
        'sort_order': 'INTEGER NOT NULL DEFAULT 0',
        'deleted': 'INTEGER NOT NULL DEFAULT 0',
        'sync_status': 'TEXT',
        'server_id': 'TEXT',
        'synced_at': 'TEXT',
    },
    Table.Preferences: {
        'id': 'TEXT PRIMARY KEY',
        'date_format': 'TEXT NOT NULL',
        'default_currency': 'TEXT NOT NULL',
        'theme': 'TEXT NOT NULL',
        'sync_status': 'TEXT',
        'server_id': 'TEXT',
        'synced_at': 'TEXT',
    },
    Table.SyncQueue: {
        'seq': 'INTEGER PRIMARY KEY AUTOINCREMENT',
        'id': 'TEXT NOT NULL UNIQUE',
        'table_name': 'TEXT NOT NULL',
        'operation': 'TEXT NOT NULL',
        'entity_id': 'TEXT NOT NULL',
        'payload': 'TEXT NOT NULL',
        'timestamp': 'TEXT NOT NULL',
        'retry_count': 'INTEGER NOT NULL DEFAULT 0',
    },
    Table.SyncMeta: {
        'meta_id': 'INTEGER PRIMARY KEY',
        'last_sync_at': 'TEXT',
        'user_id': 'TEXT',
    },
}

# Columns an older store may lack; added in place when the store is opened
MIGRATED_COLUMNS = ('deleted', 'sync_status', 'server_id', 'synced_at')

BOOL_COLUMNS = frozenset({'is_recurring', 'deleted', 'is_default', 'is_hidden'})

ORDER_BY: Dict[Table, str] = {
    Table.Expenses: 'date DESC, created_at DESC',
    Table.Categories: 'sort_order ASC, name ASC',
    Table.Preferences: 'id ASC',
}


def _row_to_record(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    for k in BOOL_COLUMNS.intersection(record):
        record[k] = bool(record[k])
    return record


def _row_to_action(row: sqlite3.Row) -> SyncAction:
    return SyncAction(
        id=row['id'],
        table=Table(row['table_name']),
        operation=Operation(row['operation']),
        entity_id=row['entity_id'],
        payload=json.loads(row['payload']),
        timestamp=row['timestamp'],
        retry_count=row['retry_count'],
    )


def _quoted(columns: List[str]) -> str:
    return ",".join(f'"{c}"' for c in columns)


def _entity_columns(table: Table, record: Dict[str, Any]) -> List[str]:
    unknown = set(record) - set(SCHEMA[table])
    if unknown:
        raise ValueError(f'Unknown column(s) for "{table}": {sorted(unknown)}')
    return list(record)


class DatabaseAPI(QtCore.QObject):
    """Local store API. Handles schema creation, migration, entity access and sync bookkeeping.

    All mutations run inside :meth:`transaction`, which serialises writers through a
    re-entrant lock and an immediate SQLite transaction, so read-modify-write sequences
    (such as merging a queued action) are atomic with respect to each other.
    """
    tableChanged = QtCore.Signal(str)

    def __init__(self, path: Optional[pathlib.Path] = None, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.path: pathlib.Path = pathlib.Path(path) if path else lib.settings.db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._changed: List[str] = []

    def open(self) -> 'DatabaseAPI':
        """Open the store and make sure the schema is current.

        Raises:
            status.StoreInvalidException: If the file cannot be opened or migrated.
        """
        with self._lock:
            if self._conn is not None:
                return self
            logging.debug(f'Opening local store at {self.path}')
            self.path.parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(
                    str(self.path), timeout=2.0, isolation_level=None, check_same_thread=False
                )
                conn.row_factory = sqlite3.Row
                conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 100000)
                self._conn = conn
                self._initialize_schema_if_needed()
            except sqlite3.Error as e:
                logging.error(f'SQLite error opening the local store: {e}', exc_info=True)
                self.close()
                raise status.StoreInvalidException(f'Could not open {self.path}: {e}') from e
        return self

    def close(self) -> None:
        """Close the store. Safe to call more than once."""
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logging.error(f'SQLite error closing the local store: {e}')
            self._conn = None
            logging.debug(f'Closed local store at {self.path}')

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise status.StoreInvalidException('The local store is not open.')
        return self._conn

    def _fetchone(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, params).fetchall()

    def _initialize_schema_if_needed(self) -> None:
        """Create missing tables and add the sync columns to stores created before them."""
        with self.transaction() as conn:
            for table, columns in SCHEMA.items():
                if not self._table_exists_in_conn(conn, table.value):
                    cols_sql = ', '.join(f'"{name}" {typedef}' for name, typedef in columns.items())
                    conn.execute(f'CREATE TABLE {table.value} ({cols_sql})')
                    logging.info(f'Created table "{table.value}".')
                    continue

                cursor = conn.execute(f'PRAGMA table_info({table.value})')
                current_columns = {row[1] for row in cursor.fetchall()}
                missing = [c for c in columns if c not in current_columns]
                for column in missing:
                    if column not in MIGRATED_COLUMNS:
                        raise sqlite3.DatabaseError(
                            f'Table "{table.value}" is missing column "{column}" and cannot be migrated.'
                        )
                    conn.execute(f'ALTER TABLE {table.value} ADD COLUMN "{column}" {columns[column]}')
                    logging.info(f'Migrated table "{table.value}": added column "{column}".')

            conn.execute(
                f'CREATE UNIQUE INDEX IF NOT EXISTS sync_queue_entity '
                f'ON {Table.SyncQueue.value} (table_name, entity_id)'
            )
            conn.execute(
                f'CREATE INDEX IF NOT EXISTS sync_queue_timestamp '
                f'ON {Table.SyncQueue.value} (timestamp, seq)'
            )

    @staticmethod
    def _table_exists_in_conn(conn: sqlite3.Connection, table_name: str) -> bool:
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed block in one write transaction.

        Nested calls join the outer transaction. Observers are notified once the
        outermost transaction commits; nothing is emitted on rollback.
        """
        with self._lock:
            conn = self.connection
            outermost = self._depth == 0
            if outermost:
                conn.execute('BEGIN IMMEDIATE')
            self._depth += 1
            try:
                yield conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    conn.rollback()
                    self._changed.clear()
                raise
            self._depth -= 1
            if not outermost:
                return
            conn.commit()
            changed, self._changed = self._changed, []

        for table in dict.fromkeys(changed):
            self.tableChanged.emit(table)
            signals.localDataChanged.emit(table)

    def _touch(self, table: Table) -> None:
        self._changed.append(table.value)

    def subscribe(self, table: Table, callback: Callable[[], Any]) -> Callable[[], None]:
        """Register a callback invoked after any committed mutation to ``table``.

        Returns:
            A callable that removes the subscription.
        """
        def _on_changed(name: str) -> None:
            if name == table.value:
                callback()

        self.tableChanged.connect(_on_changed)

        def unsubscribe() -> None:
            try:
                self.tableChanged.disconnect(_on_changed)
            except (RuntimeError, TypeError):
                logging.debug(f'Subscription to "{table.value}" was already removed.')

        return unsubscribe

    # Entities ------------------------------------------------------------------------------------------------

    def insert(self, table: Table, record: Dict[str, Any]) -> None:
        """Insert a new entity record.

        Raises:
            sqlite3.IntegrityError: If an entity with the same id exists.
        """
        columns = _entity_columns(table, record)
        sql = (
            f'INSERT INTO {table.value} ({_quoted(columns)}) '
            f'VALUES ({",".join("?" * len(columns))})'
        )
        with self.transaction() as conn:
            conn.execute(sql, [record[c] for c in columns])
            self._touch(table)

    def bulk_insert(self, table: Table, records: List[Dict[str, Any]]) -> int:
        """Insert many records in one transaction.

        Returns:
            Number of records inserted.
        """
        if not records:
            return 0
        columns = _entity_columns(table, records[0])
        sql = (
            f'INSERT INTO {table.value} ({_quoted(columns)}) '
            f'VALUES ({",".join("?" * len(columns))})'
        )
        with self.transaction() as conn:
            conn.executemany(sql, [[r.get(c) for c in columns] for r in records])
            self._touch(table)
        logging.info(f'Inserted {len(records)} record(s) into "{table.value}".')
        return len(records)

    def upsert_record(self, table: Table, record: Dict[str, Any]) -> None:
        """Insert a record, or overwrite the given fields of an existing one."""
        columns = _entity_columns(table, record)
        updates = ','.join(f'"{c}"=excluded."{c}"' for c in columns if c != 'id')
        sql = (
            f'INSERT INTO {table.value} ({_quoted(columns)}) '
            f'VALUES ({",".join("?" * len(columns))}) '
            f'ON CONFLICT(id) DO UPDATE SET {updates}'
        )
        with self.transaction() as conn:
            conn.execute(sql, [record[c] for c in columns])
            self._touch(table)

    def update(self, table: Table, entity_id: str, changes: Dict[str, Any]) -> bool:
        """Update fields of an existing entity.

        Returns:
            True if a record was updated.
        """
        if not changes:
            return self.get(table, entity_id) is not None
        columns = _entity_columns(table, changes)
        assignments = ','.join(f'"{c}"=?' for c in columns)
        with self.transaction() as conn:
            cursor = conn.execute(
                f'UPDATE {table.value} SET {assignments} WHERE id=?',
                [changes[c] for c in columns] + [entity_id]
            )
            if cursor.rowcount:
                self._touch(table)
            return cursor.rowcount > 0

    def soft_delete(self, table: Table, entity_id: str, **changes: Any) -> bool:
        """Flag an entity as deleted. The record stays visible to the sync layer.

        Returns:
            True if a record was flagged.
        """
        if table == Table.Preferences:
            raise ValueError('Preferences cannot be deleted.')
        return self.update(table, entity_id, {**changes, 'deleted': True})

    def get(self, table: Table, entity_id: str) -> Optional[Dict[str, Any]]:
        """Return an entity record, including soft-deleted ones, or None."""
        row = self._fetchone(
            f'SELECT * FROM {table.value} WHERE id=?', (entity_id,)
        )
        return _row_to_record(row) if row else None

    def list(self, table: Table, where: str = '', params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
        """Return the non-deleted records of an entity table."""
        clauses = [] if table == Table.Preferences else ['deleted = 0']
        if where:
            clauses.append(f'({where})')
        sql = f'SELECT * FROM {table.value}'
        if clauses:
            sql += ' WHERE ' + ' AND '.join(clauses)
        sql += f' ORDER BY {ORDER_BY[table]}'
        return [_row_to_record(r) for r in self._fetchall(sql, params)]

    def get_expense(self, entity_id: str) -> Optional[Dict[str, Any]]:
        return self.get(Table.Expenses, entity_id)

    def get_all_expenses(self) -> List[Dict[str, Any]]:
        return self.list(Table.Expenses)

    def get_expenses_by_date_range(self, start_date: str, end_date: str) -> List[Dict[str, Any]]:
        """Return expenses dated between ``start_date`` and ``end_date``, both inclusive."""
        return self.list(Table.Expenses, 'date BETWEEN ? AND ?', (start_date, end_date))

    def get_expenses_by_category(self, category: str) -> List[Dict[str, Any]]:
        return self.list(Table.Expenses, 'category = ?', (category,))

    def get_category(self, entity_id: str) -> Optional[Dict[str, Any]]:
        return self.get(Table.Categories, entity_id)

    def get_all_categories(self) -> List[Dict[str, Any]]:
        return self.list(Table.Categories)

    def get_visible_categories(self) -> List[Dict[str, Any]]:
        return self.list(Table.Categories, 'is_hidden = 0')

    def get_preferences(self) -> Optional[Dict[str, Any]]:
        return self.get(Table.Preferences, lib.PREFERENCES_ID)

    def initialize_defaults(self) -> None:
        """Seed default categories and preferences into an empty store."""
        with self.transaction() as conn:
            count = conn.execute(f'SELECT COUNT(*) FROM {Table.Categories.value}').fetchone()[0]
            if count == 0:
                records = [
                    {**c, 'is_default': True, 'is_hidden': False, 'sort_order': i}
                    for i, c in enumerate(lib.DEFAULT_CATEGORIES)
                ]
                self.bulk_insert(Table.Categories, records)
                logging.info(f'Seeded {len(records)} default categories.')

            if self.get_preferences() is None:
                self.insert(Table.Preferences, dict(lib.DEFAULT_PREFERENCES))
                logging.info('Seeded default preferences.')

    def export_all_data(self) -> Dict[str, Any]:
        """Return every visible entity for backup."""
        return {
            'expenses': self.get_all_expenses(),
            'categories': self.get_all_categories(),
            'preferences': self.get_preferences(),
        }

    def clear_all_data(self) -> None:
        """Delete every entity and all sync bookkeeping."""
        with self.transaction() as conn:
            for table in SCHEMA:
                conn.execute(f'DELETE FROM {table.value}')
                self._touch(table)
        logging.warning('Cleared all local data.')

    # Sync status ---------------------------------------------------------------------------------------------

    def update_sync_status(
            self,
            table: Table,
            entity_id: str,
            sync_status: SyncStatus,
            server_id: Optional[str] = None
    ) -> bool:
        """Annotate an entity with its sync status.

        The previous ``server_id`` is kept when none is given; ``synced_at`` is refreshed
        only when the new status is synced.

        Returns:
            True if the entity exists.
        """
        with self.transaction():
            record = self.get(table, entity_id)
            if record is None:
                logging.debug(f'No {table.value} record "{entity_id}" to mark {sync_status}.')
                return False
            return self.update(table, entity_id, {
                'sync_status': sync_status.value,
                'server_id': server_id or record.get('server_id'),
                'synced_at': now_str() if sync_status == SyncStatus.Synced else record.get('synced_at'),
            })

    def get_unsynced(self, table: Table) -> List[Dict[str, Any]]:
        """Return records that were never synced or carry a pending status."""
        rows = self._fetchall(
            f"SELECT * FROM {table.value} WHERE sync_status IS NULL OR sync_status = ?",
            (SyncStatus.Pending.value,)
        )
        return [_row_to_record(r) for r in rows]

    def mark_all_local_entities_pending(self) -> List[Tuple[Table, str]]:
        """Mark every never-synced entity pending.

        Entities with a ``server_id`` have reached the remote store before and are left
        alone, as are default categories, preferences and soft-deleted records.

        Returns:
            The ``(table, entity_id)`` pairs that were marked.
        """
        marked: List[Tuple[Table, str]] = []
        with self.transaction() as conn:
            for table, extra in ((Table.Expenses, ''), (Table.Categories, ' AND is_default = 0')):
                rows = conn.execute(
                    f"SELECT id FROM {table.value} "
                    f"WHERE (server_id IS NULL OR server_id = '') AND deleted = 0{extra}"
                ).fetchall()
                ids = [r['id'] for r in rows]
                if not ids:
                    continue
                conn.executemany(
                    f'UPDATE {table.value} SET sync_status=? WHERE id=?',
                    [(SyncStatus.Pending.value, i) for i in ids]
                )
                self._touch(table)
                marked.extend((table, i) for i in ids)
        logging.info(f'Marked {len(marked)} local-only record(s) as pending.')
        return marked

    # Sync queue ----------------------------------------------------------------------------------------------

    def get_sync_queue(self) -> List[SyncAction]:
        """Return every queued action, oldest timestamp first."""
        rows = self._fetchall(
            f'SELECT * FROM {Table.SyncQueue.value} ORDER BY timestamp ASC, seq ASC'
        )
        return [_row_to_action(r) for r in rows]

    def get_sync_action(self, action_id: str) -> Optional[SyncAction]:
        row = self._fetchone(
            f'SELECT * FROM {Table.SyncQueue.value} WHERE id=?', (action_id,)
        )
        return _row_to_action(row) if row else None

    def find_sync_action(self, table: Table, entity_id: str) -> Optional[SyncAction]:
        """Return the queued action for an entity, if any."""
        row = self._fetchone(
            f'SELECT * FROM {Table.SyncQueue.value} WHERE table_name=? AND entity_id=?',
            (table.value, entity_id)
        )
        return _row_to_action(row) if row else None

    def add_to_sync_queue(self, action: SyncAction) -> None:
        """Append an action.

        Raises:
            sqlite3.IntegrityError: If the entity already has a queued action.
        """
        with self.transaction() as conn:
            conn.execute(
                f'INSERT INTO {Table.SyncQueue.value} '
                f'(id, table_name, operation, entity_id, payload, timestamp, retry_count) '
                f'VALUES (?, ?, ?, ?, ?, ?, ?)',
                (action.id, action.table.value, action.operation.value, action.entity_id,
                 json.dumps(action.payload), action.timestamp, action.retry_count)
            )
            self._touch(Table.SyncQueue)

    def remove_from_sync_queue(self, action_id: str, timestamp: Optional[str] = None) -> bool:
        """Remove an action.

        Args:
            action_id: The action to remove.
            timestamp: When given, the action is only removed if it has not been
                modified since it carried this timestamp.

        Returns:
            True if the action was removed.
        """
        sql = f'DELETE FROM {Table.SyncQueue.value} WHERE id=?'
        params: Tuple[Any, ...] = (action_id,)
        if timestamp is not None:
            sql += ' AND timestamp=?'
            params += (timestamp,)
        with self.transaction() as conn:
            cursor = conn.execute(sql, params)
            if cursor.rowcount:
                self._touch(Table.SyncQueue)
            return cursor.rowcount > 0

    def update_sync_queue_item(self, action_id: str, **changes: Any) -> bool:
        """Update fields of a queued action (``operation``, ``payload``, ``timestamp``, ``retry_count``).

        Returns:
            True if the action exists.
        """
        allowed = {'operation', 'payload', 'timestamp', 'retry_count'}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f'Cannot update sync queue field(s): {sorted(unknown)}')
        if 'payload' in changes:
            changes['payload'] = json.dumps(changes['payload'])
        if 'operation' in changes:
            changes['operation'] = Operation(changes['operation']).value

        assignments = ','.join(f'"{c}"=?' for c in changes)
        with self.transaction() as conn:
            cursor = conn.execute(
                f'UPDATE {Table.SyncQueue.value} SET {assignments} WHERE id=?',
                list(changes.values()) + [action_id]
            )
            if cursor.rowcount:
                self._touch(Table.SyncQueue)
            return cursor.rowcount > 0

    def clear_sync_queue(self) -> int:
        """Remove every queued action.

        Returns:
            Number of actions removed.
        """
        with self.transaction() as conn:
            cursor = conn.execute(f'DELETE FROM {Table.SyncQueue.value}')
            self._touch(Table.SyncQueue)
            return cursor.rowcount

    def count_sync_queue(self) -> int:
        return self._fetchone(f'SELECT COUNT(*) FROM {Table.SyncQueue.value}')[0]

    # Sync meta -----------------------------------------------------------------------------------------------

    def get_sync_meta(self) -> Optional[SyncMeta]:
        """Return the sync checkpoint, or None before the first initialization."""
        row = self._fetchone(
            f'SELECT last_sync_at, user_id FROM {Table.SyncMeta.value} WHERE meta_id=1'
        )
        if not row:
            return None
        return SyncMeta(last_sync_at=row['last_sync_at'], user_id=row['user_id'])

    def set_sync_meta(self, **changes: Any) -> SyncMeta:
        """Update the sync checkpoint, creating it when missing.

        Args:
            **changes: ``last_sync_at`` and/or ``user_id``.

        Returns:
            The stored checkpoint.
        """
        unknown = set(changes) - {'last_sync_at', 'user_id'}
        if unknown:
            raise ValueError(f'Unknown sync meta field(s): {sorted(unknown)}')

        with self.transaction() as conn:
            current = self.get_sync_meta() or SyncMeta()
            for k, v in changes.items():
                setattr(current, k, v)
            conn.execute(
                f'INSERT INTO {Table.SyncMeta.value} (meta_id, last_sync_at, user_id) VALUES (1, ?, ?) '
                f'ON CONFLICT(meta_id) DO UPDATE SET last_sync_at=excluded.last_sync_at, user_id=excluded.user_id',
                (current.last_sync_at, current.user_id)
            )
            self._touch(Table.SyncMeta)
        return current


database: Optional[DatabaseAPI] = None


def open_database(path: Optional[pathlib.Path] = None) -> DatabaseAPI:
    """Open the shared store and seed defaults. Returns the already open store if any."""
    global database
    if database is not None and database.is_open:
        return database
    database = DatabaseAPI(path).open()
    database.initialize_defaults()
    return database


def close_database() -> None:
    """Close the shared store."""
    global database
    if database is None:
        return
    database.close()
    database = None


def get_database() -> DatabaseAPI:
    """Return the shared store.

    Raises:
        status.StoreInvalidException: If the store has not been opened.
    """
    if database is None or not database.is_open:
        raise status.StoreInvalidException('The local store is not open. Call open_database() first.')
    return database


__all__ = [
    'BOOL_COLUMNS',
    'DatabaseAPI',
    'SCHEMA',
    'SYNCABLE_TABLES',
    'close_database',
    'get_database',
    'open_database',
]
