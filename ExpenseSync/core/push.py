"""Push pipeline: transmits queued local mutations to the remote store.

Actions are sent one at a time in queue order. Creates and updates are upserts keyed on
``(user_id, local_id)`` (``user_id`` for preferences) so a repeated delivery leaves the
remote row unchanged. Deletes set the row's ``deleted_at`` tombstone.
"""
import logging
from typing import Any, Callable, Dict, Optional

from . import database as db_module
from . import queue as queue_module
from . import service
from .schema import (
    CONFLICT_KEYS,
    Operation,
    PushResult,
    REMOTE_TABLE,
    SyncAction,
    SyncStatus,
    TO_REMOTE,
    Table,
    now_str,
    preferences_to_remote,
)
from ..status import status


def _entity_record(db: 'db_module.DatabaseAPI', action: SyncAction) -> Dict[str, Any]:
    """Return the queued payload overlaid with the current local record."""
    local = db.get(action.table, action.entity_id) or {}
    return {**action.payload, **local}


def _push_entity(remote: Any, db: 'db_module.DatabaseAPI', user_id: str, action: SyncAction) -> Optional[str]:
    """Transmit an expense or category action.

    Returns:
        The server id of the row for creates and updates, None for deletes.
    """
    table = REMOTE_TABLE[action.table]
    record = _entity_record(db, action)

    if action.operation == Operation.Delete:
        deleted_at = record.get('updated_at') or now_str()
        remote.update(table, {'deleted_at': deleted_at}, {'user_id': user_id, 'local_id': action.entity_id})
        return None

    row = TO_REMOTE[action.table](user_id, action.entity_id, record)
    stored = remote.upsert(table, row, CONFLICT_KEYS[action.table])
    return str(stored['id'])


def _push_preferences(remote: Any, db: 'db_module.DatabaseAPI', user_id: str, action: SyncAction) -> Optional[str]:
    if action.operation == Operation.Delete:
        raise status.PayloadInvalidException('Preferences cannot be deleted.')
    row = preferences_to_remote(user_id, _entity_record(db, action))
    stored = remote.upsert(REMOTE_TABLE[Table.Preferences], row, CONFLICT_KEYS[Table.Preferences])
    return str(stored['id'])


TRANSMIT: Dict[Table, Callable[..., Optional[str]]] = {
    Table.Expenses: _push_entity,
    Table.Categories: _push_entity,
    Table.Preferences: _push_preferences,
}


def push_changes(
        user_id: str,
        database: Optional['db_module.DatabaseAPI'] = None,
        queue: Optional['queue_module.SyncQueue'] = None,
        remote: Any = None
) -> PushResult:
    """Transmit every action queued at call time.

    Actions queued while the push is running are left for the next cycle. A failed
    action is retried on later pushes until it reaches the retry ceiling, at which
    point it is dropped and reported in :attr:`PushResult.errors`.

    Args:
        user_id: Owner of the remote rows.
        database: The local store. Defaults to the shared store.
        queue: The sync queue. Defaults to the shared queue.
        remote: The remote client. Defaults to :func:`service.get_service`.

    Returns:
        PushResult: ``success`` is False if any action failed.
    """
    db = database or db_module.get_database()
    q = queue or queue_module.get_queue()
    remote = remote or service.get_service()

    result = PushResult()
    actions = q.pending_actions()
    logging.debug(f'Pushing {len(actions)} queued action(s) for user {user_id}')

    for action in actions:
        q.begin(action)
        try:
            server_id = TRANSMIT[action.table](remote, db, user_id, action)
        except Exception as ex:
            result.success = False
            logging.warning(f'Push failed for {action.table}:{action.entity_id}: {ex}')
            if q.mark_failed(action.id):
                continue
            result.failed += 1
            if isinstance(ex, status.BaseStatusException):
                result.errors.append(f'Failed to sync {action.table}:{action.entity_id} after max retries')
            else:
                result.errors.append(f'Error syncing {action.table}:{action.entity_id}: {ex}')
            db.update_sync_status(action.table, action.entity_id, SyncStatus.Error)
            continue
        finally:
            q.end(action)

        if q.mark_complete(action):
            db.update_sync_status(action.table, action.entity_id, SyncStatus.Synced, server_id)
        else:
            db.update_sync_status(action.table, action.entity_id, SyncStatus.Pending, server_id)
        result.pushed += 1

    logging.info(f'Push finished: {result.pushed} pushed, {result.failed} failed.')
    return result
