"""Pull pipeline: applies remote changes to the local store.

Each table is pulled independently; a failure in one table is reported in the result
and does not stop the others. Rows changed remotely since the last checkpoint are
fetched and reconciled with the local records:

- expenses: the remote row wins when its ``updated_at`` is not older than the local one.
- categories: the remote row wins unless the local category has an unpushed edit.
- preferences: the remote row always wins. A missing remote row is not an error.

The counts in the result are the rows received per table, including rows for which the
local version was kept.
"""
import logging
from typing import Any, Optional

from . import database as db_module
from . import service
from .schema import FROM_REMOTE, PullResult, REMOTE_TABLE, SyncStatus, Table, now_str, parse_timestamp
from ..settings import lib


def _remote_is_newer(remote_updated_at: str, local_updated_at: Optional[str]) -> bool:
    if not local_updated_at:
        return True
    try:
        return parse_timestamp(remote_updated_at) >= parse_timestamp(local_updated_at)
    except ValueError:
        logging.debug(f'Unreadable local timestamp "{local_updated_at}", remote wins')
        return True


def _pull_expenses(remote: Any, db: 'db_module.DatabaseAPI', user_id: str, since: Optional[str]) -> int:
    rows = remote.select(REMOTE_TABLE[Table.Expenses], {'user_id': user_id}, updated_after=since)
    for row in rows:
        record = FROM_REMOTE[Table.Expenses](row)
        local = db.get(Table.Expenses, record['id'])
        if local is not None and not _remote_is_newer(record['updated_at'], local.get('updated_at')):
            logging.debug(f'Kept newer local expense {record["id"]}')
            continue
        db.upsert_record(Table.Expenses, record)
    return len(rows)


def _pull_categories(remote: Any, db: 'db_module.DatabaseAPI', user_id: str, since: Optional[str]) -> int:
    rows = remote.select(REMOTE_TABLE[Table.Categories], {'user_id': user_id}, updated_after=since)
    for row in rows:
        record = FROM_REMOTE[Table.Categories](row)
        local = db.get(Table.Categories, record['id'])
        if local is not None and local.get('sync_status') == SyncStatus.Pending.value:
            logging.debug(f'Kept pending local category {record["id"]}')
            continue
        db.upsert_record(Table.Categories, record)
    return len(rows)


def _pull_preferences(remote: Any, db: 'db_module.DatabaseAPI', user_id: str) -> bool:
    row = remote.select_one(REMOTE_TABLE[Table.Preferences], {'user_id': user_id})
    if row is None:
        logging.debug('No remote preferences found')
        return True
    db.upsert_record(Table.Preferences, {'id': lib.PREFERENCES_ID, **FROM_REMOTE[Table.Preferences](row)})
    return True


def last_checkpoint(db: 'db_module.DatabaseAPI', user_id: str) -> Optional[str]:
    """Return ``last_sync_at`` if it was stored for ``user_id``, otherwise None."""
    meta = db.get_sync_meta()
    if meta is None or meta.user_id != user_id:
        return None
    return meta.last_sync_at


def advance_checkpoint(db: 'db_module.DatabaseAPI', user_id: str, started_at: str) -> str:
    """Move ``last_sync_at`` forward to ``started_at``. The checkpoint never moves back.

    A checkpoint stored for another user is replaced.

    Returns:
        The stored checkpoint.
    """
    previous = last_checkpoint(db, user_id)
    checkpoint = started_at
    if previous and parse_timestamp(previous) > parse_timestamp(started_at):
        checkpoint = previous
    db.set_sync_meta(last_sync_at=checkpoint, user_id=user_id)
    logging.debug(f'Sync checkpoint set to {checkpoint}')
    return checkpoint


def pull_changes(
        user_id: str,
        database: Optional['db_module.DatabaseAPI'] = None,
        remote: Any = None,
        commit_checkpoint: bool = True,
        started_at: Optional[str] = None
) -> PullResult:
    """Fetch remote changes since the last checkpoint and apply them locally.

    Args:
        user_id: Owner of the remote rows.
        database: The local store. Defaults to the shared store.
        remote: The remote client. Defaults to :func:`service.get_service`.
        commit_checkpoint: Advance ``last_sync_at`` when every table was pulled.
        started_at: Checkpoint to store. Defaults to the time the pull started.

    Returns:
        PullResult: ``success`` is False if any table failed.
    """
    db = database or db_module.get_database()
    remote = remote or service.get_service()
    started_at = started_at or now_str()

    since = last_checkpoint(db, user_id)
    logging.debug(f'Pulling changes for user {user_id} since {since or "the beginning"}')

    result = PullResult()

    try:
        result.pulled.expenses = _pull_expenses(remote, db, user_id, since)
    except Exception as ex:
        result.success = False
        result.errors.append(f'Error pulling expenses: {ex}')

    try:
        result.pulled.categories = _pull_categories(remote, db, user_id, since)
    except Exception as ex:
        result.success = False
        result.errors.append(f'Error pulling categories: {ex}')

    try:
        result.pulled.preferences = _pull_preferences(remote, db, user_id)
    except Exception as ex:
        result.success = False
        result.errors.append(f'Error pulling preferences: {ex}')

    if result.errors:
        logging.warning(f'Pull finished with errors: {"; ".join(result.errors)}')
    if result.success and commit_checkpoint:
        advance_checkpoint(db, user_id, started_at)

    logging.info(
        f'Pull finished: {result.pulled.expenses} expense(s), {result.pulled.categories} category(ies), '
        f'preferences={result.pulled.preferences}.'
    )
    return result

