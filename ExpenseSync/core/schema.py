"""Typed sync records and remote row schemas.

Defines the local table names, the queued :class:`SyncAction` record, the global
:class:`SyncMeta` checkpoint, the result objects returned by the push, pull and sync
operations, and the per-table remote row schemas.

Remote rows are never passed around as opaque dicts: every row is built by one of the
``*_to_remote`` functions and every fetched row is read by one of the ``*_from_remote``
functions. Both directions are checked against :data:`REMOTE_SCHEMA` and raise
:class:`~ExpenseSync.status.status.PayloadInvalidException` on a mismatch.
"""
import dataclasses
import datetime
import enum
import logging
import re
from typing import Any, Dict, List, Optional

from ..settings import lib
from ..status import status

DATE_COLUMN_FORMAT = '%Y-%m-%d'


class Table(enum.StrEnum):
    """Local tables."""
    Expenses = 'expenses'
    Categories = 'categories'
    Preferences = 'preferences'
    SyncQueue = 'sync_queue'
    SyncMeta = 'sync_meta'


SYNCABLE_TABLES = (Table.Expenses, Table.Categories, Table.Preferences)


class Operation(enum.StrEnum):
    """Queued mutation kinds."""
    Create = 'create'
    Update = 'update'
    Delete = 'delete'


class SyncStatus(enum.StrEnum):
    """Per-entity sync status."""
    Pending = 'pending'
    Synced = 'synced'
    Error = 'error'


# Local-only bookkeeping columns, never part of a queued payload
SYNC_FIELDS = ('sync_status', 'server_id', 'synced_at')

# Local table -> remote table
REMOTE_TABLE: Dict[Table, str] = {
    Table.Expenses: 'expenses',
    Table.Categories: 'categories',
    Table.Preferences: 'user_preferences',
}

# Remote unique keys used as upsert conflict targets
CONFLICT_KEYS: Dict[Table, str] = {
    Table.Expenses: 'user_id,local_id',
    Table.Categories: 'user_id,local_id',
    Table.Preferences: 'user_id',
}

REMOTE_SCHEMA: Dict[Table, Dict[str, Dict[str, Any]]] = {
    Table.Expenses: {
        'id': {'type': (str, int), 'server': True},
        'user_id': {'type': str, 'required': True},
        'local_id': {'type': str, 'required': True},
        'amount': {'type': (int, float), 'required': True},
        'currency': {'type': str, 'required': True, 'allowed_values': lib.CURRENCIES},
        'category': {'type': str, 'required': True},
        'description': {'type': str, 'required': True},
        'date': {'type': str, 'required': True, 'format': 'date'},
        'is_recurring': {'type': bool, 'required': True},
        'recurring_frequency': {'type': str, 'nullable': True, 'allowed_values': lib.RECURRING_FREQUENCIES},
        'created_at': {'type': str, 'nullable': True, 'format': 'timestamp'},
        'updated_at': {'type': str, 'server': True, 'format': 'timestamp'},
        'deleted_at': {'type': str, 'nullable': True, 'format': 'timestamp'},
    },
    Table.Categories: {
        'id': {'type': (str, int), 'server': True},
        'user_id': {'type': str, 'required': True},
        'local_id': {'type': str, 'required': True},
        'name': {'type': str, 'required': True},
        'icon': {'type': str, 'nullable': True},
        'color': {'type': str, 'nullable': True, 'format': 'hexcolor'},
        'is_default': {'type': bool, 'required': True},
        'is_hidden': {'type': bool, 'required': True},
        'sort_order': {'type': int, 'required': True},
        'created_at': {'type': str, 'server': True, 'format': 'timestamp'},
        'updated_at': {'type': str, 'server': True, 'format': 'timestamp'},
        'deleted_at': {'type': str, 'nullable': True, 'format': 'timestamp'},
    },
    Table.Preferences: {
        'id': {'type': (str, int), 'server': True},
        'user_id': {'type': str, 'required': True},
        'date_format': {'type': str, 'required': True, 'allowed_values': lib.DATE_FORMATS},
        'default_currency': {'type': str, 'required': True, 'allowed_values': lib.CURRENCIES},
        'theme': {'type': str, 'required': True, 'allowed_values': lib.THEMES},
        'created_at': {'type': str, 'server': True, 'format': 'timestamp'},
        'updated_at': {'type': str, 'server': True, 'format': 'timestamp'},
    },
}


@dataclasses.dataclass
class SyncAction:
    """One pending mutation in the sync queue."""
    id: str
    table: Table
    operation: Operation
    entity_id: str
    payload: Dict[str, Any]
    timestamp: str
    retry_count: int = 0


@dataclasses.dataclass
class SyncMeta:
    """Global sync checkpoint."""
    last_sync_at: Optional[str] = None
    user_id: Optional[str] = None


@dataclasses.dataclass
class PushResult:
    success: bool = True
    pushed: int = 0
    failed: int = 0
    errors: List[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class PulledCounts:
    """Rows received per table. ``preferences`` is True when that step succeeded."""
    expenses: int = 0
    categories: int = 0
    preferences: bool = False


@dataclasses.dataclass
class PullResult:
    success: bool = True
    pulled: PulledCounts = dataclasses.field(default_factory=PulledCounts)
    errors: List[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class SyncResult:
    success: bool = True
    pushed: int = 0
    failed: int = 0
    pulled: PulledCounts = dataclasses.field(default_factory=PulledCounts)
    errors: List[str] = dataclasses.field(default_factory=list)
    skipped: bool = False


@dataclasses.dataclass
class SyncState:
    """Snapshot of the sync status shown by the UI."""
    is_syncing: bool = False
    last_sync_at: Optional[str] = None
    pending_count: int = 0
    error: Optional[str] = None


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string.

    Returns:
        str: Current UTC date and time in ISO 8601 format.
    """
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec='microseconds')


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Naive values are taken to be UTC.

    Raises:
        ValueError: If the value is not a valid ISO 8601 timestamp.
    """
    dt = datetime.datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def _is_valid_date(value: str) -> bool:
    try:
        datetime.datetime.strptime(value, DATE_COLUMN_FORMAT)
        return True
    except ValueError:
        return False


def _is_valid_timestamp(value: str) -> bool:
    try:
        parse_timestamp(value)
        return True
    except ValueError:
        return False


def validate_row(table: Table, row: Dict[str, Any], inbound: bool = False) -> None:
    """Validate a remote row against :data:`REMOTE_SCHEMA`.

    Outbound rows must carry every required field and must not set server-maintained
    fields. Inbound rows must additionally carry the server fields.

    Args:
        table: Local table the row belongs to.
        row: The remote row.
        inbound: True when the row was fetched from the remote store.

    Raises:
        status.PayloadInvalidException: If the row does not match the schema.
    """
    schema = REMOTE_SCHEMA[table]
    unknown = set(row) - set(schema)
    if unknown and not inbound:
        raise status.PayloadInvalidException(f'{table}: unknown field(s) {sorted(unknown)}.')

    for field, specs in schema.items():
        if specs.get('server'):
            if not inbound:
                if field in row:
                    raise status.PayloadInvalidException(f'{table}: "{field}" is maintained by the server.')
                continue
            if field not in row or row[field] is None:
                raise status.PayloadInvalidException(f'{table}: remote row missing "{field}".')
        elif specs.get('required') and field not in row:
            raise status.PayloadInvalidException(f'{table}: missing required field "{field}".')

        if field not in row:
            continue

        value = row[field]
        if value is None:
            if specs.get('nullable'):
                continue
            raise status.PayloadInvalidException(f'{table}: "{field}" must not be null.')

        if not isinstance(value, specs['type']) or (bool not in _as_tuple(specs['type']) and isinstance(value, bool)):
            raise status.PayloadInvalidException(
                f'{table}: "{field}" must be {specs["type"]}, got {type(value).__name__}.'
            )
        if 'allowed_values' in specs and value not in specs['allowed_values']:
            raise status.PayloadInvalidException(
                f'{table}: "{field}" must be one of {specs["allowed_values"]}, got "{value}".'
            )
        fmt = specs.get('format')
        if fmt == 'date' and not _is_valid_date(value):
            raise status.PayloadInvalidException(f'{table}: "{field}" must be YYYY-MM-DD, got "{value}".')
        if fmt == 'timestamp' and not _is_valid_timestamp(value):
            raise status.PayloadInvalidException(f'{table}: "{field}" must be an ISO timestamp, got "{value}".')
        if fmt == 'hexcolor' and not lib.is_valid_hex_color(value):
            raise status.PayloadInvalidException(f'{table}: "{field}" must be #RRGGBB, got "{value}".')


def _as_tuple(t: Any) -> tuple:
    return t if isinstance(t, tuple) else (t,)


def _require(record: Dict[str, Any], table: Table, *fields: str) -> None:
    missing = [f for f in fields if f not in record]
    if missing:
        raise status.PayloadInvalidException(f'{table}: record is missing {missing}.')


def expense_to_remote(user_id: str, entity_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
    """Build and validate the remote ``expenses`` row for a local expense record."""
    _require(record, Table.Expenses, 'amount', 'currency', 'category', 'date')
    row = {
        'user_id': user_id,
        'local_id': entity_id,
        'amount': record['amount'],
        'currency': record['currency'],
        'category': record['category'],
        'description': record.get('description') or '',
        'date': record['date'],
        'is_recurring': bool(record.get('is_recurring', False)),
        'recurring_frequency': record.get('recurring_frequency') or None,
        'created_at': record.get('created_at'),
        'deleted_at': (record.get('updated_at') or now_str()) if record.get('deleted') else None,
    }
    validate_row(Table.Expenses, row)
    return row


def expense_from_remote(row: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a fetched ``expenses`` row and convert it to a local synced record."""
    validate_row(Table.Expenses, row, inbound=True)
    return {
        'id': row['local_id'],
        'amount': row['amount'],
        'currency': row['currency'],
        'category': row['category'],
        'description': row.get('description') or '',
        'date': row['date'],
        'is_recurring': bool(row['is_recurring']),
        'recurring_frequency': row.get('recurring_frequency'),
        'created_at': row.get('created_at') or row['updated_at'],
        'updated_at': row['updated_at'],
        'deleted': bool(row.get('deleted_at')),
        'sync_status': SyncStatus.Synced.value,
        'server_id': str(row['id']),
        'synced_at': now_str(),
    }


def category_to_remote(user_id: str, entity_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
    """Build and validate the remote ``categories`` row for a local category record."""
    _require(record, Table.Categories, 'name')
    row = {
        'user_id': user_id,
        'local_id': entity_id,
        'name': record['name'],
        'icon': record.get('icon') or None,
        'color': record.get('color') or None,
        'is_default': bool(record.get('is_default', False)),
        'is_hidden': bool(record.get('is_hidden', False)),
        'sort_order': int(record.get('sort_order') or 0),
        'deleted_at': now_str() if record.get('deleted') else None,
    }
    validate_row(Table.Categories, row)
    return row


def category_from_remote(row: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a fetched ``categories`` row and convert it to a local synced record."""
    validate_row(Table.Categories, row, inbound=True)
    return {
        'id': row['local_id'],
        'name': row['name'],
        'icon': row.get('icon'),
        'color': row.get('color'),
        'is_default': bool(row['is_default']),
        'is_hidden': bool(row['is_hidden']),
        'sort_order': row['sort_order'],
        'deleted': bool(row.get('deleted_at')),
        'sync_status': SyncStatus.Synced.value,
        'server_id': str(row['id']),
        'synced_at': now_str(),
    }


def preferences_to_remote(user_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
    """Build and validate the remote ``user_preferences`` row."""
    _require(record, Table.Preferences, 'date_format', 'default_currency', 'theme')
    row = {
        'user_id': user_id,
        'date_format': record['date_format'],
        'default_currency': record['default_currency'],
        'theme': record['theme'],
    }
    validate_row(Table.Preferences, row)
    return row


def preferences_from_remote(row: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a fetched ``user_preferences`` row and convert it to local fields."""
    validate_row(Table.Preferences, row, inbound=True)
    return {
        'date_format': row['date_format'],
        'default_currency': row['default_currency'],
        'theme': row['theme'],
        'sync_status': SyncStatus.Synced.value,
        'server_id': str(row['id']),
        'synced_at': now_str(),
    }


TO_REMOTE = {
    Table.Expenses: expense_to_remote,
    Table.Categories: category_to_remote,
}

FROM_REMOTE = {
    Table.Expenses: expense_from_remote,
    Table.Categories: category_from_remote,
    Table.Preferences: preferences_from_remote,
}


def is_valid_entity_id(value: Any) -> bool:
    """Entity ids are non-empty strings without whitespace."""
    if not isinstance(value, str) or not value:
        logging.debug(f'Invalid entity id: {value!r}')
        return False
    return re.fullmatch(r'\S+', value) is not None
