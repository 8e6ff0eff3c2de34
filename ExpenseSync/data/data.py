"""Data-access API for the UI layer.

Every mutation writes the local store first and then queues the matching remote action
in the same transaction, so the change is never lost even when no user is signed in.
Listings are returned as pandas DataFrames for tables and charts.

Amounts are integers in the currency's smallest unit (cents, paise).
"""
import datetime
import logging
import uuid
from typing import Any, Dict, List, Optional

import pandas as pd
from babel import dates, numbers

from ..core import database
from ..core import queue
from ..core.schema import Operation, SYNC_FIELDS, SyncStatus, Table, now_str
from ..settings import lib

EXPENSE_FIELDS = ('amount', 'currency', 'category', 'description', 'date', 'is_recurring', 'recurring_frequency')
CATEGORY_FIELDS = ('name', 'icon', 'color', 'is_hidden', 'sort_order')
PREFERENCE_FIELDS = ('date_format', 'default_currency', 'theme')

EXPENSE_COLUMNS = ['id', 'date', 'amount', 'currency', 'category', 'description', 'is_recurring',
                   'recurring_frequency', 'created_at', 'updated_at', 'sync_status']
CATEGORY_COLUMNS = ['id', 'name', 'icon', 'color', 'is_default', 'is_hidden', 'sort_order', 'sync_status']

# Preference date formats as babel patterns
DATE_PATTERNS = {
    'DD/MM/YYYY': 'dd/MM/yyyy',
    'MM/DD/YYYY': 'MM/dd/yyyy',
    'YYYY-MM-DD': 'yyyy-MM-dd',
}

CURRENCY_LOCALES = {
    'INR': 'en_IN',
    'USD': 'en_US',
    'EUR': 'de_DE',
}


def _payload(record: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in record.items() if k not in SYNC_FIELDS}


def _validate_expense(values: Dict[str, Any]) -> None:
    if 'amount' in values and (not isinstance(values['amount'], int) or isinstance(values['amount'], bool)):
        raise TypeError(f'Amount must be an integer in the smallest currency unit, got {values["amount"]!r}')
    if 'currency' in values and values['currency'] not in lib.CURRENCIES:
        raise ValueError(f'Invalid currency "{values["currency"]}", expected one of {lib.CURRENCIES}')
    if 'date' in values:
        try:
            datetime.date.fromisoformat(values['date'])
        except (TypeError, ValueError) as ex:
            raise ValueError(f'Invalid date "{values["date"]}", expected YYYY-MM-DD') from ex
    frequency = values.get('recurring_frequency')
    if frequency is not None and frequency not in lib.RECURRING_FREQUENCIES:
        raise ValueError(f'Invalid recurring frequency "{frequency}"')
    if 'category' in values and not values['category']:
        raise ValueError('Category must not be empty')


def _validate_category(values: Dict[str, Any]) -> None:
    if 'name' in values and not str(values['name']).strip():
        raise ValueError('Category name must not be empty')
    if values.get('color') and not lib.is_valid_hex_color(values['color']):
        raise ValueError(f'Invalid color "{values["color"]}", expected #RRGGBB')


def _validate_preferences(values: Dict[str, Any]) -> None:
    allowed = {
        'date_format': lib.DATE_FORMATS,
        'default_currency': lib.CURRENCIES,
        'theme': lib.THEMES,
    }
    for k, v in values.items():
        if v not in allowed[k]:
            raise ValueError(f'Invalid {k} "{v}", expected one of {allowed[k]}')


def _check_fields(values: Dict[str, Any], allowed: tuple) -> None:
    unknown = set(values) - set(allowed)
    if unknown:
        raise ValueError(f'Unknown field(s): {sorted(unknown)}')


def add_expense(
        amount: int,
        category: str,
        date: str,
        description: str = '',
        currency: Optional[str] = None,
        is_recurring: bool = False,
        recurring_frequency: Optional[str] = None,
        expense_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create an expense and queue it for upload.

    Args:
        amount: Amount in the smallest currency unit.
        category: Category id.
        date: Expense date, ``YYYY-MM-DD``.
        description: Free text.
        currency: Currency code. Defaults to the preferred currency.
        is_recurring: Whether the expense repeats.
        recurring_frequency: One of :data:`lib.RECURRING_FREQUENCIES` for recurring expenses.
        expense_id: Explicit id. A new uuid is used when omitted.

    Returns:
        The stored expense record.
    """
    db = database.get_database()
    now = now_str()
    record = {
        'id': expense_id or str(uuid.uuid4()),
        'amount': amount,
        'currency': currency or _preferred_currency(),
        'category': category,
        'description': description or '',
        'date': date,
        'is_recurring': bool(is_recurring),
        'recurring_frequency': recurring_frequency if is_recurring else None,
        'created_at': now,
        'updated_at': now,
        'deleted': False,
        'sync_status': SyncStatus.Pending.value,
    }
    _validate_expense(record)

    with db.transaction():
        db.insert(Table.Expenses, record)
        queue.get_queue().enqueue(Table.Expenses, Operation.Create, record['id'], _payload(record))

    logging.debug(f'Added expense {record["id"]}')
    return record


def update_expense(expense_id: str, **changes: Any) -> Optional[Dict[str, Any]]:
    """Update an expense and queue the change.

    Returns:
        The updated record, or None if the expense does not exist or was deleted.
    """
    _check_fields(changes, EXPENSE_FIELDS)
    _validate_expense(changes)

    db = database.get_database()
    with db.transaction():
        current = db.get_expense(expense_id)
        if current is None or current['deleted']:
            logging.debug(f'Cannot update missing expense {expense_id}')
            return None

        values = {**changes, 'updated_at': now_str()}
        db.update(Table.Expenses, expense_id, {**values, 'sync_status': SyncStatus.Pending.value})
        queue.get_queue().enqueue(Table.Expenses, Operation.Update, expense_id, values)
        return db.get_expense(expense_id)


def delete_expense(expense_id: str) -> bool:
    """Soft-delete an expense and queue the deletion.

    Returns:
        True if the expense existed.
    """
    db = database.get_database()
    with db.transaction():
        current = db.get_expense(expense_id)
        if current is None or current['deleted']:
            return False

        values = {'deleted': True, 'updated_at': now_str()}
        db.soft_delete(
            Table.Expenses, expense_id, updated_at=values['updated_at'], sync_status=SyncStatus.Pending.value
        )
        queue.get_queue().enqueue(Table.Expenses, Operation.Delete, expense_id, values)
    logging.debug(f'Deleted expense {expense_id}')
    return True


def add_category(
        name: str,
        icon: Optional[str] = None,
        color: Optional[str] = None,
        category_id: Optional[str] = None
) -> Dict[str, Any]:
    """Create a custom category, placed after the existing ones, and queue it for upload."""
    db = database.get_database()
    record = {
        'id': category_id or str(uuid.uuid4()),
        'name': name.strip(),
        'icon': icon,
        'color': color,
        'is_default': False,
        'is_hidden': False,
        'sort_order': 0,
        'deleted': False,
        'sync_status': SyncStatus.Pending.value,
    }
    _validate_category(record)

    with db.transaction():
        orders = [c['sort_order'] for c in db.get_all_categories()]
        record['sort_order'] = max(orders, default=-1) + 1
        db.insert(Table.Categories, record)
        queue.get_queue().enqueue(Table.Categories, Operation.Create, record['id'], _payload(record))

    logging.debug(f'Added category {record["id"]} ("{record["name"]}")')
    return record


def update_category(category_id: str, **changes: Any) -> Optional[Dict[str, Any]]:
    """Update a category and queue the change.

    Returns:
        The updated record, or None if the category does not exist or was deleted.
    """
    _check_fields(changes, CATEGORY_FIELDS)
    _validate_category(changes)

    db = database.get_database()
    with db.transaction():
        current = db.get_category(category_id)
        if current is None or current['deleted']:
            return None

        db.update(Table.Categories, category_id, {**changes, 'sync_status': SyncStatus.Pending.value})
        queue.get_queue().enqueue(Table.Categories, Operation.Update, category_id, dict(changes))
        return db.get_category(category_id)


def reorder_category(category_id: str, sort_order: int) -> Optional[Dict[str, Any]]:
    return update_category(category_id, sort_order=int(sort_order))


def delete_category(category_id: str) -> bool:
    """Soft-delete a custom category and queue the deletion.

    Default categories cannot be deleted, only hidden.

    Returns:
        True if the category existed.

    Raises:
        ValueError: If the category is a default category.
    """
    db = database.get_database()
    with db.transaction():
        current = db.get_category(category_id)
        if current is None or current['deleted']:
            return False
        if current['is_default']:
            raise ValueError(f'Default category "{category_id}" cannot be deleted, hide it instead')

        db.soft_delete(Table.Categories, category_id, sync_status=SyncStatus.Pending.value)
        queue.get_queue().enqueue(Table.Categories, Operation.Delete, category_id, {'deleted': True})
    logging.debug(f'Deleted category {category_id}')
    return True


def get_preferences() -> Dict[str, Any]:
    prefs = database.get_database().get_preferences()
    return prefs if prefs is not None else dict(lib.DEFAULT_PREFERENCES)


def update_preferences(**changes: Any) -> Dict[str, Any]:
    """Update the preferences and queue the change.

    Returns:
        The updated preferences.
    """
    _check_fields(changes, PREFERENCE_FIELDS)
    _validate_preferences(changes)

    db = database.get_database()
    with db.transaction():
        if db.get_preferences() is None:
            db.insert(Table.Preferences, dict(lib.DEFAULT_PREFERENCES))
        db.update(Table.Preferences, lib.PREFERENCES_ID, {**changes, 'sync_status': SyncStatus.Pending.value})
        queue.get_queue().enqueue(Table.Preferences, Operation.Update, lib.PREFERENCES_ID, dict(changes))
        return db.get_preferences()


def _preferred_currency() -> str:
    return get_preferences().get('default_currency') or lib.DEFAULT_PREFERENCES['default_currency']


def bulk_add_expenses(frame: pd.DataFrame, amount_multiplier: int = 100) -> int:
    """Import expenses from a DataFrame and queue one create per row.

    The frame must have ``date`` and ``amount`` columns and may have ``category``,
    ``description`` and ``currency``. Amounts are converted to the smallest currency unit
    with ``amount_multiplier``; the sign is dropped.

    Returns:
        Number of imported expenses.

    Raises:
        ValueError: If required columns are missing or a row cannot be parsed.
    """
    missing = {'date', 'amount'} - set(frame.columns)
    if missing:
        raise ValueError(f'Missing required column(s): {sorted(missing)}')
    if frame.empty:
        return 0

    df = frame.copy()
    try:
        df['date'] = pd.to_datetime(df['date']).dt.strftime('%Y-%m-%d')
        df['amount'] = (pd.to_numeric(df['amount']).abs() * amount_multiplier).round().astype(int)
    except (ValueError, TypeError) as ex:
        raise ValueError(f'Could not parse the imported rows: {ex}') from ex

    default_currency = _preferred_currency()
    if 'category' not in df.columns:
        df['category'] = 'other'
    if 'description' not in df.columns:
        df['description'] = ''
    if 'currency' not in df.columns:
        df['currency'] = default_currency
    df['category'] = df['category'].fillna('other').astype(str)
    df['description'] = df['description'].fillna('').astype(str)
    df['currency'] = df['currency'].fillna(default_currency).astype(str)

    now = now_str()
    records: List[Dict[str, Any]] = []
    for row in df.itertuples(index=False):
        record = {
            'id': str(uuid.uuid4()),
            'amount': int(row.amount),
            'currency': row.currency,
            'category': row.category,
            'description': row.description,
            'date': row.date,
            'is_recurring': False,
            'recurring_frequency': None,
            'created_at': now,
            'updated_at': now,
            'deleted': False,
            'sync_status': SyncStatus.Pending.value,
        }
        _validate_expense(record)
        records.append(record)

    db = database.get_database()
    q = queue.get_queue()
    with db.transaction():
        db.bulk_insert(Table.Expenses, records)
        for record in records:
            q.enqueue(Table.Expenses, Operation.Create, record['id'], _payload(record))

    logging.info(f'Imported {len(records)} expense(s)')
    return len(records)


def expenses_frame(start_date: Optional[str] = None, end_date: Optional[str] = None) -> pd.DataFrame:
    """Return the non-deleted expenses, newest first, optionally limited to a date range."""
    db = database.get_database()
    if start_date and end_date:
        rows = db.get_expenses_by_date_range(start_date, end_date)
    else:
        rows = db.get_all_expenses()
    return pd.DataFrame(rows, columns=EXPENSE_COLUMNS)


def categories_frame(visible_only: bool = False) -> pd.DataFrame:
    """Return the non-deleted categories in display order."""
    db = database.get_database()
    rows = db.get_visible_categories() if visible_only else db.get_all_categories()
    return pd.DataFrame(rows, columns=CATEGORY_COLUMNS)


def category_totals(start_date: Optional[str] = None, end_date: Optional[str] = None) -> pd.DataFrame:
    """Summarise expenses per category and currency.

    Returns:
        A DataFrame with ``category``, ``currency``, ``total``, ``count`` and ``percentage``
        columns, largest totals first. Percentages are relative to the currency's total.
    """
    df = expenses_frame(start_date, end_date)
    columns = ['category', 'currency', 'total', 'count', 'percentage']
    if df.empty:
        return pd.DataFrame(columns=columns)

    summary = (
        df.groupby(['category', 'currency'])['amount']
        .agg(total='sum', count='count')
        .reset_index()
    )
    currency_totals = summary.groupby('currency')['total'].transform('sum')
    summary['percentage'] = (summary['total'] / currency_totals * 100.0).round(2)
    return summary.sort_values('total', ascending=False).reset_index(drop=True)[columns]


def format_amount(amount: int, currency: str) -> str:
    """Format an amount in the smallest currency unit for display."""
    locale = CURRENCY_LOCALES.get(currency, 'en_US')
    return numbers.format_currency(amount / 100.0, currency, locale=locale)


def format_date(value: str, date_format: Optional[str] = None) -> str:
    """Format a ``YYYY-MM-DD`` date with the preferred date format."""
    date_format = date_format or get_preferences().get('date_format') or lib.DEFAULT_PREFERENCES['date_format']
    pattern = DATE_PATTERNS.get(date_format, DATE_PATTERNS['YYYY-MM-DD'])
    return dates.format_date(datetime.date.fromisoformat(value), format=pattern, locale='en')
