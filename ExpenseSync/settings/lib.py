"""Settings library for the sync configuration.

Provides:
    - Schema validation and enforcement for sync.json structure.
    - Loading, saving and reverting application settings.
    - Default categories and preferences seeded into a fresh local store.
"""

import json
import logging
import pathlib
import re
import shutil
from typing import Dict, Any, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'ExpenseSync'

CURRENCIES: List[str] = ['INR', 'USD', 'EUR']
DATE_FORMATS: List[str] = ['DD/MM/YYYY', 'MM/DD/YYYY', 'YYYY-MM-DD']
THEMES: List[str] = ['light', 'dark', 'system']
RECURRING_FREQUENCIES: List[str] = ['weekly', 'monthly', 'quarterly', 'yearly']

PREFERENCES_ID: str = 'user-preferences'

DEFAULT_PREFERENCES: Dict[str, Any] = {
    'id': PREFERENCES_ID,
    'date_format': 'DD/MM/YYYY',
    'default_currency': 'INR',
    'theme': 'system',
}

DEFAULT_CATEGORIES: List[Dict[str, Any]] = [
    {'id': 'housing', 'name': 'Housing', 'icon': 'Home', 'color': '#3b82f6'},
    {'id': 'transportation', 'name': 'Transportation', 'icon': 'Car', 'color': '#8b5cf6'},
    {'id': 'food', 'name': 'Food & Dining', 'icon': 'UtensilsCrossed', 'color': '#f97316'},
    {'id': 'utilities', 'name': 'Utilities', 'icon': 'Zap', 'color': '#eab308'},
    {'id': 'healthcare', 'name': 'Healthcare', 'icon': 'Heart', 'color': '#ef4444'},
    {'id': 'entertainment', 'name': 'Entertainment', 'icon': 'Gamepad2', 'color': '#ec4899'},
    {'id': 'shopping', 'name': 'Shopping', 'icon': 'ShoppingBag', 'color': '#14b8a6'},
    {'id': 'education', 'name': 'Education', 'icon': 'GraduationCap', 'color': '#6366f1'},
    {'id': 'personal', 'name': 'Personal Care', 'icon': 'User', 'color': '#a855f7'},
    {'id': 'other', 'name': 'Other', 'icon': 'MoreHorizontal', 'color': '#6b7280'},
]

SYNC_SCHEMA: Dict[str, Any] = {
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'url': {'type': str, 'required': True, 'format': 'url'},
            'api_key': {'type': str, 'required': True},
            'request_timeout': {'type': int, 'required': True, 'min': 0},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'interval_seconds': {'type': int, 'required': True, 'min': 1},
            'max_retries': {'type': int, 'required': True, 'min': 1},
            'auto_sync': {'type': bool, 'required': True},
        }
    },
}


def is_valid_hex_color(value: str) -> bool:
    """Check if a string is a valid hexadecimal color in #RRGGBB format.

    Args:
        value (str): Color string to validate.

    Returns:
        bool: True if value matches '#RRGGBB', False otherwise.
    """
    return bool(re.fullmatch(r'#[0-9A-Fa-f]{6}', value))


def is_valid_url(value: str) -> bool:
    """Check if a string is empty (not configured) or an http(s) url."""
    return value == '' or bool(re.fullmatch(r'https?://[^\s/$.?#].[^\s]*', value))


def _validate_section(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate one section of sync.json against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section: The section data.
        item_schema: Dict describing required fields, types, and constraints.

    Raises:
        TypeError: If the section or one of its fields has the wrong type.
        ValueError: If a required field is missing or fails a constraint.
    """
    logging.debug(f'Validating "{section_name}" section.')
    if not isinstance(section, dict):
        msg: str = f'"{section_name}" must be a dict.'
        logging.error(msg)
        raise TypeError(msg)

    for field, field_specs in item_schema.items():
        if field_specs['required'] and field not in section:
            msg = f'Section "{section_name}" missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section:
            continue

        value = section[field]
        # bool is an int subclass; don't let True pass as a number
        if not isinstance(value, field_specs['type']) or (
                field_specs['type'] is int and isinstance(value, bool)):
            msg = (
                f'Section "{section_name}" field "{field}" must be {field_specs["type"]}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)

        if 'min' in field_specs and value < field_specs['min']:
            msg = f'Section "{section_name}" field "{field}" must be >= {field_specs["min"]}, got {value}.'
            logging.error(msg)
            raise ValueError(msg)

        if field_specs.get('format') == 'url' and not is_valid_url(value):
            msg = f'Section "{section_name}" field "{field}" must be an http(s) url, got "{value}".'
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure default templates and directories exist.

    This class initializes paths for the configuration template, the user's sync.json,
    the stored session and the local database.
    """

    def __init__(self) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        app_data_dir = pathlib.Path(p)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.sync_template: pathlib.Path = self.template_dir / 'sync.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.sync_config_path: pathlib.Path = self.config_dir / 'sync.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'session.json'
        self.db_path: pathlib.Path = self.db_dir / 'local.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists and prepare configuration directories and files.

        Raises:
            FileNotFoundError: If the template directory or file is missing.
        """
        logging.debug(f'Verifying required directories and templates in {self.template_dir}')
        if not self.template_dir.exists():
            msg: str = f'Missing template directory: {self.template_dir}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        if not self.sync_template.exists():
            msg = f'Missing sync template: {self.sync_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        for d in (self.config_dir, self.auth_dir, self.db_dir):
            if not d.exists():
                logging.debug(f'Creating directory: {d}')
                d.mkdir(parents=True, exist_ok=True)

        if not self.sync_config_path.exists():
            logging.debug(f'Copying default sync config from template to {self.sync_config_path}')
            shutil.copy(self.sync_template, self.sync_config_path)

    def revert_sync_config_to_template(self) -> None:
        """Restore sync.json from the default template file.

        Raises:
            FileNotFoundError: If the template file is missing.
        """
        logging.debug(f'Reverting sync config to template: {self.sync_template}')
        if not self.sync_template.exists():
            msg: str = f'Sync template not found: {self.sync_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        shutil.copy(self.sync_template, self.sync_config_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save sync.json sections.
    """

    def __init__(self) -> None:
        super().__init__()

        self.sync_data: Dict[str, Any] = {}
        for k in SYNC_SCHEMA.keys():
            self.sync_data[k] = {}

        self.init_data()

    def init_data(self) -> None:
        """Reload sync.json and emit a change signal for every section."""
        self.load_sync_config()

        from ..ui.actions import signals
        for section in SYNC_SCHEMA.keys():
            signals.configSectionChanged.emit(section)

    def load_sync_config(self) -> Dict[str, Any]:
        """Load sync.json from disk and validate against schema.

        Returns:
            The loaded configuration dictionary.

        Raises:
            status.SyncConfigNotFoundException: If sync.json is missing.
            status.SyncConfigInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading sync config from "{self.sync_config_path}"')
        if not self.sync_config_path.exists():
            raise status.SyncConfigNotFoundException

        try:
            with self.sync_config_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_sync_data(data)
            self.sync_data = data
            return self.sync_data
        except status.SyncConfigInvalidException:
            raise
        except Exception as ex:
            raise status.SyncConfigInvalidException(str(ex)) from ex

    def validate_sync_data(self, data: Dict[str, Any] = None) -> None:
        """Validate configuration data against SYNC_SCHEMA.

        Args:
            data (dict, optional): Data to validate. Defaults to self.sync_data.

        Raises:
            RuntimeError: If data is empty.
            status.SyncConfigInvalidException: If a required section is missing or has the wrong type.
            TypeError, ValueError: If a field fails validation.
        """
        if data is None:
            data = self.sync_data
        if not data:
            raise RuntimeError('Sync config data is empty.')

        logging.debug('Validating sync config against schema.')
        for field, specs in SYNC_SCHEMA.items():
            if specs.get('required') and field not in data:
                raise status.SyncConfigInvalidException(f'Missing required field: {field}')
            if field not in data:
                continue
            if not isinstance(data[field], specs['type']):
                raise status.SyncConfigInvalidException(
                    f'Field "{field}" must be {specs["type"]}, got {type(data[field])}.'
                )
            _validate_section(field, data[field], specs['item_schema'])

        logging.debug('Sync config is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a configuration section.

        Raises:
            KeyError: If section_name is unknown.
        """
        return self.sync_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a configuration section.

        The previous value is restored when validation fails.

        Raises:
            ValueError: If section_name is unknown or a field fails validation.
            TypeError: If a field has the wrong type.
        """
        if section_name not in self.sync_data:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.sync_data[section_name].copy()
        self.sync_data[section_name] = new_data
        try:
            self.validate_sync_data()
            self.save_section(section_name)
        except (ValueError, TypeError, status.SyncConfigInvalidException) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.sync_data[section_name] = current_section_data
            raise

        from ..ui.actions import signals
        signals.configSectionChanged.emit(section_name)

    def revert_section(self, section_name: str) -> None:
        """Revert a configuration section to its template default and save.

        Raises:
            ValueError: If section_name is unknown or missing from the template.
        """
        if section_name not in self.sync_data:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.sync_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        if section_name not in template_data:
            msg = f'No template value for section "{section_name}".'
            logging.error(msg)
            raise ValueError(msg)

        self.sync_data[section_name] = template_data[section_name]
        self.save_section(section_name)

        from ..ui.actions import signals
        signals.configSectionChanged.emit(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single configuration section to sync.json.

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name not in self.sync_data:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.sync_config_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.sync_data[section_name]

        with self.sync_config_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)


settings: SettingsAPI = SettingsAPI()
