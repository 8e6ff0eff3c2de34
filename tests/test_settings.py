# tests/test_settings.py
"""
Unit tests for ExpenseSync.settings.lib
(covers helpers, the section validator, ConfigPaths and SettingsAPI).

Run with:
    python -m unittest tests.test_settings
"""
import json
import unittest
from pathlib import Path
from typing import Any, Dict

from ExpenseSync.settings import lib
from ExpenseSync.settings.lib import (
    SYNC_SCHEMA,
    SettingsAPI,
    _validate_section,
    is_valid_hex_color,
    is_valid_url,
)
from ExpenseSync.status import status
from tests.base import BaseTestCase


def minimal_sync() -> Dict[str, Any]:
    return {
        'remote': {'url': 'https://example.supabase.co', 'api_key': 'anon', 'request_timeout': 10},
        'sync': {'interval_seconds': 30, 'max_retries': 3, 'auto_sync': True},
    }


def write_json(p: Path, data: Dict[str, Any]) -> None:
    with p.open('w', encoding='utf-8') as f:
        json.dump(data, f, indent=4, ensure_ascii=False)


class HelperFunctionTests(unittest.TestCase):
    def test_hex_colour_validation(self):
        self.assertTrue(is_valid_hex_color('#abcdef'))
        self.assertFalse(is_valid_hex_color('#abcdex'))
        self.assertFalse(is_valid_hex_color('abcdef'))

    def test_url_validation(self):
        self.assertTrue(is_valid_url(''))
        self.assertTrue(is_valid_url('https://example.supabase.co'))
        self.assertTrue(is_valid_url('http://localhost:54321'))
        self.assertFalse(is_valid_url('example.com'))
        self.assertFalse(is_valid_url('ftp://example.com'))

    def test_default_categories_are_valid(self):
        ids = [c['id'] for c in lib.DEFAULT_CATEGORIES]
        self.assertEqual(len(ids), len(set(ids)))
        self.assertIn('other', ids)
        for c in lib.DEFAULT_CATEGORIES:
            self.assertTrue(is_valid_hex_color(c['color']), c)

    def test_default_preferences_are_valid(self):
        self.assertIn(lib.DEFAULT_PREFERENCES['date_format'], lib.DATE_FORMATS)
        self.assertIn(lib.DEFAULT_PREFERENCES['default_currency'], lib.CURRENCIES)
        self.assertIn(lib.DEFAULT_PREFERENCES['theme'], lib.THEMES)


class ValidatorTests(unittest.TestCase):
    def test_valid_sections(self):
        data = minimal_sync()
        for name, specs in SYNC_SCHEMA.items():
            _validate_section(name, data[name], specs['item_schema'])

    def test_missing_field(self):
        section = minimal_sync()['sync']
        del section['max_retries']
        with self.assertRaises(ValueError) as cm:
            _validate_section('sync', section, SYNC_SCHEMA['sync']['item_schema'])
        self.assertIn('missing "max_retries"', str(cm.exception))

    def test_wrong_type(self):
        section = minimal_sync()['sync']
        section['interval_seconds'] = '30'
        with self.assertRaises(TypeError):
            _validate_section('sync', section, SYNC_SCHEMA['sync']['item_schema'])

    def test_bool_is_not_an_int(self):
        section = minimal_sync()['sync']
        section['max_retries'] = True
        with self.assertRaises(TypeError):
            _validate_section('sync', section, SYNC_SCHEMA['sync']['item_schema'])

    def test_minimum(self):
        section = minimal_sync()['sync']
        section['interval_seconds'] = 0
        with self.assertRaises(ValueError):
            _validate_section('sync', section, SYNC_SCHEMA['sync']['item_schema'])

    def test_url_format(self):
        section = minimal_sync()['remote']
        section['url'] = 'not a url'
        with self.assertRaises(ValueError):
            _validate_section('remote', section, SYNC_SCHEMA['remote']['item_schema'])

    def test_section_must_be_dict(self):
        with self.assertRaises(TypeError):
            _validate_section('sync', [], SYNC_SCHEMA['sync']['item_schema'])


class ConfigPathsTests(BaseTestCase):
    def test_paths(self):
        cp = lib.ConfigPaths()
        self.assertEqual(cp.sync_config_path.name, 'sync.json')
        self.assertEqual(cp.creds_path.parent, cp.auth_dir)
        self.assertEqual(cp.db_path.parent, cp.db_dir)

    def test_template_is_copied(self):
        cp = lib.ConfigPaths()
        with cp.sync_config_path.open('r', encoding='utf-8') as f:
            data = json.load(f)
        with cp.sync_template.open('r', encoding='utf-8') as f:
            template = json.load(f)
        self.assertEqual(data, template)

    def test_revert_to_template(self):
        cp = lib.ConfigPaths()
        write_json(cp.sync_config_path, {'broken': True})
        cp.revert_sync_config_to_template()
        with cp.sync_config_path.open('r', encoding='utf-8') as f:
            self.assertIn('remote', json.load(f))


class SettingsAPITests(BaseTestCase):
    def test_template_defaults(self):
        api = SettingsAPI()
        self.assertEqual(api.get_section('sync')['interval_seconds'], 30)
        self.assertEqual(api.get_section('sync')['max_retries'], 3)
        self.assertEqual(api.get_section('remote')['url'], '')

    def test_get_section_returns_copy(self):
        api = SettingsAPI()
        section = api.get_section('sync')
        section['interval_seconds'] = 999
        self.assertEqual(api.get_section('sync')['interval_seconds'], 30)

    def test_get_unknown_section(self):
        with self.assertRaises(KeyError):
            SettingsAPI().get_section('nope')

    def test_set_section_persists(self):
        api = SettingsAPI()
        api.set_section('remote', minimal_sync()['remote'])

        reloaded = SettingsAPI()
        self.assertEqual(reloaded.get_section('remote')['api_key'], 'anon')

    def test_set_section_invalid_restores_previous(self):
        api = SettingsAPI()
        bad = minimal_sync()['sync']
        bad['max_retries'] = 0
        with self.assertRaises(ValueError):
            api.set_section('sync', bad)
        self.assertEqual(api.get_section('sync')['max_retries'], 3)

    def test_set_unknown_section(self):
        with self.assertRaises(ValueError):
            SettingsAPI().set_section('nope', {})

    def test_revert_section(self):
        api = SettingsAPI()
        api.set_section('remote', minimal_sync()['remote'])
        api.revert_section('remote')
        self.assertEqual(api.get_section('remote')['url'], '')
        self.assertEqual(SettingsAPI().get_section('remote')['url'], '')

    def test_set_section_emits_signal(self):
        from ExpenseSync.ui.actions import signals
        received = []
        signals.configSectionChanged.connect(received.append)
        try:
            SettingsAPI().set_section('sync', minimal_sync()['sync'])
        finally:
            signals.configSectionChanged.disconnect(received.append)
        self.assertIn('sync', received)

    def test_invalid_json_raises(self):
        api = SettingsAPI()
        api.sync_config_path.write_text('{not json', encoding='utf-8')
        with self.assertRaises(status.SyncConfigInvalidException):
            api.load_sync_config()

    def test_missing_section_raises(self):
        api = SettingsAPI()
        write_json(api.sync_config_path, {'remote': minimal_sync()['remote']})
        with self.assertRaises(status.SyncConfigInvalidException):
            api.load_sync_config()

    def test_missing_file_raises(self):
        api = SettingsAPI()
        api.sync_config_path.unlink()
        with self.assertRaises(status.SyncConfigNotFoundException):
            api.load_sync_config()

    def test_queue_reads_retry_ceiling_from_settings(self):
        from ExpenseSync.core.queue import SyncQueue
        section = minimal_sync()['sync']
        section['max_retries'] = 5
        lib.settings.set_section('sync', section)
        self.assertEqual(SyncQueue(self.db).max_retries, 5)
