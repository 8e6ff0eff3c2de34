"""
Settings management.

Modules:

- :mod:`ExpenseSync.settings.lib` – Config paths, sync.json schema validation and the settings API.
"""
