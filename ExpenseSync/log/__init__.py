"""
Logging subsystem for application logging.

Modules:

- :mod:`ExpenseSync.log.log` – Log handler integrating with Python logging and the Qt message handler.
"""
