"""
Status definitions and status-carrying exceptions.

Modules:

- :mod:`ExpenseSync.status.status` – Status enum, user-facing messages and exceptions.
"""
