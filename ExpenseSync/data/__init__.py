"""
ExpenseSync data package.

This package provides:

- :mod:`ExpenseSync.data.data` – Data-access functions the UI calls to create, edit and delete expenses, categories and preferences (each change is written locally and queued for sync), CSV-style bulk import, and DataFrame listings and summaries.
"""
