"""
UI-facing integration points.

The pages, charts and import wizard live outside this package; they observe the core
through the signals defined in :mod:`ExpenseSync.ui.actions`.
"""
