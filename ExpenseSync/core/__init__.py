"""
Core sync machinery.

Modules:

- :mod:`ExpenseSync.core.schema` – Typed sync records and remote row schemas.
- :mod:`ExpenseSync.core.database` – Local SQLite store with observer notifications.
- :mod:`ExpenseSync.core.queue` – Outbound queue with merge-on-enqueue and retry bookkeeping.
- :mod:`ExpenseSync.core.auth` – Remote account sign-in and session refresh.
- :mod:`ExpenseSync.core.service` – REST client for the remote store and the background worker.
- :mod:`ExpenseSync.core.push` – Transmits queued actions.
- :mod:`ExpenseSync.core.pull` – Applies remote changes with conflict resolution.
- :mod:`ExpenseSync.core.sync` – Sync orchestration and the periodic scheduler.
"""
