"""
ExpenseSync: offline-first personal expense tracking with optional account sync.

This package provides:

- :mod:`ExpenseSync.core` – Local store, sync queue, push/pull pipelines, remote client and sync orchestration.
- :mod:`ExpenseSync.data` – Data-access functions the UI calls to create, edit, delete and list entities.
- :mod:`ExpenseSync.settings` – Settings management, including schema validation and defaults.
- :mod:`ExpenseSync.log` – In-app logging with an in-memory log tank.

Use :func:`ExpenseSync.exec_` to run a headless sync session.
"""

import sys

from PySide6 import QtCore

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('ExpenseSync requires Python 3.11 or higher.')

__version__ = '0.1.0'
__author__ = 'Gergely Wootsch'
__license__ = 'GPL-3.0'
__copyright__ = 'Copyright (C) 2025 Gergely Wootsch'
__description__ = 'ExpenseSync: offline-first expense tracking with queue-based remote synchronization.'

from .log import log

log.setup_logging()


def exec_() -> None:
    """Open the local store, resume the stored session and enter the Qt event loop.

    Periodic syncing starts when a valid session is found; otherwise the store is
    usable offline until a user signs in.
    """
    from .core import database
    from .core import sync

    app = QtCore.QCoreApplication(sys.argv)
    database.open_database()
    sync.sync_api = sync.SyncAPI()

    QtCore.QTimer.singleShot(100, sync.sync_api.resume_session)

    app.aboutToQuit.connect(sync.sync_api.shutdown)
    app.aboutToQuit.connect(database.close_database)
    sys.exit(app.exec())


if __name__ == '__main__':
    exec_()
