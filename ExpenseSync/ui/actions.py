"""Application-wide Qt signals for ExpenseSync.

This module provides:
    - Signals: custom Qt signals for configuration changes, local data changes,
      authentication transitions, sync lifecycle and error reporting.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for application config, data, and sync events."""
    configSectionChanged = QtCore.Signal(str)

    # Emits the table name after a committed local mutation
    localDataChanged = QtCore.Signal(str)

    # Emits the user id on sign-in, an empty string on sign-out
    authStateChanged = QtCore.Signal(str)
    authenticationRequested = QtCore.Signal()

    syncRequested = QtCore.Signal()
    syncStarted = QtCore.Signal()
    syncFinished = QtCore.Signal(object)  # SyncResult
    syncStateChanged = QtCore.Signal(object)  # SyncState
    queueChanged = QtCore.Signal(int)

    error = QtCore.Signal(str)
    errorLogged = QtCore.Signal(str)

    def __init__(self):
        super().__init__()


signals = Signals()
