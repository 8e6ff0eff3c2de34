"""ExpenseSync test suite."""
from PySide6 import QtCore

# Keep test runs out of the real app data directory
QtCore.QStandardPaths.setTestModeEnabled(True)
