"""Application-wide Qt signals for ExpenseSync.

This module provides:
    - Signals: custom Qt signals for configuration changes, identity and connectivity
      transitions, and sync lifecycle notifications consumed by the host application.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for config, identity, connectivity and sync events."""
    configSectionChanged = QtCore.Signal(str)  # Section
    preferenceChanged = QtCore.Signal(str, object)  # Key, value

    userChanged = QtCore.Signal(object)  # User id or None

    onlineChanged = QtCore.Signal(bool)
    connectivityRestored = QtCore.Signal()

    syncRequested = QtCore.Signal()
    syncStarted = QtCore.Signal(str)  # Sync state name
    syncFinished = QtCore.Signal(str, bool)  # Sync state name, success

    def __init__(self):
        super().__init__()


signals = Signals()
