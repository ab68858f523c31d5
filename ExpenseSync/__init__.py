"""
ExpenseSync: offline-first synchronization engine for a personal finance tracker.

This package provides:

- :mod:`ExpenseSync.core` – The sync engine: local store, pending-change queue, Firestore gateway and the
  :class:`ExpenseSync.core.sync.SyncOrchestrator`.
- :mod:`ExpenseSync.data` – pandas views and dashboard statistics of the local snapshot.
- :mod:`ExpenseSync.settings` – Settings management, including schema validation and application paths.
- :mod:`ExpenseSync.status` – Status codes and the exception taxonomy.
- :mod:`ExpenseSync.log` – Logging setup with an in-memory log tank.
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('ExpenseSync requires Python 3.11 or higher.')

__version__ = '0.1.0'
__author__ = 'Gergely Wootsch'
__license__ = 'GPL-3.0'
__copyright__ = 'Copyright (C) 2025 Gergely Wootsch'
__description__ = 'ExpenseSync: offline-first sync engine keeping on-device finance records in step with Cloud Firestore.'
__url__ = 'https://github.com/wgergely/ExpenseSync'
__email__ = 'hello+ExpenseSync@gergely-wootsch.com'

from .log import log

log.setup_logging()
