"""
Core package for ExpenseSync providing the offline-first sync engine.

This package includes:

- :mod:`ExpenseSync.core.records` – Record and pending-change types, client id generation.
- :mod:`ExpenseSync.core.database` – SQLite blob store backing the on-device copy.
- :mod:`ExpenseSync.core.store` – Typed async load/save of collections and change lists.
- :mod:`ExpenseSync.core.queue` – Persisted FIFO of changes not yet confirmed by the remote store.
- :mod:`ExpenseSync.core.service` – Remote gateway contract and the Cloud Firestore implementation.
- :mod:`ExpenseSync.core.sync` – The sync orchestrator state machine.
- :mod:`ExpenseSync.core.auth` – Current user identity and Google OAuth2 credentials.
- :mod:`ExpenseSync.core.connectivity` – Online/offline signal and connectivity probe.
- :mod:`ExpenseSync.core.signals` – Application-wide Qt signals.
"""
