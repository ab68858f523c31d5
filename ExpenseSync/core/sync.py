"""Offline-first sync orchestrator.

:class:`SyncOrchestrator` owns the in-memory snapshot of every record collection, the
pending-change queue and the failed list. It is the only writer of the local store.

Every mutation is applied to the snapshot and the local store first and is never rolled
back. The remote store is then written immediately when the user is signed in, online
and has sync enabled. Otherwise, or when the write fails transiently, the change is
queued and sent later as one atomic batch. Changes the remote store rejects permanently
are moved to the failed list, which is never drained automatically.

Sync cycles run on the asyncio event loop and are triggered by start, sign-in,
connectivity changes, enabling sync or :meth:`SyncOrchestrator.sync_now`. A cycle first
drains the queue and then pulls every collection from the remote store, replacing the
local copy. Triggers that arrive while a cycle runs are coalesced into one follow-up cycle.
"""
import asyncio
import enum
import functools
import json
import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import pandas as pd
from PySide6 import QtCore

from .records import Collection, Operation, PendingChange, Record, coerce_collection, new_id, now_str, ID_KEY, \
    MODIFIED_KEY
from .service import RemoteGateway
from .signals import signals
from .store import LocalStoreAdapter, PENDING_KEY, FAILED_KEY
from .queue import PendingQueue
from ..status import status


class SyncState(enum.StrEnum):
    """Orchestrator states."""
    Idle = 'idle'
    PullingAll = 'pulling_all'
    Draining = 'draining'
    Offline = 'offline'


ACTIVE_STATES = (SyncState.PullingAll, SyncState.Draining)

# An active state always returns to rest before another one can start
TRANSITIONS: Dict[SyncState, frozenset] = {
    SyncState.Idle: frozenset({SyncState.Offline, SyncState.PullingAll, SyncState.Draining}),
    SyncState.Offline: frozenset({SyncState.Idle, SyncState.PullingAll, SyncState.Draining}),
    SyncState.PullingAll: frozenset({SyncState.Idle, SyncState.Offline}),
    SyncState.Draining: frozenset({SyncState.Idle, SyncState.Offline}),
}

# Values set on every new record, after the caller's data
CREATE_DEFAULTS: Dict[Collection, Callable[[], Dict[str, Any]]] = {
    Collection.Transactions: lambda: {'createdAt': now_str()},
    Collection.Budgets: lambda: {'spent': 0},
    Collection.Goals: lambda: {'saved': 0},
    Collection.Recurring: lambda: {'lastProcessed': None},
}


class InvalidTransitionError(RuntimeError):
    """Raised when the orchestrator is asked to move to a state it cannot reach."""

    def __init__(self, current: SyncState, requested: SyncState) -> None:
        super().__init__(f'Cannot move from "{current.value}" to "{requested.value}".')
        self.current = current
        self.requested = requested


class SyncStatus(NamedTuple):
    """Coarse sync status observed by the UI."""
    state: SyncState
    syncing: bool
    last_sync: Optional[Any]
    is_online: bool
    pending: int
    failed: int


class SyncOrchestrator(QtCore.QObject):
    """Applies mutations locally and keeps the remote store in step.

    Args:
        gateway: The remote store.
        store: The local store adapter. Defaults to one over the application database.
        identity: Object exposing ``current_user_id`` and ``subscribe``. Defaults to the auth manager.
        connectivity: Object exposing ``is_online``, ``subscribe`` and ``subscribe_restored``.
            Defaults to the shared connectivity monitor.
        preferences: Object exposing ``sync_enabled``. Defaults to the settings.
    """
    stateChanged = QtCore.Signal(str)  # State value
    snapshotChanged = QtCore.Signal(str)  # Collection
    queueChanged = QtCore.Signal(int)  # Pending count
    statusChanged = QtCore.Signal(object)  # SyncStatus

    def __init__(
            self,
            gateway: RemoteGateway,
            store: Optional[LocalStoreAdapter] = None,
            identity: Any = None,
            connectivity: Any = None,
            preferences: Any = None,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent)

        if identity is None:
            from .auth import auth_manager
            identity = auth_manager
        if connectivity is None:
            from . import connectivity as _connectivity
            connectivity = _connectivity.connectivity
        if preferences is None:
            from ..settings import lib
            preferences = lib.settings

        self.gateway = gateway
        self.store = store if store is not None else LocalStoreAdapter()
        self.identity = identity
        self.connectivity = connectivity
        self.preferences = preferences

        self.queue = PendingQueue(self.store, PENDING_KEY)
        self.failed = PendingQueue(self.store, FAILED_KEY)

        self._snapshot: Dict[Collection, List[Record]] = {c: [] for c in Collection}
        self._save_locks: Dict[Collection, asyncio.Lock] = {c: asyncio.Lock() for c in Collection}
        self._state: SyncState = SyncState.Idle
        self._last_sync = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._rerun: bool = False
        self._disposers: List[Callable[[], None]] = []
        self._subscribers: List[Callable[[SyncStatus], Any]] = []

    # Lifecycle

    @property
    def is_started(self) -> bool:
        return self._loop is not None

    async def start(self) -> None:
        """Load the local store, subscribe to the identity, connectivity and preference signals,
        and run the first sync cycle in the background."""
        if self.is_started:
            return
        logging.info('Starting sync orchestrator...')

        for collection in Collection:
            self._snapshot[collection] = await self.store.load(collection)
        await self.queue.load()
        await self.failed.load()
        self._last_sync = await self.store.last_sync()

        self._loop = asyncio.get_running_loop()
        self._disposers = [
            self.identity.subscribe(functools.partial(self._post, self._on_user_changed)),
            self.connectivity.subscribe(functools.partial(self._post, self._on_online_changed)),
            self.connectivity.subscribe_restored(functools.partial(self._post, self._on_connectivity_restored)),
        ]
        signals.preferenceChanged.connect(self._on_preference_changed)
        signals.syncRequested.connect(self._on_sync_requested)

        for collection in Collection:
            self.snapshotChanged.emit(collection.value)
        self.queueChanged.emit(len(self.queue))
        self._set_state(self._rest_state())

        self.request_sync('start')

    async def stop(self) -> None:
        """Unsubscribe from every signal and cancel a running sync cycle.

        A cancelled drain leaves the queue untouched.
        """
        if not self.is_started:
            return
        logging.info('Stopping sync orchestrator...')

        for dispose in self._disposers:
            dispose()
        self._disposers = []
        signals.preferenceChanged.disconnect(self._on_preference_changed)
        signals.syncRequested.disconnect(self._on_sync_requested)

        task = self._cycle_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        self._cycle_task = None
        self._rerun = False
        self._loop = None

    async def wait_idle(self) -> None:
        """Wait until no sync cycle is running, including coalesced follow-ups."""
        while self._cycle_task is not None and not self._cycle_task.done():
            await asyncio.wait({self._cycle_task})

    def _post(self, func: Callable[..., Any], *args: Any) -> None:
        # Signal sources may fire from any thread
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(func, *args)

    # Queries

    @property
    def state(self) -> SyncState:
        return self._state

    def records(self, collection: Collection) -> List[Record]:
        """Return a copy of the records of ``collection``, in display order."""
        return list(self._snapshot[self._collection(collection)])

    def get(self, collection: Collection, record_id: str) -> Optional[Record]:
        """Return the record with ``record_id`` or None."""
        for record in self._snapshot[self._collection(collection)]:
            if record.id == record_id:
                return record
        return None

    def frame(self, collection: Collection) -> pd.DataFrame:
        """Return the records of ``collection`` as a DataFrame."""
        from ..data import data
        return data.frame(self.records(collection))

    def pending_changes(self) -> List[PendingChange]:
        return self.queue.items()

    def failed_changes(self) -> List[PendingChange]:
        return self.failed.items()

    def status(self) -> SyncStatus:
        return SyncStatus(
            state=self._state,
            syncing=self._state in ACTIVE_STATES,
            last_sync=self._last_sync,
            is_online=bool(self.connectivity.is_online),
            pending=len(self.queue),
            failed=len(self.failed),
        )

    def subscribe(self, callback: Callable[[SyncStatus], Any]) -> Callable[[], None]:
        """Call ``callback`` with the new :class:`SyncStatus` whenever it may have changed.

        Returns:
            A disposer that unregisters the callback.
        """
        self._subscribers.append(callback)

        def dispose() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return dispose

    def _notify(self) -> None:
        current = self.status()
        self.statusChanged.emit(current)
        for callback in list(self._subscribers):
            callback(current)

    # State machine

    def _can_sync(self) -> bool:
        return bool(self.identity.current_user_id and self.connectivity.is_online and self.preferences.sync_enabled)

    def _can_drain(self) -> bool:
        return bool(len(self.queue) and self.identity.current_user_id and self.connectivity.is_online)

    def _rest_state(self) -> SyncState:
        if self.identity.current_user_id and not (self.connectivity.is_online and self.preferences.sync_enabled):
            return SyncState.Offline
        return SyncState.Idle

    def _set_state(self, state: SyncState) -> None:
        """Move to ``state``.

        Raises:
            InvalidTransitionError: If ``state`` is not reachable from the current state.
        """
        if state == self._state:
            return
        if state not in TRANSITIONS[self._state]:
            raise InvalidTransitionError(self._state, state)

        logging.debug(f'Sync state: {self._state.value} -> {state.value}')
        self._state = state
        self.stateChanged.emit(state.value)
        self._notify()

    def _settle(self) -> None:
        if self._state not in ACTIVE_STATES:
            self._set_state(self._rest_state())

    # Triggers

    def _on_user_changed(self, user_id: Optional[str]) -> None:
        self._settle()
        if user_id:
            self.request_sync('identity')

    def _on_online_changed(self, online: bool) -> None:
        self._settle()
        self._notify()

    def _on_connectivity_restored(self) -> None:
        self._settle()
        self.request_sync('connectivity')

    @QtCore.Slot(str, object)
    def _on_preference_changed(self, key: str, value: Any) -> None:
        if key != 'sync_enabled':
            return
        self._post(self._on_sync_enabled_changed, bool(value))

    @QtCore.Slot()
    def _on_sync_requested(self) -> None:
        self._post(self.request_sync, 'requested')

    def _on_sync_enabled_changed(self, enabled: bool) -> None:
        self._settle()
        if enabled:
            self.request_sync('preference')

    def request_sync(self, reason: str = '') -> Optional[asyncio.Task]:
        """Schedule a sync cycle.

        If a cycle is already running, one follow-up cycle is scheduled to run after it.
        Must be called on the event loop thread.

        Returns:
            The task running the cycle, or None if the orchestrator is not started.
        """
        if self._loop is None:
            return None
        if self._cycle_task is not None and not self._cycle_task.done():
            logging.debug(f'Sync requested ({reason}) while a cycle is running; coalescing.')
            self._rerun = True
            return self._cycle_task

        logging.debug(f'Sync requested ({reason}).')
        self._cycle_task = self._loop.create_task(self._run_cycles())
        return self._cycle_task

    async def sync_now(self) -> SyncStatus:
        """Drain the queue and pull every collection now, and wait for it to finish.

        Returns:
            The status after the cycle.

        Raises:
            RuntimeError: If the orchestrator is not started.
        """
        if not self.is_started:
            raise RuntimeError('The sync orchestrator is not started.')
        self.request_sync('sync now')
        await self.wait_idle()
        return self.status()

    async def _run_cycles(self) -> None:
        while True:
            self._rerun = False
            await self._cycle()
            if not self._rerun:
                break

    async def _cycle(self) -> None:
        if self._can_drain():
            if not await self._drain():
                return
        if self._can_sync():
            await self._pull()

    async def _drain(self) -> bool:
        user_id = self.identity.current_user_id
        self._set_state(SyncState.Draining)
        signals.syncStarted.emit(SyncState.Draining.value)

        ok = False
        try:
            await self.queue.drain(functools.partial(self.gateway.commit_batch, user_id))
            ok = True
        except status.RemotePermanentException as ex:
            logging.warning(f'Batch rejected, sending queued changes one by one: {ex}')
            ok = await self._drain_each(user_id)
        except status.RemoteException as ex:
            logging.warning(f'Drain failed, {len(self.queue)} change(s) stay queued: {ex}')
        finally:
            self.queueChanged.emit(len(self.queue))
            self._set_state(self._rest_state())

        if ok:
            await self._stamp()
        signals.syncFinished.emit(SyncState.Draining.value, ok)
        return ok

    async def _drain_each(self, user_id: str) -> bool:
        """Send queued changes individually, in order, moving rejected ones to the failed list.

        Stops at the first transient failure, leaving it and every later change queued.
        """
        for change in self.queue.items():
            try:
                await self.gateway.commit_batch(user_id, [change])
            except status.RemotePermanentException:
                await self.queue.remove(lambda c: c is change)
                await self.failed.enqueue(change)
                logging.warning(
                    f'{change.operation.value} {change.collection.value}/{change.record_id} '
                    f'moved to the failed list.'
                )
            except status.RemoteException as ex:
                logging.warning(f'Drain stopped, {len(self.queue)} change(s) stay queued: {ex}')
                return False
            else:
                await self.queue.remove(lambda c: c is change)
        return True

    async def _pull(self) -> bool:
        user_id = self.identity.current_user_id
        self._set_state(SyncState.PullingAll)
        signals.syncStarted.emit(SyncState.PullingAll.value)

        ok = False
        try:
            remote = await self.gateway.pull_all(user_id)
            if user_id != self.identity.current_user_id:
                logging.info('Identity changed during the pull, discarding the result.')
            else:
                for collection in Collection:
                    self._snapshot[collection] = self._with_failed(collection, remote.get(collection, []))
                    await self._persist(collection)
                    self.snapshotChanged.emit(collection.value)
                ok = True
        except status.RemoteException as ex:
            logging.warning(f'Pull failed, keeping local data: {ex}')
        finally:
            self._set_state(self._rest_state())

        if ok:
            await self._stamp()
        signals.syncFinished.emit(SyncState.PullingAll.value, ok)
        return ok

    def _with_failed(self, collection: Collection, records: List[Record]) -> List[Record]:
        """Lay the failed changes of ``collection`` over pulled ``records``.

        A rejected change never reached the remote store, so a pull alone would drop it from
        the device until it is retried or discarded.
        """
        records = list(records)
        for change in self.failed.items():
            if change.collection is not collection:
                continue
            records = [r for r in records if r.id != change.record_id]
            if change.payload is None:
                continue
            record = Record.from_dict(collection, {**change.payload, ID_KEY: change.record_id})
            if collection is Collection.Transactions:
                records.insert(0, record)
            else:
                records.append(record)
        return records

    async def _stamp(self) -> None:
        when = await self.store.stamp()
        if when is not None:
            self._last_sync = when
        self._notify()

    # Mutations

    @staticmethod
    def _collection(collection: Any) -> Collection:
        try:
            return coerce_collection(collection)
        except ValueError as ex:
            raise status.LocalApplyException(str(ex)) from ex

    @staticmethod
    def _check_storable(collection: Collection, record_id: str, payload: Dict[str, Any]) -> None:
        try:
            json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError) as ex:
            raise status.LocalApplyException(
                f'{collection.value}/{record_id} cannot be stored locally: {ex}'
            ) from ex

    def _index(self, collection: Collection, record_id: str) -> int:
        for i, record in enumerate(self._snapshot[collection]):
            if record.id == record_id:
                return i
        raise status.RecordNotFoundException(f'{collection.value}/{record_id}')

    def _require_started(self) -> None:
        if not self.is_started:
            raise RuntimeError('The sync orchestrator is not started.')

    async def _persist(self, collection: Collection) -> bool:
        async with self._save_locks[collection]:
            ok = await self.store.save(collection, list(self._snapshot[collection]))
        if not ok:
            logging.warning(f'"{collection.value}" could not be saved locally; keeping it in memory.')
        return ok

    async def add(self, collection: Collection, data: Dict[str, Any]) -> Record:
        """Create a record.

        An ``id`` in ``data`` is used as the record id, otherwise a new one is generated.
        New transactions are listed first, other records last.

        Args:
            collection: Target collection.
            data: The record fields.

        Returns:
            The created record.

        Raises:
            status.LocalApplyException: If the collection is unknown, the data is not a dict, the id
                exists or a value cannot be stored as JSON.
        """
        self._require_started()
        collection = self._collection(collection)
        if not isinstance(data, dict):
            raise status.LocalApplyException(f'Record data must be a dict, got {type(data)}.')

        payload = dict(data)
        record_id = str(payload.pop(ID_KEY, None) or new_id())
        payload.pop(MODIFIED_KEY, None)
        payload.update(CREATE_DEFAULTS[collection]())

        if self.get(collection, record_id) is not None:
            raise status.LocalApplyException(f'{collection.value}/{record_id} already exists.')
        self._check_storable(collection, record_id, payload)

        record = Record(record_id, collection, payload, now_str())
        if collection is Collection.Transactions:
            self._snapshot[collection].insert(0, record)
        else:
            self._snapshot[collection].append(record)

        await self._applied(collection, PendingChange.for_record(Operation.Create, record))
        return record

    async def update(self, collection: Collection, record_id: str, updates: Dict[str, Any]) -> Record:
        """Merge ``updates`` into an existing record.

        Raises:
            status.LocalApplyException: If the collection is unknown, updates is not a dict or a
                merged value cannot be stored as JSON.
            status.RecordNotFoundException: If no record has ``record_id``.
        """
        self._require_started()
        collection = self._collection(collection)
        if not isinstance(updates, dict):
            raise status.LocalApplyException(f'Updates must be a dict, got {type(updates)}.')

        idx = self._index(collection, record_id)
        record = self._snapshot[collection][idx].merged(updates, now_str())
        self._check_storable(collection, record_id, record.payload)
        self._snapshot[collection][idx] = record

        await self._applied(collection, PendingChange.for_record(Operation.Update, record))
        return record

    async def delete(self, collection: Collection, record_id: str) -> None:
        """Delete a record. Deleting an unknown id still deletes it remotely.

        Raises:
            status.LocalApplyException: If the collection is unknown.
        """
        self._require_started()
        collection = self._collection(collection)
        self._snapshot[collection] = [r for r in self._snapshot[collection] if r.id != record_id]

        await self._applied(collection, PendingChange(Operation.Delete, collection, str(record_id)))

    async def _applied(self, collection: Collection, change: PendingChange) -> None:
        await self._persist(collection)
        self.snapshotChanged.emit(collection.value)
        await self._propagate(change)

    async def _propagate(self, change: PendingChange) -> None:
        user_id = self.identity.current_user_id
        if not user_id:
            logging.debug(f'Not signed in, {change.collection.value}/{change.record_id} is kept locally only.')
            return

        # Writing past queued changes would let a later replay of the queue overwrite this one
        if not self._can_sync() or len(self.queue):
            await self._enqueue(change)
            if self._can_sync():
                self.request_sync('queued change')
            return

        try:
            if change.operation is Operation.Delete:
                await self.gateway.delete(user_id, change.collection, change.record_id)
            else:
                await self.gateway.upsert(user_id, change.collection, change.record())
        except status.RemotePermanentException as ex:
            await self.failed.enqueue(change)
            logging.warning(f'{change.collection.value}/{change.record_id} moved to the failed list: {ex}')
            self._notify()
        except status.RemoteException as ex:
            logging.info(f'{change.collection.value}/{change.record_id} queued after a failed write: {ex}')
            await self._enqueue(change)

    async def _enqueue(self, change: PendingChange) -> None:
        await self.queue.enqueue(change)
        self.queueChanged.emit(len(self.queue))
        self._notify()

    async def retry_failed(self) -> int:
        """Move every failed change back to the end of the queue and schedule a sync.

        Returns:
            The number of changes moved.
        """
        changes = await self.failed.clear()
        if changes:
            await self.queue.extend(changes)
            self.queueChanged.emit(len(self.queue))
            self._notify()
            self.request_sync('retry failed')
        return len(changes)

    async def discard_failed(self) -> List[PendingChange]:
        """Drop every failed change.

        Their local effect is kept until the next pull replaces it with the remote copy.
        """
        changes = await self.failed.clear()
        if changes:
            self._notify()
        return changes

    async def reset_local(self) -> bool:
        """Forget every local record, queued and failed change and the last sync time.

        Nothing is sent to the remote store, so queued changes are lost. The host calls this
        when a user signs out for good; signing out alone keeps the local data.

        Returns:
            Whether the local store was cleared. The in-memory state is cleared either way.

        Raises:
            RuntimeError: If a sync cycle is running.
        """
        if self._cycle_task is not None and not self._cycle_task.done():
            raise RuntimeError('Cannot reset the local store while a sync cycle is running.')

        await self.queue.clear()
        await self.failed.clear()
        ok = await self.store.reset()
        for collection in Collection:
            self._snapshot[collection] = []
            self.snapshotChanged.emit(collection.value)
        self._last_sync = None

        logging.info('Local records and queued changes were reset.')
        self.queueChanged.emit(0)
        self._notify()
        return ok

    # Typed helpers

    async def add_transaction(self, data: Dict[str, Any]) -> Record:
        return await self.add(Collection.Transactions, data)

    async def update_transaction(self, record_id: str, updates: Dict[str, Any]) -> Record:
        return await self.update(Collection.Transactions, record_id, updates)

    async def delete_transaction(self, record_id: str) -> None:
        await self.delete(Collection.Transactions, record_id)

    async def add_budget(self, data: Dict[str, Any]) -> Record:
        return await self.add(Collection.Budgets, data)

    async def update_budget(self, record_id: str, updates: Dict[str, Any]) -> Record:
        return await self.update(Collection.Budgets, record_id, updates)

    async def delete_budget(self, record_id: str) -> None:
        await self.delete(Collection.Budgets, record_id)

    async def add_goal(self, data: Dict[str, Any]) -> Record:
        return await self.add(Collection.Goals, data)

    async def update_goal(self, record_id: str, updates: Dict[str, Any]) -> Record:
        return await self.update(Collection.Goals, record_id, updates)

    async def delete_goal(self, record_id: str) -> None:
        await self.delete(Collection.Goals, record_id)

    async def add_recurring(self, data: Dict[str, Any]) -> Record:
        return await self.add(Collection.Recurring, data)

    async def update_recurring(self, record_id: str, updates: Dict[str, Any]) -> Record:
        return await self.update(Collection.Recurring, record_id, updates)

    async def delete_recurring(self, record_id: str) -> None:
        await self.delete(Collection.Recurring, record_id)
