"""Ordered, persisted log of mutations the remote store has not yet acknowledged.

The queue never reorders or collapses entries: a later update to the same record does not
replace an earlier one. Draining hands the whole ordered snapshot to one atomic remote batch
and only removes what was confirmed.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List

from .records import PendingChange
from .store import LocalStoreAdapter, PENDING_KEY


class PendingQueue:
    """FIFO of :class:`PendingChange` items mirrored to a :class:`LocalStoreAdapter` key.

    Args:
        store: The adapter used to persist the queue.
        key: The store key. Defaults to ``pendingSync``.
    """

    def __init__(self, store: LocalStoreAdapter, key: str = PENDING_KEY) -> None:
        self.store = store
        self.key = key
        self._items: List[PendingChange] = []
        self._draining: bool = False
        self._persist_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> List[PendingChange]:
        """Return a copy of the queued changes in order."""
        return list(self._items)

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def load(self) -> List[PendingChange]:
        """Replace the in-memory queue with the persisted one."""
        self._items = await self.store.load_changes(self.key)
        logging.debug(f'Loaded {len(self._items)} queued change(s) from "{self.key}".')
        return self.items()

    async def persist(self) -> bool:
        # Saves are serialized and snapshot the queue once the previous one finished,
        # so the last save to complete always holds the latest queue.
        async with self._persist_lock:
            ok = await self.store.save_changes(list(self._items), self.key)
        if not ok:
            logging.warning(f'Queue "{self.key}" could not be persisted; it is kept in memory.')
        return ok

    async def enqueue(self, change: PendingChange) -> bool:
        """Append ``change`` and persist the queue.

        Returns:
            Whether the queue was persisted. The change stays queued in memory either way.
        """
        self._items.append(change)
        logging.debug(
            f'Queued {change.operation.value} {change.collection.value}/{change.record_id} '
            f'({len(self._items)} pending).'
        )
        return await self.persist()

    async def extend(self, changes: List[PendingChange]) -> bool:
        self._items.extend(changes)
        return await self.persist()

    async def drain(self, apply: Callable[[List[PendingChange]], Awaitable[None]]) -> int:
        """Apply every queued change as one batch.

        ``apply`` receives the ordered snapshot of the queue. When it returns, exactly that
        snapshot is removed; changes enqueued while it ran stay queued in order. When it raises,
        the queue is left untouched and the exception propagates.

        Args:
            apply: Coroutine function committing the batch all-or-nothing.

        Returns:
            The number of changes drained.

        Raises:
            RuntimeError: If a drain is already running.
        """
        if self._draining:
            raise RuntimeError(f'Queue "{self.key}" is already draining.')
        if not self._items:
            return 0

        batch = list(self._items)
        self._draining = True
        try:
            await apply(batch)
        finally:
            self._draining = False

        # The batch is always the head of the queue: only enqueue and extend
        # touch the list while a drain is in flight, and both append.
        del self._items[:len(batch)]
        await self.persist()
        logging.info(f'Drained {len(batch)} change(s) from "{self.key}".')
        return len(batch)

    async def remove(self, predicate: Callable[[PendingChange], bool]) -> List[PendingChange]:
        """Remove and return the changes matching ``predicate``.

        Raises:
            RuntimeError: If called while draining.
        """
        if self._draining:
            raise RuntimeError(f'Cannot remove from "{self.key}" while draining.')
        removed = [c for c in self._items if predicate(c)]
        if removed:
            self._items = [c for c in self._items if not predicate(c)]
            await self.persist()
        return removed

    async def clear(self) -> List[PendingChange]:
        """Remove and return every queued change."""
        return await self.remove(lambda _: True)
