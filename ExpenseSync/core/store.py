"""Typed access to the on-device blob store.

:class:`LocalStoreAdapter` persists record collections and change lists as JSON arrays,
one blob per key. Every call runs the blocking SQLite work on a worker thread so the
event loop never waits on disk.

Failures never propagate: ``save`` reports them as ``False`` and ``load`` falls back to
an empty list. The caller keeps its in-memory copy authoritative until the next save
succeeds.
"""
import asyncio
import datetime
import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .database import BlobStore
from .records import Collection, PendingChange, Record

PENDING_KEY = 'pendingSync'
FAILED_KEY = 'failedSync'

KEYS: List[str] = [c.value for c in Collection] + [PENDING_KEY, FAILED_KEY]


class LocalStoreAdapter:
    """Async load/save of typed lists over a :class:`BlobStore`."""

    def __init__(self, blobs: Optional[BlobStore] = None) -> None:
        self.blobs: BlobStore = blobs if blobs is not None else BlobStore()

    async def _read(self, key: str) -> List[Dict[str, Any]]:
        try:
            text = await asyncio.to_thread(self.blobs.get, key)
        except sqlite3.Error as ex:
            logging.error(f'Failed to read "{key}" from the local store: {ex}')
            return []

        if text is None:
            return []
        try:
            data = json.loads(text)
        except ValueError as ex:
            logging.warning(f'Blob "{key}" is not valid JSON, treating it as empty: {ex}')
            return []
        if not isinstance(data, list):
            logging.warning(f'Blob "{key}" is not a JSON array, treating it as empty.')
            return []
        return data

    async def _write(self, key: str, items: List[Dict[str, Any]]) -> bool:
        try:
            text = json.dumps(items, ensure_ascii=False)
        except (TypeError, ValueError) as ex:
            logging.error(f'Failed to serialize "{key}": {ex}')
            return False

        try:
            await asyncio.to_thread(self.blobs.set, key, text)
        except (sqlite3.Error, OSError) as ex:
            logging.error(f'Failed to save "{key}" to the local store: {ex}')
            return False
        return True

    async def load(self, collection: Collection) -> List[Record]:
        """Load the records stored for ``collection``.

        Items that are not valid records are skipped with a warning.

        Args:
            collection: The record collection.

        Returns:
            The stored records in stored order, or an empty list.
        """
        collection = Collection(collection)
        records: List[Record] = []
        for item in await self._read(collection.value):
            try:
                records.append(Record.from_dict(collection, item))
            except (TypeError, ValueError, AttributeError) as ex:
                logging.warning(f'Skipping invalid "{collection.value}" item: {ex}')
        return records

    async def save(self, collection: Collection, records: List[Record]) -> bool:
        """Replace the stored records for ``collection``.

        Args:
            collection: The record collection.
            records: The full list to store.

        Returns:
            True on success, False if the blob could not be serialized or written.
        """
        collection = Collection(collection)
        return await self._write(collection.value, [r.to_dict() for r in records])

    async def load_changes(self, key: str = PENDING_KEY) -> List[PendingChange]:
        """Load a persisted list of pending changes."""
        changes: List[PendingChange] = []
        for item in await self._read(key):
            try:
                changes.append(PendingChange.from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError) as ex:
                logging.warning(f'Skipping invalid change in "{key}": {ex}')
        return changes

    async def save_changes(self, changes: List[PendingChange], key: str = PENDING_KEY) -> bool:
        """Replace a persisted list of pending changes."""
        return await self._write(key, [c.to_dict() for c in changes])

    async def last_sync(self) -> Optional[datetime.datetime]:
        try:
            return await asyncio.to_thread(self.blobs.get_stamp)
        except sqlite3.Error as ex:
            logging.error(f'Failed to read the last sync stamp: {ex}')
            return None

    async def stamp(self) -> Optional[datetime.datetime]:
        """Record now as the last successful sync.

        Returns:
            The recorded time, or None if it could not be persisted.
        """
        try:
            value = await asyncio.to_thread(self.blobs.stamp)
        except sqlite3.Error as ex:
            logging.error(f'Failed to record the last sync stamp: {ex}')
            return None
        return datetime.datetime.fromisoformat(value)

    async def reset(self) -> bool:
        """Remove every stored collection, change list and the last sync stamp."""
        try:
            await asyncio.to_thread(self.blobs.clear)
        except sqlite3.Error as ex:
            logging.error(f'Failed to clear the local store: {ex}')
            return False
        return True
