"""
Durable on-device blob store backed by SQLite.

This module provides the opaque string-keyed store the local store adapter persists to.
Each key holds one text blob; a write replaces the blob in a single transaction so readers
see either the previous or the new value, never a partial one. A metadata table records the
last successful sync.
"""

import datetime
import enum
import logging
import pathlib
import sqlite3
import time
from typing import Optional, Dict, List, Union

from .records import now_str
from ..status import status

# Define the expected schema for the metadata table
META_SCHEMA: Dict[str, str] = {
    'meta_id': 'INTEGER PRIMARY KEY',
    'last_sync': 'TEXT',
}

BLOB_SCHEMA: Dict[str, str] = {
    'key': 'TEXT PRIMARY KEY',
    'value': 'TEXT NOT NULL',
    'written': 'TEXT NOT NULL',
}


class Table(enum.StrEnum):
    """Enum for database tables."""
    Meta = 'metatable'
    Blobs = 'blobs'


class BlobStore:
    """String-keyed blob store. Handles schema creation, validation and blob access.

    Every call opens its own connection, so a store may be used from worker threads.
    """

    def __init__(self, path: Optional[Union[str, pathlib.Path]] = None) -> None:
        if path is None:
            from ..settings import lib
            path = lib.settings.db_path
        self.path: pathlib.Path = pathlib.Path(path)
        self._initialize_schema_if_needed()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the store database."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), timeout=2.0)
        conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 1000)
        return conn

    @staticmethod
    def _table_exists_in_conn(conn: sqlite3.Connection, table_name: str) -> bool:
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    @classmethod
    def _table_is_valid(cls, conn: sqlite3.Connection, table_name: str, schema: Dict[str, str]) -> bool:
        if not cls._table_exists_in_conn(conn, table_name):
            logging.warning(f"Table '{table_name}' is missing. Schema will be recreated.")
            return False
        cursor = conn.execute(f"PRAGMA table_info({table_name})")
        current_columns = {row[1] for row in cursor.fetchall()}
        missing = set(schema) - current_columns
        if missing:
            logging.warning(f"Table '{table_name}' schema is invalid. Missing columns: {missing}.")
            return False
        return True

    def _initialize_schema_if_needed(self, _retry: bool = True) -> None:
        """
        Ensures the database file and schema are valid.

        Only invalid tables are recreated; valid blobs survive. If the file itself is not a
        readable database it is deleted and the schema is created from scratch.

        Raises:
            status.LocalStoreInvalidException: If the store cannot be recovered.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()

            if not self._table_is_valid(conn, Table.Meta.value, META_SCHEMA):
                conn.execute(f"DROP TABLE IF EXISTS {Table.Meta.value}")
                cols_sql = ", ".join(f'"{name}" {typedef}' for name, typedef in META_SCHEMA.items())
                conn.execute(f"CREATE TABLE {Table.Meta.value} ({cols_sql})")
                conn.execute(f"INSERT INTO {Table.Meta.value} (meta_id, last_sync) VALUES (1, NULL)")
                logging.info(f"Table '{Table.Meta.value}' created.")

            if not self._table_is_valid(conn, Table.Blobs.value, BLOB_SCHEMA):
                conn.execute(f"DROP TABLE IF EXISTS {Table.Blobs.value}")
                cols_sql = ", ".join(f'"{name}" {typedef}' for name, typedef in BLOB_SCHEMA.items())
                conn.execute(f"CREATE TABLE {Table.Blobs.value} ({cols_sql})")
                logging.info(f"Table '{Table.Blobs.value}' created.")

            conn.commit()

        except sqlite3.Error as e:
            logging.error(f"SQLite error during schema initialization: {e}. Attempting recovery.", exc_info=True)
            if conn:
                conn.close()
                conn = None
            if not _retry:
                raise status.LocalStoreInvalidException(f"Unrecoverable store schema error: {e}") from e

            self.delete()
            self._initialize_schema_if_needed(_retry=False)
            logging.info("Store schema forcefully recreated after an error and delete.")
        finally:
            if conn:
                conn.close()

    def get(self, key: str) -> Optional[str]:
        """Return the blob stored under ``key``, or None if absent.

        Raises:
            sqlite3.Error: If the read fails.
        """
        conn = self.connection()
        try:
            row = conn.execute(
                f"SELECT value FROM {Table.Blobs.value} WHERE key = ?", (key,)
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        """Replace the blob stored under ``key``.

        Raises:
            TypeError: If value is not a string.
            sqlite3.Error: If the write fails; the previous blob stays readable.
        """
        if not isinstance(value, str):
            raise TypeError(f'Blob for "{key}" must be a string, got {type(value)}.')

        conn = self.connection()
        try:
            with conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO {Table.Blobs.value} (key, value, written) VALUES (?, ?, ?)",
                    (key, value, now_str())
                )
            logging.debug(f'Stored blob "{key}" ({len(value)} chars).')
        finally:
            conn.close()

    def remove(self, key: str) -> None:
        """Remove the blob stored under ``key``. Missing keys are ignored."""
        conn = self.connection()
        try:
            with conn:
                conn.execute(f"DELETE FROM {Table.Blobs.value} WHERE key = ?", (key,))
            logging.debug(f'Removed blob "{key}".')
        finally:
            conn.close()

    def keys(self) -> List[str]:
        """Return all stored keys, sorted."""
        conn = self.connection()
        try:
            rows = conn.execute(f"SELECT key FROM {Table.Blobs.value} ORDER BY key").fetchall()
            return [row[0] for row in rows]
        finally:
            conn.close()

    def clear(self) -> None:
        """Remove every blob and the last sync stamp."""
        conn = self.connection()
        try:
            with conn:
                conn.execute(f"DELETE FROM {Table.Blobs.value}")
                conn.execute(f"UPDATE {Table.Meta.value} SET last_sync=NULL WHERE meta_id=1")
            logging.info('Local store cleared.')
        finally:
            conn.close()

    def stamp(self, when: Optional[str] = None) -> str:
        """Record ``when`` (default: now) as the last successful sync and return it."""
        when = when or now_str()
        conn = self.connection()
        try:
            with conn:
                conn.execute(f"UPDATE {Table.Meta.value} SET last_sync=? WHERE meta_id=1", (when,))
            return when
        finally:
            conn.close()

    def get_stamp(self) -> Optional[datetime.datetime]:
        """Retrieve the last synchronization timestamp.

        Returns:
            Optional[datetime.datetime]: Last sync datetime object, or None if not set/invalid.
        """
        conn = self.connection()
        try:
            row = conn.execute(f"SELECT last_sync FROM {Table.Meta.value} WHERE meta_id=1").fetchone()
            if row and row[0]:
                try:
                    return datetime.datetime.fromisoformat(row[0])
                except ValueError:
                    logging.warning(f'Invalid last sync date format in DB: {row[0]}.')
            return None
        finally:
            conn.close()

    def delete(self) -> None:
        """Delete the store database file, retrying on failure.

        Raises:
            status.LocalStoreInvalidException: If unable to remove the database file after retries.
        """
        if not self.path.exists():
            logging.debug('No store database found to delete.')
            return

        max_attempts = 5
        attempt = 0
        wait_seconds = 0.2

        while attempt < max_attempts:
            attempt += 1
            try:
                self.path.unlink()
                logging.info(f'Store database removed: {self.path}')
                return
            except OSError as ex:
                logging.error(f'Error removing store DB (attempt {attempt}/{max_attempts}): {ex}')
                if attempt < max_attempts:
                    time.sleep(wait_seconds)
                    wait_seconds *= 1.5
                else:
                    raise status.LocalStoreInvalidException(
                        f'Failed to remove store DB {self.path} after {max_attempts} attempts: {ex}'
                    ) from ex
