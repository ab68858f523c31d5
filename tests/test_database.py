"""
Tests for ExpenseSync.core.database (SQLite blob store).

Run:
    python -m unittest tests.test_database
"""
import datetime
import os
import shutil
import sqlite3
import tempfile
import unittest
from unittest.mock import patch

from ExpenseSync.core.database import BlobStore, Table
from ExpenseSync.status import status


class BlobStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp_dir = tempfile.mkdtemp(prefix='expensesync_db_')
        self.path = os.path.join(self.tmp_dir, 'db', 'store.db')
        self.store = BlobStore(self.path)

    def tearDown(self) -> None:
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def test_schema_created(self):
        conn = sqlite3.connect(self.path)
        try:
            names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        finally:
            conn.close()
        self.assertIn(Table.Meta.value, names)
        self.assertIn(Table.Blobs.value, names)

    def test_get_missing_returns_none(self):
        self.assertIsNone(self.store.get('transactions'))

    def test_set_replaces_value(self):
        self.store.set('k', '[1]')
        self.store.set('k', '[2]')
        self.assertEqual(self.store.get('k'), '[2]')
        self.assertEqual(self.store.keys(), ['k'])

    def test_set_rejects_non_string(self):
        with self.assertRaises(TypeError):
            self.store.set('k', [1, 2])

    def test_failed_write_keeps_previous_value(self):
        self.store.set('k', '"old"')

        real_connection = self.store.connection

        def failing_connection():
            conn = real_connection()
            conn.execute("CREATE TEMP TRIGGER fail BEFORE INSERT ON blobs BEGIN SELECT RAISE(ABORT, 'disk full'); END")
            return conn

        with patch.object(self.store, 'connection', side_effect=failing_connection):
            with self.assertRaises(sqlite3.Error):
                self.store.set('k', '"new"')

        self.assertEqual(self.store.get('k'), '"old"')

    def test_remove_and_keys(self):
        self.store.set('b', '1')
        self.store.set('a', '2')
        self.assertEqual(self.store.keys(), ['a', 'b'])
        self.store.remove('a')
        self.store.remove('missing')
        self.assertEqual(self.store.keys(), ['b'])

    def test_data_survives_reopen(self):
        self.store.set('pendingSync', '[{"id": "1"}]')
        reopened = BlobStore(self.path)
        self.assertEqual(reopened.get('pendingSync'), '[{"id": "1"}]')

    def test_stamp_round_trip(self):
        self.assertIsNone(self.store.get_stamp())
        value = self.store.stamp()
        stamp = self.store.get_stamp()
        self.assertIsInstance(stamp, datetime.datetime)
        self.assertEqual(stamp.isoformat(), value)

    def test_stamp_uses_record_timestamps(self):
        from ExpenseSync.core import database, records
        self.assertIs(database.now_str, records.now_str)
        stamp = datetime.datetime.fromisoformat(self.store.stamp())
        self.assertEqual(stamp.utcoffset(), datetime.timedelta(0))

    def test_invalid_stamp_reads_as_none(self):
        self.store.stamp('not-a-date')
        self.assertIsNone(self.store.get_stamp())

    def test_clear_removes_blobs_and_stamp(self):
        self.store.set('k', '1')
        self.store.stamp()
        self.store.clear()
        self.assertEqual(self.store.keys(), [])
        self.assertIsNone(self.store.get_stamp())

    def test_invalid_table_recreated_keeping_other_tables(self):
        self.store.set('k', '1')
        conn = sqlite3.connect(self.path)
        try:
            conn.execute(f'DROP TABLE {Table.Meta.value}')
            conn.execute(f'CREATE TABLE {Table.Meta.value} (meta_id INTEGER PRIMARY KEY)')
            conn.commit()
        finally:
            conn.close()

        reopened = BlobStore(self.path)
        self.assertEqual(reopened.get('k'), '1')
        self.assertIsNone(reopened.get_stamp())

    def test_corrupt_file_is_recreated(self):
        with open(self.path, 'wb') as f:
            f.write(b'this is not a database' * 100)

        reopened = BlobStore(self.path)
        self.assertEqual(reopened.keys(), [])
        reopened.set('k', '1')
        self.assertEqual(reopened.get('k'), '1')

    def test_delete_removes_file(self):
        self.store.delete()
        self.assertFalse(os.path.exists(self.path))
        # deleting twice is harmless
        self.store.delete()

    def test_delete_failure_raises_after_retries(self):
        with patch('pathlib.Path.unlink', side_effect=OSError('locked')), patch('time.sleep'):
            with self.assertRaises(status.LocalStoreInvalidException):
                self.store.delete()
