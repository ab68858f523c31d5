"""
Tests for ExpenseSync.core.service (remote gateway and Firestore value codec).

No network access: the Firestore client is replaced with mocks.

Run:
    python -m unittest tests.test_service
"""
import datetime
import socket
import ssl
import unittest
from unittest.mock import MagicMock, patch

import httplib2
from googleapiclient.errors import HttpError

from ExpenseSync.core import service
from ExpenseSync.core.auth import AuthExpiredError
from ExpenseSync.core.records import Collection, Operation, PendingChange, Record
from ExpenseSync.core.service import (
    FirestoreGateway,
    classify_error,
    decode_document,
    decode_value,
    encode_fields,
    encode_value,
    quote_field_path,
)
from ExpenseSync.settings import lib
from ExpenseSync.status import status
from tests.base import BaseAsyncTestCase

REMOTE = {'project_id': 'demo', 'database': '(default)', 'timeout': 10, 'num_retries': 2}
ROOT = 'projects/demo/databases/(default)'


def http_error(code: int) -> HttpError:
    return HttpError(httplib2.Response({'status': code}), b'{"error": {"message": "simulated"}}')


class ValueCodecTests(unittest.TestCase):
    def test_scalars(self):
        self.assertEqual(encode_value(None), {'nullValue': None})
        self.assertEqual(encode_value(True), {'booleanValue': True})
        self.assertEqual(encode_value(500), {'integerValue': '500'})
        self.assertEqual(encode_value(12.5), {'doubleValue': 12.5})
        self.assertEqual(encode_value('food'), {'stringValue': 'food'})

    def test_bool_is_not_integer(self):
        self.assertEqual(encode_value(False), {'booleanValue': False})
        self.assertIs(decode_value(encode_value(False)), False)

    def test_nested_values(self):
        value = {'tags': ['a', 1], 'split': {'me': 0.5}, 'empty': []}
        encoded = encode_value(value)
        self.assertEqual(encoded['mapValue']['fields']['empty'], {'arrayValue': {}})
        self.assertEqual(decode_value(encoded), value)

    def test_datetime_becomes_utc_timestamp(self):
        dt = datetime.datetime(2025, 3, 1, 12, 0, tzinfo=datetime.timezone(datetime.timedelta(hours=5, minutes=30)))
        self.assertEqual(encode_value(dt), {'timestampValue': '2025-03-01T06:30:00Z'})

    def test_non_finite_doubles(self):
        self.assertEqual(encode_value(float('inf')), {'doubleValue': 'Infinity'})
        self.assertEqual(decode_value({'doubleValue': '-Infinity'}), float('-inf'))

    def test_unsupported_value_raises(self):
        with self.assertRaises(TypeError):
            encode_value(object())
        with self.assertRaises(TypeError):
            encode_fields({1: 'x'})
        with self.assertRaises(ValueError):
            decode_value({'mysteryValue': 1})

    def test_decode_integer_and_timestamp(self):
        self.assertEqual(decode_value({'integerValue': '-42'}), -42)
        self.assertEqual(decode_value({'timestampValue': '2025-01-01T00:00:00Z'}), '2025-01-01T00:00:00Z')

    def test_decode_document_uses_name_for_id(self):
        doc = {
            'name': f'{ROOT}/documents/users/u1/transactions/1718000000000',
            'fields': {
                'id': {'stringValue': 'stale'},
                'amount': {'integerValue': '500'},
                'updatedAt': {'timestampValue': '2025-01-01T00:00:00.123Z'},
            }
        }
        record = decode_document(Collection.Transactions, doc)
        self.assertEqual(record.id, '1718000000000')
        self.assertEqual(record.payload, {'amount': 500})
        self.assertEqual(record.modified, '2025-01-01T00:00:00.123Z')

    def test_quote_field_path(self):
        self.assertEqual(quote_field_path('amount'), 'amount')
        self.assertEqual(quote_field_path('my field'), '`my field`')
        self.assertEqual(quote_field_path('a`b'), '`a\\`b`')


class ClassifyErrorTests(unittest.TestCase):
    def assertClass(self, ex, expected, retriable):
        result = classify_error(ex)
        self.assertIsInstance(result, expected)
        self.assertEqual(result.retriable, retriable)

    def test_permanent_http_errors(self):
        self.assertClass(http_error(400), status.RemotePayloadInvalidException, False)
        self.assertClass(http_error(403), status.RemotePermissionException, False)
        self.assertClass(http_error(412), status.RemotePayloadInvalidException, False)

    def test_transient_http_errors(self):
        for code in (401, 408, 409, 429, 500, 503):
            with self.subTest(code=code):
                self.assertClass(http_error(code), status.RemoteUnavailableException, True)

    def test_not_found_means_not_configured(self):
        self.assertClass(http_error(404), status.RemoteNotConfiguredException, True)

    def test_network_errors_are_transient(self):
        for ex in (socket.timeout('t'), ssl.SSLError('s'), httplib2.ServerNotFoundError('n'),
                   ConnectionResetError('c'), AuthExpiredError('a')):
            with self.subTest(ex=type(ex).__name__):
                self.assertClass(ex, status.RemoteUnavailableException, True)

    def test_encoding_errors_are_permanent(self):
        self.assertClass(TypeError('bad'), status.RemotePayloadInvalidException, False)

    def test_remote_exceptions_pass_through(self):
        ex = status.RemotePermissionException('x')
        self.assertIs(classify_error(ex), ex)


class FirestoreGatewayTests(BaseAsyncTestCase):
    def setUp(self) -> None:
        super().setUp()
        lib.settings.set_section('remote', dict(REMOTE))

        self.client = MagicMock(name='firestore')
        self.documents = self.client.projects.return_value.databases.return_value.documents.return_value
        self.gateway = FirestoreGateway(credentials=lambda: 'creds')
        self.gateway.get_service = MagicMock(return_value=self.client)
        self.executed = []
        self.responses = {}
        self.gateway._execute = self._execute

    def _execute(self, request, config):
        self.executed.append(request)
        self.assertEqual(config, REMOTE)
        return self.responses.get(id(request), {})

    def test_paths(self):
        self.assertEqual(FirestoreGateway.user_path(REMOTE, 'u1'), f'{ROOT}/documents/users/u1')
        self.assertEqual(
            FirestoreGateway.document_path(REMOTE, 'u1', Collection.Goals, 'g1'),
            f'{ROOT}/documents/users/u1/goals/g1'
        )
        with self.assertRaises(ValueError):
            FirestoreGateway.document_path(REMOTE, 'u1', Collection.Goals, 'a/b')

    def test_upsert_write_merges_fields_and_sets_server_time(self):
        change = PendingChange(
            Operation.Create, Collection.Transactions, 't1',
            {'id': 't1', 'amount': 500, 'category': 'food', 'updatedAt': 'client-time'}
        )
        write = FirestoreGateway.to_write(REMOTE, 'u1', change)

        self.assertEqual(write['update']['name'], f'{ROOT}/documents/users/u1/transactions/t1')
        self.assertEqual(set(write['update']['fields']), {'id', 'amount', 'category'})
        self.assertEqual(sorted(write['updateMask']['fieldPaths']), ['amount', 'category', 'id'])
        self.assertEqual(
            write['updateTransforms'],
            [{'fieldPath': 'updatedAt', 'setToServerValue': 'REQUEST_TIME'}]
        )

    def test_delete_write(self):
        change = PendingChange(Operation.Delete, Collection.Budgets, 'b1')
        self.assertEqual(
            FirestoreGateway.to_write(REMOTE, 'u1', change),
            {'delete': f'{ROOT}/documents/users/u1/budgets/b1'}
        )

    async def test_commit_batch_sends_one_ordered_commit(self):
        changes = [
            PendingChange(Operation.Update, Collection.Transactions, '1', {'id': '1', 'amount': 'A'}),
            PendingChange(Operation.Delete, Collection.Transactions, '1'),
        ]
        await self.gateway.commit_batch('u1', changes)

        self.documents.commit.assert_called_once()
        kwargs = self.documents.commit.call_args.kwargs
        self.assertEqual(kwargs['database'], ROOT)
        writes = kwargs['body']['writes']
        self.assertIn('update', writes[0])
        self.assertEqual(writes[1], {'delete': f'{ROOT}/documents/users/u1/transactions/1'})
        self.assertEqual(len(self.executed), 1)

    async def test_large_batch_is_one_commit(self):
        changes = [PendingChange(Operation.Delete, Collection.Goals, str(i)) for i in range(501)]
        await self.gateway.commit_batch('u1', changes)
        self.documents.commit.assert_called_once()
        writes = self.documents.commit.call_args.kwargs['body']['writes']
        self.assertEqual(len(writes), 501)
        self.assertEqual(writes[-1], {'delete': f'{ROOT}/documents/users/u1/goals/500'})
        self.assertEqual(len(self.executed), 1)

    async def test_empty_batch_is_noop(self):
        await self.gateway.commit_batch('u1', [])
        self.documents.commit.assert_not_called()

    async def test_upsert_and_delete(self):
        await self.gateway.upsert('u1', Collection.Goals, Record('g1', Collection.Goals, {'saved': 0}))
        await self.gateway.delete('u1', Collection.Goals, 'g1')
        writes = [c.kwargs['body']['writes'] for c in self.documents.commit.call_args_list]
        self.assertIn('update', writes[0][0])
        self.assertIn('delete', writes[1][0])

    async def test_upsert_rejects_mismatched_collection(self):
        with self.assertRaises(ValueError):
            await self.gateway.upsert('u1', Collection.Budgets, Record('g1', Collection.Goals, {'saved': 0}))
        self.documents.commit.assert_not_called()

    async def test_pull_all(self):
        def doc(collection, record_id, **fields):
            return {
                'name': f'{ROOT}/documents/users/u1/{collection}/{record_id}',
                'fields': encode_fields(fields),
            }

        self.responses[id(self.documents.runQuery.return_value)] = [
            {'document': doc('transactions', '2', date='2025-02-01', amount=2)},
            {'document': doc('transactions', '1', date='2025-01-01', amount=1)},
            {'readTime': '2025-02-02T00:00:00Z'},
        ]
        page_two = MagicMock(name='page two')
        self.responses[id(page_two)] = {'documents': [doc('budgets', 'b2', limit=2)]}

        requests = []

        def list_response(**kwargs):
            request = MagicMock(name=kwargs['collectionId'])
            requests.append(request)
            if kwargs['collectionId'] == 'budgets':
                self.responses[id(request)] = {'documents': [doc('budgets', 'b1', limit=1)], 'nextPageToken': 'p2'}
            return request

        self.documents.list.side_effect = list_response
        self.documents.list_next.side_effect = lambda req, resp: page_two if resp.get('nextPageToken') else None

        result = await self.gateway.pull_all('u1')

        self.assertEqual([r.id for r in result[Collection.Transactions]], ['2', '1'])
        self.assertEqual([r.id for r in result[Collection.Budgets]], ['b1', 'b2'])
        self.assertEqual(result[Collection.Goals], [])
        self.assertEqual(result[Collection.Recurring], [])

        query = self.documents.runQuery.call_args.kwargs
        self.assertEqual(query['parent'], f'{ROOT}/documents/users/u1')
        self.assertEqual(
            query['body']['structuredQuery']['orderBy'],
            [{'field': {'fieldPath': 'date'}, 'direction': 'DESCENDING'}]
        )

    async def test_failures_are_classified(self):
        self.gateway._execute = MagicMock(side_effect=socket.timeout('timed out'))
        with self.assertRaises(status.RemoteUnavailableException):
            await self.gateway.upsert('u1', Collection.Goals, Record('g1', Collection.Goals, {}))

        self.gateway._execute = MagicMock(side_effect=http_error(403))
        with self.assertRaises(status.RemotePermissionException):
            await self.gateway.delete('u1', Collection.Goals, 'g1')

    async def test_unencodable_payload_is_permanent(self):
        record = Record('g1', Collection.Goals, {'when': object()})
        with self.assertRaises(status.RemotePayloadInvalidException):
            await self.gateway.upsert('u1', Collection.Goals, record)

    async def test_missing_project_is_not_configured(self):
        lib.settings.set_section('remote', dict(REMOTE, project_id=''))
        with self.assertRaises(status.RemoteNotConfiguredException):
            await self.gateway.pull_all('u1')

    async def test_missing_credentials_are_transient(self):
        def no_creds():
            raise AuthExpiredError('sign in')

        gateway = FirestoreGateway(credentials=no_creds)
        with patch.object(service, 'build') as build:
            with self.assertRaises(status.RemoteUnavailableException):
                await gateway.pull_all('u1')
            build.assert_not_called()


class FirestoreClientTests(BaseAsyncTestCase):
    def setUp(self) -> None:
        super().setUp()
        lib.settings.set_section('remote', dict(REMOTE))

    def test_service_is_cached_until_remote_settings_change(self):
        gateway = FirestoreGateway(credentials=lambda: 'creds')
        with patch.object(service, 'build') as build:
            first = gateway.get_service()
            self.assertIs(gateway.get_service(), first)
            build.assert_called_once_with('firestore', 'v1', credentials='creds', cache_discovery=False)

            lib.settings.set_section('remote', dict(REMOTE, timeout=20))
            gateway.get_service()
            self.assertEqual(build.call_count, 2)

    def test_execute_uses_authorized_http_with_timeout(self):
        gateway = FirestoreGateway(credentials=lambda: 'creds')
        request = MagicMock()
        request.execute.return_value = {'ok': True}

        with patch.object(service.google_auth_httplib2, 'AuthorizedHttp') as authorized, \
                patch.object(service.httplib2, 'Http') as http:
            result = gateway._execute(request, REMOTE)

        http.assert_called_once_with(timeout=10)
        authorized.assert_called_once_with('creds', http=http.return_value)
        request.execute.assert_called_once_with(http=authorized.return_value, num_retries=2)
        self.assertEqual(result, {'ok': True})
        authorized.return_value.close.assert_called_once()

    def test_execute_closes_http_on_failure(self):
        gateway = FirestoreGateway(credentials=lambda: 'creds')
        request = MagicMock()
        request.execute.side_effect = socket.timeout('t')

        with patch.object(service.google_auth_httplib2, 'AuthorizedHttp') as authorized, \
                patch.object(service.httplib2, 'Http'):
            with self.assertRaises(socket.timeout):
                gateway._execute(request, REMOTE)

        authorized.return_value.close.assert_called_once()
