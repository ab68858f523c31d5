"""Remote sync gateway: the only part of the engine that performs network I/O.

:class:`RemoteGateway` is the contract the orchestrator depends on. :class:`FirestoreGateway`
implements it over the Cloud Firestore REST API using ``googleapiclient``. Documents live at::

    users/{user_id}/{collection}/{record_id}

Every write is an upsert that merges the record's top-level fields and stamps ``updatedAt``
with the server's request time. The client clock is never used for ordering, so the last
commit to reach the store wins.
"""

import abc
import asyncio
import datetime
import logging
import math
import re
import socket
import ssl
import threading
from typing import Any, Callable, Dict, List, Optional

import google.auth.exceptions
import google_auth_httplib2
import httplib2
from PySide6 import QtCore
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .auth import auth_manager, AuthExpiredError
from .records import Collection, Operation, PendingChange, Record, coerce_collection, ID_KEY, MODIFIED_KEY
from .signals import signals
from ..status import status

USERS_COLLECTION: str = 'users'
ORDER_FIELD: Dict[Collection, str] = {
    Collection.Transactions: 'date',
}

PAGE_SIZE: int = 300

TRANSIENT_HTTP_STATUS = {401, 408, 409, 429}

_SIMPLE_FIELD = re.compile(r'^[A-Za-z_][A-Za-z_0-9]*$')


class RemoteGateway(abc.ABC):
    """Contract for the remote document store.

    Every method raises a :class:`status.RemoteException` subclass on failure.
    """

    @abc.abstractmethod
    async def pull_all(self, user_id: str) -> Dict[Collection, List[Record]]:
        """Return the full remote contents of every collection for ``user_id``."""

    @abc.abstractmethod
    async def upsert(self, user_id: str, collection: Collection, record: Record) -> None:
        """Create or merge ``record``."""

    @abc.abstractmethod
    async def delete(self, user_id: str, collection: Collection, record_id: str) -> None:
        """Delete a record. Deleting a missing record succeeds."""

    @abc.abstractmethod
    async def commit_batch(self, user_id: str, changes: List[PendingChange]) -> None:
        """Apply ``changes`` in order, all or nothing."""


def quote_field_path(name: str) -> str:
    """Return ``name`` as a Firestore field path segment."""
    if _SIMPLE_FIELD.match(name):
        return name
    escaped = name.replace('\\', '\\\\').replace('`', '\\`')
    return f'`{escaped}`'


def encode_value(value: Any) -> Dict[str, Any]:
    """Convert a JSON-compatible Python value to a Firestore ``Value``.

    Raises:
        TypeError: If the value has no Firestore representation.
    """
    if value is None:
        return {'nullValue': None}
    # bool before int, bool is an int subclass
    if isinstance(value, bool):
        return {'booleanValue': value}
    if isinstance(value, int):
        return {'integerValue': str(value)}
    if isinstance(value, float):
        if math.isnan(value):
            return {'doubleValue': 'NaN'}
        if math.isinf(value):
            return {'doubleValue': 'Infinity' if value > 0 else '-Infinity'}
        return {'doubleValue': value}
    if isinstance(value, str):
        return {'stringValue': value}
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return {'timestampValue': value.astimezone(datetime.timezone.utc).isoformat().replace('+00:00', 'Z')}
    if isinstance(value, (list, tuple)):
        if not value:
            return {'arrayValue': {}}
        return {'arrayValue': {'values': [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {'mapValue': {'fields': encode_fields(value)}}
    raise TypeError(f'Cannot store a value of type {type(value).__name__} remotely.')


def encode_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    fields = {}
    for key, value in data.items():
        if not isinstance(key, str):
            raise TypeError(f'Field names must be strings, got {key!r}.')
        fields[key] = encode_value(value)
    return fields


def decode_value(value: Dict[str, Any]) -> Any:
    """Convert a Firestore ``Value`` back to a Python value.

    Timestamps are returned as their RFC 3339 string.

    Raises:
        ValueError: If the value type is not recognized.
    """
    if 'nullValue' in value:
        return None
    if 'booleanValue' in value:
        return bool(value['booleanValue'])
    if 'integerValue' in value:
        return int(value['integerValue'])
    if 'doubleValue' in value:
        return float(value['doubleValue'])
    if 'stringValue' in value:
        return value['stringValue']
    if 'timestampValue' in value:
        return value['timestampValue']
    if 'arrayValue' in value:
        return [decode_value(v) for v in value['arrayValue'].get('values', [])]
    if 'mapValue' in value:
        return decode_fields(value['mapValue'].get('fields', {}))
    if 'referenceValue' in value:
        return value['referenceValue']
    if 'bytesValue' in value:
        return value['bytesValue']
    if 'geoPointValue' in value:
        return dict(value['geoPointValue'])
    raise ValueError(f'Unknown Firestore value: {value!r}')


def decode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: decode_value(v) for k, v in fields.items()}


def decode_document(collection: Collection, document: Dict[str, Any]) -> Record:
    """Build a :class:`Record` from a Firestore document.

    The record id is the last segment of the document name.
    """
    data = decode_fields(document.get('fields', {}))
    data[ID_KEY] = document['name'].rsplit('/', 1)[-1]
    return Record.from_dict(collection, data)


def classify_error(ex: Exception) -> status.RemoteException:
    """Translate a failed request into a transient or permanent remote exception.

    Args:
        ex: The exception raised while talking to the remote store.

    Returns:
        The remote exception to raise in its place.
    """
    if isinstance(ex, status.RemoteException):
        return ex

    if isinstance(ex, HttpError):
        code: Optional[int] = ex.resp.status if ex.resp is not None else None
        reason = getattr(ex, 'reason', None) or str(ex)
        if code == 400:
            return status.RemotePayloadInvalidException(f'HTTP 400: {reason}')
        elif code == 403:
            return status.RemotePermissionException(f'HTTP 403: {reason}')
        elif code == 404:
            return status.RemoteNotConfiguredException(f'HTTP 404, check the project and database: {reason}')
        elif code in TRANSIENT_HTTP_STATUS or (code is not None and code >= 500):
            return status.RemoteUnavailableException(f'HTTP {code}: {reason}')
        elif code is not None and 400 <= code < 500:
            return status.RemotePayloadInvalidException(f'HTTP {code}: {reason}')
        return status.RemoteUnavailableException(f'HTTP {code}: {reason}')

    if isinstance(ex, (TypeError, ValueError)):
        return status.RemotePayloadInvalidException(str(ex))
    if isinstance(ex, (socket.timeout, TimeoutError)):
        return status.RemoteUnavailableException(f'Timeout: {ex}')
    if isinstance(ex, ssl.SSLError):
        return status.RemoteUnavailableException(f'SSL error: {ex}')
    if isinstance(ex, (httplib2.HttpLib2Error, OSError)):
        return status.RemoteUnavailableException(f'Network error: {ex}')
    if isinstance(ex, (google.auth.exceptions.TransportError, google.auth.exceptions.RefreshError)):
        return status.RemoteUnavailableException(f'Could not authorize the request: {ex}')
    if isinstance(ex, (AuthExpiredError, status.CredsNotFoundException,
                       status.CredsInvalidException, status.AuthenticationException)):
        return status.RemoteUnavailableException(f'Not signed in to the remote store: {ex}')
    return status.RemoteUnavailableException(f'{type(ex).__name__}: {ex}')


class FirestoreGateway(RemoteGateway):
    """Cloud Firestore implementation of :class:`RemoteGateway`.

    Blocking requests run on worker threads. Each request gets its own authorized
    ``httplib2`` connection because ``httplib2.Http`` is not thread-safe.

    Args:
        credentials: Callable returning valid credentials. Defaults to the shared auth manager.
    """

    def __init__(self, credentials: Optional[Callable[[], Any]] = None) -> None:
        self._credentials = credentials or auth_manager.get_valid_credentials
        self._service: Any = None
        self._lock = threading.Lock()

        signals.configSectionChanged.connect(self._on_config_section_changed)

    @QtCore.Slot(str)
    def _on_config_section_changed(self, section: str) -> None:
        if section == 'remote':
            logging.debug('Clearing cached Firestore client due to remote settings change')
            self.clear_service()

    def clear_service(self) -> None:
        """Clears the cached Firestore API client."""
        with self._lock:
            if self._service is not None:
                self._service.close()
            self._service = None

    @staticmethod
    def config() -> Dict[str, Any]:
        """Return the remote settings section.

        Raises:
            status.RemoteNotConfiguredException: If no project id is set.
        """
        from ..settings import lib
        config = lib.settings.get_section('remote')
        if not config.get('project_id'):
            raise status.RemoteNotConfiguredException
        return config

    def get_service(self) -> Any:
        """Builds (or returns cached) Firestore service client."""
        creds = self._credentials()
        with self._lock:
            if self._service is None:
                self._service = build('firestore', 'v1', credentials=creds, cache_discovery=False)
                logging.debug('Firestore service client created successfully.')
            return self._service

    def _execute(self, request: Any, config: Dict[str, Any]) -> Dict[str, Any]:
        http = google_auth_httplib2.AuthorizedHttp(
            self._credentials(),
            http=httplib2.Http(timeout=config['timeout'])
        )
        try:
            return request.execute(http=http, num_retries=config['num_retries'])
        finally:
            http.close()

    @staticmethod
    def database_path(config: Dict[str, Any]) -> str:
        return f'projects/{config["project_id"]}/databases/{config["database"]}'

    @classmethod
    def user_path(cls, config: Dict[str, Any], user_id: str) -> str:
        _check_segment(user_id)
        return f'{cls.database_path(config)}/documents/{USERS_COLLECTION}/{user_id}'

    @classmethod
    def document_path(cls, config: Dict[str, Any], user_id: str, collection: Collection, record_id: str) -> str:
        _check_segment(record_id)
        return f'{cls.user_path(config, user_id)}/{Collection(collection).value}/{record_id}'

    @classmethod
    def to_write(cls, config: Dict[str, Any], user_id: str, change: PendingChange) -> Dict[str, Any]:
        """Build the Firestore ``Write`` for one change.

        Upserts update only the payload's top-level fields and set ``updatedAt`` server side.
        """
        name = cls.document_path(config, user_id, change.collection, change.record_id)
        if change.operation is Operation.Delete:
            return {'delete': name}

        data = {k: v for k, v in change.payload.items() if k != MODIFIED_KEY}
        data[ID_KEY] = change.record_id
        fields = encode_fields(data)
        return {
            'update': {'name': name, 'fields': fields},
            'updateMask': {'fieldPaths': [quote_field_path(k) for k in fields]},
            'updateTransforms': [
                {'fieldPath': MODIFIED_KEY, 'setToServerValue': 'REQUEST_TIME'},
            ],
        }

    def _commit(self, user_id: str, changes: List[PendingChange]) -> None:
        config = self.config()
        writes = [self.to_write(config, user_id, c) for c in changes]
        request = self.get_service().projects().databases().documents().commit(
            database=self.database_path(config),
            body={'writes': writes}
        )
        self._execute(request, config)
        logging.debug(f'Committed {len(writes)} write(s) for user "{user_id}".')

    def _fetch_collection(self, service: Any, config: Dict[str, Any], user_id: str,
                          collection: Collection) -> List[Record]:
        parent = self.user_path(config, user_id)
        documents = service.projects().databases().documents()
        records: List[Record] = []

        if collection in ORDER_FIELD:
            request = documents.runQuery(
                parent=parent,
                body={
                    'structuredQuery': {
                        'from': [{'collectionId': collection.value}],
                        'orderBy': [{
                            'field': {'fieldPath': ORDER_FIELD[collection]},
                            'direction': 'DESCENDING',
                        }],
                    }
                }
            )
            # runQuery answers with a list; entries without a document only carry a read time
            for entry in self._execute(request, config):
                if 'document' in entry:
                    records.append(decode_document(collection, entry['document']))
            return records

        request = documents.list(parent=parent, collectionId=collection.value, pageSize=PAGE_SIZE)
        while request is not None:
            response = self._execute(request, config)
            for document in response.get('documents', []):
                records.append(decode_document(collection, document))
            request = documents.list_next(request, response)
        return records

    def _pull_all(self, user_id: str) -> Dict[Collection, List[Record]]:
        config = self.config()
        service = self.get_service()
        result = {}
        for collection in Collection:
            result[collection] = self._fetch_collection(service, config, user_id, collection)
            logging.debug(f'Fetched {len(result[collection])} {collection.value} for user "{user_id}".')
        return result

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except status.RemoteException:
            raise
        except Exception as ex:
            raise classify_error(ex) from ex

    async def pull_all(self, user_id: str) -> Dict[Collection, List[Record]]:
        return await self._run(self._pull_all, user_id)

    async def upsert(self, user_id: str, collection: Collection, record: Record) -> None:
        if coerce_collection(collection) is not record.collection:
            raise ValueError(f'Record {record.id} belongs to "{record.collection.value}", not "{collection}".')
        change = PendingChange.for_record(Operation.Update, record)
        await self._run(self._commit, user_id, [change])

    async def delete(self, user_id: str, collection: Collection, record_id: str) -> None:
        change = PendingChange(Operation.Delete, collection, record_id)
        await self._run(self._commit, user_id, [change])

    async def commit_batch(self, user_id: str, changes: List[PendingChange]) -> None:
        """Commit ``changes`` in order.

        Every write goes into a single ``commit`` request, which Firestore applies atomically.
        """
        if not changes:
            return
        await self._run(self._commit, user_id, list(changes))


def _check_segment(value: str) -> None:
    if not value or '/' in value:
        raise ValueError(f'Invalid document path segment: {value!r}')
