"""Record and pending-change types shared by the store, queue, gateway and orchestrator.

A :class:`Record` is serialized flat, the way the mobile client stores it::

    {'id': '1718000000000', 'amount': 500, 'category': 'food', 'updatedAt': '...'}

``id`` and ``updatedAt`` are reserved; everything else is the collection-specific payload.
"""
import datetime
import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

ID_KEY = 'id'
MODIFIED_KEY = 'updatedAt'
RESERVED_KEYS = (ID_KEY, MODIFIED_KEY)


class Collection(enum.StrEnum):
    """The four tracked record collections. Values double as local store keys and remote paths."""
    Transactions = 'transactions'
    Budgets = 'budgets'
    Goals = 'goals'
    Recurring = 'recurring'


class Operation(enum.StrEnum):
    """Kinds of queued mutations."""
    Create = 'add'
    Update = 'update'
    Delete = 'delete'

    @property
    def is_upsert(self) -> bool:
        return self is not Operation.Delete


_id_lock = threading.Lock()
_last_id: int = 0


def new_id() -> str:
    """Return a new client-side record id.

    Ids are millisecond timestamps, bumped by one when two ids are requested within the
    same millisecond, so ids handed out by a process are strictly increasing and never reused.

    Returns:
        str: The new id.
    """
    global _last_id
    with _id_lock:
        candidate = time.time_ns() // 1_000_000
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
        return str(candidate)


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def coerce_collection(value: Any) -> Collection:
    """Return ``value`` as a :class:`Collection`.

    Raises:
        ValueError: If the value does not name a tracked collection.
    """
    if isinstance(value, Collection):
        return value
    try:
        return Collection(value)
    except ValueError:
        raise ValueError(f'Unknown collection "{value}", must be one of {[c.value for c in Collection]}') from None


@dataclass
class Record:
    """One financial entity with a client-assigned identifier."""
    id: str
    collection: Collection
    payload: Dict[str, Any] = field(default_factory=dict)
    modified: Optional[str] = None

    def __post_init__(self) -> None:
        self.collection = coerce_collection(self.collection)
        for key in RESERVED_KEYS:
            if key in self.payload:
                raise ValueError(f'Payload may not contain the reserved key "{key}".')

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {ID_KEY: self.id}
        data.update(self.payload)
        if self.modified is not None:
            data[MODIFIED_KEY] = self.modified
        return data

    @classmethod
    def from_dict(cls, collection: Any, data: Dict[str, Any]) -> 'Record':
        """Build a record from its flat serialized form.

        Raises:
            ValueError: If ``data`` has no id.
        """
        payload = dict(data)
        record_id = payload.pop(ID_KEY, None)
        if record_id is None or record_id == '':
            raise ValueError(f'Record data has no "{ID_KEY}": {data!r}')
        modified = payload.pop(MODIFIED_KEY, None)
        return cls(str(record_id), coerce_collection(collection), payload, modified)

    def merged(self, updates: Dict[str, Any], modified: Optional[str] = None) -> 'Record':
        """Return a copy with ``updates`` shallow-merged into the payload."""
        payload = dict(self.payload)
        payload.update({k: v for k, v in updates.items() if k not in RESERVED_KEYS})
        return Record(self.id, self.collection, payload, modified or self.modified)


@dataclass(frozen=True)
class PendingChange:
    """A mutation awaiting confirmation by the remote store.

    ``payload`` is the full record snapshot (flat form) for upserts and None for deletes.
    """
    operation: Operation
    collection: Collection
    record_id: str
    payload: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, 'operation', Operation(self.operation))
        object.__setattr__(self, 'collection', coerce_collection(self.collection))
        if self.operation.is_upsert and self.payload is None:
            raise ValueError(f'A "{self.operation.value}" change needs a payload snapshot.')
        if not self.operation.is_upsert and self.payload is not None:
            raise ValueError('A "delete" change carries no payload.')

    @classmethod
    def for_record(cls, operation: Operation, record: Record) -> 'PendingChange':
        if operation is Operation.Delete:
            return cls(operation, record.collection, record.id)
        return cls(operation, record.collection, record.id, record.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'type': self.operation.value,
            'collection': self.collection.value,
            'id': self.record_id,
        }
        if self.payload is not None:
            data['data'] = self.payload
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingChange':
        return cls(
            Operation(data['type']),
            coerce_collection(data['collection']),
            str(data['id']),
            data.get('data'),
        )

    def record(self) -> Optional[Record]:
        """The upserted record, or None for deletes."""
        if self.payload is None:
            return None
        return Record.from_dict(self.collection, self.payload)
