"""
Document store adapter.

The matching core talks to a transactional document database through the
``DocumentStore`` interface: CRUD on documents grouped in collections, filtered
and ordered queries, snapshot listeners, optimistic transactions and write
batches. ``MemoryDocumentStore`` is the in-process implementation used by the
API process and the test-suite.

Transactions follow the optimistic model of hosted document databases: every
document read inside a transaction is recorded with its version; at commit the
versions are re-checked and, if any changed, the transaction function is run
again from scratch (bounded). Errors raised by the transaction function itself
abort immediately and are never retried here.
"""

import asyncio
import itertools
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from config import settings
from utils import get_logger
from .errors import ConnectivityError, NotFoundError, TransactionConflict

logger = get_logger(__name__)

Unsubscribe = Callable[[], None]


class _ServerTimestamp:
    """Sentinel replaced by the commit time when a write is applied."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass
class DocumentSnapshot:
    """Point-in-time copy of a document. ``data`` is None when it does not exist."""
    id: str
    data: Optional[Dict[str, Any]]
    version: Optional[int] = None

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, key: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(key, default)


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "in": lambda a, b: a in b,
}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def matches(self, data: Dict[str, Any]) -> bool:
        # Documents missing the field never match, as in hosted stores.
        if self.field not in data:
            return False
        try:
            return _OPERATORS[self.op](data[self.field], self.value)
        except TypeError:
            return False


@dataclass(frozen=True)
class Query:
    """Immutable query description, built fluently."""
    collection: str
    filters: Tuple[Filter, ...] = ()
    order_field: Optional[str] = None
    descending: bool = False
    limit_count: Optional[int] = None

    def where(self, field_name: str, op: str, value: Any) -> "Query":
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported operator: {op}")
        return replace(self, filters=self.filters + (Filter(field_name, op, value),))

    def order_by(self, field_name: str, descending: bool = False) -> "Query":
        return replace(self, order_field=field_name, descending=descending)

    def limit(self, count: int) -> "Query":
        return replace(self, limit_count=count)

    def matches(self, data: Dict[str, Any]) -> bool:
        return all(f.matches(data) for f in self.filters)

    def apply(self, documents: Iterable[DocumentSnapshot]) -> List[DocumentSnapshot]:
        results = [doc for doc in documents if self.matches(doc.data)]
        if self.order_field is not None:
            results = [doc for doc in results if self.order_field in doc.data]
            results.sort(key=lambda doc: doc.data[self.order_field], reverse=self.descending)
        if self.limit_count is not None:
            results = results[:self.limit_count]
        return results


@dataclass
class _Write:
    kind: str  # "set" | "update" | "delete"
    collection: str
    doc_id: str
    data: Optional[Dict[str, Any]] = None


class _WriteCollector:
    """Shared write-queueing surface of transactions and batches."""

    def __init__(self):
        self._writes: List[_Write] = []

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._writes.append(_Write("set", collection, doc_id, dict(data)))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self._writes.append(_Write("update", collection, doc_id, dict(fields)))

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes.append(_Write("delete", collection, doc_id))

    @property
    def writes(self) -> List[_Write]:
        return list(self._writes)


class Transaction(_WriteCollector):
    """Read-then-write unit of work. All reads must precede all writes."""

    def __init__(self, store: "DocumentStore"):
        super().__init__()
        self._store = store
        self.reads: Dict[Tuple[str, str], Optional[int]] = {}

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        if self._writes:
            raise RuntimeError("Transaction reads must happen before writes")
        snapshot = await self._store.get(collection, doc_id)
        self.reads.setdefault((collection, doc_id), snapshot.version)
        return snapshot


class WriteBatch(_WriteCollector):
    """Blind writes committed atomically."""

    def __init__(self, store: "DocumentStore"):
        super().__init__()
        self._store = store

    async def commit(self) -> None:
        await self._store.commit_writes(self.writes)


TransactionFunction = Callable[[Transaction], Awaitable[Any]]
SnapshotCallback = Callable[[List[DocumentSnapshot]], None]
DocumentCallback = Callable[[DocumentSnapshot], None]
ErrorCallback = Callable[[Exception], None]


class DocumentStore(ABC):
    """Interface of the transactional document database."""

    def collection(self, name: str) -> Query:
        return Query(collection=name)

    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = self.new_id()
        await self.set(collection, doc_id, data)
        return doc_id

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot: ...

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool: ...

    @abstractmethod
    async def query(self, query: Query) -> List[DocumentSnapshot]: ...

    @abstractmethod
    async def count(self, query: Query) -> int: ...

    @abstractmethod
    def subscribe(
        self,
        query: Query,
        callback: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> Unsubscribe: ...

    @abstractmethod
    def watch(self, collection: str, doc_id: str, callback: DocumentCallback) -> Unsubscribe: ...

    @abstractmethod
    async def run_transaction(self, fn: TransactionFunction, max_attempts: Optional[int] = None) -> Any: ...

    @abstractmethod
    async def commit_writes(self, writes: List[_Write]) -> None: ...

    @abstractmethod
    async def ping(self) -> None: ...


@dataclass
class _Listener:
    collection: str
    callback: Callable[[Any], None]
    query: Optional[Query] = None
    doc_id: Optional[str] = None
    on_error: Optional[ErrorCallback] = None
    active: bool = True
    last_key: Any = field(default=None)


class MemoryDocumentStore(DocumentStore):
    """
    In-process document store with optimistic transactions and snapshot listeners.

    Listener callbacks are scheduled on the running event loop, never invoked
    synchronously from the writer, so delivery order relative to other
    operations is not guaranteed.
    """

    def __init__(
        self,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        transaction_max_attempts: Optional[int] = None
    ):
        self._collections: Dict[str, Dict[str, Tuple[Dict[str, Any], int]]] = {}
        self._versions = itertools.count(1)
        self._listeners: List[_Listener] = []
        self._now = now
        self._max_attempts = transaction_max_attempts or settings.transaction_max_attempts
        self.online = True

    # Connectivity

    def set_online(self, online: bool) -> None:
        self.online = online

    def _check_online(self) -> None:
        if not self.online:
            raise ConnectivityError("Document store unreachable")

    async def ping(self) -> None:
        self._check_online()

    # Reads

    def _snapshot(self, collection: str, doc_id: str) -> DocumentSnapshot:
        stored = self._collections.get(collection, {}).get(doc_id)
        if stored is None:
            return DocumentSnapshot(id=doc_id, data=None, version=None)
        data, version = stored
        return DocumentSnapshot(id=doc_id, data=dict(data), version=version)

    def _all(self, collection: str) -> List[DocumentSnapshot]:
        return [
            DocumentSnapshot(id=doc_id, data=dict(data), version=version)
            for doc_id, (data, version) in self._collections.get(collection, {}).items()
        ]

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        self._check_online()
        snapshot = self._snapshot(collection, doc_id)
        # Reads are a suspension point, like a network round-trip.
        await asyncio.sleep(0)
        return snapshot

    async def query(self, query: Query) -> List[DocumentSnapshot]:
        self._check_online()
        results = query.apply(self._all(query.collection))
        await asyncio.sleep(0)
        return results

    async def count(self, query: Query) -> int:
        return len(await self.query(query))

    # Writes

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self.commit_writes([_Write("set", collection, doc_id, dict(data))])

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        await self.commit_writes([_Write("update", collection, doc_id, dict(fields))])

    async def delete(self, collection: str, doc_id: str) -> bool:
        self._check_online()
        existed = doc_id in self._collections.get(collection, {})
        await self.commit_writes([_Write("delete", collection, doc_id)])
        return existed

    async def commit_writes(self, writes: List[_Write]) -> None:
        self._check_online()
        self._apply(writes)

    def _resolve(self, data: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        return {key: (now if value is SERVER_TIMESTAMP else value) for key, value in data.items()}

    def _apply(self, writes: List[_Write]) -> None:
        """Apply all writes or none. Runs without suspending."""
        pending: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}

        def current(collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
            key = (collection, doc_id)
            if key in pending:
                return pending[key]
            stored = self._collections.get(collection, {}).get(doc_id)
            return dict(stored[0]) if stored else None

        now = self._now()
        for write in writes:
            key = (write.collection, write.doc_id)
            if write.kind == "set":
                pending[key] = self._resolve(write.data, now)
            elif write.kind == "update":
                existing = current(write.collection, write.doc_id)
                if existing is None:
                    raise NotFoundError(f"{write.collection}/{write.doc_id} does not exist")
                existing.update(self._resolve(write.data, now))
                pending[key] = existing
            elif write.kind == "delete":
                pending[key] = None
            else:
                raise ValueError(f"Unknown write kind: {write.kind}")

        touched = set()
        for (collection, doc_id), data in pending.items():
            docs = self._collections.setdefault(collection, {})
            if data is None:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = (data, next(self._versions))
            touched.add(collection)

        self._notify(touched)

    # Transactions

    def _versions_unchanged(self, reads: Dict[Tuple[str, str], Optional[int]]) -> bool:
        for (collection, doc_id), version in reads.items():
            if self._snapshot(collection, doc_id).version != version:
                return False
        return True

    async def run_transaction(self, fn: TransactionFunction, max_attempts: Optional[int] = None) -> Any:
        attempts = max_attempts or self._max_attempts
        for attempt in range(1, attempts + 1):
            self._check_online()
            transaction = Transaction(self)
            result = await fn(transaction)

            # Validation and commit happen without a suspension point in between.
            if self._versions_unchanged(transaction.reads):
                self._apply(transaction.writes)
                return result

            logger.debug(f"Transaction conflict, attempt {attempt}/{attempts}")
            await asyncio.sleep(0)

        raise TransactionConflict(f"Transaction did not commit after {attempts} attempts")

    # Listeners

    def subscribe(
        self,
        query: Query,
        callback: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> Unsubscribe:
        self._check_online()
        listener = _Listener(collection=query.collection, callback=callback, query=query, on_error=on_error)
        return self._register(listener)

    def watch(self, collection: str, doc_id: str, callback: DocumentCallback) -> Unsubscribe:
        self._check_online()
        listener = _Listener(collection=collection, callback=callback, doc_id=doc_id)
        return self._register(listener)

    def _register(self, listener: _Listener) -> Unsubscribe:
        self._listeners.append(listener)
        self._schedule(listener)

        def unsubscribe() -> None:
            listener.active = False
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, collections: set) -> None:
        for listener in list(self._listeners):
            if listener.active and listener.collection in collections:
                self._schedule(listener)

    def _schedule(self, listener: _Listener) -> None:
        if listener.query is not None:
            payload = listener.query.apply(self._all(listener.collection))
            key = [(doc.id, doc.version) for doc in payload]
        else:
            payload = self._snapshot(listener.collection, listener.doc_id)
            key = payload.version if payload.exists else ("missing",)

        # Only deliver when the observed result changed (first delivery always).
        if listener.last_key is not None and listener.last_key == key:
            return
        listener.last_key = key

        loop = asyncio.get_running_loop()
        loop.call_soon(self._deliver, listener, payload)

    def _deliver(self, listener: _Listener, payload: Any) -> None:
        if not listener.active:
            return
        try:
            listener.callback(payload)
        except Exception as e:
            logger.opt(exception=e).error(f"Snapshot listener error on {listener.collection}: {e}")
            if listener.on_error:
                listener.on_error(e)

    @property
    def listener_count(self) -> int:
        return len([listener for listener in self._listeners if listener.active])


# Global document store instance
_document_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Get the global document store instance."""
    global _document_store
    if _document_store is None:
        _document_store = MemoryDocumentStore()
    return _document_store
