"""
Document store interface and the in-memory backend.

Collections are slash-separated paths (e.g. "boards/b1/tasks") holding
JSON-like documents addressed by id. Writes go through atomic batches or
optimistic transactions; listeners get a fresh ordered snapshot after
every commit that touches their collection.

Concurrency model:
  - every commit takes a new version from a store-wide clock and stamps
    it on the documents it writes and on their collections
  - a transaction remembers the versions it read and fails to commit
    if any of them moved; run_transaction() then re-runs the body
"""
import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the store cannot complete a read or write."""
    pass


class DocumentNotFound(StoreError):
    """Raised when an update targets a document that does not exist."""
    pass


class TransactionConflict(StoreError):
    """Raised when a transaction's reads were invalidated by another commit."""
    pass


@dataclass(frozen=True)
class Query:
    """Equality filters plus an optional sort field."""

    collection: str
    where: Tuple[Tuple[str, Any], ...] = ()
    order_by: Optional[str] = None
    descending: bool = False

    @classmethod
    def on(cls, collection: str, order_by: Optional[str] = None, descending: bool = False, **where) -> "Query":
        return cls(collection, tuple(sorted(where.items())), order_by, descending)

    def matches(self, data: Dict[str, Any]) -> bool:
        # Documents without the sort field never show up in a sorted query
        if self.order_by and self.order_by not in data:
            return False
        return all(data.get(name) == value for name, value in self.where)

    def apply(self, docs: List["DocumentSnapshot"]) -> List["DocumentSnapshot"]:
        hits = [d for d in docs if self.matches(d.data)]
        if not self.order_by:
            return sorted(hits, key=lambda d: d.id)
        return sorted(hits, key=lambda d: (d.data[self.order_by], d.id), reverse=self.descending)


@dataclass(frozen=True)
class DocumentSnapshot:
    collection: str
    id: str
    data: Optional[Dict[str, Any]]
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.data is not None


@dataclass
class Write:
    """One buffered mutation."""
    op: str                      # "set" | "update" | "delete"
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False

    def apply_to(self, current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Return the document after this write (None = deleted)."""
        if self.op == "delete":
            return None
        if self.op == "update":
            if current is None:
                raise DocumentNotFound(f"No document {self.collection}/{self.doc_id} to update")
            return {**current, **copy.deepcopy(self.data)}
        base = current if (self.merge and current is not None) else {}
        return {**base, **copy.deepcopy(self.data)}


class WriteBatch:
    """Mutations committed together, all or nothing."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._writes: List[Write] = []

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        self._writes.append(Write("set", collection, doc_id, dict(data), merge))
        return self

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        self._writes.append(Write("update", collection, doc_id, dict(fields)))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._writes.append(Write("delete", collection, doc_id))
        return self

    def __len__(self) -> int:
        return len(self._writes)

    async def commit(self) -> None:
        if self._writes:
            await self._store._commit(self._writes)


class Transaction(WriteBatch):
    """
    A batch that also reads.

    Reads go straight to the store and record the versions seen; writes
    are buffered until the transaction body returns.
    """

    def __init__(self, store: "DocumentStore"):
        super().__init__(store)
        self._read_docs: Dict[Tuple[str, str], int] = {}
        self._read_collections: Dict[str, int] = {}

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        data, version = await self._store._run(self._store._read, collection, doc_id)
        self._read_docs.setdefault((collection, doc_id), version)
        return DocumentSnapshot(collection, doc_id, data, version)

    async def query(self, query: Query) -> List[DocumentSnapshot]:
        docs, version = await self._store._run(self._store._scan, query.collection)
        self._read_collections.setdefault(query.collection, version)
        return query.apply(docs)

    async def commit(self) -> None:
        await self._store._commit(self._writes, self._read_docs, self._read_collections)


Listener = Tuple[Query, Callable[[List[DocumentSnapshot]], None], Optional[Callable[[Exception], None]]]


class DocumentStore:
    """
    Base class for document stores.

    Backends implement three primitives:
        _read(collection, doc_id)  → (data | None, version)
        _scan(collection)          → (snapshots, collection version)
        _apply(writes, docs, colls) → names of collections written
    """

    def __init__(self):
        self._listeners: Dict[int, Listener] = {}
        self._delivered: Dict[int, int] = {}
        self._next_listener = 0

    # ── Backend primitives ───────────────────────────────────────────

    def _read(self, collection: str, doc_id: str) -> Tuple[Optional[Dict[str, Any]], int]:
        raise NotImplementedError

    def _scan(self, collection: str) -> Tuple[List[DocumentSnapshot], int]:
        raise NotImplementedError

    def _apply(
        self,
        writes: List[Write],
        read_docs: Dict[Tuple[str, str], int],
        read_collections: Dict[str, int],
    ) -> Set[str]:
        raise NotImplementedError

    # ── Public API ───────────────────────────────────────────────────

    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        data, version = await self._run(self._read, collection, doc_id)
        return DocumentSnapshot(collection, doc_id, data, version)

    async def query(self, query: Query) -> List[DocumentSnapshot]:
        docs, _ = await self._run(self._scan, query.collection)
        return query.apply(docs)

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        await self.batch().set(collection, doc_id, data, merge=merge).commit()

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        await self.batch().update(collection, doc_id, fields).commit()

    async def delete(self, collection: str, doc_id: str) -> None:
        await self.batch().delete(collection, doc_id).commit()

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[Any]],
        max_attempts: int = 5,
    ) -> Any:
        """
        Run `fn(txn)` and commit its writes.

        If another commit invalidated what `fn` read, the body is run again
        on fresh data, up to `max_attempts` times. `fn` must not have side
        effects outside the transaction.
        """
        for attempt in range(1, max_attempts + 1):
            txn = Transaction(self)
            result = await fn(txn)
            try:
                await txn.commit()
                return result
            except TransactionConflict:
                logger.info(f"Transaction conflict, retrying (attempt {attempt}/{max_attempts})")
        raise TransactionConflict(f"Transaction aborted after {max_attempts} attempts")

    def subscribe(
        self,
        query: Query,
        on_snapshot: Callable[[List[DocumentSnapshot]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Callable[[], None]:
        """
        Register a listener for `query`.

        The current result is delivered right away and again after each
        commit touching the collection. Returns an unsubscribe callable.
        """
        key = self._next_listener
        self._next_listener += 1
        self._listeners[key] = (query, on_snapshot, on_error)
        self._deliver(key)

        def unsubscribe() -> None:
            self._listeners.pop(key, None)
            self._delivered.pop(key, None)

        return unsubscribe

    # ── Internals ────────────────────────────────────────────────────

    async def _run(self, fn: Callable[..., Any], *args) -> Any:
        """Call a backend primitive; every call is a suspension point."""
        await asyncio.sleep(0)
        return fn(*args)

    async def _commit(
        self,
        writes: List[Write],
        read_docs: Optional[Dict[Tuple[str, str], int]] = None,
        read_collections: Optional[Dict[str, int]] = None,
    ) -> None:
        touched = await self._run(self._apply, writes, read_docs or {}, read_collections or {})
        for key, (query, _, _) in list(self._listeners.items()):
            if query.collection not in touched:
                continue
            try:
                docs, version = await self._run(self._scan, query.collection)
            except StoreError as e:
                self._notify_error(key, e)
                continue
            self._notify(key, docs, version)

    def _deliver(self, key: int) -> None:
        listener = self._listeners.get(key)
        if listener is None:
            return
        try:
            docs, version = self._scan(listener[0].collection)
        except StoreError as e:
            self._notify_error(key, e)
            return
        self._notify(key, docs, version)

    def _notify(self, key: int, docs: List[DocumentSnapshot], version: int) -> None:
        listener = self._listeners.get(key)
        # Scans can finish out of order; never hand a listener an older snapshot
        if listener is None or version < self._delivered.get(key, -1):
            return
        self._delivered[key] = version
        query, on_snapshot, _ = listener
        try:
            on_snapshot(query.apply(docs))
        except Exception:
            logger.exception(f"Snapshot listener on {query.collection} failed")

    def _notify_error(self, key: int, error: StoreError) -> None:
        listener = self._listeners.get(key)
        if listener is None:
            return
        query, _, on_error = listener
        if on_error:
            on_error(error)
        else:
            logger.error(f"Listener on {query.collection} lost a snapshot: {error}")


class MemoryDocumentStore(DocumentStore):
    """Process-local store; used for personal boards and in tests."""

    def __init__(self):
        super().__init__()
        self._docs: Dict[str, Dict[str, Tuple[Dict[str, Any], int]]] = {}
        self._collection_versions: Dict[str, int] = {}
        self._clock = 0

    def _read(self, collection, doc_id):
        entry = self._docs.get(collection, {}).get(doc_id)
        if entry is None:
            return None, 0
        data, version = entry
        return copy.deepcopy(data), version

    def _scan(self, collection):
        docs = [
            DocumentSnapshot(collection, doc_id, copy.deepcopy(data), version)
            for doc_id, (data, version) in self._docs.get(collection, {}).items()
        ]
        return docs, self._collection_versions.get(collection, 0)

    def _apply(self, writes, read_docs, read_collections):
        for (collection, doc_id), version in read_docs.items():
            if self._read(collection, doc_id)[1] != version:
                raise TransactionConflict(f"{collection}/{doc_id} changed since it was read")
        for collection, version in read_collections.items():
            if self._collection_versions.get(collection, 0) != version:
                raise TransactionConflict(f"{collection} changed since it was read")

        version = self._clock + 1
        staged: Dict[str, Dict[str, Tuple[Dict[str, Any], int]]] = {}
        for write in writes:
            docs = staged.setdefault(write.collection, dict(self._docs.get(write.collection, {})))
            current = docs.get(write.doc_id)
            data = write.apply_to(current[0] if current else None)
            if data is None:
                docs.pop(write.doc_id, None)
            else:
                docs[write.doc_id] = (data, version)

        # Nothing is visible until every write in the batch applied cleanly
        self._clock = version
        self._docs.update(staged)
        for collection in staged:
            self._collection_versions[collection] = version
        return set(staged)
