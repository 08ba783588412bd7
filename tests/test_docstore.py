"""
Tests for the document stores (in-memory and SQLite).

Covers:
    - get / set / delete, merge writes
    - query filters, ordering, exclusion of unsorted documents
    - batch atomicity
    - optimistic transactions: conflict detection and retry
    - snapshot listeners
"""
import asyncio
import threading

import pytest

from pkg.board.docstore import DocumentNotFound, Query, TransactionConflict
from pkg.board.store import SqliteDocumentStore, store_from_config
from pkg.board.config import BoardConfig
from pkg.board.docstore import MemoryDocumentStore


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Basic reads and writes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_get_missing(store):
    snap = asyncio.run(store.get("things", "nope"))
    assert not snap.exists
    assert snap.data is None


def test_set_get_delete(store):
    async def run():
        await store.set("things", "a", {"name": "A", "n": 1})
        first = await store.get("things", "a")
        await store.delete("things", "a")
        second = await store.get("things", "a")
        return first, second

    first, second = asyncio.run(run())
    assert first.exists
    assert first.data == {"name": "A", "n": 1}
    assert not second.exists


def test_set_merge(store):
    async def run():
        await store.set("things", "a", {"name": "A", "n": 1})
        await store.set("things", "a", {"n": 2}, merge=True)
        merged = (await store.get("things", "a")).data
        await store.set("things", "a", {"n": 3})
        replaced = (await store.get("things", "a")).data
        return merged, replaced

    merged, replaced = asyncio.run(run())
    assert merged == {"name": "A", "n": 2}
    assert replaced == {"n": 3}


def test_new_ids_unique(store):
    assert len({store.new_id() for _ in range(50)}) == 50


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Queries
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_query_order_and_filters(store):
    async def run():
        batch = store.batch()
        batch.set("tasks", "c", {"order": 2, "kind": "x"})
        batch.set("tasks", "a", {"order": 1, "kind": "x"})
        batch.set("tasks", "b", {"order": 1, "kind": "y"})
        batch.set("tasks", "z", {"kind": "x"})
        await batch.commit()
        ordered = await store.query(Query("tasks", order_by="order"))
        filtered = await store.query(Query.on("tasks", kind="x"))
        desc = await store.query(Query.on("tasks", order_by="order", descending=True, kind="x"))
        return ordered, filtered, desc

    ordered, filtered, desc = asyncio.run(run())
    # Ties broken by id; documents without the sort field left out
    assert [s.id for s in ordered] == ["a", "b", "c"]
    assert [s.id for s in filtered] == ["a", "c", "z"]
    assert [s.id for s in desc] == ["c", "a"]


def test_collections_are_separate(store):
    async def run():
        await store.set("boards/1/tasks", "t", {"order": 0})
        await store.set("boards/2/tasks", "t", {"order": 0})
        return await store.query(Query("boards/1/tasks"))

    assert [s.collection for s in asyncio.run(run())] == ["boards/1/tasks"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Batches
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_batch_update(store):
    async def run():
        await store.set("tasks", "a", {"title": "A", "order": 0})
        await store.batch().update("tasks", "a", {"order": 5}).commit()
        return (await store.get("tasks", "a")).data

    assert asyncio.run(run()) == {"title": "A", "order": 5}


def test_batch_is_all_or_nothing(store):
    async def run():
        await store.set("tasks", "a", {"order": 0})
        batch = store.batch()
        batch.set("tasks", "b", {"order": 1})
        batch.update("tasks", "a", {"order": 9})
        batch.update("tasks", "missing", {"order": 2})
        with pytest.raises(DocumentNotFound):
            await batch.commit()
        return await store.get("tasks", "a"), await store.get("tasks", "b")

    a, b = asyncio.run(run())
    assert a.data == {"order": 0}
    assert not b.exists


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Transactions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_transaction_commits(store):
    async def body(txn):
        snaps = await txn.query(Query("counters"))
        txn.set("counters", "c", {"value": len(snaps) + 1})
        return "ok"

    async def run():
        result = await store.run_transaction(body)
        return result, await store.get("counters", "c")

    result, snap = asyncio.run(run())
    assert result == "ok"
    assert snap.data == {"value": 1}


def test_transaction_retried_after_conflict(store):
    attempts = []

    async def body(txn):
        snap = await txn.get("counters", "c")
        value = snap.data["value"] if snap.exists else 0
        if not attempts:
            # Someone else commits between our read and our commit
            await store.set("counters", "c", {"value": 10})
        attempts.append(value)
        txn.set("counters", "c", {"value": value + 1})

    async def run():
        await store.run_transaction(body)
        return await store.get("counters", "c")

    snap = asyncio.run(run())
    assert attempts == [0, 10]
    assert snap.data == {"value": 11}


def test_transaction_collection_conflict(store):
    attempts = []

    async def body(txn):
        snaps = await txn.query(Query("tasks"))
        if not attempts:
            await store.set("tasks", "other", {"order": 0})
        attempts.append(len(snaps))
        txn.set("tasks", "mine", {"order": len(snaps)})

    async def run():
        await store.run_transaction(body)
        return await store.get("tasks", "mine")

    snap = asyncio.run(run())
    assert attempts == [0, 1]
    assert snap.data == {"order": 1}


def test_transaction_gives_up(store):
    async def body(txn):
        await txn.get("counters", "c")
        await store.set("counters", "c", {"value": store.new_id()})
        txn.set("counters", "c", {"value": "mine"})

    with pytest.raises(TransactionConflict):
        asyncio.run(store.run_transaction(body, max_attempts=2))


def test_concurrent_transactions_serialize(store):
    async def increment(txn):
        snap = await txn.get("counters", "c")
        value = snap.data["value"] if snap.exists else 0
        txn.set("counters", "c", {"value": value + 1})

    async def run():
        await asyncio.gather(*[store.run_transaction(increment, max_attempts=10) for _ in range(4)])
        return await store.get("counters", "c")

    assert asyncio.run(run()).data == {"value": 4}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Listeners
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_subscribe_delivers_immediately_and_after_commits(store):
    seen = []

    async def run():
        await store.set("tasks", "a", {"order": 0})
        unsubscribe = store.subscribe(Query("tasks", order_by="order"), lambda snaps: seen.append([s.id for s in snaps]))
        await store.set("tasks", "b", {"order": 1})
        await store.set("other", "x", {"order": 0})
        unsubscribe()
        await store.set("tasks", "c", {"order": 2})

    asyncio.run(run())
    assert seen == [["a"], ["a", "b"]]


def test_failing_listener_does_not_block_others(store):
    seen = []

    def broken(snaps):
        raise RuntimeError("boom")

    async def run():
        store.subscribe(Query("tasks"), broken)
        store.subscribe(Query("tasks"), lambda snaps: seen.append(len(snaps)))
        await store.set("tasks", "a", {"order": 0})

    asyncio.run(run())
    assert seen == [0, 1]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# SQLite specifics
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_sqlite_persists_across_instances(tmp_path):
    path = str(tmp_path / "nested" / "foard.db")

    async def run():
        await SqliteDocumentStore(path).set("tasks", "a", {"title": "kept"})
        return await SqliteDocumentStore(path).get("tasks", "a")

    assert asyncio.run(run()).data == {"title": "kept"}


def test_sqlite_detects_writes_from_other_instances(tmp_path):
    path = str(tmp_path / "foard.db")
    mine, theirs = SqliteDocumentStore(path), SqliteDocumentStore(path)
    attempts = []

    async def body(txn):
        await txn.query(Query("tasks"))
        if not attempts:
            await theirs.set("tasks", "x", {"order": 0})
        attempts.append(1)
        txn.set("tasks", "y", {"order": 1})

    asyncio.run(mine.run_transaction(body))
    assert len(attempts) == 2


class ThreadRecordingStore(SqliteDocumentStore):
    """Remembers which thread ran each backend call."""

    def __init__(self, db_path):
        self.threads = []
        super().__init__(db_path)

    def _read(self, collection, doc_id):
        self.threads.append(threading.get_ident())
        return super()._read(collection, doc_id)

    def _scan(self, collection):
        self.threads.append(threading.get_ident())
        return super()._scan(collection)

    def _apply(self, writes, read_docs, read_collections):
        self.threads.append(threading.get_ident())
        return super()._apply(writes, read_docs, read_collections)


def test_sqlite_calls_run_off_the_event_loop(tmp_path):
    store = ThreadRecordingStore(str(tmp_path / "foard.db"))
    seen = []
    store.subscribe(Query("tasks"), seen.append)
    store.threads.clear()

    async def run():
        await store.set("tasks", "a", {"order": 0})
        await store.get("tasks", "a")
        await store.query(Query("tasks"))
        return threading.get_ident()

    loop_thread = asyncio.run(run())
    assert len(store.threads) == 4  # apply, listener scan, read, scan
    assert loop_thread not in store.threads
    assert [len(s) for s in seen] == [0, 1]


def test_store_from_config(tmp_path):
    assert isinstance(store_from_config(BoardConfig(store="memory")), MemoryDocumentStore)
    sqlite = store_from_config(BoardConfig(db_path=str(tmp_path / "x.db")))
    assert isinstance(sqlite, SqliteDocumentStore)
