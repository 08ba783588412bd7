"""
Board document storage backend (SQLite).

Documents are stored as JSON rows keyed by (collection, doc_id). Every
commit bumps a clock kept in the database, so optimistic transactions
also detect writes made by other processes sharing the file. Snapshot
listeners are only notified of commits made through this process.

sqlite3 calls block, so reads and commits run in worker threads
(asyncio.to_thread), each on its own connection. Only the first snapshot
delivered by subscribe() is read on the calling thread.
"""
import asyncio
import json
import logging
import sqlite3
from pathlib import Path
from typing import Optional

from .docstore import (
    DocumentSnapshot,
    DocumentStore,
    MemoryDocumentStore,
    StoreError,
    TransactionConflict,
)
from .schema import utc_now

logger = logging.getLogger(__name__)


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection in WAL mode."""
    conn = sqlite3.connect(db_path, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


class SqliteDocumentStore(DocumentStore):
    """SQLite-backed document store."""

    def __init__(self, db_path: Optional[str] = None):
        super().__init__()
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "foard" / "foard.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    def _init_schema(self):
        """Create tables if they don't exist."""
        conn = _connect(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    data TEXT NOT NULL,  -- JSON object
                    version INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (collection, doc_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS collections (
                    name TEXT PRIMARY KEY,
                    version INTEGER NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS system_state (
                    key TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)
            conn.execute("INSERT OR IGNORE INTO system_state (key, value) VALUES ('clock', 0)")
        except sqlite3.Error as e:
            raise StoreError(f"Cannot initialize {self.db_path}: {e}") from e
        finally:
            conn.close()

    def _read(self, collection, doc_id):
        conn = _connect(self.db_path)
        try:
            return self._read_row(conn, collection, doc_id)
        except sqlite3.Error as e:
            raise StoreError(f"Error reading {collection}/{doc_id}: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _read_row(conn, collection, doc_id):
        row = conn.execute(
            "SELECT data, version FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        ).fetchone()
        if row is None:
            return None, 0
        return json.loads(row["data"]), row["version"]

    @staticmethod
    def _collection_version(conn, collection) -> int:
        row = conn.execute("SELECT version FROM collections WHERE name = ?", (collection,)).fetchone()
        return row["version"] if row else 0

    def _scan(self, collection):
        conn = _connect(self.db_path)
        try:
            # One read transaction so the version matches the rows
            conn.execute("BEGIN")
            rows = conn.execute(
                "SELECT doc_id, data, version FROM documents WHERE collection = ?",
                (collection,),
            ).fetchall()
            version = self._collection_version(conn, collection)
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StoreError(f"Error scanning {collection}: {e}") from e
        finally:
            conn.close()
        docs = [
            DocumentSnapshot(collection, row["doc_id"], json.loads(row["data"]), row["version"])
            for row in rows
        ]
        return docs, version

    def _apply(self, writes, read_docs, read_collections):
        conn = _connect(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for (collection, doc_id), version in read_docs.items():
                    if self._read_row(conn, collection, doc_id)[1] != version:
                        raise TransactionConflict(f"{collection}/{doc_id} changed since it was read")
                for collection, version in read_collections.items():
                    if self._collection_version(conn, collection) != version:
                        raise TransactionConflict(f"{collection} changed since it was read")

                version = conn.execute("SELECT value FROM system_state WHERE key = 'clock'").fetchone()[0] + 1
                now = utc_now().isoformat()
                touched = set()
                for write in writes:
                    current, _ = self._read_row(conn, write.collection, write.doc_id)
                    data = write.apply_to(current)
                    if data is None:
                        conn.execute(
                            "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                            (write.collection, write.doc_id),
                        )
                    else:
                        conn.execute(
                            """INSERT OR REPLACE INTO documents
                               (collection, doc_id, data, version, updated_at)
                               VALUES (?, ?, ?, ?, ?)""",
                            (write.collection, write.doc_id, json.dumps(data), version, now),
                        )
                    touched.add(write.collection)

                for collection in touched:
                    conn.execute(
                        "INSERT OR REPLACE INTO collections (name, version) VALUES (?, ?)",
                        (collection, version),
                    )
                conn.execute("UPDATE system_state SET value = ? WHERE key = 'clock'", (version,))
                conn.execute("COMMIT")
                return touched
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise StoreError(f"Error committing to {self.db_path}: {e}") from e
        finally:
            conn.close()


def store_from_config(cfg) -> DocumentStore:
    """Build the document store named by the config's `store` setting."""
    if cfg.store == "memory":
        logger.info("Using in-memory document store")
        return MemoryDocumentStore()
    logger.info(f"Using SQLite document store at {cfg.db_path}")
    return SqliteDocumentStore(cfg.db_path)
