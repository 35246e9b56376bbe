"""
SQLite collection store.

Stores every collection in one SQLite database file. Documents are kept as
extended-JSON payloads (bson.json_util, canonical mode) so ObjectIds,
datetimes and int/float distinctions survive a round trip. Filtering,
updates and projections run in Python through the shared helpers in
base.py.

Invariants:
    - (collection, doc_id) is unique; doc_id is the canonical JSON of ``_id``
    - Writes run inside BEGIN IMMEDIATE transactions
    - Insertion order (rowid) is the natural result order
    - Datetimes round-trip with millisecond precision, as UTC-aware values

How to change safely:
    - Schema changes must bump SCHEMA_VERSION
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timezone
from pathlib import Path
from typing import Any

from bson import ObjectId, json_util

from .base import (
    DuplicateKeyError,
    StoreError,
    apply_projection,
    apply_update,
    match_filter,
    select_documents,
)

logger = logging.getLogger(__name__)

JSON_OPTIONS = json_util.JSONOptions(
    json_mode=json_util.JSONMode.CANONICAL,
    tz_aware=True,
    tzinfo=timezone.utc,
)


def encode(doc: Any) -> str:
    return json_util.dumps(doc, json_options=JSON_OPTIONS, sort_keys=False)


def decode(payload: str) -> Any:
    return json_util.loads(payload, json_options=JSON_OPTIONS)


class SqliteCollectionStore:
    """SQLite implementation of CollectionStore.

    Thread safety:
        A connection is created per operation. Writes are serialized by an
        asyncio lock and SQLite's own locking (WAL mode).

    Example:
        >>> store = SqliteCollectionStore("/var/lib/polydoc")
        >>> await store.insert_one("batches", {"events": []})
    """

    SCHEMA_VERSION = 1
    DB_FILENAME = "polydoc.db"

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for the database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.DB_FILENAME

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, creating the schema on first use."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._initialized:
                self._create_schema(conn)
                self._initialized = True

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_collection
                ON documents(collection);
        """)
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (self.SCHEMA_VERSION, int(time.time() * 1000)),
        )

    def _load(self, conn: sqlite3.Connection, collection: str) -> list[tuple[str, dict[str, Any]]]:
        cursor = conn.execute(
            "SELECT doc_id, payload_json FROM documents WHERE collection = ? ORDER BY rowid",
            (collection,),
        )
        return [(row["doc_id"], decode(row["payload_json"])) for row in cursor.fetchall()]

    async def insert_one(self, collection: str, doc: dict[str, Any]) -> Any:
        stored = dict(doc)
        stored.setdefault("_id", ObjectId())
        doc_id = encode(stored["_id"])
        now = int(time.time() * 1000)

        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.execute(
                        """
                        INSERT INTO documents
                        (collection, doc_id, payload_json, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (collection, doc_id, encode(stored), now, now),
                    )
                    conn.execute("COMMIT")
                except sqlite3.IntegrityError as e:
                    conn.execute("ROLLBACK")
                    raise DuplicateKeyError(collection, stored["_id"]) from e
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        logger.debug(f"Inserted {stored['_id']} into '{collection}'")
        return stored["_id"]

    async def find(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,
        projection: dict[str, Any] | None = None,
        *,
        sort: Any = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            docs = [doc for _, doc in self._load(conn, collection)]
        return select_documents(docs, filter, projection, sort, limit, skip)

    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,
        projection: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        found = await self.find(collection, filter, projection, limit=1)
        return found[0] if found else None

    async def update_one(
        self, collection: str, filter: dict[str, Any], update: dict[str, Any]
    ) -> int:
        result = await self.find_one_and_update(collection, filter, update)
        return 0 if result is None else 1

    async def find_one_and_update(
        self,
        collection: str,
        filter: dict[str, Any],
        update: dict[str, Any],
        *,
        projection: dict[str, Any] | None = None,
        return_new: bool = True,
    ) -> dict[str, Any] | None:
        now = int(time.time() * 1000)

        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for doc_id, doc in self._load(conn, collection):
                        if not match_filter(doc, filter):
                            continue
                        before = decode(encode(doc))
                        apply_update(doc, update, filter)
                        if encode(doc["_id"]) != doc_id:
                            raise StoreError("Performing an update on the path '_id' is not allowed")
                        conn.execute(
                            """
                            UPDATE documents SET payload_json = ?, updated_at = ?
                            WHERE collection = ? AND doc_id = ?
                            """,
                            (encode(doc), now, collection, doc_id),
                        )
                        conn.execute("COMMIT")
                        logger.debug(f"Updated {doc['_id']} in '{collection}'")
                        return apply_projection(doc if return_new else before, projection)

                    conn.execute("ROLLBACK")
                    return None

                except Exception:
                    conn.execute("ROLLBACK")
                    raise

    async def replace_one(
        self, collection: str, filter: dict[str, Any], doc: dict[str, Any]
    ) -> int:
        now = int(time.time() * 1000)

        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for doc_id, existing in self._load(conn, collection):
                        if not match_filter(existing, filter):
                            continue
                        replacement = dict(doc)
                        replacement["_id"] = existing["_id"]
                        conn.execute(
                            """
                            UPDATE documents SET payload_json = ?, updated_at = ?
                            WHERE collection = ? AND doc_id = ?
                            """,
                            (encode(replacement), now, collection, doc_id),
                        )
                        conn.execute("COMMIT")
                        return 1

                    conn.execute("ROLLBACK")
                    return 0

                except Exception:
                    conn.execute("ROLLBACK")
                    raise

    async def delete_many(self, collection: str, filter: dict[str, Any] | None = None) -> int:
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    doomed = [
                        (collection, doc_id)
                        for doc_id, doc in self._load(conn, collection)
                        if match_filter(doc, filter)
                    ]
                    conn.executemany(
                        "DELETE FROM documents WHERE collection = ? AND doc_id = ?", doomed
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        logger.debug(f"Deleted {len(doomed)} documents from '{collection}'")
        return len(doomed)

    async def count(self, collection: str, filter: dict[str, Any] | None = None) -> int:
        with self._get_connection() as conn:
            if not filter:
                cursor = conn.execute(
                    "SELECT COUNT(*) AS n FROM documents WHERE collection = ?", (collection,)
                )
                return cursor.fetchone()["n"]
            return sum(1 for _, doc in self._load(conn, collection) if match_filter(doc, filter))

    async def drop(self, collection: str) -> None:
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM documents WHERE collection = ?", (collection,))

    async def close(self) -> None:
        """Connections are per-operation; nothing is held open."""
        logger.debug(f"Closed SQLite store at {self.db_path}")
