"""
In-memory collection store for testing.

This module provides a simple in-memory store backend for:
- Unit tests
- Integration tests
- Local development without a database file

Invariants:
    - All data is lost on process exit
    - Documents are deep-copied on the way in and on the way out
    - Insertion order is the natural result order

How to change safely:
    - Keep behaviour identical to the SQLite store; shared semantics belong
      in base.py
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from typing import Any

from bson import ObjectId

from .base import (
    DuplicateKeyError,
    StoreError,
    apply_projection,
    apply_update,
    match_filter,
    select_documents,
)

logger = logging.getLogger(__name__)


class InMemoryCollectionStore:
    """In-memory implementation of CollectionStore.

    Thread safety:
        Uses an asyncio lock. Safe to use from multiple coroutines.

    Example:
        >>> store = InMemoryCollectionStore()
        >>> doc_id = await store.insert_one("batches", {"events": []})
        >>> await store.count("batches")
        1
    """

    def __init__(self) -> None:
        self._collections: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise StoreError("Store is closed", code="STORE_CLOSED")

    async def insert_one(self, collection: str, doc: dict[str, Any]) -> Any:
        self._check_open()
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", ObjectId())
        async with self._lock:
            docs = self._collections[collection]
            if any(existing["_id"] == stored["_id"] for existing in docs):
                raise DuplicateKeyError(collection, stored["_id"])
            docs.append(stored)
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
        self._check_open()
        async with self._lock:
            return select_documents(
                self._collections.get(collection, []), filter, projection, sort, limit, skip
            )

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
        self._check_open()
        async with self._lock:
            for index, doc in enumerate(self._collections.get(collection, [])):
                if not match_filter(doc, filter):
                    continue
                before = copy.deepcopy(doc)
                updated = copy.deepcopy(doc)
                apply_update(updated, update, filter)
                # only commit once the whole update applied
                self._collections[collection][index] = updated
                logger.debug(f"Updated {doc.get('_id')} in '{collection}'")
                return apply_projection(updated if return_new else before, projection)
        return None

    async def replace_one(
        self, collection: str, filter: dict[str, Any], doc: dict[str, Any]
    ) -> int:
        self._check_open()
        async with self._lock:
            docs = self._collections.get(collection, [])
            for index, existing in enumerate(docs):
                if match_filter(existing, filter):
                    replacement = copy.deepcopy(doc)
                    replacement["_id"] = existing["_id"]
                    docs[index] = replacement
                    return 1
        return 0

    async def delete_many(self, collection: str, filter: dict[str, Any] | None = None) -> int:
        self._check_open()
        async with self._lock:
            docs = self._collections.get(collection, [])
            kept = [doc for doc in docs if not match_filter(doc, filter)]
            deleted = len(docs) - len(kept)
            self._collections[collection] = kept
        logger.debug(f"Deleted {deleted} documents from '{collection}'")
        return deleted

    async def count(self, collection: str, filter: dict[str, Any] | None = None) -> int:
        self._check_open()
        async with self._lock:
            return sum(1 for doc in self._collections.get(collection, []) if match_filter(doc, filter))

    async def drop(self, collection: str) -> None:
        async with self._lock:
            self._collections.pop(collection, None)

    async def close(self) -> None:
        self._closed = True

    # Testing helpers

    def get_all(self, collection: str) -> list[dict[str, Any]]:
        """Get copies of all stored documents (for testing)."""
        return copy.deepcopy(self._collections.get(collection, []))

    def clear(self) -> None:
        """Clear all collections (for testing)."""
        self._collections.clear()
