"""
Base protocol and helpers for collection stores.

This module defines the CollectionStore protocol that every storage backend
implements, the store error types, and the backend-independent pieces every
backend shares:
- match_filter(): evaluate a query filter against a stored document
- apply_update(): apply an update document in place
- apply_projection(): shape a stored document for a projection
- sort_documents(): order query results

Documents are plain dicts keyed by field name. Dotted paths address nested
fields; when a path crosses an array, matching considers every element.

Invariants:
    - Stores never hand out references to their own copies of documents
    - Every stored document has an ``_id``; inserting without one assigns
      a fresh ObjectId
    - Unsupported operators raise UnsupportedOperatorError, never match
      silently

How to change safely:
    - Protocol changes require updating all implementations
    - New filter or update operators go into the shared helpers so that
      every backend behaves the same
"""

from __future__ import annotations

import copy
import logging
from abc import abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from bson import ObjectId

from ..errors import PolyDocError

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

_MISSING = object()


class StoreError(PolyDocError):
    """Base exception for store operations."""

    def __init__(self, message: str, code: str = "STORE_ERROR", **details: Any) -> None:
        super().__init__(message, code=code, details=details)


class DuplicateKeyError(StoreError):
    """A document with the same ``_id`` already exists in the collection."""

    def __init__(self, collection: str, doc_id: Any) -> None:
        super().__init__(
            f"Duplicate _id {doc_id!r} in collection '{collection}'",
            code="DUPLICATE_KEY",
            collection=collection,
        )
        self.doc_id = doc_id


class UnsupportedOperatorError(StoreError):
    """A filter, update or projection uses an operator the store does not know."""

    def __init__(self, operator: str) -> None:
        super().__init__(f"Unsupported operator '{operator}'", code="UNSUPPORTED_OPERATOR")
        self.operator = operator


@runtime_checkable
class CollectionStore(Protocol):
    """Protocol for document collection stores.

    All methods take the collection name first; a store holds any number of
    collections.

    Example:
        >>> store = create_store(get_settings())
        >>> await store.insert_one("batches", {"events": []})
        >>> docs = await store.find("batches", {"events.kind": "Clicked"})
    """

    @abstractmethod
    async def insert_one(self, collection: str, doc: dict[str, Any]) -> Any:
        """Insert a document and return its ``_id``.

        Raises:
            DuplicateKeyError: If the ``_id`` is already taken
        """
        ...

    @abstractmethod
    async def find(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,
        projection: dict[str, Any] | None = None,
        *,
        sort: list[tuple[str, int]] | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        """Return copies of all matching documents, in insertion order unless sorted."""
        ...

    @abstractmethod
    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any] | None = None,
        projection: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Return a copy of the first matching document, or None."""
        ...

    @abstractmethod
    async def update_one(
        self, collection: str, filter: dict[str, Any], update: dict[str, Any]
    ) -> int:
        """Apply ``update`` to the first matching document.

        Returns:
            Number of matched documents (0 or 1)
        """
        ...

    @abstractmethod
    async def find_one_and_update(
        self,
        collection: str,
        filter: dict[str, Any],
        update: dict[str, Any],
        *,
        projection: dict[str, Any] | None = None,
        return_new: bool = True,
    ) -> dict[str, Any] | None:
        """Apply ``update`` to the first matching document and return it.

        Args:
            return_new: Return the document after the update (else before)
        """
        ...

    @abstractmethod
    async def replace_one(
        self, collection: str, filter: dict[str, Any], doc: dict[str, Any]
    ) -> int:
        """Replace the first matching document, keeping its ``_id``."""
        ...

    @abstractmethod
    async def delete_many(self, collection: str, filter: dict[str, Any] | None = None) -> int:
        """Delete every matching document and return how many were deleted."""
        ...

    @abstractmethod
    async def count(self, collection: str, filter: dict[str, Any] | None = None) -> int:
        ...

    @abstractmethod
    async def drop(self, collection: str) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release any resources held by the store."""
        ...


# -- path lookup --------------------------------------------------------------


def lookup_values(value: Any, path: str) -> list[Any]:
    """All values reachable at a dotted path, traversing arrays.

    A numeric segment on an array selects that element. Otherwise arrays
    are traversed element by element. Missing fields contribute nothing.

    Example:
        >>> lookup_values({"events": [{"kind": "a"}, {"kind": "b"}]}, "events.kind")
        ['a', 'b']
    """
    return _lookup(value, path.split(".")) if path else [value]


def _lookup(value: Any, parts: list[str]) -> list[Any]:
    if not parts:
        return [value]
    head, rest = parts[0], parts[1:]
    if isinstance(value, dict):
        if head not in value:
            return []
        return _lookup(value[head], rest)
    if isinstance(value, list):
        if head.isdigit():
            index = int(head)
            return _lookup(value[index], rest) if index < len(value) else []
        found: list[Any] = []
        for item in value:
            if isinstance(item, (dict, list)):
                found.extend(_lookup(item, parts))
        return found
    return []


def get_path(doc: dict[str, Any], path: str, default: Any = None) -> Any:
    """Single value at a dotted path (numeric segments index arrays), no traversal."""
    value: Any = doc
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return default
    return value


# -- filters ------------------------------------------------------------------


def match_filter(doc: dict[str, Any], filter: dict[str, Any] | None) -> bool:
    """Check whether ``doc`` satisfies a query filter.

    Supported: field equality (with array containment), ``$and``, ``$or``,
    ``$nor``, ``$eq``, ``$ne``, ``$in``, ``$nin``, ``$exists``, ``$gt``,
    ``$gte``, ``$lt``, ``$lte`` and ``$elemMatch``.

    Raises:
        UnsupportedOperatorError: On any other ``$`` operator
    """
    if not filter:
        return True
    for key, condition in filter.items():
        if key == "$and":
            if not all(match_filter(doc, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(match_filter(doc, sub) for sub in condition):
                return False
        elif key == "$nor":
            if any(match_filter(doc, sub) for sub in condition):
                return False
        elif key.startswith("$"):
            raise UnsupportedOperatorError(key)
        elif not _match_condition(lookup_values(doc, key), condition):
            return False
    return True


def _is_operator_dict(condition: Any) -> bool:
    return isinstance(condition, dict) and bool(condition) and all(k.startswith("$") for k in condition)


def _match_condition(candidates: list[Any], condition: Any) -> bool:
    if _is_operator_dict(condition):
        return all(_match_operator(candidates, op, arg) for op, arg in condition.items())
    return _matches_equal(candidates, condition)


def _matches_equal(candidates: list[Any], expected: Any) -> bool:
    if not candidates:
        return expected is None
    for candidate in candidates:
        if candidate == expected:
            return True
        if isinstance(candidate, list) and any(item == expected for item in candidate):
            return True
    return False


def _flatten(candidates: list[Any]) -> list[Any]:
    flat: list[Any] = []
    for candidate in candidates:
        if isinstance(candidate, list):
            flat.extend(candidate)
        else:
            flat.append(candidate)
    return flat


def _compare(candidates: list[Any], arg: Any, op: str) -> bool:
    for value in _flatten(candidates):
        if value is None:
            continue
        try:
            if op == "$gt" and value > arg:
                return True
            if op == "$gte" and value >= arg:
                return True
            if op == "$lt" and value < arg:
                return True
            if op == "$lte" and value <= arg:
                return True
        except TypeError:
            continue
    return False


def _match_operator(candidates: list[Any], op: str, arg: Any) -> bool:
    if op == "$eq":
        return _matches_equal(candidates, arg)
    if op == "$ne":
        return not _matches_equal(candidates, arg)
    if op == "$in":
        return any(_matches_equal(candidates, expected) for expected in arg)
    if op == "$nin":
        return not any(_matches_equal(candidates, expected) for expected in arg)
    if op == "$exists":
        return bool(candidates) == bool(arg)
    if op in ("$gt", "$gte", "$lt", "$lte"):
        return _compare(candidates, arg, op)
    if op == "$elemMatch":
        for candidate in candidates:
            if isinstance(candidate, list) and any(_element_matches(item, arg) for item in candidate):
                return True
        return False
    raise UnsupportedOperatorError(op)


def _element_matches(item: Any, condition: dict[str, Any]) -> bool:
    if _is_operator_dict(condition):
        return _match_condition([item], condition)
    return isinstance(item, dict) and match_filter(item, condition)


# -- updates ------------------------------------------------------------------


UPDATE_OPERATORS = ("$set", "$unset", "$inc", "$push", "$addToSet", "$pull")


def apply_update(
    doc: dict[str, Any], update: dict[str, Any], filter: dict[str, Any] | None = None
) -> None:
    """Apply an update document to ``doc`` in place.

    Supported operators: ``$set``, ``$unset``, ``$inc``, ``$push`` and
    ``$addToSet`` (both with ``$each``) and ``$pull``. Numeric path
    segments index arrays; ``$`` resolves to the first array element
    matched by ``filter``; ``$[]`` applies to every element.

    Args:
        doc: Stored document (modified)
        update: Update document
        filter: Filter that selected ``doc`` (for the positional operator)

    Raises:
        UnsupportedOperatorError: On an unknown update operator
        StoreError: If a path cannot be updated
    """
    for op, fields in update.items():
        if op not in UPDATE_OPERATORS:
            raise UnsupportedOperatorError(op)
        for path, value in fields.items():
            if path == "_id" and op != "$set":
                raise StoreError("Performing an update on the path '_id' is not allowed")
            parts = _resolve_positional(doc, path, filter or {})
            if op == "$set":
                _walk(doc, parts, lambda c, k, v=value: _assign(c, k, copy.deepcopy(v)))
            elif op == "$unset":
                _walk(doc, parts, _remove, create=False)
            elif op == "$inc":
                _walk(doc, parts, lambda c, k, v=value: _assign(c, k, (_get(c, k) or 0) + v))
            elif op in ("$push", "$addToSet"):
                items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                unique = op == "$addToSet"
                _walk(doc, parts, lambda c, k, i=items, u=unique: _push(c, k, i, u, path))
            else:
                _walk(doc, parts, lambda c, k, v=value: _pull(c, k, v), create=False)


def _resolve_positional(doc: dict[str, Any], path: str, filter: dict[str, Any]) -> list[str]:
    parts = path.split(".")
    if "$" not in parts:
        return parts
    position = parts.index("$")
    prefix = ".".join(parts[:position])
    array = get_path(doc, prefix)
    if not isinstance(array, list):
        raise StoreError(f"The positional operator did not find the match needed from the query (path '{path}')")

    conditions: dict[str, Any] = {}
    whole: list[Any] = []
    for key, condition in filter.items():
        if key == prefix:
            whole.append(condition)
        elif key.startswith(f"{prefix}."):
            conditions[key[len(prefix) + 1 :]] = condition

    for index, item in enumerate(array):
        if conditions and not (isinstance(item, dict) and match_filter(item, conditions)):
            continue
        if not all(_whole_matches(item, condition) for condition in whole):
            continue
        if conditions or whole:
            return [*parts[:position], str(index), *parts[position + 1 :]]
    raise StoreError(f"The positional operator did not find the match needed from the query (path '{path}')")


def _whole_matches(item: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and "$elemMatch" in condition:
        return _element_matches(item, condition["$elemMatch"])
    if _is_operator_dict(condition):
        return _match_condition([item], condition)
    return item == condition


def _walk(container: Any, parts: list[str], fn: Any, *, create: bool = True) -> None:
    head, rest = parts[0], parts[1:]
    if head == "$[]":
        if isinstance(container, list):
            for index in range(len(container)):
                if rest:
                    _walk(container[index], rest, fn, create=create)
                else:
                    fn(container, index)
        return

    if isinstance(container, list):
        if not head.isdigit():
            raise StoreError(f"Cannot create field '{head}' in array element")
        key: Any = int(head)
    elif isinstance(container, dict):
        key = head
    else:
        raise StoreError(f"Cannot create field '{head}' in non-document value {container!r}")

    if not rest:
        fn(container, key)
        return

    child = _get(container, key)
    if not isinstance(child, (dict, list)):
        if not create:
            return
        child = {}
        _assign(container, key, child)
    _walk(child, rest, fn, create=create)


def _get(container: Any, key: Any) -> Any:
    if isinstance(container, list):
        return container[key] if key < len(container) else None
    return container.get(key)


def _assign(container: Any, key: Any, value: Any) -> None:
    if isinstance(container, list):
        while len(container) <= key:
            container.append(None)
    container[key] = value


def _remove(container: Any, key: Any) -> None:
    if isinstance(container, list):
        if key < len(container):
            container[key] = None
    else:
        container.pop(key, None)


def _push(container: Any, key: Any, items: list[Any], unique: bool, path: str) -> None:
    current = _get(container, key)
    if current is None:
        current = []
        _assign(container, key, current)
    if not isinstance(current, list):
        raise StoreError(f"The field '{path}' must be an array")
    for item in items:
        if unique and item in current:
            continue
        current.append(copy.deepcopy(item))


def _pull(container: Any, key: Any, condition: Any) -> None:
    current = _get(container, key)
    if not isinstance(current, list):
        return
    if isinstance(condition, dict):
        kept = [item for item in current if not _element_matches(item, condition)]
    else:
        kept = [item for item in current if item != condition]
    current[:] = kept


# -- projections ----------------------------------------------------------------


def apply_projection(doc: dict[str, Any], projection: dict[str, Any] | None) -> dict[str, Any]:
    """Return a projected copy of ``doc``.

    Inclusive projections keep ``_id`` unless it is excluded explicitly.

    Raises:
        StoreError: If inclusion and exclusion are mixed (other than ``_id``)
    """
    if not projection:
        return copy.deepcopy(doc)

    include = {p for p, flag in projection.items() if flag and p != "_id"}
    exclude = {p for p, flag in projection.items() if not flag and p != "_id"}
    if include and exclude:
        raise StoreError("Projection cannot have a mix of inclusion and exclusion")

    if include:
        tree: dict[str, Any] = {}
        if projection.get("_id", 1):
            tree["_id"] = True
        for path in sorted(include, key=lambda p: p.count(".")):
            _add_to_tree(tree, path.split("."))
        projected = _include(doc, tree)
        return projected if isinstance(projected, dict) else {}

    result = copy.deepcopy(doc)
    if not projection.get("_id", 1):
        exclude.add("_id")
    for path in exclude:
        _exclude(result, path.split("."))
    return result


def _add_to_tree(tree: dict[str, Any], parts: list[str]) -> None:
    node = tree
    for part in parts[:-1]:
        child = node.get(part)
        if child is True:
            return
        if child is None:
            child = node[part] = {}
        node = child
    node[parts[-1]] = True


def _include(value: Any, tree: Any) -> Any:
    if tree is True:
        return copy.deepcopy(value)
    if isinstance(value, dict):
        result: dict[str, Any] = {}
        for key, sub in tree.items():
            if key in value:
                projected = _include(value[key], sub)
                if projected is not _MISSING:
                    result[key] = projected
        return result
    if isinstance(value, list):
        return [_include(item, tree) for item in value if isinstance(item, (dict, list))]
    return _MISSING


def _exclude(value: Any, parts: list[str]) -> None:
    head, rest = parts[0], parts[1:]
    if isinstance(value, dict):
        if not rest:
            value.pop(head, None)
        elif head in value:
            _exclude(value[head], rest)
    elif isinstance(value, list):
        for item in value:
            _exclude(item, parts)


# -- sorting ----------------------------------------------------------------------


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is None or value is _MISSING:
        return (0, 0)
    if isinstance(value, bool):
        return (5, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, ObjectId):
        return (3, str(value))
    if isinstance(value, datetime):
        return (4, value.timestamp())
    return (6, repr(value))


def normalize_sort(sort: Any) -> list[tuple[str, int]]:
    """Accept ``[(path, 1|-1)]``, ``{path: 1|-1}`` or ``"a -b"``."""
    if not sort:
        return []
    if isinstance(sort, str):
        return [(p[1:], -1) if p.startswith("-") else (p, 1) for p in sort.split()]
    if isinstance(sort, dict):
        return [(path, int(direction)) for path, direction in sort.items()]
    return [(path, int(direction)) for path, direction in sort]


def sort_documents(docs: list[dict[str, Any]], sort: Any) -> list[dict[str, Any]]:
    """Sort documents by one or more dotted paths (missing values first)."""
    ordered = list(docs)
    for path, direction in reversed(normalize_sort(sort)):
        ordered.sort(key=lambda d, p=path: _sort_key(get_path(d, p, _MISSING)), reverse=direction < 0)
    return ordered


def select_documents(
    docs: list[dict[str, Any]],
    filter: dict[str, Any] | None,
    projection: dict[str, Any] | None,
    sort: Any = None,
    limit: int | None = None,
    skip: int = 0,
) -> list[dict[str, Any]]:
    """Filter, sort, page and project a list of stored documents."""
    matched = [doc for doc in docs if match_filter(doc, filter)]
    if sort:
        matched = sort_documents(matched, sort)
    if skip:
        matched = matched[skip:]
    if limit:
        matched = matched[:limit]
    return [apply_projection(doc, projection) for doc in matched]


def create_store(settings: Settings) -> CollectionStore:
    """Factory function to create a collection store from settings.

    Args:
        settings: polydoc settings

    Returns:
        Appropriate CollectionStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryCollectionStore
    from .sqlite import SqliteCollectionStore

    if settings.store_backend == StoreBackend.MEMORY:
        return InMemoryCollectionStore()
    elif settings.store_backend == StoreBackend.SQLITE:
        return SqliteCollectionStore(
            settings.data_dir,
            wal_mode=settings.sqlite_wal_mode,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported store backend: {settings.store_backend}")
