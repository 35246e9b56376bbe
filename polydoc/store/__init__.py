"""Collection stores: the storage collaborator of compiled models."""

from .base import (
    CollectionStore,
    DuplicateKeyError,
    StoreError,
    UnsupportedOperatorError,
    apply_projection,
    apply_update,
    create_store,
    match_filter,
)
from .memory import InMemoryCollectionStore
from .sqlite import SqliteCollectionStore

__all__ = [
    "CollectionStore",
    "DuplicateKeyError",
    "InMemoryCollectionStore",
    "SqliteCollectionStore",
    "StoreError",
    "UnsupportedOperatorError",
    "apply_projection",
    "apply_update",
    "create_store",
    "match_filter",
]
