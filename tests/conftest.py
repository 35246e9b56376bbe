"""
Shared test fixtures for polydoc.

Every test gets fresh settings and a fresh global registry; tests that
compile models use the ``registry`` fixture, which is backed by an
in-memory collection store.
"""

import pytest

from polydoc.config import reset_settings
from polydoc.model.registry import ModelRegistry, reset_registry
from polydoc.store.memory import InMemoryCollectionStore


@pytest.fixture(autouse=True)
def clean_state(monkeypatch):
    """Reset cached settings and the global registry around each test."""
    for name in ("POLYDOC_DISCRIMINATOR_KEY", "POLYDOC_STORE_BACKEND", "POLYDOC_STRICT"):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    reset_registry()
    yield
    reset_settings()
    reset_registry()


@pytest.fixture
def store():
    """In-memory collection store."""
    return InMemoryCollectionStore()


@pytest.fixture
def registry(store):
    """Model registry over the in-memory store."""
    return ModelRegistry(store=store)
