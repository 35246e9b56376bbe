"""
polydoc - document models with discriminators.

This package maps documents onto schemas and lets one collection hold
several document shapes:
- Schemas describe paths, hooks, methods, statics and virtuals
- Models compile a schema under a name and run queries against a
  collection store (in-memory or SQLite)
- Discriminators specialise a model (or an embedded document path) into
  child variants selected by a stored key value

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Schema    │────▶│ModelRegistry│────▶│  CompiledModel  │
    │ (+ children)│     │  (compile)  │     │ (+ child models)│
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                        ┌────────────────────────────┼───────────┐
                        ▼                            ▼           ▼
                   ┌─────────┐                ┌──────────┐ ┌──────────┐
                   │Document │◀── dispatch ───│ hydrate  │ │ updates  │
                   └─────────┘                └──────────┘ └────┬─────┘
                                                                ▼
                                                      ┌─────────────────┐
                                                      │ CollectionStore │
                                                      └─────────────────┘

Invariants:
    - Every document of a child model carries the child's key value
    - Discriminator registration either fully succeeds or changes nothing
    - Unknown key values never raise at construction; they fail validation

How to change safely:
    - Register models and discriminators before serving requests
    - Compare registry fingerprints (polydoc-schema fingerprint) across
      deployments
"""

from ._version import __version__
from .config import Settings, get_settings
from .errors import PolyDocError, ValidationError
from .model import CompiledModel, Document, ModelRegistry, get_registry
from .schema import Schema


def model(name: str, schema=None, **kwargs):
    """Compile (or look up) a model in the global registry."""
    return get_registry().model(name, schema, **kwargs)


__all__ = [
    "CompiledModel",
    "Document",
    "ModelRegistry",
    "PolyDocError",
    "Schema",
    "Settings",
    "ValidationError",
    "__version__",
    "get_registry",
    "get_settings",
    "model",
]
