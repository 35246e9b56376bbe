"""Compiled models, documents and dispatch."""

from .compiler import CompiledModel, Query
from .dispatch import create_element, instantiate, resolve_variant
from .document import Document, DocumentArray, NestedView
from .projection import always_included_paths
from .registry import ModelRegistry, get_registry, reset_registry
from .update import prepare_update

__all__ = [
    "CompiledModel",
    "Document",
    "DocumentArray",
    "ModelRegistry",
    "NestedView",
    "Query",
    "always_included_paths",
    "create_element",
    "get_registry",
    "instantiate",
    "prepare_update",
    "reset_registry",
    "resolve_variant",
]
