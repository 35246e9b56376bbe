"""
Model Registry for polydoc.

The ModelRegistry is the process-scoped table of compiled models. It
provides:
- Compilation of schemas into models (model / lookup_or_create)
- Explicit register / unregister and pattern-based remove
- Registry-wide plugins, optionally applied to discriminator children
- The collection store shared by every model it compiles
- Freeze and fingerprint for consistency checks

Invariants:
    - A name maps to at most one model; compiling a different schema under
      a taken name raises ModelOverwriteError
    - Discriminator children are registered under their own names
    - Once frozen, no model or discriminator can be added
    - Compiling copies the schema's path table; later changes to the source
      schema do not reach the model

How to change safely:
    - Configure (models, discriminators, plugins) before serving requests;
      the registry lock serializes writers but readers take no lock
    - Use the schema CLI fingerprint to compare deployments

Example:
    >>> registry = ModelRegistry()
    >>> Batch = registry.model("Batch", batch_schema)
    >>> registry.get("Batch") is Batch
    True
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from collections.abc import Callable
from typing import Any

from ..config import Settings, get_settings
from ..errors import MissingModelError, ModelOverwriteError, RegistryFrozenError
from ..schema.schema import Plugin, Schema
from ..store.base import CollectionStore, create_store
from .compiler import CompiledModel

logger = logging.getLogger(__name__)

# Global registry instance
_global_registry: ModelRegistry | None = None
_registry_lock = threading.Lock()


class ModelRegistry:
    """Table of compiled models keyed by name.

    Args:
        settings: polydoc settings (process settings if not provided)
        store: Collection store for every model (created from settings on
            first use if not provided)

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups are lock-free
        - Freeze is atomic and irreversible
    """

    def __init__(self, settings: Settings | None = None, store: CollectionStore | None = None) -> None:
        self.settings = settings or get_settings()
        self._store = store
        self._models: dict[str, CompiledModel] = {}
        self._plugins: list[Plugin] = []
        self._frozen = False
        self._fingerprint: str | None = None
        self._lock = threading.Lock()
        self.apply_plugins_to_discriminators = self.settings.apply_plugins_to_discriminators

    @property
    def store(self) -> CollectionStore:
        if self._store is None:
            self._store = create_store(self.settings)
            logger.info(f"Created {self.settings.store_backend.value} collection store")
        return self._store

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> str | None:
        """Registry fingerprint (available after freeze)."""
        return self._fingerprint

    # -- plugins ------------------------------------------------------------------

    def plugin(self, fn: Callable[..., Any], **options: Any) -> ModelRegistry:
        """Register a plugin applied to every schema compiled from now on."""
        self._plugins.append(Plugin(fn, dict(options)))
        return self

    def apply_plugins(self, schema: Schema) -> None:
        for plugin in self._plugins:
            schema.plugin(plugin.fn, **plugin.options)

    # -- compilation ------------------------------------------------------------------

    def model(
        self,
        name: str,
        schema: Schema | dict[str, Any] | None = None,
        *,
        collection: str | None = None,
    ) -> CompiledModel:
        """Compile ``schema`` under ``name``, or look ``name`` up when schema is None.

        Compiling the same Schema object under the same name again returns
        the existing model.

        Raises:
            MissingModelError: If schema is None and no model has this name
            ModelOverwriteError: If the name is taken by another schema
        """
        if schema is None:
            existing = self.get(name)
            if existing is None:
                raise MissingModelError(name)
            return existing

        existing = self.get(name)
        if existing is not None:
            if existing.source_schema is schema:
                return existing
            raise ModelOverwriteError(name)
        return self._compile(name, schema, collection)

    def lookup_or_create(
        self,
        name: str,
        schema: Schema | dict[str, Any],
        *,
        collection: str | None = None,
    ) -> CompiledModel:
        """Return the model named ``name``, compiling ``schema`` if there is none."""
        existing = self.get(name)
        if existing is not None:
            return existing
        return self._compile(name, schema, collection)

    def _compile(self, name: str, schema: Schema | dict[str, Any], collection: str | None) -> CompiledModel:
        source = schema if isinstance(schema, Schema) else Schema(schema)
        compiled = source.clone()
        self.apply_plugins(compiled)
        model = CompiledModel(
            name,
            compiled,
            registry=self,
            collection=collection or source.options.get("collection") or name.lower(),
        )
        model.source_schema = schema if isinstance(schema, Schema) else source
        self.register(model)
        logger.info(f"Compiled model '{name}' (collection={model.collection})")
        return model

    # -- table ----------------------------------------------------------------------------

    def ensure_available(self, name: str) -> None:
        """Check that ``name`` can be registered.

        Raises:
            RegistryFrozenError: If registry is frozen
            ModelOverwriteError: If the name is taken
        """
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register model '{name}': registry is frozen")
        if name in self._models:
            raise ModelOverwriteError(name)

    def register(self, model: CompiledModel) -> None:
        """Add a compiled model to the table.

        Raises:
            RegistryFrozenError: If registry is frozen
            ModelOverwriteError: If the name is taken
        """
        with self._lock:
            self.ensure_available(model.name)
            self._models[model.name] = model
            logger.debug(f"Registered model: {model.name}")

    def unregister(self, name: str) -> bool:
        """Remove one model by name; returns whether it existed."""
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(f"Cannot remove model '{name}': registry is frozen")
            removed = self._models.pop(name, None)
        if removed is not None:
            logger.debug(f"Unregistered model: {name}")
        return removed is not None

    def remove(self, pattern: str | re.Pattern[str]) -> list[str]:
        """Remove every model whose name matches.

        Args:
            pattern: Exact name, or a compiled regular expression (searched)

        Returns:
            Names of the removed models
        """
        if isinstance(pattern, str):
            names = [pattern] if pattern in self._models else []
        else:
            names = [name for name in self._models if pattern.search(name)]
        return [name for name in names if self.unregister(name)]

    def get(self, name: str) -> CompiledModel | None:
        return self._models.get(name)

    def __getitem__(self, name: str) -> CompiledModel:
        model = self._models.get(name)
        if model is None:
            raise MissingModelError(name)
        return model

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def models(self) -> list[CompiledModel]:
        return list(self._models.values())

    def model_names(self) -> list[str]:
        return list(self._models)

    # -- freeze / fingerprint ------------------------------------------------------------

    def freeze(self) -> str:
        """Freeze the registry and compute fingerprint.

        Returns:
            Fingerprint string

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            self._fingerprint = self.compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Model registry frozen with {len(self._models)} models, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def compute_fingerprint(self) -> str:
        """SHA-256 fingerprint of the canonical JSON form of every model."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), default=str)
        hash_bytes = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> dict[str, Any]:
        """Models sorted by name for determinism."""
        return {"models": [self._models[name].to_dict() for name in sorted(self._models)]}

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True, default=str)

    async def close(self) -> None:
        """Close the collection store, if one was created."""
        if self._store is not None:
            await self._store.close()


def get_registry() -> ModelRegistry:
    """Get the global model registry.

    Example:
        >>> Batch = get_registry().model("Batch", batch_schema)
    """
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = ModelRegistry()
        return _global_registry


def reset_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None
