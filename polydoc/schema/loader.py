"""
Schema documents for polydoc.

Schemas and models can be declared in YAML or JSON documents and turned into
Schema objects and compiled models. The document format:

    version: 1
    schemas:
      Event:
        options:
          discriminator_key: kind
        fields:
          message: String
          at: {type: Date, required: true}
        path_discriminators: []
    models:
      - name: Batch
        collection: batches
        fields:
          events: [{$ref: Event}]
        path_discriminators:
          - path: events
            name: Clicked
            value: clicked
            fields:
              element: String
        discriminators:
          - name: Nightly
            value: nightly
            fields:
              window: Number

Field definitions use the same shapes as Python definitions, with type
names as strings (``String``, ``Number``, ``Date``, ``ObjectId``,
``Mixed``...). ``{$ref: Name}`` stands for the named schema from the
``schemas`` section.

Invariants:
    - Named schemas are built once; every ``$ref`` to a name shares it
    - Path discriminators are registered before any model is compiled
    - Parsing never touches a model registry; ``build`` does
    - ``build`` registers every model of a document or none of them

How to change safely:
    - New top-level sections must be optional
    - Keep ``version`` checks strict so old tools reject newer documents
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from ..errors import ConfigurationError, PolyDocError
from .schema import Schema

if TYPE_CHECKING:
    from ..model.compiler import CompiledModel
    from ..model.registry import ModelRegistry

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = (1,)
REF_KEY = "$ref"


@dataclass
class DiscriminatorDefinition:
    """A discriminator child declared in a schema document."""

    name: str
    schema: Schema
    value: Any = None
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name, "schema": self.schema.to_dict()}
        if self.value is not None:
            d["value"] = self.value
        if self.path is not None:
            d["path"] = self.path
        return d


@dataclass
class ModelDefinition:
    """A model declared in a schema document."""

    name: str
    schema: Schema
    collection: str | None = None
    discriminators: list[DiscriminatorDefinition] = field(default_factory=list)

    def validate(self) -> list[str]:
        errors = []
        if not self.name:
            errors.append("Model name is required")
        names = [d.name for d in self.discriminators]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        for name in duplicates:
            errors.append(f"Model '{self.name}': discriminator '{name}' declared more than once")
        if self.name in names:
            errors.append(f"Model '{self.name}': discriminator cannot reuse the model name")
        return errors


@dataclass
class SchemaDocument:
    """A parsed schema document."""

    version: int = 1
    schemas: dict[str, Schema] = field(default_factory=dict)
    models: list[ModelDefinition] = field(default_factory=list)

    def validate(self) -> list[str]:
        """Check the document for problems that parsing alone does not catch."""
        errors = []
        names = [m.name for m in self.models]
        for name in sorted({n for n in names if names.count(n) > 1}):
            errors.append(f"Model '{name}' declared more than once")
        for model in self.models:
            errors.extend(model.validate())
        return errors

    def build(self, registry: ModelRegistry) -> list[CompiledModel]:
        """Compile every model (and its discriminators) into ``registry``.

        Returns:
            Compiled models in document order, children after their base

        Raises:
            ConfigurationError: If validate() reports problems
            RegistrationError: If a discriminator cannot be registered
            ModelOverwriteError: If a model name is already taken
        """
        errors = self.validate()
        if errors:
            raise ConfigurationError("Invalid schema document", details={"errors": errors})

        compiled: list[CompiledModel] = []
        try:
            for definition in self.models:
                model = registry.model(definition.name, definition.schema, collection=definition.collection)
                compiled.append(model)
                for child in definition.discriminators:
                    compiled.append(model.discriminator(child.name, child.schema, child.value))
        except PolyDocError:
            # the document is registered as a whole or not at all
            for model in reversed(compiled):
                registry.unregister(model.name)
            logger.warning(f"Rolled back {len(compiled)} models after a failed schema document build")
            raise
        logger.info(f"Built {len(compiled)} models from schema document")
        return compiled


class _SchemaResolver:
    """Builds named schemas on first reference."""

    def __init__(self, raw: dict[str, Any]) -> None:
        self._raw = raw
        self._built: dict[str, Schema] = {}
        self._building: set[str] = set()

    def get(self, name: str) -> Schema:
        if name in self._built:
            return self._built[name]
        if name not in self._raw:
            raise ConfigurationError(f"Unknown schema reference '{name}'", details={"ref": name})
        if name in self._building:
            raise ConfigurationError(f"Schema '{name}' refers to itself", details={"ref": name})

        self._building.add(name)
        try:
            schema = self.build_entry(name, self._raw[name])
        finally:
            self._building.discard(name)
        self._built[name] = schema
        return schema

    def all(self) -> dict[str, Schema]:
        return {name: self.get(name) for name in self._raw}

    def build_entry(self, owner: str, entry: Any) -> Schema:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Schema '{owner}' must be a mapping", details={"schema": owner})
        options = entry.get("options") or {}
        if not isinstance(options, dict):
            raise ConfigurationError(f"Options of '{owner}' must be a mapping", details={"schema": owner})
        schema = Schema(self.resolve(entry.get("fields") or {}), **options)
        for spec in entry.get("path_discriminators") or []:
            child = self.discriminator(owner, spec, with_path=True)
            descriptor = schema.path(child.path)
            if descriptor is None:
                raise ConfigurationError(
                    f"Schema '{owner}' has no path '{child.path}' for discriminator '{child.name}'",
                    details={"schema": owner, "path": child.path},
                )
            descriptor.discriminator(child.name, child.schema, child.value)
        return schema

    def discriminator(self, owner: str, spec: Any, *, with_path: bool = False) -> DiscriminatorDefinition:
        if not isinstance(spec, dict) or not spec.get("name"):
            raise ConfigurationError(f"Discriminators of '{owner}' need a name", details={"schema": owner})
        path = spec.get("path")
        if with_path and not path:
            raise ConfigurationError(
                f"Path discriminator '{spec['name']}' of '{owner}' needs a path", details={"schema": owner}
            )
        if REF_KEY in spec:
            schema = self.get(spec[REF_KEY])
        else:
            schema = Schema(self.resolve(spec.get("fields") or {}), **(spec.get("options") or {}))
        return DiscriminatorDefinition(str(spec["name"]), schema, spec.get("value"), path)

    def resolve(self, value: Any) -> Any:
        """Replace every ``{$ref: Name}`` in a field definition with the named schema."""
        if isinstance(value, dict):
            if set(value) == {REF_KEY}:
                return self.get(value[REF_KEY])
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v) for v in value]
        return value


def parse_schema_document(data: dict[str, Any]) -> SchemaDocument:
    """Parse a schema document from a dict.

    Raises:
        ConfigurationError: If the document is malformed
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Schema document must be a mapping")
    version = data.get("version", 1)
    if version not in SUPPORTED_VERSIONS:
        raise ConfigurationError(
            f"Unsupported schema document version {version!r}",
            details={"supported": list(SUPPORTED_VERSIONS)},
        )

    resolver = _SchemaResolver(data.get("schemas") or {})
    schemas = resolver.all()

    models = []
    for entry in data.get("models") or []:
        if not isinstance(entry, dict):
            raise ConfigurationError("Model entries must be mappings")
        name = str(entry.get("name") or "")
        if REF_KEY in entry:
            schema = resolver.get(entry[REF_KEY])
        else:
            schema = resolver.build_entry(name or "<unnamed>", entry)
        children = [resolver.discriminator(name, spec) for spec in entry.get("discriminators") or []]
        models.append(ModelDefinition(name, schema, entry.get("collection"), children))

    return SchemaDocument(version=version, schemas=schemas, models=models)


def parse_yaml(text: str) -> SchemaDocument:
    """Parse a schema document from YAML text."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML: {e}") from e
    return parse_schema_document(data or {})


def parse_json(text: str) -> SchemaDocument:
    """Parse a schema document from JSON text."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON: {e}") from e
    return parse_schema_document(data)


def load_file(path: str | Path) -> SchemaDocument:
    """Load a schema document from a ``.json``, ``.yaml`` or ``.yml`` file."""
    file_path = Path(path)
    text = file_path.read_text(encoding="utf-8")
    if file_path.suffix.lower() == ".json":
        return parse_json(text)
    return parse_yaml(text)
