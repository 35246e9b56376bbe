"""
Discriminator registries and child schema construction.

A discriminator registry maps tied values to child schemas. It is owned by
a root schema (top-level discriminators) or by a single document-shaped
path (embedded discriminators). Each registered child is described by a
Variant: its name, merged schema, tied value and ancestry.

Registration runs in two steps:
1. build_child_schema() checks every precondition and builds the merged
   child schema without touching any shared state
2. the caller commits: marks the owner as root and registers the variant

Invariants:
    - The root of a hierarchy has mapping {key, None, True}; children have
      {key, tied value, False}
    - Tied values are unique within one registry (compared canonically:
      ObjectIds by hex string, lists element-wise)
    - A failed registration leaves every registry and schema unchanged
    - Only to_dict, to_json and id may differ between a child and its base;
      discriminator_key is always the base's

How to change safely:
    - Add new precondition checks to build_child_schema, before any mutation
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from bson import ObjectId

from ..errors import (
    CastError,
    ConfigurationError,
    DuplicateNameError,
    DuplicateValueError,
    HierarchyError,
    KeyCollisionError,
    NonCustomizableOptionError,
    UnsupportedPathError,
)
from .merge import compose
from .schema import Schema
from .types import PathDescriptor, PathKind, cast_scalar

logger = logging.getLogger(__name__)

CUSTOMIZABLE_OPTIONS: tuple[str, ...] = ("to_dict", "to_json", "id")


def canonical_value(value: Any) -> Any:
    """Comparable form of a tied value."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (list, tuple)):
        return tuple(canonical_value(v) for v in value)
    return value


def _jsonable(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class DiscriminatorMapping:
    """Position of a schema in its discriminator hierarchy.

    Attributes:
        key: Discriminator key field name
        value: Tied value (None for the root)
        is_root: Whether this schema is the hierarchy's root
    """

    key: str
    value: Any
    is_root: bool

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "value": _jsonable(self.value), "is_root": self.is_root}


@dataclass(frozen=True)
class Variant:
    """One member of a discriminator hierarchy.

    Attributes:
        name: Variant name (model name or discriminator name)
        schema: Effective schema of the variant
        value: Tied value stored under the discriminator key (None for roots)
        ancestry: Own name followed by ancestor names, nearest first
    """

    name: str
    schema: Schema
    value: Any = None
    ancestry: tuple[str, ...] = ()

    @property
    def is_root(self) -> bool:
        return len(self.ancestry) <= 1

    def is_a(self, name: str) -> bool:
        return name in self.ancestry


class DiscriminatorRegistry:
    """Variants registered on one owner, by name and by tied value.

    Args:
        key: Discriminator key field name
        owner: Label of the owner (model name or path name)
    """

    def __init__(self, key: str, owner: str) -> None:
        self.key = key
        self.owner = owner
        self._variants: dict[str, Variant] = {}

    def register(self, variant: Variant) -> None:
        self._variants[variant.name] = variant

    def by_value(self, value: Any) -> Variant | None:
        """Find the variant whose tied value equals ``value``."""
        wanted = canonical_value(value)
        for variant in self._variants.values():
            if canonical_value(variant.value) == wanted:
                return variant
        return None

    def resolve(self, value: Any) -> Variant | None:
        """Find a variant by tied value, falling back to its name."""
        variant = self.by_value(value)
        if variant is None and isinstance(value, str):
            variant = self._variants.get(value)
        return variant

    def get(self, name: str) -> Variant | None:
        return self._variants.get(name)

    def __getitem__(self, name: str) -> Variant:
        return self._variants[name]

    def __contains__(self, name: object) -> bool:
        return name in self._variants

    def __iter__(self) -> Iterator[str]:
        return iter(self._variants)

    def __len__(self) -> int:
        return len(self._variants)

    def variants(self) -> list[Variant]:
        return list(self._variants.values())

    def copy(self) -> DiscriminatorRegistry:
        copy = DiscriminatorRegistry(self.key, self.owner)
        copy._variants = dict(self._variants)
        return copy

    def to_dict(self, _seen: set[int] | None = None) -> dict[str, Any]:
        return {
            name: {"value": _jsonable(v.value), "schema": v.schema.to_dict(_seen)}
            for name, v in self._variants.items()
        }


def as_schema(definition: Any) -> Schema:
    """Accept a Schema or a plain definition dict as a discriminator schema."""
    if isinstance(definition, Schema):
        return definition
    if isinstance(definition, dict):
        return Schema(definition)
    raise ConfigurationError(
        "You must pass a valid discriminator Schema",
        details={"got": type(definition).__name__},
    )


def build_child_schema(
    base: Schema,
    name: Any,
    child: Any,
    tied_value: Any = None,
    *,
    registry: DiscriminatorRegistry | None = None,
    clone: bool = True,
) -> tuple[Schema, Any]:
    """Check registration preconditions and build the merged child schema.

    Neither ``base`` nor ``registry`` is modified.

    Args:
        base: Root schema of the hierarchy
        name: Discriminator name (default tied value)
        child: Child Schema or definition dict
        tied_value: Stored key value for the child
        registry: Owner's registry, if it exists yet
        clone: Copy the child's descriptors into the merged schema

    Returns:
        Tuple of (merged child schema, cast tied value)

    Raises:
        ConfigurationError: If child is not schema-shaped or the tied value
            does not fit the key path
        HierarchyError: If base is itself a discriminator child
        KeyCollisionError: If child declares the discriminator key
        DuplicateNameError: If name is already registered
        NonCustomizableOptionError: If child overrides a fixed option
        DuplicateValueError: If the tied value is already in use
    """
    child = as_schema(child)
    label = str(name)
    key = base.discriminator_key

    mapping = base.discriminator_mapping
    if mapping is not None and not mapping.is_root:
        raise HierarchyError(label)

    declared = child.paths.get(key)
    if (declared is not None and not declared.is_discriminator_key) or key in child.nested:
        raise KeyCollisionError(label, key)

    if registry is not None and label in registry:
        raise DuplicateNameError(label)

    for option in sorted(child.explicit_options):
        if option in CUSTOMIZABLE_OPTIONS or option == "discriminator_key":
            continue
        if child.options.get(option) != base.options.get(option):
            raise NonCustomizableOptionError(option, CUSTOMIZABLE_OPTIONS)

    base_key = base.paths.get(key)
    raw_value = name if tied_value is None else tied_value
    try:
        value = base_key.cast(raw_value) if base_key is not None else cast_scalar(PathKind.STRING, raw_value)
    except (CastError, ValueError) as e:
        raise ConfigurationError(
            f'Tied value {raw_value!r} of discriminator "{label}" does not fit key path "{key}"',
            details={"name": label, "key": key},
        ) from e

    if registry is not None:
        existing = registry.by_value(value)
        if existing is not None:
            raise DuplicateValueError(label, raw_value, existing.name)

    base_id = base.paths.get("_id")
    if base_id is not None and not _is_automatic_id(base_id) and _is_automatic_id(child.paths.get("_id")):
        # a custom _id on the base outranks the child's generated one
        child = child.copy()
        del child.paths["_id"]

    merged = compose(base, child, clone_addition=clone)
    merged._indexes = list(child._indexes)
    merged.options = dict(base.options)
    merged._explicit_options = set(base.explicit_options)
    for option in CUSTOMIZABLE_OPTIONS:
        if option in child.explicit_options:
            merged.options[option] = child.options[option]
            merged._explicit_options.add(option)
    if merged.options.get("id") is False and "_id" in merged.paths:
        del merged.paths["_id"]
    merged._ensure_id()

    if base_key is not None:
        key_path = dataclasses.replace(
            base_key,
            options={**base_key.options, "default": value},
            validators=list(base_key.validators),
            discriminators=None,
            is_discriminator_key=True,
            locked=True,
        )
    else:
        key_path = PathDescriptor(
            key,
            PathKind.STRING,
            options={"default": value},
            is_discriminator_key=True,
            locked=True,
        )
    merged.assign_path(key, key_path)
    merged.discriminator_mapping = DiscriminatorMapping(key, value, False)
    merged.discriminators = None
    return merged, value


def _is_automatic_id(desc: PathDescriptor | None) -> bool:
    return desc is not None and desc.options.get("default") is ObjectId


def mark_root(base: Schema) -> None:
    """Give ``base`` the root mapping and a key path, if it lacks them."""
    key = base.discriminator_key
    if base.discriminator_mapping is None:
        base.discriminator_mapping = DiscriminatorMapping(key, None, True)
    if key not in base.paths:
        base.assign_path(key, PathDescriptor(key, PathKind.STRING, is_discriminator_key=True))


def register_embedded(
    path: PathDescriptor,
    name: Any,
    schema: Any,
    tied_value: Any = None,
    *,
    clone: bool = True,
) -> Schema:
    """Register a discriminator on a document-shaped path.

    The registry lives on ``path`` only; other paths sharing the same
    element schema are unaffected. For arrays of arrays the registry
    applies to the innermost documents.

    Returns:
        The merged child schema

    Raises:
        UnsupportedPathError: If ``path`` does not hold documents
    """
    if not path.kind.holds_documents or path.schema is None:
        raise UnsupportedPathError(path.path, path.kind.value)

    base = path.schema
    merged, value = build_child_schema(
        base, name, schema, tied_value, registry=path.discriminators, clone=clone
    )

    label = str(name)
    if path.discriminators is None:
        path.discriminators = DiscriminatorRegistry(base.discriminator_key, owner=path.path)
    mark_root(base)
    path.discriminators.register(Variant(label, merged, value, (label, path.path)))
    logger.debug(f"Registered embedded discriminator '{label}' on path '{path.path}' (value={value!r})")
    return merged
