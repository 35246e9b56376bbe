"""
Schema definition for polydoc documents.

A Schema holds:
- paths: ordered mapping of dotted path name to PathDescriptor
- nested: dotted prefixes of plain nested objects
- hooks: pre/post lifecycle hooks (see hooks.py)
- methods / statics / virtuals
- options, indexes and applied plugins
- discriminator mapping and registry, once discriminators are attached

Definitions follow the document-database ODM convention: a Python type or
type name declares a scalar path, a dict with the type key declares a typed
path with options, a plain dict declares a nested object, a Schema declares
an embedded document and a list declares an array.

Invariants:
    - A path name is either a leaf (in ``paths``) or a nested prefix, never both
    - Placing a leaf at P removes everything previously declared under P
    - Schemas with ``id=True`` have an ``_id`` ObjectId path
    - A schema is logically frozen once a model is compiled from it

Example:
    >>> from polydoc import Schema
    >>> events = Schema({"message": str}, discriminator_key="kind", id=False)
    >>> batch = Schema({"events": [events]})
    >>> batch.path("events").discriminator("Clicked", {"element": {"type": str, "required": True}})
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from typing import TYPE_CHECKING, Any

from bson import ObjectId

from ..config import get_settings
from ..errors import ConfigurationError
from .hooks import HookRegistry
from .types import PathDescriptor, PathKind

if TYPE_CHECKING:
    from .discriminator import DiscriminatorMapping, DiscriminatorRegistry

logger = logging.getLogger(__name__)


class Virtual:
    """A computed path with getters and setters, not backed by storage.

    Example:
        >>> schema.virtual("name.full").getter(
        ...     lambda doc: f"{doc.name.first} {doc.name.last}"
        ... )
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.getters: list[Callable[[Any], Any]] = []
        self.setters: list[Callable[[Any, Any], Any]] = []

    def getter(self, fn: Callable[[Any], Any]) -> Virtual:
        self.getters.append(fn)
        return self

    def setter(self, fn: Callable[[Any, Any], Any]) -> Virtual:
        self.setters.append(fn)
        return self

    def apply_getters(self, doc: Any) -> Any:
        value = None
        for fn in self.getters:
            value = fn(doc)
        return value

    def apply_setters(self, doc: Any, value: Any) -> None:
        for fn in self.setters:
            fn(doc, value)

    def clone(self) -> Virtual:
        copy = Virtual(self.name)
        copy.getters = list(self.getters)
        copy.setters = list(self.setters)
        return copy


@dataclass(frozen=True)
class Plugin:
    """A plugin applied to a schema, with the options it was applied with."""

    fn: Callable[..., Any]
    options: dict[str, Any] = dataclass_field(default_factory=dict)


class Schema:
    """Description of a document shape and its behaviour.

    Args:
        definition: Field definitions (dict), another Schema, or a list of
            either merged in order
        **options: Schema options (``discriminator_key``, ``type_key``,
            ``strict``, ``id``, ``to_dict``, ``to_json``, ``collection``,
            ``capped``, ...)

    Raises:
        ConfigurationError: If the definition is malformed
    """

    def __init__(self, definition: Any = None, **options: Any) -> None:
        settings = get_settings()
        self.options: dict[str, Any] = {
            "discriminator_key": settings.discriminator_key,
            "type_key": settings.type_key,
            "strict": settings.strict,
            "id": True,
            "to_dict": None,
            "to_json": None,
            "collection": None,
            "capped": None,
        }
        self._explicit_options: set[str] = set(options)
        self.options.update(options)

        self.paths: dict[str, PathDescriptor] = {}
        self.nested: set[str] = set()
        self.hooks = HookRegistry()
        self.methods: dict[str, Callable[..., Any]] = {}
        self.statics: dict[str, Callable[..., Any]] = {}
        self.virtuals: dict[str, Virtual] = {}
        self.plugins: list[Plugin] = []
        self._indexes: list[tuple[dict[str, Any], dict[str, Any]]] = []

        self.discriminator_mapping: DiscriminatorMapping | None = None
        self.discriminators: DiscriminatorRegistry | None = None

        definitions = definition if isinstance(definition, list) else [definition]
        for item in definitions:
            if item is None:
                continue
            if isinstance(item, dict) and item.get("_id") is False:
                item = {k: v for k, v in item.items() if k != "_id"}
                self.options["id"] = False
                self._explicit_options.add("id")
            self.add(item)

        self._ensure_id()

    # -- definition parsing -------------------------------------------------

    @property
    def type_key(self) -> str:
        return self.options["type_key"]

    @property
    def discriminator_key(self) -> str:
        return self.options["discriminator_key"]

    @property
    def explicit_options(self) -> frozenset[str]:
        """Option names set explicitly (constructor or ``set``)."""
        return frozenset(self._explicit_options)

    def add(self, obj: dict[str, Any] | Schema, prefix: str = "") -> Schema:
        """Add path definitions to this schema.

        Args:
            obj: Mapping of path name to definition, or a Schema to merge in
            prefix: Dotted prefix for every name in ``obj``

        Returns:
            self

        Raises:
            ConfigurationError: If a definition is malformed
        """
        if isinstance(obj, Schema):
            from .merge import merge_into

            merge_into(self, obj)
            return self
        if not isinstance(obj, dict):
            raise ConfigurationError(
                f"Invalid schema definition: expected a mapping, got {type(obj).__name__}"
            )

        for key, value in obj.items():
            full = f"{prefix}{key}"
            if value is None:
                raise ConfigurationError(f"Invalid value for schema path `{full}`")
            if self._is_nested_definition(value):
                self.mark_nested(full)
                self.add(value, prefix=f"{full}.")
            else:
                self.assign_path(full, self._interpret(full, value))
        return self

    def _is_typed(self, definition: dict[str, Any]) -> bool:
        type_key = self.type_key
        if type_key not in definition:
            return False
        marker = definition[type_key]
        # {"type": {"type": str}} is a nested object with a field named "type"
        return not (isinstance(marker, dict) and type_key in marker)

    def _is_nested_definition(self, value: Any) -> bool:
        return isinstance(value, dict) and bool(value) and not self._is_typed(value)

    def _interpret(self, full: str, value: Any) -> PathDescriptor:
        if isinstance(value, PathDescriptor):
            # reused descriptors stay shared
            return value if value.path == full else dataclasses.replace(value, path=full)
        if isinstance(value, dict) and self._is_typed(value):
            options = {k: v for k, v in value.items() if k != self.type_key}
            return self._build_descriptor(full, value[self.type_key], options)
        return self._build_descriptor(full, value, {})

    def _build_descriptor(self, full: str, marker: Any, options: dict[str, Any]) -> PathDescriptor:
        if isinstance(marker, Schema):
            return PathDescriptor(full, PathKind.EMBEDDED, options, schema=marker)

        if isinstance(marker, (list, tuple)):
            depth = 1
            inner = marker[0] if marker else None
            while isinstance(inner, (list, tuple)):
                depth += 1
                inner = inner[0] if inner else None

            if isinstance(inner, dict) and self._is_typed(inner):
                inner = inner[self.type_key]
            if isinstance(inner, Schema):
                return PathDescriptor(
                    full, PathKind.DOCUMENT_ARRAY, options, depth=depth, schema=inner
                )
            if isinstance(inner, dict) and inner:
                return PathDescriptor(
                    full,
                    PathKind.DOCUMENT_ARRAY,
                    options,
                    depth=depth,
                    schema=self._implicit_schema(inner),
                    implicit_schema=True,
                )
            item_kind = PathKind.MIXED if inner is None or inner == {} else self._scalar_kind(full, inner)
            return PathDescriptor(full, PathKind.ARRAY, options, item_kind=item_kind, depth=depth)

        if isinstance(marker, dict):
            if not marker:
                return PathDescriptor(full, PathKind.MIXED, options)
            return PathDescriptor(
                full,
                PathKind.EMBEDDED,
                options,
                schema=self._implicit_schema(marker),
                implicit_schema=True,
            )

        return PathDescriptor(full, self._scalar_kind(full, marker), options)

    def _scalar_kind(self, full: str, marker: Any) -> PathKind:
        if isinstance(marker, PathKind):
            return marker
        if isinstance(marker, str):
            try:
                return PathKind.from_str(marker)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid type `{marker}` for schema path `{full}`", details={"path": full}
                ) from e
        kind = PathKind.from_python(marker)
        if kind is None:
            raise ConfigurationError(
                f"Invalid schema configuration: `{marker!r}` is not a valid type at path `{full}`",
                details={"path": full},
            )
        return kind

    def _implicit_schema(self, definition: dict[str, Any]) -> Schema:
        sub = Schema(definition, type_key=self.type_key, strict=self.options["strict"])
        # inline sub-schemas inherit parser options; none of them are user-set
        sub._explicit_options.difference_update({"type_key", "strict"})
        return sub

    def _ensure_id(self) -> None:
        if self.options.get("id") and "_id" not in self.paths:
            id_path = PathDescriptor("_id", PathKind.OBJECT_ID, options={"default": ObjectId})
            self.paths = {"_id": id_path, **self.paths}
        elif not self.options.get("id") and "_id" in self.paths:
            if self.paths["_id"].options.get("default") is ObjectId:
                del self.paths["_id"]

    # -- path table ---------------------------------------------------------

    def assign_path(self, name: str, descriptor: PathDescriptor) -> PathDescriptor:
        """Place a descriptor at ``name``, replacing whatever it shadows.

        A leaf at ``name`` removes every path and nested marker at or below
        ``name``; any ancestor declared as a leaf becomes a nested object.
        """
        self._clear_subtree(name)
        parts = name.split(".")
        for i in range(1, len(parts)):
            self.mark_nested(".".join(parts[:i]))
        self.paths[name] = descriptor
        return descriptor

    def mark_nested(self, name: str) -> None:
        """Declare ``name`` (and its ancestors) as a nested object."""
        parts = name.split(".")
        for i in range(1, len(parts) + 1):
            prefix = ".".join(parts[:i])
            # a nested object replaces a leaf declared at the same path
            self.paths.pop(prefix, None)
            self.nested.add(prefix)

    def _clear_subtree(self, name: str) -> None:
        below = f"{name}."
        for path in [p for p in self.paths if p.startswith(below)]:
            del self.paths[path]
        self.nested = {n for n in self.nested if n != name and not n.startswith(below)}

    def path(self, name: str, definition: Any = None) -> PathDescriptor | None:
        """Get the descriptor at ``name``, or declare it when ``definition`` is given."""
        if definition is None:
            return self.paths.get(name)
        self.add({name: definition})
        return self.paths[name]

    def path_type(self, name: str) -> str:
        """Classify a path name: "real", "nested", "virtual" or "adhoc"."""
        if name in self.paths:
            return "real"
        if name in self.nested:
            return "nested"
        if name in self.virtuals:
            return "virtual"
        return "adhoc"

    def remove(self, name: str | list[str]) -> Schema:
        names = [name] if isinstance(name, str) else name
        for n in names:
            self.paths.pop(n, None)
            self._clear_subtree(n)
        return self

    def required_paths(self) -> list[str]:
        return [p for p, d in self.paths.items() if d.required]

    def children_of(self, prefix: str) -> list[str]:
        """Immediate child names of a nested prefix ("" for top level)."""
        start = f"{prefix}." if prefix else ""
        names: list[str] = []
        for path in list(self.paths) + sorted(self.nested):
            if path.startswith(start) and path != prefix:
                head = path[len(start) :].split(".", 1)[0]
                if head not in names:
                    names.append(head)
        return names

    # -- behaviour ----------------------------------------------------------

    def pre(self, op: str | list[str], fn: Callable[[Any], Any], origin: str | None = None) -> Schema:
        """Register a hook that runs before ``op`` (or each of a list of ops)."""
        for name in [op] if isinstance(op, str) else op:
            self.hooks.add("pre", name, fn, origin=origin)
        return self

    def post(self, op: str | list[str], fn: Callable[[Any], Any], origin: str | None = None) -> Schema:
        """Register a hook that runs after ``op`` (or each of a list of ops)."""
        for name in [op] if isinstance(op, str) else op:
            self.hooks.add("post", name, fn, origin=origin)
        return self

    def method(self, name: str, fn: Callable[..., Any]) -> Schema:
        self.methods[name] = fn
        return self

    def static(self, name: str, fn: Callable[..., Any]) -> Schema:
        self.statics[name] = fn
        return self

    def virtual(self, name: str) -> Virtual:
        """Get or create the virtual path ``name``."""
        if name not in self.virtuals:
            self.virtuals[name] = Virtual(name)
        return self.virtuals[name]

    def index(self, fields: dict[str, Any], **options: Any) -> Schema:
        self._indexes.append((dict(fields), {"background": True, **options}))
        return self

    def indexes(self) -> list[list[dict[str, Any]]]:
        return [[dict(fields), dict(opts)] for fields, opts in self._indexes]

    def plugin(self, fn: Callable[..., Any], **options: Any) -> Schema:
        """Apply a plugin once; re-applying the same function is a no-op."""
        if any(p.fn is fn for p in self.plugins):
            return self
        self.plugins.append(Plugin(fn, dict(options)))
        fn(self, **options)
        return self

    def set(self, option: str, value: Any) -> Schema:
        self.options[option] = value
        self._explicit_options.add(option)
        if option == "id":
            self._ensure_id()
        return self

    def get(self, option: str) -> Any:
        return self.options.get(option)

    # -- copies -------------------------------------------------------------

    def copy(self) -> Schema:
        """Copy the schema's tables; path descriptors and hooks are shared."""
        new = Schema.__new__(Schema)
        new.options = dict(self.options)
        new._explicit_options = set(self._explicit_options)
        new.paths = dict(self.paths)
        new.nested = set(self.nested)
        new.hooks = self.hooks.clone()
        new.methods = dict(self.methods)
        new.statics = dict(self.statics)
        new.virtuals = {name: v.clone() for name, v in self.virtuals.items()}
        new.plugins = list(self.plugins)
        new._indexes = list(self._indexes)
        new.discriminator_mapping = self.discriminator_mapping
        new.discriminators = self.discriminators.copy() if self.discriminators is not None else None
        return new

    def clone(self) -> Schema:
        """Deep-copy the schema; descriptors are copied, subdocument schemas shared."""
        new = self.copy()
        new.paths = {name: desc.clone() for name, desc in self.paths.items()}
        return new

    def to_dict(self, _seen: set[int] | None = None) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        seen = set() if _seen is None else _seen
        if id(self) in seen:
            return {"$recursive": True}
        seen = seen | {id(self)}

        result: dict[str, Any] = {
            "options": {k: v for k, v in sorted(self.options.items()) if v is not None},
            "paths": {name: desc.to_dict(seen) for name, desc in self.paths.items()},
        }
        if self.nested:
            result["nested"] = sorted(self.nested)
        if self.virtuals:
            result["virtuals"] = sorted(self.virtuals)
        if self.methods:
            result["methods"] = sorted(self.methods)
        if self.statics:
            result["statics"] = sorted(self.statics)
        if len(self.hooks):
            result["hooks"] = self.hooks.to_dict()
        if self._indexes:
            result["indexes"] = self.indexes()
        if self.discriminator_mapping is not None:
            result["discriminator_mapping"] = self.discriminator_mapping.to_dict()
        if self.discriminators:
            result["discriminators"] = self.discriminators.to_dict(seen)
        return result

    def __repr__(self) -> str:
        return f"Schema(paths={list(self.paths)})"
