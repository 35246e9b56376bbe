"""
Document instances.

A Document is bound to one Variant (name, effective schema, tied value,
ancestry) chosen at construction by dispatch. Its behaviour (paths,
methods, virtuals, hooks) is looked up in that variant's schema; there is
no per-variant Python class.

Values are stored in ``_data`` as a nested dict mirroring the dotted path
names. Single embedded documents are stored as Documents and document
arrays as DocumentArrays, both built through create_element().

Invariants:
    - Construction never raises for bad values: cast, dispatch and key
      errors are recorded and reported together by validate()
    - The discriminator key of a child variant keeps its tied value;
      assigning another value records DiscriminatorKeyProtectedError
    - Defaults are applied only to paths selected by the load projection
    - Hooks for one lifecycle event run sequentially, once per document

How to change safely:
    - Internal attribute names must be listed in _INTERNAL, otherwise
      assignment is routed to the schema
"""

from __future__ import annotations

import copy
import logging
import types
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, Any

from bson import json_util

from ..errors import (
    CastError,
    DiscriminatorKeyProtectedError,
    DocumentError,
    PolyDocError,
    ValidationError,
)
from ..schema.discriminator import Variant, canonical_value
from ..schema.types import PathDescriptor, PathKind
from .dispatch import create_element
from .projection import Projection, is_selected, normalize, sub_projection

if TYPE_CHECKING:
    from ..schema.schema import Schema
    from .compiler import CompiledModel

logger = logging.getLogger(__name__)

_MISSING = object()

_INTERNAL = frozenset(
    {
        "_variant",
        "_model",
        "_parent",
        "_is_new",
        "_projection",
        "_data",
        "_errors",
        "_owner_path",
        "_loading",
    }
)


class Document:
    """A document instance of one variant.

    Args:
        variant: Variant chosen by dispatch
        raw: Raw field values
        model: Compiled model the document belongs to (top-level documents)
        parent: Owning top-level document (subdocuments)
        is_new: False for documents loaded from the store
        projection: Projection the document was loaded with
        owner_path: Document-shaped path holding this subdocument

    Example:
        >>> batch = Batch({"events": [{"kind": "Clicked", "element": "#hero"}]})
        >>> batch.events[0].variant
        'Clicked'
    """

    def __init__(
        self,
        variant: Variant,
        raw: dict[str, Any] | None = None,
        *,
        model: CompiledModel | None = None,
        parent: Document | None = None,
        is_new: bool = True,
        projection: Any = None,
        owner_path: PathDescriptor | None = None,
    ) -> None:
        self._variant = variant
        self._model = model
        self._parent = parent
        self._is_new = is_new
        self._projection: Projection | None = normalize(projection)
        self._owner_path = owner_path
        self._data: dict[str, Any] = {}
        self._errors: dict[str, DocumentError] = {}

        self._loading = True
        try:
            virtual_values = self._load_object(dict(raw or {}), "")
            self._apply_defaults()
        finally:
            self._loading = False
        for name, value in virtual_values:
            self.set(name, value)

    # -- identity -------------------------------------------------------------

    @property
    def variant(self) -> str:
        """Name of the variant this document was dispatched to."""
        return self._variant.name

    @property
    def schema(self) -> Schema:
        return self._variant.schema

    @property
    def model(self) -> CompiledModel | None:
        return self._model

    @property
    def parent(self) -> Document | None:
        return self._parent

    @property
    def is_new(self) -> bool:
        return self._is_new

    @property
    def errors(self) -> dict[str, DocumentError]:
        """Errors recorded while building or assigning values."""
        return dict(self._errors)

    def is_a(self, name: str) -> bool:
        """Whether this document is ``name`` or a descendant of it."""
        return self._variant.is_a(name)

    # -- loading ----------------------------------------------------------------

    def _load_object(self, obj: dict[str, Any], prefix: str) -> list[tuple[str, Any]]:
        schema = self.schema
        strict = schema.options.get("strict", True)
        virtual_values: list[tuple[str, Any]] = []

        for key, value in obj.items():
            full = f"{prefix}{key}"
            if full in schema.paths:
                self._assign(full, value)
            elif full in schema.nested:
                self._put(full, {})
                if isinstance(value, dict):
                    virtual_values.extend(self._load_object(value, f"{full}."))
            elif full in schema.virtuals:
                virtual_values.append((full, value))
            elif not strict:
                self._put(full, copy.deepcopy(value))
        return virtual_values

    def _apply_defaults(self) -> None:
        for path, desc in self.schema.paths.items():
            if not desc.has_default or self._fetch(path) is not _MISSING:
                continue
            if not is_selected(self._projection, path):
                continue
            value = desc.get_default()
            if value is None:
                continue
            if path in self._errors:
                # a rejected value stays reported; only the locked key still gets its tied value
                if desc.locked:
                    self._put(path, value)
                continue
            self._assign(path, value)

    def _record_error(self, path: str, error: DocumentError) -> None:
        self._errors[path] = error

    # -- raw storage --------------------------------------------------------------

    def _fetch(self, path: str) -> Any:
        node: Any = self._data
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def _put(self, path: str, value: Any) -> None:
        parts = path.split(".")
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[parts[-1]] = value

    def _assign(self, path: str, value: Any) -> None:
        desc = self.schema.paths[path]
        self._errors.pop(path, None)

        try:
            if desc.kind == PathKind.EMBEDDED:
                self._put(
                    path,
                    create_element(
                        desc, value, parent=self._root(), depth=0,
                        projection=sub_projection(self._projection, path),
                    ),
                )
                return
            if desc.kind == PathKind.DOCUMENT_ARRAY:
                if value is None:
                    self._put(path, None)
                    return
                if not isinstance(value, (list, tuple)):
                    value = [value]
                self._put(
                    path,
                    DocumentArray(
                        desc, self._root(), value,
                        projection=sub_projection(self._projection, path),
                    ),
                )
                return
            cast = desc.cast(value)
        except CastError as e:
            self._errors[path] = e
            return

        if desc.locked and canonical_value(cast) != canonical_value(self._variant.value):
            # the variant's own name is accepted in place of its tied value while loading
            if not (self._loading and canonical_value(cast) == self._variant.name):
                self._errors[path] = DiscriminatorKeyProtectedError(desc.name, attempted=value, path=path)
            return
        if desc.kind == PathKind.MIXED:
            cast = copy.deepcopy(cast)
        self._put(path, cast)

    def _root(self) -> Document:
        return self._parent if self._parent is not None else self

    # -- access -------------------------------------------------------------------

    def get(self, path: str) -> Any:
        """Get the value at a dotted path.

        Virtual getters run for virtual paths; nested objects come back as
        NestedView; numeric segments index arrays and subdocument paths
        are delegated to the subdocument.
        """
        schema = self.schema
        if path in schema.virtuals:
            return schema.virtuals[path].apply_getters(self)
        if path in schema.nested:
            return NestedView(self, path)
        if path in schema.paths:
            value = self._fetch(path)
            return None if value is _MISSING else value

        parts = path.split(".")
        for i in range(len(parts) - 1, 0, -1):
            head = ".".join(parts[:i])
            if head in schema.paths:
                return _descend(self._fetch(head), parts[i:])

        value = self._fetch(path)
        return None if value is _MISSING else value

    def set(self, path: str, value: Any) -> Document:
        """Set the value at a dotted path (cast through the path's descriptor).

        Returns:
            self
        """
        schema = self.schema
        if path in schema.virtuals:
            schema.virtuals[path].apply_setters(self, value)
            return self
        if path in schema.paths:
            self._assign(path, value)
            return self
        if path in schema.nested:
            self._put(path, {})
            if isinstance(value, dict):
                for name, child_value in self._load_object(value, f"{path}."):
                    self.set(name, child_value)
            return self

        parts = path.split(".")
        for i in range(len(parts) - 1, 0, -1):
            head = ".".join(parts[:i])
            desc = schema.paths.get(head)
            if desc is None:
                continue
            target = self._fetch(head)
            rest = parts[i:]
            if isinstance(target, Document):
                target.set(".".join(rest), value)
            elif isinstance(target, list) and rest[0].isdigit():
                _set_in_array(desc, target, rest, value)
            elif desc.kind == PathKind.MIXED:
                if not isinstance(target, dict):
                    target = {}
                    self._put(head, target)
                _set_in_dict(target, rest, copy.deepcopy(value))
            return self

        if not schema.options.get("strict", True):
            self._put(path, copy.deepcopy(value))
        return self

    def __getattr__(self, name: str) -> Any:
        variant = self.__dict__.get("_variant")
        if variant is None or name.startswith("__"):
            raise AttributeError(name)
        schema = variant.schema
        if name in schema.methods:
            return types.MethodType(schema.methods[name], self)
        if name in schema.virtuals or name in schema.paths or name in schema.nested:
            return self.get(name)
        data = self.__dict__.get("_data", {})
        if name in data:
            return data[name]
        raise AttributeError(f"'{variant.name}' document has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        if name in _INTERNAL or name.startswith("__"):
            object.__setattr__(self, name, value)
            return
        schema = self.schema
        if (
            name in schema.paths
            or name in schema.nested
            or name in schema.virtuals
            or not schema.options.get("strict", True)
        ):
            self.set(name, value)
        else:
            object.__setattr__(self, name, value)

    def __getitem__(self, path: str) -> Any:
        return self.get(path)

    def __setitem__(self, path: str, value: Any) -> None:
        self.set(path, value)

    # -- validation ----------------------------------------------------------------

    def subdocuments(self) -> list[Document]:
        """All embedded documents below this one, depth first."""
        found: list[Document] = []
        for path, desc in self.schema.paths.items():
            if desc.kind.holds_documents:
                for doc in _documents_in(self._fetch(path)):
                    found.append(doc)
                    found.extend(doc.subdocuments())
        return found

    def validate_sync(self) -> ValidationError | None:
        """Check every path without running hooks.

        Returns:
            A ValidationError listing every failing path, or None
        """
        errors: dict[str, PolyDocError] = {}
        self._collect_errors("", errors)
        if not errors:
            return None
        return ValidationError(self._owner_name(), errors)

    def _owner_name(self) -> str:
        if self._model is not None:
            return self._model.name
        return self._variant.name

    def _collect_errors(self, prefix: str, errors: dict[str, PolyDocError]) -> None:
        for path, error in self._errors.items():
            errors[f"{prefix}{path}"] = error

        for path, desc in self.schema.paths.items():
            full = f"{prefix}{path}"
            if full in errors or not is_selected(self._projection, path):
                continue
            value = self._fetch(path)
            value = None if value is _MISSING else value

            if desc.kind.holds_documents and value is not None:
                if isinstance(value, Document):
                    value._collect_errors(f"{full}.", errors)
                else:
                    for index_path, doc in _indexed_documents(value, full):
                        doc._collect_errors(f"{index_path}.", errors)
                continue

            error = desc.validate_value(value, full)
            if error is not None:
                errors[full] = error

    async def validate(self) -> Document:
        """Run validate hooks and validation on this document and its subdocuments.

        Returns:
            self

        Raises:
            ValidationError: If any path fails
        """
        subdocs = self.subdocuments()
        await self.schema.hooks.run("pre", "validate", self)
        for sub in subdocs:
            await sub.schema.hooks.run("pre", "validate", sub)

        error = self.validate_sync()
        if error is not None:
            logger.debug(f"Validation failed for {self._owner_name()}: {list(error.errors)}")
            raise error

        for sub in subdocs:
            await sub.schema.hooks.run("post", "validate", sub)
        await self.schema.hooks.run("post", "validate", self)
        return self

    async def save(self) -> Document:
        """Validate, run save hooks and persist through the owning model.

        Returns:
            self

        Raises:
            ValidationError: If validation fails
            PolyDocError: If the document is a subdocument or has no model
        """
        if self._parent is not None:
            raise PolyDocError("Subdocuments are saved through their top-level document")
        if self._model is None:
            raise PolyDocError(f"Document of variant '{self.variant}' is not bound to a model")

        await self.validate()
        subdocs = self.subdocuments()
        await self.schema.hooks.run("pre", "save", self)
        for sub in subdocs:
            await sub.schema.hooks.run("pre", "save", sub)

        await self._model._persist(self)
        self._is_new = False
        for sub in subdocs:
            sub._is_new = False

        for sub in subdocs:
            await sub.schema.hooks.run("post", "save", sub)
        await self.schema.hooks.run("post", "save", self)
        return self

    # -- serialization ---------------------------------------------------------------

    def to_dict(self, *, virtuals: bool | None = None) -> dict[str, Any]:
        """Plain dict of stored values (subdocuments included).

        Args:
            virtuals: Include virtual paths (defaults to the schema's
                ``to_dict`` option)
        """
        if virtuals is None:
            options = self.schema.options.get("to_dict") or {}
            virtuals = bool(options.get("virtuals", False))
        result = export_value(self._data, virtuals)
        if virtuals:
            for name, virtual in self.schema.virtuals.items():
                _set_in_dict(result, name.split("."), virtual.apply_getters(self))
        return result

    def to_json(self, **kwargs: Any) -> str:
        """Extended-JSON string of the document (virtuals per the ``to_json`` option)."""
        options = self.schema.options.get("to_json") or {}
        data = self.to_dict(virtuals=bool(options.get("virtuals", False)))
        return json_util.dumps(data, **kwargs)

    def __repr__(self) -> str:
        return f"{self.variant}({self.to_dict()!r})"


class NestedView:
    """Attribute view over a nested object path of a document."""

    def __init__(self, doc: Document, prefix: str) -> None:
        object.__setattr__(self, "_doc", doc)
        object.__setattr__(self, "_prefix", prefix)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__"):
            raise AttributeError(name)
        return self._doc.get(f"{self._prefix}.{name}")

    def __setattr__(self, name: str, value: Any) -> None:
        self._doc.set(f"{self._prefix}.{name}", value)

    def __getitem__(self, name: str) -> Any:
        return self._doc.get(f"{self._prefix}.{name}")

    def __setitem__(self, name: str, value: Any) -> None:
        self._doc.set(f"{self._prefix}.{name}", value)

    def to_dict(self) -> dict[str, Any]:
        value = self._doc._fetch(self._prefix)
        return export_value(value, False) if isinstance(value, dict) else {}

    def __eq__(self, other: object) -> bool:
        if isinstance(other, NestedView):
            return self.to_dict() == other.to_dict()
        return self.to_dict() == other

    def __repr__(self) -> str:
        return f"NestedView({self._prefix}={self.to_dict()!r})"


class DocumentArray(list):
    """List of subdocuments whose every mutation goes through dispatch.

    Args:
        path: DOCUMENT_ARRAY path the array belongs to
        parent: Top-level document owning the array
        items: Initial raw elements
        depth: Array nesting depth (``path.depth`` by default)
        projection: Projection for the initial elements

    Example:
        >>> batch.events.push({"kind": "Purchased", "product": "x"})
        >>> batch.events[-1].variant
        'Purchased'
    """

    def __init__(
        self,
        path: PathDescriptor,
        parent: Document | None,
        items: Iterable[Any] = (),
        *,
        depth: int | None = None,
        projection: Projection | None = None,
    ) -> None:
        super().__init__()
        self._path = path
        self._parent = parent
        self._depth = path.depth if depth is None else depth
        for item in items:
            super().append(self._coerce(item, projection))

    @property
    def path(self) -> PathDescriptor:
        return self._path

    def _coerce(self, value: Any, projection: Projection | None = None) -> Any:
        return create_element(self._path, value, parent=self._parent, depth=self._depth, projection=projection)

    def create(self, raw: Any) -> Any:
        """Build an element for this array without adding it."""
        return self._coerce(raw)

    def push(self, *items: Any) -> int:
        """Append elements and return the new length."""
        for item in items:
            super().append(self._coerce(item))
        return len(self)

    def append(self, item: Any) -> None:
        super().append(self._coerce(item))

    def extend(self, items: Iterable[Any]) -> None:
        super().extend([self._coerce(item) for item in items])

    def insert(self, index: int, item: Any) -> None:
        super().insert(index, self._coerce(item))

    def __setitem__(self, index: Any, value: Any) -> None:
        if isinstance(index, slice):
            super().__setitem__(index, [self._coerce(item) for item in value])
        else:
            super().__setitem__(index, self._coerce(value))

    def __iadd__(self, items: Iterable[Any]) -> DocumentArray:
        self.extend(items)
        return self

    def to_list(self) -> list[Any]:
        return export_value(list(self), False)


def _descend(value: Any, parts: list[str]) -> Any:
    for i, part in enumerate(parts):
        if isinstance(value, Document):
            return value.get(".".join(parts[i:]))
        if isinstance(value, list) and part.isdigit():
            index = int(part)
            value = value[index] if index < len(value) else None
        elif isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


def _set_in_dict(target: dict[str, Any], parts: list[str], value: Any) -> None:
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = target[part] = {}
        target = child
    target[parts[-1]] = value


def _set_in_array(desc: PathDescriptor, array: list[Any], parts: list[str], value: Any) -> None:
    index = int(parts[0])
    if len(parts) == 1:
        if isinstance(array, DocumentArray):
            array[index] = value
        else:
            array[index] = desc.cast([value])[0]
        return
    element = array[index]
    if isinstance(element, Document):
        element.set(".".join(parts[1:]), value)
    elif isinstance(element, list) and parts[1].isdigit():
        _set_in_array(desc, element, parts[1:], value)


def _documents_in(value: Any) -> Iterator[Document]:
    if isinstance(value, Document):
        yield value
    elif isinstance(value, list):
        for item in value:
            yield from _documents_in(item)


def _indexed_documents(value: list[Any], prefix: str) -> Iterator[tuple[str, Document]]:
    for index, item in enumerate(value):
        path = f"{prefix}.{index}"
        if isinstance(item, Document):
            yield path, item
        elif isinstance(item, list):
            yield from _indexed_documents(item, path)


def export_value(value: Any, virtuals: bool) -> Any:
    if isinstance(value, Document):
        return value.to_dict(virtuals=virtuals)
    if isinstance(value, list):
        return [export_value(item, virtuals) for item in value]
    if isinstance(value, dict):
        return {key: export_value(item, virtuals) for key, item in value.items()}
    return value
