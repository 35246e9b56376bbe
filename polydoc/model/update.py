"""
Update document casting for compiled models.

prepare_update() turns a user update into the update sent to the store:

- Top-level keys without ``$`` are moved under ``$set``
- Values are cast through the descriptors of the target variant's schema;
  document-shaped values (``$set`` on a subdocument, ``$push`` of array
  elements, ``events.$`` replacements) are built through create_element()
  so they are dispatched like any other element
- Paths no schema declares are dropped under strict schemas

Discriminator key handling:

- Without ``overwrite_discriminator_key`` a change of the key is removed
  from the update and logged; the stored variant is preserved
- With it, the key changes and the update is cast against the new variant;
  a value naming no variant raises ValidationError

Target schema, in order of preference: the variant named by an allowed key
change, the child model's own schema, the variant named by the filter's key
value, and finally the model's schema followed by every registered variant.

Invariants:
    - Cast failures always raise ValidationError; validators run only with
      ``run_validators``
    - The caller's update document is never mutated
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..errors import CastError, DiscriminatorNotFoundError, PolyDocError, ValidationError
from ..schema.discriminator import canonical_value
from ..schema.types import PathDescriptor, PathKind
from .dispatch import create_element
from .document import Document, DocumentArray, export_value

if TYPE_CHECKING:
    from ..schema.schema import Schema
    from .compiler import CompiledModel

logger = logging.getLogger(__name__)

_MISSING_KEY = object()


@dataclass(frozen=True)
class ResolvedPath:
    """Descriptor addressed by an update path.

    Attributes:
        descriptor: The path descriptor (None for nested objects)
        mode: "leaf" (the path itself), "element" (array positions below
            the path), "mixed" (inside an opaque value) or "nested"
        positions: Number of array position segments after the path
        schema: Schema the descriptor was found in
    """

    descriptor: PathDescriptor | None
    mode: str
    positions: int = 0
    schema: Schema | None = None


def is_position(segment: str) -> bool:
    return segment.isdigit() or segment == "$" or (segment.startswith("$[") and segment.endswith("]"))


def resolve_path(schema: Schema, path: str) -> ResolvedPath | None:
    """Find the descriptor an update path addresses, descending into subdocuments.

    Numeric segments, ``$`` and ``$[...]`` are array positions. Subpaths of
    document-shaped paths are looked up in the element schema first and
    then in each embedded discriminator's schema.
    """
    parts = path.split(".")
    name_parts: list[str] = []
    for i, part in enumerate(parts):
        name_parts.append(part)
        name = ".".join(name_parts)
        desc = schema.paths.get(name)
        if desc is None:
            if name in schema.nested:
                continue
            return None

        rest = parts[i + 1 :]
        positions = 0
        while positions < len(rest) and is_position(rest[positions]):
            positions += 1
        rest = rest[positions:]

        if not rest:
            return ResolvedPath(desc, "element" if positions else "leaf", positions, schema)
        if desc.kind == PathKind.MIXED:
            return ResolvedPath(desc, "mixed", positions, schema)
        if desc.kind.holds_documents and desc.schema is not None:
            for sub in _element_schemas(desc):
                found = resolve_path(sub, ".".join(rest))
                if found is not None:
                    return found
        return None

    if ".".join(name_parts) in schema.nested:
        return ResolvedPath(None, "nested", 0, schema)
    return None


def _element_schemas(desc: PathDescriptor) -> list[Schema]:
    schemas = [desc.schema]
    if desc.discriminators:
        schemas.extend(variant.schema for variant in desc.discriminators.variants())
    return schemas


def normalize_update(update: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Copy ``update``, moving plain keys under ``$set``."""
    result: dict[str, dict[str, Any]] = {}
    for key, value in update.items():
        if key.startswith("$"):
            result.setdefault(key, {}).update(value)
        else:
            result.setdefault("$set", {})[key] = value
    return result


def prepare_update(
    model: CompiledModel,
    filter: dict[str, Any],
    update: dict[str, Any],
    *,
    run_validators: bool = False,
    overwrite_discriminator_key: bool = False,
) -> dict[str, dict[str, Any]]:
    """Cast an update for ``model``'s collection.

    Args:
        model: Model the update is issued on
        filter: Query filter (used for variant hints)
        update: User update document
        run_validators: Also run path validators on set values
        overwrite_discriminator_key: Allow changing the discriminator key

    Returns:
        Update document for the store (may be empty)

    Raises:
        ValidationError: On cast failures, unknown discriminator values, or
            (with run_validators) validator failures
    """
    ops = normalize_update(update)
    errors: dict[str, PolyDocError] = {}
    schemas = _target_schemas(model, filter, ops, overwrite_discriminator_key, errors)
    if errors:
        raise ValidationError(model.name, errors)

    result: dict[str, dict[str, Any]] = {}
    for op, fields in ops.items():
        if op == "$set":
            cast = _cast_set(schemas, fields, run_validators, errors)
        elif op == "$unset":
            cast = {p: "" for p in fields if _known(schemas, p)}
        elif op == "$inc":
            cast = _cast_inc(schemas, fields, errors)
        elif op in ("$push", "$addToSet"):
            cast = _cast_push(schemas, fields, run_validators, errors)
        else:
            cast = dict(fields)
        if cast:
            result[op] = cast

    if errors:
        raise ValidationError(model.name, errors)
    return result


def _target_schemas(
    model: CompiledModel,
    filter: dict[str, Any],
    ops: dict[str, dict[str, Any]],
    overwrite: bool,
    errors: dict[str, PolyDocError],
) -> list[Schema]:
    schema = model.schema
    if schema.discriminator_mapping is None:
        return [schema]

    key = schema.discriminator_key
    root = model.base or model
    registry = root.schema.discriminators

    requested = _MISSING_KEY
    for op in ("$set", "$unset"):
        if key in ops.get(op, {}):
            value = ops[op].pop(key)
            requested = None if op == "$unset" else value

    if requested is not _MISSING_KEY:
        if not overwrite:
            current = model.tied_value if model.base is not None else None
            if model.base is None or canonical_value(requested) != canonical_value(current):
                logger.warning(
                    f"Ignoring change of discriminator key '{key}' to {requested!r} on model "
                    f"'{model.name}': pass overwrite_discriminator_key=True to change variants"
                )
        elif requested is None or requested == root.name:
            ops.setdefault("$unset", {})[key] = ""
            return [root.schema]
        else:
            key_path = root.schema.paths.get(key)
            try:
                wanted = key_path.cast(requested) if key_path is not None else requested
            except CastError:
                wanted = requested
            variant = registry.resolve(wanted) if registry else None
            if variant is None:
                errors[key] = DiscriminatorNotFoundError(requested, root.name, path=key)
                return [schema]
            ops.setdefault("$set", {})[key] = variant.value
            return [variant.schema]

    if model.base is not None:
        return [schema]

    hinted = filter.get(key) if isinstance(filter, dict) else None
    if hinted is not None and not isinstance(hinted, dict) and registry:
        variant = registry.resolve(hinted)
        if variant is not None:
            return [variant.schema]

    return [schema, *(variant.schema for variant in registry.variants())] if registry else [schema]


def _resolve(schemas: list[Schema], path: str) -> ResolvedPath | None:
    for schema in schemas:
        found = resolve_path(schema, path)
        if found is not None:
            return found
    return None


def _known(schemas: list[Schema], path: str) -> bool:
    return _resolve(schemas, path) is not None or not schemas[0].options.get("strict", True)


def _storage_form(value: Any) -> Any:
    if isinstance(value, (Document, DocumentArray)):
        return export_value(value, False)
    return value


def _cast_value(resolved: ResolvedPath, path: str, value: Any) -> tuple[Any, Document | list[Any] | None]:
    """Cast one value; returns (storage value, built documents or None)."""
    desc = resolved.descriptor
    if resolved.mode == "mixed":
        return value, None

    if desc.kind == PathKind.EMBEDDED and resolved.positions == 0:
        element = create_element(desc, value, depth=0)
        return _storage_form(element), element

    if desc.kind == PathKind.DOCUMENT_ARRAY:
        if resolved.positions == 0:
            if value is None:
                return None, None
            elements = DocumentArray(desc, None, value if isinstance(value, (list, tuple)) else [value])
            return _storage_form(elements), elements
        element = create_element(desc, value, depth=desc.depth - resolved.positions + 1)
        return _storage_form(element), element

    if resolved.positions:
        return desc.cast_item(value, resolved.positions), None
    return desc.cast(value), None


def _validate(
    resolved: ResolvedPath, path: str, cast: Any, built: Any, errors: dict[str, PolyDocError]
) -> None:
    if isinstance(built, Document):
        found = built.validate_sync()
        if found is not None:
            errors.update({f"{path}.{sub}": err for sub, err in found.errors.items()})
        return
    if isinstance(built, list):
        for index, item in enumerate(built):
            _validate(resolved, f"{path}.{index}", None, item, errors)
        return
    if resolved.mode == "leaf" and resolved.descriptor is not None:
        error = resolved.descriptor.validate_value(cast, path)
        if error is not None:
            errors[path] = error


def _cast_set(
    schemas: list[Schema],
    fields: dict[str, Any],
    run_validators: bool,
    errors: dict[str, PolyDocError],
) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for path, value in fields.items():
        resolved = _resolve(schemas, path)
        if resolved is None:
            if not schemas[0].options.get("strict", True):
                result[path] = value
            else:
                logger.debug(f"Dropping update of undeclared path '{path}'")
            continue

        if resolved.mode == "nested":
            if isinstance(value, dict):
                nested = _cast_set(
                    schemas, {f"{path}.{k}": v for k, v in value.items()}, run_validators, errors
                )
                result[path] = _unflatten(nested, path)
            else:
                result[path] = value
            continue

        try:
            cast, built = _cast_value(resolved, path, value)
        except CastError as e:
            errors[path] = e
            continue
        if run_validators:
            _validate(resolved, path, cast, built, errors)
        result[path] = cast
    return result


def _unflatten(flat: dict[str, Any], prefix: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for path, value in flat.items():
        parts = path[len(prefix) + 1 :].split(".")
        node = result
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return result


def _cast_inc(
    schemas: list[Schema], fields: dict[str, Any], errors: dict[str, PolyDocError]
) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for path, amount in fields.items():
        resolved = _resolve(schemas, path)
        if resolved is None:
            if not schemas[0].options.get("strict", True):
                result[path] = amount
            continue
        desc = resolved.descriptor
        if desc is None or desc.kind not in (PathKind.INTEGER, PathKind.NUMBER, PathKind.MIXED):
            errors[path] = CastError(path, "number", amount)
            continue
        try:
            result[path] = desc.cast(amount) if desc.kind != PathKind.MIXED else amount
        except CastError as e:
            errors[path] = e
    return result


def _cast_push(
    schemas: list[Schema],
    fields: dict[str, Any],
    run_validators: bool,
    errors: dict[str, PolyDocError],
) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for path, value in fields.items():
        resolved = _resolve(schemas, path)
        if resolved is None:
            if not schemas[0].options.get("strict", True):
                result[path] = value
            continue
        desc = resolved.descriptor
        if resolved.mode == "mixed" or desc is None or desc.kind == PathKind.MIXED:
            result[path] = value
            continue
        if desc.kind not in (PathKind.ARRAY, PathKind.DOCUMENT_ARRAY):
            errors[path] = CastError(path, "array", value)
            continue

        each = isinstance(value, dict) and "$each" in value
        items = list(value["$each"]) if each else [value]
        element = ResolvedPath(desc, "element", resolved.positions + 1, resolved.schema)
        cast_items: list[Any] = []
        try:
            for index, item in enumerate(items):
                cast, built = _cast_value(element, path, item)
                if run_validators:
                    _validate(element, f"{path}.{index}", cast, built, errors)
                cast_items.append(cast)
        except CastError as e:
            errors[path] = e
            continue

        if each:
            result[path] = {**value, "$each": cast_items}
        else:
            result[path] = cast_items[0]
    return result
