"""
Projection helpers for discriminated reads.

A partially projected document can only be dispatched to the right variant
if its discriminator key comes back from the store. always_included_paths()
reports the key paths a read must add to an inclusive projection:

- the top-level key whenever the model's schema is part of a hierarchy
- ``P.<key>`` for an embedded discriminator path ``P`` when a subpath of
  ``P`` is selected but ``P`` itself is not (selecting ``P`` returns whole
  elements, keys included; selecting nothing under ``P`` returns no
  elements at all)

Invariants:
    - Exclusive projections never exclude a discriminator key
    - Projections are normalized to ``{path: 0|1}`` before use
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..schema.schema import Schema

Projection = dict[str, int]


def normalize(projection: Any) -> Projection | None:
    """Normalize a projection given as a dict, a list or a ``"a b -c"`` string."""
    if not projection:
        return None
    if isinstance(projection, str):
        result: Projection = {}
        for token in projection.split():
            if token.startswith("-"):
                result[token[1:]] = 0
            else:
                result[token.lstrip("+")] = 1
        return result
    if isinstance(projection, (list, tuple, set)):
        return {path: 1 for path in projection}
    return {path: 1 if flag else 0 for path, flag in projection.items()}


def is_inclusive(projection: Projection | None) -> bool:
    if not projection:
        return False
    return any(flag for path, flag in projection.items() if path != "_id")


def is_selected(projection: Projection | None, path: str) -> bool:
    """Whether ``path`` (or part of it) is returned under ``projection``."""
    if not projection:
        return True
    if path == "_id":
        return bool(projection.get("_id", 1))
    if is_inclusive(projection):
        for selected, flag in projection.items():
            if not flag:
                continue
            if path == selected or path.startswith(f"{selected}.") or selected.startswith(f"{path}."):
                return True
        return False
    for excluded, flag in projection.items():
        if not flag and (path == excluded or path.startswith(f"{excluded}.")):
            return False
    return True


def sub_projection(projection: Projection | None, path: str) -> Projection | None:
    """Projection relative to the documents stored at ``path``."""
    if not projection:
        return None
    below = f"{path}."
    if not is_inclusive(projection):
        excluded = {p[len(below) :]: 0 for p, flag in projection.items() if not flag and p.startswith(below)}
        return excluded or None
    if any(flag and (path == p or path.startswith(f"{p}.")) for p, flag in projection.items()):
        return None
    included = {p[len(below) :]: 1 for p, flag in projection.items() if flag and p.startswith(below)}
    if not included:
        return None
    if "_id" not in included:
        included["_id"] = 0
    return included


def default_projection(schema: Schema) -> Projection | None:
    """Exclusion projection for paths declared with ``select=False``."""
    hidden = {path: 0 for path, desc in schema.paths.items() if not desc.selected_by_default}
    return hidden or None


def always_included_paths(schema: Schema, projection: Any = None) -> list[str]:
    """Discriminator key paths a read under ``projection`` must also return.

    Args:
        schema: Schema of the model being queried
        projection: Requested projection (any form accepted by normalize)

    Returns:
        Dotted key paths, top-level key first

    Example:
        >>> always_included_paths(schema, "title sections.title")
        ['sections.kind']
    """
    spec = normalize(projection)
    if not is_inclusive(spec):
        return []
    selected = [path for path, flag in spec.items() if flag]

    found: list[str] = []
    if schema.discriminator_mapping is not None and schema.discriminator_key not in selected:
        found.append(schema.discriminator_key)
    _collect_embedded(schema, selected, "", found, frozenset())
    return found


def _collect_embedded(
    schema: Schema, selected: list[str], prefix: str, found: list[str], seen: frozenset[int]
) -> None:
    if id(schema) in seen:
        return
    seen = seen | {id(schema)}

    for name, path in schema.paths.items():
        if not path.kind.holds_documents or path.schema is None:
            continue
        full = f"{prefix}{name}"
        if any(full == s or full.startswith(f"{s}.") for s in selected):
            continue
        if not any(s.startswith(f"{full}.") for s in selected):
            continue

        schemas = [path.schema]
        if path.discriminators:
            key = f"{full}.{path.schema.discriminator_key}"
            if key not in found and key not in selected:
                found.append(key)
            schemas.extend(variant.schema for variant in path.discriminators.variants())
        for sub in schemas:
            _collect_embedded(sub, selected, f"{full}.", found, seen)


def apply_always_included(schema: Schema, projection: Any) -> Projection | None:
    """Return ``projection`` with discriminator keys added (or un-excluded)."""
    spec = normalize(projection)
    if spec is None:
        return None
    if is_inclusive(spec):
        for path in always_included_paths(schema, spec):
            spec[path] = 1
        return spec

    protected = _key_paths(schema, "", frozenset())
    return {path: flag for path, flag in spec.items() if path not in protected} or None


def _key_paths(schema: Schema, prefix: str, seen: frozenset[int]) -> set[str]:
    if id(schema) in seen:
        return set()
    seen = seen | {id(schema)}
    keys: set[str] = set()
    if prefix == "" and schema.discriminator_mapping is not None:
        keys.add(schema.discriminator_key)
    for name, path in schema.paths.items():
        if path.kind.holds_documents and path.schema is not None:
            full = f"{prefix}{name}"
            if path.discriminators:
                keys.add(f"{full}.{path.schema.discriminator_key}")
            keys |= _key_paths(path.schema, f"{full}.", seen)
    return keys
