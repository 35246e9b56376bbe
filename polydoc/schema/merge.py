"""
Schema composition.

compose(base, addition) produces a new schema holding every path of
``base`` plus every path of ``addition``, with these override rules:

- A path in ``addition`` replaces the base path at the same dotted name
- A leaf in ``addition`` at P removes every base path and nested object
  below P (scalar-vs-object replacement and mixed shadowing)
- A nested object in ``addition`` at P replaces a base leaf at P
- Nested objects present on both sides are merged leaf by leaf
- Inline (dict-defined) subdocument paths of the same kind on both sides
  have their element schemas merged recursively; an explicit Schema on the
  addition side replaces the base's

Hooks are appended with origin-tag deduplication; methods, statics and
virtuals from ``addition`` win; explicitly set options from ``addition``
win.

Invariants:
    - compose() never mutates ``base`` or ``addition``
    - Inherited base descriptors are shared, not copied
"""

from __future__ import annotations

import dataclasses
import logging

from .schema import Schema
from .types import PathDescriptor

logger = logging.getLogger(__name__)


def compose(base: Schema, addition: Schema, *, clone_addition: bool = True) -> Schema:
    """Merge ``addition`` into a copy of ``base``.

    Args:
        base: Schema whose paths are inherited
        addition: Schema whose paths win on conflict
        clone_addition: Copy addition's descriptors (False shares them)

    Returns:
        A new merged Schema
    """
    merged = base.copy()
    merge_into(merged, addition, clone_paths=clone_addition)
    return merged


def merge_into(target: Schema, addition: Schema, *, clone_paths: bool = True) -> None:
    """Merge ``addition`` into ``target`` in place (see module docstring)."""
    for name, descriptor in addition.paths.items():
        incoming = descriptor.clone() if clone_paths else descriptor
        existing = target.paths.get(name)
        if existing is not None and _merges_element_schemas(existing, incoming):
            element = compose(existing.schema, incoming.schema, clone_addition=clone_paths)
            incoming = dataclasses.replace(incoming, schema=element)
            logger.debug(f"Merged inline subdocument schemas at '{name}'")
        target.assign_path(name, incoming)

    for prefix in sorted(addition.nested):
        target.mark_nested(prefix)

    target.hooks.merge(addition.hooks)
    target.methods.update(addition.methods)
    target.statics.update(addition.statics)
    for name, virtual in addition.virtuals.items():
        target.virtuals[name] = virtual.clone()

    for option in addition.explicit_options:
        target.options[option] = addition.options[option]
    target._explicit_options.update(addition.explicit_options)

    for fields, opts in addition._indexes:
        target._indexes.append((dict(fields), dict(opts)))
    for plugin in addition.plugins:
        if not any(p.fn is plugin.fn for p in target.plugins):
            target.plugins.append(plugin)


def _merges_element_schemas(existing: PathDescriptor, incoming: PathDescriptor) -> bool:
    return (
        existing.kind == incoming.kind
        and existing.kind.holds_documents
        and existing.depth == incoming.depth
        and existing.implicit_schema
        and incoming.implicit_schema
    )
