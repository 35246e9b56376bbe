"""
Document dispatch.

Every document (top-level, single embedded, or element of a document array
at any nesting depth) is built through instantiate(), which picks the
variant named by the raw value's discriminator key:

1. No registry, or no key in the raw value: the root variant
2. The key matches a tied value (or a registered name): that variant
3. The key matches nothing: the root variant, with a
   DiscriminatorNotFoundError recorded on the document

Array mutation goes through create_element(), so pushed or assigned
elements are dispatched exactly like loaded ones.

Invariants:
    - Dispatch never raises for unknown keys; the error surfaces on validate
    - Each embedded path dispatches with its own registry, never its parent's
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..errors import CastError, DiscriminatorNotFoundError
from ..schema.discriminator import DiscriminatorRegistry, Variant, canonical_value
from ..schema.types import PathDescriptor, PathKind

if TYPE_CHECKING:
    from .compiler import CompiledModel
    from .document import Document, DocumentArray

logger = logging.getLogger(__name__)


def resolve_variant(
    registry: DiscriminatorRegistry | None,
    root: Variant,
    raw: Any,
) -> tuple[Variant, DiscriminatorNotFoundError | None]:
    """Pick the variant for a raw value.

    Args:
        registry: Discriminator registry of the owner (None if it has none)
        root: Variant used when no child matches
        raw: Raw document value

    Returns:
        Tuple of (variant, error); error is set when the raw value names an
        unknown discriminator
    """
    if not registry or not isinstance(raw, dict):
        return root, None

    key = registry.key
    value = raw.get(key)
    if value is None:
        return root, None

    key_path = root.schema.paths.get(key)
    try:
        wanted = key_path.cast(value) if key_path is not None else value
    except CastError:
        wanted = value

    variant = registry.resolve(wanted)
    if variant is None and wanted is not value:
        variant = registry.resolve(value)
    if variant is not None:
        return variant, None
    if canonical_value(wanted) == root.name or canonical_value(wanted) == canonical_value(root.value):
        return root, None

    logger.debug(f"No discriminator '{value}' registered on '{registry.owner}'")
    return root, DiscriminatorNotFoundError(value, registry.owner, path=key)


def instantiate(
    root: Variant,
    registry: DiscriminatorRegistry | None,
    raw: Any,
    *,
    model: CompiledModel | None = None,
    parent: Document | None = None,
    is_new: bool = True,
    projection: dict[str, int] | None = None,
    owner_path: PathDescriptor | None = None,
) -> Document:
    """Build a document for ``raw``, dispatched through ``registry``.

    When ``model`` is given and a child variant matches, the document is
    bound to the child model.
    """
    from .document import Document

    variant, error = resolve_variant(registry, root, raw)
    if model is not None and variant is not root:
        model = model.model_for(variant.name)

    doc = Document(
        variant,
        raw,
        model=model,
        parent=parent,
        is_new=is_new,
        projection=projection,
        owner_path=owner_path,
    )
    if error is not None:
        doc._record_error(error.path or registry.key, error)
    return doc


def element_variant(path: PathDescriptor) -> Variant:
    """Root variant of the documents held by a document-shaped path."""
    return Variant(path.path, path.schema, None, (path.path,))


def create_element(
    path: PathDescriptor,
    value: Any,
    parent: Document | None = None,
    depth: int | None = None,
    projection: dict[str, int] | None = None,
) -> Document | DocumentArray | None:
    """Build one value of a document-shaped path through dispatch.

    Args:
        path: EMBEDDED or DOCUMENT_ARRAY path the value belongs to
        value: Raw dict, an existing document, or (for arrays of arrays) a list
        parent: Top-level document owning the new element
        depth: Nesting depth of the array holding the element (``path.depth``
            by default; 0 for single embedded documents)
        projection: Projection relative to the element

    Returns:
        A Document, a nested DocumentArray, or None

    Raises:
        CastError: If the value is not document-shaped
    """
    from .document import Document, DocumentArray

    if depth is None:
        depth = path.depth if path.kind == PathKind.DOCUMENT_ARRAY else 0
    if value is None:
        return None

    if depth > 1:
        if not isinstance(value, (list, tuple)):
            raise CastError(path.path, "array", value)
        return DocumentArray(path, parent, value, depth=depth - 1, projection=projection)

    if isinstance(value, Document):
        owner = value.__dict__.get("_owner_path")
        if owner is not None and owner.schema is path.schema:
            value._parent = parent
            return value
        value = value.to_dict()

    if not isinstance(value, dict):
        raise CastError(path.path, "embedded", value)

    return instantiate(
        element_variant(path),
        path.discriminators,
        value,
        parent=parent,
        is_new=parent.is_new if parent is not None else True,
        projection=projection,
        owner_path=path,
    )
