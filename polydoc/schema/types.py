"""
Core path type definitions for the polydoc schema system.

This module defines the building blocks of a schema's path registry:
- PathKind: The declared kind of a path (scalar, embedded, array, ...)
- Validator: A predicate + message pair attached to a path
- PathDescriptor: One field of a schema, with its casting and validation rules

Invariants:
    - A PathDescriptor's ``path`` is the full dotted name within its schema
    - Only EMBEDDED and DOCUMENT_ARRAY paths own a schema and may own a
      discriminator registry
    - Array paths default to an empty list unless a default is given
    - Casting never mutates the input value

How to change safely:
    - Add new kinds at the end of PathKind and teach ``cast_scalar`` about them
    - Keep ``PathKind.from_str`` aliases stable; schema files depend on them

Example:
    >>> from polydoc.schema.types import PathDescriptor, PathKind
    >>> title = PathDescriptor("title", PathKind.STRING, options={"required": True})
    >>> title.cast(42)
    '42'
"""

from __future__ import annotations

import dataclasses
import typing
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from bson import ObjectId

from ..errors import CastError, ConfigurationError, ValidatorError

if TYPE_CHECKING:
    from .discriminator import DiscriminatorRegistry
    from .schema import Schema


class PathKind(Enum):
    """Supported path kinds.

    These map to storage representations and casting rules.
    """

    STRING = "str"
    INTEGER = "int"
    NUMBER = "number"
    BOOLEAN = "bool"
    DATE = "datetime"
    OBJECT_ID = "objectid"
    MIXED = "mixed"  # Opaque value, stored as given
    EMBEDDED = "embedded"  # Single nested document
    ARRAY = "array"  # Array of scalars (or arrays of scalars)
    DOCUMENT_ARRAY = "document_array"  # Array of documents (or arrays of them)

    @property
    def holds_documents(self) -> bool:
        """Whether values of this kind are (arrays of) subdocuments."""
        return self in (PathKind.EMBEDDED, PathKind.DOCUMENT_ARRAY)

    @classmethod
    def from_str(cls, value: str) -> PathKind:
        """Convert a type name to a PathKind.

        Args:
            value: Type name, case-insensitive (``"string"``, ``"ObjectId"``, ...)

        Returns:
            Corresponding PathKind

        Raises:
            ValueError: If value is not a known type name
        """
        normalized = value.strip().lower()
        kind = _KIND_ALIASES.get(normalized)
        if kind is not None:
            return kind
        for kind in cls:
            if kind.value == normalized:
                return kind
        valid = sorted(_KIND_ALIASES)
        raise ValueError(f"Invalid path type '{value}'. Valid types: {valid}")

    @classmethod
    def from_python(cls, marker: Any) -> PathKind | None:
        """Map a Python type marker (``str``, ``datetime``, ``ObjectId``...) to a kind."""
        if marker is typing.Any:
            return cls.MIXED
        if not isinstance(marker, type):
            return None
        # bool before int: bool is an int subclass
        for python_type, kind in _PYTHON_KINDS:
            if marker is python_type:
                return kind
        return None


_KIND_ALIASES: dict[str, PathKind] = {
    "str": PathKind.STRING,
    "string": PathKind.STRING,
    "int": PathKind.INTEGER,
    "integer": PathKind.INTEGER,
    "float": PathKind.NUMBER,
    "number": PathKind.NUMBER,
    "bool": PathKind.BOOLEAN,
    "boolean": PathKind.BOOLEAN,
    "date": PathKind.DATE,
    "datetime": PathKind.DATE,
    "objectid": PathKind.OBJECT_ID,
    "object_id": PathKind.OBJECT_ID,
    "mixed": PathKind.MIXED,
    "any": PathKind.MIXED,
    "object": PathKind.MIXED,
    "dict": PathKind.MIXED,
}

_PYTHON_KINDS: tuple[tuple[type, PathKind], ...] = (
    (bool, PathKind.BOOLEAN),
    (str, PathKind.STRING),
    (int, PathKind.INTEGER),
    (float, PathKind.NUMBER),
    (datetime, PathKind.DATE),
    (ObjectId, PathKind.OBJECT_ID),
    (dict, PathKind.MIXED),
    (object, PathKind.MIXED),
)


def cast_scalar(kind: PathKind, value: Any) -> Any:
    """Cast a single scalar value to ``kind``.

    ``None`` passes through unchanged for every kind.

    Raises:
        ValueError: If the value cannot be represented as ``kind``
    """
    if value is None or kind == PathKind.MIXED:
        return value

    if kind == PathKind.STRING:
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float, ObjectId)) and not isinstance(value, bool):
            return str(value)
        raise ValueError(f"not a string: {value!r}")

    if kind == PathKind.INTEGER:
        if isinstance(value, bool):
            raise ValueError("booleans are not integers")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            return int(value.strip())
        raise ValueError(f"not an integer: {value!r}")

    if kind == PathKind.NUMBER:
        if isinstance(value, bool):
            raise ValueError("booleans are not numbers")
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            number = float(value.strip())
            return int(number) if number.is_integer() and "." not in value else number
        raise ValueError(f"not a number: {value!r}")

    if kind == PathKind.BOOLEAN:
        if isinstance(value, bool):
            return value
        if value in (0, 1):
            return bool(value)
        if isinstance(value, str) and value.lower() in ("true", "false", "yes", "no", "1", "0"):
            return value.lower() in ("true", "yes", "1")
        raise ValueError(f"not a boolean: {value!r}")

    if kind == PathKind.DATE:
        if isinstance(value, datetime):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            # Unix milliseconds
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        if isinstance(value, str):
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        raise ValueError(f"not a date: {value!r}")

    if kind == PathKind.OBJECT_ID:
        if isinstance(value, ObjectId):
            return value
        if isinstance(value, str) and ObjectId.is_valid(value):
            return ObjectId(value)
        raise ValueError(f"not an ObjectId: {value!r}")

    raise ValueError(f"kind {kind.value} is not a scalar kind")


@dataclass(frozen=True)
class Validator:
    """A custom validation rule on a path.

    Attributes:
        fn: Predicate receiving the cast value; a falsy result fails validation
        message: Error message; ``{PATH}`` and ``{VALUE}`` are substituted
        kind: Validator kind reported on the resulting ValidatorError
    """

    fn: Callable[[Any], Any]
    message: str = "Validator failed for path `{PATH}` with value `{VALUE}`"
    kind: str = "user defined"

    def check(self, path: str, value: Any) -> ValidatorError | None:
        if self.fn(value):
            return None
        message = self.message.replace("{PATH}", path).replace("{VALUE}", str(value))
        return ValidatorError(path, message, kind=self.kind)


@dataclass
class PathDescriptor:
    """Definition of one path within a schema.

    Attributes:
        path: Full dotted path name
        kind: Declared kind of the path
        options: Raw per-path options (``required``, ``default``, ``enum``,
            ``min``, ``max``, ``select``, ...)
        item_kind: Element kind for ARRAY paths
        depth: Array nesting depth (1 for ``[X]``, 2 for ``[[X]]``)
        schema: Subdocument schema for EMBEDDED and DOCUMENT_ARRAY paths
        implicit_schema: Whether ``schema`` was built from an inline dict
        validators: Custom validators, run in order after required/enum checks
        discriminators: Registry of embedded discriminators owned by this path
        is_discriminator_key: Whether this path stores a discriminator key
        locked: Whether the value is tied to a discriminator and cannot change

    Example:
        >>> events = schema.path("events")
        >>> events.discriminator("Clicked", {"element": {"type": str, "required": True}})
    """

    path: str
    kind: PathKind
    options: dict[str, Any] = dataclass_field(default_factory=dict)
    item_kind: PathKind | None = None
    depth: int = 0
    schema: Schema | None = None
    implicit_schema: bool = False
    validators: list[Validator] = dataclass_field(default_factory=list)
    discriminators: DiscriminatorRegistry | None = None
    is_discriminator_key: bool = False
    locked: bool = False

    def __post_init__(self) -> None:
        """Validate path definition and collect option validators."""
        if not self.path:
            raise ConfigurationError("Path name cannot be empty")
        if self.kind.holds_documents and self.schema is None:
            raise ConfigurationError(f"Path `{self.path}` of kind {self.kind.value} needs a schema")
        if self.kind in (PathKind.ARRAY, PathKind.DOCUMENT_ARRAY) and self.depth < 1:
            self.depth = 1

    @property
    def name(self) -> str:
        """Last segment of the dotted path."""
        return self.path.rsplit(".", 1)[-1]

    @property
    def required(self) -> bool:
        return bool(self.options.get("required", False))

    @property
    def enum_values(self) -> tuple[Any, ...] | None:
        values = self.options.get("enum")
        return tuple(values) if values else None

    @property
    def selected_by_default(self) -> bool:
        return self.options.get("select", True) is not False

    @property
    def has_default(self) -> bool:
        return "default" in self.options or self.kind in (PathKind.ARRAY, PathKind.DOCUMENT_ARRAY)

    def get_default(self) -> Any:
        """Produce this path's default value (callables are invoked)."""
        if "default" in self.options:
            default = self.options["default"]
            value = default() if callable(default) else default
            if isinstance(value, (list, dict)):
                # never hand out the shared default object
                return _copy_container(value)
            return value
        if self.kind in (PathKind.ARRAY, PathKind.DOCUMENT_ARRAY):
            return []
        return None

    def add_validator(self, fn: Callable[[Any], Any], message: str | None = None) -> PathDescriptor:
        """Attach a custom validator.

        Args:
            fn: Predicate receiving the cast value
            message: Optional error message (``{PATH}``/``{VALUE}`` substituted)

        Returns:
            self, for chaining
        """
        if message is None:
            self.validators.append(Validator(fn))
        else:
            self.validators.append(Validator(fn, message))
        return self

    validate = add_validator

    def cast(self, value: Any) -> Any:
        """Cast a raw value for a scalar, mixed or scalar-array path.

        Document-shaped paths are materialized by the document layer; this
        returns their raw value unchanged.

        Raises:
            CastError: If the value cannot be cast
        """
        if value is None or self.kind.holds_documents or self.kind == PathKind.MIXED:
            return value
        if self.kind == PathKind.ARRAY:
            return self._cast_array(value, self.depth)
        try:
            return cast_scalar(self.kind, value)
        except (TypeError, ValueError) as e:
            raise CastError(self.path, self.kind.value, value) from e

    def cast_item(self, value: Any, level: int = 1) -> Any:
        """Cast one element found ``level`` array levels below an ARRAY path."""
        if self.kind != PathKind.ARRAY:
            return self.cast(value)
        if value is None:
            return None
        return self._cast_array([value], self.depth - level + 1)[0]

    def _cast_array(self, value: Any, depth: int) -> list[Any]:
        if not isinstance(value, (list, tuple)):
            value = [value]
        if depth > 1:
            return [None if v is None else self._cast_array(v, depth - 1) for v in value]
        item_kind = self.item_kind or PathKind.MIXED
        try:
            return [cast_scalar(item_kind, v) for v in value]
        except (TypeError, ValueError) as e:
            raise CastError(self.path, f"[{item_kind.value}]", value) from e

    def validate_value(self, value: Any, full_path: str | None = None) -> ValidatorError | None:
        """Validate a cast value against this path's rules.

        Args:
            value: The cast value
            full_path: Path reported on the error (defaults to ``self.path``)

        Returns:
            The first failing ValidatorError, or None
        """
        error_path = full_path or self.path
        if value is None or (value == "" and self.kind == PathKind.STRING):
            if self.required:
                return ValidatorError(error_path, f"Path `{self.path}` is required.", kind="required")
            return None

        enum_values = self.enum_values
        if enum_values is not None and value not in enum_values:
            return ValidatorError(
                error_path,
                f"`{value}` is not a valid enum value for path `{self.path}`.",
                kind="enum",
            )

        for validator in [*self._option_validators(), *self.validators]:
            error = validator.check(error_path, value)
            if error is not None:
                return error
        return None

    def _option_validators(self) -> list[Validator]:
        """Validators declared through path options (min, max, validate)."""
        result: list[Validator] = []
        if "min" in self.options:
            minimum = self.options["min"]
            result.append(
                Validator(
                    lambda v: v >= minimum,
                    f"Path `{{PATH}}` ({{VALUE}}) is less than minimum allowed value ({minimum}).",
                    kind="min",
                )
            )
        if "max" in self.options:
            maximum = self.options["max"]
            result.append(
                Validator(
                    lambda v: v <= maximum,
                    f"Path `{{PATH}}` ({{VALUE}}) is more than maximum allowed value ({maximum}).",
                    kind="max",
                )
            )
        rules = self.options.get("validate")
        if rules is not None:
            if callable(rules) or isinstance(rules, tuple):
                rules = [rules]
            for rule in rules:
                result.append(Validator(*rule) if isinstance(rule, tuple) else Validator(rule))
        return result

    def discriminator(
        self,
        name: Any,
        schema: Any = None,
        tied_value: Any = None,
        *,
        clone: bool = True,
    ) -> Schema:
        """Register an embedded discriminator on this path.

        Only document-shaped paths (single embedded documents and arrays of
        documents at any depth) accept discriminators.

        Args:
            name: Discriminator name (also the default tied value)
            schema: Child schema or plain definition dict
            tied_value: Stored key value identifying the child
            clone: Copy the child's paths (False shares them, for recursive trees)

        Returns:
            The merged child schema

        Raises:
            UnsupportedPathError: If this path does not hold documents
            RegistrationError: On any other registration precondition failure
        """
        from .discriminator import register_embedded

        return register_embedded(self, name, schema, tied_value, clone=clone)

    def clone(self) -> PathDescriptor:
        """Copy this descriptor; the subdocument schema stays shared."""
        return dataclasses.replace(
            self,
            options=dict(self.options),
            validators=list(self.validators),
            discriminators=self.discriminators.copy() if self.discriminators is not None else None,
        )

    def to_dict(self, _seen: set[int] | None = None) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {"kind": self.kind.value}
        if self.item_kind is not None:
            result["item_kind"] = self.item_kind.value
        if self.depth > 1:
            result["depth"] = self.depth
        if self.required:
            result["required"] = True
        if "default" in self.options and not callable(self.options["default"]):
            result["default"] = self.options["default"]
        if self.enum_values:
            result["enum"] = list(self.enum_values)
        if self.validators:
            result["validators"] = len(self.validators)
        if self.is_discriminator_key:
            result["discriminator_key"] = True
        if self.schema is not None:
            result["schema"] = self.schema.to_dict(_seen)
        if self.discriminators:
            result["discriminators"] = self.discriminators.to_dict(_seen)
        return result


def _copy_container(value: Any) -> Any:
    if isinstance(value, list):
        return [_copy_container(v) for v in value]
    if isinstance(value, dict):
        return {k: _copy_container(v) for k, v in value.items()}
    return value
