"""
Error types for polydoc.

This module defines all exception types raised by the library:
- PolyDocError: Base exception
- Registration errors (ConfigurationError, HierarchyError, KeyCollisionError,
  DuplicateNameError, DuplicateValueError, NonCustomizableOptionError,
  UnsupportedPathError): raised synchronously from discriminator registration
- Document errors (CastError, ValidatorError, DiscriminatorNotFoundError,
  DiscriminatorKeyProtectedError): collected on a document and reported
  together through ValidationError
- Registry errors (ModelOverwriteError, MissingModelError)

Invariants:
    - All errors inherit from PolyDocError
    - Registration errors leave registries unchanged
    - Document errors never abort construction; they surface on validate()
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PolyDocError(Exception):
    """Base exception for all polydoc errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "POLYDOC_ERROR"
        self.details = details or {}


class RegistrationError(PolyDocError):
    """Base class for errors raised while registering a discriminator."""


class ConfigurationError(RegistrationError):
    """Invalid schema composition input.

    Raised when:
    - A discriminator is given something that is not a schema definition
    - A schema definition contains an unknown type marker
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class HierarchyError(RegistrationError):
    """A discriminator was registered on a non-root discriminator."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f'Discriminator "{name}" can only be a discriminator of the root model',
            code="HIERARCHY_ERROR",
            details={"name": name},
        )
        self.name = name


class KeyCollisionError(RegistrationError):
    """The child schema declares a field named like the discriminator key."""

    def __init__(self, name: str, key: str) -> None:
        super().__init__(
            f'Discriminator "{name}" cannot have field with name "{key}"',
            code="KEY_COLLISION",
            details={"name": name, "key": key},
        )
        self.name = name
        self.key = key


class DuplicateNameError(RegistrationError):
    """A discriminator with this name is already registered on the owner."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f'Discriminator with name "{name}" already exists',
            code="DUPLICATE_NAME",
            details={"name": name},
        )
        self.name = name


class DuplicateValueError(RegistrationError):
    """The tied value is already used by a sibling discriminator."""

    def __init__(self, name: str, value: Any, existing: str) -> None:
        super().__init__(
            f'Discriminator "{name}" cannot use value {value!r}: '
            f'already used by discriminator "{existing}"',
            code="DUPLICATE_VALUE",
            details={"name": name, "value": repr(value), "existing": existing},
        )
        self.name = name
        self.value = value
        self.existing = existing


class NonCustomizableOptionError(RegistrationError):
    """The child schema overrides an option that must match the base."""

    def __init__(self, option: str, customizable: tuple[str, ...]) -> None:
        super().__init__(
            f"Can't customize discriminator option {option} "
            f"(can only modify {', '.join(customizable)})",
            code="NON_CUSTOMIZABLE_OPTION",
            details={"option": option},
        )
        self.option = option


class UnsupportedPathError(RegistrationError):
    """Embedded discriminators need a document-shaped path."""

    def __init__(self, path: str, kind: str) -> None:
        super().__init__(
            f"Cannot create an embedded discriminator on path '{path}': "
            f"path of kind '{kind}' does not hold documents",
            code="UNSUPPORTED_PATH",
            details={"path": path, "kind": kind},
        )
        self.path = path
        self.kind = kind


class DocumentError(PolyDocError):
    """Base class for per-path errors collected on a document."""

    def __init__(self, message: str, code: str, path: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, code=code, details={"path": path, **details})
        self.path = path


class CastError(DocumentError):
    """A value could not be cast to the declared path kind."""

    def __init__(self, path: str, kind: str, value: Any) -> None:
        super().__init__(
            f'Cast to {kind} failed for value {value!r} at path "{path}"',
            code="CAST_ERROR",
            path=path,
            kind=kind,
        )
        self.kind = kind
        self.value = value


class ValidatorError(DocumentError):
    """A path validator (required, enum, custom) rejected a value."""

    def __init__(self, path: str, message: str, kind: str = "user defined") -> None:
        super().__init__(message, code="VALIDATOR_ERROR", path=path, kind=kind)
        self.kind = kind


class DiscriminatorNotFoundError(DocumentError):
    """A stored or supplied discriminator value matches no registered variant."""

    def __init__(self, value: Any, owner: str, path: Optional[str] = None) -> None:
        super().__init__(
            f'Discriminator "{value}" not found for model "{owner}"',
            code="DISCRIMINATOR_NOT_FOUND",
            path=path,
            owner=owner,
        )
        self.value = value
        self.owner = owner


class DiscriminatorKeyProtectedError(DocumentError):
    """The discriminator key of an instantiated variant was reassigned."""

    def __init__(self, key: str, attempted: Any = None, path: Optional[str] = None) -> None:
        super().__init__(
            f'Can\'t set discriminator key "{key}"',
            code="DISCRIMINATOR_KEY_PROTECTED",
            path=path or key,
            key=key,
        )
        self.key = key
        self.attempted = attempted


class ValidationError(PolyDocError):
    """Document validation failed.

    Attributes:
        errors: Mapping of full dotted path to the individual error
    """

    def __init__(self, owner: str, errors: Dict[str, PolyDocError]) -> None:
        summary = ", ".join(f"{path}: {err.message}" for path, err in errors.items())
        super().__init__(
            f"{owner} validation failed: {summary}",
            code="VALIDATION_ERROR",
            details={"owner": owner, "paths": list(errors)},
        )
        self.owner = owner
        self.errors = errors


class ModelOverwriteError(PolyDocError):
    """A model with this name is already compiled in the registry."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Cannot overwrite `{name}` model once compiled.",
            code="MODEL_OVERWRITE",
            details={"name": name},
        )
        self.name = name


class MissingModelError(PolyDocError):
    """No model with this name has been registered."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f'Schema hasn\'t been registered for model "{name}".',
            code="MISSING_MODEL",
            details={"name": name},
        )
        self.name = name


class RegistryFrozenError(PolyDocError):
    """The model registry is frozen and cannot be modified."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="REGISTRY_FROZEN")
