"""Schema definition, composition and discriminator registration."""

from .discriminator import (
    CUSTOMIZABLE_OPTIONS,
    DiscriminatorMapping,
    DiscriminatorRegistry,
    Variant,
    canonical_value,
)
from .hooks import Hook, HookRegistry
from .loader import (
    DiscriminatorDefinition,
    ModelDefinition,
    SchemaDocument,
    load_file,
    parse_json,
    parse_schema_document,
    parse_yaml,
)
from .merge import compose, merge_into
from .schema import Plugin, Schema, Virtual
from .types import PathDescriptor, PathKind, Validator

__all__ = [
    "CUSTOMIZABLE_OPTIONS",
    "DiscriminatorDefinition",
    "DiscriminatorMapping",
    "DiscriminatorRegistry",
    "Hook",
    "HookRegistry",
    "ModelDefinition",
    "PathDescriptor",
    "PathKind",
    "Plugin",
    "Schema",
    "SchemaDocument",
    "Validator",
    "Variant",
    "Virtual",
    "canonical_value",
    "compose",
    "load_file",
    "merge_into",
    "parse_json",
    "parse_schema_document",
    "parse_yaml",
]
