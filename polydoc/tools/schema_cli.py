"""
Schema CLI tool for polydoc.

This tool works on YAML/JSON schema documents:
- describe: Print the compiled models (with discriminators) as JSON
- validate: Check that every model and discriminator registers cleanly
- fingerprint: Print the registry fingerprint of the document

Usage:
    polydoc-schema describe models.yaml
    polydoc-schema validate models.yaml
    polydoc-schema fingerprint models.yaml

Invariants:
    - Failures exit non-zero and print the reason
    - Output is deterministic (sorted JSON)
    - Documents are compiled into a private registry, never the global one

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for CI parsing
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from ..errors import PolyDocError
from ..logging_config import setup_logging
from ..model.registry import ModelRegistry
from ..schema.loader import load_file

logger = logging.getLogger(__name__)


class SchemaCLI:
    """CLI tool for schema documents.

    Example:
        >>> cli = SchemaCLI()
        >>> print(cli.describe("models.yaml"))
        >>> ok, errors = cli.validate("models.yaml")
    """

    def build(self, path: str) -> ModelRegistry:
        """Compile a schema document into a fresh registry.

        Raises:
            PolyDocError: If the document does not parse or register
            OSError: If the file cannot be read
        """
        document = load_file(path)
        registry = ModelRegistry()
        document.build(registry)
        return registry

    def describe(self, path: str) -> str:
        registry = self.build(path)
        return registry.to_json(indent=2)

    def validate(self, path: str) -> tuple[bool, list[str]]:
        """Validate a schema document.

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        try:
            document = load_file(path)
        except (PolyDocError, OSError) as e:
            return False, [str(e)]

        errors = document.validate()
        if errors:
            return False, errors

        try:
            document.build(ModelRegistry())
        except PolyDocError as e:
            return False, [f"{e.code}: {e.message}"]
        return True, []

    def fingerprint(self, path: str) -> str:
        registry = self.build(path)
        return registry.freeze()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for schema tool."""
    parser = argparse.ArgumentParser(description="polydoc schema document tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    describe_parser = subparsers.add_parser("describe", help="Print compiled models as JSON")
    describe_parser.add_argument("file", help="Schema document (.yaml, .yml or .json)")
    describe_parser.add_argument("--output", "-o", help="Output file (default: stdout)")

    validate_parser = subparsers.add_parser("validate", help="Check a schema document")
    validate_parser.add_argument("file", help="Schema document (.yaml, .yml or .json)")

    fingerprint_parser = subparsers.add_parser("fingerprint", help="Print the registry fingerprint")
    fingerprint_parser.add_argument("file", help="Schema document (.yaml, .yml or .json)")

    args = parser.parse_args(argv)
    setup_logging()
    cli = SchemaCLI()

    if args.command == "validate":
        is_valid, errors = cli.validate(args.file)
        if is_valid:
            print("Schema document is valid")
            sys.exit(0)
        print(f"Schema document validation failed with {len(errors)} error(s):")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)

    try:
        if args.command == "describe":
            output = cli.describe(args.file)
            if args.output:
                with open(args.output, "w") as f:
                    f.write(output)
                print(f"Models written to {args.output}", file=sys.stderr)
            else:
                print(output)
        elif args.command == "fingerprint":
            print(cli.fingerprint(args.file))
    except (PolyDocError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
