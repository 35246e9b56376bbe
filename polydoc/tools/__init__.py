"""Command-line tools for polydoc."""
