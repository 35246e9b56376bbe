"""
Unit tests for projection helpers.

Tests cover:
- Normalizing string, list and dict projections
- Path selection and sub-projections
- Discriminator keys that reads must always return
"""

import pytest

from polydoc.model import always_included_paths
from polydoc.model.projection import (
    apply_always_included,
    default_projection,
    is_selected,
    normalize,
    sub_projection,
)
from polydoc.schema import Schema


@pytest.fixture
def article():
    """Schema with an embedded discriminator on ``sections``."""
    section = Schema({"title": str, "body": str}, discriminator_key="kind")
    schema = Schema({"title": str, "sections": [section]})
    schema.path("sections").discriminator("Image", {"url": str})
    return schema


class TestNormalize:
    """Tests for normalize()."""

    def test_string(self):
        assert normalize("title -body") == {"title": 1, "body": 0}

    def test_list(self):
        assert normalize(["a", "b"]) == {"a": 1, "b": 1}

    def test_dict_flags(self):
        assert normalize({"a": True, "b": False}) == {"a": 1, "b": 0}

    def test_empty(self):
        assert normalize(None) is None
        assert normalize("") is None


class TestSelection:
    """Tests for is_selected() and sub_projection()."""

    def test_no_projection_selects_everything(self):
        assert is_selected(None, "anything")

    def test_inclusive(self):
        """Inclusive projections select paths, their parents and children."""
        spec = {"a.b": 1}

        assert is_selected(spec, "a")
        assert is_selected(spec, "a.b.c")
        assert not is_selected(spec, "c")

    def test_id_selected_unless_excluded(self):
        assert is_selected({"title": 1}, "_id")
        assert not is_selected({"title": 1, "_id": 0}, "_id")

    def test_exclusive(self):
        spec = {"a": 0}

        assert not is_selected(spec, "a.b")
        assert is_selected(spec, "b")

    def test_sub_projection_inclusive(self):
        """Subpaths become relative; element ids are excluded."""
        assert sub_projection({"title": 1, "sections.title": 1}, "sections") == {"title": 1, "_id": 0}

    def test_sub_projection_whole_path(self):
        """Selecting the path itself returns whole elements."""
        assert sub_projection({"sections": 1}, "sections") is None

    def test_sub_projection_exclusive(self):
        assert sub_projection({"sections.body": 0}, "sections") == {"body": 0}

    def test_default_projection(self):
        """Paths declared select=False are hidden by default."""
        schema = Schema({"name": str, "secret": {"type": str, "select": False}})

        assert default_projection(schema) == {"secret": 0}
        assert default_projection(Schema({"name": str})) is None


class TestAlwaysIncluded:
    """Tests for discriminator keys added to projections."""

    def test_embedded_key(self, article):
        """Selecting a subpath of a discriminated array adds its key."""
        assert always_included_paths(article, "title sections.title") == ["sections.kind"]

    def test_whole_array_selected(self, article):
        """Selecting the array itself needs no extra key."""
        assert always_included_paths(article, "sections") == []

    def test_array_not_selected(self, article):
        """Arrays with nothing selected need no key."""
        assert always_included_paths(article, "title") == []

    def test_exclusive_projection(self, article):
        assert always_included_paths(article, "-title") == []

    def test_top_level_key(self, registry):
        """Hierarchy members always return the top-level key first."""
        event = registry.model("Event", Schema({"message": str}, discriminator_key="kind"))
        event.discriminator("Clicked", {"element": str})

        assert always_included_paths(event.schema, "message") == ["kind"]
        assert always_included_paths(event.schema, "message kind") == []

    def test_apply_inclusive(self, article):
        assert apply_always_included(article, "sections.title") == {"sections.title": 1, "sections.kind": 1}

    def test_apply_exclusive_keeps_keys(self, article):
        """Exclusions of discriminator keys are dropped."""
        assert apply_always_included(article, {"sections.kind": 0, "title": 0}) == {"title": 0}
        assert apply_always_included(article, {"sections.kind": 0}) is None
