"""
Unit tests for schema definitions.

Tests cover:
- Path kinds from Python types, type names and definitions
- Nested objects and typed paths
- Arrays, document arrays and arrays of arrays
- Casting and validation of path values
- Schema options, plugins and copies
"""

from datetime import datetime, timezone

import pytest
from bson import ObjectId

from polydoc.errors import CastError, ConfigurationError
from polydoc.schema import PathKind, Schema
from polydoc.schema.types import PathDescriptor


class TestPathKinds:
    """Tests for how definitions map to path kinds."""

    def test_python_types(self):
        """Python type markers declare scalar paths."""
        schema = Schema(
            {"name": str, "count": int, "ratio": float, "active": bool, "at": datetime, "ref": ObjectId}
        )

        assert schema.path("name").kind == PathKind.STRING
        assert schema.path("count").kind == PathKind.INTEGER
        assert schema.path("ratio").kind == PathKind.NUMBER
        assert schema.path("active").kind == PathKind.BOOLEAN
        assert schema.path("at").kind == PathKind.DATE
        assert schema.path("ref").kind == PathKind.OBJECT_ID

    def test_type_names(self):
        """Type names are case-insensitive."""
        schema = Schema({"name": "String", "when": "Date", "owner": "ObjectId", "blob": "Mixed"})

        assert schema.path("name").kind == PathKind.STRING
        assert schema.path("when").kind == PathKind.DATE
        assert schema.path("owner").kind == PathKind.OBJECT_ID
        assert schema.path("blob").kind == PathKind.MIXED

    def test_unknown_type_name_raises(self):
        """Unknown type names fail at definition time."""
        with pytest.raises(ConfigurationError, match="Invalid type `bogus`"):
            Schema({"x": "bogus"})

    def test_none_definition_raises(self):
        """A path defined as None is rejected."""
        with pytest.raises(ConfigurationError, match="Invalid value for schema path `x`"):
            Schema({"x": None})

    def test_empty_dict_and_dict_are_mixed(self):
        """{} and dict declare opaque paths."""
        schema = Schema({"a": {}, "b": dict})

        assert schema.path("a").kind == PathKind.MIXED
        assert schema.path("b").kind == PathKind.MIXED

    def test_typed_definition_options(self):
        """A dict with the type key declares a typed path with options."""
        schema = Schema({"title": {"type": str, "required": True, "enum": ["a", "b"]}})

        title = schema.path("title")
        assert title.kind == PathKind.STRING
        assert title.required
        assert title.enum_values == ("a", "b")
        assert schema.required_paths() == ["title"]

    def test_field_named_type(self):
        """A typed dict under the type key is a nested field named type."""
        schema = Schema({"meta": {"type": {"type": str}}})

        assert "meta" in schema.nested
        assert schema.path("meta.type").kind == PathKind.STRING

    def test_custom_type_key(self):
        """The type key is configurable."""
        schema = Schema({"meta": {"$type": str}, "type": str}, type_key="$type")

        assert schema.path("meta").kind == PathKind.STRING
        assert schema.path("type").kind == PathKind.STRING


class TestNestedPaths:
    """Tests for nested objects."""

    def test_nested_object(self):
        """Plain dicts declare nested objects with dotted paths."""
        schema = Schema({"name": {"first": str, "last": str}})

        assert "name" in schema.nested
        assert "name" not in schema.paths
        assert schema.path("name.first").kind == PathKind.STRING
        assert schema.children_of("name") == ["first", "last"]

    def test_path_type(self):
        """path_type classifies names."""
        schema = Schema({"name": {"first": str}})
        schema.virtual("full")

        assert schema.path_type("name.first") == "real"
        assert schema.path_type("name") == "nested"
        assert schema.path_type("full") == "virtual"
        assert schema.path_type("other") == "adhoc"

    def test_leaf_replaces_nested(self):
        """Adding a leaf at a nested prefix removes the subtree."""
        schema = Schema({"run": {"tab": {"id": int}}})
        schema.add({"run": dict})

        assert schema.path("run").kind == PathKind.MIXED
        assert "run.tab.id" not in schema.paths
        assert "run" not in schema.nested
        assert "run.tab" not in schema.nested

    def test_nested_replaces_leaf(self):
        """Adding a nested object at a leaf removes the leaf."""
        schema = Schema({"account": dict})
        schema.add({"account": {"user": str}})

        assert "account" not in schema.paths
        assert "account" in schema.nested
        assert schema.path("account.user").kind == PathKind.STRING

    def test_remove(self):
        """remove() drops a path and everything below it."""
        schema = Schema({"name": {"first": str}, "age": int})
        schema.remove(["name", "age"])

        assert "name.first" not in schema.paths
        assert "age" not in schema.paths


class TestArrays:
    """Tests for array definitions."""

    def test_scalar_array(self):
        """[X] declares an array of scalars."""
        schema = Schema({"tags": [str]})

        tags = schema.path("tags")
        assert tags.kind == PathKind.ARRAY
        assert tags.item_kind == PathKind.STRING
        assert tags.depth == 1

    def test_array_of_arrays(self):
        """[[X]] counts array depth."""
        schema = Schema({"grid": [[int]]})

        assert schema.path("grid").depth == 2
        assert schema.path("grid").cast([[1, "2"], [3]]) == [[1, 2], [3]]

    def test_document_array_from_schema(self):
        """[Schema] declares a document array sharing the element schema."""
        item = Schema({"sku": str})
        schema = Schema({"items": [item]})

        items = schema.path("items")
        assert items.kind == PathKind.DOCUMENT_ARRAY
        assert items.schema is item
        assert not items.implicit_schema

    def test_document_array_from_dict(self):
        """[{...}] declares a document array with an inline schema."""
        schema = Schema({"items": [{"sku": str}]})

        items = schema.path("items")
        assert items.kind == PathKind.DOCUMENT_ARRAY
        assert items.implicit_schema
        assert items.schema.path("sku").kind == PathKind.STRING

    def test_nested_document_arrays(self):
        """[[Schema]] is a document array of depth 2."""
        cell = Schema({"v": int})
        schema = Schema({"grid": [[cell]]})

        assert schema.path("grid").kind == PathKind.DOCUMENT_ARRAY
        assert schema.path("grid").depth == 2

    def test_array_default_is_empty_list(self):
        """Arrays default to a fresh empty list."""
        tags = Schema({"tags": [str]}).path("tags")

        first = tags.get_default()
        first.append("x")
        assert tags.get_default() == []

    def test_embedded_schema(self):
        """A Schema value declares a single embedded document."""
        address = Schema({"city": str})
        schema = Schema({"address": address})

        assert schema.path("address").kind == PathKind.EMBEDDED
        assert schema.path("address").schema is address


class TestCasting:
    """Tests for casting values through path descriptors."""

    def test_string_from_number(self):
        """Numbers cast to strings."""
        assert PathDescriptor("s", PathKind.STRING).cast(42) == "42"

    def test_integer_from_string(self):
        """Numeric strings cast to integers."""
        assert PathDescriptor("n", PathKind.INTEGER).cast(" 7 ") == 7

    def test_integer_rejects_garbage(self):
        """Uncastable values raise CastError with the path."""
        with pytest.raises(CastError) as exc_info:
            PathDescriptor("n", PathKind.INTEGER).cast("seven")

        assert exc_info.value.path == "n"
        assert exc_info.value.code == "CAST_ERROR"

    def test_boolean_from_string(self):
        """Boolean words cast to booleans."""
        flag = PathDescriptor("f", PathKind.BOOLEAN)

        assert flag.cast("yes") is True
        assert flag.cast("false") is False

    def test_date_from_iso_string(self):
        """ISO strings (with Z) cast to aware datetimes."""
        value = PathDescriptor("d", PathKind.DATE).cast("2024-01-02T03:04:05Z")

        assert value == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_object_id_from_hex(self):
        """24-hex strings cast to ObjectIds."""
        oid = ObjectId()

        assert PathDescriptor("o", PathKind.OBJECT_ID).cast(str(oid)) == oid

    def test_none_passes_through(self):
        """None is never cast."""
        assert PathDescriptor("n", PathKind.INTEGER).cast(None) is None

    def test_cast_item(self):
        """cast_item casts one element below an array path."""
        grid = Schema({"grid": [[int]]}).path("grid")

        assert grid.cast_item("3", level=2) == 3
        assert grid.cast_item(["1", "2"], level=1) == [1, 2]


class TestValidation:
    """Tests for path validation rules."""

    def test_required(self):
        """Required paths reject None and empty strings."""
        title = PathDescriptor("title", PathKind.STRING, options={"required": True})

        assert title.validate_value(None).kind == "required"
        assert title.validate_value("").kind == "required"
        assert title.validate_value("x") is None

    def test_enum(self):
        """Enum paths reject other values."""
        status = PathDescriptor("status", PathKind.STRING, options={"enum": ["open", "closed"]})

        error = status.validate_value("pending")
        assert error.kind == "enum"
        assert "not a valid enum value" in error.message

    def test_min_max(self):
        """min and max options add validators."""
        score = PathDescriptor("score", PathKind.INTEGER, options={"min": 0, "max": 10})

        assert score.validate_value(-1).kind == "min"
        assert score.validate_value(11).kind == "max"
        assert score.validate_value(5) is None

    def test_custom_validator_message(self):
        """Custom messages substitute PATH and VALUE."""
        schema = Schema({"code": {"type": str, "validate": (lambda v: len(v) == 3, "{PATH} bad: {VALUE}")}})

        error = schema.path("code").validate_value("toolong")
        assert error.message == "code bad: toolong"

    def test_add_validator(self):
        """Validators can be attached after definition."""
        schema = Schema({"n": int})
        schema.path("n").add_validator(lambda v: v % 2 == 0)

        assert schema.path("n").validate_value(3).kind == "user defined"
        assert schema.path("n").validate_value(4) is None


class TestSchemaOptions:
    """Tests for options, ids, plugins and copies."""

    def test_id_path_added_by_default(self):
        """Schemas get an ObjectId _id path."""
        schema = Schema({"name": str})

        assert list(schema.paths)[0] == "_id"
        assert isinstance(schema.path("_id").get_default(), ObjectId)

    def test_id_disabled(self):
        """id=False leaves out _id."""
        assert "_id" not in Schema({"name": str}, id=False).paths

    def test_default_discriminator_key(self):
        """The discriminator key comes from settings."""
        assert Schema().discriminator_key == "__t"

    def test_set_marks_option_explicit(self):
        """set() records the option as explicit."""
        schema = Schema()
        schema.set("strict", False)

        assert schema.get("strict") is False
        assert "strict" in schema.explicit_options

    def test_plugin_applied_once(self):
        """Applying the same plugin twice runs it once."""
        calls = []

        def plugin(schema, **options):
            calls.append(options)
            schema.add({"created_by": str})

        schema = Schema()
        schema.plugin(plugin, tag=1)
        schema.plugin(plugin, tag=2)

        assert calls == [{"tag": 1}]
        assert "created_by" in schema.paths

    def test_list_definition_merges_in_order(self):
        """A list of definitions is merged in order."""
        schema = Schema([{"a": str}, Schema({"a": int, "b": bool})])

        assert schema.path("a").kind == PathKind.INTEGER
        assert schema.path("b").kind == PathKind.BOOLEAN

    def test_clone_copies_descriptors(self):
        """clone() copies descriptors; changes do not leak back."""
        schema = Schema({"name": str})
        copy = schema.clone()
        copy.path("name").options["required"] = True

        assert not schema.path("name").required
        assert copy.path("name").required

    def test_to_dict(self):
        """to_dict describes paths and options."""
        schema = Schema({"title": {"type": str, "required": True}}, collection="posts")
        schema.method("shout", lambda doc: doc.title.upper())

        described = schema.to_dict()
        assert described["paths"]["title"] == {"kind": "str", "required": True}
        assert described["options"]["collection"] == "posts"
        assert described["methods"] == ["shout"]
