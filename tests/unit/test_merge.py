"""
Unit tests for schema composition.

Tests cover:
- Inherited and overridden paths
- Scalar-vs-object replacement and mixed shadowing
- Inline subdocument merging
- Hooks, methods, statics, virtuals, options and indexes
"""

from polydoc.schema import PathKind, Schema, compose


class TestComposePaths:
    """Tests for path merging."""

    def test_base_paths_kept_and_addition_added(self):
        """Every base path not overridden survives; every addition path is present."""
        base = Schema({"name": str, "age": int})
        addition = Schema({"email": str})

        merged = compose(base, addition)

        assert merged.path("name") is base.path("name")
        assert merged.path("age") is base.path("age")
        assert merged.path("email").kind == PathKind.STRING

    def test_addition_overrides(self):
        """A path declared on both sides takes the addition's descriptor."""
        base = Schema({"score": int})
        addition = Schema({"score": {"type": float, "required": True}})

        merged = compose(base, addition)

        assert merged.path("score").kind == PathKind.NUMBER
        assert merged.path("score").required

    def test_inputs_not_mutated(self):
        """compose() leaves both inputs unchanged."""
        base = Schema({"name": str})
        addition = Schema({"name": int, "extra": bool})

        compose(base, addition)

        assert base.path("name").kind == PathKind.STRING
        assert "extra" not in base.paths
        assert addition.path("name").kind == PathKind.INTEGER

    def test_mixed_shadowing(self):
        """An opaque path in the addition removes the base subtree."""
        base = Schema({"run": {"tab": {"id": int}, "name": str}})
        addition = Schema({"run": dict})

        merged = compose(base, addition)

        assert merged.path("run").kind == PathKind.MIXED
        assert not [p for p in merged.paths if p.startswith("run.")]
        assert "run" not in merged.nested

    def test_scalar_replaces_embedded(self):
        """A scalar in the addition replaces an embedded document."""
        base = Schema({"owner": Schema({"name": str})})
        addition = Schema({"owner": str})

        merged = compose(base, addition)

        assert merged.path("owner").kind == PathKind.STRING

    def test_nested_over_leaf(self):
        """A nested object in the addition replaces a base leaf."""
        base = Schema({"account": dict})
        addition = Schema({"account": {"user": str}})

        merged = compose(base, addition)

        assert "account" not in merged.paths
        assert merged.path("account.user").kind == PathKind.STRING

    def test_nested_objects_merge(self):
        """Nested objects on both sides keep descendants from both."""
        base = Schema({"profile": {"first": str, "last": str}})
        addition = Schema({"profile": {"last": int, "nick": str}})

        merged = compose(base, addition)

        assert merged.path("profile.first").kind == PathKind.STRING
        assert merged.path("profile.last").kind == PathKind.INTEGER
        assert merged.path("profile.nick").kind == PathKind.STRING

    def test_inline_document_arrays_merge(self):
        """Inline element schemas of the same kind are merged recursively."""
        base = Schema({"items": [{"sku": str}]})
        addition = Schema({"items": [{"qty": int}]})

        merged = compose(base, addition)

        element = merged.path("items").schema
        assert "sku" in element.paths
        assert "qty" in element.paths
        assert "qty" not in base.path("items").schema.paths

    def test_explicit_schema_replaces_inline(self):
        """An explicit element Schema on the addition replaces the base's."""
        base = Schema({"items": [{"sku": str}]})
        replacement = Schema({"qty": int})
        addition = Schema({"items": [replacement]})

        merged = compose(base, addition)

        assert merged.path("items").schema is replacement

    def test_shared_descriptors_when_not_cloning(self):
        """clone_addition=False shares the addition's descriptors."""
        base = Schema()
        addition = Schema({"name": str})

        shared = compose(base, addition, clone_addition=False)
        copied = compose(base, addition)

        assert shared.path("name") is addition.path("name")
        assert copied.path("name") is not addition.path("name")


class TestComposeBehaviour:
    """Tests for hooks, methods and options."""

    def test_hooks_appended_after_base(self):
        """Addition hooks run after base hooks."""
        def first(doc):
            pass

        def second(doc):
            pass

        base = Schema().pre("save", first)
        addition = Schema().pre("save", second)

        merged = compose(base, addition)

        assert [h.fn for h in merged.hooks.get("pre", "save")] == [first, second]

    def test_hooks_deduplicated(self):
        """The same hook on both sides is kept once."""
        def audit(doc):
            pass

        base = Schema().pre("save", audit)
        addition = base.clone()
        addition.add({"extra": str})

        merged = compose(base, addition)

        assert len(merged.hooks.get("pre", "save")) == 1

    def test_methods_statics_virtuals_override(self):
        """Same-named methods, statics and virtuals from the addition win."""
        base = Schema().method("describe", lambda doc: "base").static("kind", lambda m: "base")
        base.virtual("label").getter(lambda doc: "base")
        addition = Schema().method("describe", lambda doc: "child")
        addition.virtual("label").getter(lambda doc: "child")

        merged = compose(base, addition)

        assert merged.methods["describe"](None) == "child"
        assert merged.statics["kind"](None) == "base"
        assert merged.virtuals["label"].apply_getters(None) == "child"

    def test_explicit_options_win(self):
        """Only explicitly set addition options override."""
        base = Schema(strict=False, collection="things")
        addition = Schema(collection="others")

        merged = compose(base, addition)

        assert merged.options["strict"] is False
        assert merged.options["collection"] == "others"

    def test_indexes_appended(self):
        """Addition indexes are appended to the base's."""
        base = Schema({"a": int}).index({"a": 1})
        addition = Schema({"b": int}).index({"b": -1}, unique=True)

        merged = compose(base, addition)

        assert merged.indexes() == [
            [{"a": 1}, {"background": True}],
            [{"b": -1}, {"background": True, "unique": True}],
        ]
